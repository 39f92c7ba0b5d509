from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest
from fakes import ECHO_AGENT_COMMAND_TEMPLATE

from fin_research.research.backend import BackendRunError, BackendRunRequest, CliAgentBackend
from fin_research.research.backend.cli_backend import TIMEOUT_EXIT_CODE, build_run_args

pytestmark = [
    allure.epic("Answer Synthesis"),
    allure.feature("Agent Command Rendering"),
]


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args, command_head = build_run_args(
        command_template="runner --prompt {prompt} --model {model}",
        model="gpt-5-codex",
        prompt="What was Apple's revenue?",
        prompt_file=Path("input/prompt.txt"),
    )

    assert command_head == "runner"
    assert run_args == ["runner", "--prompt", "What was Apple's revenue?", "--model", "gpt-5-codex"]


def test_build_run_args_renders_prompt_file_path() -> None:
    run_args, _ = build_run_args(
        command_template="agent --input {prompt_file}",
        model="",
        prompt="ignored",
        prompt_file=Path("work dir/prompt.txt"),
    )

    assert run_args == ["agent", "--input", "work dir/prompt.txt"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "template is empty"),
        ("agent --model {model}", "must include {prompt} or {prompt_file}"),
        ("agent {prompt} {workspace}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as info:
        build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=Path("prompt.txt"),
        )
    assert info.value.transient is False


def test_cli_backend_runs_echo_agent(tmp_path: Path) -> None:
    request = BackendRunRequest(
        prompt="Question: NVDA margins\n- financial-metrics NVDA: gross_margin 0.75\n",
        workdir=tmp_path / "run",
        timeout_seconds=30,
        agent="claude",
        model="echo",
        command_template=ECHO_AGENT_COMMAND_TEMPLATE,
    )

    result = CliAgentBackend().run(request)

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.stdout_text() == (
        "Echo answer (echo) to: NVDA margins\n- financial-metrics NVDA: gross_margin 0.75\n"
    )
    assert (tmp_path / "run" / "prompt.txt").read_text("utf-8") == request.prompt


def test_cli_backend_missing_command_is_not_transient(tmp_path: Path) -> None:
    request = BackendRunRequest(
        prompt="p",
        workdir=tmp_path / "run",
        timeout_seconds=5,
        agent="claude",
        model="m",
        command_template="fin-research-no-such-agent-binary {prompt}",
    )

    with pytest.raises(BackendRunError, match="command not found") as info:
        CliAgentBackend().run(request)
    assert info.value.transient is False


def test_cli_backend_stops_agent_on_shutdown_request(tmp_path: Path) -> None:
    request = BackendRunRequest(
        prompt="p",
        workdir=tmp_path / "run",
        timeout_seconds=30,
        agent="claude",
        model="m",
        command_template=f'{sys.executable} -c "import time; time.sleep(30)" {{prompt}}',
        shutdown_requested=lambda: True,
    )

    result = CliAgentBackend().run(request)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
