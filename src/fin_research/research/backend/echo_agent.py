"""Deterministic stand-in agent for synthesis integration tests."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="echo")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    question = next(
        (line.removeprefix("Question:").strip() for line in prompt.splitlines() if line.startswith("Question:")),
        "",
    )
    facts = [line for line in prompt.splitlines() if line.startswith("- ")]
    sys.stdout.write(f"Echo answer ({args.model}) to: {question}\n")
    for fact in facts:
        sys.stdout.write(f"{fact}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
