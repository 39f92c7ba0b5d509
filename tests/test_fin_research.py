import allure
from click.testing import CliRunner

from fin_research import __version__
from fin_research.main import fin_research

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Version"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(fin_research, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
