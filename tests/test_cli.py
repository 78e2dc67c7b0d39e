import pytest
from typer.testing import CliRunner

from pinefetch import cli
from pinefetch._version import __version__
from pinefetch.config import ConfigManager

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / 'config.json'
    monkeypatch.setattr(cli, 'CONFIG_FILE', path)
    return path


def test_version_flag():
    result = runner.invoke(cli.app, ['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_config_set_then_show(config_file):
    result = runner.invoke(cli.app, ['config', 'set', '--jobs', '3', '--log-level', 'debug'])
    assert result.exit_code == 0, result.output
    settings = ConfigManager(config_file).load()
    assert settings.max_concurrent_downloads == 3
    assert settings.log_level == 'DEBUG'

    result = runner.invoke(cli.app, ['config', 'show'])
    assert result.exit_code == 0
    assert 'log_level' in result.output


def test_config_set_rejects_bad_values(config_file):
    result = runner.invoke(cli.app, ['config', 'set', '--log-level', 'LOUD'])
    assert result.exit_code == 1
    assert ConfigManager(config_file).load().log_level == 'INFO'


def test_config_set_without_options(config_file):
    result = runner.invoke(cli.app, ['config', 'set'])
    assert result.exit_code == 0
    assert 'Nothing to change' in result.output


def test_download_rejects_unknown_preset(config_file):
    result = runner.invoke(cli.app, ['download', '--preset', 'nope', 'https://example.com/a'])
    assert result.exit_code == 2
    assert 'Unknown preset' in result.output
