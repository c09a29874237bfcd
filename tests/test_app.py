"""Tests for the command line front end."""

import pytest
from cryptography.fernet import Fernet

from mailsync.app import _sync_options, main, parse_args
from mailsync.config import Config


@pytest.fixture
def config_file(monkeypatch, temp_dir):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(temp_dir / "data"))
    path = temp_dir / "config.toml"
    path.write_text(
        "[sync]\n"
        "limit = 100\n"
        "max_concurrency = 4\n"
        "\n"
        "[security]\n"
        f'encryption_key = "{Fernet.generate_key().decode()}"\n'
        "\n"
        "[accounts.personal]\n"
        'host = "imap.example.com"\n'
        'user = "me@example.com"\n'
    )
    return path


def test_sync_options_use_config_defaults(config_file):
    config = Config.load(config_file)
    options = _sync_options(parse_args(["sync", "personal"]), config)

    assert options.folders is None
    assert options.limit == 100
    assert options.max_concurrency == 4
    assert options.strategy == "parallel"
    assert options.fetch_body


def test_sync_options_flags_override(config_file):
    config = Config.load(config_file)
    args = parse_args([
        "sync", "personal",
        "-f", "INBOX", "-f", "Sent",
        "--limit", "0",
        "--strategy", "sequential",
        "--no-spam", "--headers-only", "--stop-on-error", "--clear",
    ])
    options = _sync_options(args, config)

    assert options.folders == ["INBOX", "Sent"]
    assert options.limit is None
    assert options.strategy == "sequential"
    assert not options.include_spam
    assert not options.fetch_body
    assert not options.continue_on_error
    assert options.clear_existing


def test_all_folders_flag(config_file):
    options = _sync_options(parse_args(["sync", "personal", "--all-folders"]), Config.load(config_file))
    assert options.folders == []


def test_stats_rejects_unknown_dimension():
    with pytest.raises(SystemExit):
        parse_args(["stats", "personal", "--by", "subject"])


def test_main_paths(config_file, capsys):
    assert main(["--paths"]) == 0
    assert "config.toml" in capsys.readouterr().out


def test_main_without_command(config_file):
    assert main(["--config", str(config_file)]) == 2


def test_main_unknown_account(config_file, capsys):
    assert main(["--config", str(config_file), "test", "nobody"]) == 2
    assert "Unknown account" in capsys.readouterr().err


def test_main_bad_config(temp_dir):
    path = temp_dir / "broken.toml"
    path.write_text("[sync]\nstrategy = 'random'\n")
    assert main(["--config", str(path), "test", "personal"]) == 2


def test_main_stats_on_empty_database(config_file, temp_dir, capsys):
    assert main(["--config", str(config_file), "stats", "personal"]) == 0
    assert "0  total" in capsys.readouterr().out
    assert (temp_dir / "data" / "mailsync" / "mailsync.db").exists()
