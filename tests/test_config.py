"""Test configuration loading from the environment and the YAML config file."""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from portable_ralph.config import default_config_path, load_config, set_config_value
from portable_ralph.errors import ConfigError


def _write_config(path: Path, data: dict, mode: int = 0o600) -> Path:
    path.write_text(yaml.safe_dump(data))
    path.chmod(mode)
    return path


class TestDefaults:
    """Defaults apply when nothing is configured."""

    def test_defaults_without_file_or_env(self, tmp_path: Path) -> None:
        config = load_config(env={}, config_file=tmp_path / "missing.yaml")
        assert config.notify_frequency == 5
        assert config.rate_limit_max == 60
        assert config.batch_delay == 300
        assert config.batch_max == 10
        assert config.retry_max_attempts == 3
        assert config.auto_commit is True
        assert config.configured_channels() == []
        assert config.secrets() == ()

    def test_default_path_honours_env_override(self, tmp_path: Path) -> None:
        target = tmp_path / "custom.yaml"
        assert default_config_path({"RALPH_CONFIG_FILE": str(target)}) == target


class TestSources:
    """Environment variables take precedence over the config file."""

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path / "config.yaml", {"RALPH_NOTIFY_FREQUENCY": 10, "slack_webhook_url": "https://a"})
        config = load_config(env={"RALPH_NOTIFY_FREQUENCY": "3"}, config_file=path)
        assert config.notify_frequency == 3
        assert config.slack.webhook_url == "https://a"

    def test_file_keys_without_prefix_are_accepted(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path / "config.yaml", {"auto_commit": False, "iteration_delay": 0})
        config = load_config(env={}, config_file=path)
        assert config.auto_commit is False
        assert config.iteration_delay == 0

    def test_unrelated_env_is_ignored(self, tmp_path: Path) -> None:
        config = load_config(env={"NOTIFY_FREQUENCY": "99"}, config_file=tmp_path / "missing.yaml")
        assert config.notify_frequency == 5

    def test_secrets_are_collected(self, tmp_path: Path) -> None:
        env = {
            "RALPH_SLACK_WEBHOOK_URL": "https://hooks.slack.com/services/T/B/X",
            "RALPH_TELEGRAM_BOT_TOKEN": "123456789:" + "A" * 35,
        }
        config = load_config(env=env, config_file=tmp_path / "missing.yaml")
        assert set(config.secrets()) == set(env.values())


class TestValidation:
    """Malformed or out-of-range settings are rejected at load time."""

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("RALPH_NOTIFY_FREQUENCY", "0"),
            ("RALPH_NOTIFY_FREQUENCY", "101"),
            ("RALPH_NOTIFY_FREQUENCY", "five"),
            ("RALPH_RATE_LIMIT_MAX", "-1"),
            ("RALPH_EMAIL_BATCH_DELAY", "soon"),
            ("RALPH_AUTO_COMMIT", "maybe"),
        ],
    )
    def test_bad_values_raise(self, tmp_path: Path, name: str, value: str) -> None:
        with pytest.raises(ConfigError):
            load_config(env={name: value}, config_file=tmp_path / "missing.yaml")

    def test_unparseable_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("key: [unclosed\n")
        path.chmod(0o600)
        with pytest.raises(ConfigError):
            load_config(env={}, config_file=path)

    def test_unknown_email_method_raises(self, tmp_path: Path) -> None:
        env = {"RALPH_EMAIL_TO": "ops@example.com", "RALPH_EMAIL_METHOD": "pigeon"}
        with pytest.raises(ConfigError):
            load_config(env=env, config_file=tmp_path / "missing.yaml")


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_world_readable_file_is_restricted(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "config.yaml", {"RALPH_ITERATION_DELAY": 1}, mode=0o644)
    load_config(env={}, config_file=path)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


class TestEmailMethod:
    """The delivery method is inferred from which credentials are present."""

    BASE = {"RALPH_EMAIL_TO": "ops@example.com", "RALPH_EMAIL_FROM": "ralph@example.com"}

    def _method(self, tmp_path: Path, **extra: str) -> str:
        return load_config(env={**self.BASE, **extra}, config_file=tmp_path / "missing.yaml").email.method

    def test_sendgrid_wins_when_key_present(self, tmp_path: Path) -> None:
        assert self._method(tmp_path, RALPH_SENDGRID_API_KEY="SG.x", RALPH_SMTP_HOST="smtp") == "sendgrid"

    def test_ses_needs_region_and_both_keys(self, tmp_path: Path) -> None:
        ses = {"RALPH_AWS_SES_REGION": "us-east-1", "RALPH_AWS_ACCESS_KEY_ID": "AKIA", "RALPH_AWS_SECRET_KEY": "s"}
        assert self._method(tmp_path, **ses) == "ses"
        assert self._method(tmp_path, RALPH_AWS_SES_REGION="us-east-1") == ""

    def test_smtp_from_host(self, tmp_path: Path) -> None:
        assert self._method(tmp_path, RALPH_SMTP_HOST="smtp.example.com") == "smtp"

    def test_explicit_method_wins(self, tmp_path: Path) -> None:
        assert self._method(tmp_path, RALPH_EMAIL_METHOD="SMTP", RALPH_SENDGRID_API_KEY="SG.x") == "smtp"


def test_set_config_value_writes_private_file(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.yaml"
    set_config_value(path, "auto_commit", False)
    assert yaml.safe_load(path.read_text()) == {"RALPH_AUTO_COMMIT": False}
    if os.name != "nt":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    set_config_value(path, "RALPH_AUTO_COMMIT", True)
    assert load_config(env={}, config_file=path).auto_commit is True
