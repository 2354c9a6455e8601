"""Load the immutable runtime configuration from the environment and `~/.ralph/config.yaml`.

The configuration object is built once at startup and passed explicitly to
every component; nothing else in the package reads `os.environ`.
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE_MODE,
    DEFAULT_BATCH_DELAY_SECONDS,
    DEFAULT_BATCH_MAX,
    DEFAULT_CONFIG_FILE,
    DEFAULT_CUSTOM_SCRIPT_TIMEOUT_SECONDS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_ITERATION_DELAY_SECONDS,
    DEFAULT_LOCK_STALE_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_MAX_WORKER_FAILURES,
    DEFAULT_NOTIFY_FREQUENCY,
    DEFAULT_RATE_LIMIT_MAX,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    DEFAULT_STATE_DIR,
    DEFAULT_WORKER_COMMAND,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    ENV_PREFIX,
    NOTIFY_FREQUENCY_MAX,
    NOTIFY_FREQUENCY_MIN,
)
from .errors import ConfigError
from .io_utils import _atomic_write_yaml, _load_data_with_error
from .validation import validate_numeric

EMAIL_METHODS = ("smtp", "sendgrid", "ses")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class SlackConfig:
    webhook_url: str = ""
    channel: str = ""
    username: str = "Ralph"
    icon_emoji: str = ":robot_face:"

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)


@dataclass(frozen=True)
class DiscordConfig:
    webhook_url: str = ""
    username: str = "Ralph"
    avatar_url: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str = ""
    chat_id: str = ""

    @property
    def is_configured(self) -> bool:
        # Both halves are required; one without the other means "not set up".
        return bool(self.bot_token and self.chat_id)


@dataclass(frozen=True)
class EmailConfig:
    to_address: str = ""
    from_address: str = ""
    method: str = ""
    html: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_tls: bool = True
    sendgrid_api_key: str = ""
    ses_region: str = ""
    aws_access_key_id: str = ""
    aws_secret_key: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.to_address and self.from_address and self.method)


@dataclass(frozen=True)
class CustomScriptConfig:
    script_path: str = ""
    timeout_seconds: float = DEFAULT_CUSTOM_SCRIPT_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.script_path)


@dataclass(frozen=True)
class RalphConfig:
    """Immutable settings for one process.

    Defaults (`option: default`, effect):
        notify_frequency: 5, iterations between Progress events.
        rate_limit_max / rate_limit_window: 60 / 60s, sends admitted per sliding window.
        batch_delay / batch_max: 300s / 10, email digest window; delay 0 disables batching.
        retry_max_attempts / retry_base_delay / retry_max_delay: 3 / 2s / 30s.
        http_timeout: 10s per HTTP request.
        iteration_delay: 2s pause between loop iterations.
        worker_command / worker_timeout: external worker and its timebox.
        max_worker_failures: 3 identical consecutive failures end the loop.
        lock_timeout / lock_stale_seconds: 0s (fail fast) / 3600s.
        auto_commit: True, worker is asked to commit after each task.
    """

    notify_frequency: int = DEFAULT_NOTIFY_FREQUENCY
    rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX
    rate_limit_window: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS
    batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS
    batch_max: int = DEFAULT_BATCH_MAX
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    iteration_delay: float = DEFAULT_ITERATION_DELAY_SECONDS
    worker_command: str = DEFAULT_WORKER_COMMAND
    worker_timeout: int = DEFAULT_WORKER_TIMEOUT_SECONDS
    max_worker_failures: int = DEFAULT_MAX_WORKER_FAILURES
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    lock_stale_seconds: float = DEFAULT_LOCK_STALE_SECONDS
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR).expanduser())
    prompt_dir: Optional[Path] = None
    auto_commit: bool = True
    config_file: Optional[Path] = None

    slack: SlackConfig = field(default_factory=SlackConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    custom_script: CustomScriptConfig = field(default_factory=CustomScriptConfig)

    def secrets(self) -> tuple[str, ...]:
        """Return every configured value that must never appear in a log."""
        values = (
            self.slack.webhook_url,
            self.discord.webhook_url,
            self.telegram.bot_token,
            self.email.smtp_password,
            self.email.sendgrid_api_key,
            self.email.aws_access_key_id,
            self.email.aws_secret_key,
        )
        return tuple(value for value in values if value)

    def configured_channels(self) -> list[str]:
        names = []
        for name in ("slack", "discord", "telegram", "email", "custom_script"):
            if getattr(self, name).is_configured:
                names.append(name)
        return names


def default_config_path(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get(f"{ENV_PREFIX}CONFIG_FILE") or DEFAULT_CONFIG_FILE
    return Path(raw).expanduser()


def _normalize_file_keys(data: dict[str, Any]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in data.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        name = str(key).strip()
        if not name.upper().startswith(ENV_PREFIX):
            name = ENV_PREFIX + name
        if isinstance(value, bool):
            value = "true" if value else "false"
        normalized[name.upper()] = str(value)
    return normalized


def _enforce_private_mode(path: Path) -> None:
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError:
        return
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(
            "Config file {} has permissions {:o}; restricting to {:o}",
            path,
            mode,
            CONFIG_FILE_MODE,
        )
        try:
            os.chmod(path, CONFIG_FILE_MODE)
        except OSError as exc:
            logger.warning("Could not restrict permissions on {}: {}", path, exc)


def load_config_file(path: Path) -> dict[str, str]:
    """Load the optional YAML config file as a flat `RALPH_*` mapping.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    if not path.exists():
        return {}
    _enforce_private_mode(path)
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Invalid config file: {err}")
    return _normalize_file_keys(data)


def _int_setting(values: Mapping[str, str], name: str, default: int, minimum: int, maximum: int) -> int:
    raw = values.get(ENV_PREFIX + name, "")
    if raw.strip() == "":
        return default
    ok, reason = validate_numeric(raw, minimum, maximum)
    if not ok:
        raise ConfigError(f"{ENV_PREFIX}{name} {reason}")
    return int(raw.strip())


def _float_setting(values: Mapping[str, str], name: str, default: float, minimum: float, maximum: float) -> float:
    raw = values.get(ENV_PREFIX + name, "").strip()
    if raw == "":
        return default
    try:
        number = float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number: {raw!r}") from None
    if number < minimum or number > maximum:
        raise ConfigError(f"{ENV_PREFIX}{name} must be between {minimum} and {maximum}: {raw}")
    return number


def _bool_setting(values: Mapping[str, str], name: str, default: bool) -> bool:
    raw = values.get(ENV_PREFIX + name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{ENV_PREFIX}{name} must be a boolean (true/false): {raw!r}")


def _str_setting(values: Mapping[str, str], name: str, default: str = "") -> str:
    raw = values.get(ENV_PREFIX + name)
    return raw.strip() if raw is not None and raw.strip() else default


def _select_email_method(values: Mapping[str, str]) -> str:
    explicit = _str_setting(values, "EMAIL_METHOD").lower()
    if explicit:
        if explicit not in EMAIL_METHODS:
            raise ConfigError(
                f"{ENV_PREFIX}EMAIL_METHOD must be one of {', '.join(EMAIL_METHODS)}: {explicit!r}"
            )
        return explicit
    if _str_setting(values, "SENDGRID_API_KEY"):
        return "sendgrid"
    if (
        _str_setting(values, "AWS_SES_REGION")
        and _str_setting(values, "AWS_ACCESS_KEY_ID")
        and _str_setting(values, "AWS_SECRET_KEY")
    ):
        return "ses"
    if _str_setting(values, "SMTP_HOST"):
        return "smtp"
    return ""


def _email_config(values: Mapping[str, str]) -> EmailConfig:
    to_address = _str_setting(values, "EMAIL_TO")
    from_address = _str_setting(values, "EMAIL_FROM")
    method = _select_email_method(values) if (to_address or from_address) else ""
    return EmailConfig(
        to_address=to_address,
        from_address=from_address,
        method=method,
        html=_bool_setting(values, "EMAIL_HTML", False),
        smtp_host=_str_setting(values, "SMTP_HOST"),
        smtp_port=_int_setting(values, "SMTP_PORT", 587, 1, 65535),
        smtp_user=_str_setting(values, "SMTP_USER"),
        smtp_password=values.get(f"{ENV_PREFIX}SMTP_PASSWORD", ""),
        smtp_tls=_bool_setting(values, "SMTP_TLS", True),
        sendgrid_api_key=_str_setting(values, "SENDGRID_API_KEY"),
        ses_region=_str_setting(values, "AWS_SES_REGION"),
        aws_access_key_id=_str_setting(values, "AWS_ACCESS_KEY_ID"),
        aws_secret_key=_str_setting(values, "AWS_SECRET_KEY"),
    )


def load_config(
    env: Optional[Mapping[str, str]] = None,
    config_file: Optional[Path] = None,
) -> RalphConfig:
    """Build the process configuration.

    Args:
        env: Environment mapping; defaults to `os.environ`.
        config_file: Optional YAML file path; defaults to `RALPH_CONFIG_FILE`
            or `~/.ralph/config.yaml`.

    Returns:
        A frozen `RalphConfig`.

    Raises:
        ConfigError: If any setting is malformed or out of range.
    """
    env = dict(os.environ if env is None else env)
    path = config_file if config_file is not None else default_config_path(env)
    values = load_config_file(path)
    values.update({key: value for key, value in env.items() if key.startswith(ENV_PREFIX)})

    state_dir = Path(_str_setting(values, "STATE_DIR", DEFAULT_STATE_DIR)).expanduser()
    prompt_dir_raw = _str_setting(values, "PROMPT_DIR")

    return RalphConfig(
        notify_frequency=_int_setting(
            values, "NOTIFY_FREQUENCY", DEFAULT_NOTIFY_FREQUENCY, NOTIFY_FREQUENCY_MIN, NOTIFY_FREQUENCY_MAX
        ),
        rate_limit_max=_int_setting(values, "RATE_LIMIT_MAX", DEFAULT_RATE_LIMIT_MAX, 1, 10000),
        rate_limit_window=_float_setting(
            values, "RATE_LIMIT_WINDOW", DEFAULT_RATE_LIMIT_WINDOW_SECONDS, 1, 86400
        ),
        batch_delay=_float_setting(values, "EMAIL_BATCH_DELAY", DEFAULT_BATCH_DELAY_SECONDS, 0, 86400),
        batch_max=_int_setting(values, "EMAIL_BATCH_MAX", DEFAULT_BATCH_MAX, 1, 1000),
        retry_max_attempts=_int_setting(values, "NOTIFY_MAX_RETRIES", DEFAULT_RETRY_MAX_ATTEMPTS, 1, 10),
        retry_base_delay=_float_setting(values, "NOTIFY_RETRY_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS, 0, 300),
        retry_max_delay=_float_setting(
            values, "NOTIFY_RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS, 0, 3600
        ),
        http_timeout=_float_setting(values, "HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS, 1, 300),
        iteration_delay=_float_setting(values, "ITERATION_DELAY", DEFAULT_ITERATION_DELAY_SECONDS, 0, 3600),
        worker_command=_str_setting(values, "WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
        worker_timeout=_int_setting(values, "WORKER_TIMEOUT", DEFAULT_WORKER_TIMEOUT_SECONDS, 1, 7 * 86400),
        max_worker_failures=_int_setting(values, "MAX_WORKER_FAILURES", DEFAULT_MAX_WORKER_FAILURES, 1, 100),
        lock_timeout=_float_setting(values, "LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS, 0, 86400),
        lock_stale_seconds=_float_setting(values, "LOCK_STALE_SECONDS", DEFAULT_LOCK_STALE_SECONDS, 1, 30 * 86400),
        state_dir=state_dir,
        prompt_dir=Path(prompt_dir_raw).expanduser() if prompt_dir_raw else None,
        auto_commit=_bool_setting(values, "AUTO_COMMIT", True),
        config_file=path,
        slack=SlackConfig(
            webhook_url=_str_setting(values, "SLACK_WEBHOOK_URL"),
            channel=_str_setting(values, "SLACK_CHANNEL"),
            username=_str_setting(values, "SLACK_USERNAME", "Ralph"),
            icon_emoji=_str_setting(values, "SLACK_ICON_EMOJI", ":robot_face:"),
        ),
        discord=DiscordConfig(
            webhook_url=_str_setting(values, "DISCORD_WEBHOOK_URL"),
            username=_str_setting(values, "DISCORD_USERNAME", "Ralph"),
            avatar_url=_str_setting(values, "DISCORD_AVATAR_URL"),
        ),
        telegram=TelegramConfig(
            bot_token=_str_setting(values, "TELEGRAM_BOT_TOKEN"),
            chat_id=_str_setting(values, "TELEGRAM_CHAT_ID"),
        ),
        email=_email_config(values),
        custom_script=CustomScriptConfig(
            script_path=_str_setting(values, "CUSTOM_NOTIFY_SCRIPT"),
            timeout_seconds=_float_setting(
                values, "CUSTOM_SCRIPT_TIMEOUT", DEFAULT_CUSTOM_SCRIPT_TIMEOUT_SECONDS, 1, 3600
            ),
        ),
    )


def set_config_value(path: Path, key: str, value: Any) -> None:
    """Persist one setting into the YAML config file, keeping it owner-only."""
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Invalid config file: {err}")
    name = key.upper() if key.upper().startswith(ENV_PREFIX) else ENV_PREFIX + key.upper()
    # Drop the lower-case alias so the file has a single source of truth.
    data.pop(name[len(ENV_PREFIX):].lower(), None)
    data[name] = value
    _atomic_write_yaml(path, data, mode=CONFIG_FILE_MODE)
