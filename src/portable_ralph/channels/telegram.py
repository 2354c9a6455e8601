"""Telegram Bot API channel."""

from __future__ import annotations

import re
from typing import Any

import httpx

from ..config import TelegramConfig
from ..errors import FatalDeliveryError, TransientDeliveryError, ValidationError
from ..models import NotificationEvent
from .base import HttpChannel, replace_emoji

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_TEXT = 4096

_TOKEN_RE = re.compile(r"^[0-9]{8,10}:[A-Za-z0-9_-]{35}$")
_CHAT_ID_RE = re.compile(r"^(-?[0-9]+|@[A-Za-z][A-Za-z0-9_]{4,31})$")
# MarkdownV2 reserved characters, minus `*` and `` ` `` which carry our bold and code markup.
_MARKDOWN_V2_RE = re.compile(r"([_\[\]()~>#+\-=|{}.!\\])")


def escape_markdown_v2(text: str) -> str:
    return _MARKDOWN_V2_RE.sub(r"\\\1", text)


class TelegramChannel(HttpChannel):
    name = "telegram"

    def __init__(
        self,
        config: TelegramConfig,
        client: httpx.Client,
        *,
        resolve_dns: bool = True,
        api_base: str = TELEGRAM_API_BASE,
    ):
        super().__init__(client, resolve_dns=resolve_dns)
        self.config = config
        self._api_base = api_base.rstrip("/")

    @property
    def endpoint(self) -> str:
        return f"{self._api_base}/bot{self.config.bot_token}/sendMessage"

    def validate(self) -> None:
        if not _TOKEN_RE.match(self.config.bot_token):
            raise ValidationError("Telegram bot token has an unexpected format")
        if not _CHAT_ID_RE.match(self.config.chat_id):
            raise ValidationError(f"Telegram chat id has an unexpected format: {self.config.chat_id}")
        self._check_url(self._api_base, "Telegram API base URL")

    def secrets(self) -> tuple[str, ...]:
        return (self.config.bot_token,)

    def build_payload(self, event: NotificationEvent) -> dict[str, Any]:
        text = escape_markdown_v2(replace_emoji(event.render_text()))
        if len(text) > TELEGRAM_MAX_TEXT:
            text = text[: TELEGRAM_MAX_TEXT - 3] + "\\.\\.\\."
        return {"chat_id": self.config.chat_id, "text": text, "parse_mode": "MarkdownV2"}

    def deliver(self, event: NotificationEvent) -> str:
        response = self._post_json(self.endpoint, self.build_payload(event))
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        # The Bot API can answer 200 with ok=false.
        if isinstance(body, dict) and body.get("ok") is False:
            code = body.get("error_code")
            description = body.get("description") or "request rejected"
            if code == 429 or (isinstance(code, int) and code >= 500):
                raise TransientDeliveryError(f"telegram: {code} {description}")
            raise FatalDeliveryError(f"telegram: {code} {description}")
        return f"HTTP {response.status_code}"
