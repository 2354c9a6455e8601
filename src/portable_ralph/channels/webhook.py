"""Chat services reached through incoming webhooks (Slack, Discord)."""

from __future__ import annotations

import re
from typing import Any

import httpx

from ..config import DiscordConfig, SlackConfig
from ..models import NotificationEvent
from .base import HttpChannel

DISCORD_MAX_CONTENT = 2000

_SLACK_BOLD_RE = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")


class SlackChannel(HttpChannel):
    name = "slack"

    def __init__(self, config: SlackConfig, client: httpx.Client, *, resolve_dns: bool = True):
        super().__init__(client, resolve_dns=resolve_dns)
        self.config = config

    def validate(self) -> None:
        self._check_url(self.config.webhook_url, "Slack webhook URL")

    def secrets(self) -> tuple[str, ...]:
        return (self.config.webhook_url,)

    def build_payload(self, event: NotificationEvent) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "text": event.render_text(),
            "username": self.config.username,
            "icon_emoji": self.config.icon_emoji,
        }
        if self.config.channel:
            payload["channel"] = self.config.channel
        return payload

    def deliver(self, event: NotificationEvent) -> str:
        response = self._post_json(self.config.webhook_url, self.build_payload(event))
        return f"HTTP {response.status_code}"


class DiscordChannel(HttpChannel):
    name = "discord"

    def __init__(self, config: DiscordConfig, client: httpx.Client, *, resolve_dns: bool = True):
        super().__init__(client, resolve_dns=resolve_dns)
        self.config = config

    def validate(self) -> None:
        self._check_url(self.config.webhook_url, "Discord webhook URL")
        if self.config.avatar_url:
            self._check_url(self.config.avatar_url, "Discord avatar URL")

    def secrets(self) -> tuple[str, ...]:
        return (self.config.webhook_url,)

    def build_payload(self, event: NotificationEvent) -> dict[str, Any]:
        # Slack's *bold* is Discord's **bold**.
        content = _SLACK_BOLD_RE.sub(r"**\1**", event.render_text())
        if len(content) > DISCORD_MAX_CONTENT:
            content = content[: DISCORD_MAX_CONTENT - 1] + "…"
        payload: dict[str, Any] = {"content": content, "username": self.config.username}
        if self.config.avatar_url:
            payload["avatar_url"] = self.config.avatar_url
        return payload

    def deliver(self, event: NotificationEvent) -> str:
        response = self._post_json(self.config.webhook_url, self.build_payload(event))
        return f"HTTP {response.status_code}"
