"""Build the list of enabled channels from configuration.

A channel is enabled exactly when its settings are present; there is no
separate on/off switch.
"""

from __future__ import annotations

from typing import Callable, Optional

import httpx

from ..config import RalphConfig
from ..constants import HTTP_CONNECT_TIMEOUT_SECONDS
from .base import Channel
from .mail import EmailChannel
from .script import CustomScriptChannel
from .telegram import TelegramChannel
from .webhook import DiscordChannel, SlackChannel

ChannelFactory = Callable[[RalphConfig, httpx.Client, bool], Channel]

CHANNEL_FACTORIES: dict[str, ChannelFactory] = {
    "slack": lambda config, client, resolve: SlackChannel(config.slack, client, resolve_dns=resolve),
    "discord": lambda config, client, resolve: DiscordChannel(config.discord, client, resolve_dns=resolve),
    "telegram": lambda config, client, resolve: TelegramChannel(config.telegram, client, resolve_dns=resolve),
    "email": lambda config, client, resolve: EmailChannel(config.email, client, resolve_dns=resolve),
    "custom_script": lambda config, client, resolve: CustomScriptChannel(config.custom_script),
}


def build_http_client(config: RalphConfig, transport: Optional[httpx.BaseTransport] = None) -> httpx.Client:
    timeout = httpx.Timeout(config.http_timeout, connect=min(HTTP_CONNECT_TIMEOUT_SECONDS, config.http_timeout))
    # Redirects stay off so a validated URL cannot bounce to an internal address.
    return httpx.Client(timeout=timeout, follow_redirects=False, transport=transport)


def build_channels(
    config: RalphConfig,
    client: httpx.Client,
    *,
    resolve_dns: bool = True,
) -> list[Channel]:
    return [
        CHANNEL_FACTORIES[name](config, client, resolve_dns)
        for name in config.configured_channels()
    ]
