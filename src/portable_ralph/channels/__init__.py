from .base import Channel, HttpChannel, SendResult
from .mail import EmailChannel
from .registry import build_channels, build_http_client
from .script import CustomScriptChannel
from .telegram import TelegramChannel
from .webhook import DiscordChannel, SlackChannel

__all__ = [
    "Channel",
    "CustomScriptChannel",
    "DiscordChannel",
    "EmailChannel",
    "HttpChannel",
    "SendResult",
    "SlackChannel",
    "TelegramChannel",
    "build_channels",
    "build_http_client",
]
