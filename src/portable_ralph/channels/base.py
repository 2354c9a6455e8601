"""Define the uniform channel interface and the shared HTTP delivery helper."""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..constants import RETRYABLE_HTTP_STATUSES, RETRYABLE_PROVIDER_CODES
from ..errors import FatalDeliveryError, TransientDeliveryError, ValidationError
from ..models import DispatchOutcome, NotificationEvent
from ..validation import validate_url

EMOJI = {
    ":rocket:": "🚀",
    ":white_check_mark:": "✅",
    ":warning:": "⚠️",
    ":gear:": "⚙️",
    ":robot_face:": "🤖",
    ":x:": "❌",
    ":stop_sign:": "🛑",
    ":bell:": "🔔",
    ":package:": "📦",
}

_SHORTCODE_RE = re.compile(r":[a-z0-9_+-]+:")


def replace_emoji(text: str) -> str:
    return _SHORTCODE_RE.sub(lambda match: EMOJI.get(match.group(0), match.group(0)), text)


@dataclass(frozen=True)
class SendResult:
    outcome: DispatchOutcome
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is DispatchOutcome.SUCCESS


class Channel(abc.ABC):
    """One notification destination.

    Subclasses implement `deliver`, raising `TransientDeliveryError` or
    `FatalDeliveryError` on failure; `send` turns that into a `SendResult`.
    """

    name: str = "channel"
    supports_batching: bool = False
    retryable: bool = True

    def validate(self) -> None:
        """Check destination settings; raise `ValidationError` to skip this channel."""

    @abc.abstractmethod
    def deliver(self, event: NotificationEvent) -> str:
        """Deliver one event and return a short success detail."""

    def secrets(self) -> tuple[str, ...]:
        return ()

    def send(self, event: NotificationEvent) -> SendResult:
        try:
            detail = self.deliver(event)
        except TransientDeliveryError as exc:
            return SendResult(DispatchOutcome.TRANSIENT_FAILURE, str(exc))
        except FatalDeliveryError as exc:
            return SendResult(DispatchOutcome.FATAL_FAILURE, str(exc))
        return SendResult(DispatchOutcome.SUCCESS, detail)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name}>"


class HttpChannel(Channel):
    """Base for channels that POST JSON to an HTTPS endpoint."""

    def __init__(self, client: httpx.Client, *, resolve_dns: bool = True):
        self._client = client
        self._resolve_dns = resolve_dns

    def _check_url(self, url: str, label: str) -> None:
        ok, reason = validate_url(url, resolve=self._resolve_dns)
        if not ok:
            raise ValidationError(f"{label} rejected: {reason}")

    def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = self._client.post(url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise TransientDeliveryError(f"{self.name}: {exc.__class__.__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FatalDeliveryError(f"{self.name}: {exc.__class__.__name__}: {exc}") from exc
        raise_for_delivery_status(self.name, response)
        return response


def _provider_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    for key in ("code", "error_code", "error"):
        value = body.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return str(value)
    return ""


def raise_for_delivery_status(channel: str, response: httpx.Response) -> None:
    """Classify a non-2xx response as transient or fatal."""
    status = response.status_code
    if 200 <= status < 300:
        return
    code = _provider_code(response)
    detail = f"{channel}: HTTP {status}" + (f" ({code})" if code else "")
    if status >= 500 or status in RETRYABLE_HTTP_STATUSES or code in RETRYABLE_PROVIDER_CODES:
        raise TransientDeliveryError(detail)
    raise FatalDeliveryError(detail)
