"""Validate untrusted settings before they reach the network or a subprocess.

Every validator returns `(ok, reason)` so callers can decide whether a
rejection is fatal (`ConfigError`) or only skips one channel
(`ValidationError`).
"""

from __future__ import annotations

import ipaddress
import os
import re
import socket
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlsplit

from .constants import (
    REDACTED,
    TOKEN_MASK_MARGIN,
    TOKEN_MASK_PREFIX_LENGTH,
    VALIDATION_MAX_DEFAULT,
    VALIDATION_MIN_DEFAULT,
)

Resolver = Callable[[str], list[str]]

_LOOPBACK_HOSTS = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

# Blocklist kept explicit so it reads the same on every interpreter version.
_BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*\.[A-Za-z]{2,}$")

_JSON_ESCAPES = {
    ord("\\"): "\\\\",
    ord('"'): '\\"',
    ord("\n"): "\\n",
    ord("\r"): "\\r",
    ord("\t"): "\\t",
}
_JSON_ESCAPES.update({code: f"\\u{code:04x}" for code in range(0x20) if code not in _JSON_ESCAPES})


def _default_resolver(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({str(info[4][0]) for info in infos})


def _blocked_address(address: str) -> Optional[str]:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return None
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    for network in _BLOCKED_NETWORKS:
        if ip.version == network.version and ip in network:
            return f"address {ip} is in blocked range {network}"
    if ip.is_multicast or ip.is_unspecified:
        return f"address {ip} is not a routable unicast address"
    return None


def validate_url(
    url: str,
    *,
    resolve: bool = True,
    resolver: Optional[Resolver] = None,
) -> tuple[bool, str]:
    """Check that a destination URL is safe to POST to.

    Args:
        url: Destination URL from configuration.
        resolve: Whether to resolve the hostname and re-check every address it
            maps to (DNS-rebinding protection).
        resolver: Optional hostname resolver, mainly for tests.

    Returns:
        `(True, "")` when the URL is acceptable, otherwise `(False, reason)`.
    """
    if not url or not isinstance(url, str):
        return False, "URL is empty"
    if any(ch in url for ch in ("\n", "\r", "\x00", " ")):
        return False, "URL contains whitespace or control characters"

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as exc:
        return False, f"URL is malformed: {exc}"
    if parts.scheme.lower() != "https":
        return False, f"URL must use HTTPS (got scheme {parts.scheme or 'none'!r})"

    host = (hostname or "").strip().lower().rstrip(".")
    if not host:
        return False, "URL has no host"
    if host in _LOOPBACK_HOSTS or host.endswith(".localhost"):
        return False, f"host {host} is a loopback name"

    reason = _blocked_address(host)
    if reason:
        return False, reason

    try:
        ipaddress.ip_address(host)
        return True, ""
    except ValueError:
        pass

    if not resolve:
        return True, ""

    try:
        addresses = (resolver or _default_resolver)(host)
    except (OSError, UnicodeError) as exc:
        return False, f"could not resolve {host}: {exc}"
    if not addresses:
        return False, f"{host} resolved to no addresses"
    for address in addresses:
        reason = _blocked_address(address)
        if reason:
            return False, f"{host} resolves to a blocked address ({reason})"
    return True, ""


def validate_email(address: str) -> tuple[bool, str]:
    if not address or not isinstance(address, str):
        return False, "email address is empty"
    if len(address) > 254:
        return False, "email address is too long"
    if not _EMAIL_RE.match(address):
        return False, f"email address format invalid: {address}"
    local = address.split("@", 1)[0]
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False, f"email local part is malformed: {address}"
    return True, ""


def validate_path(
    path: str | os.PathLike[str],
    mode: str = "read",
    *,
    root: Optional[Path] = None,
) -> tuple[bool, str]:
    """Canonicalize a path and check it against an access mode.

    Args:
        path: Path from configuration or the command line.
        mode: One of `read`, `execute`, or `write`. Read and execute require
            the canonical target to exist with the matching permission.
        root: Optional directory the canonical path must stay inside.

    Returns:
        `(True, canonical_path)` on success, otherwise `(False, reason)`.
    """
    raw = os.fspath(path) if path is not None else ""
    if not raw:
        return False, "path is empty"
    if any(ch in raw for ch in ("\n", "\r", "\x00")):
        return False, "path contains invalid characters"
    if mode not in {"read", "execute", "write"}:
        return False, f"unknown path mode: {mode}"

    try:
        canonical = Path(raw).expanduser().resolve(strict=False)
    except (OSError, RuntimeError) as exc:
        return False, f"cannot canonicalize {raw}: {exc}"

    if root is not None:
        root_canonical = Path(root).expanduser().resolve(strict=False)
        if canonical != root_canonical and root_canonical not in canonical.parents:
            return False, f"{canonical} is outside {root_canonical}"

    if mode in {"read", "execute"}:
        if not canonical.exists():
            return False, f"{canonical} does not exist"
        if not canonical.is_file():
            return False, f"{canonical} is not a regular file"
        if not os.access(canonical, os.R_OK):
            return False, f"{canonical} is not readable"
        if mode == "execute" and not os.access(canonical, os.X_OK):
            return False, f"{canonical} is not executable"
    return True, str(canonical)


def validate_numeric(
    value: Any,
    minimum: int = VALIDATION_MIN_DEFAULT,
    maximum: int = VALIDATION_MAX_DEFAULT,
) -> tuple[bool, str]:
    if isinstance(value, bool):
        return False, f"expected an integer, got {value!r}"
    text = str(value).strip() if value is not None else ""
    if not re.fullmatch(r"[0-9]+", text):
        return False, f"must be a non-negative integer: {value!r}"
    number = int(text)
    if number < minimum or number > maximum:
        return False, f"must be between {minimum} and {maximum}: {number}"
    return True, ""


def json_escape(text: str) -> str:
    """Escape text for embedding inside a JSON string literal."""
    return (text or "").translate(_JSON_ESCAPES)


def mask_token(token: Optional[str], prefix_length: int = TOKEN_MASK_PREFIX_LENGTH) -> str:
    """Mask a secret, keeping at most a short prefix visible.

    Tokens too short to hide anything meaningful are fully redacted.
    """
    if not token or len(token) <= prefix_length + TOKEN_MASK_MARGIN:
        return REDACTED
    return f"{token[:prefix_length]}...{REDACTED}"


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in `text` with its masked form."""
    if not text:
        return text
    # Longest first so a secret that contains another is masked whole.
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        if secret in text:
            text = text.replace(secret, mask_token(secret))
    return text
