import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

PACKAGE_LOGGER = "warpgate_broker"


def normalize_url(url: str) -> str:
    """Normalize a gateway URL into a base URL.

    Strips trailing slashes and defaults the scheme to https when none is
    given. An explicit ``http://`` scheme is preserved.

    Args:
        url: Server URL as entered by the operator.

    Returns:
        The normalized base URL.

    Example:
        >>> normalize_url("warpgate.example.com/")
        'https://warpgate.example.com'
        >>> normalize_url("http://10.0.0.5:8888//")
        'http://10.0.0.5:8888'
    """
    base_url = url.strip().rstrip("/")
    if not base_url.startswith("http://") and not base_url.startswith("https://"):
        base_url = f"https://{base_url}"
    return base_url


def url_hostname(url: str) -> str:
    """Extract the hostname from a normalized base URL.

    Example:
        >>> url_hostname("https://warpgate.example.com:8888")
        'warpgate.example.com'
    """
    hostname = urlsplit(url).hostname
    if hostname:
        return hostname
    return url.split("://", 1)[-1].split("/", 1)[0].split(":", 1)[0]


def url_port(url: str) -> Optional[int]:
    """Return the explicit port of a URL, or None when it has none."""
    try:
        return urlsplit(url).port
    except ValueError:
        return None


def generate_id() -> str:
    """Generate an opaque server id of the form ``wg-<millis>-<suffix>``.

    Example:
        >>> generate_id()
        'wg-1767225600000-k3j9x0a2q'
    """
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choice(alphabet) for _ in range(9))
    return f"wg-{int(time.time() * 1000)}-{suffix}"


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp returned by the gateway.

    Naive timestamps are taken to be UTC. Unparseable or empty values yield
    None.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def truncate(text: str, limit: int = 200) -> str:
    """Truncate text to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def error_message(error: BaseException) -> str:
    """Return a human readable message for any exception."""
    message = str(error)
    return message if message else type(error).__name__


def set_debug_mode(enabled: bool) -> None:
    """Gate debug output of every warpgate_broker logger.

    The broker's loggers are named ``warpgate_broker.<module>``, so the module
    name acts as the context tag on each record. Turning debug mode on lowers
    the package logger to DEBUG; turning it off hands the level back to the
    root logger's configuration.
    """
    level = logging.DEBUG if enabled else logging.NOTSET
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
