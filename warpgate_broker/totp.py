"""Time-based one-time passwords (RFC 6238) for gateway second factors.

When a server entry stores its TOTP secret, the broker answers the gateway's
OTP challenge itself instead of asking the operator. Codes come from pyotp
(HMAC-SHA1, 30 second steps), which is what Warpgate and every common
authenticator app use.

Key Features:
- Secret validation with an 80-bit minimum
- Cryptographically random secret generation
- Code generation for an arbitrary timestamp (used by the tests to replay the
  RFC 6238 Appendix B vectors)
- Seconds remaining in the current time step
"""

import base64
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

import pyotp

from . import base32
from .exceptions import InvalidSecretFormat

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6
MIN_SECRET_LENGTH = 16


def is_valid_secret(secret: Optional[str]) -> bool:
    """Check whether a Base32 secret can be used to generate codes.

    The secret is normalized first (whitespace stripped, uppercased, trailing
    ``=`` removed). It must then hold at least 16 Base32 characters (80 bits)
    and nothing outside the Base32 alphabet.

    Args:
        secret: Candidate secret. None and non-strings are invalid.

    Returns:
        True if the secret is usable.

    Example:
        >>> is_valid_secret("JBSWY3DPEHPK3PXP")
        True
        >>> is_valid_secret("jbsw y3dp ehpk 3pxp")
        True
        >>> is_valid_secret("JBSWY3DP")
        False
    """
    if not secret or not isinstance(secret, str):
        return False
    cleaned = base32.clean(secret)
    if len(cleaned) < MIN_SECRET_LENGTH:
        return False
    return all(char in base32.ALPHABET for char in cleaned)


def generate_secret(byte_length: int = 20) -> str:
    """Generate a random Base32 secret.

    Args:
        byte_length: Number of random bytes, 20 (160 bits) by default.

    Returns:
        The Base32-encoded secret without padding.
    """
    return base32.encode(secrets.token_bytes(byte_length))


def _pyotp_secret(secret: str) -> str:
    # pyotp decodes with base64.b32decode, which needs whole 8-character
    # groups; re-encode the decoded key so trailing partial bits are dropped
    return base64.b32encode(base32.decode(secret)).decode("ascii")


def generate(
    secret: str,
    period: int = DEFAULT_PERIOD,
    digits: int = DEFAULT_DIGITS,
    timestamp_millis: Optional[int] = None,
) -> str:
    """Generate the TOTP code for a secret at a given time.

    Args:
        secret: Base32-encoded shared secret.
        period: Time step in seconds.
        digits: Number of digits in the code.
        timestamp_millis: Unix time in milliseconds. Defaults to now.

    Returns:
        The code, left-padded with zeros to ``digits`` characters.

    Raises:
        InvalidSecretFormat: If the secret fails ``is_valid_secret``.

    Example:
        >>> generate("GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ", timestamp_millis=59000)
        '287082'
    """
    if not is_valid_secret(secret):
        raise InvalidSecretFormat("Invalid TOTP secret format")
    if timestamp_millis is None:
        timestamp_millis = int(time.time() * 1000)

    at = datetime.fromtimestamp(timestamp_millis // 1000, tz=timezone.utc)
    return pyotp.TOTP(_pyotp_secret(secret), digits=digits, interval=period).at(at)


def remaining_seconds(period: int = DEFAULT_PERIOD) -> int:
    """Return the seconds left in the current time step, in ``[1, period]``."""
    return period - (int(time.time()) % period)
