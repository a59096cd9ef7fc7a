"""RFC 4648 Base32 codec used for TOTP secrets.

Secrets are stored and displayed without padding, so the encoder never emits
``=`` and the decoder accepts input with or without it. Decoding is lossy only
at the bit-padding boundary: trailing bits that do not complete a byte are
dropped, exactly as authenticator apps do.
"""

import base64

from .exceptions import InvalidCharacter

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

_VALUES = {char: index for index, char in enumerate(ALPHABET)}


def clean(text: str) -> str:
    """Normalize Base32 text: drop whitespace and trailing ``=``, uppercase.

    Example:
        >>> clean("jbsw y3dp ehpk 3pxp====")
        'JBSWY3DPEHPK3PXP'
    """
    return "".join(text.split()).upper().rstrip("=")


def encode(data: bytes) -> str:
    """Encode bytes as unpadded Base32.

    Args:
        data: Bytes to encode. May be empty.

    Returns:
        Base32 text using the alphabet ``A-Z2-7`` with no ``=`` padding.

    Example:
        >>> encode(b"Hello!")
        'JBSWY3DPEE'
        >>> encode(b"")
        ''
    """
    return base64.b32encode(data).decode("ascii").rstrip("=")


def decode(text: str) -> bytes:
    """Decode Base32 text into bytes.

    Decoding is case-insensitive and ignores whitespace anywhere in the input
    as well as trailing ``=`` padding.

    Args:
        text: Base32 text.

    Returns:
        The decoded bytes. Empty input yields ``b""``.

    Raises:
        InvalidCharacter: If a character outside the Base32 alphabet is found.

    Example:
        >>> decode("JBSWY3DPEE")
        b'Hello!'
        >>> decode("jbsw y3dp ee==")
        b'Hello!'
    """
    cleaned = clean(text)
    result = bytearray()
    buffer = 0
    bits_left = 0

    for char in cleaned:
        value = _VALUES.get(char)
        if value is None:
            raise InvalidCharacter(f"Invalid Base32 character: {char!r}")
        buffer = ((buffer << 5) | value) & 0xFFFF
        bits_left += 5
        if bits_left >= 8:
            bits_left -= 8
            result.append((buffer >> bits_left) & 0xFF)

    return bytes(result)
