"""Custom exception classes for the Warpgate session broker.

This module defines the broker-specific exception classes raised when a caller
violates a precondition: handing the codec a malformed secret, asking for a
server that is not configured, or storing an OTP secret that could never
produce a code.

Transient failures are deliberately absent from this hierarchy. Network
errors, non-2xx gateway responses and authentication refusals are returned as
``ApiError`` values by the API client and recorded in the broker's connection
status map; they are never raised.

Exception Hierarchy:
- BrokerError: Base class for every broker exception
  - ValidationError: Input rejected before any network call
    - InvalidCharacter: Character outside the Base32 alphabet
    - InvalidSecretFormat: TOTP secret that fails validation
  - NotFoundError: Operation addressed an unknown entity
    - ServerNotFound: Unknown server id
"""


class BrokerError(Exception):
    """Base class for all warpgate_broker exceptions."""

    pass


class ValidationError(BrokerError):
    """Exception raised when input is rejected before any network call.

    Raised for malformed Base32 text, TOTP secrets that fail validation, and
    similar local checks. Callers should surface the message to the operator
    and ask for corrected input; retrying with the same value cannot succeed.
    """

    pass


class InvalidCharacter(ValidationError):
    """Exception raised when Base32 text contains a character outside A-Z2-7.

    Example:
        >>> from warpgate_broker.base32 import decode
        >>> try:
        ...     decode("JBSWY3DP!")
        ... except InvalidCharacter as e:
        ...     print(e)
        Invalid Base32 character: '!'
    """

    pass


class InvalidSecretFormat(ValidationError):
    """Exception raised when a TOTP secret cannot be used to generate codes.

    A secret is rejected when it is empty, shorter than 16 Base32 characters
    (80 bits) after normalization, or contains non-Base32 characters. The
    generator never substitutes a default secret.
    """

    pass


class NotFoundError(BrokerError):
    """Exception raised when an operation addresses an unknown entity."""

    pass


class ServerNotFound(NotFoundError):
    """Exception raised when a server id is not present in the configuration.

    Example:
        >>> try:
        ...     await broker.update_server("wg-missing", {"name": "x"})
        ... except ServerNotFound as e:
        ...     print(e)
        Server wg-missing not found
    """

    pass
