"""Top-level package for the Warpgate session broker."""

__version__ = "0.1.0"

from .api import GatewayApiClient
from .broker import SessionBroker
from .config import MemoryConfigStore, YamlConfigStore
from .exceptions import (
    BrokerError,
    InvalidCharacter,
    InvalidSecretFormat,
    NotFoundError,
    ServerNotFound,
    ValidationError,
)
from .ssh import connect_target, open_sftp
from .tickets import CachedTicket, TicketCache

__all__ = [
    "GatewayApiClient",
    "SessionBroker",
    "MemoryConfigStore",
    "YamlConfigStore",
    "BrokerError",
    "ValidationError",
    "InvalidCharacter",
    "InvalidSecretFormat",
    "NotFoundError",
    "ServerNotFound",
    "connect_target",
    "open_sftp",
    "CachedTicket",
    "TicketCache",
]
