"""Cache of gateway tickets keyed by server and target.

A ticket is a gateway-issued credential that replaces password authentication
for a limited number of uses. The broker requests single-use tickets and
keeps them here until they are consumed or expire.

A ticket is valid when it has uses left (``-1`` means unlimited) and either
never expires or expires in the future. Invalid tickets are never returned;
``get`` evicts them as it finds them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, Optional

from .util import utcnow

logger = logging.getLogger("warpgate_broker.tickets")

UNLIMITED_USES = -1


@dataclass
class CachedTicket:
    """A ticket secret held for reuse.

    Attributes:
        server_id: Server the ticket was issued by.
        target_name: Target the ticket grants access to.
        secret: Ticket secret, used as ``ticket-<secret>`` SSH username.
        expires_at: Expiry time, or None when the ticket does not expire.
        uses_left: Remaining uses; ``-1`` is unlimited, ``0`` is exhausted.
    """

    server_id: str
    target_name: str
    secret: str
    expires_at: Optional[datetime] = None
    uses_left: int = 1

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if self.uses_left == 0:
            return False
        if self.expires_at is not None and self.expires_at <= (now or utcnow()):
            return False
        return True


def ticket_key(server_id: str, target_name: str) -> str:
    return f"{server_id}:{target_name}"


class TicketCache:
    """Tickets keyed by ``server_id:target_name``.

    Example:
        >>> cache = TicketCache()
        >>> cache.put(CachedTicket("wg-1", "db-01", "s3cret"))
        >>> cache.get("wg-1", "db-01").secret
        's3cret'
        >>> cache.invalidate("wg-1", "db-01")
        >>> cache.get("wg-1", "db-01") is None
        True
    """

    def __init__(self) -> None:
        self._tickets: Dict[str, CachedTicket] = {}

    def __len__(self) -> int:
        return len(self._tickets)

    def __contains__(self, key: str) -> bool:
        return key in self._tickets

    def __iter__(self) -> Iterator[CachedTicket]:
        return iter(list(self._tickets.values()))

    def get(
        self, server_id: str, target_name: str, now: Optional[datetime] = None
    ) -> Optional[CachedTicket]:
        """Return the valid ticket for a target, evicting an invalid one."""
        key = ticket_key(server_id, target_name)
        ticket = self._tickets.get(key)
        if ticket is None:
            return None
        if not ticket.is_valid(now):
            logger.debug(f"evicting stale ticket {key=} {ticket.uses_left=}")
            del self._tickets[key]
            return None
        return ticket

    def put(self, ticket: CachedTicket) -> None:
        self._tickets[ticket_key(ticket.server_id, ticket.target_name)] = ticket

    def invalidate(self, server_id: str, target_name: str) -> None:
        """Record one use of a ticket; exhausted tickets are evicted.

        Unlimited tickets are left untouched. Unknown keys are ignored.
        """
        key = ticket_key(server_id, target_name)
        ticket = self._tickets.get(key)
        if ticket is None:
            return
        if ticket.uses_left > 0:
            ticket.uses_left -= 1
        if ticket.uses_left == 0:
            logger.debug(f"ticket {key=} exhausted")
            del self._tickets[key]

    def clear_server(self, server_id: str) -> None:
        prefix = f"{server_id}:"
        for key in [key for key in self._tickets if key.startswith(prefix)]:
            del self._tickets[key]

    def clear(self) -> None:
        self._tickets.clear()
