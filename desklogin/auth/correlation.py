"""Pending-login correlation store.

Maps the provider-issued ``state`` value of each started login to the
context needed to complete it. Entries are consumed exactly once: a
lookup removes the entry, so a callback can never be replayed.
"""

from __future__ import annotations

import logging
import threading
import time

from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from ..types import CorrelationId, PendingLogin


logger = logging.getLogger("desklogin.auth")


class CorrelationStore:
    """Thread-safe one-time store of pending logins.

    Every operation holds a single lock for the duration of one dict
    mutation; no I/O happens under the lock.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._pending: dict[CorrelationId, PendingLogin] = {}
        self._lock = threading.Lock()

    def put(self, correlation_id: CorrelationId, pending: PendingLogin) -> None:
        """Store a pending login.

        A second ``put`` for the same id replaces the first (last writer
        wins). Ids are provider-generated and expected to be unique.

        Parameters
        ----------
        correlation_id : str
            The ``state`` value of the authorization request.
        pending : PendingLogin
            The context needed to complete the login.
        """
        with self._lock:
            replaced = correlation_id in self._pending
            self._pending[correlation_id] = pending
        if replaced:
            logger.warning("Pending login %s replaced by a newer one", correlation_id)

    def take_and_remove(self, correlation_id: CorrelationId | None) -> PendingLogin | None:
        """Atomically remove and return the pending login for an id.

        Parameters
        ----------
        correlation_id : str or None
            The ``state`` value received on the callback.

        Returns
        -------
        PendingLogin or None
            The stored login, or None if unknown or already consumed.
        """
        if not correlation_id:
            return None
        with self._lock:
            return self._pending.pop(correlation_id, None)

    def purge_expired(self, max_age: float, now: float | None = None) -> list[PendingLogin]:
        """Remove and return logins started more than ``max_age`` seconds ago.

        Parameters
        ----------
        max_age : float
            Maximum age in seconds.
        now : float, optional
            Reference Unix timestamp (defaults to the current time).

        Returns
        -------
        list[PendingLogin]
            The removed logins.
        """
        reference = time.time() if now is None else now
        with self._lock:
            expired = [
                key
                for key, pending in self._pending.items()
                if reference - pending.created_at > max_age
            ]
            return [self._pending.pop(key) for key in expired]

    def clear(self) -> list[PendingLogin]:
        """Remove and return every pending login."""
        with self._lock:
            drained = list(self._pending.values())
            self._pending.clear()
        return drained

    def __contains__(self, correlation_id: object) -> bool:
        with self._lock:
            return correlation_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
