import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from mailledger.core.config import settings
from mailledger.core.constants import MailProvider
from mailledger.core.exceptions import OAuthStateError


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: int
    provider: MailProvider
    created_at: float


class OAuthStateStore:
    """
    Pending authorization redirects keyed by their state parameter.

    Entries are single-use, expire after `ttl_seconds`, and the store never
    holds more than `max_entries` (oldest evicted first). Safe to share
    between request threads.
    """

    def __init__(self, ttl_seconds: int, max_entries: int, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, PendingAuthorization]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def _purge_expired(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        # insertion order == age order
        while self._entries:
            state, pending = next(iter(self._entries.items()))
            if pending.created_at > cutoff:
                break
            self._entries.pop(state)

    def put(self, state: str, user_id: int, provider: MailProvider) -> None:
        with self._lock:
            self._purge_expired()
            self._entries.pop(state, None)
            self._entries[state] = PendingAuthorization(user_id, provider, self._clock())
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def pop(self, state: str, provider: Optional[MailProvider] = None) -> PendingAuthorization:
        """Consume a state. Raises OAuthStateError if unknown, expired or for another provider."""
        with self._lock:
            self._purge_expired()
            pending = self._entries.pop(state, None)

        if pending is None:
            raise OAuthStateError("Invalid or expired authorization state")
        if provider is not None and pending.provider != provider:
            raise OAuthStateError("Authorization state was issued for a different provider")
        return pending


oauth_state_store = OAuthStateStore(
    ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
    max_entries=settings.OAUTH_STATE_MAX_ENTRIES,
)
