"""
Notification Dispatcher — at-most-once alerts for new matches.

Behavioral Contract:
- A dedup key is marked as notified only after the sink confirms the send;
  a failed or refused send leaves it unmarked so a later cycle can retry
- The NotifiedSet is bounded; the oldest keys are evicted first and the key
  being added is never the one evicted
- Two entry points mutate the set: `notify_if_new` (inline, after an
  evaluation) and `reconcile` (periodic, against the match store)
- A key is claimed before the sink is awaited, so concurrent callers for the
  same key produce one send
- Sink failures of any kind never escalate past the dispatcher
- One dispatcher per session; its set is memory-only and dies with it
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Set

from streetly.errors import NotificationError, StoreFailure
from streetly.models.match import MatchRecord
from streetly.store.base import MatchStore, ProfileStore

logger = logging.getLogger(__name__)

MATCH_TITLE = "New Match Found!"
FALLBACK_NAME = "Someone"


class NotificationSink(Protocol):
    """Protocol for the local notification surface — pluggable backend."""

    async def ensure_permission(self) -> bool: ...

    async def send(self, title: str, body: str, payload: str) -> bool: ...


class LoggingSink:
    """Sink that writes alerts to the log. Always accepts."""

    async def ensure_permission(self) -> bool:
        return True

    async def send(self, title: str, body: str, payload: str) -> bool:
        logger.info("NOTIFY %s | %s [%s]", title, body, payload)
        return True


class InMemorySink:
    """Sink that keeps an outbox of everything it accepted."""

    def __init__(self, permitted: bool = True):
        self.permitted = permitted
        self.outbox: List[Dict[str, str]] = []

    async def ensure_permission(self) -> bool:
        return self.permitted

    async def send(self, title: str, body: str, payload: str) -> bool:
        self.outbox.append({
            "title": title,
            "body": body,
            "payload": payload,
            "sent_at": datetime.utcnow().isoformat(),
        })
        return True


class NotifiedSet:
    """Insertion-ordered, capacity-bounded set of dedup keys."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._keys: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> List[str]:
        """Add a key, evicting oldest entries first. Returns the evicted keys."""
        if key in self._keys:
            return []
        evicted = []
        while len(self._keys) >= self.capacity:
            old, _ = self._keys.popitem(last=False)
            evicted.append(old)
        self._keys[key] = None
        return evicted

    def keys(self) -> List[str]:
        return list(self._keys)

    def clear(self) -> None:
        self._keys.clear()


def dedup_key(record: MatchRecord, other_user_name: str) -> str:
    """Match id when present, else `name:score`."""
    if record.match_id:
        return record.match_id
    return f"{other_user_name}:{record.compatibility_score:.2f}"


class NotificationDispatcher:
    """Owns the NotifiedSet for one session."""

    def __init__(
        self,
        sink: NotificationSink,
        matches: Optional[MatchStore] = None,
        profiles: Optional[ProfileStore] = None,
        capacity: int = 100,
    ):
        self.sink = sink
        self.matches = matches
        self.profiles = profiles
        self.notified = NotifiedSet(capacity)
        self._pending: Set[str] = set()
        self._permission_granted: Optional[bool] = None

    async def _has_permission(self) -> bool:
        if self._permission_granted is None:
            try:
                granted = await self.sink.ensure_permission()
            except Exception:
                logger.exception("Notification permission check failed")
                return False
            self._permission_granted = bool(granted)
            if not self._permission_granted:
                logger.warning("Notification permission refused by the platform")
        return self._permission_granted

    def is_handled(self, key: str) -> bool:
        """True if the key was notified or a send for it is in flight."""
        return key in self.notified or key in self._pending

    async def notify_if_new(self, record: MatchRecord, other_user_name: str) -> bool:
        """Send an alert unless this match was already notified. True if sent."""
        key = dedup_key(record, other_user_name)
        if self.is_handled(key):
            logger.debug("Notification for %s already sent, skipping duplicate", key)
            return False

        # claimed before the first await; released on any failure
        self._pending.add(key)
        try:
            sent = await self._send(key, record, other_user_name)
        finally:
            self._pending.discard(key)
        if not sent:
            return False

        evicted = self.notified.add(key)
        if evicted:
            logger.debug("Evicted %d old notification keys", len(evicted))
        logger.info("Match notification sent for %s (%s)", key, other_user_name)
        return True

    async def _send(self, key: str, record: MatchRecord, other_user_name: str) -> bool:
        if not await self._has_permission():
            return False
        try:
            sent = await self.sink.send(
                MATCH_TITLE,
                f"You matched with {other_user_name}",
                f"match:{other_user_name}:{record.compatibility_score}",
            )
        except NotificationError as e:
            logger.warning("Failed to send match notification for %s: %s", key, e)
            return False
        except Exception:
            logger.exception("Notification sink crashed while sending %s", key)
            return False

        if not sent:
            logger.warning("Notification sink rejected alert for %s", key)
            return False
        return True

    async def _counterpart_name(self, record: MatchRecord, user_id: str) -> str:
        if self.profiles is None:
            return FALLBACK_NAME
        profile = await self.profiles.get_profile(record.counterpart_of(user_id))
        return profile.name if profile else FALLBACK_NAME

    async def reconcile(
        self,
        user_id: str,
        within: timedelta,
        current_time: Optional[datetime] = None,
    ) -> int:
        """
        Notify every match for `user_id` created inside the lookback window
        that has not been notified yet. Returns the number of alerts sent.
        Listing failures propagate; a failed name lookup skips that match.
        """
        if self.matches is None:
            raise RuntimeError("reconcile requires a match store")
        if current_time is None:
            current_time = datetime.utcnow()

        records = await self.matches.list_matches_for_user(user_id, since=current_time - within)
        sent = 0
        for record in records:
            # the key does not depend on the name once the record has an id
            if record.match_id and self.is_handled(dedup_key(record, FALLBACK_NAME)):
                continue
            try:
                name = await self._counterpart_name(record, user_id)
            except StoreFailure as e:
                logger.warning("Could not resolve counterpart for %s: %s", record.match_id, e)
                continue
            if self.is_handled(dedup_key(record, name)):
                continue
            if await self.notify_if_new(record, name):
                sent += 1

        logger.debug("Reconciled %d matches for %s, %d notified", len(records), user_id, sent)
        return sent

    def reset(self) -> None:
        self.notified.clear()
        self._permission_granted = None
