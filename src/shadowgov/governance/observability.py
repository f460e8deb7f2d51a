"""
Audit trail for governance events.

Events are appended to a hash-chained, in-process log that keeps the most
recent ``max_events`` entries. Vote events carry only the poll and vote ids
and are stamped with the ballot's displayed time, so the trail can never pair
a True Self ballot with a Shadow ballot or reveal when either was cast.
"""

import logging

logger = logging.getLogger(__name__)
import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from ..crypto.hashing import SHA256Hasher


class EventType(Enum):
    """Types of governance events."""

    POLL_CREATED = "poll_created"
    POLL_WITHDRAWN = "poll_withdrawn"
    POLL_CLOSED = "poll_closed"
    POLL_RESOLVED = "poll_resolved"

    VOTE_CAST = "vote_cast"
    VOTE_CHANGED = "vote_changed"

    DELEGATION_CREATED = "delegation_created"
    DELEGATION_REVOKED = "delegation_revoked"

    STAKE_PLACED = "stake_placed"
    STAKES_SETTLED = "stakes_settled"

    PARAMETER_CHANGED = "parameter_changed"

    ROLLBACK_INITIATED = "rollback_initiated"
    ROLLBACK_SIGNED = "rollback_signed"
    ROLLBACK_EXECUTED = "rollback_executed"
    ROLLBACK_EXPIRED = "rollback_expired"


@dataclass
class GovernanceEvent:
    """A governance event for the audit trail."""

    event_type: EventType
    poll_id: Optional[str] = None
    subject_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    previous_event_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def __post_init__(self):
        self.event_hash = self.calculate_hash()

    def calculate_hash(self) -> str:
        """Calculate hash of this event."""
        event_data = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "poll_id": self.poll_id,
            "subject_id": self.subject_id,
            "metadata": self.metadata,
            "previous_event_hash": self.previous_event_hash,
        }
        return SHA256Hasher.hash(json.dumps(event_data, sort_keys=True, default=str)).to_hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "poll_id": self.poll_id,
            "subject_id": self.subject_id,
            "metadata": self.metadata,
            "event_hash": self.event_hash,
            "previous_event_hash": self.previous_event_hash,
        }


class GovernanceAuditTrail:
    """Append-only, hash-chained log of governance events.

    Once ``max_events`` is reached the oldest event is dropped from both the
    global log and its poll's log; the chain stays verifiable from the oldest
    retained event onward.
    """

    def __init__(
        self, clock: Callable[[], float] = time.time, max_events: int = 10_000
    ):
        self.clock = clock
        self.max_events = max_events
        self.events: Deque[GovernanceEvent] = deque()
        self.poll_events: Dict[str, Deque[GovernanceEvent]] = {}
        self.evicted = 0
        self._last_hash: Optional[str] = None
        self._listeners: Dict[EventType, List[Callable[[GovernanceEvent], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self, event_type: EventType, listener: Callable[[GovernanceEvent], None]
    ) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def record(
        self,
        event_type: EventType,
        poll_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        timestamp: Optional[float] = None,
        **metadata,
    ) -> GovernanceEvent:
        """Append an event and notify listeners.

        ``timestamp`` defaults to the trail's clock.
        """
        with self._lock:
            event = GovernanceEvent(
                event_type=event_type,
                poll_id=poll_id,
                subject_id=subject_id,
                metadata=metadata,
                timestamp=self.clock() if timestamp is None else timestamp,
            )
            event.previous_event_hash = self._last_hash
            event.event_hash = event.calculate_hash()
            self._last_hash = event.event_hash
            self.events.append(event)
            if poll_id:
                self.poll_events.setdefault(poll_id, deque()).append(event)
            while len(self.events) > self.max_events:
                self._evict_oldest()

        for listener in self._listeners.get(event_type, []):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Audit listener for {event_type.value} failed: {e}")
        return event

    def _evict_oldest(self) -> None:
        oldest = self.events.popleft()
        self.evicted += 1
        if oldest.poll_id:
            retained = self.poll_events[oldest.poll_id]
            retained.popleft()
            if not retained:
                del self.poll_events[oldest.poll_id]

    def get_poll_events(self, poll_id: str) -> List[GovernanceEvent]:
        with self._lock:
            return list(self.poll_events.get(poll_id, ()))

    def events_of_type(self, event_type: EventType) -> List[GovernanceEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def verify_integrity(self) -> bool:
        """Verify every retained event hash and the chain linking them."""
        with self._lock:
            previous = None
            for event in self.events:
                if event.event_hash != event.calculate_hash():
                    return False
                if previous is not None and event.previous_event_hash != previous.event_hash:
                    return False
                previous = event
        return True

    def get_audit_summary(self) -> Dict[str, Any]:
        event_counts: Dict[str, int] = {}
        with self._lock:
            for event in self.events:
                key = event.event_type.value
                event_counts[key] = event_counts.get(key, 0) + 1
            total = len(self.events)
            polls = len(self.poll_events)
            evicted = self.evicted
        return {
            "total_events": total,
            "evicted_events": evicted,
            "event_counts": event_counts,
            "unique_polls": polls,
            "integrity_verified": self.verify_integrity(),
        }
