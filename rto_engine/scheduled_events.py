"""
scheduled_events.py - Contract Event Scheduler

Heap of future contract checks, drained by the external cron through
ContractService.run_due_events(). Events are plain data and handlers are
plain functions; the contract audit log records whatever a handler changes.

Core concepts:
1. Event: when to check which installment of which contract
2. EventScheduler: due-event retrieval with de-duplication by event_id
3. Handlers: functions (event) -> result or None
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
import heapq


ACTION_GRACE_EXPIRY = "grace_expiry"


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Event:
    """
    A scheduled check on one contract.

    Ordered by trigger_time, then priority (lower first), then contract_id
    and payment_number, so a drain is deterministic.

    Attributes:
        trigger_time: Naive UTC instant the check becomes due
        priority: Order among events with the same trigger_time
        contract_id: Contract the check applies to
        action: Handler key, e.g. "grace_expiry"
        payment_number: Installment the check is about (None if not per-installment)
    """
    trigger_time: datetime
    priority: int = 0
    contract_id: str = ""
    action: str = ""
    payment_number: Optional[int] = None

    def sort_key(self) -> Tuple[datetime, int, str, int]:
        return (self.trigger_time, self.priority, self.contract_id, self.payment_number or 0)

    def __lt__(self, other: Event) -> bool:
        return self.sort_key() < other.sort_key()

    @property
    def event_id(self) -> str:
        """Deterministic id; two events with the same id are the same check."""
        number = "" if self.payment_number is None else f"#{self.payment_number}"
        return f"{self.action}:{self.contract_id}{number}@{self.trigger_time.isoformat()}"


# ============================================================================
# EVENT SCHEDULER
# ============================================================================

EventHandler = Callable[[Event], Any]


class EventScheduler:
    """
    Priority queue of contract events keyed by event_id.

    An id is accepted once: scheduling an event that is already queued or
    has already run is a no-op. An event whose handler raised is neither
    queued nor done, so it can be scheduled again.

    Not thread-safe; ContractService guards it with its own lock.
    """

    def __init__(self):
        self._heap: List[Event] = []
        self._handlers: Dict[str, EventHandler] = {}
        self._queued: Set[str] = set()
        self._done: Set[str] = set()

    def register(self, action: str, handler: EventHandler) -> None:
        self._handlers[action] = handler

    def schedule(self, event: Event) -> str:
        """Queue an event unless its id is queued or done. Returns the event_id."""
        event_id = event.event_id
        if event_id not in self._queued and event_id not in self._done:
            self._queued.add(event_id)
            heapq.heappush(self._heap, event)
        return event_id

    def schedule_many(self, events: Iterable[Event]) -> List[str]:
        return [self.schedule(event) for event in events]

    def get_due(self, as_of: datetime) -> List[Event]:
        """Pop every event with trigger_time <= as_of, earliest first."""
        due = []
        while self._heap and self._heap[0].trigger_time <= as_of:
            event = heapq.heappop(self._heap)
            self._queued.discard(event.event_id)
            due.append(event)
        return due

    def execute(self, event: Event) -> Any:
        """
        Run the handler registered for the event's action.

        Events without a handler are dropped and return None. A handler
        exception propagates and the event is not marked done.
        """
        handler = self._handlers.get(event.action)
        if handler is None:
            return None
        result = handler(event)
        self._done.add(event.event_id)
        return result

    def step(self, as_of: datetime) -> List[Any]:
        """Run everything due at ``as_of``; returns the non-None handler results."""
        results = []
        for event in self.get_due(as_of):
            result = self.execute(event)
            if result is not None:
                results.append(result)
        return results

    def pending_count(self) -> int:
        return len(self._heap)

    def peek_next(self) -> Optional[Event]:
        return self._heap[0] if self._heap else None


# ============================================================================
# GRACE PERIOD EVENTS
# ============================================================================

def grace_expiry_time(due_date: date, grace_period_days: int) -> datetime:
    """
    First instant after the grace window of an installment.

    A payment due on D with a grace of g days may still be captured on
    D + g; it is overdue from midnight starting D + g + 1.
    """
    return datetime.combine(due_date + timedelta(days=grace_period_days + 1), time.min)


def grace_expiry_event(
    contract_id: str,
    payment_number: int,
    due_date: date,
    grace_period_days: int,
) -> Event:
    """The check that defaults a contract if installment ``payment_number`` is still unpaid."""
    return Event(
        trigger_time=grace_expiry_time(due_date, grace_period_days),
        contract_id=contract_id,
        action=ACTION_GRACE_EXPIRY,
        payment_number=payment_number,
    )
