# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Priority dispatcher for outgoing mesh traffic.

Every send a node makes (originated, relayed or multi-path) goes through
one PriorityDispatcher. Items are ordered by:

1. QoS class, descending (critical > real_time > sync > bulk)
2. Reputation score of the item's declared source peer, descending
3. Enqueue time, ascending (FIFO tie-break)

A bounded number of sends are in flight at once. Failed sends are requeued
with retry_count + 1 and a fresh timestamp, which puts them behind items of
the same class and score, until the retry ceiling is reached. When the queue
is full the lowest-ordered item loses: a new critical item evicts the
youngest low-priority item, while a new bulk item arriving at a queue
full of older bulk items is itself rejected.

The dispatcher runs in one of two modes:
- start(): background dispatch thread feeding a worker pool
- drain(): synchronous dispatch on the caller's thread, used by tests and
  the simulated mesh
"""

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from .reputation import NEUTRAL_SCORE

if TYPE_CHECKING:
    from .reputation import ReputationEngine
    from .transport import Transport

logger = logging.getLogger(__name__)


class QosClass(Enum):
    """Priority tier assigned to outgoing traffic."""
    CRITICAL = "critical"
    REAL_TIME = "real_time"
    SYNC = "sync"
    BULK = "bulk"

    @property
    def rank(self) -> int:
        """Numeric priority (higher is more urgent)."""
        return _QOS_RANK[self]


_QOS_RANK = {
    QosClass.CRITICAL: 4,
    QosClass.REAL_TIME: 3,
    QosClass.SYNC: 2,
    QosClass.BULK: 1,
}


CompletionCallback = Callable[["QueuedItem", bool], None]


@dataclass
class QueuedItem:
    """
    One outgoing send owned by the dispatcher.

    Attributes:
        payload: Raw bytes handed to the transport
        destination_id: Adjacent peer the bytes are sent to
        qos_class: Priority tier
        source_peer_id: Peer the traffic is declared to come from
        enqueue_time: Monotonic time of (re)enqueue
        retry_count: Failed send attempts so far
        item_id: Identifier used for withdrawal and duplicate suppression
        source_score: Reputation of source_peer_id captured at enqueue
        on_complete: Called once with (item, success) when the item leaves
            the dispatcher for good
    """
    payload: bytes
    destination_id: str
    qos_class: QosClass = QosClass.SYNC
    source_peer_id: Optional[str] = None
    enqueue_time: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    source_score: float = NEUTRAL_SCORE
    on_complete: Optional[CompletionCallback] = field(default=None, repr=False, compare=False)
    sequence: int = 0

    def sort_key(self) -> Tuple[int, float, float, int]:
        return (-self.qos_class.rank, -self.source_score, self.enqueue_time, self.sequence)


@dataclass
class EnqueueResult:
    """Outcome of an enqueue: whether it was accepted and what was dropped."""
    accepted: bool
    item: QueuedItem
    dropped: Optional[QueuedItem] = None
    reason: Optional[str] = None


class PriorityDispatcher:
    """
    Orders, rate-limits and retries every outgoing send of a node.

    The queue lock is only held to push or pop one item; it is never held
    across a transport call.

    Attributes:
        max_concurrent_sends: Sends allowed in flight at once
        capacity: Hard queue size limit
        max_retries: Requeues allowed after the first failed attempt
        stats: Processed/dropped counters
    """

    def __init__(
        self,
        transport: "Transport",
        reputation: Optional["ReputationEngine"] = None,
        max_concurrent_sends: int = 5,
        capacity: int = 1000,
        max_retries: int = 3,
        history_size: int = 1000
    ):
        self.transport = transport
        self.reputation = reputation
        self.max_concurrent_sends = max(1, max_concurrent_sends)
        self.capacity = max(1, capacity)
        self.max_retries = max(0, max_retries)

        self._heap: List[Tuple[Tuple, int, str]] = []
        self._items: Dict[str, QueuedItem] = {}
        self._tokens: Dict[str, int] = {}
        self._counter = itertools.count()
        self._history: Deque[str] = deque(maxlen=max(1, history_size))
        self._history_set: Set[str] = set()
        self._in_flight = 0
        self._cond = threading.Condition()

        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._on_drop: Optional[Callable[[QueuedItem, str], None]] = None

        self.stats = {
            "enqueued": 0,
            "sent": 0,
            "failed_sends": 0,
            "retries": 0,
            "rejected": 0,
            "dropped": 0,
            "withdrawn": 0,
            "sent_by_class": {q.value: 0 for q in QosClass},
            "dropped_by_class": {q.value: 0 for q in QosClass},
        }

        logger.info(
            f"PriorityDispatcher initialized: max_concurrent_sends={self.max_concurrent_sends}, "
            f"capacity={self.capacity}, max_retries={self.max_retries}"
        )

    # =========================================================================
    # Enqueue / withdraw
    # =========================================================================

    def enqueue(self, item: QueuedItem) -> EnqueueResult:
        """
        Add an item to the queue.

        Returns:
            EnqueueResult naming the item dropped to make room, or the
            reason the new item was rejected
        """
        return self._admit(item, requeue=False)

    def _admit(self, item: QueuedItem, requeue: bool) -> EnqueueResult:
        if self.reputation and item.source_peer_id:
            item.source_score = self.reputation.get_score_value(item.source_peer_id)
        else:
            item.source_score = NEUTRAL_SCORE

        evicted = None
        with self._cond:
            if item.item_id in self._items or item.item_id in self._history_set:
                self.stats["rejected"] += 1
                duplicate = True
            else:
                duplicate = False
                item.sequence = next(self._counter)
                full = len(self._items) >= self.capacity
                if full:
                    worst = max(self._items.values(), key=lambda i: i.sort_key())
                    if item.sort_key() < worst.sort_key():
                        evicted = self._remove(worst.item_id)
                        full = False
                if full:
                    self.stats["rejected"] += 1
                    self.stats["dropped_by_class"][item.qos_class.value] += 1
                else:
                    self._push(item)
                    if not requeue:
                        self.stats["enqueued"] += 1
                    if evicted is not None:
                        self.stats["dropped"] += 1
                        self.stats["dropped_by_class"][evicted.qos_class.value] += 1
                    self._cond.notify_all()

        if duplicate:
            logger.debug(f"Ignoring duplicate enqueue of {item.item_id}")
            return EnqueueResult(accepted=False, item=item, reason="duplicate")

        if full:
            logger.warning(
                f"Dispatch queue full, rejected {item.qos_class.value} item {item.item_id}"
            )
            self._notify_dropped(item, "queue_full")
            return EnqueueResult(accepted=False, item=item, reason="queue_full")

        if evicted is not None:
            logger.warning(
                f"Dispatch queue full, evicted {evicted.qos_class.value} item "
                f"{evicted.item_id} for {item.qos_class.value} item {item.item_id}"
            )
            self._notify_dropped(evicted, "evicted")

        logger.debug(
            f"Enqueued {item.item_id} -> {item.destination_id}: "
            f"qos={item.qos_class.value}, score={item.source_score:.2f}"
        )
        return EnqueueResult(accepted=True, item=item, dropped=evicted)

    def withdraw(self, item_id: str) -> Optional[QueuedItem]:
        """
        Remove a not-yet-dispatched item from the queue.

        Returns:
            The withdrawn item, or None if it is unknown or already in flight
        """
        with self._cond:
            item = self._remove(item_id)
            if item is not None:
                self.stats["withdrawn"] += 1

        if item is not None:
            logger.debug(f"Withdrew item {item_id} for {item.destination_id}")
            self._finish(item, False)
        return item

    def withdraw_destination(self, peer_id: str) -> List[QueuedItem]:
        """Withdraw every queued item addressed to one peer."""
        with self._cond:
            ids = [i.item_id for i in self._items.values() if i.destination_id == peer_id]
        withdrawn = [item for item in (self.withdraw(i) for i in ids) if item is not None]
        if withdrawn:
            logger.info(f"Withdrew {len(withdrawn)} queued items for {peer_id}")
        return withdrawn

    def _push(self, item: QueuedItem) -> None:
        token = next(self._counter)
        self._items[item.item_id] = item
        self._tokens[item.item_id] = token
        heapq.heappush(self._heap, (item.sort_key(), token, item.item_id))

    def _remove(self, item_id: str) -> Optional[QueuedItem]:
        # heap entry is left behind and skipped by _pop_next
        self._tokens.pop(item_id, None)
        item = self._items.pop(item_id, None)
        if len(self._heap) > 2 * len(self._items):
            self._compact()
        return item

    def _compact(self) -> None:
        """Drop heap entries whose item was evicted or withdrawn."""
        self._heap = [
            entry for entry in self._heap
            if self._tokens.get(entry[2]) == entry[1]
        ]
        heapq.heapify(self._heap)

    def _pop_next(self) -> Optional[QueuedItem]:
        while self._heap:
            _, token, item_id = heapq.heappop(self._heap)
            if self._tokens.get(item_id) != token:
                continue
            del self._tokens[item_id]
            return self._items.pop(item_id)
        return None

    # =========================================================================
    # Dispatch
    # =========================================================================

    def start(self) -> None:
        """Start the background dispatch loop."""
        if self.running:
            logger.warning("PriorityDispatcher already running")
            return

        self.running = True
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_sends, thread_name_prefix="mesh-send"
        )
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True)
        self._thread.start()
        logger.info("PriorityDispatcher started")

    def stop(self) -> None:
        """Stop the dispatch loop; queued items stay queued."""
        with self._cond:
            self.running = False
            self._cond.notify_all()

        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None

        logger.info("PriorityDispatcher stopped")

    def _dispatch_loop(self) -> None:
        logger.debug("Dispatch loop started")

        while self.running:
            with self._cond:
                while self.running and (
                    not self._items or self._in_flight >= self.max_concurrent_sends
                ):
                    self._cond.wait(timeout=0.5)
                if not self.running:
                    break
                item = self._pop_next()
                if item is None:
                    continue
                self._in_flight += 1

            try:
                self._executor.submit(self._send_item, item)
            except RuntimeError as e:
                logger.error(f"Dispatch pool unavailable for {item.item_id}: {e}")
                self._complete(item, False)

    def drain(self, max_items: Optional[int] = None) -> int:
        """
        Dispatch queued items synchronously on the calling thread.

        Args:
            max_items: Stop after this many send attempts (default: until empty)

        Returns:
            Number of send attempts made
        """
        attempts = 0
        while max_items is None or attempts < max_items:
            with self._cond:
                item = self._pop_next()
                if item is None:
                    break
                self._in_flight += 1
            self._send_item(item)
            attempts += 1
        return attempts

    def _send_item(self, item: QueuedItem) -> None:
        try:
            success = bool(self.transport.send(item.destination_id, item.payload))
        except Exception as e:
            logger.warning(f"Send of {item.item_id} to {item.destination_id} raised: {e}")
            success = False
        self._complete(item, success)

    def _complete(self, item: QueuedItem, success: bool) -> None:
        requeued = False
        exhausted = False

        with self._cond:
            self._in_flight -= 1
            if success:
                self.stats["sent"] += 1
                self.stats["sent_by_class"][item.qos_class.value] += 1
                self._remember(item.item_id)
            else:
                self.stats["failed_sends"] += 1
                if item.retry_count < self.max_retries:
                    item.retry_count += 1
                    item.enqueue_time = time.monotonic()
                    self.stats["retries"] += 1
                    requeued = True
                else:
                    exhausted = True
                    self.stats["dropped"] += 1
                    self.stats["dropped_by_class"][item.qos_class.value] += 1
            self._cond.notify_all()

        if requeued:
            logger.debug(
                f"Send of {item.item_id} to {item.destination_id} failed, "
                f"requeue {item.retry_count}/{self.max_retries}"
            )
            self._requeue(item)
        elif exhausted:
            logger.warning(
                f"Dropping {item.item_id} for {item.destination_id} "
                f"after {item.retry_count + 1} failed attempts"
            )
            self._notify_dropped(item, "retries_exhausted")
        else:
            self._finish(item, True)

    def _requeue(self, item: QueuedItem) -> None:
        self._admit(item, requeue=True)

    def _remember(self, item_id: str) -> None:
        if len(self._history) == self._history.maxlen:
            self._history_set.discard(self._history[0])
        self._history.append(item_id)
        self._history_set.add(item_id)

    def _notify_dropped(self, item: QueuedItem, reason: str) -> None:
        if self._on_drop:
            try:
                self._on_drop(item, reason)
            except Exception as e:
                logger.error(f"Drop handler failed for {item.item_id}: {e}")
        self._finish(item, False)

    def _finish(self, item: QueuedItem, success: bool) -> None:
        if item.on_complete:
            try:
                item.on_complete(item, success)
            except Exception as e:
                logger.error(f"Completion callback failed for {item.item_id}: {e}")

    # =========================================================================
    # Queries
    # =========================================================================

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and nothing is in flight."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._items and self._in_flight == 0, timeout=timeout
            )

    @property
    def size(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def is_idle(self) -> bool:
        with self._cond:
            return not self._items and self._in_flight == 0

    def peek(self) -> Optional[QueuedItem]:
        """Get the item that would be dispatched next, without removing it."""
        with self._cond:
            if not self._items:
                return None
            return min(self._items.values(), key=lambda i: i.sort_key())

    def has_critical_items(self) -> bool:
        with self._cond:
            return any(i.qos_class == QosClass.CRITICAL for i in self._items.values())

    def items_by_class(self, qos_class: QosClass) -> List[QueuedItem]:
        with self._cond:
            items = [i for i in self._items.values() if i.qos_class == qos_class]
        return sorted(items, key=lambda i: i.sort_key())

    def is_sending_limit_reached(self) -> bool:
        with self._cond:
            return (
                len(self._items) >= self.capacity
                or self._in_flight >= self.max_concurrent_sends
            )

    def on_drop(self, callback: Callable[[QueuedItem, str], None]) -> None:
        """Set callback for items dropped by overflow or retry exhaustion."""
        self._on_drop = callback

    def get_statistics(self) -> Dict:
        with self._cond:
            by_class = {q.value: 0 for q in QosClass}
            for item in self._items.values():
                by_class[item.qos_class.value] += 1
            return {
                "queue_size": len(self._items),
                "in_flight": self._in_flight,
                "queued_by_class": by_class,
                **{k: (dict(v) if isinstance(v, dict) else v) for k, v in self.stats.items()},
            }
