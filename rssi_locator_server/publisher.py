"""Fan-out of position updates to subscribers.

Every subscriber owns a bounded buffer. When a subscriber falls behind, the
oldest queued estimate is dropped to make room for the newest one, so
``publish`` never waits on a consumer.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Iterator, List, Optional

from .models import Estimate


logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, publisher: "UpdatePublisher", maxsize: int, name: str = ""):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.name = name
        self.maxsize = maxsize
        self.dropped = 0
        self._publisher = publisher
        self._queue: Deque[Estimate] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, estimate: Estimate) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self.maxsize:
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    logger.warning(
                        "Subscriber %s is falling behind, %d updates dropped",
                        self.name or id(self),
                        self.dropped,
                    )
            self._queue.append(estimate)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Estimate]:
        """Next estimate, or None on timeout or once the subscription is closed and empty."""
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> List[Estimate]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def __iter__(self) -> Iterator[Estimate]:
        while True:
            estimate = self.get()
            if estimate is None:
                if self._closed:
                    return
                continue
            yield estimate

    def close(self) -> None:
        self._publisher.unsubscribe(self)
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class UpdatePublisher:
    """Delivers each estimate to every current subscriber."""

    def __init__(self, default_buffer_size: int = 256):
        self.default_buffer_size = default_buffer_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self, maxsize: Optional[int] = None, name: str = "") -> Subscription:
        sub = Subscription(self, maxsize or self.default_buffer_size, name=name)
        with self._lock:
            self._subscribers.append(sub)
        logger.info("Subscriber %s added (buffer %d)", name or id(sub), sub.maxsize)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, estimate: Estimate) -> int:
        """Queue ``estimate`` for all subscribers; returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers)
            self.published += 1
        for sub in subscribers:
            sub._offer(estimate)
        return len(subscribers)

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.close()
