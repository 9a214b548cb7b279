"""
Update Broadcaster
------------------
Fan-out of push-feed messages (price_update, position_update,
liquidation_alert) to subscribers.

Every subscriber owns a bounded buffer. When it is full the oldest message
is dropped, so a slow consumer never stalls price processing for the rest.
"""
import asyncio
import logging
import threading
from collections import deque
from typing import Any, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class Subscriber:
    """
    One consumer of the push feed.

    Read with `await get()`, `async for`, or `drain()` for synchronous callers.
    """

    def __init__(self, name: str, maxsize: int, message_types: Optional[Iterable[type]] = None,
                 symbols: Optional[Iterable[str]] = None):
        if maxsize <= 0:
            raise ValueError(f"Subscriber queue size must be positive, got {maxsize}")
        self.name = name
        self.maxsize = maxsize
        self.message_types = tuple(message_types) if message_types else None
        self.symbols: Optional[Set[str]] = set(symbols) if symbols else None
        self.dropped = 0
        self.delivered = 0
        self.closed = False

        self._buffer: deque = deque(maxlen=maxsize)
        self._ready = asyncio.Event()
        # Loop of the reader blocked in get(); publishers may run on other threads
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def wants(self, message: Any) -> bool:
        if self.message_types and not isinstance(message, self.message_types):
            return False
        if self.symbols is not None and getattr(message, "symbol", None) not in self.symbols:
            return False
        return True

    def put(self, message: Any) -> bool:
        """Buffers a message. Returns False when the oldest one had to be dropped."""
        dropped = len(self._buffer) == self.maxsize
        if dropped:
            self.dropped += 1
            logger.debug(f"Subscriber {self.name} full, dropping oldest message")
        self._buffer.append(message)
        self.delivered += 1
        self._wake()
        return not dropped

    def pending(self) -> int:
        return len(self._buffer)

    def get_nowait(self) -> Optional[Any]:
        if not self._buffer:
            return None
        return self._buffer.popleft()

    def drain(self) -> List[Any]:
        messages = list(self._buffer)
        self._buffer.clear()
        self._ready.clear()
        return messages

    async def get(self) -> Any:
        """Waits for the next message; raises StopAsyncIteration once closed and empty."""
        while not self._buffer:
            if self.closed:
                raise StopAsyncIteration
            self._loop = asyncio.get_running_loop()
            self._ready.clear()
            if self._buffer or self.closed:
                continue
            await self._ready.wait()
        return self._buffer.popleft()

    def close(self):
        self.closed = True
        self._wake()

    def _wake(self):
        loop = self._loop
        if loop is None or loop.is_closed():
            self._ready.set()
        else:
            loop.call_soon_threadsafe(self._ready.set)

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()


class UpdateBroadcaster:
    """
    Thread-safe registry of subscribers; publish never blocks.
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: List[Subscriber] = []
        self._lock = threading.RLock()
        self.published = 0

    def subscribe(self, name: str, message_types: Optional[Iterable[type]] = None,
                  symbols: Optional[Iterable[str]] = None,
                  queue_size: Optional[int] = None) -> Subscriber:
        subscriber = Subscriber(name, queue_size or self.queue_size, message_types, symbols)
        with self._lock:
            self._subscribers.append(subscriber)
        logger.info(f"Subscriber {name} registered ({len(self._subscribers)} total)")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        """Removes a subscriber from the fan-out set. Monitor state is untouched."""
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        subscriber.close()
        logger.info(f"Subscriber {subscriber.name} removed")

    def publish(self, message: Any) -> int:
        """Delivers to every interested subscriber; returns how many received it."""
        with self._lock:
            targets = [s for s in self._subscribers if s.wants(message)]
            self.published += 1
        for subscriber in targets:
            subscriber.put(message)
        return len(targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def dropped_total(self) -> int:
        with self._lock:
            return sum(s.dropped for s in self._subscribers)
