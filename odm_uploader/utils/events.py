from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple
import asyncio
import logging
logger = logging.getLogger(__name__)

UPLOAD_PROGRESS = "upload-progress"
WEBODM_PROGRESS = "webodm-progress"
COMMIT_PROGRESS = "commit-progress"


class EventEmitter:
    """
    Simple event emitter for progress events.

    Every emission goes through one FIFO queue drained under a lock, so
    listeners see events in the order they were produced, including the
    ones queued from synchronous transport callbacks via emit_nowait().
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._pending: Deque[Tuple[str, tuple, dict]] = deque()
        self._lock = asyncio.Lock()
        self._drain_tasks: Set[asyncio.Task] = set()
        self._draining: Optional[asyncio.Task] = None

    def on(self, event_name: str, callback: Callable):
        """Subscribe to an event."""
        if event_name not in self._listeners:
            self._listeners[event_name] = []
        if callback not in self._listeners[event_name]:
            self._listeners[event_name].append(callback)

    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if event_name in self._listeners:
            if callback in self._listeners[event_name]:
                self._listeners[event_name].remove(callback)

    async def emit(self, event_name: str, *args, **kwargs):
        """Emit an event and wait until it (and everything before it) is delivered."""
        self._pending.append((event_name, args, kwargs))
        await self._drain()

    def emit_nowait(self, event_name: str, *args, **kwargs):
        """Queue an event from synchronous code; delivered on the next drain."""
        self._pending.append((event_name, args, kwargs))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._drain())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

    async def flush(self):
        """Deliver anything still queued."""
        await self._drain()

    async def _drain(self):
        # Emitting from inside a listener only queues; the running drain delivers it.
        if self._draining is not None and self._draining is asyncio.current_task():
            return
        async with self._lock:
            self._draining = asyncio.current_task()
            try:
                while self._pending:
                    event_name, args, kwargs = self._pending.popleft()
                    await self._dispatch(event_name, args, kwargs)
            finally:
                self._draining = None

    async def _dispatch(self, event_name: str, args: tuple, kwargs: dict):
        for callback in self._listeners.get(event_name, [])[:]:  # Copy list to avoid modification during iteration
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(*args, **kwargs)
                else:
                    result: Any = callback(*args, **kwargs)
                    if asyncio.iscoroutine(result):
                        await result
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
