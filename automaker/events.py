"""Event stream delivered to the observer (board UI, CLI printer, tests).

Each feature execution publishes into its own ``EventChannel``: a bounded
queue drained by a single pump task, so events of one feature reach the
observer in exactly the order they were emitted while a slow observer can
never stall the producing task indefinitely.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from rich.console import Console

console = Console()

AUTO_MODE_FEATURE_START = "auto_mode_feature_start"
AUTO_MODE_PHASE = "auto_mode_phase"
AUTO_MODE_PROGRESS = "auto_mode_progress"
AUTO_MODE_TOOL = "auto_mode_tool"
AUTO_MODE_FEATURE_COMPLETE = "auto_mode_feature_complete"
AUTO_MODE_ERROR = "auto_mode_error"
AUTO_MODE_COMPLETE = "auto_mode_complete"

EVENT_TYPES = frozenset(
    {
        AUTO_MODE_FEATURE_START,
        AUTO_MODE_PHASE,
        AUTO_MODE_PROGRESS,
        AUTO_MODE_TOOL,
        AUTO_MODE_FEATURE_COMPLETE,
        AUTO_MODE_ERROR,
        AUTO_MODE_COMPLETE,
    }
)

DROP_OLDEST = "drop_oldest"
BLOCK = "block"

Event = dict[str, Any]
Observer = Callable[[Event], Union[None, Awaitable[None]]]

_CLOSE = object()


def make_event(event_type: str, feature_id: Optional[str] = None, **fields: Any) -> Event:
    """Build an observer event with the literal ``type`` tag."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    event: Event = {"type": event_type}
    if feature_id is not None:
        event["featureId"] = feature_id
    event.update(fields)
    return event


class EventChannel:
    """Bounded FIFO between one producer task and the observer.

    Parameters
    ----------
    observer:
        Sync or async callable receiving each event. ``None`` discards events.
    maxsize:
        Queue capacity.
    policy:
        ``"drop_oldest"`` evicts the oldest queued event when full and counts
        it in ``dropped``; ``"block"`` makes ``publish`` wait for space.
    """

    def __init__(
        self,
        observer: Optional[Observer],
        maxsize: int = 256,
        policy: str = DROP_OLDEST,
    ) -> None:
        if policy not in (DROP_OLDEST, BLOCK):
            raise ValueError(f"Unknown overflow policy: {policy}")
        self.observer = observer
        self.policy = policy
        self.dropped = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._pump: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def __aenter__(self) -> "EventChannel":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def start(self) -> None:
        if self._pump is None:
            self._pump = asyncio.create_task(self._drain())

    async def publish(self, event: Event) -> None:
        if self._closed:
            return
        if self.policy == BLOCK:
            await self._queue.put(event)
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self._queue.task_done()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def close(self) -> None:
        """Deliver everything already queued, then stop the pump."""
        if self._closed:
            return
        self._closed = True
        if self._pump is None:
            return
        # The sentinel must not be dropped, so always wait for room.
        await self._queue.put(_CLOSE)
        await self._pump

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            self._queue.task_done()
            if item is _CLOSE:
                return
            if self.observer is None:
                continue
            try:
                result = self.observer(item)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                console.print(f"[yellow]Event observer failed on {item.get('type')}: {exc}[/yellow]")
