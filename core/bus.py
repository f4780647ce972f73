"""Per-run subscriber registry for frames"""
import asyncio
import inspect
from typing import Callable, Dict, List, Set, Union
import logging

from .events import Frame, RunEventType

logger = logging.getLogger(__name__)

Handler = Callable[[Frame], object]


class FrameBus:
    """
    Fans frames out to subscribers.

    Delivery is synchronous and in registration order: catch-all handlers
    first, then handlers for the frame's own type. Coroutine handlers are
    scheduled as tasks so they never hold up stream parsing.
    """

    def __init__(self):
        self.handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Union[RunEventType, str], handler: Handler):
        """Subscribe handler to a frame type, or RunEventType.EVENT for all"""
        key = event_type.value if isinstance(event_type, RunEventType) else str(event_type)
        self.handlers.setdefault(key, []).append(handler)
        logger.debug(f"Subscribed handler to {key}")

    def publish(self, frame: Frame):
        """Deliver frame to catch-all then type-specific handlers"""
        for key in (RunEventType.EVENT.value, frame.type):
            for handler in list(self.handlers.get(key, [])):
                self._safe_handle(handler, frame)

    def _safe_handle(self, handler: Handler, frame: Frame):
        """Handle frame with error catching"""
        try:
            result = handler(frame)
        except Exception as e:
            logger.error(f"Handler error for {frame.type}: {e}", exc_info=True)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async handler error: {error}", exc_info=error)

    async def drain(self):
        """Wait for scheduled coroutine handlers to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
