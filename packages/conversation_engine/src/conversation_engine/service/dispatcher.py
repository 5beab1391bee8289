"""
Channel Event Dispatcher

Consumes channel events from an in-process asyncio queue:
- Lifecycle events (Paired, Ready, Disconnected, AuthFailed) go to the
  session registry, in order
- MessageReceived events each get their own task in the inbound pipeline

A failing event is logged and never stops the loop.
"""

import asyncio
import logging

from conversation_engine.contracts.events import ChannelEvent, MessageReceived
from conversation_engine.service.inbound_handler import InboundHandler
from conversation_engine.sessions.registry import ChannelSessionRegistry

logger = logging.getLogger(__name__)


class ChannelEventDispatcher:
    """Routes channel events to the registry and the inbound pipeline."""

    def __init__(
        self,
        registry: ChannelSessionRegistry,
        inbound: InboundHandler,
        maxsize: int = 1000,
    ):
        self.registry = registry
        self.inbound = inbound
        self.queue: asyncio.Queue[ChannelEvent] = asyncio.Queue(maxsize=maxsize)
        self._consumer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def put(self, event: ChannelEvent) -> None:
        """Queue an event, waiting while the queue is full."""
        await self.queue.put(event)

    def put_nowait(self, event: ChannelEvent) -> bool:
        """Queue an event without waiting. Returns False if the queue is full."""
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Channel event queue full, dropping event",
                extra={"business_id": str(event.business_id), "event": type(event).__name__},
            )
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._run(), name="channel-event-dispatcher")
        logger.info("Channel event dispatcher started")

    async def stop(self) -> None:
        """Stop consuming; in-flight message tasks are awaited."""
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Channel event dispatcher stopped")

    async def drain(self) -> None:
        """Wait until every queued event, and the tasks it spawned, has finished."""
        await self.queue.join()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error(
                    f"Failed to dispatch channel event: {e}",
                    extra={"business_id": str(event.business_id), "event": type(event).__name__},
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    async def dispatch(self, event: ChannelEvent) -> None:
        """
        Route one event.

        Lifecycle events are applied before the next event is taken, so
        session state follows the order the channel reported it. Messages
        run concurrently; per-customer ordering is kept by the inbound
        pipeline's lock.
        """
        if isinstance(event, MessageReceived):
            task = asyncio.create_task(self.inbound.ingest(event.business_id, event))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
            # Let the task reach its conversation lock before the next event
            await asyncio.sleep(0)
            return

        await self.registry.handle_event(event)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Inbound message task failed", exc_info=exc)
            return
        result = task.result()
        logger.debug("Inbound message processed", extra={"result": result})
