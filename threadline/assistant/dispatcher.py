"""Dispatcher: relays each inbound chat message through an assistant thread."""

from __future__ import annotations

import asyncio
from time import perf_counter

from loguru import logger

from threadline.assistant.composer import MessageContent, compose
from threadline.assistant.errors import (
    MessageAppendError,
    PersistenceError,
    ThreadCreationError,
    ThreadlineError,
    UploadError,
)
from threadline.assistant.registry import ThreadRegistry
from threadline.assistant.stager import AttachmentStager
from threadline.assistant.watcher import RunWatcher
from threadline.bus.events import InboundMessage, OutboundMessage
from threadline.bus.queue import MessageBus
from threadline.observability.metrics import MetricsStore
from threadline.providers.base import AssistantBackend
from threadline.utils.helpers import compact_preview


class Dispatcher:
    """
    Core relay loop.

    For every inbound message it:
    1. Resolves the contact's thread (creating and registering one if needed)
    2. Stages any attachment and appends the composed message
    3. Runs the assistant to completion under the run policy
    4. Publishes the reply, if any, back to the originating chat

    Messages are handled concurrently, one task each. Messages from the same
    contact are serialized so they reach the thread in arrival order.
    """

    def __init__(
        self,
        bus: MessageBus,
        backend: AssistantBackend,
        registry: ThreadRegistry,
        stager: AttachmentStager,
        watcher: RunWatcher,
        initial_budget: int = 50,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        metrics: MetricsStore | None = None,
    ):
        self.bus = bus
        self.backend = backend
        self.registry = registry
        self.stager = stager
        self.watcher = watcher
        self.initial_budget = initial_budget
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.metrics = metrics
        self._contact_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._tasks: set[asyncio.Task[str | None]] = set()
        self._running = False

    async def run(self) -> None:
        """Consume the bus, spawning one handler task per inbound message."""
        self._running = True
        logger.info("Dispatcher started")

        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            task = asyncio.create_task(self.on_message(msg))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def stop(self) -> None:
        """Stop consuming inbound messages."""
        self._running = False
        logger.info("Dispatcher stopping")

    async def shutdown(self) -> None:
        """Stop, abandon in-flight relays and flush the registry."""
        self.stop()
        self.bus.stop()
        if self._tasks:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            self._tasks.clear()
        try:
            self.registry.flush()
        except PersistenceError as e:
            logger.error(f"Thread registry flush failed on shutdown: {e}")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def on_message(self, msg: InboundMessage) -> str | None:
        """
        Handle one inbound message end to end.

        Never raises for relay failures: they are logged and the message is
        dropped without an outbound reply. Returns the reply that was sent.
        """
        if msg.metadata.get("from_me"):
            return None
        if not msg.content and not msg.has_media:
            logger.debug(f"Ignoring empty message from {msg.chat_id}")
            return None

        contact_id = msg.chat_id
        lock = self._contact_locks.get(contact_id)
        if lock is None:
            lock = self._contact_locks[contact_id] = asyncio.Lock()
        self._lock_users[contact_id] = self._lock_users.get(contact_id, 0) + 1
        try:
            async with lock:
                return await self._relay(msg)
        finally:
            # Drop the lock once no task holds or waits on it.
            users = self._lock_users[contact_id] - 1
            if users:
                self._lock_users[contact_id] = users
            else:
                del self._lock_users[contact_id]
                del self._contact_locks[contact_id]

    async def _relay(self, msg: InboundMessage) -> str | None:
        contact_id = msg.chat_id
        started = perf_counter()
        thread_id = self.registry.lookup(contact_id) or ""
        had_thread = bool(thread_id)
        status = "error"
        attempts = budget = checks = 0
        delivered = False
        error = ""

        logger.info(f"Received message from {contact_id}: {compact_preview(msg.content)}")
        try:
            file_id = await self._stage_media(msg) if msg.has_media else None
            payload = compose(MessageContent(text=msg.content or "", file_id=file_id))
            thread_id = await self._submit(contact_id, thread_id, payload)

            outcome = await self.watcher.watch(
                thread_id,
                initial_budget=self.initial_budget,
                timeout_s=self.timeout_s,
                poll_interval_s=self.poll_interval_s,
            )
            status = outcome.status
            attempts, budget, checks = outcome.attempts, outcome.budget, outcome.status_checks

            if not outcome.reply:
                logger.info(f"No reply for {contact_id} (run {outcome.status}); nothing sent")
                return None

            logger.info(f"Responding to {contact_id}: {compact_preview(outcome.reply)}")
            await self.bus.publish_outbound(
                OutboundMessage(channel=msg.channel, chat_id=msg.chat_id, content=outcome.reply)
            )
            delivered = True
            return outcome.reply
        except ThreadlineError as e:
            status = e.stage
            error = str(e)
            logger.error(f"Relay for {contact_id} failed at {e.stage}: {e}")
            return None
        except Exception as e:
            error = str(e)
            logger.error(f"Error handling message from {contact_id}: {e}")
            return None
        finally:
            if self.metrics:
                self.metrics.record_run(
                    contact_id=contact_id,
                    thread_id=thread_id,
                    outcome=status,
                    latency_ms=(perf_counter() - started) * 1000,
                    attempts=attempts,
                    budget=budget,
                    status_checks=checks,
                    delivered=delivered,
                    new_thread=not had_thread and bool(thread_id),
                    error=error,
                )

    async def _stage_media(self, msg: InboundMessage) -> str:
        started = perf_counter()
        size = 0
        try:
            try:
                data = await msg.download_media()
            except Exception as e:
                raise UploadError(f"could not download media: {e}", contact_id=msg.chat_id) from e
            size = len(data)
            file_id = await self.stager.stage(data, mime_type=msg.metadata.get("mime_type"))
        except UploadError as e:
            if self.metrics:
                self.metrics.record_upload(
                    success=False,
                    size_bytes=size,
                    latency_ms=(perf_counter() - started) * 1000,
                    error=str(e),
                )
            raise
        if self.metrics:
            self.metrics.record_upload(
                success=True, size_bytes=size, latency_ms=(perf_counter() - started) * 1000
            )
        return file_id

    async def _submit(self, contact_id: str, thread_id: str, payload: dict) -> str:
        """Append to the contact's thread, or create and register a new one."""
        if thread_id:
            try:
                await self.backend.add_message(thread_id, payload)
            except Exception as e:
                raise MessageAppendError(
                    f"could not append to {thread_id}: {e}",
                    contact_id=contact_id,
                    thread_id=thread_id,
                ) from e
            return thread_id

        try:
            new_thread_id = await self.backend.create_thread([payload])
        except Exception as e:
            raise ThreadCreationError(
                f"could not create thread: {e}", contact_id=contact_id
            ) from e
        if not new_thread_id:
            raise ThreadCreationError("backend returned no thread id", contact_id=contact_id)

        logger.info(f"Created thread {new_thread_id} for {contact_id}")
        return self.registry.bind(contact_id, new_thread_id)
