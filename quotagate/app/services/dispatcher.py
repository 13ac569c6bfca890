"""Bounded background dispatcher for work detached from the request path.

Usage commits, quota warnings and durable usage records are handed over as
messages and processed by worker tasks. The queue is bounded: when it is
full the new message is dropped and a ``background_dropped`` event is
raised, so overload never grows memory without limit. Failed messages are
retried with exponential backoff and finally appended to a dead-letter
file for later replay.
"""

import asyncio
import json
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_log_context, get_logger
from quotagate.app.core.observability import AdmissionObserver

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class UsageRecord:
    """Absolute usage total for one ledger, for durable persistence.

    Records carry totals rather than deltas so that persisting the same
    record twice is harmless.
    """
    scope_type: str
    identifier: str
    metric: str
    period_type: str
    period_key: str
    used: int
    limit: Optional[int] = None


class UsageSink(Protocol):
    """Durable destination for usage records."""

    async def persist(self, record: UsageRecord) -> None:
        ...


def _serialize(message: Any) -> Dict[str, Any]:
    if is_dataclass(message):
        payload = asdict(message)
    else:
        payload = {"value": repr(message)}
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "kind": type(message).__name__,
        "payload": payload,
    }


class BackgroundDispatcher:
    """Bounded queue with per-type handlers, retries and a dead-letter file.

    Example:
        dispatcher = BackgroundDispatcher(observer)
        dispatcher.register(UsageRecord, sink.persist)
        dispatcher.start()
        dispatcher.submit(record)

        # On application shutdown:
        await dispatcher.shutdown()
    """

    def __init__(
        self,
        observer: AdmissionObserver,
        max_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        dead_letter_path: Optional[Path] = None,
        workers: int = 1,
    ):
        """Initialize the dispatcher.

        Args:
            observer: Receives dropped and failed message events
            max_size: Queue bound; new messages are dropped when full
            max_retries: Attempts per message before dead-lettering
            retry_delay: Initial delay between retries (exponential backoff)
            dead_letter_path: JSONL file receiving failed messages
            workers: Number of worker tasks
        """
        self.observer = observer
        self.max_size = max_size or settings.background_queue_size
        self.max_retries = max_retries or settings.background_max_retries
        self.retry_delay = retry_delay or settings.background_retry_delay
        self.dead_letter_path = Path(dead_letter_path or settings.dead_letter_path)
        self.workers = workers

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_size)
        self._handlers: Dict[type, List[Handler]] = {}
        self._tasks: List[asyncio.Task] = []
        self._started = False

    def register(self, message_type: type, handler: Handler) -> None:
        """Register an async handler for a message type."""
        self._handlers.setdefault(message_type, []).append(handler)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker tasks.

        This should be called during application startup.
        """
        if self._started:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"quotagate-dispatcher-{i}")
            for i in range(self.workers)
        ]
        self._started = True
        logger.debug(f"BackgroundDispatcher started with {self.workers} workers")

    def submit(self, message: Any) -> bool:
        """Enqueue a message without waiting.

        Returns:
            True if queued, False if dropped because the queue was full
        """
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.observer.background_dropped(
                type(message).__name__, getattr(message, "identifier", None)
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        await self._queue.join()

    async def shutdown(self) -> None:
        """Drain remaining messages and stop the workers.

        Messages still queued are processed even if ``start`` was never
        called.
        """
        logger.debug("BackgroundDispatcher shutting down...")
        if self._started:
            await self._queue.join()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            self._started = False

        while not self._queue.empty():
            message = self._queue.get_nowait()
            try:
                await self._dispatch(message)
            finally:
                self._queue.task_done()
        logger.debug("BackgroundDispatcher shutdown complete")

    async def _worker(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            except Exception:
                logger.exception("Unexpected error in background worker")
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: Any) -> None:
        handlers = self._handlers.get(type(message), [])
        if not handlers:
            logger.warning(f"No handler registered for {type(message).__name__}")
            return
        for handler in handlers:
            await self._run_with_retry(handler, message)

    async def _run_with_retry(self, handler: Handler, message: Any) -> None:
        kind = type(message).__name__
        identifier = getattr(message, "identifier", None)
        last_error: Optional[Exception] = None
        delay = self.retry_delay

        for attempt in range(1, self.max_retries + 1):
            try:
                await handler(message)
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Background {kind} failed (attempt {attempt}/{self.max_retries}): {e}",
                    extra=get_log_context(identifier=identifier, attempt=attempt),
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(delay)
                    delay *= 2

        self.observer.background_failed(kind, identifier, last_error)
        await self._write_dead_letter(message)

    async def _write_dead_letter(self, message: Any) -> None:
        """Append a failed message to the dead-letter file."""
        record = _serialize(message)

        def _write_sync():
            self.dead_letter_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.dead_letter_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

        try:
            await asyncio.to_thread(_write_sync)
        except OSError as e:
            logger.critical(
                f"Failed to write to dead letter file: {e}. "
                f"{record['kind']} message is permanently lost!",
                extra=get_log_context(
                    identifier=getattr(message, "identifier", None),
                    dead_letter=str(self.dead_letter_path),
                ),
            )
            return

        logger.info(
            f"Wrote failed {record['kind']} to dead letter file",
            extra={"dead_letter": str(self.dead_letter_path)},
        )
