"""Observability hooks for admission control.

Every degraded-mode decision, data-integrity problem and dropped piece of
background work is both logged and counted here, so that fail-open
behaviour is never silent.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from quotagate.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

STORE_DEGRADED = "store_degraded"
DATA_INTEGRITY = "data_integrity"
BACKGROUND_DROPPED = "background_dropped"
BACKGROUND_FAILED = "background_failed"


@dataclass
class AdmissionEvent:
    """A single observable condition."""
    event: str
    operation: str
    identifier: Optional[str] = None
    error_type: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class AdmissionObserver:
    """Collects admission events.

    Subclass and override ``emit`` to forward events to a metrics system;
    the default implementation logs and keeps counters in memory.
    """

    keep_history: int = 1000
    _counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _history: List[AdmissionEvent] = field(default_factory=list)

    def emit(self, event: AdmissionEvent) -> None:
        self._counts[event.event] += 1
        self._history.append(event)
        if len(self._history) > self.keep_history:
            del self._history[: len(self._history) - self.keep_history]

    def store_degraded(
        self,
        operation: str,
        identifier: Optional[str],
        error_type: str,
        error: Optional[BaseException] = None,
    ) -> None:
        """Record a store failure that was answered by the failure policy."""
        logger.warning(
            f"Counter store degraded during {operation} ({error_type}): {error}",
            extra=get_log_context(
                identifier=identifier, event=STORE_DEGRADED, error_type=error_type
            ),
        )
        self.emit(AdmissionEvent(
            event=STORE_DEGRADED,
            operation=operation,
            identifier=identifier,
            error_type=error_type,
            detail=str(error) if error is not None else None,
        ))

    def data_integrity(self, key: str, raw: Any = None) -> None:
        """Record a malformed stored counter that was treated as zero."""
        logger.warning(
            f"Malformed counter at {key!r} treated as zero usage",
            extra=get_log_context(event=DATA_INTEGRITY, key=key, raw_value=repr(raw)),
        )
        self.emit(AdmissionEvent(event=DATA_INTEGRITY, operation="read", detail=key))

    def background_dropped(self, kind: str, identifier: Optional[str]) -> None:
        """Record background work dropped because the queue was full."""
        logger.error(
            f"Background queue full, dropped {kind} message",
            extra=get_log_context(identifier=identifier, event=BACKGROUND_DROPPED),
        )
        self.emit(AdmissionEvent(
            event=BACKGROUND_DROPPED, operation=kind, identifier=identifier
        ))

    def background_failed(
        self, kind: str, identifier: Optional[str], error: BaseException
    ) -> None:
        """Record background work that failed after all retries."""
        logger.error(
            f"Background {kind} failed permanently: {error}",
            extra=get_log_context(
                identifier=identifier,
                event=BACKGROUND_FAILED,
                error_type=type(error).__name__,
            ),
        )
        self.emit(AdmissionEvent(
            event=BACKGROUND_FAILED,
            operation=kind,
            identifier=identifier,
            error_type=type(error).__name__,
            detail=str(error),
        ))

    def count(self, event: str) -> int:
        return self._counts.get(event, 0)

    def events(self, event: Optional[str] = None) -> List[AdmissionEvent]:
        if event is None:
            return list(self._history)
        return [e for e in self._history if e.event == event]

    def reset(self) -> None:
        self._counts.clear()
        self._history.clear()
