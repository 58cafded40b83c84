"""Observer channel for capture and sync progress"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    message: str
    percent: Optional[float] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


ProgressListener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    def __init__(self):
        self._listeners: List[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, stage: str, message: str, percent: Optional[float] = None,
             entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> None:
        event = ProgressEvent(stage, message, percent, entity_type, entity_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Progress listener failed (non-fatal): {e}")
