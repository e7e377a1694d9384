"""
Fan-out of model load progress to interested observers.

Only the primary weight artifact is reported: config and tokenizer files
finish quickly and would otherwise make the percentage jump to 100 and back.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from .fetch import WEIGHT_FILES
from .schemas import ProgressEvent, ProgressStatus

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

PRIMARY_ARTIFACTS: FrozenSet[str] = frozenset(WEIGHT_FILES) | {"model.onnx", "model_quantized.onnx"}


def is_primary_artifact(file: str, primary_files: Iterable[str] = PRIMARY_ARTIFACTS) -> bool:
    return file.rsplit("/", 1)[-1] in set(primary_files)


class ProgressBroadcaster:
    """
    Delivers primary-artifact progress events to every subscriber.

    Terminal `ready`/`error` events always pass. Within one load sequence the
    percentage handed out never decreases; `initiate` and terminal events
    start a new sequence.
    """

    def __init__(self, primary_files: Optional[Iterable[str]] = None) -> None:
        self._primary_files = frozenset(primary_files) if primary_files is not None else PRIMARY_ARTIFACTS
        self._listeners: Dict[int, ProgressListener] = {}
        self._next_token = 0
        self._high_water = 0.0

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    def _accept(self, event: ProgressEvent) -> bool:
        if event.is_terminal:
            self._high_water = 0.0
            return True
        if not is_primary_artifact(event.file, self._primary_files):
            return False
        if event.status is ProgressStatus.INITIATE:
            self._high_water = event.percent
            return True
        if event.percent < self._high_water:
            return False
        self._high_water = event.percent
        return True

    def publish(self, event: ProgressEvent) -> None:
        if not self._accept(event):
            logger.debug("Suppressed progress for %s (%s)", event.file, event.status.value)
            return
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed")
