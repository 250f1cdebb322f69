import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressObserver(Protocol):
    """Receives training progress. Called on the trainer thread."""

    def on_progress(self, iteration: int, loss: float, num_gaussians: int) -> None: ...

    def on_skip(self, iteration: int, camera_uid: str, reason: str) -> None: ...

    def on_state_change(self, state) -> None: ...


class LoggingObserver:
    def on_progress(self, iteration: int, loss: float, num_gaussians: int) -> None:
        logger.info("Iteration %d: loss %.5f, %d Gaussians", iteration, loss, num_gaussians)

    def on_skip(self, iteration: int, camera_uid: str, reason: str) -> None:
        logger.warning("Iteration %d: skipped camera '%s' (%s)", iteration, camera_uid, reason)

    def on_state_change(self, state) -> None:
        logger.info("Trainer state: %s", state.value)
