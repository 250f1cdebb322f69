import logging
import threading
from typing import Optional

from .trainer import Trainer, TrainingResult

logger = logging.getLogger(__name__)


class TrainingWorker:
    """Runs `Trainer.train` on a background thread.

    Other threads (a viewer, the CLI's signal handling) may read the model
    through `trainer.splats.snapshot()` and ask the worker to stop. `stop()`
    requests cancellation and joins, so the worker never outlives its owner
    when used as a context manager.
    """

    def __init__(self, trainer: Trainer, name: str = "trainer"):
        self.trainer = trainer
        self.result: Optional[TrainingResult] = None
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self):
        self.result = self.trainer.train(self._stop_event)

    def start(self) -> "TrainingWorker":
        logger.debug("Starting training thread %s", self._thread.name)
        self._thread.start()
        return self

    def request_stop(self) -> None:
        self._stop_event.set()
        self.trainer.request_stop()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> Optional[TrainingResult]:
        self._thread.join(timeout)
        return self.result

    def stop(self, timeout: Optional[float] = None) -> Optional[TrainingResult]:
        self.request_stop()
        return self.join(timeout)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
