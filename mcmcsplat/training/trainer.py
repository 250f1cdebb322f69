import itertools
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence

import torch
from tqdm import tqdm

from ..config import TrainConfig
from ..core import Dataset, GaussianSplats
from ..errors import ConfigurationError, NonFiniteLossError, RenderError
from ..rendering import GaussianRasterizer
from .checkpoint import CheckpointSink
from .densification import NoOpStrategy, Strategy
from .loss import compute_loss
from .observer import ProgressObserver
from .optimizer import setup_optimizer
from .scheduler import create_scheduler

logger = logging.getLogger(__name__)


class TrainerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TrainingResult:
    state: TrainerState
    iterations: int
    num_gaussians: int
    skipped: int = 0
    final_loss: Optional[float] = None
    elapsed_seconds: float = 0.0
    checkpoints: List[int] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.state in (TrainerState.COMPLETED, TrainerState.STOPPED)


def resolve_device(device: str) -> torch.device:
    if device == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(device)


class Trainer:
    """Runs the optimization loop over a dataset for a fixed iteration budget.

    One call to `train()` moves the trainer from IDLE to a terminal state:
    COMPLETED when the budget is used up, STOPPED after a stop request, or
    FAILED on a fatal error. Stop requests are checked between iterations.
    """

    def __init__(
        self,
        dataset: Dataset,
        splats: GaussianSplats,
        strategy: Optional[Strategy] = None,
        config: Optional[TrainConfig] = None,
        rasterizer: Optional[GaussianRasterizer] = None,
        checkpoint_sink: Optional[CheckpointSink] = None,
        observers: Sequence[ProgressObserver] = (),
        start_iteration: int = 0,
        optimizer_state: Optional[Dict] = None,
        show_progress: bool = True,
    ):
        self.dataset = dataset
        self.splats = splats
        self.strategy = strategy or NoOpStrategy()
        self.config = config or TrainConfig()
        self.rasterizer = rasterizer or GaussianRasterizer()
        self.checkpoint_sink = checkpoint_sink
        self.observers = list(observers)
        self.show_progress = show_progress

        self.optimizer = None
        self.scheduler = None
        self._optimizer_state = optimizer_state
        self._background = None

        self._state = TrainerState.IDLE
        self._iteration = start_iteration
        self._start_iteration = start_iteration
        self._stop_event = threading.Event()
        self._skipped = 0
        self._last_loss = None
        self._checkpoints = []

    @property
    def state(self) -> TrainerState:
        return self._state

    @property
    def iteration(self) -> int:
        return self._iteration

    def is_running(self) -> bool:
        return self._state in (TrainerState.RUNNING, TrainerState.STOPPING)

    def request_stop(self) -> None:
        self._stop_event.set()

    def _set_state(self, state: TrainerState) -> None:
        self._state = state
        for observer in self.observers:
            observer.on_state_change(state)

    def _result(self, start_time: float, error: Optional[BaseException] = None) -> TrainingResult:
        return TrainingResult(
            state=self._state,
            iterations=self._iteration,
            num_gaussians=len(self.splats),
            skipped=self._skipped,
            final_loss=self._last_loss,
            elapsed_seconds=time.time() - start_time,
            checkpoints=list(self._checkpoints),
            error=error,
        )

    def train(self, stop_event: Optional[threading.Event] = None) -> TrainingResult:
        """
        Main training loop

        Args:
            stop_event: cancellation token; defaults to the one set by `request_stop`

        Returns:
            TrainingResult with the terminal state. Fatal errors are returned
            in `error` instead of being raised.
        """
        start_time = time.time()
        if stop_event is not None:
            # A stop requested before train() still applies to the new token
            if self._stop_event.is_set():
                stop_event.set()
            self._stop_event = stop_event
        if self._state != TrainerState.IDLE:
            self._set_state(TrainerState.FAILED)
            return self._result(start_time, ConfigurationError("Trainer.train() can only run once"))

        try:
            self._setup()
        except Exception as e:
            logger.error("Training setup failed: %s", e)
            self._set_state(TrainerState.FAILED)
            return self._result(start_time, e)

        self._set_state(TrainerState.RUNNING)
        try:
            self._loop()
        except torch.cuda.OutOfMemoryError as e:
            logger.error("Out of GPU memory at iteration %d", self._iteration)
            self._set_state(TrainerState.FAILED)
            return self._result(start_time, e)
        except Exception as e:
            logger.exception("Training failed at iteration %d", self._iteration)
            self._set_state(TrainerState.FAILED)
            return self._result(start_time, e)

        logger.info(
            "Training %s after %d iterations (%d skipped), %d Gaussians",
            self._state.value,
            self._iteration,
            self._skipped,
            len(self.splats),
        )
        return self._result(start_time)

    def _setup(self) -> None:
        cfg = self.config
        cfg.validate()
        if len(self.dataset) == 0:
            raise ConfigurationError("Dataset has no cameras")
        if len(self.splats) == 0:
            raise ConfigurationError("Scene has no Gaussians")
        if self._start_iteration > cfg.iterations:
            raise ConfigurationError(
                f"Resuming at iteration {self._start_iteration} beyond budget {cfg.iterations}"
            )

        device = resolve_device(cfg.device)
        logger.info("Training on device: %s", device)
        self.splats.to(device)
        self.dataset = self.dataset.to(device)
        self._background = torch.tensor(cfg.background, dtype=torch.float32, device=device)

        # Setup optimizer and scheduler
        self.optimizer = setup_optimizer(
            self.splats, cfg.optimization, spatial_lr_scale=self.dataset.scene_extent
        )
        if self._optimizer_state is not None:
            self.optimizer.load_state_dict(self._optimizer_state)
        self.scheduler = create_scheduler(
            self.optimizer, cfg.optimization, cfg.iterations, start_iteration=self._start_iteration
        )
        self.strategy.initialize(self.splats)

    def _camera_order(self) -> Iterator[int]:
        """Endless stream of camera indices, each epoch visiting every camera once."""
        rng = random.Random(self.config.seed)
        n = len(self.dataset)

        def epochs():
            while True:
                indices = list(range(n))
                if self.config.camera_order == "shuffle":
                    rng.shuffle(indices)
                yield from indices

        return itertools.islice(epochs(), self._start_iteration, None)

    def _position_lr(self) -> float:
        for group in self.optimizer.param_groups:
            if group["name"] == "positions":
                return group["lr"]
        return 0.0

    def _loop(self) -> None:
        cfg = self.config
        cameras = self._camera_order()

        logger.info("Starting training for %d iterations...", cfg.iterations)
        progress_bar = tqdm(
            total=cfg.iterations,
            initial=self._iteration,
            desc="Training",
            disable=not self.show_progress,
        )
        try:
            while self._iteration < cfg.iterations:
                if self._stop_event.is_set():
                    self._set_state(TrainerState.STOPPING)
                    break

                losses = self._train_step(next(cameras))
                self.scheduler.step()
                self._iteration += 1
                iteration = self._iteration
                progress_bar.update(1)

                if self.strategy.should_restructure(iteration):
                    self.strategy.restructure(self.splats, iteration)

                if iteration % cfg.optimization.sh_degree_interval == 0:
                    self.splats.oneup_sh_degree()

                if losses is not None:
                    self._last_loss = losses["total"].item()
                if iteration % cfg.report_every == 0 and self._last_loss is not None:
                    progress_bar.set_postfix(
                        {
                            "loss": f"{self._last_loss:.4f}",
                            "l1": f"{losses['l1'].item():.4f}" if losses else "-",
                            "N": len(self.splats),
                            "lr": f"{self._position_lr():.2e}",
                        }
                    )
                    for observer in self.observers:
                        observer.on_progress(iteration, self._last_loss, len(self.splats))

                if iteration % cfg.save_every == 0:
                    self._save_checkpoint(iteration)
        finally:
            progress_bar.close()

        if self._state == TrainerState.STOPPING:
            if cfg.save_on_stop and self._iteration not in self._checkpoints:
                self._save_checkpoint(self._iteration)
            self._set_state(TrainerState.STOPPED)
        else:
            if self._iteration not in self._checkpoints:
                self._save_checkpoint(self._iteration)
            self._set_state(TrainerState.COMPLETED)

    def _train_step(self, camera_index: int) -> Optional[Dict[str, torch.Tensor]]:
        """One optimization step on one camera. Returns None if the camera was skipped."""
        cfg = self.config.optimization
        camera, gt_image = self.dataset[camera_index]

        try:
            # Render
            output = self.rasterizer.render(camera, self.splats, self._background)

            # Compute loss
            losses = compute_loss(
                output.image,
                gt_image,
                self.splats,
                lambda_dssim=cfg.lambda_dssim,
                opacity_reg=cfg.opacity_reg,
                scale_reg=cfg.scale_reg,
            )
        except (RenderError, NonFiniteLossError) as e:
            self._skip(camera.uid, str(e))
            return None

        # Backpropagation
        self.optimizer.zero_grad(set_to_none=True)
        losses["total"].backward()
        if cfg.max_grad_norm is not None:
            torch.nn.utils.clip_grad_norm_(self.splats.parameters(), max_norm=cfg.max_grad_norm)

        self.strategy.observe(self.splats, output)
        self.optimizer.step(visibility=output.visibility, apply_fn=self.splats.update_in_place)
        self.strategy.post_step(self.splats, output, self._iteration + 1, self._position_lr())
        return losses

    def _skip(self, camera_uid: str, reason: str) -> None:
        self._skipped += 1
        iteration = self._iteration + 1
        logger.warning("Iteration %d: skipping camera '%s': %s", iteration, camera_uid, reason)
        for observer in self.observers:
            observer.on_skip(iteration, camera_uid, reason)

    def _save_checkpoint(self, iteration: int) -> None:
        if self.checkpoint_sink is None:
            return
        snapshot = self.splats.snapshot()
        if self.config.checkpoint_optimizer_state:
            snapshot["optimizer"] = self.optimizer.state_dict()
        try:
            saved = self.checkpoint_sink.save(snapshot, iteration)
        except Exception:
            logger.exception("Checkpoint sink raised at iteration %d", iteration)
            saved = False
        if saved:
            self._checkpoints.append(iteration)
        else:
            logger.warning("Checkpoint at iteration %d was not saved, continuing", iteration)
