import logging
import os
import pickle
from pathlib import Path
from typing import Dict, Optional, Protocol

import torch

from ..errors import CheckpointError

logger = logging.getLogger(__name__)


class CheckpointSink(Protocol):
    def save(self, snapshot: Dict[str, object], iteration: int) -> bool:
        """Persist a model snapshot. Returns False instead of raising on failure."""
        ...


class TorchCheckpointSink:
    """Writes `checkpoint_<iteration>.pt` files with torch.save.

    The file holds the model snapshot (raw parameter tensors and the active SH
    degree), the iteration and, when present, the optimizer state.
    """

    def __init__(self, output_dir, keep_last: Optional[int] = None):
        self.output_dir = Path(output_dir)
        self.keep_last = keep_last
        self.saved = []

    def path_for(self, iteration: int) -> Path:
        return self.output_dir / f"checkpoint_{iteration:06d}.pt"

    def save(self, snapshot: Dict[str, object], iteration: int) -> bool:
        path = self.path_for(iteration)
        tmp_path = path.with_suffix(".pt.tmp")
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            torch.save({"iteration": iteration, **snapshot}, tmp_path)
            os.replace(tmp_path, path)
        except (OSError, RuntimeError, pickle.PicklingError) as e:
            logger.error("Failed to write checkpoint %s: %s", path, e)
            return False

        logger.info("Saved checkpoint at iteration %d to %s", iteration, path)
        self.saved.append(path)
        if self.keep_last is not None:
            while len(self.saved) > self.keep_last:
                old = self.saved.pop(0)
                try:
                    os.remove(old)
                except OSError as e:
                    logger.warning("Could not remove old checkpoint %s: %s", old, e)
        return True


def load_checkpoint(path, map_location="cpu") -> Dict[str, object]:
    """Read a checkpoint written by `TorchCheckpointSink`.

    Raises:
        CheckpointError: if the file is missing or is not a checkpoint
    """
    path = Path(path)
    if not path.is_file():
        raise CheckpointError(f"Checkpoint {path} does not exist")
    try:
        checkpoint = torch.load(path, map_location=map_location, weights_only=False)
    except (OSError, RuntimeError, pickle.UnpicklingError) as e:
        raise CheckpointError(f"Could not read checkpoint {path}: {e}") from e
    if not isinstance(checkpoint, dict) or "positions" not in checkpoint:
        raise CheckpointError(f"{path} is not a Gaussian splat checkpoint")
    checkpoint.setdefault("iteration", 0)
    return checkpoint


def latest_checkpoint(output_dir) -> Optional[Path]:
    candidates = sorted(Path(output_dir).glob("checkpoint_*.pt"))
    return candidates[-1] if candidates else None
