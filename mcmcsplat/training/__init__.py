from .checkpoint import TorchCheckpointSink, load_checkpoint
from .densification import MCMCStrategy, NoOpStrategy, RestructureReport, Strategy, create_strategy
from .loss import compute_loss
from .observer import LoggingObserver
from .optimizer import SparseGaussianAdam, setup_optimizer
from .scheduler import create_scheduler
from .trainer import Trainer, TrainerState, TrainingResult
from .worker import TrainingWorker

__all__ = [
    "LoggingObserver",
    "MCMCStrategy",
    "NoOpStrategy",
    "RestructureReport",
    "SparseGaussianAdam",
    "Strategy",
    "TorchCheckpointSink",
    "Trainer",
    "TrainerState",
    "TrainingResult",
    "TrainingWorker",
    "compute_loss",
    "create_scheduler",
    "create_strategy",
    "load_checkpoint",
    "setup_optimizer",
]
