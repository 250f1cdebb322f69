from .config import MCMCConfig, OptimizationConfig, TrainConfig
from .errors import (
    CheckpointError,
    ConfigurationError,
    ModelInitError,
    NonFiniteLossError,
    RenderError,
    SplatError,
)

__version__ = "0.1.0"
