import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class OptimizationConfig:
    # Initial learning rates, one per parameter group
    position_lr: float = 0.00016
    quaternion_lr: float = 0.001
    scale_lr: float = 0.005
    opacity_lr: float = 0.05
    sh_dc_lr: float = 0.0025
    sh_rest_lr: float = 0.0025 / 20.0

    # Final lr = initial lr * ratio, decayed exponentially over the run
    position_lr_final_ratio: float = 0.01
    quaternion_lr_final_ratio: float = 1.0
    scale_lr_final_ratio: float = 1.0
    opacity_lr_final_ratio: float = 1.0
    sh_lr_final_ratio: float = 1.0

    lambda_dssim: float = 0.2
    opacity_reg: float = 0.01
    scale_reg: float = 0.01

    max_grad_norm: Optional[float] = 1.0
    eps: float = 1e-15

    sh_degree: int = 3
    sh_degree_interval: int = 1000


@dataclass
class MCMCConfig:
    refine_every: int = 100
    start_refine: int = 500
    stop_refine: int = 25000

    cap_max: int = 1_000_000
    """Hard upper bound on the number of Gaussians."""

    min_opacity: float = 0.005
    """Gaussians below this opacity are pruned."""

    max_prune_fraction: float = 0.5
    max_relocate_fraction: float = 0.05
    growth_rate: float = 0.05
    perturb_scale: float = 1.0
    """Offspring offset, in units of the source's largest axis."""

    noise_lr: float = 5e5


@dataclass
class TrainConfig:
    data_path: Optional[Path] = None
    output_path: Path = Path("output")
    split: str = "train"

    iterations: int = 30000
    camera_order: Literal["round_robin", "shuffle"] = "shuffle"
    seed: int = 0
    device: str = "auto"

    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    image_scale: float = 1.0

    report_every: int = 10
    save_every: int = 7000
    save_on_stop: bool = True
    checkpoint_optimizer_state: bool = False
    resume: Optional[Path] = None

    headless: bool = True
    strategy: Literal["mcmc", "none"] = "mcmc"

    init_num_points: int = 100_000
    init_extent: float = 3.0
    init_opacity: float = 0.5
    init_scale: float = 1.0

    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    mcmc: MCMCConfig = field(default_factory=MCMCConfig)

    def validate(self) -> None:
        if self.iterations <= 0:
            raise ConfigurationError(f"iterations must be positive, got {self.iterations}")
        for name in ("report_every", "save_every"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.mcmc.refine_every <= 0:
            raise ConfigurationError("mcmc.refine_every must be positive")
        if self.mcmc.cap_max < 1:
            raise ConfigurationError("mcmc.cap_max must be at least 1")
        if not 0.0 <= self.mcmc.max_prune_fraction <= 1.0:
            raise ConfigurationError("mcmc.max_prune_fraction must be in [0, 1]")
        if not 0.0 < self.init_opacity < 1.0:
            raise ConfigurationError("init_opacity must be in (0, 1)")
        if not 0 <= self.optimization.sh_degree <= 3:
            raise ConfigurationError("sh_degree must be between 0 and 3")


def save_config(config: TrainConfig, output_dir) -> Path:
    """Write the training configuration as JSON next to the outputs."""
    os.makedirs(output_dir, exist_ok=True)
    path = Path(output_dir) / "training_config.json"
    with open(path, "w") as f:
        json.dump(dataclasses.asdict(config), f, indent=2, default=str)
    logger.info("Saved training configuration to %s", path)
    return path
