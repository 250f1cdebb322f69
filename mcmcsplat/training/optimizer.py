import math
from typing import Callable, Dict, Optional

import torch

from ..config import OptimizationConfig
from ..core import GaussianSplats


class SparseGaussianAdam(torch.optim.Optimizer):
    """Adam restricted to the Gaussians visible in the current render.

    Rows outside the visibility mask get an exact zero update and keep their
    moments, so a Gaussian that was not rendered is left untouched. Each param
    group holds one per-Gaussian tensor and carries a "name".

    The optimizer is also a resize hook of the model: registering it with
    `GaussianSplats.register_resize_hook` keeps exp_avg / exp_avg_sq aligned
    with the rows of the parameters.
    """

    def __init__(self, params, lr=1e-3, betas=(0.9, 0.999), eps=1e-15):
        defaults = dict(lr=lr, betas=betas, eps=eps)
        super().__init__(params, defaults)

    @torch.no_grad()
    def compute_deltas(self, visibility: Optional[torch.Tensor] = None) -> Dict[str, torch.Tensor]:
        """Advance the moments and return the update for every param group."""
        deltas = {}
        for group in self.param_groups:
            beta1, beta2 = group["betas"]
            for p in group["params"]:
                if p.grad is None:
                    continue
                state = self.state[p]
                if len(state) == 0:
                    state["step"] = 0
                    state["exp_avg"] = torch.zeros_like(p)
                    state["exp_avg_sq"] = torch.zeros_like(p)
                state["step"] += 1

                if visibility is None:
                    mask = torch.ones(p.shape[0], dtype=torch.bool, device=p.device)
                else:
                    mask = visibility.to(p.device)

                grad = p.grad[mask]
                exp_avg, exp_avg_sq = state["exp_avg"], state["exp_avg_sq"]
                exp_avg[mask] = exp_avg[mask] * beta1 + grad * (1 - beta1)
                exp_avg_sq[mask] = exp_avg_sq[mask] * beta2 + grad * grad * (1 - beta2)

                bias_correction1 = 1 - beta1 ** state["step"]
                bias_correction2 = 1 - beta2 ** state["step"]
                step_size = group["lr"] / bias_correction1
                denom = exp_avg_sq[mask].sqrt() / math.sqrt(bias_correction2) + group["eps"]

                delta = torch.zeros_like(p)
                delta[mask] = -step_size * exp_avg[mask] / denom
                deltas[group["name"]] = delta
        return deltas

    def step(
        self,
        closure=None,
        visibility: Optional[torch.Tensor] = None,
        apply_fn: Optional[Callable[[Dict[str, torch.Tensor]], None]] = None,
    ) -> Dict[str, torch.Tensor]:
        """
        Compute the deltas and apply them.

        apply_fn receives the deltas instead of the parameters being updated
        directly, e.g. `GaussianSplats.update_in_place` so the write happens
        under the model lock.
        """
        if closure is not None:
            with torch.enable_grad():
                closure()
        deltas = self.compute_deltas(visibility)
        if apply_fn is not None:
            apply_fn(deltas)
        else:
            with torch.no_grad():
                for group in self.param_groups:
                    if group["name"] in deltas:
                        group["params"][0].add_(deltas[group["name"]])
        return deltas

    # Resize hook

    def on_add(self, num_new: int) -> None:
        """Extend optimizer state for new Gaussians (initialize with zeros)"""
        for group in self.param_groups:
            for param in group["params"]:
                state = self.state.get(param)
                if not state:
                    continue
                for key in ("exp_avg", "exp_avg_sq"):
                    zeros = torch.zeros(
                        num_new,
                        *param.shape[1:],
                        device=param.device,
                        dtype=param.dtype,
                    )
                    state[key] = torch.cat([state[key], zeros], dim=0)

    def on_remove(self, keep_mask: torch.Tensor) -> None:
        """Prune optimizer state for removed Gaussians"""
        for group in self.param_groups:
            for param in group["params"]:
                state = self.state.get(param)
                if not state:
                    continue
                for key in ("exp_avg", "exp_avg_sq"):
                    state[key] = state[key][keep_mask]

    def on_replace(self, indices: torch.Tensor) -> None:
        for group in self.param_groups:
            for param in group["params"]:
                state = self.state.get(param)
                if not state:
                    continue
                for key in ("exp_avg", "exp_avg_sq"):
                    state[key][indices] = 0


def setup_optimizer(
    gaussian_splats: GaussianSplats,
    config: Optional[OptimizationConfig] = None,
    spatial_lr_scale: float = 1.0,
) -> SparseGaussianAdam:
    """
    Create optimizer with different learning rates for different parameter groups

    Args:
        gaussian_splats: GaussianSplats model (nn.Module)
        config: learning rates; defaults follow the original 3DGS paper
        spatial_lr_scale: scene extent, multiplies the position learning rate

    Returns:
        Configured optimizer, registered as a resize hook of the model
    """
    config = config or OptimizationConfig()
    optimizer = SparseGaussianAdam(
        [
            {
                "params": [gaussian_splats._positions],
                "lr": config.position_lr * spatial_lr_scale,
                "name": "positions",
            },
            {"params": [gaussian_splats._quaternions], "lr": config.quaternion_lr, "name": "quaternions"},
            {"params": [gaussian_splats._scales], "lr": config.scale_lr, "name": "scales"},
            {"params": [gaussian_splats._opacity_logits], "lr": config.opacity_lr, "name": "opacities"},
            {"params": [gaussian_splats._sh_dc], "lr": config.sh_dc_lr, "name": "sh_dc"},
            {"params": [gaussian_splats._sh_rest], "lr": config.sh_rest_lr, "name": "sh_rest"},
        ],
        eps=config.eps,
    )
    gaussian_splats.register_resize_hook(optimizer)
    return optimizer
