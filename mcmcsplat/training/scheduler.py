import torch

from ..config import OptimizationConfig


def exponential_decay(final_ratio: float, max_steps: int):
    """lr multiplier: final_ratio^(t/max_steps), held constant after max_steps"""

    def lr_lambda(iteration):
        return final_ratio ** (min(iteration, max_steps) / max_steps)

    return lr_lambda


def create_scheduler(
    optimizer: torch.optim.Optimizer,
    config: OptimizationConfig = None,
    max_iterations: int = 30000,
    start_iteration: int = 0,
) -> torch.optim.lr_scheduler.LambdaLR:
    """
    Create scheduler with one exponential decay per parameter group.

    By default only positions decay (to 1% of the initial lr); the other
    groups keep a constant learning rate unless their final ratio is set.

    Args:
        optimizer: Optimizer with named parameter groups
        config: per-group final lr ratios
        max_iterations: Total training iterations
        start_iteration: iteration to resume from

    Returns:
        Configured LambdaLR scheduler
    """
    config = config or OptimizationConfig()
    final_ratios = {
        "positions": config.position_lr_final_ratio,
        "quaternions": config.quaternion_lr_final_ratio,
        "scales": config.scale_lr_final_ratio,
        "opacities": config.opacity_lr_final_ratio,
        "sh_dc": config.sh_lr_final_ratio,
        "sh_rest": config.sh_lr_final_ratio,
    }

    # One lambda per parameter group, in group order
    lambda_functions = [
        exponential_decay(final_ratios.get(group.get("name"), 1.0), max_iterations)
        for group in optimizer.param_groups
    ]

    if start_iteration > 0:
        for group in optimizer.param_groups:
            group.setdefault("initial_lr", group["lr"])
    return torch.optim.lr_scheduler.LambdaLR(
        optimizer, lambda_functions, last_epoch=start_iteration - 1
    )
