from typing import Optional

import torch
from pytorch_msssim import ssim as pytorch_ssim

from ..core.gaussian import GaussianSplats
from ..errors import NonFiniteLossError


def l1_loss(rendered: torch.Tensor, gt: torch.Tensor) -> torch.Tensor:
    """
    Compute L1 loss between rendered and ground truth images

    Args:
        rendered: [H, W, 3] rendered image
        gt: [H, W, 3] ground truth image

    Returns:
        L1 loss (scalar)
    """
    return torch.abs(rendered - gt).mean()


def ssim(rendered: torch.Tensor, gt: torch.Tensor) -> torch.Tensor:
    # [H, W, 3] -> [1, 3, H, W] for pytorch-msssim
    rendered_bchw = rendered.permute(2, 0, 1).unsqueeze(0)
    gt_bchw = gt.permute(2, 0, 1).unsqueeze(0)
    # The default 11px window must fit inside the image
    win_size = min(11, rendered.shape[0], rendered.shape[1])
    if win_size % 2 == 0:
        win_size -= 1
    return pytorch_ssim(rendered_bchw, gt_bchw, data_range=1.0, win_size=win_size)


def compute_loss(
    rendered: torch.Tensor,
    gt: torch.Tensor,
    splats: Optional[GaussianSplats] = None,
    lambda_dssim: float = 0.2,
    opacity_reg: float = 0.0,
    scale_reg: float = 0.0,
) -> dict:
    """
    Compute combined loss for Gaussian Splatting

    Args:
        rendered: [H, W, 3] rendered image
        gt: [H, W, 3] ground truth image
        splats: model to regularize, needed when opacity_reg or scale_reg > 0
        lambda_dssim: weight for D-SSIM loss
        opacity_reg: weight of the mean opacity penalty
        scale_reg: weight of the mean scale penalty

    Returns:
        Dictionary containing:
            - 'total': total loss
            - 'l1': L1 loss component
            - 'ssim': SSIM value
            - 'opacity_reg' / 'scale_reg' when enabled

    Raises:
        NonFiniteLossError: if the total is NaN or infinite
    """
    l1 = l1_loss(rendered, gt)
    ssim_val = ssim(rendered, gt)

    total = (1.0 - lambda_dssim) * l1 + lambda_dssim * (1.0 - ssim_val)
    losses = {"l1": l1, "ssim": ssim_val}

    if splats is not None and opacity_reg > 0:
        losses["opacity_reg"] = opacity_reg * splats.get_opacities().mean()
        total = total + losses["opacity_reg"]
    if splats is not None and scale_reg > 0:
        losses["scale_reg"] = scale_reg * splats.get_scales().mean()
        total = total + losses["scale_reg"]

    if not torch.isfinite(total):
        raise NonFiniteLossError(f"Loss is {total.item()}")

    losses["total"] = total
    return losses
