import torch
from einops import einsum

from ..core.camera import Camera

NEAR_PLANE = 0.01


def project_gaussians_to_camera(positions_world: torch.Tensor, camera: Camera):
    """
    World -> camera frame.

    Returns:
        positions_cam: [N, 3]
        depths: [N] z in the camera frame, positive in front of the camera
    """
    positions_cam = einsum(camera.R, positions_world, "i j, n j -> n i") + camera.T
    return positions_cam, positions_cam[:, 2]


def project_points_to_image(positions_cam: torch.Tensor, camera: Camera, margin: float = 50.0):
    """
    Pinhole projection of camera-frame points with z > NEAR_PLANE.

    `in_bounds` keeps points up to `margin` pixels outside the image so that
    Gaussians centered just off-screen still contribute their tails.
    """
    inv_z = 1.0 / positions_cam[:, 2]
    u = camera.fx * positions_cam[:, 0] * inv_z + camera.cx
    v = camera.fy * positions_cam[:, 1] * inv_z + camera.cy
    points_2d = torch.stack([u, v], dim=-1)  # [N, 2]

    in_bounds = (
        (u > -margin) & (u < camera.width + margin) & (v > -margin) & (v < camera.height + margin)
    )
    return points_2d, in_bounds


def project_cov_to_2d(
    covs_3d: torch.Tensor, positions_cam: torch.Tensor, camera: Camera, blur: float = 0.3
):
    """
    EWA splatting: Sigma_2d = J W Sigma W^T J^T + blur * I

    Args:
        covs_3d: [N, 3, 3] covariance matrices in world space
        positions_cam: [N, 3] positions in camera space (z > 0)
        camera: Camera instance
        blur: isotropic low-pass added in pixels^2

    Returns:
        covs_2d: [N, 2, 2] covariance matrices in image space
    """
    N = covs_3d.shape[0]
    Z = positions_cam[:, 2]

    # Off-screen points are clamped to 1.3x the frustum so J stays well conditioned
    lim_x = 1.3 * (0.5 * camera.width / camera.fx)
    lim_y = 1.3 * (0.5 * camera.height / camera.fy)
    tx = (positions_cam[:, 0] / Z).clamp(-lim_x, lim_x) * Z
    ty = (positions_cam[:, 1] / Z).clamp(-lim_y, lim_y) * Z

    J = covs_3d.new_zeros(N, 2, 3)
    J[:, 0, 0] = camera.fx / Z
    J[:, 0, 2] = -camera.fx * tx / (Z * Z)
    J[:, 1, 1] = camera.fy / Z
    J[:, 1, 2] = -camera.fy * ty / (Z * Z)

    W = camera.R.to(covs_3d.dtype)
    covs_cam = einsum(W, covs_3d, W, "i j, n j k, l k -> n i l")
    covs_2d = einsum(J, covs_cam, J, "n i j, n j k, n l k -> n i l")

    return covs_2d + blur * torch.eye(2, device=covs_3d.device, dtype=covs_3d.dtype)
