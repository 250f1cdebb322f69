from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import torch
from torch.nn.utils.rnn import pad_sequence

from ..core.camera import Camera
from ..core.gaussian import GaussianSplats
from ..core.sh import eval_sh
from ..errors import RenderError
from .projection import (
    NEAR_PLANE,
    project_cov_to_2d,
    project_gaussians_to_camera,
    project_points_to_image,
)


@dataclass
class RenderOutput:
    image: torch.Tensor  # [H, W, 3]
    alpha: torch.Tensor  # [H, W, 1]
    visibility: torch.Tensor  # [N] bool, True for Gaussians that entered the render


class GaussianRasterizer:
    """Differentiable tile-based rasterizer written in plain PyTorch.

    Gradients flow from the returned image back into every parameter of the
    `GaussianSplats` passed to `render`.
    """

    def __init__(self, tile_size: int = 16, batch_size: int = 100, alpha_max: float = 0.99):
        self.tile_size = tile_size
        self.batch_size = batch_size
        self.alpha_max = alpha_max

    def render_pixels(
        self,
        points_2d,  # [batch_size, max_count+1, 2]
        covs_2d,  # [batch_size, max_count+1, 2, 2]
        colors,  # [batch_size, max_count+1, 3]
        opacities,  # [batch_size, max_count+1]
        tiled_pixel_coords: torch.Tensor,  # [batch_size, tile_size, tile_size, 2]
    ):
        device = points_2d.device
        batch_size, tile_size = tiled_pixel_coords.shape[:2]

        # Reshape for broadcasting
        pixel_coords_expanded = tiled_pixel_coords.unsqueeze(-2)
        points_2d_expanded = points_2d.unsqueeze(1).unsqueeze(1)

        # Compute differences: [batch_size, tile_size, tile_size, max_count+1, 2]
        diffs = pixel_coords_expanded - points_2d_expanded

        # Add epsilon for numerical stability
        eps = 1e-4
        covs_2d_reg = covs_2d + eps * torch.eye(2, device=device).unsqueeze(0)
        covs_2d_inv = torch.linalg.inv(covs_2d_reg)  # [batch_size, max_count+1, 2, 2]

        # Mahalanobis distance: [batch_size, tile_size, tile_size, max_count+1]
        diffs_cov = torch.einsum("ahwnj,anjk->ahwnk", diffs, covs_2d_inv)
        mahalanobis = torch.einsum("ahwnj,ahwnj->ahwn", diffs_cov, diffs)

        gaussian_weights = torch.exp(-0.5 * mahalanobis)

        alphas = opacities.unsqueeze(1).unsqueeze(1) * gaussian_weights
        alphas = torch.clamp(alphas, 0.0, self.alpha_max)

        # Front-to-back transmittance: T_i = prod(1 - alpha_j) for j < i
        one_minus_alpha = 1.0 - alphas
        transmittance = torch.cumprod(
            torch.cat(
                [
                    torch.ones(batch_size, tile_size, tile_size, 1, device=device),
                    one_minus_alpha,
                ],
                dim=-1,
            ),
            dim=-1,
        )

        colors_expanded = colors.unsqueeze(1).unsqueeze(1)  # [batch_size, 1, 1, max_count+1, 3]
        contributions = (
            transmittance[..., :-1].unsqueeze(-1) * alphas.unsqueeze(-1) * colors_expanded
        )

        # Sum over Gaussians: [batch_size, tile_size, tile_size, 3]
        rendered = contributions.sum(dim=-2)
        final_transmittance = transmittance[..., -1]  # [batch_size, tile_size, tile_size]

        return rendered, final_transmittance

    def render_tile_batch(
        self,
        splats_per_tiles_mask: torch.Tensor,  # [batch_size, N]
        tiled_pixel_coords: torch.Tensor,  # [batch_size, tile_size, tile_size, 2]
        points_2d,  # [N, 2]
        covs_2d,  # [N, 2, 2]
        colors,  # [N, 3]
        opacities,  # [N]
    ):
        batch_size, N = splats_per_tiles_mask.shape
        device = splats_per_tiles_mask.device

        # Per-tile Gaussian lists, kept in depth order, padded with index N
        splat_indices = [
            torch.nonzero(splats_per_tiles_mask[i], as_tuple=False).squeeze(-1)
            for i in range(batch_size)
        ]
        splat_indices = pad_sequence(splat_indices, batch_first=True, padding_value=N)

        # Padding Gaussian: zero opacity, contributes nothing
        points_2d = torch.cat([points_2d, torch.zeros((1, 2), device=device, dtype=points_2d.dtype)])
        covs_2d = torch.cat([covs_2d, torch.eye(2, device=device, dtype=covs_2d.dtype).unsqueeze(0)])
        colors = torch.cat([colors, torch.zeros((1, 3), device=device, dtype=colors.dtype)])
        opacities = torch.cat([opacities, torch.zeros(1, device=device, dtype=opacities.dtype)])

        return self.render_pixels(
            points_2d[splat_indices],
            covs_2d[splat_indices],
            colors[splat_indices],
            opacities[splat_indices],
            tiled_pixel_coords,
        )

    def gaussian_bounding_boxes(self, points_2d: torch.Tensor, covs_2d: torch.Tensor):
        # Process in chunks to avoid CUDA solver batch size limitations
        N = covs_2d.shape[0]
        chunk_size = 10000
        max_deviations = []

        with torch.no_grad():
            for i in range(0, N, chunk_size):
                chunk_covs = covs_2d[i : i + chunk_size]
                eigenvalues = torch.linalg.eigvalsh(chunk_covs)  # [chunk, 2]
                max_eig = eigenvalues.max(dim=-1).values.clamp(min=0.0)
                max_deviations.append(3.0 * torch.sqrt(max_eig))

            max_deviation = torch.cat(max_deviations, dim=0)  # [N]
            points = points_2d.detach()

            return torch.stack(
                [
                    points[:, 0] - max_deviation,
                    points[:, 0] + max_deviation,
                    points[:, 1] - max_deviation,
                    points[:, 1] + max_deviation,
                ],
                dim=-1,
            )  # [N, 4]

    def assign_gaussians_to_tiles(self, num_tiles_x, num_tiles_y, bounding_boxes: torch.Tensor):
        """Returns a [num_tiles_y, num_tiles_x, N] mask of tile/Gaussian overlaps."""
        device = bounding_boxes.device

        tile_ranges = torch.floor(bounding_boxes / self.tile_size).long()
        x_min = tile_ranges[:, 0].view(1, 1, -1)
        x_max = tile_ranges[:, 1].view(1, 1, -1)
        y_min = tile_ranges[:, 2].view(1, 1, -1)
        y_max = tile_ranges[:, 3].view(1, 1, -1)

        tile_x_coords = torch.arange(num_tiles_x, device=device).view(1, -1, 1)
        tile_y_coords = torch.arange(num_tiles_y, device=device).view(-1, 1, 1)

        x_in_range = (tile_x_coords >= x_min) & (tile_x_coords <= x_max)
        y_in_range = (tile_y_coords >= y_min) & (tile_y_coords <= y_max)

        return x_in_range & y_in_range

    def tile_pixel_coords(self, num_tiles_x, num_tiles_y, device):
        """Pixel coordinates grouped per tile: [num_tiles, tile_size, tile_size, 2]"""
        tile_size = self.tile_size
        y_coords = torch.arange(num_tiles_y * tile_size, device=device, dtype=torch.float32)
        x_coords = torch.arange(num_tiles_x * tile_size, device=device, dtype=torch.float32)
        yy, xx = torch.meshgrid(y_coords, x_coords, indexing="ij")
        pixel_coords = torch.stack([xx, yy], dim=-1)  # [H_pad, W_pad, 2]
        pixel_coords = pixel_coords.reshape(num_tiles_y, tile_size, num_tiles_x, tile_size, 2)
        pixel_coords = pixel_coords.permute(0, 2, 1, 3, 4)
        return pixel_coords.reshape(num_tiles_y * num_tiles_x, tile_size, tile_size, 2)

    def batch_tiles(self, splats_per_tile_mask: torch.Tensor) -> Sequence[torch.Tensor]:
        """Non-empty tile ids, sorted by Gaussian count and split into batches."""
        counts = splats_per_tile_mask.flatten(0, 1).sum(dim=-1)  # [num_tiles]
        sorted_indices = torch.argsort(counts)
        sorted_indices = sorted_indices[counts[sorted_indices] > 0]
        return torch.split(sorted_indices, self.batch_size)

    def render(
        self,
        camera: Camera,
        splats: GaussianSplats,
        background: Optional[torch.Tensor] = None,
        sh_degree: Optional[int] = None,
    ) -> RenderOutput:
        if camera.is_degenerate():
            raise RenderError(f"Degenerate camera '{camera.uid}'", camera.uid)

        positions = splats._positions
        N = positions.shape[0]
        positions_cam, depths = project_gaussians_to_camera(positions, camera)

        front_idx = torch.nonzero(depths.detach() > NEAR_PLANE, as_tuple=True)[0]
        points_2d, in_bounds = project_points_to_image(positions_cam[front_idx], camera)
        valid_idx = front_idx[in_bounds.detach()]
        if valid_idx.numel() == 0:
            raise RenderError(f"No Gaussians visible from camera '{camera.uid}'", camera.uid)

        visibility = torch.zeros(N, dtype=torch.bool, device=positions.device)
        visibility[valid_idx] = True

        covs_2d = project_cov_to_2d(
            splats.get_covariances_3d()[valid_idx], positions_cam[valid_idx], camera
        )

        sh_degree = splats.active_sh_degree if sh_degree is None else sh_degree
        dirs = positions[valid_idx] - camera.position
        dirs = dirs / dirs.norm(dim=-1, keepdim=True).clamp(min=1e-8)
        colors = torch.clamp_min(eval_sh(sh_degree, splats.get_sh()[valid_idx], dirs) + 0.5, 0.0)
        opacities = splats.get_opacities()[valid_idx]

        # Front to back
        sorted_indices = torch.argsort(depths[valid_idx].detach())

        image, transmittance = self._render(
            points_2d[in_bounds][sorted_indices],
            covs_2d[sorted_indices],
            colors[sorted_indices],
            opacities[sorted_indices],
            camera,
        )

        if background is None:
            background = torch.zeros(3, device=image.device)
        image = image + transmittance.unsqueeze(-1) * background.to(image)

        return RenderOutput(
            image=image,
            alpha=1.0 - transmittance.unsqueeze(-1),
            visibility=visibility,
        )

    def _render(self, points_2d, covs_2d, colors, opacities, camera: Camera):
        device = points_2d.device
        tile_size = self.tile_size
        num_tiles_x = int(np.ceil(camera.width / tile_size))
        num_tiles_y = int(np.ceil(camera.height / tile_size))
        num_tiles = num_tiles_x * num_tiles_y

        bounding_boxes = self.gaussian_bounding_boxes(points_2d, covs_2d)
        splats_per_tile_mask = self.assign_gaussians_to_tiles(num_tiles_x, num_tiles_y, bounding_boxes)
        tile_batches = self.batch_tiles(splats_per_tile_mask)
        if not tile_batches:
            raise RenderError(f"No Gaussian overlaps the image of camera '{camera.uid}'", camera.uid)

        flat_mask = splats_per_tile_mask.flatten(0, 1)  # [num_tiles, N]
        tiled_pixel_coords = self.tile_pixel_coords(num_tiles_x, num_tiles_y, device)

        tiles_rgb = torch.zeros(num_tiles, tile_size, tile_size, 3, device=device)
        tiles_transmittance = torch.ones(num_tiles, tile_size, tile_size, device=device)
        for tile_ids in tile_batches:
            batch_rgb, batch_transmittance = self.render_tile_batch(
                flat_mask[tile_ids],
                tiled_pixel_coords[tile_ids],
                points_2d,
                covs_2d,
                colors,
                opacities,
            )  # [batch_size, tile_size, tile_size, 3]
            tiles_rgb = tiles_rgb.index_copy(0, tile_ids, batch_rgb)
            tiles_transmittance = tiles_transmittance.index_copy(0, tile_ids, batch_transmittance)

        # Tiles back to image layout, then crop the padding
        image = tiles_rgb.reshape(num_tiles_y, num_tiles_x, tile_size, tile_size, 3)
        image = image.permute(0, 2, 1, 3, 4).reshape(num_tiles_y * tile_size, num_tiles_x * tile_size, 3)
        transmittance = tiles_transmittance.reshape(num_tiles_y, num_tiles_x, tile_size, tile_size)
        transmittance = transmittance.permute(0, 2, 1, 3).reshape(
            num_tiles_y * tile_size, num_tiles_x * tile_size
        )

        return image[: camera.height, : camera.width], transmittance[: camera.height, : camera.width]
