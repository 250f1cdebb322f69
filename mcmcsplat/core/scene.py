import json
import logging
import os
from typing import Optional, Sequence, Tuple

import numpy as np
import torch
from PIL import Image

from ..errors import ConfigurationError, ModelInitError
from .camera import Camera
from .gaussian import GaussianSplats
from .sh import num_sh_bases, rgb_to_sh

logger = logging.getLogger(__name__)


class Dataset:
    """Immutable ordered collection of (camera, reference image) pairs.

    Images are [H, W, 3] float tensors in [0, 1]. They are decoded once and
    only read afterwards, so they can be shared without locking.
    """

    def __init__(
        self,
        cameras: Sequence[Camera],
        images: Sequence[torch.Tensor],
        scene_center: Optional[torch.Tensor] = None,
        points: Optional[torch.Tensor] = None,
        colors: Optional[torch.Tensor] = None,
    ):
        if len(cameras) != len(images):
            raise ConfigurationError(f"{len(cameras)} cameras but {len(images)} images")
        for camera, image in zip(cameras, images):
            if image.shape[:2] != (camera.height, camera.width):
                raise ConfigurationError(
                    f"Image for camera '{camera.uid}' is {tuple(image.shape[:2])}, "
                    f"expected {(camera.height, camera.width)}"
                )
        self._cameras = tuple(cameras)
        self._images = tuple(images)
        self.points = points
        self.colors = colors

        self.scene_center, self.scene_extent = self._camera_bounds(scene_center)

    def _camera_bounds(self, scene_center) -> Tuple[torch.Tensor, float]:
        if not self._cameras:
            center = torch.zeros(3) if scene_center is None else torch.as_tensor(scene_center).float()
            return center, 1.0
        positions = torch.stack([cam.position.cpu() for cam in self._cameras])
        center = positions.mean(dim=0) if scene_center is None else torch.as_tensor(scene_center).float().cpu()
        # Same normalization as NeRF++: 10% margin over the farthest camera
        radius = (positions - center).norm(dim=-1).max().item() * 1.1
        if radius < 1e-6:
            radius = 1.0
        return center, radius

    def __len__(self):
        return len(self._cameras)

    def __getitem__(self, index: int) -> Tuple[Camera, torch.Tensor]:
        return self._cameras[index], self._images[index]

    @property
    def cameras(self) -> Tuple[Camera, ...]:
        return self._cameras

    def to(self, device) -> "Dataset":
        return Dataset(
            [cam.to(device) for cam in self._cameras],
            [img.to(device) for img in self._images],
            scene_center=self.scene_center,
            points=self.points,
            colors=self.colors,
        )

    @classmethod
    def from_nerf_synthetic(cls, path, split="train", scale=1.0, background=(0.0, 0.0, 0.0)):
        """Load a Blender/NeRF-synthetic scene (transforms_<split>.json + RGBA pngs)."""
        transforms_path = os.path.join(path, f"transforms_{split}.json")
        if not os.path.exists(transforms_path):
            raise ConfigurationError(f"No {transforms_path}")

        with open(transforms_path) as f:
            meta = json.load(f)

        cameras, images = [], []
        bg = np.asarray(background, dtype=np.float32)
        for index, frame in enumerate(meta["frames"]):
            # Load image
            file_path = frame["file_path"]
            if not os.path.splitext(file_path)[1]:
                file_path += ".png"
            img = Image.open(os.path.join(path, file_path)).convert("RGBA")
            if scale != 1.0:
                img = img.resize((round(img.width * scale), round(img.height * scale)), Image.LANCZOS)
            rgba = np.asarray(img, dtype=np.float32) / 255.0
            rgb = rgba[..., :3] * rgba[..., 3:4] + bg * (1.0 - rgba[..., 3:4])

            # Create camera
            camera = Camera.from_nerf_json(
                width=img.width,
                height=img.height,
                fov_x=meta["camera_angle_x"],
                transform_matrix=frame["transform_matrix"],
                uid=os.path.basename(frame["file_path"]),
                index=index,
            )
            cameras.append(camera)
            images.append(torch.from_numpy(np.ascontiguousarray(rgb)))

        logger.info("Loaded %d cameras from %s", len(cameras), transforms_path)
        return cls(cameras, images)


def init_model_from_pointcloud(
    config,
    scene_center: torch.Tensor,
    scene_extent: float,
    points: Optional[torch.Tensor] = None,
    colors: Optional[torch.Tensor] = None,
    device="cpu",
) -> GaussianSplats:
    """
    Build the starting Gaussian set.

    Without a point cloud, `config.init_num_points` Gaussians are placed
    uniformly in a cube of half-size `init_extent * scene_extent` around the
    scene center, with random colors.
    """
    if points is None or len(points) == 0:
        n = config.init_num_points
        if n <= 0:
            raise ModelInitError("No point cloud and init_num_points <= 0")
        half = config.init_extent * scene_extent
        points = (torch.rand(n, 3) * 2.0 - 1.0) * half + torch.as_tensor(scene_center).float()
        colors = torch.rand(n, 3)
        logger.info("Initialized %d random Gaussians (extent %.3f)", n, half)
    else:
        points = torch.as_tensor(points, dtype=torch.float32)
        if colors is None:
            colors = torch.full_like(points, 0.5)
        colors = torch.as_tensor(colors, dtype=torch.float32)
        if colors.max() > 1.0:
            colors = colors / 255.0
        logger.info("Initialized %d Gaussians from point cloud", len(points))

    if not torch.isfinite(points).all():
        raise ModelInitError("Point cloud contains non-finite coordinates")

    n = points.shape[0]
    points = points.to(device)
    colors = colors.to(device)

    avg_dist = _mean_neighbor_distance(points, fallback=0.01 * scene_extent)
    scales = torch.log(avg_dist * config.init_scale).unsqueeze(-1).repeat(1, 3)

    quats = torch.zeros(n, 4, device=device)
    quats[:, 0] = 1.0

    opacities = torch.logit(torch.full((n,), config.init_opacity, device=device))

    sh_degree = config.optimization.sh_degree
    sh_dc = rgb_to_sh(colors).unsqueeze(1)
    sh_rest = torch.zeros(n, num_sh_bases(sh_degree) - 1, 3, device=device)

    return GaussianSplats(points, quats, scales, opacities, sh_dc, sh_rest)


def _mean_neighbor_distance(points: torch.Tensor, k=3, fallback=0.01, max_ref=10000, chunk=1024):
    """Mean distance to the k nearest neighbours (reference set subsampled for large clouds)."""
    n = points.shape[0]
    if n < 2:
        return torch.full((n,), fallback, device=points.device)

    ref = points
    if n > max_ref:
        ref = points[torch.randperm(n, device=points.device)[:max_ref]]
    k = min(k, ref.shape[0] - 1)

    out = []
    for start in range(0, n, chunk):
        dists = torch.cdist(points[start : start + chunk], ref)
        dists[dists == 0] = float("inf")
        knn = dists.topk(k, dim=1, largest=False).values
        knn[torch.isinf(knn)] = fallback
        out.append(knn.mean(dim=1))
    return torch.cat(out).clamp(min=1e-7)
