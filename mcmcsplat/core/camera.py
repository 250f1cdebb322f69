import dataclasses
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch


@dataclass(frozen=True, eq=False)
class Camera:
    """Pinhole camera, OpenCV convention (x right, y down, z forward).

    R and T map world points into the camera frame: x_cam = R @ x_world + T.
    Instances are immutable; use `to()` to get a copy on another device.
    """

    R: torch.Tensor  # [3, 3]
    T: torch.Tensor  # [3]
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    uid: str = ""
    index: int = 0
    distortion: Optional[torch.Tensor] = None

    @property
    def device(self):
        return self.R.device

    @property
    def w2c(self):
        """World-to-camera matrix [4, 4]"""
        w2c = torch.eye(4, device=self.R.device, dtype=self.R.dtype)
        w2c[:3, :3] = self.R
        w2c[:3, 3] = self.T
        return w2c

    @property
    def c2w(self):
        return torch.inverse(self.w2c)

    @property
    def position(self):
        """Camera position in world coordinates"""
        return -self.R.T @ self.T

    @property
    def intrinsic_matrix(self):
        """Returns K matrix [3, 3]"""
        K = torch.zeros(3, 3, device=self.R.device)
        K[0, 0] = self.fx
        K[1, 1] = self.fy
        K[0, 2] = self.cx
        K[1, 2] = self.cy
        K[2, 2] = 1.0
        return K

    def is_degenerate(self) -> bool:
        if self.width <= 0 or self.height <= 0:
            return True
        if not (self.fx > 0 and self.fy > 0):
            return True
        return not (torch.isfinite(self.R).all() and torch.isfinite(self.T).all())

    def to(self, device) -> "Camera":
        distortion = self.distortion.to(device) if self.distortion is not None else None
        return dataclasses.replace(
            self, R=self.R.to(device), T=self.T.to(device), distortion=distortion
        )

    def scaled(self, factor: float) -> "Camera":
        """Camera for an image resized by `factor`"""
        return dataclasses.replace(
            self,
            fx=self.fx * factor,
            fy=self.fy * factor,
            cx=self.cx * factor,
            cy=self.cy * factor,
            width=int(round(self.width * factor)),
            height=int(round(self.height * factor)),
        )

    @classmethod
    def from_c2w(cls, c2w, fx, fy, cx, cy, width, height, uid="", index=0, opengl=False):
        """Build from a camera-to-world matrix.

        opengl=True flips the y and z axes first, as needed for NeRF/Blender poses.
        """
        c2w = torch.as_tensor(c2w, dtype=torch.float32).clone()
        if opengl:
            c2w[:3, 1:3] *= -1
        w2c = torch.inverse(c2w)
        return cls(
            R=w2c[:3, :3].contiguous(),
            T=w2c[:3, 3].contiguous(),
            fx=float(fx),
            fy=float(fy),
            cx=float(cx),
            cy=float(cy),
            width=int(width),
            height=int(height),
            uid=uid,
            index=index,
        )

    @classmethod
    def from_nerf_json(cls, width, height, fov_x, transform_matrix, uid="", index=0):
        """Create from NeRF-style JSON format"""
        # Compute focal length from FOV
        fx = width / (2 * np.tan(fov_x / 2))
        fy = fx  # Assume square pixels
        return cls.from_c2w(
            transform_matrix,
            fx,
            fy,
            width / 2,
            height / 2,
            width,
            height,
            uid=uid,
            index=index,
            opengl=True,
        )
