import pytest
import torch

from mcmcsplat.config import TrainConfig
from mcmcsplat.core import Camera, Dataset, GaussianSplats
from mcmcsplat.core.sh import num_sh_bases


def make_camera(width=16, height=16, uid="cam0", index=0, R=None, T=None):
    """Pinhole camera at the origin looking down +z."""
    return Camera(
        R=torch.eye(3) if R is None else R,
        T=torch.zeros(3) if T is None else T,
        fx=20.0,
        fy=20.0,
        cx=width / 2,
        cy=height / 2,
        width=width,
        height=height,
        uid=uid,
        index=index,
    )


def make_splats(positions, opacities=None, scales=None, sh_degree=0, seed=0):
    positions = torch.as_tensor(positions, dtype=torch.float32)
    n = positions.shape[0]
    generator = torch.Generator().manual_seed(seed)
    if opacities is None:
        opacities = torch.full((n,), 0.8)
    if scales is None:
        scales = torch.full((n, 3), 0.1)
    quats = torch.zeros(n, 4)
    quats[:, 0] = 1.0
    sh_dc = torch.rand(n, 1, 3, generator=generator) - 0.5
    sh_rest = torch.zeros(n, num_sh_bases(sh_degree) - 1, 3)
    return GaussianSplats(
        positions,
        quats,
        torch.log(torch.as_tensor(scales, dtype=torch.float32)),
        torch.logit(torch.as_tensor(opacities, dtype=torch.float32)),
        sh_dc,
        sh_rest,
    )


def cluster_positions(n=20, depth=3.0, spread=0.4, seed=0):
    generator = torch.Generator().manual_seed(seed)
    positions = (torch.rand(n, 3, generator=generator) * 2.0 - 1.0) * spread
    positions[:, 2] += depth
    return positions


@pytest.fixture
def camera():
    return make_camera()


@pytest.fixture
def splats():
    return make_splats(cluster_positions())


@pytest.fixture
def dataset(camera):
    return Dataset([camera], [torch.full((camera.height, camera.width, 3), 0.5)])


@pytest.fixture
def train_config():
    config = TrainConfig(iterations=5, device="cpu", report_every=1, save_every=1000, strategy="none")
    config.optimization.sh_degree = 0
    return config


class RecordingObserver:
    def __init__(self):
        self.progress = []
        self.skips = []
        self.states = []

    def on_progress(self, iteration, loss, num_gaussians):
        self.progress.append((iteration, loss, num_gaussians))

    def on_skip(self, iteration, camera_uid, reason):
        self.skips.append((iteration, camera_uid, reason))

    def on_state_change(self, state):
        self.states.append(state)
