import json
import math

import numpy as np
import pytest
import torch
from PIL import Image

from mcmcsplat.config import TrainConfig
from mcmcsplat.core import Camera, Dataset, init_model_from_pointcloud
from mcmcsplat.core.sh import eval_sh, rgb_to_sh, sh_to_rgb
from mcmcsplat.errors import ConfigurationError, ModelInitError

from conftest import make_camera


def test_camera_position_from_c2w():
    c2w = torch.eye(4)
    c2w[:3, 3] = torch.tensor([1.0, 2.0, 3.0])
    camera = Camera.from_c2w(c2w, 10.0, 10.0, 8.0, 8.0, 16, 16)

    torch.testing.assert_close(camera.position, torch.tensor([1.0, 2.0, 3.0]))
    torch.testing.assert_close(camera.c2w, c2w)


def test_opengl_pose_is_flipped():
    camera = Camera.from_c2w(torch.eye(4), 10.0, 10.0, 8.0, 8.0, 16, 16, opengl=True)
    # OpenGL cameras look down -z, so a point at z = -1 is in front
    depth = (camera.R @ torch.tensor([0.0, 0.0, -1.0]) + camera.T)[2]
    assert depth > 0


def test_degenerate_camera():
    assert make_camera(width=0).is_degenerate()
    assert not make_camera().is_degenerate()
    scaled = make_camera(width=16, height=16).scaled(0.5)
    assert (scaled.width, scaled.height, scaled.fx) == (8, 8, 10.0)


def test_dataset_rejects_mismatched_images():
    with pytest.raises(ConfigurationError):
        Dataset([make_camera()], [torch.zeros(8, 8, 3)])
    with pytest.raises(ConfigurationError):
        Dataset([make_camera()], [])


def test_scene_extent_covers_cameras():
    cameras = [
        make_camera(uid="a", T=torch.tensor([-1.0, 0.0, 0.0])),
        make_camera(uid="b", T=torch.tensor([1.0, 0.0, 0.0])),
    ]
    dataset = Dataset(cameras, [torch.zeros(16, 16, 3)] * 2)

    torch.testing.assert_close(dataset.scene_center, torch.zeros(3))
    assert dataset.scene_extent == pytest.approx(1.1)
    camera, image = dataset[1]
    assert camera.uid == "b" and image.shape == (16, 16, 3)


def test_from_nerf_synthetic(tmp_path):
    frames = []
    for i in range(2):
        rgba = np.zeros((8, 10, 4), dtype=np.uint8)
        rgba[..., 0] = 255
        rgba[..., 3] = 255 if i == 0 else 0
        Image.fromarray(rgba, "RGBA").save(tmp_path / f"r_{i}.png")
        c2w = np.eye(4)
        c2w[2, 3] = 4.0
        frames.append({"file_path": f"./r_{i}", "transform_matrix": c2w.tolist()})
    with open(tmp_path / "transforms_train.json", "w") as f:
        json.dump({"camera_angle_x": 0.69, "frames": frames}, f)

    dataset = Dataset.from_nerf_synthetic(tmp_path, "train", background=(0.0, 0.0, 1.0))

    assert len(dataset) == 2
    camera, image = dataset[0]
    assert (camera.width, camera.height) == (10, 8)
    assert camera.fx == pytest.approx(10 / (2 * math.tan(0.69 / 2)))
    torch.testing.assert_close(image[0, 0], torch.tensor([1.0, 0.0, 0.0]))
    # Fully transparent pixels take the background color
    torch.testing.assert_close(dataset[1][1][0, 0], torch.tensor([0.0, 0.0, 1.0]))


def test_missing_transforms_file(tmp_path):
    with pytest.raises(ConfigurationError):
        Dataset.from_nerf_synthetic(tmp_path, "test")


def test_random_initialization():
    config = TrainConfig(init_num_points=50, init_opacity=0.1)
    splats = init_model_from_pointcloud(config, torch.zeros(3), 2.0)

    assert len(splats) == 50
    assert splats.max_sh_degree == 3
    assert splats.active_sh_degree == 0
    assert splats._positions.detach().abs().max() <= config.init_extent * 2.0
    torch.testing.assert_close(splats.get_opacities().detach(), torch.full((50,), 0.1))
    assert torch.isfinite(splats._scales).all()


def test_initialization_from_points():
    points = torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    colors = torch.tensor([[255.0, 0.0, 0.0]] * 4)
    splats = init_model_from_pointcloud(TrainConfig(), torch.zeros(3), 1.0, points, colors)

    torch.testing.assert_close(splats._positions.detach(), points)
    torch.testing.assert_close(sh_to_rgb(splats._sh_dc.detach()[:, 0]), colors / 255.0)


def test_initialization_rejects_bad_points():
    with pytest.raises(ModelInitError):
        init_model_from_pointcloud(TrainConfig(), torch.zeros(3), 1.0, torch.tensor([[float("nan"), 0.0, 0.0]]))
    with pytest.raises(ModelInitError):
        init_model_from_pointcloud(TrainConfig(init_num_points=0), torch.zeros(3), 1.0)


def test_sh_degree_zero_is_view_independent():
    rgb = torch.tensor([[0.2, 0.4, 0.6]])
    sh = torch.zeros(1, 16, 3)
    sh[:, 0] = rgb_to_sh(rgb)
    dirs = torch.nn.functional.normalize(torch.randn(1, 3), dim=-1)

    torch.testing.assert_close(eval_sh(0, sh, dirs) + 0.5, rgb)
    torch.testing.assert_close(eval_sh(3, sh, dirs) + 0.5, rgb)


@pytest.mark.parametrize("degree", [-1, 4])
def test_eval_sh_rejects_unsupported_degree(degree):
    with pytest.raises(ValueError):
        eval_sh(degree, torch.zeros(1, 16, 3), torch.tensor([[0.0, 0.0, 1.0]]))


def test_intrinsic_matrix():
    K = make_camera(width=16, height=12).intrinsic_matrix
    torch.testing.assert_close(K, torch.tensor([[20.0, 0.0, 8.0], [0.0, 20.0, 6.0], [0.0, 0.0, 1.0]]))
