import threading
import time

import pytest
import torch

from mcmcsplat.config import MCMCConfig
from mcmcsplat.core import Dataset
from mcmcsplat.errors import ConfigurationError
from mcmcsplat.rendering import GaussianRasterizer
from mcmcsplat.training import (
    MCMCStrategy,
    TorchCheckpointSink,
    Trainer,
    TrainerState,
    TrainingWorker,
    load_checkpoint,
)

from conftest import RecordingObserver, cluster_positions, make_camera, make_splats


class CountingRasterizer(GaussianRasterizer):
    def __init__(self):
        super().__init__()
        self.rendered = []

    def render(self, camera, splats, background=None, sh_degree=None):
        self.rendered.append(camera.uid)
        return super().render(camera, splats, background, sh_degree)


class FailingSink:
    def __init__(self, raise_error=False):
        self.raise_error = raise_error
        self.calls = 0

    def save(self, snapshot, iteration):
        self.calls += 1
        if self.raise_error:
            raise OSError("disk full")
        return False


def make_dataset(num_cameras=1):
    cameras = [make_camera(uid=f"cam{i}", index=i) for i in range(num_cameras)]
    images = [torch.full((16, 16, 3), 0.5) for _ in cameras]
    return Dataset(cameras, images)


def test_single_camera_budget(splats, train_config):
    rasterizer = CountingRasterizer()
    observer = RecordingObserver()
    trainer = Trainer(
        make_dataset(1), splats, config=train_config, rasterizer=rasterizer, observers=[observer], show_progress=False
    )

    result = trainer.train()

    assert result.state == TrainerState.COMPLETED
    assert result.error is None
    assert result.iterations == 5
    assert trainer.iteration == 5
    assert not trainer.is_running()
    assert rasterizer.rendered == ["cam0"] * 5
    assert [p[0] for p in observer.progress] == [1, 2, 3, 4, 5]
    assert observer.states == [TrainerState.RUNNING, TrainerState.COMPLETED]


def test_training_reduces_loss(train_config):
    train_config.iterations = 60
    train_config.optimization.opacity_reg = 0.0
    train_config.optimization.scale_reg = 0.0
    observer = RecordingObserver()
    trainer = Trainer(
        make_dataset(1),
        make_splats(cluster_positions(30)),
        config=train_config,
        observers=[observer],
        show_progress=False,
    )

    result = trainer.train()

    assert result.success
    assert observer.progress[-1][1] < observer.progress[0][1]


def test_round_robin_order(splats, train_config):
    train_config.camera_order = "round_robin"
    train_config.iterations = 6
    rasterizer = CountingRasterizer()

    Trainer(make_dataset(3), splats, config=train_config, rasterizer=rasterizer, show_progress=False).train()

    assert rasterizer.rendered == ["cam0", "cam1", "cam2"] * 2


def test_shuffle_visits_every_camera_each_epoch(splats, train_config):
    train_config.camera_order = "shuffle"
    train_config.iterations = 8
    rasterizer = CountingRasterizer()

    Trainer(make_dataset(4), splats, config=train_config, rasterizer=rasterizer, show_progress=False).train()

    assert sorted(rasterizer.rendered[:4]) == ["cam0", "cam1", "cam2", "cam3"]
    assert sorted(rasterizer.rendered[4:]) == ["cam0", "cam1", "cam2", "cam3"]


def test_failed_renders_are_skipped_and_counted(splats, train_config):
    # Second camera looks away from the scene
    away = make_camera(uid="away", index=1, R=torch.diag(torch.tensor([1.0, -1.0, -1.0])))
    dataset = Dataset([make_camera(), away], [torch.full((16, 16, 3), 0.5)] * 2)
    train_config.camera_order = "round_robin"
    train_config.iterations = 4
    observer = RecordingObserver()

    result = Trainer(dataset, splats, config=train_config, observers=[observer], show_progress=False).train()

    assert result.state == TrainerState.COMPLETED
    assert result.iterations == 4
    assert result.skipped == 2
    assert [(it, uid) for it, uid, _ in observer.skips] == [(2, "away"), (4, "away")]


@pytest.mark.parametrize("raise_error", [False, True])
def test_failing_checkpoint_sink_does_not_stop_training(splats, train_config, raise_error):
    train_config.save_every = 2
    sink = FailingSink(raise_error)

    result = Trainer(make_dataset(1), splats, config=train_config, checkpoint_sink=sink, show_progress=False).train()

    assert result.state == TrainerState.COMPLETED
    assert result.checkpoints == []
    assert sink.calls == 3  # iterations 2, 4 and the final one


def test_empty_dataset_fails_before_running(splats, train_config):
    observer = RecordingObserver()
    trainer = Trainer(Dataset([], []), splats, config=train_config, observers=[observer], show_progress=False)

    result = trainer.train()

    assert result.state == TrainerState.FAILED
    assert isinstance(result.error, ConfigurationError)
    assert result.iterations == 0
    assert TrainerState.RUNNING not in observer.states


def test_invalid_config_fails(splats, train_config):
    train_config.iterations = 0
    result = Trainer(make_dataset(1), splats, config=train_config, show_progress=False).train()
    assert result.state == TrainerState.FAILED
    assert isinstance(result.error, ConfigurationError)


def test_train_runs_once(splats, train_config):
    trainer = Trainer(make_dataset(1), splats, config=train_config, show_progress=False)
    trainer.train()
    result = trainer.train()
    assert result.state == TrainerState.FAILED


def test_stop_before_start(splats, train_config, tmp_path):
    stop = threading.Event()
    stop.set()
    sink = TorchCheckpointSink(tmp_path)

    result = Trainer(make_dataset(1), splats, config=train_config, checkpoint_sink=sink, show_progress=False).train(stop)

    assert result.state == TrainerState.STOPPED
    assert result.iterations == 0
    assert result.checkpoints == [0]


def test_worker_cancellation_with_concurrent_reader(train_config, tmp_path):
    train_config.iterations = 100_000
    train_config.strategy = "mcmc"
    train_config.mcmc = MCMCConfig(start_refine=0, refine_every=3, growth_rate=0.2, cap_max=60)
    splats = make_splats(cluster_positions(30))
    trainer = Trainer(
        make_dataset(2),
        splats,
        strategy=MCMCStrategy(train_config.mcmc, seed=0),
        config=train_config,
        checkpoint_sink=TorchCheckpointSink(tmp_path),
        show_progress=False,
    )

    with TrainingWorker(trainer) as worker:
        deadline = time.time() + 60
        snapshots = []
        while trainer.iteration < 10 and time.time() < deadline:
            snapshots.append(splats.snapshot())
            time.sleep(0.01)
        worker.request_stop()
        result = worker.join(timeout=60)

    assert not worker.is_alive()
    assert result.state == TrainerState.STOPPED
    assert 10 <= result.iterations < 100_000
    assert result.num_gaussians <= 60
    for snapshot in snapshots:
        lengths = {name: snapshot[name].shape[0] for name in ("positions", "scales", "opacities", "sh_dc")}
        assert len(set(lengths.values())) == 1

    checkpoint = load_checkpoint(tmp_path / f"checkpoint_{result.iterations:06d}.pt")
    assert checkpoint["iteration"] == result.iterations
    assert checkpoint["positions"].shape[0] == result.num_gaussians


def test_restructuring_during_training_respects_cap(train_config):
    train_config.iterations = 12
    train_config.mcmc = MCMCConfig(start_refine=0, refine_every=2, growth_rate=0.5, cap_max=40)
    splats = make_splats(cluster_positions(30))
    trainer = Trainer(
        make_dataset(1),
        splats,
        strategy=MCMCStrategy(train_config.mcmc, seed=0),
        config=train_config,
        show_progress=False,
    )

    result = trainer.train()

    assert result.state == TrainerState.COMPLETED
    assert 0 < len(splats) <= 40
    for name, param in splats.named_gaussian_params().items():
        state = trainer.optimizer.state[param]
        assert state["exp_avg"].shape == param.shape, name


def test_resume_continues_from_iteration(splats, train_config):
    rasterizer = CountingRasterizer()
    trainer = Trainer(
        make_dataset(1), splats, config=train_config, rasterizer=rasterizer, start_iteration=3, show_progress=False
    )

    result = trainer.train()

    assert result.state == TrainerState.COMPLETED
    assert result.iterations == 5
    assert len(rasterizer.rendered) == 2


def test_sh_degree_increases_on_schedule(train_config):
    train_config.optimization.sh_degree = 1
    train_config.optimization.sh_degree_interval = 2
    splats = make_splats(cluster_positions(), sh_degree=1)

    Trainer(make_dataset(1), splats, config=train_config, show_progress=False).train()

    assert splats.active_sh_degree == 1


def test_stop_requested_on_trainer_before_worker_starts(splats, train_config):
    trainer = Trainer(make_dataset(1), splats, config=train_config, show_progress=False)
    trainer.request_stop()

    result = TrainingWorker(trainer).start().join(timeout=60)

    assert result.state == TrainerState.STOPPED
    assert result.iterations == 0


def test_worker_request_stop_reaches_trainer(splats, train_config):
    trainer = Trainer(make_dataset(1), splats, config=train_config, show_progress=False)
    worker = TrainingWorker(trainer)
    worker.request_stop()

    result = worker.start().join(timeout=60)

    assert result.state == TrainerState.STOPPED
    assert result.iterations == 0
