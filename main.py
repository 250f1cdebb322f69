import json
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np
import torch
import tyro
from PIL import Image

from mcmcsplat.config import TrainConfig, save_config
from mcmcsplat.core import Camera, Dataset, GaussianSplats, init_model_from_pointcloud
from mcmcsplat.errors import ConfigurationError
from mcmcsplat.rendering import GaussianRasterizer
from mcmcsplat.training import (
    LoggingObserver,
    Trainer,
    TorchCheckpointSink,
    TrainingWorker,
    create_strategy,
    load_checkpoint,
)
from mcmcsplat.training.trainer import resolve_device

logger = logging.getLogger("mcmcsplat")


def train(config: TrainConfig) -> int:
    """Train a Gaussian splat model on a NeRF-synthetic scene."""
    if config.data_path is None:
        logger.error("--config.data-path is required")
        return 1
    torch.manual_seed(config.seed)

    # Load scene
    dataset = Dataset.from_nerf_synthetic(
        config.data_path, config.split, scale=config.image_scale, background=config.background
    )
    logger.info("Loaded scene with %d cameras", len(dataset))

    start_iteration, optimizer_state = 0, None
    if config.resume is not None:
        checkpoint = load_checkpoint(config.resume)
        splats = GaussianSplats.from_snapshot(checkpoint)
        start_iteration = checkpoint["iteration"]
        optimizer_state = checkpoint.get("optimizer")
        logger.info("Resuming from %s at iteration %d", config.resume, start_iteration)
    else:
        splats = init_model_from_pointcloud(
            config, dataset.scene_center, dataset.scene_extent, dataset.points, dataset.colors
        )
    logger.info("Initialized %d Gaussians", len(splats))

    save_config(config, config.output_path)
    trainer = Trainer(
        dataset,
        splats,
        strategy=create_strategy(config.strategy, config.mcmc, seed=config.seed),
        config=config,
        rasterizer=GaussianRasterizer(),
        checkpoint_sink=TorchCheckpointSink(Path(config.output_path) / "checkpoints"),
        observers=[LoggingObserver()],
        start_iteration=start_iteration,
        optimizer_state=optimizer_state,
    )

    if config.headless:
        # Ctrl-C ends the run at the next iteration boundary
        signal.signal(signal.SIGINT, lambda signum, frame: trainer.request_stop())
        result = trainer.train()
    else:
        worker = TrainingWorker(trainer).start()
        try:
            while worker.is_alive():
                worker.join(timeout=0.5)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping training...")
            worker.request_stop()
        result = worker.join()

    if result.error is not None:
        logger.error("Training failed: %s", result.error)
        return 1
    logger.info("Training %s: %d iterations, %d Gaussians", result.state.value, result.iterations, result.num_gaussians)
    return 0


@dataclass
class RenderArgs:
    checkpoint: Path
    """Checkpoint written during training."""
    cameras: Path
    """JSON array of cameras with `intrinsics` (3x3) and `extrinsics.c2w_matrix` (4x4)."""
    output: Path = Path("renders")
    device: str = "auto"
    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)


def load_camera_json(path) -> list:
    with open(path) as f:
        entries = json.load(f)
    if isinstance(entries, dict):
        entries = [entries]

    cameras = []
    for index, entry in enumerate(entries):
        if "intrinsics" not in entry or "extrinsics" not in entry:
            raise ConfigurationError(f"Camera entry {index} is missing intrinsics or extrinsics")
        K = np.asarray(entry["intrinsics"], dtype=np.float32)
        c2w = torch.tensor(entry["extrinsics"]["c2w_matrix"], dtype=torch.float32)
        width = int(entry.get("width") or round(2 * K[0, 2]))
        height = int(entry.get("height") or round(2 * K[1, 2]))
        cameras.append(
            Camera.from_c2w(
                c2w,
                fx=float(K[0, 0]),
                fy=float(K[1, 1]),
                cx=float(K[0, 2]),
                cy=float(K[1, 2]),
                width=width,
                height=height,
                uid=str(entry.get("img_id", index)),
                index=index,
            )
        )
    return cameras


def render(args: RenderArgs) -> int:
    """Render a trained checkpoint from the cameras in a JSON file."""
    device = resolve_device(args.device)
    splats = GaussianSplats.from_snapshot(load_checkpoint(args.checkpoint)).to(device)
    rasterizer = GaussianRasterizer()
    background = torch.tensor(args.background, dtype=torch.float32, device=device)
    os.makedirs(args.output, exist_ok=True)

    for camera in load_camera_json(args.cameras):
        with torch.no_grad():
            output = rasterizer.render(camera.to(device), splats, background)
        image = (output.image.clamp(0.0, 1.0).cpu().numpy() * 255.0).round().astype(np.uint8)
        out_path = args.output / f"{camera.uid}.png"
        Image.fromarray(image).save(out_path)
        logger.info("Rendered %s", out_path)
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return tyro.extras.subcommand_cli_from_dict({"train": train, "render": render})


if __name__ == "__main__":
    raise SystemExit(main())
