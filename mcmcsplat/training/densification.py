"""
Densification strategies: restructuring of the Gaussian population between
training iterations.

The trainer only talks to the `Strategy` interface. `MCMCStrategy` follows
"3D Gaussian Splatting as Markov Chain Monte Carlo" (Kheradmand et al., 2024):
instead of heuristic split/clone it moves probability mass around. Every
`refine_every` iterations it

- prunes Gaussians whose opacity fell below `min_opacity`,
- relocates Gaussians that were never visible during the window next to
  high-score ones,
- spawns new Gaussians next to high-score ones, up to `cap_max`,

where sources are sampled with probability proportional to the average
position-gradient norm. A source picked k times is split into k + 1 copies
whose opacity and scale are reduced so that the summed opacity * volume of
the copies equals the source's.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import torch

from ..config import MCMCConfig
from ..core import GaussianSplats
from ..rendering import RenderOutput

logger = logging.getLogger(__name__)


@dataclass
class RestructureReport:
    iteration: int
    num_before: int
    num_after: int
    num_pruned: int = 0
    num_relocated: int = 0
    num_spawned: int = 0
    rejected: bool = False


class GradientStats:
    """Per-Gaussian accumulated position-gradient norm and visibility count.

    Registered as a resize hook so it stays index-aligned with the model.
    """

    def __init__(self, num: int, device="cpu"):
        self.grad_accum = torch.zeros(num, device=device)
        self.visible_count = torch.zeros(num, device=device)

    def __len__(self):
        return self.grad_accum.shape[0]

    @torch.no_grad()
    def update(self, grad_norm: torch.Tensor, visibility: torch.Tensor):
        self.grad_accum[visibility] += grad_norm[visibility]
        self.visible_count[visibility] += 1

    def score(self) -> torch.Tensor:
        """Average gradient norm over the renders each Gaussian appeared in"""
        return self.grad_accum / self.visible_count.clamp(min=1)

    def reset(self, num: Optional[int] = None):
        num = len(self) if num is None else num
        device = self.grad_accum.device
        self.grad_accum = torch.zeros(num, device=device)
        self.visible_count = torch.zeros(num, device=device)

    def on_add(self, num_new: int) -> None:
        zeros = torch.zeros(num_new, device=self.grad_accum.device)
        self.grad_accum = torch.cat([self.grad_accum, zeros])
        self.visible_count = torch.cat([self.visible_count, zeros])

    def on_remove(self, keep_mask: torch.Tensor) -> None:
        self.grad_accum = self.grad_accum[keep_mask]
        self.visible_count = self.visible_count[keep_mask]

    def on_replace(self, indices: torch.Tensor) -> None:
        self.grad_accum[indices] = 0
        self.visible_count[indices] = 0


class Strategy(ABC):
    """Interface the trainer uses to restructure the Gaussian population."""

    stats: Optional[GradientStats] = None

    def initialize(self, splats: GaussianSplats) -> None:
        """Create the statistics buffers and keep them aligned with `splats`."""
        if self.stats is not None:
            splats.remove_resize_hook(self.stats)
        self.stats = GradientStats(len(splats), device=splats.device)
        splats.register_resize_hook(self.stats)

    def observe(self, splats: GaussianSplats, render_output: RenderOutput) -> None:
        """Called after every backward pass, before the optimizer step."""

    def post_step(
        self, splats: GaussianSplats, render_output: RenderOutput, iteration: int, lr: float
    ) -> None:
        """Called after every optimizer step."""

    @abstractmethod
    def should_restructure(self, iteration: int) -> bool: ...

    @abstractmethod
    def restructure(self, splats: GaussianSplats, iteration: int) -> RestructureReport: ...


class NoOpStrategy(Strategy):
    """Keeps the population fixed."""

    def should_restructure(self, iteration: int) -> bool:
        return False

    def restructure(self, splats: GaussianSplats, iteration: int) -> RestructureReport:
        return RestructureReport(iteration, len(splats), len(splats))


class MCMCStrategy(Strategy):
    def __init__(self, config: Optional[MCMCConfig] = None, seed: Optional[int] = None):
        self.config = config or MCMCConfig()
        self.seed = seed
        self._generator = None

    def _rng(self, device) -> torch.Generator:
        if self._generator is None or self._generator.device != torch.device(device):
            self._generator = torch.Generator(device=device)
            if self.seed is not None:
                self._generator.manual_seed(self.seed)
            else:
                self._generator.seed()
        return self._generator

    def should_restructure(self, iteration: int) -> bool:
        cfg = self.config
        return (
            cfg.start_refine < iteration < cfg.stop_refine
            and iteration % cfg.refine_every == 0
        )

    @torch.no_grad()
    def observe(self, splats: GaussianSplats, render_output: RenderOutput) -> None:
        """
        Accumulate positional gradients for restructuring decisions.
        Call this after backward() but before the optimizer step.
        """
        if splats._positions.grad is None:
            return
        if self.stats is None or len(self.stats) != len(splats):
            self.initialize(splats)

        # Compute gradient magnitude: ||grad||_2 for each Gaussian
        grad_norm = torch.norm(splats._positions.grad, dim=1)  # [N]
        self.stats.update(grad_norm, render_output.visibility)

    @torch.no_grad()
    def post_step(
        self, splats: GaussianSplats, render_output: RenderOutput, iteration: int, lr: float
    ) -> None:
        """Langevin noise on positions, strongest for nearly transparent Gaussians."""
        if self.config.noise_lr <= 0:
            return
        visibility = render_output.visibility
        if visibility.shape[0] != len(splats) or not visibility.any():
            return

        opacities = splats.get_opacities()[visibility]
        covariances = splats.get_covariances_3d()[visibility]
        gate = 1.0 / (1.0 + torch.exp(-100.0 * ((1.0 - opacities) - 0.995)))

        noise = torch.randn(
            opacities.shape[0], 3, device=splats.device, generator=self._rng(splats.device)
        )
        noise = noise * gate.unsqueeze(-1) * (lr * self.config.noise_lr)
        noise = torch.einsum("bij,bj->bi", covariances, noise)

        delta = torch.zeros_like(splats._positions)
        delta[visibility] = noise
        splats.update_in_place({"positions": delta})

    @torch.no_grad()
    def restructure(self, splats: GaussianSplats, iteration: int) -> RestructureReport:
        """Prune, relocate and spawn Gaussians as one atomic event."""
        cfg = self.config
        with splats.lock:
            if self.stats is None or len(self.stats) != len(splats):
                self.initialize(splats)

            n = len(splats)
            report = RestructureReport(iteration, n, n)
            opacities = splats.get_opacities()
            score = self.stats.score()

            # 1. Prune nearly transparent Gaussians, lowest opacity first
            dead_idx = torch.nonzero(opacities < cfg.min_opacity, as_tuple=True)[0]
            max_prune = int(cfg.max_prune_fraction * n)
            if dead_idx.numel() > max_prune:
                order = torch.argsort(opacities[dead_idx])
                dead_idx = dead_idx[order[:max_prune]]

            keep_mask = torch.ones(n, dtype=torch.bool, device=splats.device)
            keep_mask[dead_idx] = False
            if not keep_mask.any():
                logger.warning(
                    "Iteration %d: restructuring would remove all %d Gaussians, skipped", iteration, n
                )
                report.rejected = True
                return report

            # 2. Enforce the budget by dropping the lowest-score survivors
            survivors = torch.nonzero(keep_mask, as_tuple=True)[0]
            excess = survivors.numel() - cfg.cap_max
            if excess > 0:
                order = torch.argsort(score[survivors])
                keep_mask[survivors[order[:excess]]] = False
                survivors = torch.nonzero(keep_mask, as_tuple=True)[0]
            prune_idx = torch.nonzero(~keep_mask, as_tuple=True)[0]
            num_survivors = survivors.numel()

            # 3. Relocate Gaussians that were never rendered, grow up to the cap
            unseen = survivors[self.stats.visible_count[survivors] == 0]
            max_relocate = int(cfg.max_relocate_fraction * n)
            relocate_idx = unseen[:max_relocate]
            num_spawn = max(0, min(int(cfg.growth_rate * num_survivors), cfg.cap_max - num_survivors))

            eligible = torch.ones(n, dtype=torch.bool, device=splats.device)
            eligible[prune_idx] = False
            eligible[relocate_idx] = False
            eligible &= score > 0
            eligible_idx = torch.nonzero(eligible, as_tuple=True)[0]

            num_new = relocate_idx.numel() + num_spawn
            if num_new > 0 and eligible_idx.numel() > 0:
                sources = self._sample_sources(score, eligible_idx, num_new)
                offspring = self._split(splats, sources)
                if relocate_idx.numel() > 0:
                    splats.replace(
                        relocate_idx,
                        {name: t[: relocate_idx.numel()] for name, t in offspring.items()},
                    )
                    report.num_relocated = relocate_idx.numel()
                if num_spawn > 0:
                    splats.add({name: t[relocate_idx.numel() :] for name, t in offspring.items()})
                    report.num_spawned = num_spawn

            # Removal last: earlier steps only append or write in place
            if prune_idx.numel() > 0:
                splats.remove(prune_idx)
                report.num_pruned = prune_idx.numel()

            self.stats.reset(len(splats))
            report.num_after = len(splats)

        logger.info(
            "Iteration %d: %d -> %d Gaussians (pruned %d, relocated %d, spawned %d)",
            iteration,
            report.num_before,
            report.num_after,
            report.num_pruned,
            report.num_relocated,
            report.num_spawned,
        )
        return report

    def _sample_sources(self, score: torch.Tensor, eligible_idx: torch.Tensor, num: int) -> torch.Tensor:
        probs = score[eligible_idx]
        probs = probs / probs.sum()
        sampled = torch.multinomial(probs, num, replacement=True, generator=self._rng(probs.device))
        return eligible_idx[sampled]

    def _split(self, splats: GaussianSplats, sources: torch.Tensor) -> Dict[str, torch.Tensor]:
        """
        Shrink each sampled source and return raw parameters for its offspring.

        A source drawn k times ends up as k + 1 copies with opacity
        1 - (1 - o)^(1 / (k + 1)) and scales multiplied by
        (o / ((k + 1) * o'))^(1/3), which keeps opacity * volume constant.
        """
        n = len(splats)
        counts = torch.bincount(sources, minlength=n)
        unique_sources = torch.nonzero(counts, as_tuple=True)[0]
        copies = (counts[unique_sources] + 1).float()

        opacity = splats.get_opacities()[unique_sources]
        scales = splats.get_scales()[unique_sources]
        new_opacity = 1.0 - torch.pow(1.0 - opacity, 1.0 / copies)
        new_opacity = new_opacity.clamp(min=1e-12, max=1.0 - 1e-6)
        shrink = torch.pow(opacity / (copies * new_opacity), 1.0 / 3.0)
        new_scales = scales * shrink.unsqueeze(-1)

        splats.replace(
            unique_sources,
            {"opacities": torch.logit(new_opacity), "scales": torch.log(new_scales)},
        )

        named = splats.named_gaussian_params()
        offspring = {name: p.data[sources].clone() for name, p in named.items()}

        max_extent = torch.exp(offspring["scales"]).max(dim=-1, keepdim=True).values
        offset = torch.randn(
            sources.shape[0], 3, device=splats.device, generator=self._rng(splats.device)
        )
        offspring["positions"] = offspring["positions"] + offset * max_extent * self.config.perturb_scale
        return offspring


def create_strategy(name: str, config: Optional[MCMCConfig] = None, seed: Optional[int] = None) -> Strategy:
    if name == "mcmc":
        return MCMCStrategy(config, seed=seed)
    if name == "none":
        return NoOpStrategy()
    raise ValueError(f"Unknown strategy '{name}'")
