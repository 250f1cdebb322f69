import threading
from collections import OrderedDict
from typing import Dict, List, Protocol, Sequence, Union

import torch

# Parameter group name -> attribute holding the raw (unconstrained) tensor
PARAM_ATTRS = OrderedDict(
    [
        ("positions", "_positions"),
        ("quaternions", "_quaternions"),
        ("scales", "_scales"),
        ("opacities", "_opacity_logits"),
        ("sh_dc", "_sh_dc"),
        ("sh_rest", "_sh_rest"),
    ]
)
PARAM_NAMES = tuple(PARAM_ATTRS)

Indices = Union[torch.Tensor, Sequence[int]]


class ResizeHook(Protocol):
    """Anything that keeps per-Gaussian buffers aligned with the model."""

    def on_add(self, num_new: int) -> None: ...

    def on_remove(self, keep_mask: torch.Tensor) -> None: ...

    def on_replace(self, indices: torch.Tensor) -> None: ...


class GaussianSplats(torch.nn.Module):
    """The mutable set of Gaussian primitives.

    Parameters are stored unconstrained: log-scales, opacity logits and
    unnormalized wxyz quaternions. A primitive's identity is its row index,
    which only changes through add/remove/replace. Every mutation takes
    `self.lock`, so a reader holding the lock (or using `snapshot()`) sees
    either the state before a mutation or after it.
    """

    def __init__(
        self,
        positions: torch.Tensor,
        quaternions: torch.Tensor,
        scales: torch.Tensor,
        opacity_logits: torch.Tensor,
        sh_dc: torch.Tensor,
        sh_rest: torch.Tensor,
    ):
        super().__init__()
        tensors = dict(
            positions=positions,
            quaternions=quaternions,
            scales=scales,
            opacities=opacity_logits,
            sh_dc=sh_dc,
            sh_rest=sh_rest,
        )
        _check_lengths(tensors)

        self._positions = torch.nn.Parameter(positions.float().contiguous())
        self._quaternions = torch.nn.Parameter(quaternions.float().contiguous())
        self._scales = torch.nn.Parameter(scales.float().contiguous())
        self._opacity_logits = torch.nn.Parameter(opacity_logits.float().contiguous())
        self._sh_dc = torch.nn.Parameter(sh_dc.float().contiguous())
        self._sh_rest = torch.nn.Parameter(sh_rest.float().contiguous())

        self.max_sh_degree = int(round((sh_rest.shape[1] + 1) ** 0.5)) - 1
        self.active_sh_degree = 0

        self.lock = threading.RLock()
        self._resize_hooks: List[ResizeHook] = []

    # ------------------------------------------------------------------
    # Accessors

    def size(self) -> int:
        return self._positions.shape[0]

    def __len__(self):
        return self.size()

    @property
    def device(self):
        return self._positions.device

    def named_gaussian_params(self) -> "OrderedDict[str, torch.nn.Parameter]":
        return OrderedDict((name, getattr(self, attr)) for name, attr in PARAM_ATTRS.items())

    def get_opacities(self):
        return torch.sigmoid(self._opacity_logits)

    def get_scales(self):
        return torch.exp(self._scales)

    def get_scale_matrices(self):
        return torch.diag_embed(self.get_scales())

    def get_sh(self):
        """[N, K, 3] SH coefficients, DC first"""
        return torch.cat([self._sh_dc, self._sh_rest], dim=1)

    def get_rotations(self):
        """
        q: [N, 4] tensor of unit quaternions [w, x, y, z]
        returns: [N, 3, 3] rotation matrices
        """
        return quaternion_to_matrix(self._quaternions)

    def get_covariances_3d(self):
        R = self.get_rotations()
        S = self.get_scale_matrices()

        RS = R @ S  # [N, 3, 3]
        return RS @ RS.transpose(-2, -1)  # [N, 3, 3]

    def oneup_sh_degree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1

    # ------------------------------------------------------------------
    # Mutation

    def register_resize_hook(self, hook: ResizeHook) -> None:
        self._resize_hooks.append(hook)

    def remove_resize_hook(self, hook: ResizeHook) -> None:
        self._resize_hooks.remove(hook)

    @torch.no_grad()
    def add(self, params: Dict[str, torch.Tensor]) -> None:
        """Append Gaussians. `params` holds raw-domain values for every group."""
        if set(params) != set(PARAM_NAMES):
            raise ValueError(f"add() needs exactly the groups {PARAM_NAMES}, got {sorted(params)}")
        num_new = _check_lengths(params)
        with self.lock:
            for name, p in self.named_gaussian_params().items():
                new = params[name].to(device=p.device, dtype=p.dtype)
                if new.shape[1:] != p.shape[1:]:
                    raise ValueError(
                        f"{name}: expected trailing shape {tuple(p.shape[1:])}, got {tuple(new.shape[1:])}"
                    )
            for name, p in self.named_gaussian_params().items():
                p.data = torch.cat([p.data, params[name].to(device=p.device, dtype=p.dtype)], dim=0)
                p.grad = None
            for hook in self._resize_hooks:
                hook.on_add(num_new)

    @torch.no_grad()
    def remove(self, indices: Indices) -> None:
        """Delete Gaussians. Survivors are compacted to a contiguous prefix."""
        with self.lock:
            idx = self._check_indices(indices)
            keep_mask = torch.ones(self.size(), dtype=torch.bool, device=self.device)
            keep_mask[idx] = False
            for p in self.named_gaussian_params().values():
                p.data = p.data[keep_mask]
                p.grad = None
            for hook in self._resize_hooks:
                hook.on_remove(keep_mask)

    @torch.no_grad()
    def replace(self, indices: Indices, params: Dict[str, torch.Tensor]) -> None:
        """Overwrite rows in place; those rows count as new primitives."""
        unknown = set(params) - set(PARAM_NAMES)
        if unknown:
            raise ValueError(f"Unknown parameter groups: {sorted(unknown)}")
        with self.lock:
            idx = self._check_indices(indices)
            named = self.named_gaussian_params()
            for name, value in params.items():
                if value.shape != (len(idx),) + tuple(named[name].shape[1:]):
                    raise ValueError(f"{name}: shape {tuple(value.shape)} does not match {len(idx)} rows")
            for name, value in params.items():
                named[name].data[idx] = value.to(named[name].data)
            for hook in self._resize_hooks:
                hook.on_replace(idx)

    @torch.no_grad()
    def update_in_place(self, deltas: Dict[str, torch.Tensor]) -> None:
        """Add per-parameter deltas. Never changes the number of Gaussians."""
        named = self.named_gaussian_params()
        unknown = set(deltas) - set(named)
        if unknown:
            raise ValueError(f"Unknown parameter groups: {sorted(unknown)}")
        with self.lock:
            for name, delta in deltas.items():
                if delta.shape != named[name].shape:
                    raise ValueError(
                        f"{name}: delta shape {tuple(delta.shape)} != parameter shape {tuple(named[name].shape)}"
                    )
            for name, delta in deltas.items():
                named[name].data.add_(delta.to(named[name].data))

    def snapshot(self) -> Dict[str, object]:
        """Consistent detached copy of all arrays, safe to hand to another thread."""
        with self.lock:
            snap = {name: p.detach().clone() for name, p in self.named_gaussian_params().items()}
            snap["active_sh_degree"] = self.active_sh_degree
        return snap

    @torch.no_grad()
    def load_snapshot(self, snapshot: Dict[str, object]) -> None:
        tensors = {name: snapshot[name] for name in PARAM_NAMES}
        num = _check_lengths(tensors)
        with self.lock:
            old_size = self.size()
            for name, p in self.named_gaussian_params().items():
                p.data = tensors[name].to(device=p.device, dtype=p.dtype).clone()
                p.grad = None
            self.active_sh_degree = int(snapshot.get("active_sh_degree", 0))
            for hook in self._resize_hooks:
                hook.on_remove(torch.zeros(old_size, dtype=torch.bool, device=self.device))
                hook.on_add(num)

    def _check_indices(self, indices: Indices) -> torch.Tensor:
        idx = torch.as_tensor(indices, device=self.device)
        if idx.dtype == torch.bool:
            if idx.shape != (self.size(),):
                raise IndexError(f"Boolean mask of shape {tuple(idx.shape)} for {self.size()} Gaussians")
            return idx.nonzero(as_tuple=True)[0]
        idx = idx.long().flatten()
        if idx.numel() and (idx.min() < 0 or idx.max() >= self.size()):
            raise IndexError(f"Gaussian index out of range [0, {self.size()})")
        return idx

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, object]) -> "GaussianSplats":
        splats = cls(*(snapshot[name] for name in PARAM_NAMES))
        splats.active_sh_degree = int(snapshot.get("active_sh_degree", 0))
        return splats


def quaternion_to_matrix(quaternions: torch.Tensor) -> torch.Tensor:
    # Normalize
    q = quaternions / quaternions.norm(dim=-1, keepdim=True)

    w, x, y, z = q[:, 0], q[:, 1], q[:, 2], q[:, 3]

    # Build rotation matrix
    R = torch.stack(
        [
            torch.stack(
                [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
                dim=-1,
            ),
            torch.stack(
                [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
                dim=-1,
            ),
            torch.stack(
                [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
                dim=-1,
            ),
        ],
        dim=-2,
    )

    return R


def _check_lengths(tensors: Dict[str, torch.Tensor]) -> int:
    lengths = {name: t.shape[0] for name, t in tensors.items()}
    if len(set(lengths.values())) != 1:
        raise ValueError(f"Per-Gaussian arrays have different lengths: {lengths}")
    return next(iter(lengths.values()))
