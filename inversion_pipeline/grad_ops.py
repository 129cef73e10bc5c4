from typing import List, Optional, Sequence

import torch

from .config import PrivacyConfig
from .errors import ShapeMismatch


def flat_grad(loss: torch.Tensor, params: Sequence[torch.Tensor], retain_graph: bool = False) -> torch.Tensor:
    grads = torch.autograd.grad(loss, params, retain_graph=retain_graph, allow_unused=True)
    return torch.cat(
        [(g if g is not None else torch.zeros_like(p)).reshape(-1) for g, p in zip(grads, params)]
    )


def per_example_gradients(losses: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
    """Gradient of every entry of ``losses``, stacked as ``(len(losses), P)``."""
    params = list(params)
    rows: List[torch.Tensor] = []
    for i in range(losses.numel()):
        rows.append(flat_grad(losses[i], params, retain_graph=True))
    return torch.stack(rows, dim=0)


def grad_sample_gradients(losses: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
    """Per-example gradients from one backward pass through a ``GradSampleModule``.

    The module must be wrapped with ``loss_reduction="sum"`` so every
    ``grad_sample`` row is the gradient of a single entry of ``losses``.
    """
    params = list(params)
    for p in params:
        p.grad_sample = None
    losses.sum().backward()
    batch = losses.numel()
    rows: List[torch.Tensor] = []
    for p in params:
        gs = getattr(p, "grad_sample", None)
        if gs is None:
            rows.append(torch.zeros(batch, p.numel(), dtype=p.dtype, device=p.device))
        else:
            rows.append(gs.reshape(batch, -1))
        p.grad_sample = None
        p.grad = None
    return torch.cat(rows, dim=1)


def clip_gradients(vecs: torch.Tensor, clip_val: float) -> torch.Tensor:
    """Rescales each row so its L2 norm does not exceed ``clip_val``."""
    clipped = []
    for g in vecs:
        norm_g = g.norm(2)
        if norm_g > clip_val:
            g = g * (clip_val / (norm_g + 1e-9))
        clipped.append(g)
    return torch.stack(clipped, dim=0)


class PlainGradientWrapper:
    """Non-private pass-through: gradient of the mean loss."""

    def wrap(self, per_example_losses: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
        return flat_grad(per_example_losses.mean(), list(params))


class DPGradientWrapper:
    """Clips microbatch gradients, averages them and adds Gaussian noise.

    The batch's per-example losses are grouped into ``num_microbatches``
    equal microbatches. Each microbatch gradient is clipped to
    ``clip_norm``, the clipped gradients are averaged and noise with
    standard deviation ``noise_multiplier * clip_norm / num_microbatches``
    is added. One call corresponds to exactly one optimizer step.

    With ``grad_sample_hooks`` the parameters must belong to a model wrapped
    in Opacus' ``GradSampleModule(loss_reduction="sum")``; per-example
    gradients then come from a single backward pass instead of one
    ``autograd.grad`` call per microbatch.
    """

    def __init__(
        self,
        config: PrivacyConfig,
        generator: Optional[torch.Generator] = None,
        grad_sample_hooks: bool = False,
    ) -> None:
        self.config = config
        self.generator = generator
        self.grad_sample_hooks = grad_sample_hooks

    @property
    def noise_std(self) -> float:
        cfg = self.config
        return cfg.noise_multiplier * cfg.clip_norm / cfg.num_microbatches

    def microbatch_losses(self, per_example_losses: torch.Tensor) -> torch.Tensor:
        num_mb = self.config.num_microbatches
        if per_example_losses.dim() != 1 or per_example_losses.numel() % num_mb != 0:
            raise ShapeMismatch(
                "batch cannot be split into equal microbatches",
                config=self.config.config_id,
                batch=tuple(per_example_losses.shape),
                num_microbatches=num_mb,
            )
        return per_example_losses.reshape(num_mb, -1).mean(dim=1)

    def clip_and_average(self, per_example_losses: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
        if self.grad_sample_hooks:
            mb_losses = self.microbatch_losses(per_example_losses)
            per_example = grad_sample_gradients(per_example_losses, params)
            vecs = per_example.reshape(mb_losses.numel(), -1, per_example.shape[1]).mean(dim=1)
        else:
            vecs = per_example_gradients(self.microbatch_losses(per_example_losses), params)
        return clip_gradients(vecs, self.config.clip_norm).mean(dim=0)

    def wrap(self, per_example_losses: torch.Tensor, params: Sequence[torch.Tensor]) -> torch.Tensor:
        final_grad = self.clip_and_average(per_example_losses, params)
        if self.config.noise_multiplier > 0:
            noise = torch.randn(final_grad.shape, generator=self.generator, dtype=final_grad.dtype)
            final_grad = final_grad + noise.to(final_grad.device) * self.noise_std
        return final_grad


def apply_gradient(params: Sequence[torch.Tensor], optimizer, final_grad: torch.Tensor) -> None:
    idx_start = 0
    for p in params:
        numel = p.numel()
        chunk = final_grad[idx_start : idx_start + numel]
        p.grad = chunk.view_as(p).clone()
        idx_start += numel
    optimizer.step()
