from typing import Dict, Tuple

import torch
import torch.nn as nn
from opacus.validators import ModuleValidator

from .errors import ShapeMismatch


class StagedModel(nn.Module):
    """Classifier split into two sequential stages.

    ``stage_a`` runs on the data owner's side and its output is what crosses
    the deployment boundary. Stage B is kept private: the only way to reach
    it is through ``forward`` or its state dict.
    """

    def __init__(self, stage_a: nn.Module, stage_b: nn.Module, input_shape: Tuple[int, ...]) -> None:
        super().__init__()
        self.stage_a = stage_a
        self._stage_b = stage_b
        self.input_shape = tuple(input_shape)

    def _check_batch(self, batch: torch.Tensor) -> None:
        if tuple(batch.shape[1:]) != self.input_shape:
            raise ShapeMismatch(
                "batch does not match stage A input shape",
                expected=self.input_shape,
                got=tuple(batch.shape[1:]),
            )

    def forward_stage_a(self, batch: torch.Tensor) -> torch.Tensor:
        self._check_batch(batch)
        return self.stage_a(batch)

    def forward(self, batch: torch.Tensor) -> torch.Tensor:
        return self._stage_b(self.forward_stage_a(batch))

    def stage_b_state_dict(self) -> Dict[str, torch.Tensor]:
        return self._stage_b.state_dict()

    def load_stage_b_state_dict(self, state: Dict[str, torch.Tensor]) -> None:
        self._stage_b.load_state_dict(state)

    @torch.no_grad()
    def representation_shape(self) -> Tuple[int, ...]:
        """Shape of stage A's output for a single record."""
        device = next(self.parameters(), torch.empty(0)).device
        sample = torch.zeros((1, *self.input_shape), device=device)
        was_training = self.training
        self.eval()
        shape = tuple(self.stage_a(sample).shape[1:])
        if was_training:
            self.train()
        return shape


def _conv_out(size: int, kernel: int = 3, stride: int = 2, padding: int = 1) -> int:
    return (size + 2 * padding - kernel) // stride + 1


def build_target_model(
    input_shape: Tuple[int, int, int] = (1, 28, 28),
    num_classes: int = 10,
    latent_channels: int = 32,
    hidden: int = 128,
) -> StagedModel:
    """Conv stage A collapsing the grid to ``latent x 1 x 1``, MLP stage B."""
    channels, height, width = input_shape
    h, w = _conv_out(_conv_out(height)), _conv_out(_conv_out(width))

    stage_a = nn.Sequential(
        nn.Conv2d(channels, 32, kernel_size=3, stride=2, padding=1),
        nn.ReLU(),
        nn.Conv2d(32, 64, kernel_size=3, stride=2, padding=1),
        nn.ReLU(),
        nn.Conv2d(64, latent_channels, kernel_size=(h, w)),
        nn.ReLU(),
    )
    stage_b = nn.Sequential(
        nn.Flatten(),
        nn.Linear(latent_channels, hidden),
        nn.ReLU(),
        nn.Linear(hidden, num_classes),
    )
    net = StagedModel(stage_a, stage_b, input_shape)
    errs = ModuleValidator.validate(net, strict=False)
    if errs:
        net = ModuleValidator.fix(net)
    return net


def freeze(module: nn.Module) -> nn.Module:
    module.eval()
    for p in module.parameters():
        p.requires_grad_(False)
    return module


@torch.no_grad()
def evaluate(model: nn.Module, loader, device: torch.device) -> float:
    was_training = model.training
    model.eval()
    correct, total = 0, 0
    for X, y in loader:
        X, y = X.to(device), y.to(device)
        preds = model(X).argmax(dim=1)
        correct += (preds == y).sum().item()
        total += y.size(0)
    if was_training:
        model.train()
    return 100.0 * correct / total if total else 0.0
