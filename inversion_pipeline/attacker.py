"""Reconstruction model that maps intercepted stage-A outputs back to records.

The attacker only ever sees ``(representation, record)`` pairs. It upsamples
with a fixed sequence of transposed convolutions whose output sizes follow::

    output_size = stride * (input_size - 1) + kernel_size - 2 * padding

The sequence is checked at construction time, so a model that cannot land
exactly on the record's grid is never built.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .errors import ShapeMismatch


@dataclass(frozen=True)
class ExpansionStep:
    out_channels: int
    kernel_size: int
    stride: int = 1
    padding: int = 0
    # expected spatial size after this step, checked when given
    output_size: Optional[int] = None


def expansion_output_size(input_size: int, step: ExpansionStep) -> int:
    return step.stride * (input_size - 1) + step.kernel_size - 2 * step.padding


def plan_expansion(
    input_hw: Tuple[int, int],
    steps: Sequence[ExpansionStep],
    record_hw: Tuple[int, int],
) -> List[Tuple[int, int]]:
    """Returns the ``(height, width)`` after every step.

    Raises:
        ShapeMismatch: if a step yields a non-positive size, disagrees with its
            declared ``output_size``, or the last size is not ``record_hw``.
    """
    if not steps:
        raise ShapeMismatch("attacker needs at least one expansion step")
    sizes: List[Tuple[int, int]] = []
    h, w = input_hw
    for i, step in enumerate(steps):
        h, w = expansion_output_size(h, step), expansion_output_size(w, step)
        if h <= 0 or w <= 0:
            raise ShapeMismatch("expansion step produces an empty grid", step=i, size=(h, w))
        if step.output_size is not None and (h, w) != (step.output_size, step.output_size):
            raise ShapeMismatch(
                "expansion step does not reach its declared size",
                step=i,
                expected=step.output_size,
                got=(h, w),
            )
        sizes.append((h, w))
    if sizes[-1] != tuple(record_hw):
        raise ShapeMismatch("expansion ends off the record grid", expected=tuple(record_hw), got=sizes[-1])
    return sizes


class AttackerModel(nn.Module):
    def __init__(
        self,
        representation_shape: Tuple[int, int, int],
        record_shape: Tuple[int, int, int],
        steps: Sequence[ExpansionStep],
    ) -> None:
        super().__init__()
        self.representation_shape = tuple(representation_shape)
        self.record_shape = tuple(record_shape)
        if len(self.representation_shape) != 3 or len(self.record_shape) != 3:
            raise ShapeMismatch(
                "attacker expects (channels, height, width) shapes",
                representation=self.representation_shape,
                record=self.record_shape,
            )
        self.sizes = plan_expansion(self.representation_shape[1:], steps, self.record_shape[1:])
        if steps[-1].out_channels != self.record_shape[0]:
            raise ShapeMismatch(
                "last expansion step must produce the record channels",
                expected=self.record_shape[0],
                got=steps[-1].out_channels,
            )

        layers: List[nn.Module] = []
        in_ch = self.representation_shape[0]
        for i, step in enumerate(steps):
            layers.append(
                nn.ConvTranspose2d(in_ch, step.out_channels, step.kernel_size, step.stride, step.padding)
            )
            layers.append(nn.Sigmoid() if i == len(steps) - 1 else nn.ReLU())
            in_ch = step.out_channels
        self.decoder = nn.Sequential(*layers)

    def forward(self, representation: torch.Tensor) -> torch.Tensor:
        if tuple(representation.shape[1:]) != self.representation_shape:
            raise ShapeMismatch(
                "representation does not match attacker input shape",
                expected=self.representation_shape,
                got=tuple(representation.shape[1:]),
            )
        return self.decoder(representation)


def default_expansion_steps(
    representation_shape: Tuple[int, int, int],
    record_shape: Tuple[int, int, int],
    hidden: int = 64,
) -> List[ExpansionStep]:
    """Expansion plan for the built-in target.

    A ``1 x 1`` representation is first expanded to a quarter of the record
    grid and then doubled twice (``1 -> 7 -> 14 -> 28`` for MNIST). A
    representation already on the record grid gets two size-preserving steps.
    """
    channels, height, width = record_shape
    rep_h, rep_w = representation_shape[1:]
    if (rep_h, rep_w) == (height, width):
        return [
            ExpansionStep(hidden, kernel_size=3, stride=1, padding=1, output_size=height),
            ExpansionStep(channels, kernel_size=3, stride=1, padding=1, output_size=height),
        ]
    if (rep_h, rep_w) != (1, 1) or height != width or height % 4 != 0:
        raise ShapeMismatch(
            "no default expansion plan for these shapes",
            representation=tuple(representation_shape),
            record=tuple(record_shape),
        )
    quarter = height // 4
    return [
        ExpansionStep(hidden, kernel_size=quarter, stride=1, padding=0, output_size=quarter),
        ExpansionStep(hidden // 2, kernel_size=4, stride=2, padding=1, output_size=quarter * 2),
        ExpansionStep(channels, kernel_size=4, stride=2, padding=1, output_size=height),
    ]


def build_attacker(
    representation_shape: Tuple[int, int, int],
    record_shape: Tuple[int, int, int],
    steps: Optional[Sequence[ExpansionStep]] = None,
) -> AttackerModel:
    if steps is None:
        steps = default_expansion_steps(representation_shape, record_shape)
    return AttackerModel(representation_shape, record_shape, steps)
