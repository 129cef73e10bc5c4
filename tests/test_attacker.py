import pytest
import torch

from inversion_pipeline import (
    AttackerModel,
    ExpansionStep,
    ShapeMismatch,
    build_attacker,
    expansion_output_size,
    plan_expansion,
)


def test_expansion_output_size_formula():
    assert expansion_output_size(1, ExpansionStep(8, kernel_size=7)) == 7
    assert expansion_output_size(7, ExpansionStep(8, kernel_size=4, stride=2, padding=1)) == 14
    assert expansion_output_size(14, ExpansionStep(1, kernel_size=4, stride=2, padding=1)) == 28
    assert expansion_output_size(8, ExpansionStep(1, kernel_size=3, stride=1, padding=1)) == 8


def test_default_plan_reaches_mnist_grid():
    attacker = build_attacker((32, 1, 1), (1, 28, 28))
    assert attacker.sizes == [(7, 7), (14, 14), (28, 28)]
    out = attacker(torch.rand(5, 32, 1, 1))
    assert out.shape == (5, 1, 28, 28)
    assert out.min() >= 0.0 and out.max() <= 1.0


def test_same_size_plan():
    attacker = build_attacker((1, 8, 8), (1, 8, 8))
    assert attacker(torch.rand(2, 1, 8, 8)).shape == (2, 1, 8, 8)


def test_final_size_must_match_record():
    steps = [ExpansionStep(16, kernel_size=7), ExpansionStep(1, kernel_size=4, stride=2, padding=0)]
    with pytest.raises(ShapeMismatch):
        AttackerModel((32, 1, 1), (1, 14, 14), steps)


def test_declared_intermediate_size_checked():
    steps = [
        ExpansionStep(16, kernel_size=7, output_size=6),
        ExpansionStep(1, kernel_size=4, stride=2, padding=1),
    ]
    with pytest.raises(ShapeMismatch) as exc:
        plan_expansion((1, 1), steps, (14, 14))
    assert exc.value.context["step"] == 0


def test_empty_grid_rejected():
    with pytest.raises(ShapeMismatch):
        plan_expansion((1, 1), [ExpansionStep(1, kernel_size=1, padding=1)], (1, 1))


def test_channels_must_match_record():
    with pytest.raises(ShapeMismatch):
        AttackerModel((1, 8, 8), (1, 8, 8), [ExpansionStep(3, kernel_size=3, padding=1)])


def test_representation_shape_checked():
    attacker = build_attacker((32, 1, 1), (1, 28, 28))
    with pytest.raises(ShapeMismatch):
        attacker(torch.rand(2, 16, 1, 1))
