import pytest
import torch
import torch.nn as nn

from inversion_pipeline import ShapeMismatch, StagedModel, build_target_model


def test_target_model_shapes_mnist():
    torch.manual_seed(0)
    model = build_target_model((1, 28, 28), num_classes=10, latent_channels=32)
    batch = torch.rand(4, 1, 28, 28)
    assert model.representation_shape() == (32, 1, 1)
    assert model.forward_stage_a(batch).shape == (4, 32, 1, 1)
    assert model(batch).shape == (4, 10)


def test_target_model_small_grid():
    model = build_target_model((1, 8, 8), num_classes=20, latent_channels=8)
    assert model.representation_shape() == (8, 1, 1)
    assert model(torch.rand(3, 1, 8, 8)).shape == (3, 20)


def test_stage_b_only_reachable_through_forward_and_state_dict():
    torch.manual_seed(0)
    model = build_target_model((1, 8, 8), num_classes=5, latent_channels=4)
    assert not hasattr(model, "stage_b")
    batch = torch.rand(2, 1, 8, 8)
    expected = model(batch)

    torch.manual_seed(1)
    other = build_target_model((1, 8, 8), num_classes=5, latent_channels=4)
    other.stage_a.load_state_dict(model.stage_a.state_dict())
    assert not torch.equal(other(batch), expected)
    other.load_stage_b_state_dict(model.stage_b_state_dict())
    assert torch.equal(other(batch), expected)


def test_stage_a_is_idempotent():
    torch.manual_seed(0)
    model = build_target_model((1, 28, 28))
    batch = torch.rand(8, 1, 28, 28)
    first = model.forward_stage_a(batch)
    second = model.forward_stage_a(batch)
    assert torch.equal(first, second)


def test_wrong_batch_shape_rejected():
    model = StagedModel(nn.Flatten(), nn.Linear(64, 2), (1, 8, 8))
    with pytest.raises(ShapeMismatch):
        model.forward_stage_a(torch.rand(2, 1, 7, 8))
    with pytest.raises(ShapeMismatch):
        model(torch.rand(2, 8, 8))
