import pytest
import torch
import torch.nn as nn
from opacus.grad_sample import GradSampleModule

from inversion_pipeline import DPGradientWrapper, PlainGradientWrapper, PrivacyConfig, ShapeMismatch, clip_gradients
from inversion_pipeline.grad_ops import apply_gradient, per_example_gradients


def _config(**overrides):
    params = dict(
        clip_norm=1.0,
        noise_multiplier=0.0,
        num_microbatches=8,
        learning_rate=0.1,
        epochs=1,
        dataset_size=64,
        batch_size=8,
    )
    params.update(overrides)
    return PrivacyConfig(**params)


def _losses(scale=1.0):
    torch.manual_seed(0)
    model = nn.Linear(6, 3)
    X = torch.randn(8, 6) * scale
    y = torch.randint(0, 3, (8,))
    losses = nn.functional.cross_entropy(model(X), y, reduction="none")
    return model, losses


@pytest.mark.parametrize("scale", [1e-3, 1.0, 1e6, 1e15])
def test_clipped_norms_bounded(scale):
    torch.manual_seed(1)
    vecs = torch.randn(32, 500) * scale
    clipped = clip_gradients(vecs, 1.5)
    assert torch.all(clipped.norm(dim=1) <= 1.5 * (1 + 1e-6))


def test_clip_is_noop_below_bound():
    vecs = torch.tensor([[0.3, 0.4], [0.0, 0.1]])
    assert torch.equal(clip_gradients(vecs, 1.0), vecs)


def test_per_example_gradients_sum_to_batch_gradient():
    model, losses = _losses()
    params = list(model.parameters())
    per_example = per_example_gradients(losses, params)
    assert per_example.shape == (8, sum(p.numel() for p in params))
    total = PlainGradientWrapper().wrap(losses, params)
    assert torch.allclose(per_example.mean(dim=0), total, atol=1e-6)


def test_zero_noise_equals_clipped_average():
    model, losses = _losses(scale=50.0)
    params = list(model.parameters())
    wrapper = DPGradientWrapper(_config(clip_norm=1.0, noise_multiplier=0.0))
    expected = clip_gradients(per_example_gradients(losses, params), 1.0).mean(dim=0)
    assert torch.equal(wrapper.wrap(losses, params), expected)


def test_noise_std_and_seeded_noise():
    model, losses = _losses()
    params = list(model.parameters())
    config = _config(clip_norm=2.0, noise_multiplier=1.0, num_microbatches=4)
    wrapper = DPGradientWrapper(config, generator=torch.Generator().manual_seed(7))
    assert wrapper.noise_std == pytest.approx(0.5)
    clean = wrapper.clip_and_average(losses, params)
    noisy = wrapper.wrap(losses, params)
    again = DPGradientWrapper(config, generator=torch.Generator().manual_seed(7)).wrap(losses, params)
    assert not torch.equal(clean, noisy)
    assert torch.equal(noisy, again)


def test_microbatches_must_divide_batch():
    model, losses = _losses()
    wrapper = DPGradientWrapper(_config(num_microbatches=8))
    with pytest.raises(ShapeMismatch):
        wrapper.wrap(losses[:6], list(model.parameters()))


def test_apply_gradient_sets_grads_and_steps():
    model = nn.Linear(2, 1)
    params = list(model.parameters())
    before = [p.detach().clone() for p in params]
    optimizer = torch.optim.SGD(params, lr=1.0)
    apply_gradient(params, optimizer, torch.ones(3))
    for old, new in zip(before, params):
        assert torch.allclose(new, old - 1.0)


def test_grad_sample_hooks_match_autograd_path():
    torch.manual_seed(0)
    net = nn.Sequential(nn.Linear(6, 5), nn.ReLU(), nn.Linear(5, 3))
    X = torch.randn(8, 6)
    y = torch.randint(0, 3, (8,))
    config = _config(num_microbatches=4)

    losses = nn.functional.cross_entropy(net(X), y, reduction="none")
    expected = DPGradientWrapper(config).wrap(losses, list(net.parameters()))

    wrapped = GradSampleModule(net, loss_reduction="sum")
    losses = nn.functional.cross_entropy(wrapped(X), y, reduction="none")
    got = DPGradientWrapper(config, grad_sample_hooks=True).wrap(losses, list(wrapped.parameters()))
    wrapped.remove_hooks()

    assert torch.allclose(got, expected, atol=1e-6)
    assert all(getattr(p, "grad_sample", None) is None and p.grad is None for p in net.parameters())
