import math

import pytest

from inversion_pipeline import InvalidPrivacyConfiguration, PrivacyAccountant, PrivacyConfig, compute_epsilon, epsilon_for

N, BATCH, DELTA = 60000, 256, 1e-5


def test_epsilon_decreases_with_noise():
    eps = [compute_epsilon(N, BATCH, sigma, 15, DELTA) for sigma in (0.5, 0.8, 1.1, 2.0)]
    assert all(a > b for a, b in zip(eps, eps[1:]))


def test_epsilon_increases_with_epochs():
    eps = [compute_epsilon(N, BATCH, 1.1, epochs, DELTA) for epochs in (1, 5, 20, 60)]
    assert all(a < b for a, b in zip(eps, eps[1:]))


def test_no_noise_means_no_guarantee():
    assert compute_epsilon(N, BATCH, 0.0, 1, DELTA) == math.inf


def test_epsilon_is_in_expected_range():
    eps = compute_epsilon(N, BATCH, 1.1, 60, DELTA)
    assert 1.0 < eps < 10.0


def test_invalid_inputs_rejected():
    with pytest.raises(InvalidPrivacyConfiguration):
        compute_epsilon(100, 200, 1.0, 1, DELTA)
    with pytest.raises(InvalidPrivacyConfiguration):
        compute_epsilon(100, 10, 1.0, 1, 1.5)


def _config(sigma=1.0):
    return PrivacyConfig(
        clip_norm=1.0,
        noise_multiplier=sigma,
        num_microbatches=10,
        learning_rate=0.1,
        epochs=2,
        dataset_size=1000,
        batch_size=100,
        delta=DELTA,
        name="acct",
    )


def test_accountant_matches_closed_form():
    config = _config()
    accountant = PrivacyAccountant(config)
    assert accountant.epsilon() == 0.0
    for _ in range(20):
        accountant.step()
    assert accountant.steps == 20
    assert accountant.epsilon() == pytest.approx(epsilon_for(config), rel=1e-6)


def test_accountant_resumes_from_state():
    config = _config()
    first = PrivacyAccountant(config)
    for _ in range(5):
        first.step()
    resumed = PrivacyAccountant(config)
    resumed.load_state_dict(first.state_dict())
    resumed.step()
    assert resumed.steps == 6

    other = PrivacyAccountant(config.replace(name="other"))
    with pytest.raises(InvalidPrivacyConfiguration):
        other.load_state_dict(first.state_dict())


def test_accountant_without_noise():
    accountant = PrivacyAccountant(_config(sigma=0.0))
    accountant.step()
    assert accountant.epsilon() == math.inf
