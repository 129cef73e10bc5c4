"""Privacy accounting for DP-SGD with Poisson-style subsampling.

Privacy loss is composed in Renyi DP over a grid of orders using Opacus'
analysis of the sampled Gaussian mechanism and converted to the smallest
``(eps, delta)`` guarantee across orders.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Optional, Sequence

from opacus.accountants import RDPAccountant
from opacus.accountants.analysis import rdp as privacy_analysis

from .config import PrivacyConfig
from .errors import InvalidPrivacyConfiguration


def num_steps(dataset_size: int, batch_size: int, epochs: float) -> int:
    return int(math.ceil(epochs * dataset_size / batch_size))


def compute_epsilon(
    dataset_size: int,
    batch_size: int,
    noise_multiplier: float,
    epochs: float,
    delta: float,
    orders: Optional[Sequence[float]] = None,
) -> float:
    """Epsilon spent by ``epochs`` of DP-SGD over ``dataset_size`` records.

    Returns ``inf`` when no noise is added.
    """
    if dataset_size < 1 or not 1 <= batch_size <= dataset_size:
        raise InvalidPrivacyConfiguration(
            "batch size must lie in [1, dataset_size]", dataset_size=dataset_size, batch_size=batch_size
        )
    if noise_multiplier < 0:
        raise InvalidPrivacyConfiguration("noise multiplier must be >= 0", noise_multiplier=noise_multiplier)
    if not 0.0 < delta < 1.0:
        raise InvalidPrivacyConfiguration("delta must lie in (0, 1)", delta=delta)
    if noise_multiplier == 0:
        return math.inf

    orders = list(orders) if orders is not None else RDPAccountant.DEFAULT_ALPHAS
    rdp = privacy_analysis.compute_rdp(
        q=batch_size / dataset_size,
        noise_multiplier=noise_multiplier,
        steps=num_steps(dataset_size, batch_size, epochs),
        orders=orders,
    )
    eps, _ = privacy_analysis.get_privacy_spent(orders=orders, rdp=rdp, delta=delta)
    return float(eps)


def epsilon_for(config: PrivacyConfig) -> float:
    return compute_epsilon(
        config.dataset_size,
        config.batch_size,
        config.noise_multiplier,
        config.epochs,
        config.delta,
    )


class PrivacyAccountant:
    """Tracks the steps actually taken during a training run."""

    def __init__(self, config: PrivacyConfig) -> None:
        self.config = config
        self._rdp = RDPAccountant()

    @property
    def steps(self) -> int:
        return sum(n for _, _, n in self._rdp.history)

    def step(self) -> None:
        self._rdp.step(noise_multiplier=self.config.noise_multiplier, sample_rate=self.config.sample_rate)

    def epsilon(self, delta: Optional[float] = None) -> float:
        if self.config.noise_multiplier == 0:
            return math.inf
        if not self._rdp.history:
            return 0.0
        return float(self._rdp.get_epsilon(delta if delta is not None else self.config.delta))

    def state_dict(self) -> Dict[str, Any]:
        return {"config_id": self.config.config_id, "history": list(self._rdp.history)}

    def load_state_dict(self, state: Dict[str, Any]) -> None:
        if state.get("config_id") != self.config.config_id:
            raise InvalidPrivacyConfiguration(
                "accountant state belongs to another configuration",
                config=self.config.config_id,
                state=state.get("config_id"),
            )
        self._rdp.history = [tuple(h) for h in state["history"]]
