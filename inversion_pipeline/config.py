from __future__ import annotations

import dataclasses
import datetime
import hashlib
import json
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import torch

from .data import ATTACKER_TEST, ATTACKER_TRAIN, TARGET_TEST, TARGET_TRAIN
from .errors import InvalidPrivacyConfiguration


def default_device() -> torch.device:
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


@dataclass(frozen=True)
class PrivacyConfig:
    """Immutable DP-SGD settings for one experimental run."""

    clip_norm: float
    noise_multiplier: float
    num_microbatches: int
    learning_rate: float
    epochs: int
    dataset_size: int
    batch_size: int
    delta: float = 1e-5
    name: Optional[str] = None

    def __post_init__(self) -> None:
        ident = self.name
        if not self.clip_norm > 0:
            raise InvalidPrivacyConfiguration("clip norm must be > 0", config=ident, clip_norm=self.clip_norm)
        if not self.noise_multiplier >= 0:
            raise InvalidPrivacyConfiguration(
                "noise multiplier must be >= 0", config=ident, noise_multiplier=self.noise_multiplier
            )
        if self.num_microbatches < 1:
            raise InvalidPrivacyConfiguration(
                "microbatch count must be >= 1", config=ident, num_microbatches=self.num_microbatches
            )
        if not 0.0 < self.delta < 1.0:
            raise InvalidPrivacyConfiguration("delta must lie in (0, 1)", config=ident, delta=self.delta)
        if not self.learning_rate > 0:
            raise InvalidPrivacyConfiguration(
                "learning rate must be > 0", config=ident, learning_rate=self.learning_rate
            )
        if self.epochs < 1:
            raise InvalidPrivacyConfiguration("epochs must be >= 1", config=ident, epochs=self.epochs)
        if self.dataset_size < 1:
            raise InvalidPrivacyConfiguration(
                "dataset size must be >= 1", config=ident, dataset_size=self.dataset_size
            )
        if not 1 <= self.batch_size <= self.dataset_size:
            raise InvalidPrivacyConfiguration(
                "batch size must lie in [1, dataset_size]", config=ident, batch_size=self.batch_size
            )
        if self.batch_size % self.num_microbatches != 0:
            raise InvalidPrivacyConfiguration(
                "batch size must be divisible by the microbatch count",
                config=ident,
                batch_size=self.batch_size,
                num_microbatches=self.num_microbatches,
            )

    @property
    def config_id(self) -> str:
        if self.name:
            return self.name
        return (
            f"sigma{self.noise_multiplier:g}_clip{self.clip_norm:g}"
            f"_mb{self.num_microbatches}_ep{self.epochs}"
        )

    @property
    def sample_rate(self) -> float:
        return self.batch_size / float(self.dataset_size)

    @property
    def fingerprint(self) -> str:
        """Short digest of every field; changes whenever any setting changes."""
        payload = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]

    def replace(self, **changes: Any) -> "PrivacyConfig":
        """Returns a new validated configuration with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["config_id"] = self.config_id
        return data


@dataclass
class ExperimentConfig:
    """Hyperparameters for a full attack-and-defense experiment."""

    experiment_name: str = "split_inversion"
    seed: int = 0

    # partition sizes
    target_train_size: int = 10000
    attacker_train_size: int = 5000
    attacker_test_size: int = 1000
    target_test_size: int = 0

    # target (defender) training
    batch_size: int = 250
    epochs: int = 5
    learning_rate: float = 0.15
    momentum: float = 0.9
    clip_norm: float = 1.0
    num_microbatches: int = 250
    delta: float = 1e-5
    noise_multipliers: List[float] = field(default_factory=lambda: [0.0, 0.3, 0.5, 0.7])

    # attacker training
    attacker_epochs: int = 10
    attacker_batch_size: int = 64
    attacker_lr: float = 1e-3

    # model
    latent_channels: int = 32

    comments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def partition_sizes(self) -> Dict[str, int]:
        sizes = {
            TARGET_TRAIN: self.target_train_size,
            ATTACKER_TRAIN: self.attacker_train_size,
            ATTACKER_TEST: self.attacker_test_size,
        }
        if self.target_test_size:
            sizes[TARGET_TEST] = self.target_test_size
        return sizes

    def privacy_configs(self) -> List[PrivacyConfig]:
        """One independent configuration per noise multiplier."""
        return [
            PrivacyConfig(
                clip_norm=self.clip_norm,
                noise_multiplier=sigma,
                num_microbatches=self.num_microbatches,
                learning_rate=self.learning_rate,
                epochs=self.epochs,
                dataset_size=self.target_train_size,
                batch_size=self.batch_size,
                delta=self.delta,
                name=f"{self.experiment_name}_sigma{sigma:g}",
            )
            for sigma in self.noise_multipliers
        ]


def current_timestamp() -> str:
    """UTC time to the second, e.g. ``2024-05-01T12:00:00Z``."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


def save_results_json(results: Dict[str, Any], output_dir: str) -> str:
    """Writes ``results`` as ``<experiment_name>_<UTC stamp>.json`` under ``output_dir``.

    The report is stamped with ``saved_at``. An existing file is never
    overwritten; a numeric suffix is appended instead. Non-finite floats
    (``inf`` epsilon for sigma 0, ``nan`` utility) are kept as JSON
    ``Infinity``/``NaN``.
    """
    os.makedirs(output_dir, exist_ok=True)
    stamp = current_timestamp()
    base = f"{results['experiment_name']}_{stamp.replace('-', '').replace(':', '')}"
    file_path = os.path.join(output_dir, f"{base}.json")
    suffix = 1
    while os.path.exists(file_path):
        file_path = os.path.join(output_dir, f"{base}_{suffix}.json")
        suffix += 1
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump({**results, "saved_at": stamp}, f, indent=2, default=str)
    return file_path
