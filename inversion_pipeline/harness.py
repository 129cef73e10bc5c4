"""Attack-and-defense evaluation across privacy configurations.

For every configuration a fresh target is trained with DP-SGD (or its
checkpointed stages are loaded), frozen, and attacked by a fresh
reconstruction model that only observes ``forward_stage_a``.
"""
from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import Dataset, TensorDataset

from .accountant import epsilon_for
from .attacker import build_attacker
from .checkpoint import CheckpointStore
from .config import PrivacyConfig, default_device
from .data import ATTACKER_TEST, ATTACKER_TRAIN, TARGET_TEST, TARGET_TRAIN, check_disjoint, make_loader, set_random_seeds
from .errors import InvalidPrivacyConfiguration
from .grad_ops import PlainGradientWrapper
from .logger import ExperimentLogger
from .model import StagedModel, evaluate as target_accuracy, freeze
from .training import reconstruction_loss, run, run_epoch, train_target

logger = logging.getLogger(__name__)

Query = Callable[[torch.Tensor], torch.Tensor]
REQUIRED_PARTITIONS = (TARGET_TRAIN, ATTACKER_TRAIN, ATTACKER_TEST)


@dataclass
class ReportRow:
    config_id: str
    seed: int
    noise_multiplier: float
    epsilon: float
    reconstruction_error: float
    utility: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AttackerTrainer:
    """Trains reconstruction models from intercepted stage-A outputs."""

    def __init__(
        self,
        attacker_factory: Callable[[Tuple[int, ...], Tuple[int, ...]], nn.Module] = build_attacker,
        epochs: int = 10,
        batch_size: int = 64,
        learning_rate: float = 1e-3,
        seed: int = 0,
        device: Optional[torch.device] = None,
    ) -> None:
        self.attacker_factory = attacker_factory
        self.epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.seed = seed
        self.device = device or default_device()
        self.history: List[Dict[str, Any]] = []

    @torch.no_grad()
    def intercept(self, query: Query, dataset: Dataset) -> TensorDataset:
        """Pairs every record with what ``query`` reveals about it. Labels are dropped."""
        reps, records = [], []
        for X, _ in make_loader(dataset, self.batch_size, shuffle=False):
            X = X.to(self.device)
            reps.append(query(X).detach().cpu())
            records.append(X.cpu())
        return TensorDataset(torch.cat(reps, dim=0), torch.cat(records, dim=0))

    def train(
        self,
        query: Query,
        dataset: Dataset,
        experiment_logger: Optional[ExperimentLogger] = None,
    ) -> nn.Module:
        pairs = self.intercept(query, dataset)
        rep_shape = tuple(pairs.tensors[0].shape[1:])
        record_shape = tuple(pairs.tensors[1].shape[1:])

        torch.manual_seed(self.seed)
        attacker = self.attacker_factory(rep_shape, record_shape).to(self.device)
        optimizer = optim.Adam(attacker.parameters(), lr=self.learning_rate)
        loader = make_loader(pairs, self.batch_size, shuffle=True, seed=self.seed)
        self.history = run(
            attacker,
            loader,
            reconstruction_loss,
            PlainGradientWrapper(),
            optimizer,
            self.epochs,
            context={"model": "attacker"},
            device=self.device,
            experiment_logger=experiment_logger,
        )
        return attacker

    def reconstruction_error(self, attacker: nn.Module, query: Query, dataset: Dataset) -> float:
        """Mean per-record squared error of ``attacker`` on ``dataset``."""
        loader = make_loader(self.intercept(query, dataset), self.batch_size, shuffle=False)
        acc = run_epoch(attacker, loader, reconstruction_loss, train=False, device=self.device)
        return float(acc.summary()["mse"])


class EvaluationHarness:
    def __init__(
        self,
        partitions: Mapping[str, Dataset],
        *,
        momentum: float = 0.9,
        seed: int = 0,
        store: Optional[CheckpointStore] = None,
        device: Optional[torch.device] = None,
        experiment_logger: Optional[ExperimentLogger] = None,
    ) -> None:
        missing = [name for name in REQUIRED_PARTITIONS if name not in partitions]
        if missing:
            raise ValueError(f"missing partitions: {missing}")
        check_disjoint(partitions)
        self.partitions = dict(partitions)
        self.momentum = momentum
        self.seed = seed
        self.store = store
        self.device = device or default_device()
        self.experiment_logger = experiment_logger

    @property
    def utility_partition(self) -> Dataset:
        if len(self.partitions.get(TARGET_TEST, ())):
            return self.partitions[TARGET_TEST]
        return self.partitions[ATTACKER_TEST]

    def _start_run(self, run_id: str) -> None:
        if self.experiment_logger is not None:
            self.experiment_logger.start_run(run_id)

    def config_seed(self, config: PrivacyConfig) -> int:
        """Seed for ``config``'s target: the harness seed offset by a digest of its id."""
        digest = hashlib.sha256(config.config_id.encode("utf-8")).hexdigest()
        return (self.seed + int(digest[:8], 16)) % 2**31

    def checkpoint_key(self, config: PrivacyConfig, stage: str) -> str:
        return f"{config.config_id}-{config.fingerprint}-s{self.config_seed(config)}/{stage}"

    def _restore(self, target: StagedModel, config: PrivacyConfig, seed: int) -> bool:
        """Loads stored stages into ``target``; returns whether stage B was restored too."""
        checkpoint = self.store.load(self.checkpoint_key(config, "stage_a"), self.device)
        meta = checkpoint["meta"]
        if meta.get("config") != config.to_dict() or meta.get("seed") != seed:
            raise InvalidPrivacyConfiguration(
                "checkpoint was trained under different settings",
                config=config.config_id,
                key=self.checkpoint_key(config, "stage_a"),
            )
        target.stage_a.load_state_dict(checkpoint["model_state_dict"])
        key_b = self.checkpoint_key(config, "stage_b")
        if not self.store.exists(key_b):
            return False
        target.load_stage_b_state_dict(self.store.load(key_b, self.device)["model_state_dict"])
        return True

    def prepare_target(
        self, target_model_factory: Callable[[], StagedModel], config: PrivacyConfig
    ) -> Tuple[StagedModel, bool]:
        """Fresh target for ``config``, trained now or restored from that config's checkpoint.

        The flag is False when a checkpoint supplied stage A without stage B.
        """
        target_size = len(self.partitions[TARGET_TRAIN])
        if config.dataset_size != target_size:
            raise InvalidPrivacyConfiguration(
                "dataset size does not match the target-training partition",
                config=config.config_id,
                dataset_size=config.dataset_size,
                partition_size=target_size,
            )
        seed = self.config_seed(config)
        set_random_seeds(seed)
        target = target_model_factory().to(self.device)
        if self.store is not None and self.store.exists(self.checkpoint_key(config, "stage_a")):
            return target, self._restore(target, config, seed)

        self._start_run(config.config_id)
        train_target(
            target,
            self.partitions[TARGET_TRAIN],
            config,
            momentum=self.momentum,
            seed=seed,
            device=self.device,
            experiment_logger=self.experiment_logger,
        )
        if self.store is not None:
            meta = {"config": config.to_dict(), "seed": seed}
            self.store.save(self.checkpoint_key(config, "stage_a"), target.stage_a.state_dict(), **meta)
            self.store.save(self.checkpoint_key(config, "stage_b"), target.stage_b_state_dict(), **meta)
        return target, True

    def evaluate_config(
        self,
        target_model_factory: Callable[[], StagedModel],
        attacker_trainer: AttackerTrainer,
        config: PrivacyConfig,
    ) -> ReportRow:
        logger.info("Evaluating %s (sigma=%g)", config.config_id, config.noise_multiplier)
        target, has_stage_b = self.prepare_target(target_model_factory, config)
        target = freeze(target)
        query = target.forward_stage_a

        self._start_run(f"{config.config_id}/attacker")
        attacker = attacker_trainer.train(query, self.partitions[ATTACKER_TRAIN], self.experiment_logger)
        error = attacker_trainer.reconstruction_error(attacker, query, self.partitions[ATTACKER_TEST])

        if has_stage_b:
            loader = make_loader(self.utility_partition, config.batch_size, shuffle=False)
            utility = target_accuracy(target, loader, self.device)
        else:
            utility = math.nan

        row = ReportRow(
            config_id=config.config_id,
            seed=self.config_seed(config),
            noise_multiplier=config.noise_multiplier,
            epsilon=epsilon_for(config),
            reconstruction_error=error,
            utility=utility,
        )
        logger.info(
            "%s: eps=%.2f reconstruction MSE=%.4f accuracy=%.2f%%",
            row.config_id,
            row.epsilon,
            row.reconstruction_error,
            row.utility,
        )
        return row

    def evaluate(
        self,
        target_model_factory: Callable[[], StagedModel],
        attacker_trainer: AttackerTrainer,
        configs: Sequence[PrivacyConfig],
    ) -> List[ReportRow]:
        """Report rows ordered from least private (largest eps) to most private."""
        rows = [self.evaluate_config(target_model_factory, attacker_trainer, cfg) for cfg in configs]
        return sorted(rows, key=lambda r: r.epsilon, reverse=True)


def evaluate(
    target_model_factory: Callable[[], StagedModel],
    attacker_trainer: AttackerTrainer,
    configs: Sequence[PrivacyConfig],
    partitions: Mapping[str, Dataset],
    **kwargs: Any,
) -> List[ReportRow]:
    return EvaluationHarness(partitions, **kwargs).evaluate(target_model_factory, attacker_trainer, configs)
