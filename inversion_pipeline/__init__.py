"""Model-inversion attacks against split models trained with DP-SGD."""

from .accountant import PrivacyAccountant, compute_epsilon, epsilon_for
from .attacker import AttackerModel, ExpansionStep, build_attacker, expansion_output_size, plan_expansion
from .checkpoint import CheckpointStore
from .config import ExperimentConfig, PrivacyConfig, current_timestamp, save_results_json
from .data import (
    ATTACKER_TEST,
    ATTACKER_TRAIN,
    TARGET_TEST,
    TARGET_TRAIN,
    check_disjoint,
    load_mnist,
    make_loader,
    make_partitions,
    synthetic_records,
    uniform_records,
)
from .errors import (
    InvalidPrivacyConfiguration,
    NumericInstability,
    PartitionOverlap,
    PipelineError,
    ShapeMismatch,
)
from .grad_ops import DPGradientWrapper, PlainGradientWrapper, clip_gradients
from .harness import AttackerTrainer, EvaluationHarness, ReportRow, evaluate
from .logger import ExperimentLogger, configure_logging
from .model import StagedModel, build_target_model
from .training import MetricAccumulator, classification_loss, reconstruction_loss, run, run_epoch, train_target

__all__ = [
    "ATTACKER_TEST",
    "ATTACKER_TRAIN",
    "TARGET_TEST",
    "TARGET_TRAIN",
    "AttackerModel",
    "AttackerTrainer",
    "CheckpointStore",
    "DPGradientWrapper",
    "EvaluationHarness",
    "ExpansionStep",
    "ExperimentConfig",
    "ExperimentLogger",
    "InvalidPrivacyConfiguration",
    "MetricAccumulator",
    "NumericInstability",
    "PartitionOverlap",
    "PipelineError",
    "PlainGradientWrapper",
    "PrivacyAccountant",
    "PrivacyConfig",
    "ReportRow",
    "ShapeMismatch",
    "StagedModel",
    "build_attacker",
    "build_target_model",
    "check_disjoint",
    "classification_loss",
    "clip_gradients",
    "compute_epsilon",
    "configure_logging",
    "current_timestamp",
    "epsilon_for",
    "evaluate",
    "expansion_output_size",
    "load_mnist",
    "make_loader",
    "make_partitions",
    "plan_expansion",
    "reconstruction_loss",
    "run",
    "run_epoch",
    "save_results_json",
    "synthetic_records",
    "train_target",
    "uniform_records",
]
