import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
import torch.optim as optim
from opacus.grad_sample import GradSampleModule
from torch.utils.data import Dataset

from .accountant import PrivacyAccountant
from .config import PrivacyConfig
from .data import make_loader
from .errors import NumericInstability, ShapeMismatch
from .grad_ops import DPGradientWrapper, apply_gradient
from .logger import ExperimentLogger

logger = logging.getLogger(__name__)

LossFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


def classification_loss(outputs: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
    return F.cross_entropy(outputs, labels, reduction="none")


def reconstruction_loss(outputs: torch.Tensor, records: torch.Tensor) -> torch.Tensor:
    """Per-record mean squared error."""
    if outputs.shape != records.shape:
        raise ShapeMismatch(
            "reconstruction does not match record shape",
            expected=tuple(records.shape),
            got=tuple(outputs.shape),
        )
    return (outputs - records).pow(2).flatten(1).mean(dim=1)


@dataclass
class MetricAccumulator:
    """Running sums for one reporting interval."""

    loss_sum: float = 0.0
    count: int = 0
    correct: int = 0
    labelled: int = 0
    squared_error: float = 0.0
    compared: int = 0
    skipped_steps: int = 0

    def update(self, losses: torch.Tensor, outputs: torch.Tensor, targets: torch.Tensor) -> None:
        n = losses.numel()
        self.loss_sum += float(losses.detach().sum().item())
        self.count += n
        if not targets.is_floating_point() and outputs.dim() == 2:
            self.correct += int((outputs.argmax(dim=1) == targets).sum().item())
            self.labelled += n
        elif outputs.shape == targets.shape:
            err = (outputs.detach() - targets).pow(2).flatten(1).mean(dim=1)
            self.squared_error += float(err.sum().item())
            self.compared += n

    def summary(self) -> Dict[str, Any]:
        return {
            "loss": self.loss_sum / self.count if self.count else math.nan,
            "accuracy": 100.0 * self.correct / self.labelled if self.labelled else None,
            "mse": self.squared_error / self.compared if self.compared else None,
            "examples": self.count,
            "skipped_steps": self.skipped_steps,
        }


def _skip_step(
    acc: MetricAccumulator,
    what: str,
    context: Dict[str, Any],
    epoch: int,
    batch_idx: int,
    fail: bool,
) -> None:
    err = NumericInstability(f"non-finite {what}", epoch=epoch, batch=batch_idx, **context)
    if fail:
        raise err
    logger.warning("%s; skipping update", err)
    acc.skipped_steps += 1


def run_epoch(
    model: nn.Module,
    loader,
    loss_fn: LossFn,
    gradient_wrapper=None,
    optimizer: Optional[optim.Optimizer] = None,
    *,
    epoch: int = 1,
    train: bool = True,
    accountant: Optional[PrivacyAccountant] = None,
    context: Optional[Dict[str, Any]] = None,
    stop: Optional[Callable[[], bool]] = None,
    device: Optional[torch.device] = None,
    fail_on_instability: bool = False,
) -> MetricAccumulator:
    """Runs one pass over ``loader`` and returns that pass's metrics.

    With ``train=True`` every batch goes forward, per-example loss, gradient
    from ``gradient_wrapper``, then one optimizer update. Non-finite losses or
    gradients skip the update. ``stop`` is polled after each batch.
    """
    acc = MetricAccumulator()
    context = context or {}
    if device is None:
        device = next(model.parameters(), torch.empty(0)).device
    params = [p for p in model.parameters() if p.requires_grad]
    if train and (gradient_wrapper is None or optimizer is None):
        raise ValueError("training needs a gradient wrapper and an optimizer")

    model.train(train)
    for batch_idx, (X, y) in enumerate(loader):
        X, y = X.to(device), y.to(device)
        if not train:
            with torch.no_grad():
                out = model(X)
                losses = loss_fn(out, y)
            acc.update(losses, out, y)
        else:
            out = model(X)
            losses = loss_fn(out, y)
            if not torch.isfinite(losses).all():
                _skip_step(acc, "loss", context, epoch, batch_idx, fail_on_instability)
            else:
                final_grad = gradient_wrapper.wrap(losses, params)
                if not torch.isfinite(final_grad).all():
                    _skip_step(acc, "gradient", context, epoch, batch_idx, fail_on_instability)
                else:
                    apply_gradient(params, optimizer, final_grad)
                    if accountant is not None:
                        accountant.step()
                    acc.update(losses, out.detach(), y)
        if stop is not None and stop():
            logger.info("Stop requested after epoch %d batch %d", epoch, batch_idx)
            break
    return acc


def _format_epoch(record: Dict[str, Any]) -> str:
    parts = [f"[Epoch {record['epoch']:02d}] Loss={record['loss']:.4f}"]
    if record.get("accuracy") is not None:
        parts.append(f"Acc={record['accuracy']:.2f}%")
    if record.get("mse") is not None:
        parts.append(f"MSE={record['mse']:.4f}")
    if record.get("epsilon") is not None:
        parts.append(f"eps={record['epsilon']:.2f}")
    if record.get("skipped_steps"):
        parts.append(f"skipped={record['skipped_steps']}")
    return " ".join(parts)


def run(
    model: nn.Module,
    loader,
    loss_fn: LossFn,
    gradient_wrapper,
    optimizer: optim.Optimizer,
    epochs: int,
    *,
    eval_loader=None,
    accountant: Optional[PrivacyAccountant] = None,
    context: Optional[Dict[str, Any]] = None,
    stop: Optional[Callable[[], bool]] = None,
    device: Optional[torch.device] = None,
    experiment_logger: Optional[ExperimentLogger] = None,
    fail_on_instability: bool = False,
    start_epoch: int = 1,
) -> List[Dict[str, Any]]:
    """Trains for ``epochs`` epochs and returns one metrics record per epoch."""
    history: List[Dict[str, Any]] = []
    for epoch in range(start_epoch, start_epoch + epochs):
        acc = run_epoch(
            model,
            loader,
            loss_fn,
            gradient_wrapper,
            optimizer,
            epoch=epoch,
            train=True,
            accountant=accountant,
            context=context,
            stop=stop,
            device=device,
            fail_on_instability=fail_on_instability,
        )
        record: Dict[str, Any] = {"epoch": epoch, **acc.summary()}
        if eval_loader is not None:
            eval_acc = run_epoch(model, eval_loader, loss_fn, epoch=epoch, train=False, device=device)
            record.update({f"eval_{k}": v for k, v in eval_acc.summary().items()})
        if accountant is not None:
            record["epsilon"] = accountant.epsilon()
            record["steps"] = accountant.steps
        history.append(record)
        logger.info(_format_epoch(record))
        if experiment_logger is not None:
            experiment_logger.log(epoch, record)
        if stop is not None and stop():
            break
    return history


def train_target(
    model: nn.Module,
    dataset: Dataset,
    config: PrivacyConfig,
    *,
    momentum: float = 0.9,
    seed: int = 0,
    device: Optional[torch.device] = None,
    eval_dataset: Optional[Dataset] = None,
    experiment_logger: Optional[ExperimentLogger] = None,
) -> Tuple[List[Dict[str, Any]], PrivacyAccountant]:
    """Trains both stages of ``model`` with DP-SGD under ``config``.

    Per-example gradients are captured by a temporary ``GradSampleModule``
    whose hooks are removed again before returning, so ``model`` comes back
    unwrapped.
    """
    loader = make_loader(dataset, config.batch_size, shuffle=True, seed=seed, drop_last=True)
    eval_loader = None
    if eval_dataset is not None and len(eval_dataset):
        eval_loader = make_loader(eval_dataset, config.batch_size, shuffle=False)
    optimizer = optim.SGD(
        [p for p in model.parameters() if p.requires_grad],
        lr=config.learning_rate,
        momentum=momentum,
    )
    wrapper = DPGradientWrapper(config, generator=torch.Generator().manual_seed(seed), grad_sample_hooks=True)
    accountant = PrivacyAccountant(config)
    gs_model = GradSampleModule(model, loss_reduction="sum")
    try:
        history = run(
            gs_model,
            loader,
            classification_loss,
            wrapper,
            optimizer,
            config.epochs,
            eval_loader=eval_loader,
            accountant=accountant,
            context={"config": config.config_id},
            device=device,
            experiment_logger=experiment_logger,
        )
    finally:
        gs_model.remove_hooks()
        for p in model.parameters():
            p.grad_sample = None
    return history, accountant
