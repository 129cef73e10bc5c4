"""Logging setup and JSON metrics reports."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, List

from .config import current_timestamp

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)


class ExperimentLogger:
    """Collects per-epoch metrics and writes a JSON report.

    The report schema is::

        {
            "experiment_name": str,
            "timestamp": str,
            "hyperparameters": {..},
            "runs": {
                "<config_id>": [
                    {"epoch": int, "loss": float, "accuracy": float | null,
                     "mse": float | null, "epsilon": float, ...},
                    ...
                ],
                ...
            },
            "final_metrics": {..}
        }
    """

    def __init__(self, cfg: Any, output_dir: str) -> None:
        self.cfg = cfg
        self.output_dir = output_dir
        self.runs: Dict[str, List[Dict[str, Any]]] = {}
        self.current_run = "default"

    def start_run(self, run_id: str) -> None:
        self.current_run = run_id
        self.runs.setdefault(run_id, [])

    def log(self, epoch: int, metrics: Dict[str, Any]) -> None:
        record = {**metrics, "epoch": epoch}
        self.runs.setdefault(self.current_run, []).append(record)

    def save(self, final_metrics: Dict[str, Any]) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        hyperparameters = asdict(self.cfg) if is_dataclass(self.cfg) else dict(self.cfg or {})
        report = {
            "experiment_name": getattr(self.cfg, "experiment_name", "split_inversion"),
            "timestamp": current_timestamp(),
            "hyperparameters": hyperparameters,
            "runs": self.runs,
            "final_metrics": final_metrics,
        }
        path = os.path.join(self.output_dir, "metrics.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, default=str)
        return path
