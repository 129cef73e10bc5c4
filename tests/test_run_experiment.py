import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

import run_experiment
from inversion_pipeline import ExperimentLogger


def test_build_config_rejects_unknown_keys():
    with pytest.raises(SystemExit):
        run_experiment.build_config({"not_a_field": 1})
    assert run_experiment.build_config({"epochs": 3}).epochs == 3


def test_synthetic_run_writes_report(tmp_path, monkeypatch):
    params = {
        "target_train_size": 40,
        "attacker_train_size": 40,
        "attacker_test_size": 20,
        "batch_size": 10,
        "num_microbatches": 10,
        "epochs": 1,
        "attacker_epochs": 1,
        "attacker_batch_size": 10,
        "noise_multipliers": [1.0, 0.0],
        "latent_channels": 8,
    }
    output_dir = tmp_path / "out"
    monkeypatch.setattr(
        sys,
        "argv",
        ["run_experiment.py", "--dataset", "synthetic", "--params", json.dumps(params), "--output-dir", str(output_dir)],
    )
    run_experiment.main()

    reports = list(output_dir.glob("split_inversion_*.json"))
    assert len(reports) == 1
    results = json.loads(reports[0].read_text())
    assert results["dataset"] == "synthetic"
    assert results["saved_at"].endswith("Z")
    report = results["report"]
    assert [row["noise_multiplier"] for row in report] == [0.0, 1.0]
    metrics = json.loads((output_dir / "metrics.json").read_text())
    assert metrics["experiment_name"] == "split_inversion"
    assert "split_inversion_sigma1" in metrics["runs"]


def test_experiment_logger_groups_runs(tmp_path):
    exp = ExperimentLogger({"seed": 0}, str(tmp_path))
    exp.start_run("a")
    exp.log(1, {"loss": 1.0})
    exp.start_run("b")
    exp.log(1, {"loss": 2.0})
    path = exp.save({"done": True})
    report = json.loads(Path(path).read_text())
    assert report["runs"] == {"a": [{"loss": 1.0, "epoch": 1}], "b": [{"loss": 2.0, "epoch": 1}]}
    assert report["hyperparameters"] == {"seed": 0}
