import argparse
import json
from dataclasses import fields

from inversion_pipeline import (
    AttackerTrainer,
    CheckpointStore,
    EvaluationHarness,
    ExperimentConfig,
    ExperimentLogger,
    build_target_model,
    configure_logging,
    load_mnist,
    make_partitions,
    save_results_json,
    synthetic_records,
)
from inversion_pipeline.config import default_device


def build_config(params: dict) -> ExperimentConfig:
    known = {f.name for f in fields(ExperimentConfig)}
    unknown = set(params) - known
    if unknown:
        raise SystemExit(f"unknown parameters: {sorted(unknown)}")
    return ExperimentConfig(**params)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the split-model inversion experiment")
    parser.add_argument("--dataset", choices=["synthetic", "mnist"], default="mnist")
    parser.add_argument(
        "--params",
        type=str,
        default="{}",
        help="JSON string of ExperimentConfig fields to override",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="outputs",
        help="Directory for the report JSON and metrics.json",
    )
    parser.add_argument("--checkpoints", type=str, default=None, help="Directory for stage checkpoints")
    parser.add_argument("--data-root", type=str, default="./data")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args()

    configure_logging(args.log_level)
    cfg = build_config(json.loads(args.params))

    if args.dataset == "mnist":
        dataset = load_mnist(args.data_root, train=True)
        record_shape, num_classes = (1, 28, 28), 10
    else:
        total = sum(cfg.partition_sizes().values())
        dataset = synthetic_records(total, num_classes=20, shape=(1, 8, 8), seed=cfg.seed)
        record_shape, num_classes = (1, 8, 8), 20

    partitions = make_partitions(dataset, cfg.partition_sizes(), seed=cfg.seed)
    device = default_device()
    experiment_logger = ExperimentLogger(cfg, args.output_dir)
    harness = EvaluationHarness(
        partitions,
        momentum=cfg.momentum,
        seed=cfg.seed,
        store=CheckpointStore(args.checkpoints) if args.checkpoints else None,
        device=device,
        experiment_logger=experiment_logger,
    )
    trainer = AttackerTrainer(
        epochs=cfg.attacker_epochs,
        batch_size=cfg.attacker_batch_size,
        learning_rate=cfg.attacker_lr,
        seed=cfg.seed,
        device=device,
    )
    rows = harness.evaluate(
        lambda: build_target_model(record_shape, num_classes, cfg.latent_channels),
        trainer,
        cfg.privacy_configs(),
    )

    results = {
        "experiment_name": cfg.experiment_name,
        "dataset": args.dataset,
        "hyperparameters": cfg.to_dict(),
        "report": [row.to_dict() for row in rows],
    }
    experiment_logger.save({"report": results["report"]})
    save_results_json(results, args.output_dir)
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
