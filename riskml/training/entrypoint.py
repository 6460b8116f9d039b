"""
Command-line entrypoint for training a risk model from a CSV dataset.

This script only orchestrates:
  1) Load config (configs/env.yaml -> env vars) and the optional schema / hyperparameter files
  2) Run training (prepare data, grid search, fit, validate, persist artifact)

Example:
    python -m riskml.training.entrypoint --dataset data/incidents.csv --model_id city-risk \
        --hyperparameters configs/hyperparameters.yaml
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict

from riskml.common.io import load_env_config, load_mapping_file
from riskml.common.progress import LoggingBroadcaster, ProgressTracker
from riskml.common.utils import get_logger, make_run_id, utcnow_iso
from riskml.training import train


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="riskml Training Entrypoint")

    p.add_argument("--dataset", required=True, help="Path to the training CSV")
    p.add_argument("--model_id", required=True, help="Model identifier; artifacts go under models/<model_id>/")

    # Optional knobs
    p.add_argument("--schema", default=None, help="YAML/JSON mapping of column roles to dataset headers")
    p.add_argument("--hyperparameters", default=None, help="YAML/JSON hyperparameters (model_type, grid, ...)")
    p.add_argument("--log_level", default=None, help="Override log level (INFO, DEBUG, etc.)")
    p.add_argument("--run_id", default=None, help="Override run id; if omitted a new one is generated")

    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    cfg: Dict[str, Any] = load_env_config()

    logger = get_logger("riskml.training.entrypoint", level=args.log_level or cfg.get("log_level", "INFO"))
    run_id = args.run_id or make_run_id()

    logger.info("=== riskml Training Entrypoint ===")
    logger.info("Run ID: %s  |  Timestamp: %s", run_id, utcnow_iso())
    logger.info("Config: %s", json.dumps(cfg, indent=2))

    schema = load_mapping_file(args.schema)
    hyperparameters = load_mapping_file(args.hyperparameters)

    tracker = ProgressTracker(
        LoggingBroadcaster("riskml.training.progress"),
        ttl_seconds=cfg["progress_ttl_seconds"],
        threshold=cfg["progress_threshold"],
    )
    train_params = {
        "dataset_path": args.dataset,
        "model_id": args.model_id,
        "schema": schema,
        "hyperparameters": hyperparameters,
        "storage_root": cfg["storage_root"],
        "run_id": run_id,
        "memory_rows": cfg["buffer_memory_rows"],
    }
    logger.info("train params: %s", json.dumps(train_params, indent=2))

    result = train.run_training(tracker=tracker, **train_params)
    logger.info("Training completed. Artifact: %s", result["artifact_path"])
    logger.info("Metrics: %s", json.dumps(result["metrics"], indent=2))

    logger.info("=== Training run finished successfully. run_id=%s ===", run_id)


if __name__ == "__main__":
    main(sys.argv[1:])
