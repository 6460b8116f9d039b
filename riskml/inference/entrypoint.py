"""
Command-line entrypoint for evaluating a trained risk model on a labelled CSV.

What this does:
  - Loads repo/env config (no secrets).
  - Parses CLI args (--dataset, --model_id, optional --artifact / --schema / --plots_dir).
  - Calls riskml.inference.evaluate.run_evaluation(...) to:
      * resolve the artifact (explicit path, else the newest under models/<model_id>/)
      * rebuild features with the artifact's categories and stored preprocessing
      * compute accuracy, macro/weighted P/R/F1, confusion matrix and AUC

No data-processing or model math is defined here; it's purely orchestration.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict

from riskml.common.io import load_env_config, load_mapping_file
from riskml.common.progress import LoggingBroadcaster, ProgressTracker
from riskml.common.utils import get_logger, make_run_id, utcnow_iso
from riskml.inference import evaluate


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="riskml Evaluation Entrypoint")

    p.add_argument("--dataset", required=True, help="Path to the labelled evaluation CSV")
    p.add_argument("--model_id", required=True, help="Model identifier used at training time")

    # Optional knobs
    p.add_argument("--artifact", default=None, help="Sidecar path relative to storage root; default: latest")
    p.add_argument("--schema", default=None, help="YAML/JSON mapping of column roles to dataset headers")
    p.add_argument("--plots_dir", default=None, help="Write confusion-matrix / ROC PNGs under this directory")
    p.add_argument("--log_level", default=None, help="Override log level (INFO, DEBUG, etc.)")

    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    cfg: Dict[str, Any] = load_env_config()

    logger = get_logger("riskml.inference.entrypoint", level=args.log_level or cfg.get("log_level", "INFO"))
    run_id = make_run_id()
    logger.info("=== riskml Evaluation Entrypoint ===")
    logger.info("Run ID: %s  |  Timestamp: %s", run_id, utcnow_iso())
    logger.info("Config: %s", json.dumps(cfg, indent=2))

    tracker = ProgressTracker(
        LoggingBroadcaster("riskml.inference.progress"),
        ttl_seconds=cfg["progress_ttl_seconds"],
        threshold=cfg["progress_threshold"],
    )
    result = evaluate.run_evaluation(
        dataset_path=args.dataset,
        model_id=args.model_id,
        artifact_path=args.artifact,
        schema=load_mapping_file(args.schema),
        storage_root=cfg["storage_root"],
        tracker=tracker,
        plots_dir=args.plots_dir,
        run_id=run_id,
        memory_rows=cfg["buffer_memory_rows"],
    )

    logger.info("Evaluation completed. Summary: %s", json.dumps(result, indent=2))
    logger.info("=== Evaluation run finished successfully for %s ===", args.model_id)


if __name__ == "__main__":
    main(sys.argv[1:])
