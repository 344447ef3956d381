#!/usr/bin/env python3
"""Utility to run TrainScope training headlessly with a specific config file."""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from tqdm import tqdm

from trainscope.config import ConfigManager
from trainscope.data import sample_dataset
from trainscope.reporting import write_metrics_csv
from trainscope.store import TrainingStore
from trainscope.types import ShapeValidationError, TrainingState
from trainscope.utils import unique_report_path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run TrainScope training with a given YAML config."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the YAML config file (defaults to ~/.config/trainscope/config.yaml).",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path("outputs"),
        help="Directory where metric reports should be written (default: ./outputs).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for the trainscope loggers (default: WARNING).",
    )
    parser.add_argument(
        "--apply-fixes",
        action="store_true",
        help="Apply the shape validator's suggestions instead of aborting.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up after this many seconds (default: no limit).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    cm = ConfigManager(args.config) if args.config is not None else ConfigManager()
    config = cm.load()
    if config.speed == 0:
        print("[warn] Manual speed is not supported headlessly; running at speed 1.")
        config.speed = 1.0

    project_root = args.project_root
    if not project_root.is_absolute():
        project_root = (Path.cwd() / project_root).resolve()
    project_root.mkdir(parents=True, exist_ok=True)

    store = TrainingStore.restore(config)
    store.set_dataset(sample_dataset(config.problem_type, seed=config.seed))
    started_at = time.monotonic()
    try:
        try:
            store.start()
        except ShapeValidationError as exc:
            for issue in exc.result.issues:
                print(f"[warn] {issue.layer_name}: {issue.message}")
            if not args.apply_fixes:
                print("[error] Architecture does not match the data; rerun with --apply-fixes.")
                return 2
            store.apply_shape_fixes(exc.result.suggestions)
            store.start(force=True)

        deadline = None if args.timeout is None else started_at + args.timeout
        snap = store.snapshot()
        with tqdm(total=snap.total_epochs, unit="epoch", desc="training") as bar:
            while snap.state is TrainingState.TRAINING:
                if deadline is not None and time.monotonic() > deadline:
                    print("\n[error] Timed out; stopping the run.")
                    store.stop()
                    return 1
                store.pump(timeout=0.1)
                snap = store.snapshot()
                bar.update(len(snap.metrics) - bar.n)
                if snap.metrics:
                    bar.set_postfix(loss=f"{snap.metrics[-1].loss:.4f}")

        if snap.state is not TrainingState.COMPLETED:
            print(f"\n[error] Training failed: {snap.last_error or snap.state.value}")
            return 1

        report_path = unique_report_path(project_root, config.report_filename)
        write_metrics_csv(
            report_path,
            snap.metrics,
            config=snap.training_config,
            model_config=store.model_config,
            device=config.device,
            seed=config.seed,
            duration_seconds=time.monotonic() - started_at,
        )
        print("\n[run summary]")
        print(f"- report: {report_path}")
        print(f"- epochs: {len(snap.metrics)}")
        if snap.metrics:
            print(f"- final loss: {snap.metrics[-1].loss:.6f}")
        print(f"- duration (s): {time.monotonic() - started_at:.2f}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
