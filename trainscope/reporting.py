"""CSV reporting utilities for a run's metric history."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Optional, Sequence

from .types import MetricPoint, ModelConfig, TrainingConfig


def _fmt(value: Optional[float]) -> str:
    return f"{value:.6f}" if value is not None else ""


def write_metrics_csv(
    path: Path,
    metrics: Sequence[MetricPoint],
    *,
    config: TrainingConfig,
    model_config: Optional[ModelConfig] = None,
    device: str = "cpu",
    seed: Optional[int] = None,
    duration_seconds: Optional[float] = None,
) -> Path:
    """Write per-epoch metrics plus a summary row to CSV.

    Epochs are written 1-based, as shown to users. Returns ``path``.
    """
    fieldnames = [
        "epoch",
        "loss",
        "accuracy",
        "val_loss",
        "val_accuracy",
        "timestamp",
        "loss_function",
        "optimizer",
        "learning_rate",
        "batch_size",
        "validation_split",
        "layers",
        "device",
        "seed",
        "duration_seconds",
    ]
    loss_name = model_config.loss if model_config is not None else ""
    layer_count = len(model_config.layers) if model_config is not None else ""

    def shared() -> dict:
        return {
            "loss_function": loss_name,
            "optimizer": config.optimizer,
            "learning_rate": config.learning_rate,
            "batch_size": config.batch_size,
            "validation_split": config.validation_split,
            "layers": layer_count,
            "device": device,
            "seed": seed if seed is not None else "",
        }

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        for point in metrics:
            writer.writerow(
                {
                    "epoch": point.epoch + 1,
                    "loss": _fmt(point.loss),
                    "accuracy": _fmt(point.accuracy),
                    "val_loss": _fmt(point.val_loss),
                    "val_accuracy": _fmt(point.val_accuracy),
                    "timestamp": point.timestamp,
                    "duration_seconds": "",
                    **shared(),
                }
            )

        last = metrics[-1] if metrics else None
        writer.writerow(
            {
                "epoch": "summary",
                "loss": _fmt(last.loss) if last else "",
                "accuracy": _fmt(last.accuracy) if last else "",
                "val_loss": _fmt(last.val_loss) if last else "",
                "val_accuracy": _fmt(last.val_accuracy) if last else "",
                "timestamp": "",
                "duration_seconds": f"{duration_seconds:.2f}" if duration_seconds is not None else "",
                **shared(),
            }
        )
    return path
