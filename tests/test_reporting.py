from __future__ import annotations

import csv

from trainscope.reporting import write_metrics_csv
from trainscope.types import LayerSpec, MetricPoint, ModelConfig, TrainingConfig


def test_write_metrics_csv_with_summary_row(tmp_path) -> None:
    metrics = [
        MetricPoint(epoch=0, loss=1.0, val_loss=1.5, timestamp=10),
        MetricPoint(epoch=1, loss=0.5, val_loss=0.75, timestamp=20),
    ]
    model_config = ModelConfig(layers=[LayerSpec(kind="dense", units=1)], loss="mse", metrics=["mae"])
    path = write_metrics_csv(
        tmp_path / "reports" / "run.csv",
        metrics,
        config=TrainingConfig(epochs=2),
        model_config=model_config,
        seed=3,
        duration_seconds=1.234,
    )

    with path.open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))

    assert [row["epoch"] for row in rows] == ["1", "2", "summary"]
    assert rows[0]["loss"] == "1.000000"
    assert rows[0]["accuracy"] == ""
    assert rows[1]["val_loss"] == "0.750000"
    assert rows[2]["loss"] == "0.500000"
    assert rows[2]["duration_seconds"] == "1.23"
    assert all(row["loss_function"] == "mse" for row in rows)
    assert rows[0]["seed"] == "3"


def test_write_metrics_csv_without_history(tmp_path) -> None:
    path = write_metrics_csv(tmp_path / "empty.csv", [], config=TrainingConfig())
    with path.open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 1
    assert rows[0]["epoch"] == "summary"
    assert rows[0]["loss"] == ""
