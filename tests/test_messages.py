from __future__ import annotations

import json

import pytest

from trainscope.messages import Command, Response, WorkerConfig
from trainscope.types import Dataset, LayerSpec, ModelConfig, TrainingConfig


def test_commands_are_plain_dicts() -> None:
    assert Command.pause().to_dict() == {"type": "pause"}
    assert Command.step("epoch").to_dict() == {"type": "step", "payload": {"type": "epoch"}}
    assert Command.resume(0.5, speed_only=True).to_dict() == {
        "type": "resume",
        "payload": {"speed": 0.5, "speedOnly": True},
    }
    with pytest.raises(ValueError):
        Command.step("layer")
    with pytest.raises(ValueError):
        Command.from_dict({"type": "explode"})


def test_metrics_response_uses_wire_keys() -> None:
    message = Response.metrics(
        3,
        {"loss": 0.5, "accuracy": 0.75, "val_loss": 0.6, "val_accuracy": 0.7, "mae": 0.1, "val_mae": 0.2},
        1234,
    ).to_dict()
    assert message["type"] == "metrics"
    assert message["payload"] == {
        "epoch": 3,
        "loss": 0.5,
        "accuracy": 0.75,
        "valLoss": 0.6,
        "valAccuracy": 0.7,
        "mae": 0.1,
        "valMae": 0.2,
        "timestamp": 1234,
    }


def test_progress_and_paused_payloads() -> None:
    progress = Response.progress(1, 2, {"loss": 0.3}, 4).to_dict()
    assert progress["payload"] == {"epoch": 1, "batch": 2, "metrics": {"loss": 0.3}, "totalBatches": 4}
    paused = Response.paused(1, 3, "user").to_dict()
    assert paused["payload"] == {"epoch": 1, "batch": 3, "reason": "user"}
    assert Response.complete(4).to_dict()["payload"] == {"finalEpoch": 4}


def test_worker_config_payload_is_json_serialisable() -> None:
    dataset = Dataset(xs=[[1.0, 2.0], [3.0, 4.0]], ys=[[1.0], [0.0]])
    model_config = ModelConfig(
        layers=[LayerSpec(kind="dense", units=1, activation="sigmoid", id="out")],
        loss="binary_crossentropy",
        metrics=["accuracy"],
    )
    config = WorkerConfig.build(
        model_config,
        dataset,
        TrainingConfig(epochs=3, batch_size=1, validation_split=0.5),
        speed=0.25,
        output_units=1,
        seed=5,
    )
    payload = json.loads(json.dumps(config.to_payload()))

    assert payload["dataConfig"]["validationSplit"] == 0.5
    assert payload["trainingConfig"]["batchSize"] == 1

    restored = WorkerConfig.from_payload(payload)
    assert restored.training_config == TrainingConfig(epochs=3, batch_size=1, validation_split=0.5)
    assert restored.model_config.layers[0].id == "out"
    assert restored.model_config.loss == "binary_crossentropy"
    assert restored.speed == 0.25
    assert restored.seed == 5
    assert restored.xs == [[1.0, 2.0], [3.0, 4.0]]
