from __future__ import annotations

import logging
import queue
import time
from typing import Callable, Dict, List

import pytest

torch = pytest.importorskip("torch")

from trainscope.data import sample_dataset
from trainscope.engine import SequentialModel
from trainscope.messages import Command, WorkerConfig
from trainscope.types import LayerSpec, ModelConfig, TrainingConfig
from trainscope.worker import TrainingWorker


Message = Dict[str, object]


def _payload(*, epochs: int = 5, batch_size: int = 32, speed: float = 1.0, split: float = 0.2, **kwargs) -> dict:
    dataset = sample_dataset("regression", seed=0)
    model_config = ModelConfig(
        layers=[
            LayerSpec(kind="dense", units=10, activation="relu", id="hidden"),
            LayerSpec(kind="dense", units=1, activation="linear", id="out"),
        ],
        loss="mse",
        metrics=["mae"],
    )
    return WorkerConfig.build(
        model_config,
        dataset,
        TrainingConfig(epochs=epochs, batch_size=batch_size, validation_split=split),
        speed=speed,
        output_units=1,
        seed=0,
        **kwargs,
    ).to_payload()


def _collect(worker: TrainingWorker, until: Callable[[Message], bool], timeout: float = 30.0) -> List[Message]:
    messages: List[Message] = []
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"timed out; received {[m['type'] for m in messages]}")
        try:
            message = worker.outbox.get(timeout=remaining)
        except queue.Empty:
            continue
        messages.append(message)
        if until(message):
            return messages


def _is(kind: str) -> Callable[[Message], bool]:
    return lambda message: message["type"] == kind


def _quiet(worker: TrainingWorker, wait: float = 0.3) -> List[Message]:
    time.sleep(wait)
    drained = []
    while True:
        try:
            drained.append(worker.outbox.get_nowait())
        except queue.Empty:
            return drained


@pytest.fixture
def worker():
    worker = TrainingWorker()
    worker.start()
    yield worker
    worker.terminate(timeout=10.0)


def test_full_run_message_order(worker) -> None:
    worker.post(Command.config(_payload(epochs=5)))
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))

    kinds = [m["type"] for m in messages]
    assert kinds[0] == "predictions"
    metrics = [m["payload"]["epoch"] for m in messages if m["type"] == "metrics"]
    assert metrics == [0, 1, 2, 3, 4]
    assert messages[-1]["payload"] == {"finalEpoch": 4}
    assert "error" not in kinds

    # progress for an epoch precedes its metrics; predictions follow them
    for epoch in range(5):
        metric_at = next(i for i, m in enumerate(messages) if m["type"] == "metrics" and m["payload"]["epoch"] == epoch)
        progress_at = [i for i, m in enumerate(messages) if m["type"] == "progress" and m["payload"]["epoch"] == epoch]
        assert len(progress_at) == 3  # 80 training rows, batch size 32
        assert max(progress_at) < metric_at
        assert messages[metric_at + 1]["type"] == "predictions"


def test_predictions_cover_the_whole_dataset_in_order(worker) -> None:
    worker.post(Command.config(_payload(epochs=1, split=0.5)))
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))

    for message in messages:
        if message["type"] != "predictions":
            continue
        samples = message["payload"]
        assert len(samples) == 100
        assert [sample["index"] for sample in samples] == list(range(100))
        assert isinstance(samples[0]["prediction"], float)
        assert isinstance(samples[0]["input"], float)


def test_activations_and_weights_are_opt_in(worker) -> None:
    worker.post(Command.config(_payload(epochs=1, emit_activations=True, emit_weights=True)))
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))

    activations = next(m for m in messages if m["type"] == "activations")["payload"]
    assert [entry["layerId"] for entry in activations] == ["hidden", "out"]
    assert len(activations[0]["activations"]) == 10
    weights = next(m for m in messages if m["type"] == "weights")["payload"]
    assert len(weights[0]["weights"]) == 10
    assert len(weights[1]["biases"]) == 1


def test_manual_mode_waits_for_steps(worker) -> None:
    worker.post(Command.config(_payload(epochs=2, speed=0)))
    worker.post(Command.start())
    paused = _collect(worker, _is("paused"))[-1]
    assert paused["payload"] == {"epoch": 0, "batch": 0, "reason": "manual_mode"}
    assert _quiet(worker) == []

    worker.post(Command.step("batch"))
    messages = _collect(worker, _is("paused"))
    assert [m["type"] for m in messages] == ["progress", "paused"]
    assert messages[0]["payload"]["batch"] == 0
    assert messages[-1]["payload"] == {"epoch": 0, "batch": 1, "reason": "step"}

    worker.post(Command.step("epoch"))
    messages = _collect(worker, _is("paused"))
    kinds = [m["type"] for m in messages]
    assert kinds == ["progress", "progress", "metrics", "predictions", "paused"]
    assert messages[-1]["payload"]["epoch"] == 1

    worker.post(Command.step("epoch"))
    messages = _collect(worker, _is("complete"))
    assert messages[-1]["payload"] == {"finalEpoch": 1}


def test_pause_resume_continues_without_replaying(worker) -> None:
    worker.post(Command.config(_payload(epochs=40, batch_size=4)))
    worker.post(Command.start())
    _collect(worker, _is("progress"))
    worker.post(Command.pause())
    before = _collect(worker, _is("paused"))
    assert _quiet(worker) == []

    worker.post(Command.resume())
    after = _collect(worker, _is("complete"), timeout=60.0)
    epochs = [m["payload"]["epoch"] for m in before + after if m["type"] == "metrics"]
    assert epochs == list(range(40))


def test_stop_releases_resources_and_accepts_new_config(worker) -> None:
    worker.post(Command.config(_payload(epochs=200, batch_size=4)))
    worker.post(Command.start())
    _collect(worker, _is("progress"))
    worker.post(Command.stop())
    drained = _quiet(worker, 0.5)
    assert not any(m["type"] in {"complete", "error"} for m in drained)
    assert worker._model is None

    worker.post(Command.config(_payload(epochs=1)))
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))
    assert [m["payload"]["epoch"] for m in messages if m["type"] == "metrics"] == [0]


def test_runtime_shape_error_is_reported(worker) -> None:
    payload = _payload(epochs=1)
    payload["modelConfig"]["layers"][-1]["units"] = 3
    payload["outputUnits"] = 3
    worker.post(Command.config(payload))
    worker.post(Command.start())
    error = _collect(worker, _is("error"))[-1]
    assert error["payload"]["errorType"] == "shape_mismatch"


def test_start_without_config_reports_general_error(worker) -> None:
    worker.post(Command.start())
    error = _collect(worker, _is("error"))[-1]
    assert error["payload"]["errorType"] == "general"
    assert "not configured" in error["payload"]["message"]


def test_terminate_is_idempotent() -> None:
    worker = TrainingWorker()
    worker.start()
    worker.terminate(timeout=5.0)
    worker.terminate(timeout=5.0)
    assert worker.terminated
    assert not worker.is_alive()


def test_slow_speed_waits_before_each_epoch(worker) -> None:
    worker.post(Command.config(_payload(epochs=2, speed=0.5)))
    started = time.monotonic()
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))
    elapsed = time.monotonic() - started

    assert [m["payload"]["epoch"] for m in messages if m["type"] == "metrics"] == [0, 1]
    # (1 - speed) seconds per epoch
    assert elapsed >= 0.9


def test_failing_activation_layers_are_zero_filled(worker, monkeypatch) -> None:
    def broken(self, index):
        raise RuntimeError("no layer view")

    monkeypatch.setattr(SequentialModel, "truncated", broken)
    worker.post(Command.config(_payload(epochs=1, emit_activations=True)))
    worker.post(Command.start())
    messages = _collect(worker, _is("complete"))

    activations = next(m for m in messages if m["type"] == "activations")["payload"]
    assert [entry["layerId"] for entry in activations] == ["hidden", "out"]
    assert activations[0]["activations"] == [0.0] * 10
    assert activations[1]["activations"] == [0.0]


def test_failed_predictions_are_skipped_without_stopping_training(worker, monkeypatch, caplog) -> None:
    def broken(self, xs):
        raise RuntimeError("forward pass failed")

    monkeypatch.setattr(SequentialModel, "predict", broken)
    with caplog.at_level(logging.WARNING, logger="trainscope.worker"):
        worker.post(Command.config(_payload(epochs=2)))
        worker.post(Command.start())
        messages = _collect(worker, _is("complete"))

    kinds = [m["type"] for m in messages]
    assert "predictions" not in kinds
    assert "error" not in kinds
    assert [m["payload"]["epoch"] for m in messages if m["type"] == "metrics"] == [0, 1]
    assert "Could not compute predictions" in caplog.text
