from __future__ import annotations

import logging

import pytest

torch = pytest.importorskip("torch")

from trainscope.engine import Callback, DataSlice, EpochProgress, safe_dispose
from trainscope.losses import build_loss, compute_metric, default_loss, normalize_metrics
from trainscope.models import build_compiled_model, build_model
from trainscope.optimizers import build_optimizer
from trainscope.types import (
    ConfigurationError,
    ErrorType,
    LayerSpec,
    ModelConfig,
    ResourceDisposedError,
    ShapeMismatchError,
    TrainingConfig,
    classify_error,
)


def _rows(n: int = 100):
    xs = [[i / n] for i in range(n)]
    ys = [[2.0 * x[0] + 1.0] for x in xs]
    return xs, ys


def _model(input_width: int = 1, output_units: int = 1, loss: str = "mse"):
    config = ModelConfig(
        layers=[
            LayerSpec(kind="dense", units=8, activation="relu", id="h"),
            LayerSpec(kind="dense", units=output_units, activation="linear", id="out"),
        ],
        loss=loss,
        metrics=["mae"],
    )
    return build_compiled_model(config, TrainingConfig(learning_rate=0.01), input_width, output_units=output_units)


class _Recorder(Callback):
    def __init__(self) -> None:
        self.batches = []
        self.epochs = []

    def on_batch_end(self, batch, logs):
        self.batches.append(batch)

    def on_epoch_end(self, epoch, logs):
        self.epochs.append((epoch, dict(logs)))


def test_dispose_is_strict_but_safe_dispose_tolerates_repeats() -> None:
    model = _model()
    model.dispose()
    with pytest.raises(ResourceDisposedError):
        model.dispose()
    with pytest.raises(ResourceDisposedError):
        model.predict(torch.zeros(1, 1))

    assert safe_dispose(model, "model") is False
    assert safe_dispose(None) is False

    fresh = _model()
    assert fresh.predict(torch.zeros(2, 1)).shape == (2, 1)
    assert safe_dispose(fresh) is True


def test_data_slice_slices_are_independent() -> None:
    xs, ys = _rows(10)
    full = DataSlice.from_rows(xs, ys)
    head = full.slice(0, 8)
    tail = full.slice(8)
    full.dispose()
    assert len(head) == 8
    assert len(tail) == 2
    with pytest.raises(ResourceDisposedError):
        len(full)


def test_incompatible_input_width_raises_shape_mismatch() -> None:
    model = _model(input_width=3)
    with pytest.raises(ShapeMismatchError) as excinfo:
        model.predict(torch.zeros(4, 5))
    assert classify_error(excinfo.value) is ErrorType.SHAPE_MISMATCH


def test_loss_shape_mismatch_is_classified() -> None:
    loss = build_loss("mse")
    with pytest.raises(ShapeMismatchError):
        loss.criterion(torch.zeros(4, 3), torch.zeros(4, 1))
    sparse = build_loss("sparseCategoricalCrossentropy")
    with pytest.raises(ShapeMismatchError):
        sparse.criterion(torch.full((2, 2), 0.5), torch.tensor([[0.0], [4.0]]))


def test_fit_resumes_from_progress_cursor() -> None:
    xs, ys = _rows(100)
    data = DataSlice.from_rows(xs, ys)
    model = _model()
    progress = EpochProgress()
    recorder = _Recorder()

    model.fit(data, batch_size=10, callbacks=recorder, progress=progress, max_batches=3)
    assert progress.epoch == 0
    assert progress.next_batch == 3
    assert recorder.epochs == []

    model.fit(data, batch_size=10, callbacks=recorder, progress=progress)
    assert recorder.batches == list(range(10))
    assert progress.epoch == 1
    assert progress.next_batch == 0
    assert [epoch for epoch, _ in recorder.epochs] == [0]
    assert set(recorder.epochs[0][1]) == {"loss", "mae"}


def test_fit_reports_validation_metrics_and_learns() -> None:
    xs, ys = _rows(100)
    data = DataSlice.from_rows(xs[:80], ys[:80])
    val = DataSlice.from_rows(xs[80:], ys[80:])
    model = _model()
    history = model.fit(data, batch_size=16, epochs=30, validation_data=val)

    assert len(history) == 30
    assert "val_loss" in history[-1]
    assert history[-1]["loss"] < history[0]["loss"]


def test_truncated_view_and_weights() -> None:
    model = build_model(
        [LayerSpec(kind="dense", units=4, activation="relu"), LayerSpec(kind="dense", units=2, activation="linear")],
        3,
    )
    view = model.truncated(0)
    assert view.predict(torch.zeros(1, 3)).shape == (1, 4)
    view.dispose()
    assert safe_dispose(view) is False

    weights = model.layers[1].get_weights()
    assert weights[0].shape == (2, 4)
    assert weights[1].shape == (2,)
    assert model.count_params() == (3 * 4 + 4) + (4 * 2 + 2)


def test_accuracy_metric_for_sigmoid_and_softmax() -> None:
    outputs = torch.tensor([[0.9], [0.2], [0.7]])
    targets = torch.tensor([[1.0], [0.0], [0.0]])
    assert compute_metric("accuracy", outputs, targets) == pytest.approx(2 / 3)

    probs = torch.tensor([[0.1, 0.8, 0.1], [0.6, 0.3, 0.1]])
    assert compute_metric("acc", probs, torch.tensor([[1.0], [0.0]])) == 1.0


def test_default_loss_selection() -> None:
    assert default_loss("regression") == "mse"
    assert default_loss("classification", 2) == "binary_crossentropy"
    assert default_loss("classification", 4) == "sparse_categorical_crossentropy"


def test_optimizer_selectors() -> None:
    params = [torch.nn.Parameter(torch.zeros(2))]
    assert isinstance(build_optimizer("RMSProp", params, lr=0.01), torch.optim.RMSprop)
    assert isinstance(build_optimizer("", params, lr=0.01), torch.optim.Adam)
    with pytest.raises(ConfigurationError):
        build_optimizer("lion", params, lr=0.01)
    with pytest.raises(ConfigurationError):
        build_optimizer("sgd", params, lr=0.0)


def test_unknown_loss_and_metrics_are_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="trainscope.losses"):
        assert build_loss("hinge").name == "mse"
        assert normalize_metrics(["accuracy", "f1", "acc"]) == ["accuracy"]
    assert "Unsupported loss 'hinge'" in caplog.text
    assert "Unsupported metric 'f1' ignored" in caplog.text
