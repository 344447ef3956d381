from __future__ import annotations

import time

import pytest

torch = pytest.importorskip("torch")

from trainscope.config import StudioConfig
from trainscope.data import make_dataset, sample_dataset
from trainscope.store import TrainingStore
from trainscope.types import (
    ConfigurationError,
    ErrorType,
    InvalidTransitionError,
    LayerSpec,
    ModelConfig,
    ShapeValidationError,
    TrainingConfig,
    TrainingState,
)
from trainscope.worker import TrainingWorker


TIMEOUT = 60.0


def _layers(output_units: int = 1, output_activation: str = "linear"):
    return [
        LayerSpec(kind="dense", units=10, activation="relu", id="hidden"),
        LayerSpec(kind="dense", units=output_units, activation=output_activation, id="out"),
    ]


def _store(*, epochs: int = 5, batch_size: int = 32, speed: float = 1.0, layers=None, **kwargs) -> TrainingStore:
    store = TrainingStore(
        training_config=TrainingConfig(epochs=epochs, batch_size=batch_size),
        speed=speed,
        seed=0,
        **kwargs,
    )
    store.set_dataset(sample_dataset("regression", seed=0))
    store.set_model_config(ModelConfig(layers=layers or _layers(), loss="auto", metrics=[]))
    return store


def _state(*states):
    return lambda snap: snap.state in states


@pytest.fixture
def stores():
    created = []

    def make(**kwargs) -> TrainingStore:
        store = _store(**kwargs)
        created.append(store)
        return store

    yield make
    for store in created:
        store.close()


def test_full_run_reaches_completed(stores) -> None:
    store = stores(epochs=5)
    seen = []
    store.subscribe(lambda snap: seen.append((snap.state, snap.current_epoch)))

    store.start()
    assert store.state is TrainingState.TRAINING
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)

    snap = store.snapshot()
    assert [point.epoch for point in snap.metrics] == [0, 1, 2, 3, 4]
    assert snap.current_epoch == 4
    assert len(snap.predictions) == 100
    assert snap.total_batches == 3

    training_epochs = [epoch for state, epoch in seen if state is TrainingState.TRAINING]
    assert training_epochs == sorted(training_epochs)


def test_start_requires_dataset_and_model() -> None:
    store = TrainingStore()
    with pytest.raises(ConfigurationError):
        store.start()
    assert store.state is TrainingState.IDLE
    assert store.snapshot().last_error == "No training data available"

    store.set_dataset(sample_dataset(seed=0))
    with pytest.raises(ConfigurationError):
        store.start()
    assert store.snapshot().last_error == "No model configuration available"
    store.close()


def test_illegal_commands_are_rejected_without_state_change(stores) -> None:
    store = stores()
    for command in (store.pause, store.resume, store.stop):
        with pytest.raises(InvalidTransitionError):
            command()
        assert store.state is TrainingState.IDLE
    with pytest.raises(InvalidTransitionError):
        store.step("batch")  # speed is not manual
    with pytest.raises(InvalidTransitionError):
        store.resume(speed=0.5)

    store.start()
    with pytest.raises(InvalidTransitionError):
        store.start()
    with pytest.raises(InvalidTransitionError):
        store.reset()
    with pytest.raises(InvalidTransitionError):
        store.apply_shape_fixes([])
    store.stop()
    assert store.state is TrainingState.IDLE


def test_shape_validation_blocks_start_until_fixed(stores) -> None:
    store = stores(layers=[LayerSpec(kind="dense", units=10, activation="relu", id="only")])
    with pytest.raises(ShapeValidationError) as excinfo:
        store.start()
    assert store.state is TrainingState.IDLE
    issues = excinfo.value.result.issues
    assert [issue.kind for issue in issues] == ["output_mismatch"]
    assert store.last_validation is excinfo.value.result

    updated = store.apply_shape_fixes()
    assert updated.layers[0].units == 1
    assert store.validate_architecture().is_valid
    store.start()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)


def test_forced_start_and_runtime_shape_error_offers_auto_fix(stores) -> None:
    store = stores(epochs=1, layers=_layers(output_units=3))
    store.start(force=True)
    assert store.wait_until(lambda snap: snap.last_error is not None, TIMEOUT)

    snap = store.snapshot()
    assert snap.state is TrainingState.IDLE
    assert snap.error_type is ErrorType.SHAPE_MISMATCH

    fix = store.propose_auto_fix()
    assert fix is not None
    updated = store.apply_auto_fix(fix)
    assert updated.layers[-1].units == 1
    assert updated.loss == "mse"
    assert store.snapshot().last_error is None

    store.start()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)


def test_pause_waits_for_acknowledgement_and_resume_continues(stores) -> None:
    store = stores(epochs=60, batch_size=4)
    store.start()
    assert store.wait_until(lambda snap: snap.current_batch > 0, TIMEOUT)

    store.pause()
    snap = store.snapshot()
    assert snap.state is TrainingState.TRAINING
    assert snap.pause_requested

    assert store.wait_until(_state(TrainingState.PAUSED), TIMEOUT)
    paused = store.snapshot()
    assert paused.pause_reason == "user"
    assert not paused.pause_requested
    store.pump(timeout=0.3)
    assert store.snapshot().metrics == paused.metrics

    store.resume()
    assert store.state is TrainingState.TRAINING
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)
    epochs = [point.epoch for point in store.snapshot().metrics]
    assert epochs == list(range(60))


def test_stop_resets_counters_and_collections(stores) -> None:
    store = stores(epochs=200, batch_size=4)
    store.start()
    assert store.wait_until(lambda snap: len(snap.metrics) >= 1, TIMEOUT)

    store.stop()
    snap = store.snapshot()
    assert snap.state is TrainingState.IDLE
    assert (snap.current_epoch, snap.current_batch) == (0, 0)
    assert snap.metrics == ()
    assert snap.predictions == ()
    assert store.pump() == 0


def test_manual_mode_requires_steps(stores) -> None:
    store = stores(epochs=2, speed=0)
    store.start()
    assert store.wait_until(_state(TrainingState.PAUSED), TIMEOUT)
    assert store.snapshot().pause_reason == "manual_mode"
    time.sleep(0.2)
    store.pump()
    snap = store.snapshot()
    assert snap.state is TrainingState.PAUSED
    assert snap.current_epoch == 0
    assert snap.metrics == ()

    store.step("batch")
    assert store.wait_until(lambda s: s.state is TrainingState.PAUSED and s.pause_reason == "step", TIMEOUT)
    snap = store.snapshot()
    assert snap.metrics == ()
    assert (snap.current_epoch, snap.current_batch) == (0, 1)

    store.step("epoch")
    assert store.wait_until(lambda s: s.state is TrainingState.PAUSED and len(s.metrics) == 1, TIMEOUT)
    snap = store.snapshot()
    assert (snap.current_epoch, snap.current_batch) == (1, 0)

    store.step("batch")
    assert store.wait_until(lambda s: s.state is TrainingState.PAUSED, TIMEOUT)
    snap = store.snapshot()
    assert (snap.current_epoch, snap.current_batch) == (1, 1)
    assert len(snap.metrics) == 1

    store.step("epoch")
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)
    snap = store.snapshot()
    assert [point.epoch for point in snap.metrics] == [0, 1]
    assert (snap.current_epoch, snap.current_batch) == (1, snap.total_batches)


def test_step_from_idle_starts_a_fresh_run(stores) -> None:
    store = stores(epochs=3, speed=0)
    store.step("batch")
    assert store.state is TrainingState.TRAINING
    assert store.wait_until(_state(TrainingState.PAUSED), TIMEOUT)
    snap = store.snapshot()
    assert snap.pause_reason == "step"
    assert (snap.current_epoch, snap.current_batch) == (0, 1)
    assert len(snap.predictions) == 100


def test_speed_change_while_paused_and_resume_with_speed(stores) -> None:
    store = stores(epochs=2, speed=0)
    store.start()
    assert store.wait_until(_state(TrainingState.PAUSED), TIMEOUT)
    with pytest.raises(ValueError):
        store.set_speed(-0.5)
    store.resume(speed=2.0)
    assert store.snapshot().speed == 2.0
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)


def test_reset_new_run_and_scrub(stores) -> None:
    store = stores(epochs=3)
    store.start()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)

    visible = store.scrub_to_epoch(1)
    assert [point.epoch for point in visible] == [0, 1]
    snap = store.snapshot()
    assert snap.view_epoch == 1
    assert snap.current_epoch == 2

    store.new_run()
    assert store.state is TrainingState.TRAINING
    assert store.snapshot().metrics == ()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)

    store.reset()
    snap = store.snapshot()
    assert snap.state is TrainingState.IDLE
    assert snap.metrics == ()
    assert snap.current_epoch == 0


def test_rejected_new_run_keeps_the_finished_run(stores) -> None:
    store = stores(epochs=2)
    store.start()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)
    before = store.snapshot()

    store.set_model_config(ModelConfig(layers=_layers(output_units=5), loss="auto", metrics=[]))
    with pytest.raises(ShapeValidationError):
        store.new_run()
    dataset = store.dataset
    store.set_dataset(None)
    with pytest.raises(ConfigurationError):
        store.new_run()

    after = store.snapshot()
    assert after.state is TrainingState.COMPLETED
    assert after.metrics == before.metrics
    assert after.predictions == before.predictions
    assert (after.current_epoch, after.current_batch) == (before.current_epoch, before.current_batch)

    store.set_dataset(dataset)
    store.set_model_config(ModelConfig(layers=_layers(), loss="auto", metrics=[]))
    store.new_run()
    assert store.snapshot().metrics == ()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)


def test_classification_run_uses_probability_output(stores) -> None:
    dataset = make_dataset([[float(i % 7)] for i in range(60)], ["A" if i % 7 < 3 else "B" for i in range(60)])
    store = stores(epochs=2, layers=_layers(output_activation="sigmoid"))
    store.set_dataset(dataset)
    store.start()
    assert store.wait_until(_state(TrainingState.COMPLETED), TIMEOUT)
    last = store.snapshot().metrics[-1]
    assert last.accuracy is not None
    assert 0.0 <= last.accuracy <= 1.0


class _VanishingWorker(TrainingWorker):
    def run(self) -> None:
        return


def test_worker_that_dies_silently_moves_to_error(stores) -> None:
    store = stores(worker_factory=_VanishingWorker)
    store.start()
    assert store.wait_until(_state(TrainingState.ERROR), TIMEOUT)
    assert store.snapshot().last_error == "Training worker exited unexpectedly"
    with pytest.raises(InvalidTransitionError):
        store.start()
    store.reset()
    assert store.state is TrainingState.IDLE


def test_persisted_state_round_trip() -> None:
    config = StudioConfig(speed=0.5, seed=3)
    config.hyperparameters["epochs"] = 12
    store = TrainingStore.restore(config)

    state = store.persisted_state()
    assert state["speed"] == 0.5
    assert state["hyperparameters"]["epochs"] == 12
    assert [layer["units"] for layer in state["layers"]] == [128, 64, 1]
    assert "metrics" in state and "predictions" not in state
    snap = store.snapshot()
    assert snap.total_epochs == 12
    assert not snap.has_dataset

    store.set_training_config({"batch_size": 8})
    assert store.snapshot().training_config.batch_size == 8
    assert store.snapshot().training_config.epochs == 12
    store.close()


def test_clear_all_and_close() -> None:
    store = _store(epochs=1)
    store.clear_all()
    snap = store.snapshot()
    assert not snap.has_dataset and not snap.has_model_config

    store.close()
    store.close()
    assert store.state is TrainingState.STOPPED
    for command in (store.start, store.reset, store.clear_all, lambda: store.set_speed(1.0)):
        with pytest.raises(InvalidTransitionError):
            command()


def test_listener_errors_do_not_break_the_store(stores, caplog) -> None:
    store = stores(epochs=1)

    def broken(snapshot):
        raise RuntimeError("listener failed")

    unsubscribe = store.subscribe(broken)
    store.set_speed(2.0)
    assert "listener failed" in caplog.text
    unsubscribe()
    store.set_speed(1.0)
