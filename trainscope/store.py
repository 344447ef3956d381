"""Training store: the coordinator that owns the training state machine.

The store accepts user commands (start, pause, resume, stop, step, ...),
forwards them to a :class:`TrainingWorker`, and reduces the worker's
responses into a read model exposed through :meth:`TrainingStore.snapshot`.

Transitions::

    idle      --start-->          training
    training  --pause (ack)-->    paused
    paused    --resume-->         training
    training|paused --stop-->     idle
    training  --complete-->       completed
    idle|paused --step (speed 0)--> training --> paused|completed
    completed|error|idle --reset--> idle
    any       --close-->          stopped

Commands that are not legal in the current state raise
:class:`InvalidTransitionError` and leave the state untouched. Every run gets
a brand-new worker; responses are read only from the current worker's outbox,
so a torn-down worker can never leak messages into a newer run.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .config import StudioConfig
from .losses import default_loss, default_metrics
from .messages import Command, ResponseType, STEP_KINDS, WorkerConfig
from .models import annotate_input_shape
from .shape_validator import (
    apply_fixes,
    auto_fix_for_error,
    expected_output_size,
    input_size_from_dataset,
    validate,
)
from .types import (
    ConfigurationError,
    Dataset,
    ErrorType,
    InvalidTransitionError,
    LayerActivationSnapshot,
    MetricPoint,
    ModelConfig,
    PredictionSample,
    ShapeFix,
    ShapeValidationError,
    ShapeValidationResult,
    TrainingConfig,
    TrainingState,
    classify_error,
)
from .worker import TrainingWorker
from .engine import num_batches
from .data import split_index


logger = logging.getLogger(__name__)

Listener = Callable[["TrainingSnapshot"], None]

_STARTABLE = {TrainingState.IDLE}
_RESETTABLE = {TrainingState.IDLE, TrainingState.COMPLETED, TrainingState.ERROR}
_NEW_RUN = {TrainingState.IDLE, TrainingState.COMPLETED}
_STOPPABLE = {TrainingState.TRAINING, TrainingState.PAUSED}
_STEPPABLE = {TrainingState.IDLE, TrainingState.PAUSED}
_ACTIVE = {TrainingState.TRAINING, TrainingState.PAUSED}


@dataclass(frozen=True)
class TrainingSnapshot:
    """Immutable projection of the store, safe to hand to consumers.

    ``current_batch`` counts the batches finished in ``current_epoch``; it is
    0 right after an epoch boundary and ``total_batches`` once the epoch's
    metrics arrive. ``(current_epoch, current_batch)`` only moves forward
    within a run.
    """

    state: TrainingState
    speed: float
    current_epoch: int
    total_epochs: int
    current_batch: int
    total_batches: int
    metrics: Tuple[MetricPoint, ...] = ()
    predictions: Tuple[PredictionSample, ...] = ()
    activations: Tuple[LayerActivationSnapshot, ...] = ()
    weights: Tuple[Dict[str, Any], ...] = ()
    last_error: Optional[str] = None
    error_type: Optional[ErrorType] = None
    pause_reason: Optional[str] = None
    pause_requested: bool = False
    view_epoch: Optional[int] = None
    has_dataset: bool = False
    has_model_config: bool = False
    training_config: TrainingConfig = field(default_factory=TrainingConfig)


class TrainingStore:
    """Explicit, injectable state container for one training session."""

    def __init__(
        self,
        *,
        training_config: Optional[TrainingConfig] = None,
        speed: float = 1.0,
        model_config: Optional[ModelConfig] = None,
        dataset: Optional[Dataset] = None,
        worker_factory: Callable[[], TrainingWorker] = TrainingWorker,
        emit_activations: bool = False,
        emit_weights: bool = False,
        device: str = "cpu",
        seed: Optional[int] = None,
        validate_shapes: bool = True,
        terminate_timeout: float = 5.0,
    ) -> None:
        if speed < 0:
            raise ValueError(f"speed must be >= 0, got {speed}")
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._worker_factory = worker_factory
        self._worker: Optional[TrainingWorker] = None
        self._emit_activations = emit_activations
        self._emit_weights = emit_weights
        self._device = device
        self._seed = seed
        self._validate_shapes = validate_shapes
        self._terminate_timeout = terminate_timeout

        self._training_config = training_config or TrainingConfig()
        self._speed = float(speed)
        self._model_config = model_config
        self._dataset = dataset

        self._state = TrainingState.IDLE
        self._current_epoch = 0
        self._current_batch = 0
        self._total_epochs = self._training_config.epochs
        self._total_batches = 0
        self._metrics: List[MetricPoint] = []
        self._predictions: List[PredictionSample] = []
        self._activations: List[LayerActivationSnapshot] = []
        self._weights: List[Dict[str, Any]] = []
        self._last_error: Optional[str] = None
        self._error_type: Optional[ErrorType] = None
        self._pause_reason: Optional[str] = None
        self._pause_requested = False
        self._view_epoch: Optional[int] = None
        self._last_validation: Optional[ShapeValidationResult] = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @classmethod
    def restore(cls, config: StudioConfig, **kwargs: Any) -> "TrainingStore":
        """Build a store from the durable configuration; live state starts empty."""
        return cls(
            training_config=config.training_config(),
            speed=config.speed,
            model_config=config.model_config(),
            device=config.device,
            seed=config.seed,
            **kwargs,
        )

    def persisted_state(self) -> Dict[str, Any]:
        """Durable fields only, in the shape accepted by ``ConfigManager.set``."""
        with self._lock:
            cfg = self._training_config
            state: Dict[str, Any] = {
                "speed": self._speed,
                "hyperparameters": {
                    "epochs": cfg.epochs,
                    "batch_size": cfg.batch_size,
                    "learning_rate": cfg.learning_rate,
                    "optimizer": cfg.optimizer,
                    "validation_split": cfg.validation_split,
                },
            }
            if self._model_config is not None:
                state["layers"] = [layer.to_dict() for layer in self._model_config.layers]
                state["loss"] = self._model_config.loss
                state["metrics"] = list(self._model_config.metrics)
            return state

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------
    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def dataset(self) -> Optional[Dataset]:
        return self._dataset

    @property
    def model_config(self) -> Optional[ModelConfig]:
        return self._model_config

    @property
    def last_validation(self) -> Optional[ShapeValidationResult]:
        return self._last_validation

    def snapshot(self) -> TrainingSnapshot:
        with self._lock:
            return TrainingSnapshot(
                state=self._state,
                speed=self._speed,
                current_epoch=self._current_epoch,
                total_epochs=self._total_epochs,
                current_batch=self._current_batch,
                total_batches=self._total_batches,
                metrics=tuple(self._metrics),
                predictions=tuple(self._predictions),
                activations=tuple(self._activations),
                weights=tuple(self._weights),
                last_error=self._last_error,
                error_type=self._error_type,
                pause_reason=self._pause_reason,
                pause_requested=self._pause_requested,
                view_epoch=self._view_epoch,
                has_dataset=self._dataset is not None,
                has_model_config=self._model_config is not None,
                training_config=self._training_config,
            )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every change."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                logger.error("Error in store listener: %s", exc)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def _require_open(self, command: str) -> None:
        if self._state is TrainingState.STOPPED:
            raise InvalidTransitionError(f"Cannot {command}: the store has been closed")

    def _require(self, allowed: set, command: str) -> None:
        self._require_open(command)
        if self._state not in allowed:
            raise InvalidTransitionError(
                f"Cannot {command} while {self._state.value}"
            )

    def set_dataset(self, dataset: Optional[Dataset]) -> None:
        with self._lock:
            self._require_open("set the dataset")
            self._dataset = dataset
        self._notify()

    def set_model_config(self, model_config: Optional[ModelConfig]) -> None:
        """Replace the architecture; applies to the next run."""
        with self._lock:
            self._require_open("set the model configuration")
            self._model_config = model_config
        self._notify()

    def set_training_config(self, config: Union[TrainingConfig, Dict[str, Any]]) -> None:
        """Replace the hyperparameters; a running run keeps the values it started with."""
        if not isinstance(config, TrainingConfig):
            merged = {**self.persisted_state()["hyperparameters"], **config}
            config = TrainingConfig.from_hyperparameters(merged)
        with self._lock:
            self._require_open("set the training configuration")
            self._training_config = config
            if self._state not in _ACTIVE:
                self._total_epochs = config.epochs
        self._notify()

    def set_speed(self, speed: float) -> None:
        """Change the playback speed.

        A live worker picks the new value up at its next epoch boundary; the
        epoch in flight is not affected.
        """
        if speed < 0:
            raise ValueError(f"speed must be >= 0, got {speed}")
        with self._lock:
            self._require_open("change speed")
            self._speed = float(speed)
            if self._worker is not None and self._state in _ACTIVE:
                self._worker.post(Command.resume(self._speed, speed_only=True))
        self._notify()

    # ------------------------------------------------------------------
    # Shape validation and fixes
    # ------------------------------------------------------------------
    def _resolved_model_config(self) -> ModelConfig:
        assert self._dataset is not None and self._model_config is not None
        dataset = self._dataset
        loss = self._model_config.loss
        if not loss or loss == "auto":
            loss = default_loss(dataset.problem_type, len(dataset.classes or []) or 2)
        metrics = list(self._model_config.metrics) or default_metrics(dataset.problem_type)
        return ModelConfig(
            layers=annotate_input_shape(self._model_config.layers, dataset.input_width),
            loss=loss,
            metrics=metrics,
        )

    def validate_architecture(self) -> ShapeValidationResult:
        """Run the shape validator against the current dataset; never mutates."""
        with self._lock:
            layers = list(self._model_config.layers) if self._model_config else []
            result = validate(
                layers,
                input_size_from_dataset(self._dataset),
                expected_output_size(self._dataset) if self._dataset is not None else None,
            )
            self._last_validation = result
            return result

    def apply_shape_fixes(self, fixes: Optional[Sequence[ShapeFix]] = None) -> ModelConfig:
        """Apply every given suggestion (default: the last validation's) or none."""
        with self._lock:
            self._require({TrainingState.IDLE, TrainingState.COMPLETED, TrainingState.ERROR}, "apply shape fixes")
            if self._model_config is None:
                raise ConfigurationError("No model configuration available")
            if fixes is None:
                fixes = self._last_validation.suggestions if self._last_validation else ()
            layers, _ = apply_fixes(
                self._model_config.layers,
                input_size_from_dataset(self._dataset),
                list(fixes),
            )
            self._model_config = ModelConfig(
                layers=layers,
                loss=self._model_config.loss,
                metrics=list(self._model_config.metrics),
            )
            self._last_validation = None
            updated = self._model_config
        self._notify()
        return updated

    def propose_auto_fix(self) -> Optional[ShapeFix]:
        """Narrow output-layer fix, offered only after a shape-mismatch failure."""
        with self._lock:
            if self._error_type is not ErrorType.SHAPE_MISMATCH:
                return None
            if self._dataset is None or self._model_config is None:
                return None
            return auto_fix_for_error(self._model_config.layers, self._dataset)

    def apply_auto_fix(self, fix: ShapeFix) -> ModelConfig:
        """Apply a confirmed auto-fix; the loss is re-derived from the problem type."""
        with self._lock:
            self._require(_RESETTABLE, "apply an auto-fix")
            if self._model_config is None or self._dataset is None:
                raise ConfigurationError("No model configuration available")
            layers = fix.action()
            if not isinstance(layers, list):
                raise ValueError("Auto-fix must replace the layer list")
            classes = len(self._dataset.classes or []) or 2
            self._model_config = ModelConfig(
                layers=layers,
                loss=default_loss(self._dataset.problem_type, classes),
                metrics=default_metrics(self._dataset.problem_type),
            )
            self._last_error = None
            self._error_type = None
            updated = self._model_config
        self._notify()
        return updated

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _clear_derived(self) -> None:
        self._metrics = []
        self._predictions = []
        self._activations = []
        self._weights = []
        self._view_epoch = None

    def _reset_counters(self) -> None:
        self._current_epoch = 0
        self._current_batch = 0
        self._total_batches = 0

    def _teardown_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        try:
            worker.terminate(self._terminate_timeout)
        except Exception as exc:
            logger.warning("Ignoring error while terminating worker: %s", exc)

    def _launch(self, step: Optional[str] = None, force: bool = False) -> None:
        """Check inputs, replace the worker and begin a fresh run.

        With ``step`` the new worker is configured and advanced once instead of
        being started. ``force`` skips the pre-training shape validation.
        """
        if self._dataset is None:
            self._last_error = "No training data available"
            self._error_type = ErrorType.GENERAL
            raise ConfigurationError(self._last_error)
        if self._model_config is None:
            self._last_error = "No model configuration available"
            self._error_type = ErrorType.GENERAL
            raise ConfigurationError(self._last_error)

        model_config = self._resolved_model_config()
        if self._validate_shapes and not force:
            result = validate(
                model_config.layers,
                self._dataset.input_width,
                expected_output_size(self._dataset),
            )
            self._last_validation = result
            if not result.is_valid:
                raise ShapeValidationError(result)

        self._teardown_worker()
        self._clear_derived()
        self._reset_counters()
        self._last_error = None
        self._error_type = None
        self._pause_reason = None
        self._pause_requested = False
        config = self._training_config
        self._total_epochs = config.epochs
        train_rows = len(self._dataset)
        if config.validation_split > 0:
            train_rows = split_index(len(self._dataset), config.validation_split)
        self._total_batches = num_batches(train_rows, config.batch_size)

        payload = WorkerConfig.build(
            model_config,
            self._dataset,
            config,
            speed=self._speed,
            output_units=expected_output_size(self._dataset),
            emit_activations=self._emit_activations,
            emit_weights=self._emit_weights,
            device=self._device,
            seed=self._seed,
        ).to_payload()

        worker = self._worker_factory()
        worker.start()
        worker.post(Command.config(payload))
        worker.post(Command.step(step) if step else Command.start())
        self._worker = worker
        self._state = TrainingState.TRAINING
        logger.info(
            "Run started: %d epochs, batch size %d, speed %s",
            config.epochs,
            config.batch_size,
            self._speed,
        )

    def start(self, force: bool = False) -> None:
        """Begin a fresh run from ``idle``.

        Raises :class:`ShapeValidationError` when the architecture does not fit
        the data, unless ``force`` is set.
        """
        with self._lock:
            self._require(_STARTABLE, "start")
            self._launch(force=force)
        self._notify()

    def new_run(self, force: bool = False) -> None:
        """Replace a finished run with a fresh one.

        Inputs and shapes are checked first; a rejected call leaves the
        finished run, its state and its history untouched.
        """
        with self._lock:
            self._require(_NEW_RUN, "start a new run")
            self._launch(force=force)
        self._notify()

    def pause(self) -> None:
        """Ask the worker to pause; the state changes when it acknowledges."""
        with self._lock:
            self._require({TrainingState.TRAINING}, "pause")
            if self._pause_requested:
                return
            self._pause_requested = True
            assert self._worker is not None
            self._worker.post(Command.pause())
        self._notify()

    def resume(self, speed: Optional[float] = None) -> None:
        """Continue from the recorded epoch/batch, optionally at a new speed."""
        with self._lock:
            self._require({TrainingState.PAUSED}, "resume")
            if speed is not None:
                if speed < 0:
                    raise ValueError(f"speed must be >= 0, got {speed}")
                self._speed = float(speed)
            assert self._worker is not None
            self._worker.post(Command.resume(self._speed))
            self._state = TrainingState.TRAINING
            self._pause_reason = None
        self._notify()

    def stop(self) -> None:
        """Hard cancel: tear the worker down and clear the run."""
        with self._lock:
            self._require(_STOPPABLE, "stop")
            self._teardown_worker()
            self._state = TrainingState.IDLE
            self._reset_counters()
            self._clear_derived()
            self._pause_requested = False
            self._pause_reason = None
        self._notify()

    def step(self, kind: str = "batch") -> None:
        """Advance exactly one batch or one epoch in manual mode."""
        if kind not in STEP_KINDS:
            raise ValueError(f"Step type must be one of {STEP_KINDS}, got {kind!r}")
        with self._lock:
            self._require(_STEPPABLE, "step")
            if self._speed != 0:
                raise InvalidTransitionError("Stepping requires manual speed (0)")
            if self._state is TrainingState.IDLE:
                self._launch(step=kind)
            else:
                assert self._worker is not None
                self._worker.post(Command.step(kind))
                self._state = TrainingState.TRAINING
                self._pause_reason = None
        self._notify()

    def reset(self) -> None:
        """Return a finished run to ``idle`` with empty collections."""
        with self._lock:
            self._require(_RESETTABLE, "reset")
            self._teardown_worker()
            self._state = TrainingState.IDLE
            self._reset_counters()
            self._clear_derived()
            self._total_epochs = self._training_config.epochs
        self._notify()

    def scrub_to_epoch(self, epoch: int) -> List[MetricPoint]:
        """Move the view cursor; the run's counters are untouched."""
        with self._lock:
            self._require_open("scrub")
            self._view_epoch = int(epoch)
            visible = [point for point in self._metrics if point.epoch <= epoch]
        self._notify()
        return visible

    def clear_all(self) -> None:
        """Drop the dataset, the architecture and everything derived from them."""
        with self._lock:
            self._require_open("clear")
            self._teardown_worker()
            self._dataset = None
            self._model_config = None
            self._state = TrainingState.IDLE
            self._reset_counters()
            self._clear_derived()
            self._last_error = None
            self._error_type = None
            self._last_validation = None
            self._pause_requested = False
            self._pause_reason = None
        self._notify()

    def close(self) -> None:
        """Tear down the worker; the store rejects commands afterwards."""
        with self._lock:
            if self._state is TrainingState.STOPPED:
                return
            self._teardown_worker()
            self._state = TrainingState.STOPPED
        self._notify()

    # ------------------------------------------------------------------
    # Worker responses
    # ------------------------------------------------------------------
    def pump(self, max_messages: Optional[int] = None, timeout: float = 0.0) -> int:
        """Apply pending worker responses in arrival order.

        Waits up to ``timeout`` seconds for the first message. Returns the
        number of messages applied.
        """
        applied = 0
        wait = timeout
        while max_messages is None or applied < max_messages:
            worker = self._worker
            if worker is None:
                break
            try:
                if wait > 0:
                    message = worker.outbox.get(timeout=wait)
                else:
                    message = worker.outbox.get_nowait()
            except queue.Empty:
                self._check_worker_alive(worker)
                break
            wait = 0.0
            with self._lock:
                if worker is not self._worker:
                    # torn down while we were waiting
                    break
                self._reduce(message)
            applied += 1
            self._notify()
        return applied

    def wait_until(
        self,
        predicate: Callable[[TrainingSnapshot], bool],
        timeout: float = 10.0,
        poll: float = 0.05,
    ) -> bool:
        """Pump until ``predicate(snapshot)`` holds or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            if predicate(self.snapshot()):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.pump(timeout=min(poll, remaining))

    def _check_worker_alive(self, worker: TrainingWorker) -> None:
        with self._lock:
            if worker is not self._worker or self._state not in _ACTIVE:
                return
            if worker.is_alive() or not worker.outbox.empty():
                return
            logger.error("Training worker exited without reporting")
            self._worker = None
            self._state = TrainingState.ERROR
            self._last_error = "Training worker exited unexpectedly"
            self._error_type = ErrorType.GENERAL
            self._pause_requested = False
        self._notify()

    def _advance(self, epoch: int, batch: int) -> None:
        """Move the (epoch, batch) cursor forward; older positions are ignored."""
        if (epoch, batch) > (self._current_epoch, self._current_batch):
            self._current_epoch = epoch
            self._current_batch = batch

    def _reduce(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        payload = message.get("payload")
        logger.debug("Store <- %s", kind)

        if kind == ResponseType.PROGRESS.value:
            if self._state is not TrainingState.TRAINING:
                return
            self._total_batches = int(payload.get("totalBatches") or self._total_batches)
            self._advance(int(payload.get("epoch", self._current_epoch)), int(payload.get("batch", 0)) + 1)

        elif kind == ResponseType.METRICS.value:
            point = MetricPoint.from_payload(payload)
            if self._metrics and point.epoch <= self._metrics[-1].epoch:
                logger.debug("Dropping duplicate metrics for epoch %d", point.epoch)
                return
            self._metrics.append(point)
            self._advance(point.epoch, self._total_batches)

        elif kind == ResponseType.PREDICTIONS.value:
            self._predictions = [PredictionSample.from_payload(item) for item in payload or []]

        elif kind == ResponseType.ACTIVATIONS.value:
            self._activations = [LayerActivationSnapshot.from_payload(item) for item in payload or []]

        elif kind == ResponseType.WEIGHTS.value:
            self._weights = list(payload or [])

        elif kind == ResponseType.PAUSED.value:
            if self._state is TrainingState.TRAINING:
                info = payload or {}
                self._state = TrainingState.PAUSED
                self._pause_requested = False
                self._pause_reason = info.get("reason")
                self._advance(
                    int(info.get("epoch", self._current_epoch)),
                    int(info.get("batch", self._current_batch)),
                )

        elif kind == ResponseType.COMPLETE.value:
            final_epoch = int((payload or {}).get("finalEpoch", self._current_epoch))
            self._advance(final_epoch, self._total_batches)
            self._state = TrainingState.COMPLETED
            self._pause_requested = False
            logger.info("Run completed at epoch %d", final_epoch)

        elif kind == ResponseType.ERROR.value:
            text = (payload or {}).get("message") or "Training error occurred"
            hinted = (payload or {}).get("errorType")
            error_type = ErrorType(hinted) if hinted in {e.value for e in ErrorType} else classify_error(text)
            logger.error("Training failed (%s): %s", error_type.value, text)
            self._teardown_worker()
            self._state = TrainingState.IDLE
            self._last_error = text
            self._error_type = error_type
            self._pause_requested = False

        else:
            logger.warning("Ignoring unknown worker message %r", kind)
