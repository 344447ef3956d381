"""Background training worker.

The worker is a daemon thread that owns every engine resource of one run. It
talks to the coordinator only through two queues: commands arrive on
``inbox`` and responses leave on ``outbox``, both as plain dicts. Nothing else
is shared, so a worker that is replaced can never write into a newer run.

The loop is cooperative. Yield points after every batch, after every epoch and
during the slow-speed throttle drain the inbox; a pause or stop seen there
aborts the current ``fit`` call with :class:`TrainingInterrupted`, and the
epoch cursor (:class:`EpochProgress`) lets the next resume continue from the
following batch instead of replaying the epoch.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from typing import Any, Dict, List, Optional, Union

from .data import split_index
from .engine import Callback, DataSlice, EpochProgress, SequentialModel, num_batches, safe_dispose
from .messages import Command, CommandType, PauseReason, Response, WorkerConfig
from .models import build_compiled_model
from .types import ConfigurationError, Dataset, TrainingInterrupted, classify_error
from .utils import now_ms, resolve_device, set_seed


logger = logging.getLogger(__name__)


def _scalar_or_list(values: List[float]) -> Union[float, List[float]]:
    return values[0] if len(values) == 1 else values


class _LoopCallback(Callback):
    """Streams fit progress and hosts the per-batch yield point."""

    def __init__(self, worker: "TrainingWorker") -> None:
        self.worker = worker

    def on_batch_end(self, batch: int, logs: Dict[str, float]) -> None:
        worker = self.worker
        worker._emit(
            Response.progress(worker._progress.epoch, batch, logs, worker._total_batches)
        )
        worker._yield_point("after_batch")

    def on_epoch_end(self, epoch: int, logs: Dict[str, float]) -> None:
        worker = self.worker
        worker._emit(Response.metrics(epoch, logs, now_ms()))
        worker._emit_predictions()
        if worker._config is not None and worker._config.emit_activations:
            worker._emit_activations()
        if worker._config is not None and worker._config.emit_weights:
            worker._emit_weights()


class TrainingWorker(threading.Thread):
    """Runs one training session in its own thread.

    Create a fresh worker for every run; :meth:`terminate` is idempotent and
    safe to call from any thread.
    """

    def __init__(self, name: str = "trainscope-worker") -> None:
        super().__init__(name=name, daemon=True)
        self.inbox: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self.outbox: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._terminated = threading.Event()

        # Everything below is touched only from the worker thread.
        self._config: Optional[WorkerConfig] = None
        self._model: Optional[SequentialModel] = None
        self._full: Optional[DataSlice] = None
        self._train: Optional[DataSlice] = None
        self._val: Optional[DataSlice] = None
        self._progress = EpochProgress()
        self._callback = _LoopCallback(self)
        self._training = False
        self._paused = False
        self._stop_requested = False
        self._speed = 1.0
        self._pending_speed: Optional[float] = None
        self._total_batches = 0
        self._deferred: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Coordinator-side API
    # ------------------------------------------------------------------
    def post(self, command: Union[Command, Dict[str, Any]]) -> None:
        message = command.to_dict() if isinstance(command, Command) else dict(command)
        self.inbox.put(message)

    def terminate(self, timeout: float = 5.0) -> None:
        """Ask the worker to stop, then wait up to ``timeout`` seconds for it."""
        if self._terminated.is_set():
            return
        self._terminated.set()
        self.inbox.put(Command.stop().to_dict())
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)
            if self.is_alive():
                logger.warning("Worker %s did not exit within %.1fs", self.name, timeout)

    @property
    def terminated(self) -> bool:
        return self._terminated.is_set()

    # ------------------------------------------------------------------
    # Thread body
    # ------------------------------------------------------------------
    def run(self) -> None:
        logger.info("Worker %s started", self.name)
        try:
            while not self._terminated.is_set():
                message = self.inbox.get()
                self._dispatch(message)
                while self._deferred and not self._terminated.is_set():
                    self._dispatch(self._deferred.pop(0))
        finally:
            self._dispose_resources()
            logger.info("Worker %s exited", self.name)

    def _emit(self, response: Response) -> None:
        logger.debug("Worker -> %s", response.type)
        self.outbox.put(response.to_dict())

    def _dispatch(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        payload = message.get("payload") or {}
        logger.debug("Worker <- %s", kind)
        try:
            if kind == CommandType.CONFIG.value:
                self._install(payload)
            elif kind == CommandType.START.value:
                if payload:
                    self._install(payload)
                self._run_loop()
            elif kind == CommandType.PAUSE.value:
                logger.debug("Pause received while idle; nothing to pause")
            elif kind == CommandType.RESUME.value:
                self._handle_resume(payload)
            elif kind == CommandType.STOP.value:
                self._handle_stop()
            elif kind == CommandType.STEP.value:
                self._handle_step(str(payload.get("type") or "batch"))
            else:
                logger.warning("Ignoring unknown command %r", kind)
        except Exception as exc:
            logger.error("Worker command %s failed: %s", kind, exc)
            self._training = False
            self._emit(Response.error(str(exc), classify_error(exc).value))

    # ------------------------------------------------------------------
    # Resource management
    # ------------------------------------------------------------------
    def _install(self, payload: Dict[str, Any]) -> None:
        config = WorkerConfig.from_payload(payload)
        dataset = Dataset(xs=config.xs, ys=config.ys)
        self._dispose_resources()

        if config.seed is not None:
            set_seed(int(config.seed))
        device = resolve_device(config.device)
        full = DataSlice.from_rows(dataset.xs, dataset.ys, device=device)
        split_at = len(full)
        if config.validation_split > 0:
            split_at = split_index(len(full), config.validation_split)
        self._full = full
        self._train = full.slice(0, split_at)
        self._val = full.slice(split_at) if split_at < len(full) else None

        self._config = config
        self._speed = config.speed
        self._pending_speed = None
        self._progress = EpochProgress()
        self._total_batches = num_batches(len(self._train), config.training_config.batch_size)
        self._paused = False
        self._stop_requested = False
        logger.info(
            "Worker configured: %d training rows, %d validation rows, speed %s",
            len(self._train),
            len(self._val) if self._val is not None else 0,
            self._speed,
        )

    def _ensure_model(self) -> SequentialModel:
        if self._model is None:
            assert self._config is not None and self._train is not None
            self._model = build_compiled_model(
                self._config.model_config,
                self._config.training_config,
                self._train.xs.shape[1],
                output_units=self._config.output_units,
                device=self._train.xs.device,
            )
            logger.info("Model built with %d parameters", self._model.count_params())
            self._emit_predictions()
        return self._model

    def _dispose_resources(self) -> None:
        safe_dispose(self._model, "model")
        safe_dispose(self._train, "training data")
        safe_dispose(self._val, "validation data")
        safe_dispose(self._full, "dataset")
        self._model = None
        self._train = None
        self._val = None
        self._full = None

    # ------------------------------------------------------------------
    # Cooperative scheduling
    # ------------------------------------------------------------------
    def _handle_in_loop(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        payload = message.get("payload") or {}
        if kind == CommandType.PAUSE.value:
            self._paused = True
        elif kind == CommandType.STOP.value:
            self._stop_requested = True
        elif kind == CommandType.RESUME.value:
            if "speed" in payload:
                self._pending_speed = float(payload["speed"])
        else:
            # config/start/step wait until the loop returns
            self._deferred.append(message)

    def _yield_point(self, point: str, wait: float = 0.0) -> None:
        """Observe pending commands; raise if a pause or stop was requested.

        ``wait`` keeps the point open for that many seconds (the throttle).
        """
        deadline = time.monotonic() + wait
        while not (self._paused or self._stop_requested or self._terminated.is_set()):
            remaining = deadline - time.monotonic()
            try:
                if remaining > 0:
                    message = self.inbox.get(timeout=remaining)
                else:
                    message = self.inbox.get_nowait()
            except queue.Empty:
                break
            self._handle_in_loop(message)
        if self._stop_requested or self._terminated.is_set():
            raise TrainingInterrupted("stopped")
        if self._paused:
            raise TrainingInterrupted("paused")
        if wait <= 0:
            # let the coordinator thread run
            time.sleep(0)
        logger.debug("Yield point %s passed", point)

    def _apply_pending_speed(self) -> None:
        if self._pending_speed is not None:
            logger.info("Speed changed from %s to %s", self._speed, self._pending_speed)
            self._speed = self._pending_speed
            self._pending_speed = None

    # ------------------------------------------------------------------
    # Training loop
    # ------------------------------------------------------------------
    def _total_epochs(self) -> int:
        assert self._config is not None
        return self._config.training_config.epochs

    def _fit(self, *, max_batches: Optional[int] = None) -> None:
        assert self._config is not None and self._train is not None
        model = self._ensure_model()
        model.fit(
            self._train,
            batch_size=self._config.training_config.batch_size,
            epochs=1,
            validation_data=self._val,
            callbacks=self._callback,
            progress=self._progress,
            max_batches=max_batches,
        )

    def _finish_if_done(self) -> bool:
        if self._progress.epoch >= self._total_epochs():
            self._training = False
            self._emit(Response.complete(self._total_epochs() - 1))
            logger.info("Training complete after %d epochs", self._total_epochs())
            return True
        return False

    def _run_loop(self) -> None:
        if self._config is None or self._train is None:
            raise ConfigurationError("Training not configured")
        self._training = True
        self._paused = False
        try:
            self._ensure_model()
            while self._training and self._progress.epoch < self._total_epochs():
                self._apply_pending_speed()
                if self._speed == 0:
                    self._paused = True
                    self._emit(
                        Response.paused(
                            self._progress.epoch,
                            self._progress.next_batch,
                            PauseReason.MANUAL_MODE.value,
                        )
                    )
                    return
                if 0 < self._speed < 1 and self._progress.next_batch == 0:
                    self._yield_point("throttle", wait=1.0 - self._speed)
                self._fit()
                if self._progress.epoch < self._total_epochs():
                    self._yield_point("after_epoch")
            self._finish_if_done()
        except TrainingInterrupted as exc:
            self._on_interrupted(exc, PauseReason.USER)

    def _on_interrupted(self, exc: TrainingInterrupted, reason: PauseReason) -> None:
        if exc.reason == "stopped":
            self._handle_stop()
            return
        self._paused = True
        self._emit(Response.paused(self._progress.epoch, self._progress.next_batch, reason.value))
        logger.info(
            "Training paused at epoch %d batch %d", self._progress.epoch, self._progress.next_batch
        )

    def _handle_resume(self, payload: Dict[str, Any]) -> None:
        if "speed" in payload:
            self._pending_speed = float(payload["speed"])
        if payload.get("speedOnly"):
            return
        if not self._paused:
            logger.debug("Resume received while not paused; ignoring")
            return
        self._paused = False
        self._run_loop()

    def _handle_step(self, kind: str) -> None:
        if self._config is None or self._train is None:
            raise ConfigurationError("Training not configured")
        self._apply_pending_speed()
        if self._speed != 0:
            logger.warning("Step ignored: stepping requires manual speed (0), current speed %s", self._speed)
            return
        if self._progress.epoch >= self._total_epochs():
            self._finish_if_done()
            return
        self._training = True
        self._paused = False
        try:
            self._fit(max_batches=1 if kind == "batch" else None)
        except TrainingInterrupted as exc:
            self._on_interrupted(exc, PauseReason.USER)
            return
        if self._finish_if_done():
            return
        self._paused = True
        self._emit(Response.paused(self._progress.epoch, self._progress.next_batch, PauseReason.STEP.value))

    def _handle_stop(self) -> None:
        self._training = False
        self._paused = False
        self._stop_requested = False
        self._progress = EpochProgress()
        self._dispose_resources()
        self._config = None
        logger.info("Worker stopped and released its resources")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def _emit_predictions(self) -> None:
        """Predictions for every row of the dataset, in original order.

        When the forward pass fails nothing is sent: the coordinator keeps the
        last good set, and the failure is logged. Training itself continues.
        """
        if self._model is None or self._full is None:
            return
        try:
            outputs = self._model.predict(self._full.xs).reshape(len(self._full), -1).tolist()
            inputs = self._full.xs.tolist()
            actuals = self._full.ys.tolist()
        except Exception as exc:
            logger.warning("Could not compute predictions: %s", exc)
            return
        samples = [
            {
                "index": index,
                "prediction": _scalar_or_list(outputs[index]),
                "input": _scalar_or_list(inputs[index]),
                "actual": _scalar_or_list(actuals[index]),
            }
            for index in range(len(outputs))
        ]
        self._emit(Response.predictions(samples))

    def _emit_activations(self) -> None:
        """Per-layer outputs for the first training row.

        A layer that fails is reported as zeros so every layer stays present.
        """
        if self._model is None or self._train is None or len(self._train) == 0:
            return
        sample = self._train.xs[:1]
        snapshots = []
        for index, layer in enumerate(self._model.layers):
            view = None
            try:
                view = self._model.truncated(index)
                activations = view.predict(sample).reshape(-1).tolist()
            except Exception as exc:
                logger.warning("Activation extraction failed for layer %d: %s", index, exc)
                activations = [0.0] * int(math.prod(layer.output_shape or (1,)))
            finally:
                safe_dispose(view, f"layer view {index}")
            snapshots.append(
                {
                    "layerId": layer.layer_id,
                    "layerName": layer.name,
                    "activations": activations,
                    "gradients": [],
                }
            )
        self._emit(Response.activations(snapshots))

    def _emit_weights(self) -> None:
        if self._model is None:
            return
        entries = []
        for index, layer in enumerate(self._model.layers):
            try:
                tensors = layer.get_weights()
                weights = tensors[0].tolist() if tensors else []
                biases = tensors[1].tolist() if len(tensors) > 1 else None
            except Exception as exc:
                logger.warning("Weight extraction failed for layer %d: %s", index, exc)
                weights, biases = [], None
            entries.append({"layerId": layer.layer_id, "weights": weights, "biases": biases})
        self._emit(Response.weights(entries))
