"""Message contract between the training store and its worker.

Messages cross the channel as plain dicts (``{"type": ..., "payload": ...}``)
holding only JSON-serialisable values; nothing mutable is shared between the
coordinator and the worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .types import Dataset, ModelConfig, TrainingConfig


class CommandType(str, Enum):
    CONFIG = "config"
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    STEP = "step"


class ResponseType(str, Enum):
    PROGRESS = "progress"
    METRICS = "metrics"
    PREDICTIONS = "predictions"
    ACTIVATIONS = "activations"
    WEIGHTS = "weights"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"


class PauseReason(str, Enum):
    USER = "user"
    MANUAL_MODE = "manual_mode"
    STEP = "step"


STEP_KINDS = ("batch", "epoch")


@dataclass(frozen=True)
class Message:
    type: str
    payload: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.payload is not None:
            data["payload"] = self.payload
        return data


class Command(Message):
    """Coordinator to worker."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        kind = data.get("type")
        if kind not in {member.value for member in CommandType}:
            raise ValueError(f"Unknown command type {kind!r}")
        return cls(type=kind, payload=data.get("payload"))

    @classmethod
    def config(cls, payload: Dict[str, Any]) -> "Command":
        return cls(CommandType.CONFIG.value, payload)

    @classmethod
    def start(cls, payload: Optional[Dict[str, Any]] = None) -> "Command":
        return cls(CommandType.START.value, payload)

    @classmethod
    def pause(cls) -> "Command":
        return cls(CommandType.PAUSE.value)

    @classmethod
    def resume(cls, speed: Optional[float] = None, *, speed_only: bool = False) -> "Command":
        """Resume a paused loop; a ``speed_only`` resume just updates the speed."""
        payload: Optional[Dict[str, Any]] = None
        if speed is not None:
            payload = {"speed": float(speed)}
            if speed_only:
                payload["speedOnly"] = True
        return cls(CommandType.RESUME.value, payload)

    @classmethod
    def stop(cls) -> "Command":
        return cls(CommandType.STOP.value)

    @classmethod
    def step(cls, kind: str) -> "Command":
        if kind not in STEP_KINDS:
            raise ValueError(f"Step type must be one of {STEP_KINDS}, got {kind!r}")
        return cls(CommandType.STEP.value, {"type": kind})


class Response(Message):
    """Worker to coordinator."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Response":
        kind = data.get("type")
        if kind not in {member.value for member in ResponseType}:
            raise ValueError(f"Unknown response type {kind!r}")
        return cls(type=kind, payload=data.get("payload"))

    @classmethod
    def progress(cls, epoch: int, batch: int, metrics: Dict[str, float], total_batches: int) -> "Response":
        return cls(
            ResponseType.PROGRESS.value,
            {"epoch": epoch, "batch": batch, "metrics": dict(metrics), "totalBatches": total_batches},
        )

    @classmethod
    def metrics(cls, epoch: int, logs: Dict[str, float], timestamp: int) -> "Response":
        payload: Dict[str, Any] = {"epoch": epoch, "loss": logs.get("loss")}
        if "accuracy" in logs:
            payload["accuracy"] = logs["accuracy"]
        if "val_loss" in logs:
            payload["valLoss"] = logs["val_loss"]
        if "val_accuracy" in logs:
            payload["valAccuracy"] = logs["val_accuracy"]
        for key, value in logs.items():
            if key in {"loss", "accuracy", "val_loss", "val_accuracy"}:
                continue
            if key.startswith("val_"):
                payload["val" + key[4:].capitalize()] = value
            else:
                payload[key] = value
        payload["timestamp"] = timestamp
        return cls(ResponseType.METRICS.value, payload)

    @classmethod
    def predictions(cls, samples: List[Dict[str, Any]]) -> "Response":
        return cls(ResponseType.PREDICTIONS.value, samples)

    @classmethod
    def activations(cls, snapshots: List[Dict[str, Any]]) -> "Response":
        return cls(ResponseType.ACTIVATIONS.value, snapshots)

    @classmethod
    def weights(cls, entries: List[Dict[str, Any]]) -> "Response":
        return cls(ResponseType.WEIGHTS.value, entries)

    @classmethod
    def paused(cls, epoch: int, batch: int, reason: str) -> "Response":
        return cls(ResponseType.PAUSED.value, {"epoch": epoch, "batch": batch, "reason": reason})

    @classmethod
    def complete(cls, final_epoch: int) -> "Response":
        return cls(ResponseType.COMPLETE.value, {"finalEpoch": final_epoch})

    @classmethod
    def error(cls, message: str, error_type: str) -> "Response":
        return cls(ResponseType.ERROR.value, {"message": message, "errorType": error_type})


@dataclass
class WorkerConfig:
    """Everything a worker needs to run; built from a ``config``/``start`` payload."""

    model_config: ModelConfig
    xs: List[List[float]]
    ys: List[List[float]]
    training_config: TrainingConfig
    validation_split: float = 0.0
    speed: float = 1.0
    output_units: int = 1
    emit_activations: bool = False
    emit_weights: bool = False
    device: str = "cpu"
    seed: Optional[int] = None

    @classmethod
    def build(
        cls,
        model_config: ModelConfig,
        dataset: Dataset,
        training_config: TrainingConfig,
        *,
        speed: float,
        output_units: int,
        emit_activations: bool = False,
        emit_weights: bool = False,
        device: str = "cpu",
        seed: Optional[int] = None,
    ) -> "WorkerConfig":
        return cls(
            model_config=model_config,
            xs=[list(row) for row in dataset.xs],
            ys=[list(row) for row in dataset.ys],
            training_config=training_config,
            validation_split=training_config.validation_split,
            speed=float(speed),
            output_units=int(output_units),
            emit_activations=emit_activations,
            emit_weights=emit_weights,
            device=device,
            seed=seed,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "modelConfig": self.model_config.to_dict(),
            "dataConfig": {
                "xs": self.xs,
                "ys": self.ys,
                "validationSplit": self.validation_split,
            },
            "trainingConfig": self.training_config.to_wire(),
            "speed": self.speed,
            "outputUnits": self.output_units,
            "emitActivations": self.emit_activations,
            "emitWeights": self.emit_weights,
            "device": self.device,
            "seed": self.seed,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WorkerConfig":
        data = payload.get("dataConfig") or {}
        split = float(data.get("validationSplit") or 0.0)
        training = dict(payload.get("trainingConfig") or {})
        training.setdefault("validationSplit", split)
        ys = data.get("ys") or []
        return cls(
            model_config=ModelConfig.from_dict(payload.get("modelConfig") or {}),
            xs=list(data.get("xs") or []),
            ys=list(ys),
            training_config=TrainingConfig.from_hyperparameters(training),
            validation_split=split,
            speed=float(payload.get("speed", 1.0)),
            output_units=int(payload.get("outputUnits") or (len(ys[0]) if ys and isinstance(ys[0], list) else 1)),
            emit_activations=bool(payload.get("emitActivations", False)),
            emit_weights=bool(payload.get("emitWeights", False)),
            device=str(payload.get("device") or "cpu"),
            seed=payload.get("seed"),
        )
