"""Durable studio settings stored as YAML.

The file lives at ``$XDG_CONFIG_HOME/trainscope/config.yaml`` (``~/.config``
when the variable is unset). Loading never discards new defaults: keys found
in the file override the defaults one level deep, and the ``hyperparameters``
mapping is merged key by key so older files keep working after new settings
are introduced.

Only settings a user expects to survive a restart are stored here. Live run
state (worker handle, metric history, predictions, activations, last error)
belongs to :class:`trainscope.store.TrainingStore` and is never written.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, asdict, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .types import LayerSpec, ModelConfig, TrainingConfig


def _default_config_path() -> str:
    root = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(root, "trainscope", "config.yaml")


def _detect_devices() -> List[str]:
    """CPU first, then one ``cuda:N`` entry per visible GPU."""
    found = ["cpu"]
    try:
        import torch

        if torch.cuda.is_available():
            found.extend(f"cuda:{index}" for index in range(torch.cuda.device_count()))
    except Exception:
        # no torch or a broken CUDA install: CPU only
        return ["cpu"]
    return found


def default_layers() -> List[Dict[str, Any]]:
    return [
        {"type": "dense", "units": 128, "activation": "relu", "id": "layer-1"},
        {"type": "dense", "units": 64, "activation": "relu", "id": "layer-2"},
        {"type": "dense", "units": 1, "activation": "linear", "id": "layer-3"},
    ]


def default_hyperparameters() -> Dict[str, Any]:
    return asdict(TrainingConfig())


@dataclass
class StudioConfig:
    """Settings restored when the studio starts.

    ``speed`` follows the playback convention: 0 is manual stepping, values
    below 1 throttle, 1 is real time and anything above runs accelerated.
    ``loss`` may be ``"auto"`` and ``metrics`` may be empty; both are then
    chosen from the problem type when a run starts.
    """

    layers: List[Dict[str, Any]] = field(default_factory=default_layers)
    problem_type: str = "auto"
    loss: str = "auto"
    metrics: List[str] = field(default_factory=list)
    device: str = "cpu"
    seed: int = 42
    speed: float = 1.0
    report_filename: str = "training_report.csv"
    hyperparameters: Dict[str, Any] = field(default_factory=default_hyperparameters)

    def training_config(self) -> TrainingConfig:
        return TrainingConfig.from_hyperparameters(self.hyperparameters)

    def model_config(self, loss: Optional[str] = None, metrics: Optional[List[str]] = None) -> ModelConfig:
        """Layer list plus loss/metric selectors; "auto" is left for the store to resolve."""
        return ModelConfig(
            layers=[LayerSpec.from_dict(layer) for layer in self.layers],
            loss=loss or self.loss,
            metrics=list(self.metrics if metrics is None else metrics),
        )


_FIELD_NAMES = frozenset(item.name for item in fields(StudioConfig))


class ConfigManager:
    """Owns one :class:`StudioConfig` and its YAML file.

    Example:
        cm = ConfigManager()
        cm.load()
        cm.set(speed=0.5, hyperparameters={"epochs": 20})
        cm.save()
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or _default_config_path()
        self._config = StudioConfig()

    @property
    def available_devices(self) -> List[str]:
        return _detect_devices()

    @property
    def config(self) -> StudioConfig:
        return self._config

    def load(self) -> StudioConfig:
        """Read the YAML file over the defaults; a missing file keeps the defaults.

        Keys the current version does not know are dropped.
        """
        if not os.path.isfile(self.path):
            return self._config

        with open(self.path, "r", encoding="utf-8") as handle:
            stored = yaml.safe_load(handle) or {}

        values = asdict(StudioConfig())
        values.update({key: value for key, value in stored.items() if key in _FIELD_NAMES})
        values["hyperparameters"] = {**default_hyperparameters(), **(stored.get("hyperparameters") or {})}
        if not values.get("layers"):
            values["layers"] = default_layers()

        self._config = StudioConfig(**values)
        return self._config

    def save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as handle:
            yaml.safe_dump(asdict(self._config), handle, sort_keys=False)

    def set(
        self,
        *,
        layers: Optional[List[Dict[str, Any]]] = None,
        problem_type: Optional[str] = None,
        loss: Optional[str] = None,
        metrics: Optional[List[str]] = None,
        device: Optional[str] = None,
        seed: Optional[int] = None,
        speed: Optional[float] = None,
        report_filename: Optional[str] = None,
        hyperparameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Change the given settings in memory; ``None`` means leave as is.

        ``hyperparameters`` is merged into the current mapping rather than
        replacing it. Call :meth:`save` to write the result.
        """
        config = self._config
        if speed is not None:
            if float(speed) < 0:
                raise ValueError(f"speed must be >= 0, got {speed}")
            config.speed = float(speed)
        if layers is not None:
            config.layers = [dict(layer) for layer in layers]
        if metrics is not None:
            config.metrics = list(metrics)
        if seed is not None:
            config.seed = int(seed)
        if hyperparameters is not None:
            config.hyperparameters.update(hyperparameters)

        for name, value in (
            ("problem_type", problem_type),
            ("loss", loss),
            ("device", device),
            ("report_filename", report_filename),
        ):
            if value is not None:
                setattr(config, name, value)
