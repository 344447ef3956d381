"""Architecture preview outside the training worker.

:class:`ModelPreview` builds its own model from a layer list so the UI can
show per-layer activations and weights before (or without) training. The
preview owns that model exclusively and releases it independently of any
worker; releasing twice is tolerated.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

try:
    import torch
except Exception:
    torch = None  # type: ignore

from .engine import SequentialModel, safe_dispose
from .models import build_model
from .types import LayerActivationSnapshot, LayerSpec
from .utils import require_torch, resolve_device


logger = logging.getLogger(__name__)


class ModelPreview:
    """Untrained model built from ``layers`` for visual inspection.

    Example:
        with ModelPreview(layers, input_width=3) as preview:
            for snap in preview.activations():
                print(snap.layer_name, snap.activations[:4])
    """

    def __init__(
        self,
        layers: Sequence[LayerSpec],
        input_width: int,
        *,
        output_units: int = 1,
        device: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.layers = list(layers)
        self.input_width = int(input_width)
        self.output_units = int(output_units)
        self.device = device
        self.seed = seed
        self._model: Optional[SequentialModel] = None

    def __enter__(self) -> "ModelPreview":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    @property
    def model(self) -> SequentialModel:
        if self._model is None:
            require_torch()
            if self.seed is not None:
                torch.manual_seed(int(self.seed))
            self._model = build_model(
                self.layers,
                self.input_width,
                output_units=self.output_units,
                device=resolve_device(self.device) if self.device else None,
            )
            logger.info("Preview model built with %d layers", len(self._model.layers))
        return self._model

    def sample_input(self, rows: int = 1) -> "torch.Tensor":
        """Random uniform rows in [-1, 1) on the model's device."""
        require_torch()
        generator = None
        if self.seed is not None:
            generator = torch.Generator().manual_seed(int(self.seed))
        sample = torch.rand(rows, self.input_width, generator=generator) * 2.0 - 1.0
        return sample.to(self.model.device)

    def summary(self) -> List[Dict[str, Any]]:
        return self.model.summary()

    def activations(self, sample: Optional[Sequence[Sequence[float]]] = None) -> List[LayerActivationSnapshot]:
        """Per-layer outputs for one input row.

        Layers whose output cannot be computed are reported as zeros shaped
        like their declared output, so every layer is present in the result.
        """
        model = self.model
        if sample is None:
            inputs = self.sample_input(1)
        else:
            inputs = torch.tensor([list(row) for row in sample], dtype=torch.float32, device=model.device)
        snapshots: List[LayerActivationSnapshot] = []
        for index, layer in enumerate(model.layers):
            view = None
            try:
                view = model.truncated(index)
                values = view.predict(inputs[:1]).reshape(-1).tolist()
            except Exception as exc:
                logger.warning("Could not get activations for layer %d: %s", index, exc)
                values = [0.0] * int(math.prod(layer.output_shape or (1,)))
            finally:
                safe_dispose(view, f"layer view {index}")
            snapshots.append(
                LayerActivationSnapshot(
                    layer_id=layer.layer_id,
                    layer_name=layer.name,
                    activations=values,
                )
            )
        return snapshots

    def weights(self) -> List[Dict[str, Any]]:
        entries = []
        for index, layer in enumerate(self.model.layers):
            try:
                tensors = layer.get_weights()
            except Exception as exc:
                logger.warning("Failed to extract weights for layer %d: %s", index, exc)
                tensors = []
            entries.append(
                {
                    "layerId": layer.layer_id,
                    "weights": tensors[0].tolist() if tensors else [],
                    "biases": tensors[1].tolist() if len(tensors) > 1 else None,
                }
            )
        return entries

    def dispose(self) -> None:
        """Release the preview model; safe to call more than once."""
        model, self._model = self._model, None
        safe_dispose(model, "preview model")
