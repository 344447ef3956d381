"""Optimizer selectors for the training engine."""

from __future__ import annotations

import logging

try:
    import torch
except Exception:
    torch = None  # type: ignore

from .types import OPTIMIZERS, ConfigurationError
from .utils import require_torch


logger = logging.getLogger(__name__)


def _optimizer_classes():
    return {
        "sgd": torch.optim.SGD,
        "adam": torch.optim.Adam,
        "rmsprop": torch.optim.RMSprop,
        "adagrad": torch.optim.Adagrad,
    }


def build_optimizer(name: str, params, *, lr: float):
    """Instantiate the torch optimizer behind a studio selector.

    Only the selectors listed in ``OPTIMIZERS`` are accepted; learning rate is
    the single tunable the studio exposes.
    """
    require_torch()
    key = (name or "adam").strip().lower()
    if key not in OPTIMIZERS:
        raise ConfigurationError(f"Unsupported optimizer {name!r}; choose one of {', '.join(OPTIMIZERS)}")
    if lr <= 0:
        raise ConfigurationError(f"learning rate must be positive, got {lr}")
    logger.debug("Building %s optimizer (lr=%s)", key, lr)
    return _optimizer_classes()[key](params, lr=lr)
