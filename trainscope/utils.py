"""Helpers shared by the worker, the preview pathway and the entry points."""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path

try:
    import torch
except Exception:
    torch = None  # type: ignore

try:
    import numpy as np
except Exception:
    np = None  # type: ignore

from .types import MissingDependencyError


logger = logging.getLogger(__name__)


def require_torch():
    """Return the torch module or raise when it is not installed."""
    if torch is None:
        raise MissingDependencyError(
            "PyTorch is required for training. Install it with 'pip install torch'."
        )
    return torch


def set_seed(seed: int) -> None:
    """Seed python, numpy and torch generators for a reproducible run."""
    random.seed(seed)
    if np is not None:
        np.random.seed(seed)
    if torch is not None:
        torch.manual_seed(seed)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(seed)


def resolve_device(preferred: str) -> "torch.device":  # type: ignore[name-defined]
    """Map a device selector to a torch device; anything unusable becomes CPU."""
    require_torch()
    name = (preferred or "cpu").strip().lower()
    if name == "cpu":
        return torch.device("cpu")
    if not torch.cuda.is_available():
        logger.warning("Device %r requested but CUDA is not available; training on CPU", preferred)
        return torch.device("cpu")

    try:
        device = torch.device(name)
        torch.zeros(1, device=device)
    except Exception as exc:
        logger.warning("Device %r unusable (%s); training on CPU", preferred, exc)
        return torch.device("cpu")
    return device


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds."""
    return int(time.time() * 1000)


def unique_report_path(base_dir: Path, desired_name: str) -> Path:
    """Pick a ``.csv`` path under ``base_dir`` that does not exist yet.

    ``history.csv`` becomes ``history_1.csv``, ``history_2.csv`` ... when taken.
    """
    name = desired_name.strip() or "training_report.csv"
    candidate = base_dir / name
    if candidate.suffix.lower() != ".csv":
        candidate = candidate.with_suffix(".csv")

    stem, suffix = candidate.stem, candidate.suffix
    index = 0
    while candidate.exists():
        index += 1
        candidate = candidate.with_name(f"{stem}_{index}{suffix}")
    return candidate
