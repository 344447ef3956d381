"""Text-based user interface (TUI) for configuring TrainScope.

This TUI lets users review and edit the configuration and saves it to disk.
It relies on the ConfigManager to handle reading/writing YAML and device detection.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import questionary

from .config import ConfigManager, StudioConfig
from .losses import LOSS_ALIASES
from .models import count_parameters, estimate_memory_bytes
from .types import LAYER_KINDS, OPTIMIZERS, LayerSpec


ACTIVATIONS = ["relu", "sigmoid", "tanh", "softmax", "linear", "elu", "leaky_relu", "selu", "softplus"]


def _as_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _as_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _safe_positive_int(value: Optional[str], default: int) -> int:
    parsed = _as_int(value, default)
    return parsed if parsed > 0 else default


def _ask_device(current: str, devices: List[str]) -> str:
    """Prompt the user to select a device from detected devices or current value."""
    # Ensure current device is selectable even if not detected
    if current not in devices:
        devices = devices + [current]
    return questionary.select("Choose device:", choices=devices, default=current).ask() or current


def _ask_optimizer(current: str) -> str:
    options = list(OPTIMIZERS)
    choice = questionary.select(
        "Optimizer:",
        choices=options,
        default=current if current in options else "adam",
    ).ask()
    return choice or current


def _ask_hyperparameters(hp: Dict[str, Any]) -> Dict[str, Any]:
    """Prompt the user for the run hyperparameters with safe type conversion."""
    epochs = questionary.text("epochs:", default=str(hp.get("epochs", 100))).ask()
    batch_size = questionary.text("batch_size:", default=str(hp.get("batch_size", 32))).ask()
    lr = questionary.text("learning rate:", default=str(hp.get("learning_rate", 1e-3))).ask()
    val_split = questionary.text(
        "validation split (0-1):",
        default=str(hp.get("validation_split", 0.2)),
    ).ask()
    optimizer = _ask_optimizer(str(hp.get("optimizer", "adam")))

    split = _as_float(val_split, hp.get("validation_split", 0.2))
    if not 0.0 <= split < 1.0:
        print(f"[warn] validation split {split} out of range; keeping {hp.get('validation_split', 0.2)}")
        split = hp.get("validation_split", 0.2)
    learning_rate = _as_float(lr, hp.get("learning_rate", 1e-3))
    if learning_rate <= 0:
        learning_rate = hp.get("learning_rate", 1e-3)

    return {
        "epochs": _safe_positive_int(epochs, hp.get("epochs", 100)),
        "batch_size": _safe_positive_int(batch_size, hp.get("batch_size", 32)),
        "learning_rate": learning_rate,
        "optimizer": optimizer,
        "validation_split": split,
    }


def _ask_speed(current: float) -> float:
    choice = questionary.select(
        "Playback speed:",
        choices=[
            questionary.Choice(title="Manual (step by step)", value="0"),
            questionary.Choice(title="Slow (0.25)", value="0.25"),
            questionary.Choice(title="Half (0.5)", value="0.5"),
            questionary.Choice(title="Real time (1)", value="1"),
            questionary.Choice(title="Fast (2)", value="2"),
            questionary.Choice(title="Other...", value="__other__"),
        ],
        default="1",
    ).ask()
    if choice is None:
        return current
    if choice == "__other__":
        choice = questionary.text("Speed (>= 0):", default=str(current)).ask()
    speed = _as_float(choice, current)
    return speed if speed >= 0 else current


def _ask_seed(current: int) -> int:
    seed = questionary.text("Random seed:", default=str(current)).ask()
    return _as_int(seed, current)


def _ask_problem_type(current: str) -> str:
    options = ["auto", "regression", "classification"]
    choice = questionary.select(
        "Problem type:",
        choices=options,
        default=current if current in options else "auto",
    ).ask()
    return choice or current


def _ask_loss(current: str) -> str:
    options = ["auto"] + sorted(set(LOSS_ALIASES.values()))
    choice = questionary.select(
        "Loss function:",
        choices=options,
        default=current if current in options else "auto",
    ).ask()
    return choice or current


def _ask_layer(layer: Optional[Dict[str, Any]], index: int) -> Dict[str, Any]:
    """Prompt for one layer, starting from ``layer`` when editing."""
    layer = dict(layer or {"type": "dense", "units": 16, "activation": "relu"})
    kind = questionary.select(
        f"Layer {index + 1} type:",
        choices=list(LAYER_KINDS),
        default=layer.get("type", "dense") if layer.get("type") in LAYER_KINDS else "dense",
    ).ask() or layer.get("type", "dense")

    updated: Dict[str, Any] = {"type": kind, "id": layer.get("id") or f"layer-{index + 1}"}
    if kind == "dense":
        units = questionary.text("units:", default=str(layer.get("units") or 16)).ask()
        updated["units"] = _safe_positive_int(units, layer.get("units") or 16)
    elif kind in {"conv1d", "conv2d"}:
        filters = questionary.text("filters:", default=str(layer.get("filters") or 8)).ask()
        kernel = questionary.text("kernel size:", default=str(layer.get("kernelSize") or 3)).ask()
        updated["filters"] = _safe_positive_int(filters, layer.get("filters") or 8)
        updated["kernelSize"] = _safe_positive_int(kernel, layer.get("kernelSize") or 3)
    if kind != "flatten":
        current = layer.get("activation") or "relu"
        activation = questionary.select(
            "activation:",
            choices=ACTIVATIONS,
            default=current if current in ACTIVATIONS else "relu",
        ).ask()
        updated["activation"] = activation or current
    return updated


def _print_layers(layers: List[Dict[str, Any]], input_width: int) -> None:
    specs = [LayerSpec.from_dict(layer) for layer in layers]
    for idx, spec in enumerate(specs):
        size = spec.units if spec.kind == "dense" else spec.filters
        detail = f"{size}" if size is not None else "-"
        print(f"  {idx + 1}. {spec.kind:<8} {detail:>5}  {spec.activation}")
    params = count_parameters(specs, input_width)
    print(
        f"  total parameters: {params:,} "
        f"(~{estimate_memory_bytes(specs, input_width) / 1024:.1f} KiB, {input_width} input features)"
    )


def edit_layers(layers: List[Dict[str, Any]], input_width: int = 1) -> List[Dict[str, Any]]:
    """Interactive layer list editor; returns the edited copy."""
    layers = [dict(layer) for layer in layers]
    while True:
        print("\nLayers:")
        _print_layers(layers, input_width)
        action = questionary.select(
            "Layer editor:",
            choices=["Add layer", "Edit layer", "Remove layer", "Done"],
            default="Done",
        ).ask()
        if action in (None, "Done"):
            return layers
        if action == "Add layer":
            position = _as_int(
                questionary.text("Insert at position:", default=str(len(layers) + 1)).ask(),
                len(layers) + 1,
            )
            position = min(max(position, 1), len(layers) + 1) - 1
            layers.insert(position, _ask_layer(None, len(layers)))
            continue
        if not layers:
            print("[warn] No layers to change.")
            continue
        choice = questionary.select(
            "Which layer?",
            choices=[
                questionary.Choice(title=f"{idx + 1}: {layer.get('type')}", value=idx)
                for idx, layer in enumerate(layers)
            ],
        ).ask()
        if choice is None:
            continue
        if action == "Edit layer":
            layers[choice] = _ask_layer(layers[choice], choice)
        else:
            layers.pop(choice)


def run_config_tui(config_path: Optional[str] = None, input_width: int = 1) -> StudioConfig:
    """Run the interactive configuration flow and persist the result.

    Returns the updated configuration (as a dataclass instance).
    """
    cm = ConfigManager(config_path)
    cfg = cm.load()

    # Present current configuration for quick review
    print("\nCurrent config:")
    print(f"- problem_type: {cfg.problem_type}")
    print(f"- loss: {cfg.loss}")
    print(f"- metrics: {cfg.metrics or 'auto'}")
    print(f"- device: {cfg.device}")
    print(f"- seed: {cfg.seed}")
    print(f"- speed: {cfg.speed}")
    print(f"- report_filename: {cfg.report_filename}")
    print(f"- hyperparameters: {cfg.hyperparameters}")
    print("- layers:")
    _print_layers(cfg.layers, input_width)

    action = questionary.select(
        "What would you like to do?",
        choices=["Edit and Save", "Keep and Exit"],
        default="Edit and Save",
    ).ask()

    if action != "Edit and Save":
        return cfg

    new_layers = edit_layers(cfg.layers, input_width)
    new_problem = _ask_problem_type(cfg.problem_type)
    new_loss = _ask_loss(cfg.loss)
    new_hp = _ask_hyperparameters(cfg.hyperparameters)
    new_speed = _ask_speed(cfg.speed)
    new_device = _ask_device(cfg.device, cm.available_devices)
    new_seed = _ask_seed(cfg.seed)
    report_name = questionary.text(
        "Metric report file name:",
        default=cfg.report_filename,
    ).ask()

    cm.set(
        layers=new_layers,
        problem_type=new_problem,
        loss=new_loss,
        device=new_device,
        seed=new_seed,
        speed=new_speed,
        report_filename=(report_name or cfg.report_filename).strip() or cfg.report_filename,
        hyperparameters=new_hp,
    )
    cm.save()
    print("\nConfig saved.")
    return cm.config
