"""TrainScope entrypoint with training menu."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

import questionary
from tqdm import tqdm

from trainscope.config import ConfigManager, StudioConfig
from trainscope.data import sample_dataset
from trainscope.monitor import ModelPreview
from trainscope.reporting import write_metrics_csv
from trainscope.shape_validator import expected_output_size
from trainscope.store import TrainingSnapshot, TrainingStore
from trainscope.tui import run_config_tui
from trainscope.types import (
    ConfigurationError,
    ErrorType,
    MissingDependencyError,
    ShapeValidationError,
    ShapeValidationResult,
    TrainingState,
)
from trainscope.utils import unique_report_path


def _print_issues(result: ShapeValidationResult) -> None:
    if result.is_valid:
        print("\n[info] Architecture matches the data.")
        return
    print("\n[warn] Shape issues found:")
    for issue in result.issues:
        print(f"- {issue.layer_name}: {issue.message}")
    if result.suggestions:
        print("Suggested fixes:")
        for fix in result.suggestions:
            print(f"- {fix.description}")


def _persist_layers(cm: ConfigManager, store: TrainingStore) -> None:
    state = store.persisted_state()
    cm.set(layers=state.get("layers"))
    cm.save()
    print("[info] Configuration updated with the fixed layers.")


def _make_store(cm: ConfigManager) -> TrainingStore:
    config = cm.load()
    store = TrainingStore.restore(config)
    store.set_dataset(sample_dataset(config.problem_type, seed=config.seed))
    return store


def _start(cm: ConfigManager, store: TrainingStore) -> bool:
    """Start a run, offering fixes when the architecture does not fit the data."""
    try:
        store.start()
        return True
    except ShapeValidationError as exc:
        _print_issues(exc.result)
        choice = questionary.select(
            "How do you want to continue?",
            choices=["Apply suggested fixes and start", "Start anyway", "Cancel"],
            default="Apply suggested fixes and start",
        ).ask()
        if choice == "Apply suggested fixes and start":
            store.apply_shape_fixes(exc.result.suggestions)
            _persist_layers(cm, store)
            store.start(force=True)
            return True
        if choice == "Start anyway":
            store.start(force=True)
            return True
        return False


def _on_paused(store: TrainingStore, snap: TrainingSnapshot) -> bool:
    """Ask what to do while paused; returns False when the user stops the run."""
    choices = ["Resume", "Stop"]
    if snap.speed == 0:
        choices = ["Step batch", "Step epoch", "Resume at speed 1", "Stop"]
    action = questionary.select(
        f"Paused at epoch {snap.current_epoch + 1}/{snap.total_epochs}, "
        f"{snap.current_batch}/{snap.total_batches} batches done ({snap.pause_reason}):",
        choices=choices,
    ).ask()
    if action == "Step batch":
        store.step("batch")
    elif action == "Step epoch":
        store.step("epoch")
    elif action == "Resume at speed 1":
        store.resume(speed=1.0)
    elif action == "Resume":
        store.resume()
    else:
        store.stop()
        return False
    return True


def _watch(store: TrainingStore) -> TrainingSnapshot:
    """Stream the run until it settles. Ctrl+C pauses."""
    snap = store.snapshot()
    with tqdm(total=snap.total_epochs, unit="epoch", desc="training") as bar:
        while True:
            try:
                store.pump(timeout=0.1)
            except KeyboardInterrupt:
                if store.state is TrainingState.TRAINING:
                    store.pause()
                continue
            snap = store.snapshot()
            if len(snap.metrics) != bar.n:
                bar.update(len(snap.metrics) - bar.n)
            if snap.metrics:
                last = snap.metrics[-1]
                postfix = {"loss": f"{last.loss:.4f}"}
                if last.val_loss is not None:
                    postfix["val_loss"] = f"{last.val_loss:.4f}"
                if last.accuracy is not None:
                    postfix["acc"] = f"{last.accuracy:.3f}"
                bar.set_postfix(postfix)
            if snap.state is TrainingState.PAUSED:
                bar.clear()
                if not _on_paused(store, snap):
                    return store.snapshot()
                continue
            if snap.state in (TrainingState.COMPLETED, TrainingState.IDLE, TrainingState.ERROR):
                return snap


def _start_training(cm: ConfigManager) -> None:
    """Kick off a training run and display summary output."""

    try:
        store = _make_store(cm)
    except MissingDependencyError as exc:
        print(f"\n[error] {exc}\n")
        return

    config = cm.config
    started_at = time.monotonic()
    try:
        if not _start(cm, store):
            store.close()
            return
        snap = _watch(store)
    except (ConfigurationError, MissingDependencyError) as exc:
        print(f"\n[error] {exc}\n")
        store.close()
        return

    if snap.last_error:
        print(f"\n[error] Training failed: {snap.last_error}\n")
        if snap.error_type is ErrorType.SHAPE_MISMATCH:
            fix = store.propose_auto_fix()
            if fix is not None and questionary.confirm(f"{fix.description}?", default=True).ask():
                store.apply_auto_fix(fix)
                _persist_layers(cm, store)
        store.close()
        return

    if snap.state is TrainingState.COMPLETED:
        report_path = unique_report_path(Path.cwd() / "outputs", config.report_filename)
        write_metrics_csv(
            report_path,
            snap.metrics,
            config=snap.training_config,
            model_config=store.model_config,
            device=config.device,
            seed=config.seed,
            duration_seconds=time.monotonic() - started_at,
        )
        last = snap.metrics[-1] if snap.metrics else None
        print("\nTraining summary:")
        print(f"- epochs: {snap.current_epoch + 1}")
        if last is not None:
            print(f"- final loss: {last.loss:.6f}")
            if last.val_loss is not None:
                print(f"- final val loss: {last.val_loss:.6f}")
            if last.accuracy is not None:
                print(f"- final accuracy: {last.accuracy:.4f}")
        print(f"- report: {report_path}")
    else:
        print("\n[info] Training stopped.")
    store.close()


def _validate_architecture(cm: ConfigManager) -> None:
    store = _make_store(cm)
    try:
        result = store.validate_architecture()
        _print_issues(result)
        if result.suggestions and questionary.confirm("Apply all suggested fixes?", default=False).ask():
            store.apply_shape_fixes(result.suggestions)
            _persist_layers(cm, store)
    finally:
        store.close()


def _preview_architecture(config: StudioConfig) -> None:
    dataset = sample_dataset(config.problem_type, seed=config.seed)
    model_config = config.model_config()
    try:
        with ModelPreview(
            model_config.layers,
            dataset.input_width,
            output_units=expected_output_size(dataset),
            device=config.device,
            seed=config.seed,
        ) as preview:
            print("\nModel summary:")
            for row in preview.summary():
                print(
                    f"- {row['name']}: {row['kind']} -> {row['output_shape']} "
                    f"({row['activation']}, {row['params']} params)"
                )
            print("\nActivations for a random input:")
            for snap in preview.activations():
                values = ", ".join(f"{v:.3f}" for v in snap.activations[:8])
                more = " ..." if len(snap.activations) > 8 else ""
                print(f"- {snap.layer_name}: [{values}{more}]")
    except MissingDependencyError as exc:
        print(f"\n[error] {exc}\n")


def _show_devices(cm: ConfigManager) -> None:
    """Print available CPU/GPU devices."""

    print("\nDevice inventory:")
    cpu_count = os.cpu_count()
    print(f"- CPU threads: {cpu_count if cpu_count is not None else 'unknown'}")
    for device in cm.available_devices:
        print(f"- {device}")


def main(config_path: Optional[str] = None) -> None:
    """Interactive menu for configuring and watching TrainScope runs."""

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    cm = ConfigManager(config_path)
    cm.load()

    while True:
        choice = questionary.select(
            "Select an action:",
            choices=[
                "Start training",
                "Configure settings",
                "Validate architecture",
                "Preview architecture",
                "Inspect devices",
                "Show current config",
                "Exit",
            ],
            default="Start training",
        ).ask()

        if choice == "Configure settings":
            run_config_tui(cm.path)
            cm.load()  # refresh in-memory config after edits
        elif choice == "Start training":
            _start_training(cm)
        elif choice == "Validate architecture":
            _validate_architecture(cm)
        elif choice == "Preview architecture":
            _preview_architecture(cm.load())
        elif choice == "Inspect devices":
            _show_devices(cm)
        elif choice == "Show current config":
            cfg = cm.load()
            print("\nCurrent configuration:")
            print(cfg)
        elif choice == "Exit" or choice is None:
            print("Goodbye!")
            break


if __name__ == "__main__":
    main()
