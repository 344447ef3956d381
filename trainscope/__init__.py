"""TrainScope package.

This package provides:
- A background training worker with cooperative pause/resume/step/stop control
- A training store that owns the training state machine and its read model
- A shape validator and model builder for small feed-forward networks
- A YAML-backed configuration manager and a simple TUI for editing it
"""

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
