"""Task orchestration engine: dependency-ordered plans, checkpoints, and recovery."""

__version__ = "0.1.0"
