"""eksecd: run coding-assistant sessions in leased git worktrees."""

__version__ = "0.1.0"

__all__ = ["__version__"]
