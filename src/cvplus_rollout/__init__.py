"""Progressive rollout controller for the CVPlus package migration."""

__version__ = "1.0.0"
