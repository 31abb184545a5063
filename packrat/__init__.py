"""Snapshot-based backup of dotfiles, shell history and configuration: config, snapshots, diffs, state and the backup engine."""

__version__ = "0.1.0"

__all__ = ["config", "defaults", "snapshot", "differ", "progress", "state", "engine"]