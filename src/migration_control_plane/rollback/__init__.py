"""Automatic and manual rollback of New-path traffic."""

from migration_control_plane.rollback.controller import MigrationPhase, RollbackController

__all__ = ["MigrationPhase", "RollbackController"]
