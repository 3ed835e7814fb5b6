"""Health evaluation of the New path against the Legacy baseline."""

from migration_control_plane.health.evaluator import HealthEvaluator, HealthThresholds

__all__ = ["HealthEvaluator", "HealthThresholds"]
