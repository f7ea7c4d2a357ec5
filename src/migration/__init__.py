from .migrate import MigrationPlan, StateMigration

__all__ = ["MigrationPlan", "StateMigration"]
