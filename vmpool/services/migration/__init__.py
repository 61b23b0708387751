"""Migration workflow."""

from vmpool.services.migration.workflow import MigrationWorkflow, migration_limit

__all__ = ["MigrationWorkflow", "migration_limit"]
