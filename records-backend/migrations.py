from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from sql_dialect import translate_column_definition


@dataclass(frozen=True)
class ColumnMigration:
    """An additive column change, written in SQLite dialect."""
    table: str
    column: str
    definition: str
    backfill: Optional[str] = None
    backfill_params: Tuple[Any, ...] = ()

    @property
    def name(self) -> str:
        return f"{self.table}.{self.column}"


MIGRATIONS: List[ColumnMigration] = [
    ColumnMigration("users", "name", "TEXT"),
    ColumnMigration(
        "users",
        "must_change_password",
        "BOOLEAN DEFAULT 1",
        # Existing administrators keep their current passwords
        backfill="UPDATE users SET must_change_password = ? WHERE role IN ('superadmin', 'admin')",
        backfill_params=(False,),
    ),
    ColumnMigration("users", "photo", "TEXT"),
    ColumnMigration("faculty", "position", "TEXT"),
    ColumnMigration("faculty", "specialization", "TEXT"),
    ColumnMigration("faculty", "photo", "TEXT"),
    ColumnMigration("grades", "remarks", "TEXT"),
]


def apply_migrations(manager, migrations: Optional[Sequence[ColumnMigration]] = None) -> List[str]:
    """
    Add every registered column that is still missing.

    Tables that do not exist yet are skipped. A failing migration is
    reported and the rest still run.

    Returns:
        Names (``table.column``) of the migrations that were applied
    """
    if manager.is_mongo():
        return []

    applied: List[str] = []
    for migration in MIGRATIONS if migrations is None else migrations:
        try:
            if not manager.table_exists(migration.table):
                continue
            if manager.column_exists(migration.table, migration.column):
                continue

            print(f"🔄 Applying migration: Adding {migration.column} to {manager.backend_name} {migration.table} table...")
            definition = migration.definition
            if manager.is_postgres():
                definition = translate_column_definition(definition)

            manager.run(f"ALTER TABLE {migration.table} ADD COLUMN {migration.column} {definition}")
            if migration.backfill:
                manager.run(migration.backfill, migration.backfill_params)

            applied.append(migration.name)
            print(f"✅ Migration {migration.name} applied successfully")
        except manager.errors as e:
            print(f"⚠️ Migration warning ({migration.name}): {e}")

    return applied
