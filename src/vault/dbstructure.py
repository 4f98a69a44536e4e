"""Schema structure: definition, actual and backup table universes."""

import re
from pathlib import Path
from typing import Any, Optional

import structlog

from vault.database import DatabaseManager
from vault.dbtable import DbTable
from vault.exceptions import SchemaError
from vault.field_normalizer import ColumnNormalizer
from vault.introspector import SchemaIntrospector
from vault.sql_generator import SqlGenerator, get_generator
from vault.xmldb import parse_document, render_document
from utils import safe_identifier
from utils.logging import get_logger

STRUCTURE_FILENAME = "__structure__.xml"
SEQUENCES_FILENAME = "__sequences__.json"
METADATA_FILENAME = "__metadata__.json"


def find_install_xml(directory: Path) -> Optional[Path]:
    """Locate the install.xml of a component directory."""
    for candidate in (directory / "db" / "install.xml", directory / "install.xml"):
        if candidate.is_file():
            return candidate
    return None


class SchemaStructure:
    """Holds the three table universes and the database-level caches."""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        generator: Optional[SqlGenerator] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize structure.

        Args:
            db_manager: Database manager, required for anything touching the live database
            generator: SQL generator (derived from the database family when omitted)
            logger: Optional logger instance
        """
        self.db = db_manager
        if generator is None:
            family = db_manager.family if db_manager else "postgres"
            prefix = db_manager.prefix if db_manager else ""
            generator = get_generator(family, prefix)
        self.generator = generator
        self.logger = logger or get_logger("dbstructure")
        self.definitions: dict[str, DbTable] = {}
        self.actual: dict[str, DbTable] = {}
        self.backup: dict[str, DbTable] = {}
        self._primary_keys: Optional[dict[str, list[str]]] = None

    @classmethod
    async def load(
        cls,
        db_manager: DatabaseManager,
        schema_dirs: dict[str, str],
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "SchemaStructure":
        """Load definitions and introspect the live tables.

        Args:
            db_manager: Database manager
            schema_dirs: Component name to directory holding its install.xml
            logger: Optional logger instance

        Returns:
            Loaded structure
        """
        structure = cls(db_manager, logger=logger)
        structure.load_definitions(schema_dirs)
        await structure.load_actual_tables()
        return structure

    @classmethod
    async def load_from_backup(
        cls,
        db_manager: DatabaseManager,
        schema_dirs: dict[str, str],
        structure_path: Path,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> "SchemaStructure":
        """Load definitions, live tables and the structure stored in a backup."""
        structure = await cls.load(db_manager, schema_dirs, logger=logger)
        structure.load_definitions_from_backup_xml(structure_path)
        return structure

    def _tables_from_xml(self, content: str | bytes, component: str = "") -> list[DbTable]:
        tables = []
        for parts in parse_document(content):
            if component and not parts["component"]:
                parts["component"] = component
            tables.append(DbTable(generator=self.generator, logger=self.logger, **parts))
        return tables

    def load_definitions(self, schema_dirs: dict[str, str]) -> None:
        """Read the install.xml of every component into the definition universe.

        Comments are stripped from the definitions since they never take part in comparison.
        """
        for component, directory in sorted(schema_dirs.items()):
            path = find_install_xml(Path(directory))
            if path is None:
                self.logger.warning("Component has no install.xml", component=component, directory=directory)
                continue
            try:
                content = path.read_bytes()
            except OSError as e:
                raise SchemaError(f"Can not read {path}: {e}", context={"component": component}) from e
            for table in self._tables_from_xml(content, component):
                table.remove_all_comments()
                if table.name in self.definitions:
                    self.logger.warning("Duplicate table definition", table=table.name, component=component)
                self.definitions[table.name] = table

        self.logger.debug("Table definitions loaded", table_count=len(self.definitions))

    def load_definitions_from_backup_xml(self, path: Path) -> None:
        """Read a backup's __structure__.xml into the backup universe."""
        try:
            content = Path(path).read_bytes()
        except OSError as e:
            raise SchemaError(f"Can not read backup structure {path}: {e}") from e
        self.backup = {t.name: t for t in self._tables_from_xml(content)}
        self.logger.debug("Backup structure loaded", table_count=len(self.backup))

    def _require_db(self) -> DatabaseManager:
        if self.db is None:
            raise SchemaError("Operation requires a database connection")
        return self.db

    async def load_actual_tables(self) -> None:
        """Introspect every live table and align it with its definition."""
        db = self._require_db()
        introspector = SchemaIntrospector(db, ColumnNormalizer(self.generator, self.logger), self.logger)
        primary_keys = await self.retrieve_primary_keys_postgres()

        self.actual = {}
        for name in await db.get_tables():
            definition = self.definitions.get(name)
            table = await introspector.build_actual_table(name, definition, primary_keys)
            if definition is not None:
                table = table.compare_with_other_table(definition, autofix=True).table
            self.actual[name] = table

        self.logger.debug("Actual tables loaded", table_count=len(self.actual))

    async def retrieve_primary_keys_postgres(self) -> dict[str, list[str]]:
        """Primary keys of all tables, fetched once."""
        if self._primary_keys is None:
            db = self._require_db()
            normalizer = ColumnNormalizer(self.generator, self.logger)
            self._primary_keys = await SchemaIntrospector(db, normalizer, self.logger).fetch_primary_keys()
        return self._primary_keys

    def find_table_definition(self, name: str) -> Optional[DbTable]:
        return self.definitions.get(name.lower())

    def get_tables_definitions(self) -> dict[str, DbTable]:
        return self.definitions

    def get_tables_actual(self) -> dict[str, DbTable]:
        return self.actual

    def get_backup_tables(self) -> dict[str, DbTable]:
        return self.backup

    async def retrieve_sequences(self) -> dict[str, int]:
        """Next value of every table sequence.

        Returns:
            Table name (without prefix) to the value the sequence will hand out next
        """
        db = self._require_db()
        if db.family != "postgres":
            raise SchemaError("Sequences can only be read from PostgreSQL", context={"family": db.family})

        rows = await db.fetch(
            """
            SELECT table_name, column_default
            FROM information_schema.columns
            WHERE table_schema = $1
              AND table_name LIKE $2
              AND column_default LIKE 'nextval(%'
            """,
            db.config.schema_name,
            db.prefix.replace("_", "\\_") + "%",
        )

        sequences = {}
        for row in rows:
            match = re.search(r"nextval\('([^']+)'", row["column_default"])
            if not match:
                continue
            table = row["table_name"][len(db.prefix):].lower()
            try:
                seqname = safe_identifier(match.group(1))
            except ValueError:
                self.logger.warning("Skipping sequence with unexpected name", table=table, sequence=match.group(1))
                continue
            state = await db.fetchone(f"SELECT last_value, is_called FROM {seqname}")
            if state is None:
                continue
            value = int(state["last_value"])
            sequences[table] = value + 1 if state["is_called"] else value
        return sequences

    async def get_actual_tables_sizes(self) -> dict[str, int]:
        """Total on-disk size (bytes) of each live table including indexes."""
        db = self._require_db()
        if db.family != "postgres":
            raise SchemaError("Table sizes can only be read from PostgreSQL", context={"family": db.family})
        rows = await db.fetch(
            """
            SELECT c.relname AS table_name, pg_total_relation_size(c.oid) AS size
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1
              AND c.relkind = 'r'
              AND c.relname LIKE $2
            """,
            db.config.schema_name,
            db.prefix.replace("_", "\\_") + "%",
        )
        return {row["table_name"][len(db.prefix):].lower(): int(row["size"]) for row in rows}

    def output(self, only_tables: Optional[list[str]] = None, show_definitions: bool = False) -> str:
        """Render tables as an XMLDB document.

        Args:
            only_tables: Restrict output to these tables
            show_definitions: Render definitions instead of the actual tables

        Returns:
            XML text
        """
        universe = self.definitions if show_definitions else self.actual
        names = sorted(universe) if only_tables is None else [n for n in sorted(only_tables) if n in universe]
        return render_document([universe[name].output() for name in names])

    def describe(self) -> dict[str, Any]:
        return {
            "definitions": len(self.definitions),
            "actual": len(self.actual),
            "backup": len(self.backup),
        }
