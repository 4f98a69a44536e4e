"""Table model: alignment of an actual table against its definition, and DDL derived from the diff."""

import copy
from dataclasses import dataclass
from typing import Any, Optional, Union

from structlog import BoundLogger

from vault.exceptions import SchemaError
from vault.field_normalizer import normalize_comparison_sql
from vault.sql_generator import SqlGenerator, get_generator
from vault.xmldb import (
    Field,
    Index,
    Key,
    KeyType,
    equivalence_signature,
    parse_table_element,
    render_table,
    validate_field,
)
from utils.logging import get_logger

DIFF_EXTRATABLES = "extratables"
DIFF_MISSINGTABLES = "missingtables"
DIFF_CHANGEDTABLES = "changedtables"
DIFF_INVALIDTABLES = "invalidtables"
DIFF_EXTRACOLUMNS = "extracolumns"
DIFF_MISSINGCOLUMNS = "missingcolumns"
DIFF_CHANGEDCOLUMNS = "changedcolumns"
DIFF_EXTRAINDEXES = "extraindexes"
DIFF_MISSINGINDEXES = "missingindexes"

TABLE_DIFF_KEYS = (
    DIFF_EXTRATABLES,
    DIFF_EXTRACOLUMNS,
    DIFF_MISSINGCOLUMNS,
    DIFF_CHANGEDCOLUMNS,
    DIFF_EXTRAINDEXES,
    DIFF_MISSINGINDEXES,
)

# Only these categories can be fixed by adding to the existing table.
ADDITIVE_DIFF_KEYS = frozenset({DIFF_EXTRACOLUMNS, DIFF_EXTRAINDEXES})

KeyOrIndex = Union[Key, Index]
TableDiff = dict[str, list[Any]]


@dataclass
class TableAlignment:
    """Result of aligning a table against a reference table.

    Attributes:
        table: Aligned copy of the compared table (fields, keys and indexes in reference order
            when autofix was requested, otherwise an unchanged copy)
        diff: Sparse map of difference category to the differing objects
    """

    table: "DbTable"
    diff: TableDiff

    def is_clean(self) -> bool:
        return not self.diff


class DbTable:
    """One table: ordered fields, keys and indexes."""

    def __init__(
        self,
        name: str,
        fields: Optional[list[Field]] = None,
        keys: Optional[list[Key]] = None,
        indexes: Optional[list[Index]] = None,
        component: str = "",
        comment: Optional[str] = None,
        generator: Optional[SqlGenerator] = None,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize table.

        Args:
            name: Table name without prefix
            fields: Ordered fields
            keys: Ordered keys
            indexes: Ordered indexes
            component: Component the table belongs to
            comment: Table comment
            generator: SQL generator for the site database family
            logger: Optional logger instance
        """
        self.name = name.lower()
        self.fields: list[Field] = list(fields or [])
        self.keys: list[Key] = list(keys or [])
        self.indexes: list[Index] = list(indexes or [])
        self.component = component
        self.comment = comment
        self.generator = generator or get_generator("postgres")
        self.logger = logger or get_logger("dbtable")

    @classmethod
    def from_element(
        cls,
        element: Any,
        generator: Optional[SqlGenerator] = None,
        logger: Optional[BoundLogger] = None,
    ) -> "DbTable":
        """Build a table from a parsed <TABLE> element."""
        parts = parse_table_element(element)
        return cls(generator=generator, logger=logger, **parts)

    def copy(self) -> "DbTable":
        """Copy of the table; fields, keys and indexes are copied too."""
        return DbTable(
            self.name,
            fields=[copy.copy(f) for f in self.fields],
            keys=[copy.deepcopy(k) for k in self.keys],
            indexes=[copy.deepcopy(i) for i in self.indexes],
            component=self.component,
            comment=self.comment,
            generator=self.generator,
            logger=self.logger,
        )

    def find_field(self, name: str) -> Optional[Field]:
        name = name.lower()
        return next((f for f in self.fields if f.name == name), None)

    def get_sequence_field(self) -> Optional[Field]:
        return next((f for f in self.fields if f.sequence), None)

    def get_field_sql(self, fld: Field) -> str:
        """SQL of a field as used for comparison."""
        return normalize_comparison_sql(self.generator.get_field_sql(fld), self.generator.family)

    def get_sqls_for_comparison(self) -> list[str]:
        """Order-insensitive fingerprint of the table structure.

        Non-primary keys are represented by the index the database creates for them, so a
        unique key and a unique index on the same columns produce the same line.
        """
        sqls = [f"FIELD {self.get_field_sql(f)}" for f in self.fields]
        for key in self.keys:
            cols = ", ".join(key.fields)
            if key.type == KeyType.PRIMARY:
                sqls.append(f"PRIMARY KEY ({cols})")
            elif key.unique:
                sqls.append(f"UNIQUE INDEX ({cols})")
            else:
                sqls.append(f"INDEX ({cols})")
        for index in self.indexes:
            cols = ", ".join(index.fields)
            sqls.append(f"{'UNIQUE ' if index.unique else ''}INDEX ({cols})")
        return sorted(set(sqls))

    def compare_with_other_table(self, reference: Optional["DbTable"], autofix: bool = True) -> TableAlignment:
        """Align this table with a reference table.

        Fields are matched by name, keys and indexes by their equivalence signature. The table
        itself is left untouched; the aligned copy is returned in the result.

        Args:
            reference: Table to compare with, None if there is no such table
            autofix: Replace matching objects by the reference ones and reorder them as in the
                reference

        Returns:
            Alignment with the aligned copy and the sparse diff
        """
        if reference is None:
            return TableAlignment(self.copy(), {DIFF_EXTRATABLES: [self]})

        diff: TableDiff = {key: [] for key in TABLE_DIFF_KEYS}

        remaining = list(self.fields)
        aligned_fields: list[Field] = []
        for deffield in reference.fields:
            match = next((f for f in remaining if f.name == deffield.name), None)
            if match is None:
                diff[DIFF_MISSINGCOLUMNS].append(deffield)
                continue
            remaining.remove(match)
            if self.get_field_sql(match) != reference.get_field_sql(deffield):
                diff[DIFF_CHANGEDCOLUMNS].append(match)
                aligned_fields.append(copy.copy(match))
            else:
                aligned_fields.append(copy.copy(deffield) if autofix else copy.copy(match))
        diff[DIFF_EXTRACOLUMNS].extend(remaining)
        aligned_fields.extend(copy.copy(f) for f in remaining)

        actual_pool: list[KeyOrIndex] = [*self.keys, *self.indexes]
        matched: list[KeyOrIndex] = []
        seen: set[tuple[tuple[str, ...], bool, bool]] = set()
        for refobj in [*reference.keys, *reference.indexes]:
            signature = equivalence_signature(refobj)
            if signature in seen:
                continue
            seen.add(signature)
            act = next((a for a in actual_pool if equivalence_signature(a) == signature), None)
            if act is None:
                diff[DIFF_MISSINGINDEXES].append(refobj)
                continue
            actual_pool.remove(act)
            matched.append(refobj)
        matched_signatures = {equivalence_signature(m) for m in matched}
        leftovers: list[KeyOrIndex] = []
        for act in actual_pool:
            signature = equivalence_signature(act)
            if signature in matched_signatures or signature in {equivalence_signature(x) for x in leftovers}:
                continue
            leftovers.append(act)
        diff[DIFF_EXTRAINDEXES].extend(leftovers)

        if autofix:
            aligned = DbTable(
                self.name,
                fields=aligned_fields,
                keys=[copy.deepcopy(o) for o in [*matched, *leftovers] if isinstance(o, Key)],
                indexes=[copy.deepcopy(o) for o in [*matched, *leftovers] if isinstance(o, Index)],
                component=self.component or reference.component,
                comment=self.comment,
                generator=self.generator,
                logger=self.logger,
            )
        else:
            aligned = self.copy()

        return TableAlignment(aligned, {k: v for k, v in diff.items() if v})

    def get_create_sql(self) -> list[str]:
        """Statements that create this table and its indexes."""
        return self.generator.get_create_table_sql(self.name, self.fields, self.keys, self.indexes)

    def get_alter_sql(self, original_table: Optional["DbTable"]) -> list[str]:
        """Statements turning the existing table into this one.

        Args:
            original_table: Table currently present in the database, None if it does not exist

        Returns:
            Empty list when nothing has to change, additive statements when this table only adds
            columns or indexes to the existing one, otherwise DROP TABLE followed by CREATE TABLE
        """
        if original_table is None:
            return self.get_create_sql()

        diff = self.compare_with_other_table(original_table, autofix=False).diff
        if not diff:
            return []

        if set(diff) <= ADDITIVE_DIFF_KEYS:
            statements = [self.generator.get_add_field_sql(self.name, f) for f in diff.get(DIFF_EXTRACOLUMNS, [])]
            for obj in diff.get(DIFF_EXTRAINDEXES, []):
                if obj.primary:
                    statements.append(self.generator.get_add_primary_key_sql(self.name, obj.fields))
                else:
                    statements.append(self.generator.get_create_index_sql(self.name, obj.fields, obj.unique))
            return statements

        return [self.generator.get_drop_table_sql(self.name), *self.get_create_sql()]

    def get_fix_sequence_sql(self, value: Optional[int]) -> list[str]:
        """Statements moving the table's sequence to the given next value."""
        fld = self.get_sequence_field()
        if fld is None or not value:
            return []
        return self.generator.get_fix_sequence_sql(self.name, fld, value)

    def remove_all_comments(self) -> None:
        self.comment = None
        for obj in [*self.fields, *self.keys, *self.indexes]:
            obj.comment = None

    def validate_definition(self) -> list[str]:
        """Developer warnings about the table definition.

        Problems are logged and returned; they never stop comparison or restore.
        """
        errors = []
        for fld in self.fields:
            error = validate_field(fld, relaxed=True)
            if error:
                errors.append(error)
        names = {f.name for f in self.fields}
        for obj in [*self.keys, *self.indexes]:
            if not obj.fields:
                errors.append(f"'{obj.name}' has no fields")
            for name in obj.fields:
                if name not in names:
                    errors.append(f"'{obj.name}' refers to unknown field '{name}'")
        if sum(1 for k in self.keys if k.primary) > 1:
            errors.append("More than one primary key")
        for error in errors:
            self.logger.warning("Invalid table definition", table=self.name, error=error)
        return errors

    def output(self) -> str:
        """XMLDB <TABLE> fragment for this table."""
        if not self.fields:
            raise SchemaError(f"Table '{self.name}' has no fields", context={"table": self.name})
        return render_table(self.name, self.fields, self.keys, self.indexes, self.comment, self.component)
