"""XMLDB entity model (fields, keys, indexes) and the declarative document codec.

Reference schema files follow the XMLDB layout::

    <XMLDB>
      <TABLES>
        <TABLE NAME="config" COMMENT="...">
          <FIELDS>
            <FIELD NAME="id" TYPE="int" LENGTH="10" NOTNULL="true" SEQUENCE="true"/>
          </FIELDS>
          <KEYS>
            <KEY NAME="primary" TYPE="primary" FIELDS="id"/>
          </KEYS>
          <INDEXES>
            <INDEX NAME="name" UNIQUE="true" FIELDS="name"/>
          </INDEXES>
        </TABLE>
      </TABLES>
    </XMLDB>
"""

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional
from xml.sax.saxutils import quoteattr

from vault.exceptions import SchemaError

NAME_MAX_LENGTH = 63
INTEGER_MAX_LENGTH = 20
NUMBER_MAX_LENGTH = 38
FLOAT_MAX_LENGTH = 20
CHAR_MAX_LENGTH = 1333

_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class FieldType(StrEnum):
    """Canonical field types."""

    INTEGER = "int"
    NUMBER = "number"
    FLOAT = "float"
    CHAR = "char"
    TEXT = "text"
    BINARY = "binary"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"


class KeyType(StrEnum):
    """Key kinds."""

    PRIMARY = "primary"
    UNIQUE = "unique"
    FOREIGN = "foreign"
    FOREIGN_UNIQUE = "foreign-unique"


@dataclass
class Field:
    """One column of a table definition."""

    name: str
    type: FieldType
    length: Optional[int] = None
    decimals: Optional[int] = None
    notnull: bool = False
    sequence: bool = False
    default: Optional[str] = None
    comment: Optional[str] = None

    def __post_init__(self) -> None:
        # Empty-string defaults on NOT NULL char columns are rejected when the schema is read back.
        if self.type == FieldType.CHAR and self.notnull and self.default == "":
            self.default = None


@dataclass
class Key:
    """Primary, unique or foreign key."""

    name: str
    type: KeyType
    fields: list[str]
    reftable: Optional[str] = None
    reffields: list[str] = field(default_factory=list)
    comment: Optional[str] = None

    @property
    def unique(self) -> bool:
        return self.type in (KeyType.PRIMARY, KeyType.UNIQUE, KeyType.FOREIGN_UNIQUE)

    @property
    def primary(self) -> bool:
        return self.type == KeyType.PRIMARY


@dataclass
class Index:
    """Plain or unique index."""

    name: str
    fields: list[str]
    unique: bool = False
    hints: list[str] = field(default_factory=list)
    comment: Optional[str] = None

    @property
    def primary(self) -> bool:
        return False


def equivalence_signature(obj: Key | Index) -> tuple[tuple[str, ...], bool, bool]:
    """Comparison signature of a key or index.

    Two objects are equivalent when their field lists match in order and they agree on
    uniqueness and primary-ness. Foreign keys carry no referential meaning here and compare
    like plain indexes.
    """
    return (tuple(obj.fields), obj.unique, obj.primary)


def validate_field(fld: Field, relaxed: bool = True) -> Optional[str]:
    """Check a field definition.

    Args:
        fld: Field to validate
        relaxed: Tolerate CHAR, NUMBER and FLOAT lengths above the canonical maximum, which
            introspection reports for columns created outside of the reference schema

    Returns:
        Error message, or None when the field is valid
    """
    if not _NAME_PATTERN.match(fld.name):
        return f"Invalid field name '{fld.name}'"
    if len(fld.name) > NAME_MAX_LENGTH:
        return f"Field name '{fld.name}' is longer than {NAME_MAX_LENGTH} characters"

    if fld.type == FieldType.INTEGER:
        if not fld.length or not 0 < fld.length <= INTEGER_MAX_LENGTH:
            return f"Invalid length {fld.length} for integer field '{fld.name}'"
        if fld.default is not None and not re.match(r"^-?\d+$", fld.default):
            return f"Invalid default '{fld.default}' for integer field '{fld.name}'"
    elif fld.type == FieldType.NUMBER:
        if not fld.length or fld.length <= 0:
            return f"Invalid length {fld.length} for number field '{fld.name}'"
        if not relaxed and fld.length > NUMBER_MAX_LENGTH:
            return f"Length of number field '{fld.name}' exceeds {NUMBER_MAX_LENGTH}"
        if fld.decimals is not None and not 0 <= fld.decimals <= fld.length:
            return f"Invalid decimals {fld.decimals} for number field '{fld.name}'"
    elif fld.type == FieldType.FLOAT:
        if not relaxed and fld.length and fld.length > FLOAT_MAX_LENGTH:
            return f"Length of float field '{fld.name}' exceeds {FLOAT_MAX_LENGTH}"
        if fld.length and fld.decimals is not None and fld.decimals > fld.length:
            return f"Invalid decimals {fld.decimals} for float field '{fld.name}'"
    elif fld.type == FieldType.CHAR:
        if not fld.length or fld.length <= 0:
            return f"Invalid length {fld.length} for char field '{fld.name}'"
        if not relaxed and fld.length > CHAR_MAX_LENGTH:
            return f"Length of char field '{fld.name}' exceeds {CHAR_MAX_LENGTH}"
    elif fld.type in (FieldType.TEXT, FieldType.BINARY):
        if fld.default is not None:
            return f"Field '{fld.name}' of type {fld.type} can not have a default"

    if fld.sequence and fld.type != FieldType.INTEGER:
        return f"Only integer fields can be sequences, '{fld.name}' is {fld.type}"
    return None


def _bool_attr(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _int_attr(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise SchemaError(f"Invalid numeric attribute '{value}'") from e


def _list_attr(value: Optional[str]) -> list[str]:
    return [part.strip().lower() for part in (value or "").split(",") if part.strip()]


def parse_field(element: ET.Element) -> Field:
    """Build a Field from a <FIELD> element."""
    type_name = (element.get("TYPE") or "").strip().lower()
    try:
        field_type = FieldType(type_name)
    except ValueError as e:
        raise SchemaError(
            f"Unknown field type '{type_name}'",
            context={"field": element.get("NAME")},
        ) from e
    return Field(
        name=(element.get("NAME") or "").strip().lower(),
        type=field_type,
        length=_int_attr(element.get("LENGTH")),
        decimals=_int_attr(element.get("DECIMALS")),
        notnull=_bool_attr(element.get("NOTNULL")),
        sequence=_bool_attr(element.get("SEQUENCE")),
        default=element.get("DEFAULT"),
        comment=element.get("COMMENT"),
    )


def parse_key(element: ET.Element) -> Key:
    """Build a Key from a <KEY> element."""
    type_name = (element.get("TYPE") or "").strip().lower()
    try:
        key_type = KeyType(type_name)
    except ValueError as e:
        raise SchemaError(
            f"Unknown key type '{type_name}'",
            context={"key": element.get("NAME")},
        ) from e
    return Key(
        name=(element.get("NAME") or "").strip().lower(),
        type=key_type,
        fields=_list_attr(element.get("FIELDS")),
        reftable=(element.get("REFTABLE") or "").strip().lower() or None,
        reffields=_list_attr(element.get("REFFIELDS")),
        comment=element.get("COMMENT"),
    )


def parse_index(element: ET.Element) -> Index:
    """Build an Index from an <INDEX> element."""
    return Index(
        name=(element.get("NAME") or "").strip().lower(),
        fields=_list_attr(element.get("FIELDS")),
        unique=_bool_attr(element.get("UNIQUE")),
        hints=[h.strip() for h in (element.get("HINTS") or "").split(",") if h.strip()],
        comment=element.get("COMMENT"),
    )


def parse_table_element(element: ET.Element) -> dict[str, Any]:
    """Parse a <TABLE> element into its parts.

    Returns:
        Dictionary with name, comment, component, fields, keys and indexes
    """
    name = (element.get("NAME") or "").strip().lower()
    if not name:
        raise SchemaError("Table without a name in XMLDB document")
    return {
        "name": name,
        "comment": element.get("COMMENT"),
        "component": (element.get("COMPONENT") or "").strip(),
        "fields": [parse_field(e) for e in element.findall("./FIELDS/FIELD")],
        "keys": [parse_key(e) for e in element.findall("./KEYS/KEY")],
        "indexes": [parse_index(e) for e in element.findall("./INDEXES/INDEX")],
    }


def parse_document(content: str | bytes) -> list[dict[str, Any]]:
    """Parse an XMLDB document.

    Args:
        content: XML text

    Returns:
        Parsed tables in document order

    Raises:
        SchemaError: If the document is not valid XML or not an XMLDB document
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise SchemaError(f"Invalid XMLDB document: {e}") from e
    if root.tag != "XMLDB":
        raise SchemaError(f"Unexpected root element <{root.tag}> in XMLDB document")
    return [parse_table_element(e) for e in root.findall("./TABLES/TABLE")]


def _attrs(pairs: list[tuple[str, Optional[str]]]) -> str:
    return " ".join(f"{name}={quoteattr(value)}" for name, value in pairs if value is not None)


def render_field(fld: Field) -> str:
    pairs: list[tuple[str, Optional[str]]] = [
        ("NAME", fld.name),
        ("TYPE", str(fld.type)),
        ("LENGTH", str(fld.length) if fld.length is not None else None),
        ("DECIMALS", str(fld.decimals) if fld.decimals is not None else None),
        ("NOTNULL", "true" if fld.notnull else "false"),
        ("DEFAULT", fld.default),
        ("SEQUENCE", "true" if fld.sequence else "false"),
        ("COMMENT", fld.comment or None),
    ]
    return f"<FIELD {_attrs(pairs)}/>"


def render_key(key: Key) -> str:
    pairs: list[tuple[str, Optional[str]]] = [
        ("NAME", key.name),
        ("TYPE", str(key.type)),
        ("FIELDS", ", ".join(key.fields)),
        ("REFTABLE", key.reftable),
        ("REFFIELDS", ", ".join(key.reffields) if key.reftable else None),
        ("COMMENT", key.comment or None),
    ]
    return f"<KEY {_attrs(pairs)}/>"


def render_index(index: Index) -> str:
    pairs: list[tuple[str, Optional[str]]] = [
        ("NAME", index.name),
        ("UNIQUE", "true" if index.unique else "false"),
        ("FIELDS", ", ".join(index.fields)),
        ("HINTS", ", ".join(index.hints) if index.hints else None),
        ("COMMENT", index.comment or None),
    ]
    return f"<INDEX {_attrs(pairs)}/>"


def render_table(
    name: str,
    fields: list[Field],
    keys: list[Key],
    indexes: list[Index],
    comment: Optional[str] = None,
    component: Optional[str] = None,
) -> str:
    """Render one <TABLE> element, indented for inclusion in a document."""
    lines = [f"    <TABLE {_attrs([('NAME', name), ('COMMENT', comment or ''), ('COMPONENT', component or None)])}>"]
    lines.append("      <FIELDS>")
    lines.extend(f"        {render_field(f)}" for f in fields)
    lines.append("      </FIELDS>")
    if keys:
        lines.append("      <KEYS>")
        lines.extend(f"        {render_key(k)}" for k in keys)
        lines.append("      </KEYS>")
    if indexes:
        lines.append("      <INDEXES>")
        lines.extend(f"        {render_index(i)}" for i in indexes)
        lines.append("      </INDEXES>")
    lines.append("    </TABLE>")
    return "\n".join(lines) + "\n"


def render_document(tables_xml: list[str]) -> str:
    """Wrap rendered tables into an XMLDB document."""
    out = '<?xml version="1.0" encoding="UTF-8" ?>\n'
    out += '<XMLDB xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"\n'
    out += '    xsi:noNamespaceSchemaLocation="xmldb.xsd"\n'
    out += ">\n"
    if tables_xml:
        out += "  <TABLES>\n"
        out += "".join(tables_xml)
        out += "  </TABLES>\n"
    out += "</XMLDB>\n"
    return out
