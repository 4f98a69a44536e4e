"""Site Vault - Shared utilities."""

import re


def safe_identifier(name: str) -> str:
    """Validate and quote a PostgreSQL identifier to prevent SQL injection.

    Ensures the name is a valid SQL identifier, then double-quotes it.
    Rejects anything that isn't alphanumeric/underscores (plus dots for schema.name).
    Names that already carry double quotes are unquoted first.

    Args:
        name: SQL identifier (sequence, table or schema name)

    Returns:
        Safely quoted identifier (e.g., '"public"."mdl_user_id_seq"')

    Raises:
        ValueError: If the identifier contains invalid characters
    """
    if "." in name:
        parts = name.split(".", 1)
        return f"{safe_identifier(parts[0])}.{safe_identifier(parts[1])}"

    name = name.strip('"')
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
        raise ValueError(
            f"Invalid SQL identifier: {name!r}. "
            "Only letters, digits, and underscores are allowed."
        )

    return f'"{name}"'
