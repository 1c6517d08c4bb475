"""SQL builders for bulk loads."""

from loadpipe.types import TargetCredentials

COPY_OPTIONS = (
    "TIMEFORMAT 'auto'",
    "DATEFORMAT 'auto'",
    "TRUNCATECOLUMNS",
    "BLANKSASNULL",
    "EMPTYASNULL",
    "COMPUPDATE OFF",
    "STATUPDATE OFF",
)


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_copy_statement(
    table: str,
    location: str,
    credentials: TargetCredentials,
    manifest: bool = False,
) -> str:
    """
    Build a COPY statement loading newline-delimited JSON from staging.

    An IAM role is preferred over access keys when both are configured.
    """
    if credentials.copy_iam_role:
        auth = f"IAM_ROLE {_quote_literal(credentials.copy_iam_role)}"
    elif credentials.access_key_id and credentials.secret_access_key:
        auth = (
            f"ACCESS_KEY_ID {_quote_literal(credentials.access_key_id)} "
            f"SECRET_ACCESS_KEY {_quote_literal(credentials.secret_access_key)}"
        )
    else:
        raise ValueError(f"No credentials for COPY into {table}: set an IAM role or access keys")

    lines = [
        f"COPY {table}",
        f"FROM {_quote_literal(location)}",
        auth,
        "FORMAT AS JSON 'auto'",
    ]
    if manifest:
        lines.append("MANIFEST")
    lines.extend(COPY_OPTIONS)
    return "\n".join(lines)


def split_table_name(table: str, default_schema: str = "public") -> tuple[str, str]:
    """Split ``schema.table`` into its parts, defaulting the schema."""
    if "." in table:
        schema, name = table.split(".", 1)
        return schema, name
    return default_schema, table
