"""
Data import.

Readers for SQL dumps, structured (JSON) exports and delimited text, schema
inference for undeclared sources, and the batched ``SourceImporter``.
"""

from appwrite_orm.importers.importer import (
    ImportFailure,
    ImportSummary,
    SourceImporter,
)
from appwrite_orm.importers.inference import infer_schema
from appwrite_orm.importers.readers import (
    coerce_scalar,
    read_delimited,
    read_export,
    read_sql_dump,
    sql_table_columns,
)

__all__ = [
    "ImportFailure",
    "ImportSummary",
    "SourceImporter",
    "coerce_scalar",
    "infer_schema",
    "read_delimited",
    "read_export",
    "read_sql_dump",
    "sql_table_columns",
]
