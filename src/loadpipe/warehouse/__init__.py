"""Warehouse clients and statement builders."""

from loadpipe.warehouse.base import WarehouseClient
from loadpipe.warehouse.memory import InMemoryWarehouse
from loadpipe.warehouse.redshift import RedshiftDataWarehouse
from loadpipe.warehouse.statements import (
    COPY_OPTIONS,
    build_copy_statement,
    split_table_name,
)

__all__ = [
    "WarehouseClient",
    "InMemoryWarehouse",
    "RedshiftDataWarehouse",
    "COPY_OPTIONS",
    "build_copy_statement",
    "split_table_name",
]
