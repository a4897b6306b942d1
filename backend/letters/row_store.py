"""
Dynamic Row Store Adapter

Reads one employee row out of a letter type's schema-less table. Column names
in these tables are whatever the end user had in their spreadsheet, so rows are
returned as plain string maps and callers never see SQL.

Table identifiers are validated once here; columns are only ever addressed
through reflected Table objects and values through bound parameters.
"""

import logging
import re
from typing import Dict, List, Optional

from sqlalchemy import MetaData, Table, select
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.ext.asyncio import AsyncSession

from utils.errors import RowNotFound, ValidationError

logger = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_ ]{0,127}$")

# Columns that may carry the employee business key, in priority order
EMPLOYEE_KEY_COLUMNS = ["EMP ID", "EmpID", "EmployeeId", "Employee_ID", "EMP_ID", "employee_id"]


def table_name_for(display_name: str, override: Optional[str] = None) -> str:
    """
    Derive the dynamic table name for a letter type.

    An override recorded at import time wins; otherwise every non-alphanumeric
    character of the display name becomes an underscore.
    """
    if override and override.strip():
        return override.strip()
    return re.sub(r"[^A-Za-z0-9]", "_", display_name or "")


def validate_identifier(name: str) -> str:
    if not name or not TABLE_NAME_PATTERN.match(name):
        raise ValidationError(f"Invalid table name: {name!r}", parameter="tableName")
    return name


def _stringify(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "strftime"):
        return value.strftime("%d/%m/%Y")
    return str(value)


class RowStore:
    """Row access interface used by the placeholder resolver."""

    async def get_row(self, table_name: str, employee_key: str) -> Dict[str, str]:
        raise NotImplementedError

    async def list_keys(self, table_name: str) -> List[str]:
        raise NotImplementedError


class SqlRowStore(RowStore):
    """
    Row store over the relational database.

    Tables are reflected on first use and cached for the lifetime of the
    adapter, which is normally one request or one dispatch unit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}

    async def _reflect(self, table_name: str) -> Table:
        table_name = validate_identifier(table_name)
        if table_name in self._tables:
            return self._tables[table_name]

        conn = await self.db.connection()
        try:
            table = await conn.run_sync(
                lambda sync_conn: Table(table_name, self._metadata, autoload_with=sync_conn)
            )
        except NoSuchTableError:
            raise RowNotFound(f"Data table '{table_name}' does not exist", parameter="tableName")

        self._tables[table_name] = table
        return table

    @staticmethod
    def _key_column(table: Table):
        by_lower = {c.name.lower(): c for c in table.columns}
        for candidate in EMPLOYEE_KEY_COLUMNS:
            column = by_lower.get(candidate.lower())
            if column is not None:
                return column
        raise RowNotFound(
            f"Data table '{table.name}' has no employee key column",
            parameter="employeeId",
        )

    async def get_row(self, table_name: str, employee_key: str) -> Dict[str, str]:
        """
        Fetch the row whose employee key column equals employee_key.

        Raises:
            RowNotFound: table, key column or row is missing
            ValidationError: table name fails the identifier allow-list
        """
        table = await self._reflect(table_name)
        key_column = self._key_column(table)

        result = await self.db.execute(
            select(table).where(key_column == str(employee_key)).limit(1)
        )
        row = result.mappings().first()
        if row is None:
            raise RowNotFound(
                f"Employee {employee_key} not found in '{table_name}'",
                parameter="employeeId",
            )

        logger.debug(f"Loaded row for {employee_key} from {table_name} ({len(row)} columns)")
        return {str(name): _stringify(value) for name, value in row.items()}

    async def list_keys(self, table_name: str) -> List[str]:
        table = await self._reflect(table_name)
        key_column = self._key_column(table)
        result = await self.db.execute(select(key_column).order_by(key_column))
        return [str(value) for value in result.scalars().all() if value is not None]
