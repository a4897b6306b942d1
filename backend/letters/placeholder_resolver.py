"""
Placeholder Resolver

Builds the token -> value map used to fill a letter template. Values come from,
in increasing precedence:

1. Canonical employee attributes (name, id, email, joining date)
2. The letter type's fields, looked up in the employee row by raw column
   name, display name, then field key
3. Common column-name aliases, for tokens still empty
4. System placeholders (dates, organization name)
5. Caller overrides (live-edit previews)

A missing column never fails resolution; the token simply resolves to "".
Only a missing employee row raises (RowNotFound, from the row store).
"""

import logging
import re
from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, Iterator, List, Optional

from letters.row_store import RowStore, table_name_for

logger = logging.getLogger(__name__)

DATE_FORMAT = "%d/%m/%Y"
TIME_FORMAT = "%H:%M:%S"

TOKEN_PATTERN = re.compile(r"\{\s*([A-Za-z0-9_ .-]+?)\s*\}")

# Template token -> source column names seen across uploads
COMMON_ALIASES: Dict[str, List[str]] = {
    "EmpID": ["EMP ID", "EmployeeId", "Employee_ID"],
    "EmpName": ["EMP NAME", "EmployeeName", "Employee_Name", "Name"],
    "Client": ["CLIENT", "Client", "Company"],
    "DOJ": ["DOJ", "DateOfJoining", "JoinDate"],
    "LWD": ["LWD", "LastWorkingDay", "EndDate"],
    "Designation": ["DESIGNATION", "Designation", "Position", "Role"],
    "CTC": ["CTC", "Salary", "Compensation"],
    "Email": ["EMAIL", "Email", "EmailAddress"],
}

# Tokens every template may use, seeded empty until data fills them
RESERVED_EMPTY_TOKENS = ["LWD", "CTC", "LastWorkingDay", "Salary"]


class PlaceholderMap(MutableMapping):
    """
    Case-insensitive token map that remembers the spelling a token was first
    stored under.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = {}
        self._keys: Dict[str, str] = {}
        if initial:
            self.update(initial)

    def __getitem__(self, key: str) -> str:
        return self._data[self._keys[key.lower()]]

    def __setitem__(self, key: str, value: str):
        canonical = self._keys.setdefault(key.lower(), key)
        self._data[canonical] = "" if value is None else str(value)

    def __delitem__(self, key: str):
        canonical = self._keys.pop(key.lower())
        del self._data[canonical]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"PlaceholderMap({self._data!r})"

    def lookup(self, token: str) -> Optional[str]:
        """Exact spelling first, then case-insensitive."""
        if token in self._data:
            return self._data[token]
        canonical = self._keys.get(token.lower())
        return self._data[canonical] if canonical is not None else None

    def has_value(self, token: str) -> bool:
        return bool(self.lookup(token))

    def to_dict(self) -> Dict[str, str]:
        return dict(self._data)


@dataclass
class EmployeeProfile:
    """Canonical employee attributes shared by every letter type."""
    employee_id: str
    name: str = ""
    email: str = ""
    date_of_joining: Optional[date] = None

    @classmethod
    def from_model(cls, employee) -> "EmployeeProfile":
        return cls(
            employee_id=employee.employee_id,
            name=employee.name or "",
            email=employee.email or "",
            date_of_joining=employee.date_of_joining,
        )

    @classmethod
    def from_row(cls, employee_key: str, row: Dict[str, str]) -> "EmployeeProfile":
        """Best-effort profile for employees that only exist in a tab's data table."""
        return cls(
            employee_id=str(employee_key),
            name=_find_in_row(row, COMMON_ALIASES["EmpName"]) or "",
            email=_find_in_row(row, COMMON_ALIASES["Email"]) or "",
        )

    @property
    def first_name(self) -> str:
        parts = self.name.strip().split(None, 1)
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        parts = self.name.strip().split(None, 1)
        return parts[1] if len(parts) > 1 else ""


def _find_in_row(row: Dict[str, str], candidates: Iterable[Optional[str]]) -> Optional[str]:
    """
    Return the first non-empty value among candidate column names.

    Every candidate is tried with its exact spelling before any
    case-insensitive comparison is made.
    """
    names = [c.strip() for c in candidates if c and c.strip()]

    for name in names:
        value = row.get(name)
        if value:
            return value

    lowered = {column.lower(): value for column, value in row.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value

    return None


class PlaceholderResolver:
    """
    Resolves letter placeholders for one employee.

    Usage:
        resolver = PlaceholderResolver(SqlRowStore(db), organization_name="Acme")
        mapping = await resolver.resolve("E100", letter_type, employee=profile)
    """

    def __init__(self, row_store: RowStore, organization_name: str = ""):
        self.row_store = row_store
        self.organization_name = organization_name

    async def resolve(
        self,
        employee_key: str,
        letter_type,
        employee: Optional[EmployeeProfile] = None,
        overrides: Optional[Dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> PlaceholderMap:
        table_name = table_name_for(letter_type.display_name, letter_type.table_name)
        row = await self.row_store.get_row(table_name, employee_key)
        profile = employee or EmployeeProfile.from_row(employee_key, row)
        return self.build_map(row, profile, letter_type.fields or [], overrides, now)

    def build_map(
        self,
        row: Dict[str, str],
        employee: EmployeeProfile,
        fields: Iterable,
        overrides: Optional[Dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> PlaceholderMap:
        """Assemble the map from an already-fetched row."""
        mapping = PlaceholderMap()
        self._seed_canonical(mapping, employee)

        for field in fields:
            self._resolve_field(mapping, row, field)

        for token, synonyms in COMMON_ALIASES.items():
            if mapping.has_value(token):
                continue
            value = _find_in_row(row, synonyms)
            if value:
                mapping[token] = value
                logger.debug(f"Alias {token} resolved from column synonyms")

        self._add_system_placeholders(mapping, now or datetime.now())

        for token, value in (overrides or {}).items():
            mapping[token] = value

        logger.info(f"Resolved {len(mapping)} placeholders for employee {employee.employee_id}")
        return mapping

    @staticmethod
    def _seed_canonical(mapping: PlaceholderMap, employee: EmployeeProfile):
        joined = employee.date_of_joining.strftime(DATE_FORMAT) if employee.date_of_joining else ""
        mapping["EmpName"] = employee.name
        mapping["EmpID"] = employee.employee_id
        mapping["Email"] = employee.email
        mapping["FirstName"] = employee.first_name
        mapping["LastName"] = employee.last_name
        mapping["DOJ"] = joined
        mapping["DateOfJoining"] = joined
        for token in RESERVED_EMPTY_TOKENS:
            mapping[token] = ""

    @staticmethod
    def _resolve_field(mapping: PlaceholderMap, row: Dict[str, str], field):
        field_key = (field.field_key or "").strip()
        if not field_key:
            return

        value = _find_in_row(row, [field.field_name, field.display_name, field.field_key])
        if value is not None:
            mapping[field_key] = value
            return

        if field.default_value:
            mapping[field_key] = field.default_value
        elif mapping.lookup(field_key) is None:
            mapping[field_key] = ""
        logger.debug(
            f"No data for field {field_key} (tried: {field.field_name}, {field.display_name})"
        )

    def _add_system_placeholders(self, mapping: PlaceholderMap, now: datetime):
        mapping["Date"] = now.strftime(DATE_FORMAT)
        mapping["CurrentDate"] = now.strftime(DATE_FORMAT)
        mapping["CurrentTime"] = now.strftime(TIME_FORMAT)
        mapping["CompanyName"] = self.organization_name


def extract_tokens(text: str) -> List[str]:
    """Distinct {Token} names in order of first appearance."""
    seen: Dict[str, None] = {}
    for match in TOKEN_PATTERN.finditer(text or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)


def fill_text(text: str, mapping: PlaceholderMap) -> str:
    """Replace {Token} occurrences; unknown tokens are left untouched."""
    def replace(match: re.Match) -> str:
        value = mapping.lookup(match.group(1))
        return match.group(0) if value is None else value

    return TOKEN_PATTERN.sub(replace, text or "")
