"""
Structured predicate builder for feature queries.

Predicates are built from tagged clauses (equality, case-insensitive substring,
IN-list) and serialized to the ArcGIS ``where`` dialect in one place. All
literal escaping goes through ``quote_literal``. The same clause tree can be
evaluated against a pandas frame so local data sources honour the exact
semantics of the remote service.
"""

from dataclasses import dataclass
from functools import reduce
from typing import Iterable, Mapping, Optional, Tuple
import logging
import re

import pandas as pd

from .exceptions import NoCriteriaError, PredicateEscapingError

logger = logging.getLogger(__name__)

QUOTE = "'"
LIKE_WILDCARDS = {'%': '.*', '_': '.'}

DEFAULT_FIELDS = {
    'name': 'TenCay',
    'category': 'LoaiCay',
    'road': 'TenTuyenDu',
    'area': 'DiaChi',
}


def escape_literal(value: str) -> str:
    """Double every single quote so the value can sit inside a quoted literal."""
    return str(value).replace(QUOTE, QUOTE * 2)


def quote_literal(value: str) -> str:
    """
    Escape and quote a literal for embedding in a where clause.

    Raises:
        PredicateEscapingError: if the escaped body still holds an unpaired quote
    """
    body = escape_literal(value)
    if QUOTE in body.replace(QUOTE * 2, ""):
        raise PredicateEscapingError(f"Unpaired quote in literal {value!r}")
    return f"{QUOTE}{body}{QUOTE}"


def _column(frame: pd.DataFrame, field: str) -> str:
    """Resolve a service field name to a frame column, ignoring case."""
    if field in frame.columns:
        return field
    lowered = field.lower()
    for column in frame.columns:
        if str(column).lower() == lowered:
            return column
    raise KeyError(f"Field {field} not found in data source")


def _text(frame: pd.DataFrame, field: str) -> pd.Series:
    column = frame[_column(frame, field)]
    return column.where(column.notna(), "").astype(str)


class Predicate:
    """Base class for predicate clauses."""

    def to_where(self) -> str:
        raise NotImplementedError

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        """Boolean Series selecting the rows of ``frame`` this predicate matches."""
        raise NotImplementedError

    def matches(self, attributes: Mapping) -> bool:
        """Evaluate against a single attribute mapping."""
        frame = pd.DataFrame([dict(attributes)])
        return bool(self.mask(frame).iloc[0])

    def __str__(self) -> str:
        return self.to_where()


@dataclass(frozen=True)
class MatchAll(Predicate):
    def to_where(self) -> str:
        return "1=1"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        return pd.Series(True, index=frame.index)


@dataclass(frozen=True)
class MatchNone(Predicate):
    def to_where(self) -> str:
        return "1=0"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        return pd.Series(False, index=frame.index)


@dataclass(frozen=True)
class Equals(Predicate):
    field: str
    value: str

    def to_where(self) -> str:
        return f"{self.field} = {quote_literal(self.value)}"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        return _text(frame, self.field) == str(self.value)


@dataclass(frozen=True)
class ContainsIgnoreCase(Predicate):
    field: str
    value: str

    def to_where(self) -> str:
        pattern = quote_literal(f"%{self.value}%")
        return f"LOWER({self.field}) LIKE LOWER({pattern})"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        # % and _ keep their LIKE meaning, as on the service
        pattern = "".join(LIKE_WILDCARDS.get(char, re.escape(char)) for char in str(self.value).lower())
        column = frame[_column(frame, self.field)]
        matches = _text(frame, self.field).str.lower().str.contains(pattern, regex=True, flags=re.DOTALL)
        return matches & column.notna()


@dataclass(frozen=True)
class InList(Predicate):
    field: str
    values: Tuple[str, ...]

    def to_where(self) -> str:
        literals = ",".join(quote_literal(v) for v in self.values)
        return f"{self.field} IN ({literals})"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        return _text(frame, self.field).isin([str(v) for v in self.values])


@dataclass(frozen=True)
class And(Predicate):
    clauses: Tuple[Predicate, ...]

    def to_where(self) -> str:
        return " AND ".join(clause.to_where() for clause in self.clauses)

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        masks = [clause.mask(frame) for clause in self.clauses]
        return reduce(lambda left, right: left & right, masks, pd.Series(True, index=frame.index))


def build_predicate(name: str = "", road: str = "", area: str = "",
                    fields: Optional[Mapping[str, str]] = None) -> Predicate:
    """
    Build the search predicate from the name/road/area selection.

    Args:
        name: Substring to look for in the name field (case-insensitive)
        road: Exact road value, empty for any road
        area: Exact area value, empty for any area
        fields: Mapping of logical field -> service field name

    Returns:
        A single clause, or an ``And`` of the applicable clauses

    Raises:
        NoCriteriaError: if no clause applies
    """
    fields = {**DEFAULT_FIELDS, **(fields or {})}
    clauses = []
    if name:
        clauses.append(ContainsIgnoreCase(fields['name'], name))
    if road:
        clauses.append(Equals(fields['road'], road))
    if area:
        clauses.append(Equals(fields['area'], area))

    if not clauses:
        raise NoCriteriaError()
    if len(clauses) == 1:
        return clauses[0]
    return And(tuple(clauses))


def build_category_predicate(categories: Iterable[str],
                             field: str = DEFAULT_FIELDS['category']) -> Predicate:
    """Deny-all when nothing is checked, otherwise an IN-list of the categories."""
    selected = tuple(sorted({str(c) for c in categories if c is not None}))
    if not selected:
        return MatchNone()
    return InList(field, selected)


def build_area_scope_predicate(area: str, field: str = DEFAULT_FIELDS['area']) -> Predicate:
    """Scope for the dependent road list: one area, or everything."""
    if area:
        return Equals(field, area)
    return MatchAll()
