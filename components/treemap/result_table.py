"""
Result table rendering.

Turns a result set into a sortable, clickable table model. Sorting compares the
trimmed, lower-cased text of each cell, one column at a time, and the active
column carries a direction indicator. The Streamlit page draws the model with
buttons; ``to_html`` gives a standalone rendering.
"""

import html
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .records import FeatureRecord, ResultSet

logger = logging.getLogger(__name__)

NO_MATCHES_MESSAGE = "No matches found"
ASCENDING_ARROW = "▲"
DESCENDING_ARROW = "▼"


@dataclass(frozen=True)
class Column:
    """Table column: header label and the attribute key it shows."""

    label: str
    key: str

    @classmethod
    def from_config(cls, columns: Sequence[Dict[str, str]]) -> List["Column"]:
        return [cls(c['label'], c['key']) for c in columns]


@dataclass(frozen=True)
class SortState:
    index: int = -1
    ascending: bool = True

    @property
    def is_sorted(self) -> bool:
        return self.index >= 0

    def clicked(self, index: int) -> "SortState":
        """State after a header click: same column flips, another column starts ascending."""
        if self.index == index:
            return SortState(index, not self.ascending)
        return SortState(index, True)


def sort_key(value: str) -> str:
    return str(value).strip().lower()


class ResultTable:
    """One rendered table instance; sort state lives and dies with it."""

    def __init__(self, records: Sequence[FeatureRecord], columns: Sequence[Column]):
        self.columns = list(columns)
        self.records = list(records)
        self.sort_state = SortState()

    def __len__(self) -> int:
        return len(self.records)

    def cell_text(self, record: FeatureRecord, column_index: int) -> str:
        return record.display_value(self.columns[column_index].key)

    def rows(self) -> List[List[str]]:
        return [[self.cell_text(r, i) for i in range(len(self.columns))] for r in self.records]

    def header_labels(self) -> List[str]:
        labels = []
        for index, column in enumerate(self.columns):
            if index == self.sort_state.index:
                arrow = ASCENDING_ARROW if self.sort_state.ascending else DESCENDING_ARROW
                labels.append(f"{column.label} {arrow}")
            else:
                labels.append(column.label)
        return labels

    def sort_by(self, column_index: int) -> SortState:
        """Apply a header click on ``column_index``."""
        if not 0 <= column_index < len(self.columns):
            raise IndexError(f"No column at index {column_index}")
        state = self.sort_state.clicked(column_index)
        # sorted() is stable with reverse=True too, so ties keep their order
        self.records = sorted(self.records,
                              key=lambda r: sort_key(self.cell_text(r, column_index)),
                              reverse=not state.ascending)
        self.sort_state = state
        logger.debug(f"Sorted results by {self.columns[column_index].key} "
                     f"({'asc' if state.ascending else 'desc'})")
        return state

    def record_at(self, row_index: int) -> FeatureRecord:
        return self.records[row_index]


class ResultTableRenderer:
    """Holds the currently displayed table (or the no-match message)."""

    def __init__(self, columns: Sequence[Column],
                 on_row_activated: Optional[Callable[[FeatureRecord], None]] = None):
        self.columns = list(columns)
        self.on_row_activated = on_row_activated
        self.table: Optional[ResultTable] = None
        self.message: Optional[str] = None

    def clear(self) -> None:
        self.table = None
        self.message = None

    def render(self, result_set: ResultSet, columns: Optional[Sequence[Column]] = None) -> None:
        """
        Replace the displayed results.

        Args:
            result_set: Records to show, in query order
            columns: Optional column override for this table
        """
        self.clear()
        if columns is not None:
            self.columns = list(columns)
        if result_set.is_empty:
            self.message = NO_MATCHES_MESSAGE
            logger.info("Search returned no matches")
            return
        self.table = ResultTable(result_set.features, self.columns)

    @property
    def has_table(self) -> bool:
        return self.table is not None

    def sort_by(self, column_index: int) -> SortState:
        if self.table is None:
            raise RuntimeError("No result table to sort")
        return self.table.sort_by(column_index)

    def activate_row(self, row_index: int) -> FeatureRecord:
        """Row click: hand the record to the activation callback."""
        if self.table is None:
            raise RuntimeError("No result table to activate")
        record = self.table.record_at(row_index)
        if self.on_row_activated is not None:
            self.on_row_activated(record)
        return record

    def to_html(self) -> str:
        if self.table is None:
            return f"<div class=\"treemap-results\">{html.escape(self.message or '')}</div>"

        header_cells = "".join(f"<th style=\"cursor: pointer;\">{html.escape(label)}</th>"
                               for label in self.table.header_labels())
        body_rows = []
        for index, row in enumerate(self.table.rows()):
            cells = "".join(f"<td>{html.escape(text)}</td>" for text in row)
            body_rows.append(f"<tr data-row=\"{index}\" style=\"cursor: pointer;\">{cells}</tr>")
        return (
            "<table border=\"1\" class=\"treemap-results\">"
            f"<thead><tr>{header_cells}</tr></thead>"
            f"<tbody>{''.join(body_rows)}</tbody>"
            "</table>"
        )
