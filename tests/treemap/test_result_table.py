"""
Tests for result table rendering and sorting.
"""

import pytest
from shapely.geometry import Point

from components.treemap.records import FeatureRecord, ResultSet
from components.treemap.result_table import (
    NO_MATCHES_MESSAGE, Column, ResultTable, ResultTableRenderer, SortState
)


def make_records():
    rows = [
        ("b tree", "Cây hoa", "Lê Lợi", "Phú Hội"),
        ("A tree", "Cây cảnh", "Hùng Vương", "Vĩnh Ninh"),
        ("  c tree", None, "Lê Lợi", "Phú Nhuận"),
        ("a tree", "Cây bóng mát", "Nguyễn Huệ", "Phú Hội"),
    ]
    return [
        FeatureRecord(i, {'TenCay': n, 'LoaiCay': c, 'TenTuyenDu': r, 'DiaChi': a}, Point(107.58 + i / 1000, 16.46))
        for i, (n, c, r, a) in enumerate(rows)
    ]


COLUMNS = [Column("Tên Cây", "tencay"), Column("Loại Cây", "loaicay"),
           Column("Tuyến Đường", "tentuyendu"), Column("Khu vực", "diachi")]


class TestSortState:

    def test_same_column_flips(self):
        state = SortState().clicked(0)
        assert state == SortState(0, True)
        assert state.clicked(0) == SortState(0, False)
        assert state.clicked(0).clicked(0) == SortState(0, True)

    def test_other_column_starts_ascending(self):
        assert SortState(0, False).clicked(2) == SortState(2, True)


class TestResultTable:
    """Test ResultTable sorting and labels."""

    def setup_method(self):
        self.table = ResultTable(make_records(), COLUMNS)

    def names(self):
        return [row[0] for row in self.table.rows()]

    def test_initial_order_is_query_order(self):
        assert self.names() == ["b tree", "A tree", "  c tree", "a tree"]
        assert self.table.header_labels() == ["Tên Cây", "Loại Cây", "Tuyến Đường", "Khu vực"]

    def test_missing_value_renders_empty(self):
        assert self.table.rows()[2][1] == ""

    def test_sort_ascending_is_case_insensitive_and_stable(self):
        self.table.sort_by(0)

        # "A tree" and "a tree" tie and keep their query order
        assert self.names() == ["A tree", "a tree", "b tree", "  c tree"]
        assert self.table.header_labels()[0] == "Tên Cây ▲"

    def test_second_click_sorts_descending(self):
        self.table.sort_by(0)
        self.table.sort_by(0)

        assert self.names() == ["  c tree", "b tree", "A tree", "a tree"]
        assert self.table.header_labels()[0] == "Tên Cây ▼"

    def test_switching_column_moves_indicator(self):
        self.table.sort_by(2)
        assert self.table.header_labels() == ["Tên Cây", "Loại Cây", "Tuyến Đường ▲", "Khu vực"]

        self.table.sort_by(0)
        labels = self.table.header_labels()
        assert labels == ["Tên Cây ▲", "Loại Cây", "Tuyến Đường", "Khu vực"]
        assert sum(1 for label in labels if "▲" in label or "▼" in label) == 1

    def test_sort_by_road_keeps_ties_in_order(self):
        self.table.sort_by(2)
        assert [row[2] for row in self.table.rows()] == ["Hùng Vương", "Lê Lợi", "Lê Lợi", "Nguyễn Huệ"]
        assert self.names()[1:3] == ["b tree", "  c tree"]

    def test_invalid_column(self):
        with pytest.raises(IndexError):
            self.table.sort_by(4)


class TestResultTableRenderer:
    """Test ResultTableRenderer state transitions."""

    def setup_method(self):
        self.activated = []
        self.renderer = ResultTableRenderer(COLUMNS, on_row_activated=self.activated.append)

    def test_empty_result_shows_message(self):
        self.renderer.render(ResultSet())

        assert not self.renderer.has_table
        assert self.renderer.message == NO_MATCHES_MESSAGE
        assert NO_MATCHES_MESSAGE in self.renderer.to_html()

    def test_new_render_replaces_table_and_sort_state(self):
        self.renderer.render(ResultSet.from_records(make_records()))
        self.renderer.sort_by(1)
        first_table = self.renderer.table

        self.renderer.render(ResultSet.from_records(make_records()[:2]))

        assert self.renderer.table is not first_table
        assert len(self.renderer.table) == 2
        assert not self.renderer.table.sort_state.is_sorted
        assert self.renderer.message is None

    def test_message_cleared_by_next_result(self):
        self.renderer.render(ResultSet())
        self.renderer.render(ResultSet.from_records(make_records()))

        assert self.renderer.message is None
        assert self.renderer.has_table

    def test_activate_row_follows_sorted_order(self):
        self.renderer.render(ResultSet.from_records(make_records()))
        self.renderer.sort_by(0)
        self.renderer.sort_by(0)

        record = self.renderer.activate_row(0)

        assert record.get('tencay') == "  c tree"
        assert self.activated == [record]

    def test_actions_without_table(self):
        with pytest.raises(RuntimeError):
            self.renderer.sort_by(0)
        with pytest.raises(RuntimeError):
            self.renderer.activate_row(0)

    def test_html_is_escaped(self):
        records = [FeatureRecord(1, {'TenCay': "<b>O'Brien</b>"}, Point(0, 0))]
        self.renderer.render(ResultSet.from_records(records))

        html_output = self.renderer.to_html()

        assert html_output.startswith('<table border="1"')
        assert "&lt;b&gt;O&#x27;Brien&lt;/b&gt;" in html_output
        assert html_output.count("<tr data-row=") == 1
