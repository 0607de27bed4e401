"""
Tests for the map session: command dispatch, notices and the end-to-end
search -> table -> focus -> buffer flow over the sample trees.
"""

from unittest.mock import Mock

import pytest
from shapely.geometry import Point

from components.treemap.config import TreeMapConfig
from components.treemap.exceptions import QueryError
from components.treemap.focus import (BUFFER_HIT_SYMBOL, BUFFER_SYMBOL, HIGHLIGHT_SYMBOL,
                                      SELECTED_SYMBOL, Viewpoint)
from components.treemap.gateway import ArcGISFeatureGateway, FeatureQueryGateway, GeoDataFrameGateway
from components.treemap.predicates import InList, MatchNone
from components.treemap.records import Extent, FeatureRecord
from components.treemap.result_table import NO_MATCHES_MESSAGE
from components.treemap.session import GENERIC_QUERY_FAILURE, NO_LOCATION_MESSAGE, Notice, build_gateways


class TestBuildGateways:

    def test_remote_gateways(self, tmp_path):
        config = TreeMapConfig(str(tmp_path / "missing.json"))

        gateways = build_gateways(config)

        assert set(gateways) == {'trees', 'heritage'}
        assert isinstance(gateways['trees'], ArcGISFeatureGateway)
        assert gateways['heritage'].layer_url.endswith("/1")

    def test_local_gateway(self, treemap_config, sample_trees_data, tmp_path):
        path = tmp_path / "trees.geojson"
        sample_trees_data.to_file(path, driver="GeoJSON")
        treemap_config.update({"service": {"local_path": str(path)}})

        gateways = build_gateways(treemap_config)

        assert list(gateways) == ['trees']
        assert isinstance(gateways['trees'], GeoDataFrameGateway)


class TestSessionStartup:
    """Test the initial loads."""

    def test_start_loads_everything(self, started_session, sample_trees_data):
        session = started_session

        assert len(session.tree_layer.features) == 6
        assert session.filters.area_options == ['Phú Hội', 'Phú Nhuận', 'Vĩnh Ninh']
        assert session.filters.road_options == ['Hùng Vương', 'Lê Lợi', 'Nguyễn Huệ']
        assert session.category_options() == ['Cây bóng mát', 'Cây cảnh', 'Cây hoa']
        assert session.cluster.toggle_enabled
        assert not session.cluster.is_on

    def test_home_extent_is_padded(self, started_session, sample_trees_data):
        minx, miny, maxx, maxy = sample_trees_data.total_bounds
        expected = Extent(minx, miny, maxx, maxy).expand(1.2)

        assert started_session.view.home == expected
        assert started_session.view.target == expected

    def test_start_runs_once(self, started_session, manual_executor):
        calls = len(manual_executor.calls)
        started_session.start()

        assert len(manual_executor.calls) == calls

    def test_go_home(self, started_session):
        started_session.view.go_to(Viewpoint((0.0, 0.0), 2000))
        started_session.dispatch('go_home')

        assert started_session.view.target == started_session.view.home

    def test_cluster_toggle_disabled_before_categories_load(self, map_session):
        map_session.start()

        assert map_session.dispatch('cluster_toggled', True) is None
        assert not map_session.cluster.is_on
        assert map_session.drain_notices()[0].level == "warning"

    def test_cluster_toggle_after_load(self, started_session):
        started_session.dispatch('cluster_toggled', True)

        assert started_session.cluster.is_on
        assert started_session.tree_layer.feature_reduction.popup_title == "{cluster_count} trees"


class TestDispatch:

    def test_unknown_command(self, map_session):
        with pytest.raises(KeyError):
            map_session.dispatch('explode')

    def test_sidebar_commands(self, map_session):
        map_session.dispatch('open_search')
        assert map_session.sidebar == "search"
        map_session.dispatch('back_to_main')
        assert map_session.sidebar == "main"

        map_session.dispatch('toggle_sidebar')
        assert map_session.sidebar_collapsed

    def test_layer_and_basemap_commands(self, map_session):
        map_session.dispatch('layer_visibility', 'trees', False)
        map_session.dispatch('basemap_changed', 'OpenStreetMap')

        assert not map_session.tree_layer.visible
        assert map_session.basemap == 'OpenStreetMap'

    def test_view_changed(self, map_session):
        map_session.dispatch('view_changed', (107.6, 16.47), 17)

        assert map_session.view.center == (107.6, 16.47)
        assert map_session.view.zoom == 17

    def test_drain_notices_empties_queue(self, map_session):
        map_session.notify("warning", "one")

        assert map_session.drain_notices() == [Notice("warning", "one")]
        assert map_session.drain_notices() == []


class TestSearchFlow:
    """Test search, result table and row activation."""

    def test_search_by_name(self, started_session, settle):
        started_session.dispatch('name_changed', "o'brien")
        started_session.dispatch('search')
        settle(started_session)

        table = started_session.results.table
        assert len(table) == 1
        assert table.rows()[0] == ["Cây O'Brien", "Cây cảnh", "Hùng Vương", "Phú Hội"]

    def test_search_without_criteria(self, started_session, manual_executor):
        calls = len(manual_executor.calls)

        assert started_session.dispatch('search') is None

        assert started_session.drain_notices() == [
            Notice("warning", "Please enter a tree name or select a road/area")
        ]
        assert len(manual_executor.calls) == calls
        assert not started_session.results.has_table

    def test_no_matches(self, started_session, settle):
        started_session.dispatch('road_changed', 'Không tồn tại')
        started_session.dispatch('search')
        settle(started_session)

        assert started_session.results.message == NO_MATCHES_MESSAGE

    def test_area_road_search(self, started_session, settle):
        started_session.dispatch('area_changed', 'Phú Hội')
        settle(started_session)
        assert started_session.filters.road_options == ['Hùng Vương', 'Lê Lợi']

        started_session.dispatch('road_changed', 'Lê Lợi')
        started_session.dispatch('search')
        settle(started_session)

        assert [row[0] for row in started_session.results.table.rows()] == ['Phượng vĩ']

    def test_latest_area_wins(self, started_session, manual_executor):
        started_session.dispatch('area_changed', 'Phú Hội')
        started_session.dispatch('area_changed', 'Phú Nhuận')

        manual_executor.run(-1)
        started_session.process_completions()
        manual_executor.run(-2)
        started_session.process_completions()

        assert started_session.filters.road_options == ['Hùng Vương']

    def test_sort_and_activate_row(self, started_session, settle):
        started_session.dispatch('road_changed', 'Lê Lợi')
        started_session.dispatch('search')
        settle(started_session)

        started_session.dispatch('sort_column', 0)
        record = started_session.dispatch('row_activated', 0)

        assert record.get('tencay') == 'Bằng lăng'
        assert started_session.selected_feature is record
        assert [g.symbol for g in started_session.overlay] == [HIGHLIGHT_SYMBOL]
        assert started_session.view.target == Viewpoint((107.586, 16.464), 2000)
        assert started_session.view.zoom == 18

    def test_latest_search_wins(self, started_session, manual_executor):
        started_session.dispatch('name_changed', 'phượng')
        started_session.dispatch('search')
        started_session.dispatch('name_changed', "o'brien")
        started_session.dispatch('search')

        manual_executor.run(-1)
        started_session.process_completions()
        manual_executor.run(-2)
        started_session.process_completions()

        assert [row[0] for row in started_session.results.table.rows()] == ["Cây O'Brien"]

    def test_query_failure_keeps_previous_results(self, started_session, settle):
        started_session.dispatch('name_changed', 'phượng')
        started_session.dispatch('search')
        settle(started_session)
        previous = started_session.results.table

        failing = Mock(spec=FeatureQueryGateway)
        failing.query.side_effect = QueryError("Service unavailable")
        started_session.filters.gateway = failing
        started_session.dispatch('search')
        settle(started_session)

        assert started_session.results.table is previous
        assert started_session.drain_notices() == [Notice("error", GENERIC_QUERY_FAILURE)]


class TestCategoryFilter:

    def test_unchecking_everything_hides_all_trees(self, started_session, settle):
        started_session.dispatch('categories_changed', [])
        settle(started_session)

        assert isinstance(started_session.tree_layer.definition_expression, MatchNone)
        assert started_session.tree_layer.features.is_empty

    def test_subset_of_categories(self, started_session, settle):
        started_session.dispatch('categories_changed', ['Cây hoa'])
        settle(started_session)

        assert isinstance(started_session.tree_layer.definition_expression, InList)
        assert [r.object_id for r in started_session.tree_layer.features] == [5, 6]


class TestSelectionAndBuffer:
    """Test map-click selection and the buffer tool."""

    def test_map_click_selects_tree(self, started_session):
        hit = started_session.dispatch('map_clicked', 107.5900, 16.4600)

        assert hit.object_id == 3
        assert started_session.selected_feature is hit
        assert [g.symbol for g in started_session.overlay] == [SELECTED_SYMBOL]

    def test_map_click_on_empty_space(self, started_session):
        assert started_session.dispatch('map_clicked', 107.70, 16.50) is None
        assert started_session.selected_feature is None

    def test_map_click_ignores_hidden_layer(self, started_session):
        started_session.dispatch('layer_visibility', 'trees', False)
        assert started_session.dispatch('map_clicked', 107.5900, 16.4600) is None

    def test_record_without_geometry_clears_selection(self, started_session):
        started_session.dispatch('map_clicked', 107.5900, 16.4600)
        target = started_session.view.target

        started_session.select_record(FeatureRecord(99, {'TenCay': 'Không vị trí'}, None))

        assert len(started_session.overlay) == 0
        assert started_session.selected_feature is None
        assert started_session.view.target is target
        assert started_session.drain_notices() == [Notice("warning", NO_LOCATION_MESSAGE)]

    def test_record_with_empty_geometry_keeps_view(self, started_session):
        center = started_session.view.center

        started_session.select_record(FeatureRecord(98, {}, Point()))

        assert started_session.selected_feature is None
        assert started_session.view.center == center

    def test_buffer_without_selection(self, started_session, manual_executor):
        calls = len(manual_executor.calls)

        assert started_session.dispatch('buffer_requested', 50) is None

        assert started_session.drain_notices() == [Notice("warning", "Please click a tree on the map first.")]
        assert len(started_session.overlay) == 0
        assert len(manual_executor.calls) == calls

    def test_buffer_invalid_distance_keeps_state(self, started_session):
        started_session.dispatch('map_clicked', 107.5900, 16.4600)
        target = started_session.view.target

        started_session.dispatch('buffer_requested', "abc")

        assert started_session.drain_notices() == [Notice("warning", "Enter a valid distance in meters.")]
        assert [g.symbol for g in started_session.overlay] == [SELECTED_SYMBOL]
        assert started_session.view.target is target

    def test_buffer_highlights_trees_inside(self, started_session, settle):
        started_session.dispatch('map_clicked', 107.5900, 16.4600)
        started_session.dispatch('buffer_requested', "50")
        settle(started_session)

        symbols = [g.symbol for g in started_session.overlay]
        assert symbols == [BUFFER_SYMBOL, SELECTED_SYMBOL, BUFFER_HIT_SYMBOL]
        assert isinstance(started_session.view.target, Extent)

    def test_stale_buffer_hits_dropped_after_new_selection(self, started_session, manual_executor):
        started_session.dispatch('map_clicked', 107.5900, 16.4600)
        started_session.dispatch('buffer_requested', 500)
        started_session.dispatch('map_clicked', 107.5850, 16.4650)

        manual_executor.run_all()
        started_session.process_completions()

        assert [g.symbol for g in started_session.overlay] == [SELECTED_SYMBOL]
        assert started_session.selected_feature.object_id == 1
