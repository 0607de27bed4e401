"""
Map session and command dispatch.

A ``MapSession`` holds everything one user's map needs: gateways, layer state,
filter controller, result table, view, overlay, cluster and buffer tools, the
selected feature and pending user notices. UI controls call ``dispatch`` with a
command name; asynchronous query completions are applied by
``process_completions``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from shapely.geometry.base import BaseGeometry

from .cluster_buffer import (BufferTool, ClusterController, ClusterRendererFactory, LayerState)
from .config import TreeMapConfig
from .exceptions import QueryError, ValidationError
from .filter_state import FilterStateController
from .focus import (BUFFER_HIT_SYMBOL, SELECTED_SYMBOL, Graphic, GraphicsOverlay,
                    MapFocusCoordinator, MapView)
from .gateway import ArcGISFeatureGateway, FeatureQueryGateway, GeoDataFrameGateway
from .predicates import MatchAll
from .records import Extent, FeatureRecord, ResultSet
from .result_table import Column, ResultTableRenderer
from .sequencing import RequestSequencer

logger = logging.getLogger(__name__)

SLOT_LAYER = "layer"
SLOT_HERITAGE = "heritage"
SLOT_EXTENT = "extent"
SLOT_CLUSTER = "cluster"
SLOT_BUFFER_HITS = "buffer_hits"

GENERIC_QUERY_FAILURE = "Search error, please try again later"
NO_LOCATION_MESSAGE = "This tree has no location on the map"


@dataclass(frozen=True)
class Notice:
    level: str
    message: str


def build_gateways(config: TreeMapConfig) -> Dict[str, FeatureQueryGateway]:
    """Create the tree (and optionally heritage) gateways from configuration."""
    service = config.get_service_settings()
    if service.get('local_path'):
        return {'trees': GeoDataFrameGateway.from_file(service['local_path'])}

    gateways = {'trees': ArcGISFeatureGateway(config.get_layer_url('trees'), service['timeout_s'])}
    if config.is_enabled('heritage_layer'):
        gateways['heritage'] = ArcGISFeatureGateway(config.get_layer_url('heritage'), service['timeout_s'])
    return gateways


class MapSession:
    """State and command handlers for one map session."""

    def __init__(self, config: TreeMapConfig, gateways: Dict[str, FeatureQueryGateway] = None,
                 sequencer: RequestSequencer = None):
        self.config = config
        self.gateways = gateways if gateways is not None else build_gateways(config)
        query_settings = config.get_query_settings()
        self.sequencer = sequencer or RequestSequencer(max_workers=query_settings['max_workers'])
        self.wait_timeout_s = query_settings['wait_timeout_s']

        map_settings = config.get_map_settings()
        fields = config.get_field_mapping()

        self.layers: Dict[str, LayerState] = {}
        for key in self.gateways:
            layer_settings = config.get_layer_settings(key)
            self.layers[key] = LayerState(key, layer_settings['title'], layer_settings.get('visible', True))
        self.tree_layer = self.layers['trees']

        lat, lon = map_settings['default_center']
        self.view = MapView((lon, lat), map_settings['default_scale'], map_settings['hit_tolerance_px'])
        self.overlay = GraphicsOverlay()
        self.focus = MapFocusCoordinator(self.view, self.overlay, map_settings['focus_scale'],
                                         map_settings['extent_padding'])

        self.filters = FilterStateController(self.gateways['trees'], self.sequencer, fields,
                                             on_results=self._show_results,
                                             on_query_error=self._query_failed)
        self.results = ResultTableRenderer(Column.from_config(config.get_result_columns()),
                                           on_row_activated=self.select_record)

        cluster_settings = config.get_cluster_settings()
        self.cluster_factory = ClusterRendererFactory(cluster_settings['colormap'])
        self.cluster = ClusterController(self.tree_layer, cluster_settings['radius_px'],
                                         cluster_settings['popup_title'], cluster_settings['caption'])
        self.buffer_tool = BufferTool(self.focus, unit=config.get_buffer_settings()['unit'],
                                      extent_padding=map_settings['extent_padding'])

        self.basemap = map_settings['basemap']
        self.sidebar = "main"
        self.sidebar_collapsed = False
        self.selected_feature: Optional[FeatureRecord] = None
        self.notices: List[Notice] = []
        self.started = False

        self._commands: Dict[str, Callable[..., Any]] = {
            'area_changed': self.filters.set_area_filter,
            'road_changed': self.filters.set_road_filter,
            'name_changed': self.filters.set_name_filter,
            'categories_changed': self.set_categories,
            'search': self.filters.search,
            'sort_column': self.results.sort_by,
            'row_activated': self.results.activate_row,
            'map_clicked': self.handle_map_click,
            'view_changed': self.view.sync,
            'cluster_toggled': self.cluster.set_cluster_mode,
            'buffer_requested': self.request_buffer,
            'layer_visibility': self.set_layer_visibility,
            'basemap_changed': self.set_basemap,
            'go_home': self.go_home,
            'open_search': lambda: self.set_sidebar("search"),
            'back_to_main': lambda: self.set_sidebar("main"),
            'toggle_sidebar': self.toggle_sidebar,
        }

    # --- notices -------------------------------------------------------------------

    def notify(self, level: str, message: str) -> None:
        self.notices.append(Notice(level, message))

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    def _query_failed(self, slot: str, error: BaseException) -> None:
        if not isinstance(error, QueryError):
            logger.exception(f"Unexpected failure in {slot} request", exc_info=error)
        self.notify("error", GENERIC_QUERY_FAILURE)

    def _report_to(self, slot: str) -> Callable[[BaseException], None]:
        return lambda error: self._query_failed(slot, error)

    # --- dispatch ------------------------------------------------------------------

    def dispatch(self, command: str, *args, **kwargs) -> Any:
        """
        Run a UI command.

        Validation problems become warning notices; nothing else is swallowed.
        """
        handler = self._commands.get(command)
        if handler is None:
            raise KeyError(f"Unknown command: {command}")
        try:
            return handler(*args, **kwargs)
        except ValidationError as e:
            logger.info(f"{command} rejected: {e}")
            self.notify("warning", str(e))
            return None

    def process_completions(self, wait: bool = False) -> int:
        if wait:
            return self.sequencer.wait_idle(self.wait_timeout_s)
        return self.sequencer.process_completions()

    # --- startup -------------------------------------------------------------------

    def start(self) -> None:
        """Initial loads: extent/home, layer features, area list, cluster renderer."""
        if self.started:
            return
        self.started = True
        trees = self.gateways['trees']

        self.sequencer.submit(SLOT_EXTENT, trees.query_extent, MatchAll(),
                              on_success=self._apply_home_extent, on_error=self._report_to(SLOT_EXTENT))
        self.reload_layer()
        if 'heritage' in self.gateways:
            self.sequencer.submit(SLOT_HERITAGE, self.gateways['heritage'].query, MatchAll(),
                                  on_success=self._apply_heritage, on_error=self._report_to(SLOT_HERITAGE))
        if self.config.is_enabled('search'):
            self.filters.load_area_options()
            self.filters.load_road_options("")
        self.prepare_categories()

    def _apply_home_extent(self, extent: Extent) -> None:
        padded = extent.expand(self.config.get_map_settings()['extent_padding'])
        self.view.home = padded
        self.view.go_to(padded)
        logger.info(f"Home extent set to {padded}")

    def _apply_heritage(self, result: ResultSet) -> None:
        self.layers['heritage'].features = result
        self.layers['heritage'].refresh()

    def go_home(self) -> None:
        if self.view.home is not None:
            self.view.go_to(self.view.home)

    # --- tree layer ----------------------------------------------------------------

    def reload_layer(self) -> int:
        """Fetch the tree layer's features under its current definition expression."""
        layer = self.tree_layer

        def apply(result: ResultSet) -> None:
            layer.features = result
            layer.refresh()
            logger.info(f"Tree layer shows {len(result)} features")

        return self.sequencer.submit(SLOT_LAYER, self.gateways['trees'].query, layer.definition_expression,
                                     on_success=apply, on_error=self._report_to(SLOT_LAYER))

    def set_categories(self, categories: Iterable[str]) -> None:
        self.tree_layer.definition_expression = self.filters.set_category_filters(categories)
        self.reload_layer()

    def category_options(self) -> List[str]:
        if self.tree_layer.renderer is not None:
            return [f.name for f in self.tree_layer.renderer.fields]
        return []

    def prepare_categories(self) -> int:
        """
        Load the category distribution, build the category renderer from it and,
        when clustering is enabled, unlock the cluster toggle.
        """
        self.cluster.begin_preparation()
        category_field = self.config.get_field_mapping()['category']
        cluster_settings = self.config.get_cluster_settings()

        def apply(result: ResultSet) -> None:
            renderer = self.cluster_factory.prepare(result, category_field.lower(), cluster_settings['shape'])
            self.tree_layer.renderer = renderer
            self.tree_layer.refresh()
            if not self.config.is_enabled('clustering'):
                return
            self.cluster.complete_preparation(renderer)
            if cluster_settings.get('enabled_by_default'):
                self.cluster.set_cluster_mode(True)

        def failed(error: BaseException) -> None:
            self.cluster.fail_preparation(error)
            self.notify("warning", "Tree types could not be loaded, clustering is unavailable")

        return self.sequencer.submit(SLOT_CLUSTER, self.gateways['trees'].query, MatchAll(),
                                     fields=[category_field], want_geometry=False, distinct=True,
                                     order_by=[category_field], on_success=apply, on_error=failed)

    def set_layer_visibility(self, layer_key: str, visible: bool) -> None:
        self.layers[layer_key].visible = bool(visible)
        self.layers[layer_key].refresh()

    def set_basemap(self, basemap: str) -> None:
        self.basemap = basemap

    def set_sidebar(self, pane: str) -> None:
        self.sidebar = pane

    def toggle_sidebar(self) -> None:
        self.sidebar_collapsed = not self.sidebar_collapsed

    # --- search results and selection ---------------------------------------------

    def _show_results(self, result: ResultSet) -> None:
        self.results.render(result)

    def select_record(self, record: FeatureRecord) -> None:
        """Row activation: highlight, remember for buffering, zoom in."""
        self.sequencer.invalidate(SLOT_BUFFER_HITS)
        if not self.focus.focus_record(record):
            self.selected_feature = None
            self.notify("warning", NO_LOCATION_MESSAGE)
            return
        self.selected_feature = record

    def handle_map_click(self, lon: float, lat: float) -> Optional[FeatureRecord]:
        """Select the tree under the click (if any) for buffering."""
        if not self.tree_layer.visible:
            return None
        hit = self.view.hit_test((lon, lat), self.tree_layer.features)
        if hit is not None:
            self.sequencer.invalidate(SLOT_BUFFER_HITS)
            self.focus.show([Graphic.for_record(hit, SELECTED_SYMBOL)])
            self.selected_feature = hit
            logger.info(f"Selected feature {hit.object_id} from map click")
        return hit

    # --- buffer ---------------------------------------------------------------------

    def request_buffer(self, distance: Any) -> BaseGeometry:
        buffer_geometry = self.buffer_tool.run(self.selected_feature, distance)

        def apply(result: ResultSet) -> None:
            self.overlay.add_many(Graphic.for_record(r, BUFFER_HIT_SYMBOL)
                                  for r in result if r.geometry is not None)
            logger.info(f"{len(result)} trees inside buffer")

        self.sequencer.submit(SLOT_BUFFER_HITS, self.gateways['trees'].query, None,
                              geometry=buffer_geometry, on_success=apply,
                              on_error=self._report_to(SLOT_BUFFER_HITS))
        return buffer_geometry

    def close(self) -> None:
        self.sequencer.shutdown()
