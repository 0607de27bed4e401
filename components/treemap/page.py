"""
Tree map page.

Streamlit surface for the tree map finder: layer list, basemap gallery, tree
type filter, cluster toggle, buffer tool and the search pane with its result
table. Every control forwards to ``MapSession.dispatch``.
"""

import logging
from typing import Any, Dict, Optional

import pandas as pd
import plotly.express as px
import streamlit as st

from .config import TreeMapConfig, get_treemap_config
from .map_renderer import BASEMAPS, TreeMapRenderer
from .predicates import MatchAll
from .session import MapSession

logger = logging.getLogger(__name__)

ALL_AREAS = "All Areas"
ALL_ROADS = "All Roads"


class TreeMapPageInterface:
    """Main interface for the tree map page."""

    def __init__(self, config: Optional[TreeMapConfig] = None):
        self.config = config or get_treemap_config()
        self.renderer = TreeMapRenderer(self.config)

    def render(self) -> None:
        self._initialize_session_state()
        session: MapSession = st.session_state.treemap_session

        with st.spinner("Loading features..."):
            session.process_completions(wait=True)
        self._render_notices(session)

        st.title("🌳 Hue Green Map")
        if not session.sidebar_collapsed:
            with st.sidebar:
                if session.sidebar == "search" and self.config.is_enabled('search'):
                    self._render_search_pane(session)
                else:
                    self._render_main_pane(session)

        self._render_map(session)

    def _initialize_session_state(self) -> None:
        if 'treemap_session' not in st.session_state:
            session = MapSession(self.config)
            session.start()
            st.session_state.treemap_session = session
            logger.info("Started new tree map session")

        if 'treemap_last_click' not in st.session_state:
            st.session_state.treemap_last_click = None

        if 'treemap_last_view' not in st.session_state:
            st.session_state.treemap_last_view = None

    def _render_notices(self, session: MapSession) -> None:
        for notice in session.drain_notices():
            if notice.level == "error":
                st.error(f"❌ {notice.message}")
            else:
                st.warning(f"⚠️ {notice.message}")

    # --- callbacks ---------------------------------------------------------------------

    @staticmethod
    def _dispatch(command: str, *args) -> None:
        st.session_state.treemap_session.dispatch(command, *args)

    @staticmethod
    def _on_area_change() -> None:
        value = st.session_state.treemap_area
        TreeMapPageInterface._dispatch('area_changed', "" if value == ALL_AREAS else value)

    @staticmethod
    def _on_road_change() -> None:
        value = st.session_state.treemap_road
        TreeMapPageInterface._dispatch('road_changed', "" if value == ALL_ROADS else value)

    @staticmethod
    def _on_categories_change(options) -> None:
        selected = [c for i, c in enumerate(options) if st.session_state.get(f"treemap_cat_{i}", True)]
        TreeMapPageInterface._dispatch('categories_changed', selected)

    # --- sidebar panes -----------------------------------------------------------------

    def _render_main_pane(self, session: MapSession) -> None:
        col1, col2 = st.columns(2)
        with col1:
            if self.config.is_enabled('search'):
                st.button("🔍 Search trees", on_click=self._dispatch, args=('open_search',),
                          use_container_width=True)
        with col2:
            st.button("🏠 Home", on_click=self._dispatch, args=('go_home',), use_container_width=True)

        st.subheader("Layers")
        for key, layer in session.layers.items():
            st.session_state[f"treemap_layer_{key}"] = layer.visible
            st.checkbox(layer.title, key=f"treemap_layer_{key}",
                        on_change=lambda k=key: self._dispatch(
                            'layer_visibility', k, st.session_state[f"treemap_layer_{k}"]))

        st.session_state.treemap_basemap = session.basemap if session.basemap in BASEMAPS else 'OpenStreetMap'
        st.selectbox("Basemap", list(BASEMAPS.keys()), key="treemap_basemap",
                     on_change=lambda: self._dispatch('basemap_changed', st.session_state.treemap_basemap))

        if self.config.is_enabled('category_filter'):
            self._render_category_filter(session)

        if self.config.is_enabled('clustering'):
            st.session_state.treemap_cluster = session.cluster.is_on
            st.toggle("Cluster trees", disabled=not session.cluster.toggle_enabled, key="treemap_cluster",
                      help="Available once tree types are loaded",
                      on_change=lambda: self._dispatch('cluster_toggled', st.session_state.treemap_cluster))

        if self.config.is_enabled('buffer'):
            self._render_buffer_tool(session)

        self._render_category_chart(session)

    def _render_category_filter(self, session: MapSession) -> None:
        options = session.category_options()
        if not options:
            return
        st.subheader("Tree types")
        all_checked = isinstance(session.tree_layer.definition_expression, MatchAll)
        checked = session.filters.selection.categories
        for i, category in enumerate(options):
            st.session_state[f"treemap_cat_{i}"] = all_checked or category in checked
            st.checkbox(category, key=f"treemap_cat_{i}",
                        on_change=self._on_categories_change, args=(options,))

    def _render_buffer_tool(self, session: MapSession) -> None:
        st.subheader("Buffer")
        if session.selected_feature is None:
            st.caption("Click a tree on the map or in the results to select it")
        else:
            name_key = self.config.get_field_mapping()['name'].lower()
            st.caption(f"Selected: {session.selected_feature.display_value(name_key) or session.selected_feature.object_id}")
        default = self.config.get_buffer_settings()['default_distance_m']
        st.session_state.setdefault("treemap_buffer_distance", str(default))
        st.text_input("Distance (m)", key="treemap_buffer_distance")
        st.button("Draw buffer", key="treemap_buffer_btn",
                  on_click=lambda: self._dispatch('buffer_requested', st.session_state.treemap_buffer_distance))

    def _render_category_chart(self, session: MapSession) -> None:
        layer = session.tree_layer
        if layer.features.is_empty:
            return
        category_key = self.config.get_field_mapping()['category'].lower()
        counts = pd.Series([r.display_value(category_key) or "Unknown" for r in layer.features]).value_counts()
        color_map: Dict[str, Any] = layer.renderer.color_map() if layer.renderer else {}
        fig = px.pie(names=counts.index, values=counts.values, hole=0.5,
                     color=counts.index, color_discrete_map=color_map,
                     title=self.config.get_cluster_settings()['caption'])
        fig.update_layout(height=300, margin=dict(l=0, r=0, t=40, b=0), showlegend=False)
        st.plotly_chart(fig, use_container_width=True)

    def _render_search_pane(self, session: MapSession) -> None:
        st.button("← Back", on_click=self._dispatch, args=('back_to_main',))
        st.subheader("Search trees")

        # widgets mirror the filter state, which stays the single source of truth
        selection = session.filters.selection
        st.session_state.treemap_name = selection.name
        areas = [ALL_AREAS] + session.filters.area_options
        roads = [ALL_ROADS] + session.filters.road_options
        st.session_state.treemap_area = selection.area if selection.area in areas else ALL_AREAS
        st.session_state.treemap_road = selection.road if selection.road in roads else ALL_ROADS

        st.text_input("Tree name", key="treemap_name",
                      on_change=lambda: self._dispatch('name_changed', st.session_state.treemap_name))
        st.selectbox("Area", areas,
                     key="treemap_area", on_change=self._on_area_change)
        st.selectbox("Road", roads,
                     key="treemap_road", on_change=self._on_road_change)

        st.button("Search", type="primary", on_click=self._dispatch, args=('search',),
                  use_container_width=True)
        self._render_results(session)

    def _render_results(self, session: MapSession) -> None:
        results = session.results
        if results.message:
            st.info(results.message)
            return
        if not results.has_table:
            return

        table = results.table
        st.caption(f"{len(table)} trees found")
        widths = [3] * len(table.columns) + [1]
        header = st.columns(widths)
        for index, label in enumerate(table.header_labels()):
            header[index].button(label, key=f"treemap_sort_{index}",
                                 on_click=self._dispatch, args=('sort_column', index))

        for row_index, row in enumerate(table.rows()):
            cells = st.columns(widths)
            for col_index, text in enumerate(row):
                cells[col_index].write(text)
            cells[-1].button("📍", key=f"treemap_row_{row_index}",
                             on_click=self._dispatch, args=('row_activated', row_index))

    # --- map ---------------------------------------------------------------------------

    def _render_map(self, session: MapSession) -> None:
        from streamlit_folium import st_folium

        col_toggle, _ = st.columns([1, 6])
        col_toggle.button("☰" if session.sidebar_collapsed else "←",
                          on_click=self._dispatch, args=('toggle_sidebar',))

        map_obj = self.renderer.build_map(session)
        height = self.config.get_map_settings()['height']
        map_data = st_folium(map_obj, width=None, height=height, key="treemap_map",
                             returned_objects=["last_clicked", "last_object_clicked", "center", "zoom"])
        if not map_data:
            return

        view_state = (str(map_data.get('center')), map_data.get('zoom'))
        if map_data.get('center') and map_data.get('zoom') is not None:
            if st.session_state.treemap_last_view not in (None, view_state):
                center = map_data['center']
                session.dispatch('view_changed', (center['lng'], center['lat']), map_data['zoom'])
            st.session_state.treemap_last_view = view_state

        # markers report their clicks as objects, empty map space as plain clicks
        clicks = (map_data.get('last_object_clicked'), map_data.get('last_clicked'))
        if clicks != st.session_state.treemap_last_click:
            st.session_state.treemap_last_click = clicks
            clicked = next((c for c in clicks if c), None)
            if clicked and session.dispatch('map_clicked', clicked['lng'], clicked['lat']) is not None:
                st.rerun()


def render_tree_map_page(config: Optional[TreeMapConfig] = None) -> None:
    """Render the tree map page."""
    TreeMapPageInterface(config).render()
