"""
Map rendering module for the tree map finder.

Builds the Folium map for a session: basemap, heritage polygons, the tree layer
(plain or clustered with category pie icons), highlight graphics, legend and
controls.
"""

import html
import json
import logging
from typing import Any, Dict, Optional

import folium
from folium.plugins import Fullscreen, MarkerCluster

from .cluster_buffer import ClusterConfig, ClusterRenderer, LayerState, UNKNOWN_CATEGORY_COLOR
from .focus import Graphic, GraphicsOverlay, MapView
from .records import Extent, FeatureRecord, is_area_geometry

logger = logging.getLogger(__name__)

BASEMAPS = {
    'OpenStreetMap': 'OpenStreetMap',
    'CartoDB Positron': 'CartoDB positron',
    'CartoDB Dark': 'CartoDB dark_matter',
    'Esri World Imagery': 'Esri.WorldImagery',
    'Esri Street Map': 'Esri.WorldStreetMap',
}

CLUSTER_ICON_TEMPLATE = """
function(cluster) {
    var colors = %(colors)s;
    var markers = cluster.getAllChildMarkers();
    var counts = {};
    markers.forEach(function(m) {
        var c = m.options.category || '';
        counts[c] = (counts[c] || 0) + 1;
    });
    var total = markers.length, start = 0, stops = [], lines = [];
    Object.keys(counts).sort().forEach(function(c) {
        var end = start + counts[c] / total * 360;
        stops.push((colors[c] || '%(unknown)s') + ' ' + start + 'deg ' + end + 'deg');
        lines.push(c + ': ' + counts[c]);
        start = end;
    });
    var size = 34 + Math.min(26, Math.round(Math.log(total) * 4));
    var hole = %(hole)d;
    var title = '%(title)s'.replace('{cluster_count}', total) + '\\n%(caption)s\\n' + lines.join('\\n');
    var inner = '<span style="display:flex;align-items:center;justify-content:center;'
        + 'width:' + hole + '%%;height:' + hole + '%%;border-radius:50%%;background:white;'
        + 'font-weight:600;font-size:12px;">' + total + '</span>';
    return L.divIcon({
        html: '<div title="' + title + '" style="width:' + size + 'px;height:' + size + 'px;'
            + 'border-radius:50%%;display:flex;align-items:center;justify-content:center;'
            + 'background:conic-gradient(' + stops.join(',') + ');">' + inner + '</div>',
        className: 'treemap-cluster',
        iconSize: L.point(size, size)
    });
}
"""


def css_color(color: Any) -> str:
    """Symbol colour (name, hex or [r, g, b, a]) as CSS."""
    if isinstance(color, (list, tuple)):
        r, g, b = color[:3]
        alpha = color[3] if len(color) > 3 else 1
        return f"rgba({r}, {g}, {b}, {alpha})"
    return str(color)


def _js_string(text: str) -> str:
    return text.replace("\\", "\\\\").replace("'", "\\'")


def cluster_icon_function(config: ClusterConfig) -> str:
    """JavaScript ``iconCreateFunction`` drawing a category pie/donut per cluster."""
    return CLUSTER_ICON_TEMPLATE % {
        'colors': json.dumps(config.renderer.color_map()),
        'unknown': UNKNOWN_CATEGORY_COLOR,
        'hole': 60 if config.renderer.shape == 'donut' else 0,
        'title': _js_string(html.escape(config.popup_title)),
        'caption': _js_string(html.escape(config.caption)),
    }


def popup_html(record: FeatureRecord, title_field: str, popup_fields: Dict[str, str]) -> str:
    """Popup content: title from ``title_field`` and a table of the configured fields."""
    title = html.escape(record.display_value(title_field))
    rows = "".join(
        f"<tr><th style=\"text-align:left;padding-right:8px;\">{html.escape(label)}</th>"
        f"<td>{html.escape(record.display_value(key))}</td></tr>"
        for key, label in popup_fields.items()
        if record.get(key) is not None
    )
    return (f"<div style=\"font-family: 'Segoe UI', Arial, sans-serif; font-size: 13px;\">"
            f"<h4 style=\"margin: 0 0 6px 0;\">{title}</h4><table>{rows}</table></div>")


class TreeMapRenderer:
    """Core map rendering using Folium."""

    def __init__(self, config):
        self.config = config
        self.fields = config.get_field_mapping()

    def create_base_map(self, view: MapView, basemap: str) -> folium.Map:
        lon, lat = view.center
        tiles = BASEMAPS.get(basemap, 'OpenStreetMap')
        m = folium.Map(location=[lat, lon], zoom_start=view.zoom, tiles=tiles,
                       control_scale=True, max_zoom=22)
        if isinstance(view.target, Extent):
            m.fit_bounds(view.target.to_folium_bounds())
        logger.debug(f"Created base map at {lat:.5f}, {lon:.5f} zoom {view.zoom}")
        return m

    def add_heritage_layer(self, map_obj: folium.Map, layer: LayerState) -> None:
        if not layer.visible or layer.features.is_empty:
            return
        settings = self.config.get_layer_settings(layer.key)
        gdf = layer.features.to_geodataframe()
        present = [k for k in settings['popup_fields'] if k in gdf.columns]
        folium.GeoJson(
            gdf.__geo_interface__,
            name=layer.title,
            style_function=lambda x: {'color': '#8b4513', 'weight': 2, 'fillColor': '#d2a679',
                                      'fillOpacity': 0.35},
            popup=folium.GeoJsonPopup(fields=present,
                                      aliases=[settings['popup_fields'][k] for k in present])
            if present else None,
        ).add_to(map_obj)

    def _tree_popup(self, layer: LayerState, record: FeatureRecord) -> folium.Popup:
        settings = self.config.get_layer_settings(layer.key)
        content = popup_html(record, settings['title_field'], settings['popup_fields'])
        return folium.Popup(content, max_width=350)

    def add_tree_layer(self, map_obj: folium.Map, layer: LayerState) -> None:
        if not layer.visible:
            return
        category_key = self.fields['category'].lower()
        renderer: Optional[ClusterRenderer] = layer.renderer
        reduction: Optional[ClusterConfig] = layer.feature_reduction

        if reduction is not None:
            container = MarkerCluster(
                name=layer.title,
                options={'maxClusterRadius': reduction.radius_px},
                icon_create_function=cluster_icon_function(reduction),
            )
        else:
            container = folium.FeatureGroup(name=layer.title)

        for record in layer.features:
            if record.geometry is None or record.geometry.is_empty:
                continue
            point = record.geometry if record.geometry.geom_type == 'Point' else record.geometry.representative_point()
            category = record.display_value(category_key)
            color = renderer.color_for(category) if renderer else '#2e8b57'
            tooltip = record.display_value(self.config.get_layer_settings(layer.key)['title_field'])
            if reduction is not None:
                folium.Marker(
                    location=[point.y, point.x],
                    popup=self._tree_popup(layer, record),
                    tooltip=tooltip or None,
                    icon=folium.DivIcon(
                        html=f'<div style="width:12px;height:12px;border-radius:50%;background:{color};'
                             f'border:1px solid white;"></div>',
                        icon_size=(12, 12), icon_anchor=(6, 6)),
                    category=category,
                ).add_to(container)
            else:
                folium.CircleMarker(
                    location=[point.y, point.x],
                    radius=5, color='white', weight=1,
                    fill=True, fill_color=color, fill_opacity=0.9,
                    popup=self._tree_popup(layer, record),
                    tooltip=tooltip or None,
                ).add_to(container)

        container.add_to(map_obj)
        logger.info(f"Rendered {len(layer.features)} trees ({'clustered' if reduction else 'plain'})")

    def add_graphics(self, map_obj: folium.Map, overlay: GraphicsOverlay) -> None:
        if not len(overlay):
            return
        group = folium.FeatureGroup(name="Highlights")
        for graphic in overlay:
            self._add_graphic(group, graphic)
        group.add_to(map_obj)

    def _add_graphic(self, group: folium.FeatureGroup, graphic: Graphic) -> None:
        symbol = graphic.symbol
        geometry = graphic.geometry
        color = css_color(symbol.get('color', 'orange'))
        outline = symbol.get('outline', {})

        if symbol['type'] == 'simple-fill' or is_area_geometry(geometry):
            folium.GeoJson(
                geometry.__geo_interface__,
                style_function=lambda x, c=color, o=outline: {
                    'fillColor': c, 'fillOpacity': 1 if c.startswith('rgba') else 0.3,
                    'color': css_color(o.get('color', c)), 'weight': o.get('width', 2)},
            ).add_to(group)
            return

        point = geometry if geometry.geom_type == 'Point' else geometry.representative_point()
        size = symbol.get('size', 12)
        border = f"{outline.get('width', 1)}px solid {css_color(outline.get('color', 'white'))}"
        if symbol.get('style') == 'diamond':
            folium.Marker(
                location=[point.y, point.x],
                icon=folium.DivIcon(
                    html=f'<div style="width:{size}px;height:{size}px;background:{color};'
                         f'border:{border};transform:rotate(45deg);"></div>',
                    icon_size=(size, size), icon_anchor=(size // 2, size // 2)),
            ).add_to(group)
        else:
            folium.CircleMarker(
                location=[point.y, point.x], radius=size / 2,
                color=css_color(outline.get('color', 'white')), weight=outline.get('width', 1),
                fill=True, fill_color=color, fill_opacity=1.0,
            ).add_to(group)

    def create_legend(self, renderer: Optional[ClusterRenderer], title: str) -> str:
        if renderer is None or not renderer.fields:
            return ""
        items = "".join(
            f'<div style="margin: 3px 0; display: flex; align-items: center;">'
            f'<span style="background-color: {f.color}; width: 12px; height: 12px; border-radius: 50%; '
            f'display: inline-block; margin-right: 8px; border: 1px solid #ccc;"></span>'
            f'<span style="font-size: 11px;">{html.escape(f.label)}</span></div>'
            for f in renderer.fields
        )
        return f"""
        <div style="position: fixed; bottom: 40px; right: 12px; width: 200px; max-height: 260px;
                    overflow-y: auto; background-color: white; border: 2px solid grey; z-index: 9999;
                    font-size: 12px; padding: 10px; border-radius: 5px;
                    box-shadow: 0 2px 4px rgba(0,0,0,0.2);">
        <h4 style="margin: 0 0 8px 0; font-size: 13px; color: #333;">{html.escape(title)}</h4>
        {items}
        </div>
        """

    def build_map(self, session) -> folium.Map:
        """Assemble the complete map for ``session``."""
        m = self.create_base_map(session.view, session.basemap)
        if 'heritage' in session.layers:
            self.add_heritage_layer(m, session.layers['heritage'])
        self.add_tree_layer(m, session.tree_layer)
        self.add_graphics(m, session.overlay)

        legend_html = self.create_legend(session.tree_layer.renderer, session.tree_layer.title)
        if legend_html:
            m.get_root().html.add_child(folium.Element(legend_html))

        folium.LayerControl().add_to(m)
        Fullscreen().add_to(m)
        return m
