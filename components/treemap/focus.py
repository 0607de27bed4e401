"""
Map focus coordination.

The view model (camera position, pending navigation target) and the graphics
overlay are the only map state the application owns. Focusing on a feature
always replaces every highlight graphic and then navigates.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pyproj import Geod
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry
from shapely.ops import nearest_points

from .records import Extent, FeatureRecord, is_area_geometry

logger = logging.getLogger(__name__)

# Web Mercator scale denominator at zoom 0 for 96 dpi screens
ZOOM0_SCALE = 591657527.591555
METERS_PER_PIXEL_AT_SCALE_1 = 0.0254 / 96

HIGHLIGHT_SYMBOL = {
    'type': 'simple-marker', 'style': 'diamond', 'size': 16,
    'color': 'orange', 'outline': {'width': 2, 'color': 'white'}
}
SELECTED_SYMBOL = {
    'type': 'simple-marker', 'style': 'circle', 'size': 14,
    'color': '#00bfff', 'outline': {'width': 2, 'color': 'white'}
}
BUFFER_SYMBOL = {
    'type': 'simple-fill', 'color': [0, 0, 0, 0.1],
    'outline': {'color': [0, 0, 0, 0.6], 'width': 2}
}
BUFFER_HIT_SYMBOL = {
    'type': 'simple-marker', 'style': 'circle', 'size': 10,
    'color': 'green', 'outline': {'color': 'white', 'width': 1}
}


def scale_to_zoom(scale: float) -> int:
    return max(0, min(22, int(round(math.log2(ZOOM0_SCALE / scale)))))


def zoom_to_scale(zoom: float) -> float:
    return ZOOM0_SCALE / (2 ** zoom)


@dataclass
class Graphic:
    """A geometry drawn on top of the layers with a fixed symbol."""

    geometry: BaseGeometry
    symbol: Dict[str, Any]
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_record(cls, record: FeatureRecord, symbol: Dict[str, Any]) -> "Graphic":
        return cls(record.geometry, symbol, dict(record.attributes))


class GraphicsOverlay:
    """Highlight graphics, always replaced wholesale."""

    def __init__(self):
        self.graphics: List[Graphic] = []

    def __len__(self) -> int:
        return len(self.graphics)

    def __iter__(self):
        return iter(self.graphics)

    def clear(self) -> None:
        self.graphics = []

    def add(self, graphic: Graphic) -> None:
        self.graphics.append(graphic)

    def add_many(self, graphics: Iterable[Graphic]) -> None:
        self.graphics.extend(graphics)


@dataclass(frozen=True)
class Viewpoint:
    center: Tuple[float, float]
    scale: float


NavigationTarget = Union[Extent, Viewpoint]


class MapView:
    """Camera state of the map plus the last navigation request."""

    def __init__(self, center: Tuple[float, float], scale: float, hit_tolerance_px: int = 10):
        self.center = center
        self.scale = scale
        self.hit_tolerance_px = hit_tolerance_px
        self.target: Optional[NavigationTarget] = None
        self.home: Optional[Extent] = None
        self._geod = Geod(ellps="WGS84")

    @property
    def zoom(self) -> int:
        return scale_to_zoom(self.scale)

    def go_to(self, target: NavigationTarget) -> None:
        """Navigate to an extent or a centre/scale viewpoint."""
        self.target = target
        if isinstance(target, Extent):
            self.center = target.center
        else:
            self.center = target.center
            self.scale = target.scale
        logger.debug(f"View navigating to {target}")

    def sync(self, center: Tuple[float, float], zoom: float) -> None:
        """Record where the user panned/zoomed the rendered map."""
        self.target = None
        self.center = center
        self.scale = zoom_to_scale(zoom)

    def meters_per_pixel(self) -> float:
        return self.scale * METERS_PER_PIXEL_AT_SCALE_1

    def _distance_m(self, point: Point, geometry: BaseGeometry) -> float:
        if is_area_geometry(geometry) and geometry.contains(point):
            return 0.0
        _, nearest = nearest_points(point, geometry)
        _, _, distance = self._geod.inv(point.x, point.y, nearest.x, nearest.y)
        return distance

    def hit_test(self, point: Tuple[float, float],
                 candidates: Iterable[FeatureRecord]) -> Optional[FeatureRecord]:
        """
        Find the feature under a clicked lon/lat point.

        Args:
            point: (lon, lat) of the click
            candidates: Features currently drawn on the layer

        Returns:
            Nearest feature within the pixel tolerance, or None
        """
        click = Point(point)
        tolerance_m = self.hit_tolerance_px * self.meters_per_pixel()
        best, best_distance = None, None
        for record in candidates:
            if record.geometry is None or record.geometry.is_empty:
                continue
            distance = self._distance_m(click, record.geometry)
            if distance <= tolerance_m and (best_distance is None or distance < best_distance):
                best, best_distance = record, distance
        return best


class MapFocusCoordinator:
    """Clears and redraws highlights, then moves the view."""

    def __init__(self, view: MapView, overlay: GraphicsOverlay,
                 focus_scale: float = 2000, extent_padding: float = 1.2):
        self.view = view
        self.overlay = overlay
        self.focus_scale = focus_scale
        self.extent_padding = extent_padding

    def target_for(self, record: FeatureRecord, scale: Optional[float] = None) -> NavigationTarget:
        if is_area_geometry(record.geometry):
            return record.extent.expand(self.extent_padding)
        return Viewpoint(record.center, scale or self.focus_scale)

    def show(self, graphics: Iterable[Graphic], target: Optional[NavigationTarget] = None) -> None:
        self.overlay.clear()
        self.overlay.add_many(graphics)
        if target is not None:
            self.view.go_to(target)

    def focus_record(self, record: FeatureRecord, scale: Optional[float] = None,
                     symbol: Dict[str, Any] = None) -> bool:
        """
        Highlight one record and centre the view on it.

        Previous highlights are always cleared. Returns False, leaving the view
        where it is, when the record has no usable geometry.
        """
        if record.extent is None:
            self.overlay.clear()
            logger.warning(f"Feature {record.object_id} has no geometry to focus on")
            return False
        self.show([Graphic.for_record(record, symbol or HIGHLIGHT_SYMBOL)], self.target_for(record, scale))
        return True
