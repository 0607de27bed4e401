"""
Cluster and buffer tools for the tree layer.

Clustering is a toggle that only becomes available once a category renderer has
been prepared from the layer's category distribution. The buffer tool draws a
metric radius around the selected feature and frames it.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import matplotlib.pyplot as plt
import matplotlib.colors as mcolors
import numpy as np
from pyproj import CRS, Transformer
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform

from .exceptions import ValidationError
from .focus import (BUFFER_SYMBOL, SELECTED_SYMBOL, Graphic, MapFocusCoordinator)
from .predicates import MatchAll, Predicate
from .records import Extent, FeatureRecord, ResultSet

logger = logging.getLogger(__name__)

SUPPORTED_UNITS = {'meters': 1.0, 'kilometers': 1000.0, 'feet': 0.3048}
UNKNOWN_CATEGORY_COLOR = '#999999'


@dataclass(frozen=True)
class CategoryField:
    """One slice of the cluster pie: a category value and its colour."""

    name: str
    color: str
    label: str


@dataclass(frozen=True)
class ClusterRenderer:
    shape: str
    fields: tuple

    def color_for(self, category: Any) -> str:
        for category_field in self.fields:
            if category_field.name == category:
                return category_field.color
        return UNKNOWN_CATEGORY_COLOR

    def color_map(self) -> Dict[str, str]:
        return {f.name: f.color for f in self.fields}


@dataclass(frozen=True)
class ClusterConfig:
    """Feature reduction applied to the tree layer when clustering is on."""

    renderer: ClusterRenderer
    radius_px: int = 80
    popup_title: str = "{cluster_count} trees"
    caption: str = "Tree type distribution"


class ClusterRendererFactory:
    """Builds a category pie renderer from the layer's distinct categories."""

    def __init__(self, colormap: str = 'tab10'):
        self.colormap = colormap

    def palette(self, n_colors: int) -> List[str]:
        """Distinct colours: listed colormaps cycle their entries, continuous ones are sampled evenly."""
        if n_colors <= 0:
            return []
        cmap = plt.get_cmap(self.colormap)
        if isinstance(cmap, mcolors.ListedColormap) and cmap.N <= 20:
            return [mcolors.rgb2hex(cmap(i % cmap.N)) for i in range(n_colors)]
        return [mcolors.rgb2hex(cmap(x)) for x in np.linspace(0, 1, n_colors)]

    def prepare(self, categories: Union[ResultSet, Sequence[str]], category_field: str = 'loaicay',
                shape: str = 'donut') -> ClusterRenderer:
        """
        Create the renderer.

        Args:
            categories: Distinct-category result set, or the category values themselves
            category_field: Attribute holding the category in the result set
            shape: 'pie' or 'donut'
        """
        if isinstance(categories, ResultSet):
            values = categories.distinct_values(category_field)
        else:
            values = sorted({str(c) for c in categories if c not in (None, "")})
        colors = self.palette(len(values))
        fields = tuple(CategoryField(v, c, v) for v, c in zip(values, colors))
        logger.info(f"Prepared {shape} cluster renderer with {len(fields)} categories")
        return ClusterRenderer(shape, fields)


@dataclass
class LayerState:
    """Client-side state of a displayed feature layer."""

    key: str
    title: str
    visible: bool = True
    definition_expression: Predicate = field(default_factory=MatchAll)
    feature_reduction: Optional[ClusterConfig] = None
    renderer: Optional[ClusterRenderer] = None
    features: ResultSet = field(default_factory=ResultSet)
    revision: int = 0

    def refresh(self) -> None:
        """Force the layer to be redrawn."""
        self.revision += 1


class ClusterState(Enum):
    PREPARING = "preparing"
    READY = "ready"
    FAILED = "failed"


class ClusterController:
    """Cluster mode toggle, enabled only once the renderer is prepared."""

    def __init__(self, layer: LayerState, radius_px: int = 80,
                 popup_title: str = "{cluster_count} trees", caption: str = "Tree type distribution"):
        self.layer = layer
        self.radius_px = radius_px
        self.popup_title = popup_title
        self.caption = caption
        self.state = ClusterState.PREPARING
        self.config: Optional[ClusterConfig] = None

    @property
    def toggle_enabled(self) -> bool:
        return self.state is ClusterState.READY

    @property
    def is_on(self) -> bool:
        return self.layer.feature_reduction is not None

    def begin_preparation(self) -> None:
        self.state = ClusterState.PREPARING
        self.config = None

    def complete_preparation(self, renderer: ClusterRenderer) -> ClusterConfig:
        self.config = ClusterConfig(renderer, self.radius_px, self.popup_title, self.caption)
        self.layer.renderer = renderer
        self.state = ClusterState.READY
        self.layer.refresh()
        return self.config

    def fail_preparation(self, error: BaseException) -> None:
        logger.error(f"Failed to create cluster renderer: {error}")
        self.state = ClusterState.FAILED
        self.config = None

    def set_cluster_mode(self, on: bool) -> None:
        """Apply or remove the cluster configuration and redraw the layer."""
        if not self.toggle_enabled:
            raise ValidationError("Clustering is not available yet")
        self.layer.feature_reduction = self.config if on else None
        self.layer.refresh()
        logger.info(f"Cluster mode {'on' if on else 'off'}")


class BufferService:
    """Metric buffers around lon/lat geometries using a local equidistant projection."""

    def buffer(self, geometry: BaseGeometry, distance: float, unit: str = 'meters') -> BaseGeometry:
        if unit not in SUPPORTED_UNITS:
            raise ValueError(f"Unsupported buffer unit: {unit}")
        meters = distance * SUPPORTED_UNITS[unit]
        centroid = geometry.centroid
        local = CRS.from_proj4(
            f"+proj=aeqd +lat_0={centroid.y} +lon_0={centroid.x} +datum=WGS84 +units=m +no_defs"
        )
        to_local = Transformer.from_crs("EPSG:4326", local, always_xy=True)
        to_wgs84 = Transformer.from_crs(local, "EPSG:4326", always_xy=True)
        projected = transform(to_local.transform, geometry)
        return transform(to_wgs84.transform, projected.buffer(meters, quad_segs=32))


def parse_distance(value: Any) -> float:
    """
    Parse a user supplied buffer distance.

    Raises:
        ValidationError: unless the value is a finite number greater than zero
    """
    try:
        distance = float(str(value).strip()) if value is not None else float('nan')
    except ValueError:
        distance = float('nan')
    if not (distance > 0) or not math.isfinite(distance):
        raise ValidationError("Enter a valid distance in meters.")
    return distance


class BufferTool:
    """Buffers the selected feature and frames the result."""

    def __init__(self, focus: MapFocusCoordinator, service: BufferService = None,
                 unit: str = 'meters', extent_padding: float = 1.2):
        self.focus = focus
        self.service = service or BufferService()
        self.unit = unit
        self.extent_padding = extent_padding
        self.last_buffer: Optional[BaseGeometry] = None

    def run(self, selected: Optional[FeatureRecord], distance: Any) -> BaseGeometry:
        """
        Draw a buffer around ``selected``.

        Args:
            selected: The currently selected feature
            distance: Buffer distance (number or text)

        Returns:
            The buffer polygon, for the follow-up intersect query

        Raises:
            ValidationError: without a selected feature or with an invalid distance
        """
        if selected is None or selected.extent is None:
            raise ValidationError("Please click a tree on the map first.")
        meters = parse_distance(distance)

        buffer_geometry = self.service.buffer(selected.geometry, meters, self.unit)
        self.focus.show(
            [Graphic(buffer_geometry, BUFFER_SYMBOL), Graphic.for_record(selected, SELECTED_SYMBOL)],
            Extent.from_geometry(buffer_geometry).expand(self.extent_padding),
        )
        self.last_buffer = buffer_geometry
        logger.info(f"Buffered feature {selected.object_id} by {meters} {self.unit}")
        return buffer_geometry
