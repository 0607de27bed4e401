"""
Feature records, result sets and extents.

Records are transient views of what the feature service returned. Attribute
keys are lower-cased on the way in because the service answers with lower-case
field names even when the query used the original casing.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

import geopandas as gpd
from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)

WGS84 = "EPSG:4326"
AREA_GEOMETRY_TYPES = ('Polygon', 'MultiPolygon')


@dataclass(frozen=True)
class Extent:
    """Axis-aligned bounding box in lon/lat."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.xmin + self.xmax) / 2, (self.ymin + self.ymax) / 2)

    def expand(self, factor: float) -> "Extent":
        """Scale width and height by ``factor`` around the centre."""
        cx, cy = self.center
        half_w = self.width * factor / 2
        half_h = self.height * factor / 2
        return Extent(cx - half_w, cy - half_h, cx + half_w, cy + half_h)

    def union(self, other: "Extent") -> "Extent":
        return Extent(min(self.xmin, other.xmin), min(self.ymin, other.ymin),
                      max(self.xmax, other.xmax), max(self.ymax, other.ymax))

    def to_folium_bounds(self) -> List[List[float]]:
        """[[south, west], [north, east]] as expected by ``folium.Map.fit_bounds``."""
        return [[self.ymin, self.xmin], [self.ymax, self.xmax]]

    @classmethod
    def from_geometry(cls, geometry: BaseGeometry) -> "Extent":
        minx, miny, maxx, maxy = geometry.bounds
        return cls(minx, miny, maxx, maxy)


def is_area_geometry(geometry: Optional[BaseGeometry]) -> bool:
    return geometry is not None and geometry.geom_type in AREA_GEOMETRY_TYPES


@dataclass
class FeatureRecord:
    """One feature: identifier, attributes and geometry."""

    object_id: Any
    attributes: Dict[str, Any] = field(default_factory=dict)
    geometry: Optional[BaseGeometry] = None

    def __post_init__(self):
        self.attributes = {str(k).lower(): v for k, v in self.attributes.items()}

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key.lower(), default)

    def display_value(self, key: str) -> str:
        value = self.get(key)
        return "" if value is None else str(value)

    @property
    def extent(self) -> Optional[Extent]:
        if self.geometry is None or self.geometry.is_empty:
            return None
        return Extent.from_geometry(self.geometry)

    @property
    def center(self) -> Optional[Tuple[float, float]]:
        """Extent centre for areas, the point itself otherwise."""
        if self.geometry is None or self.geometry.is_empty:
            return None
        if self.geometry.geom_type == 'Point':
            return (self.geometry.x, self.geometry.y)
        return self.extent.center


@dataclass(frozen=True)
class ResultSet:
    """Ordered records returned by a single query."""

    features: Tuple[FeatureRecord, ...] = ()
    fields: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self) -> Iterator[FeatureRecord]:
        return iter(self.features)

    def __getitem__(self, index: int) -> FeatureRecord:
        return self.features[index]

    @property
    def is_empty(self) -> bool:
        return len(self.features) == 0

    def distinct_values(self, key: str) -> List[str]:
        """Sorted, de-duplicated, non-empty values of one attribute."""
        values = {record.get(key) for record in self.features}
        return sorted(str(v) for v in values if v not in (None, ""))

    def extent(self) -> Optional[Extent]:
        extents = [record.extent for record in self.features if record.extent is not None]
        if not extents:
            return None
        result = extents[0]
        for other in extents[1:]:
            result = result.union(other)
        return result

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        rows = [dict(record.attributes, object_id=record.object_id) for record in self.features]
        geometries = [record.geometry for record in self.features]
        return gpd.GeoDataFrame(rows, geometry=geometries, crs=WGS84)

    @classmethod
    def from_records(cls, records: Sequence[FeatureRecord], fields: Sequence[str] = ()) -> "ResultSet":
        return cls(tuple(records), tuple(fields))
