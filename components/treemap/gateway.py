"""
Feature query gateways.

The gateway is the only place that talks to a feature source. The remote
implementation speaks the ArcGIS REST ``query`` endpoint; the local one runs the
same contract against a GeoDataFrame so demos and tests work without network.
"""

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import geopandas as gpd
import pandas as pd
import requests
from shapely.geometry import (LineString, MultiLineString, MultiPoint, MultiPolygon,
                              Point, Polygon)
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import LinearRing, orient

from .exceptions import QueryError
from .predicates import MatchAll, Predicate
from .records import WGS84, Extent, FeatureRecord, ResultSet

logger = logging.getLogger(__name__)

PredicateLike = Union[Predicate, str, None]


def _where(predicate: PredicateLike) -> str:
    if predicate is None:
        return MatchAll().to_where()
    if isinstance(predicate, Predicate):
        return predicate.to_where()
    return str(predicate)


class FeatureQueryGateway:
    """Contract shared by every feature source."""

    def query(self, predicate: PredicateLike = None, fields: Sequence[str] = ("*",),
              want_geometry: bool = True, distinct: bool = False,
              order_by: Sequence[str] = (), geometry: Optional[BaseGeometry] = None) -> ResultSet:
        """
        Run an attribute and/or spatial query.

        Args:
            predicate: Structured predicate (or raw where string); None matches all
            fields: Fields to return, ``*`` for all
            want_geometry: Whether geometries are needed
            distinct: Return distinct value combinations of ``fields``
            order_by: Fields to order by
            geometry: Optional geometry the features must intersect

        Returns:
            ResultSet with lower-cased attribute keys

        Raises:
            QueryError: on network or service failure
        """
        raise NotImplementedError

    def query_extent(self, predicate: PredicateLike = None) -> Extent:
        raise NotImplementedError


# --- Esri JSON geometry conversion -------------------------------------------------

def esri_to_shapely(geometry: Optional[Dict[str, Any]]) -> Optional[BaseGeometry]:
    """Convert an Esri JSON geometry to Shapely (outer rings are clockwise in Esri JSON)."""
    if not geometry:
        return None
    if 'x' in geometry and 'y' in geometry:
        if geometry['x'] is None or geometry['y'] is None:
            return None
        return Point(geometry['x'], geometry['y'])
    if 'points' in geometry:
        return MultiPoint([tuple(p[:2]) for p in geometry['points']])
    if 'paths' in geometry:
        paths = [LineString([tuple(p[:2]) for p in path]) for path in geometry['paths']]
        return paths[0] if len(paths) == 1 else MultiLineString(paths)
    if 'rings' in geometry:
        shells, holes = [], []
        for ring in geometry['rings']:
            coords = [tuple(p[:2]) for p in ring]
            if len(coords) < 4:
                continue
            (holes if LinearRing(coords).is_ccw else shells).append(coords)
        polygons = []
        for shell in shells:
            shell_polygon = Polygon(shell)
            inner = [h for h in holes if shell_polygon.contains(Polygon(h).representative_point())]
            polygons.append(Polygon(shell, inner))
        if not polygons:
            return None
        return polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)
    logger.warning(f"Unsupported Esri geometry keys: {sorted(geometry.keys())}")
    return None


def shapely_to_esri(geometry: BaseGeometry, wkid: int = 4326) -> Dict[str, Any]:
    """Convert a Shapely geometry to Esri JSON for spatial filters."""
    spatial_reference = {"wkid": wkid}
    if geometry.geom_type == 'Point':
        return {"x": geometry.x, "y": geometry.y, "spatialReference": spatial_reference}
    if geometry.geom_type in ('Polygon', 'MultiPolygon'):
        polygons = [geometry] if geometry.geom_type == 'Polygon' else list(geometry.geoms)
        rings = []
        for polygon in polygons:
            oriented = orient(polygon, sign=-1.0)
            rings.append([list(c) for c in oriented.exterior.coords])
            rings.extend([list(c) for c in interior.coords] for interior in oriented.interiors)
        return {"rings": rings, "spatialReference": spatial_reference}
    if geometry.geom_type in ('LineString', 'MultiLineString'):
        lines = [geometry] if geometry.geom_type == 'LineString' else list(geometry.geoms)
        return {"paths": [[list(c) for c in line.coords] for line in lines],
                "spatialReference": spatial_reference}
    raise ValueError(f"Unsupported geometry type for spatial filter: {geometry.geom_type}")


ESRI_GEOMETRY_TYPES = {
    'Point': 'esriGeometryPoint',
    'Polygon': 'esriGeometryPolygon',
    'MultiPolygon': 'esriGeometryPolygon',
    'LineString': 'esriGeometryPolyline',
    'MultiLineString': 'esriGeometryPolyline',
}


class ArcGISFeatureGateway(FeatureQueryGateway):
    """Gateway for one layer of an ArcGIS FeatureServer."""

    def __init__(self, layer_url: str, timeout_s: float = 30, session: requests.Session = None):
        self.layer_url = layer_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"ArcGISFeatureGateway({self.layer_url!r})"

    def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.layer_url}/query"
        try:
            response = self.session.post(url, data=params, timeout=self.timeout_s)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            logger.error(f"Feature query to {url} failed: {e}")
            raise QueryError(f"Feature service request failed: {e}", url=url) from e
        except ValueError as e:
            logger.error(f"Feature service at {url} returned invalid JSON: {e}")
            raise QueryError("Feature service returned an invalid response", url=url) from e

        if 'error' in payload:
            error = payload['error'] or {}
            logger.error(f"Feature service error from {url}: {error}")
            raise QueryError(error.get('message', 'Feature service error'), url=url, details=error)
        return payload

    def query(self, predicate: PredicateLike = None, fields: Sequence[str] = ("*",),
              want_geometry: bool = True, distinct: bool = False,
              order_by: Sequence[str] = (), geometry: Optional[BaseGeometry] = None) -> ResultSet:
        params: Dict[str, Any] = {
            "f": "json",
            "where": _where(predicate),
            "outFields": ",".join(fields) if fields else "*",
            "returnGeometry": json.dumps(bool(want_geometry)),
            "outSR": 4326,
        }
        if distinct:
            params["returnDistinctValues"] = "true"
        if order_by:
            params["orderByFields"] = ",".join(order_by)
        if geometry is not None:
            params.update({
                "geometry": json.dumps(shapely_to_esri(geometry)),
                "geometryType": ESRI_GEOMETRY_TYPES.get(geometry.geom_type, 'esriGeometryPolygon'),
                "inSR": 4326,
                "spatialRel": "esriSpatialRelIntersects",
            })

        payload = self._request(params)
        oid_field = (payload.get('objectIdFieldName') or 'OBJECTID').lower()
        records = []
        for index, feature in enumerate(payload.get('features', [])):
            attributes = feature.get('attributes') or {}
            lowered = {str(k).lower(): v for k, v in attributes.items()}
            records.append(FeatureRecord(
                object_id=lowered.get(oid_field, index),
                attributes=lowered,
                geometry=esri_to_shapely(feature.get('geometry')) if want_geometry else None,
            ))
        if payload.get('exceededTransferLimit'):
            logger.warning(f"Transfer limit exceeded for {self.layer_url}, results truncated at {len(records)}")
        logger.debug(f"Query on {self.layer_url} returned {len(records)} features")
        return ResultSet.from_records(records, fields)

    def query_extent(self, predicate: PredicateLike = None) -> Extent:
        payload = self._request({
            "f": "json",
            "where": _where(predicate),
            "returnExtentOnly": "true",
            "outSR": 4326,
        })
        extent = payload.get('extent') or {}
        try:
            values = [float(extent[k]) for k in ('xmin', 'ymin', 'xmax', 'ymax')]
        except (KeyError, TypeError, ValueError) as e:
            raise QueryError("Feature service returned no extent", url=self.layer_url) from e
        if not all(math.isfinite(v) for v in values):
            raise QueryError("Feature service returned an empty extent", url=self.layer_url)
        return Extent(*values)


class GeoDataFrameGateway(FeatureQueryGateway):
    """Gateway over an in-memory GeoDataFrame, evaluating structured predicates with pandas."""

    def __init__(self, data: gpd.GeoDataFrame, object_id_field: str = None):
        if data.crs is not None and data.crs.to_string() != WGS84:
            logger.info(f"Reprojecting local features from {data.crs} to {WGS84}")
            data = data.to_crs(WGS84)
        data = data.copy()
        data.columns = [c if c == data.geometry.name else str(c).lower() for c in data.columns]
        self.data = data
        self.object_id_field = object_id_field.lower() if object_id_field else None

    @classmethod
    def from_file(cls, path: str, object_id_field: str = None) -> "GeoDataFrameGateway":
        if not Path(path).exists():
            raise FileNotFoundError(f"Feature file not found: {path}")
        data = gpd.read_file(path)
        logger.info(f"Loaded {len(data)} local features from {path}")
        return cls(data, object_id_field)

    def _select(self, predicate: PredicateLike, geometry: Optional[BaseGeometry]) -> gpd.GeoDataFrame:
        frame = self.data
        if predicate is not None:
            if not isinstance(predicate, Predicate):
                raise QueryError(f"Local source needs a structured predicate, got {predicate!r}")
            try:
                frame = frame[predicate.mask(frame)]
            except KeyError as e:
                raise QueryError(f"Invalid field in predicate: {e}") from e
        if geometry is not None:
            frame = frame[frame.intersects(geometry)]
        return frame

    def _columns(self, fields: Sequence[str]) -> List[str]:
        if not fields or "*" in fields:
            return [c for c in self.data.columns if c != self.data.geometry.name]
        columns = []
        for name in fields:
            if name.lower() not in self.data.columns:
                raise QueryError(f"Field {name} not found in local source")
            columns.append(name.lower())
        return columns

    def query(self, predicate: PredicateLike = None, fields: Sequence[str] = ("*",),
              want_geometry: bool = True, distinct: bool = False,
              order_by: Sequence[str] = (), geometry: Optional[BaseGeometry] = None) -> ResultSet:
        frame = self._select(predicate, geometry)
        columns = self._columns(fields)

        if distinct:
            frame = frame.drop_duplicates(subset=columns)
        if order_by:
            frame = frame.sort_values([c.lower() for c in order_by], kind="stable")

        records = []
        geometry_column = self.data.geometry.name
        for index, row in frame.iterrows():
            attributes = {c: (None if pd.isna(row[c]) else row[c]) for c in columns}
            object_id = row[self.object_id_field] if self.object_id_field else index
            records.append(FeatureRecord(
                object_id=object_id,
                attributes=attributes,
                geometry=row[geometry_column] if want_geometry else None,
            ))
        logger.debug(f"Local query matched {len(records)} features")
        return ResultSet.from_records(records, fields)

    def query_extent(self, predicate: PredicateLike = None) -> Extent:
        frame = self._select(predicate, None)
        if frame.empty:
            raise QueryError("No features to compute an extent from")
        minx, miny, maxx, maxy = frame.total_bounds
        return Extent(float(minx), float(miny), float(maxx), float(maxy))
