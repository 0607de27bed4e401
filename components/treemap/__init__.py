"""
Tree Map Component - feature search, filtering and result table for the Hue tree map.

Queries the tree/heritage feature service (or a local GeoDataFrame), keeps the
area -> road filter cascade consistent, renders sortable result tables and
drives the map focus, clustering and buffer tools.

Maps are rendered using Folium inside the Streamlit page.
"""

from .config import AppVariantManager, TreeMapConfig, get_treemap_config
from .exceptions import NoCriteriaError, QueryError, TreeMapError, ValidationError
from .gateway import ArcGISFeatureGateway, GeoDataFrameGateway
from .page import render_tree_map_page
from .predicates import build_category_predicate, build_predicate
from .session import MapSession

__all__ = [
    'render_tree_map_page',
    'TreeMapConfig',
    'AppVariantManager',
    'get_treemap_config',
    'MapSession',
    'ArcGISFeatureGateway',
    'GeoDataFrameGateway',
    'build_predicate',
    'build_category_predicate',
    'TreeMapError',
    'ValidationError',
    'NoCriteriaError',
    'QueryError',
]
