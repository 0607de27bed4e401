"""
Filter state controller.

Owns the area/road/name/category selections, derives predicates from them and
keeps the road option list scoped to the selected area. All remote work is
submitted through the request sequencer so only the newest answer per slot
reaches the UI.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, FrozenSet, Iterable, List, Mapping, Optional
import logging

from .gateway import FeatureQueryGateway
from .predicates import (DEFAULT_FIELDS, MatchAll, Predicate, build_area_scope_predicate,
                         build_category_predicate, build_predicate)
from .records import ResultSet
from .sequencing import RequestSequencer

logger = logging.getLogger(__name__)

SLOT_AREAS = "areas"
SLOT_ROADS = "roads"
SLOT_SEARCH = "search"


@dataclass(frozen=True)
class FilterSelection:
    """Current filter values; empty strings mean 'any'."""

    name: str = ""
    area: str = ""
    road: str = ""
    categories: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not (self.name.strip() or self.area or self.road)


class FilterStateController:
    """Cascading area -> road filter state plus name search and category filter."""

    def __init__(self, gateway: FeatureQueryGateway, sequencer: RequestSequencer,
                 fields: Optional[Mapping[str, str]] = None,
                 on_results: Optional[Callable[[ResultSet], None]] = None,
                 on_query_error: Optional[Callable[[str, BaseException], None]] = None):
        self.gateway = gateway
        self.sequencer = sequencer
        self.fields = {**DEFAULT_FIELDS, **(fields or {})}
        self.on_results = on_results
        self.on_query_error = on_query_error

        self.selection = FilterSelection()
        self.area_options: List[str] = []
        self.road_options: List[str] = []

    @property
    def search_fields(self) -> List[str]:
        return [self.fields['name'], self.fields['category'], self.fields['road'], self.fields['area']]

    def reset(self) -> None:
        self.selection = FilterSelection()
        self.area_options = []
        self.road_options = []

    def _report(self, slot: str) -> Callable[[BaseException], None]:
        def handler(error: BaseException) -> None:
            logger.error(f"{slot} query failed: {error}")
            if self.on_query_error is not None:
                self.on_query_error(slot, error)
        return handler

    def _distinct(self, field_name: str, predicate: Predicate) -> ResultSet:
        return self.gateway.query(predicate, fields=[field_name], want_geometry=False,
                                  distinct=True, order_by=[field_name])

    # --- option lists --------------------------------------------------------------

    def load_area_options(self) -> int:
        """Fetch every distinct area into ``area_options``."""
        area_field = self.fields['area']

        def apply(result: ResultSet) -> None:
            self.area_options = result.distinct_values(area_field)
            logger.info(f"Loaded {len(self.area_options)} areas")

        return self.sequencer.submit(SLOT_AREAS, self._distinct, area_field, MatchAll(),
                                     on_success=apply, on_error=self._report(SLOT_AREAS))

    def load_road_options(self, area: str = "") -> int:
        """Fetch distinct roads, scoped to ``area`` when given."""
        road_field = self.fields['road']
        scope = build_area_scope_predicate(area, self.fields['area'])

        def apply(result: ResultSet) -> None:
            self.road_options = result.distinct_values(road_field)
            logger.info(f"Loaded {len(self.road_options)} roads for area '{area or 'all'}'")

        return self.sequencer.submit(SLOT_ROADS, self._distinct, road_field, scope,
                                     on_success=apply, on_error=self._report(SLOT_ROADS))

    # --- selection setters ---------------------------------------------------------

    def set_area_filter(self, area: Optional[str]) -> int:
        """Record the area and refresh the dependent road list; the road selection resets."""
        area = area or ""
        self.selection = replace(self.selection, area=area, road="")
        logger.debug(f"Area filter set to '{area}'")
        return self.load_road_options(area)

    def set_road_filter(self, road: Optional[str]) -> None:
        self.selection = replace(self.selection, road=road or "")

    def set_name_filter(self, name: Optional[str]) -> None:
        self.selection = replace(self.selection, name=name or "")

    def set_category_filters(self, categories: Iterable[str]) -> Predicate:
        """Record the checked categories and return the layer predicate for them."""
        self.selection = replace(self.selection, categories=frozenset(categories))
        predicate = self.category_predicate
        logger.info(f"Category filter: {predicate.to_where()}")
        return predicate

    @property
    def category_predicate(self) -> Predicate:
        return build_category_predicate(self.selection.categories, self.fields['category'])

    # --- search --------------------------------------------------------------------

    def build_search_predicate(self) -> Predicate:
        """
        Predicate for the current name/road/area selection.

        Raises:
            NoCriteriaError: when nothing is selected
        """
        return build_predicate(self.selection.name.strip(), self.selection.road,
                               self.selection.area, self.fields)

    def search(self) -> int:
        """Validate the selection and submit the search query."""
        predicate = self.build_search_predicate()
        logger.info(f"Searching with: {predicate.to_where()}")

        def apply(result: ResultSet) -> None:
            logger.info(f"Search returned {len(result)} features")
            if self.on_results is not None:
                self.on_results(result)

        return self.sequencer.submit(SLOT_SEARCH, self.gateway.query, predicate,
                                     fields=self.search_fields, want_geometry=True,
                                     on_success=apply, on_error=self._report(SLOT_SEARCH))
