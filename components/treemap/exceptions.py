"""
Error taxonomy for the tree map finder.

Validation problems are reported to the user and abort the operation without
touching state. Query problems are logged and reported with a generic notice
while previously displayed results stay on screen.
"""


class TreeMapError(Exception):
    """Base class for tree map errors."""


class ValidationError(TreeMapError):
    """User input that cannot be acted on (missing selection, bad distance...)."""


class NoCriteriaError(ValidationError):
    """Raised when a search is requested without any filter criteria."""

    def __init__(self, message: str = "Please enter a tree name or select a road/area"):
        super().__init__(message)


class QueryError(TreeMapError):
    """Remote feature service failure (network, HTTP or service error payload)."""

    def __init__(self, message: str, url: str = None, details: dict = None):
        super().__init__(message)
        self.url = url
        self.details = details or {}


class PredicateEscapingError(TreeMapError):
    """
    Internal invariant violation: a literal reached predicate serialization
    with an unpaired quote. Never user facing.
    """
