"""
Query parsing and resolution.
"""

from .resolver import (
    API_PREFIX,
    API_GROUP_VERSION,
    NAMESPACES_PREFIX,
    LABEL_SELECTOR_PARAM,
    MetricQuery,
    QueryResolver,
    parse_metric_path,
    parse_label_selector,
    parse_query,
)

__all__ = [
    "API_PREFIX",
    "API_GROUP_VERSION",
    "NAMESPACES_PREFIX",
    "LABEL_SELECTOR_PARAM",
    "MetricQuery",
    "QueryResolver",
    "parse_metric_path",
    "parse_label_selector",
    "parse_query",
]
