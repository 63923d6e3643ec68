"""
Request parsing and metric lookup for the external metrics API.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from shared.logging import get_logger
from shared.errors import MalformedRequestError, MetricNotFoundError

from ..registry import MetricRegistry


API_GROUP = "external.metrics.k8s.io"
API_VERSION = "v1beta1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
API_PREFIX = f"/apis/{API_GROUP_VERSION}"
NAMESPACES_PREFIX = f"{API_PREFIX}/namespaces/"

LABEL_SELECTOR_PARAM = "labelSelector"


@dataclass
class MetricQuery:
    """A parsed external metric request."""
    namespace: str
    name: str
    label: Optional[str] = None
    value: Optional[str] = None

    @property
    def has_selector(self) -> bool:
        return bool(self.label and self.value)


def parse_metric_path(path: str) -> Tuple[str, str]:
    """Split ``<prefix>/namespaces/<namespace>/<metric>`` into namespace and metric name.

    Anything other than exactly two non-empty segments after the prefix is
    rejected with MalformedRequestError.
    """
    if not path.startswith(NAMESPACES_PREFIX):
        raise MalformedRequestError(f"unable to parse url {path}", {"path": path})

    parts = path[len(NAMESPACES_PREFIX):].split("/")
    if len(parts) != 2 or not all(parts):
        raise MalformedRequestError(f"unable to parse url {path}", {"path": path})

    return parts[0], parts[1]


def parse_label_selector(raw: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Parse ``label=value``; any other shape means no selector."""
    if not raw:
        return None, None

    parts = raw.split("=")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None, None

    return parts[0], parts[1]


def parse_query(path: str, label_selector: Optional[str] = None) -> MetricQuery:
    namespace, name = parse_metric_path(path)
    label, value = parse_label_selector(label_selector)
    return MetricQuery(namespace=namespace, name=name, label=label, value=value)


class QueryResolver:
    """Looks up the current scalar for a namespace, metric and optional selector."""

    def __init__(self, registry: MetricRegistry):
        self.registry = registry
        self.logger = get_logger("external_metrics.resolver")

    def resolve(self, namespace: str, name: str, label: Optional[str] = None,
                value: Optional[str] = None) -> int:
        """Return the metric's scalar.

        Unknown namespaces and metric names raise MetricNotFoundError. An
        absent or unknown selector is not an error: the base value is returned.
        """
        if not self.registry.has_namespace(namespace):
            raise MetricNotFoundError(
                f"Namespace {namespace} either does not exist, or has no metrics stored against it",
                {"namespace": namespace}
            )

        stored = self.registry.lookup(namespace, name)
        if stored is None:
            raise MetricNotFoundError(
                f"Metric {name} does not exist under namespace {namespace}",
                {"namespace": namespace, "name": name}
            )

        return stored.resolve(label, value)

    def resolve_query(self, query: MetricQuery) -> int:
        return self.resolve(query.namespace, query.name, query.label, query.value)
