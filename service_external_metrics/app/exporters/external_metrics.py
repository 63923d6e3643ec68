"""
Response rendering for the external.metrics.k8s.io API.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import SerializationError

from ..query.resolver import API_GROUP_VERSION, MetricQuery


# Decimal SI suffixes by power of ten, as used by Kubernetes quantities
_DECIMAL_SI_SUFFIXES = {3: "k", 6: "M", 9: "G", 12: "T", 15: "P", 18: "E"}


def format_quantity(scalar: int) -> str:
    """Render an integer in canonical Kubernetes decimal-SI form.

    Trailing zeros are folded into the largest suffix that keeps the mantissa
    an integer: 10 -> "10", 1500 -> "1500", 2000 -> "2k", -3000000 -> "-3M".
    """
    if scalar == 0:
        return "0"

    mantissa = abs(scalar)
    exponent = 0
    while mantissa % 1000 == 0 and exponent < 18:
        mantissa //= 1000
        exponent += 3

    sign = "-" if scalar < 0 else ""
    return f"{sign}{mantissa}{_DECIMAL_SI_SUFFIXES.get(exponent, '')}"


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 at second precision, UTC."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ListMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource_version: str = Field(alias="resourceVersion")


class ExternalMetricValue(BaseModel):
    """One metric sample."""
    model_config = ConfigDict(populate_by_name=True)

    kind: str = "ExternalMetricValue"
    api_version: str = Field(default=API_GROUP_VERSION, alias="apiVersion")
    metric_name: str = Field(alias="metricName")
    metric_labels: Optional[Dict[str, str]] = Field(default=None, alias="metricLabels")
    timestamp: str
    value: str


class ExternalMetricValueList(BaseModel):
    """Response envelope for a metric query."""
    model_config = ConfigDict(populate_by_name=True)

    kind: str = "ExternalMetricValueList"
    api_version: str = Field(default=API_GROUP_VERSION, alias="apiVersion")
    metadata: ListMeta
    items: List[ExternalMetricValue]


def build_value_list(query: MetricQuery, scalar: int,
                     now: Optional[datetime] = None) -> ExternalMetricValueList:
    """Wrap a resolved scalar in a single-item value list."""
    now = now or datetime.now(timezone.utc)

    metric_labels = None
    if query.has_selector:
        metric_labels = {query.label: query.value}

    return ExternalMetricValueList(
        metadata=ListMeta(resource_version=str(int(now.timestamp()))),
        items=[
            ExternalMetricValue(
                metric_name=query.name,
                metric_labels=metric_labels,
                timestamp=format_timestamp(now),
                value=format_quantity(scalar)
            )
        ]
    )


def render_value_list(value_list: ExternalMetricValueList) -> bytes:
    """Serialize a value list to JSON, raising SerializationError on failure."""
    try:
        return value_list.model_dump_json(by_alias=True).encode("utf-8")
    except (ValueError, TypeError) as e:
        raise SerializationError(
            f"Unable to encode external metric value list: {e}",
            {"error_type": type(e).__name__}
        ) from e
