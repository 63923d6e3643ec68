"""
Metric values served to autoscalers.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional


@dataclass
class Value:
    """The value of a metric.

    ``base`` is served when a query carries no selector, or a selector the
    value does not know about. ``selectors`` holds more granular values keyed
    by label, then by label value, so one computation can expose
    ``?labelSelector=region=A``, ``region=B`` and so on without registering a
    metric per dimension::

        v = Value(total)
        v.add_selector("region", "A", a_count)
        v.add_selector("region", "B", b_count)
    """
    base: int = 0
    selectors: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def add_selector(self, label: str, value: str, scalar: int) -> None:
        """Set the scalar served for ``label=value``; last write wins."""
        self.selectors.setdefault(label, {})[value] = int(scalar)

    def resolve(self, label: Optional[str] = None, value: Optional[str] = None) -> int:
        """Return the scalar for ``label=value``, falling back to ``base``."""
        if not label or not value:
            return self.base

        return self.selectors.get(label, {}).get(value, self.base)

    def copy(self) -> "Value":
        """Return a deep copy, detached from further ``add_selector`` calls."""
        return Value(
            base=self.base,
            selectors={label: dict(values) for label, values in self.selectors.items()}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"base": self.base, "selectors": self.copy().selectors}


def new_value(base: int) -> Value:
    """Create a Value with ``base`` and no selectors."""
    return Value(base=int(base))
