"""
Health reporting for the CKG components.

Each component reports a :class:`ComponentHealth`; :func:`aggregate`
folds them into one :class:`SystemHealth`:

* ``ok``      : every component is ok
* ``degraded``: at least one component is ok, but not all
* ``error``   : no component is ok (critical)
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

from .models import utc_now

OK = "ok"
DEGRADED = "degraded"
ERROR = "error"

_STATUS_ICONS = {OK: "[OK]", DEGRADED: "[WARN]", ERROR: "[FAIL]"}


@dataclass
class ComponentHealth:
    name: str
    status: str
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == OK


@dataclass
class SystemHealth:
    status: str
    components: list[ComponentHealth]
    checked_at: str = field(default_factory=utc_now)

    @property
    def critical(self) -> bool:
        return self.status == ERROR

    def to_dict(self) -> dict:
        data = asdict(self)
        data["critical"] = self.critical
        return data


def aggregate(components: Sequence[ComponentHealth]) -> SystemHealth:
    """Fold component reports into the overall system status."""
    healthy = sum(1 for c in components if c.ok)
    if components and healthy == len(components):
        status = OK
    elif healthy > 0:
        status = DEGRADED
    else:
        status = ERROR
    return SystemHealth(status=status, components=list(components))


def format_health(health: SystemHealth) -> str:
    """Render a health report as human-readable text."""
    lines = [f"CKG health: {health.status.upper()} ({health.checked_at})"]
    for comp in health.components:
        icon = _STATUS_ICONS.get(comp.status, "[?]")
        line = f"  {icon} {comp.name}"
        if comp.message:
            line += f": {comp.message}"
        lines.append(line)
    return "\n".join(lines)


def to_json(health: SystemHealth) -> str:
    return json.dumps(health.to_dict(), indent=2, default=str)
