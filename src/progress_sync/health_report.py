"""Aggregate health report: liveness + fix run status + metrics."""

from typing import Any, Literal

from .metrics import get_metrics
from .models import FixRunStatus

HealthLevel = Literal["ok", "degraded", "error"]


def derive_level(liveness: dict[str, Any], fix_status: FixRunStatus | None) -> HealthLevel:
    if not liveness.get("ok") or not liveness.get("storeReachable"):
        return "error"
    if fix_status is not None and (fix_status.id_changes > 0 or fix_status.failed > 0):
        return "degraded"
    return "ok"


def build_health_report(
    liveness: dict[str, Any], fix_status: FixRunStatus | None
) -> dict[str, Any]:
    return {
        "level": derive_level(liveness, fix_status),
        "liveness": liveness,
        "fixStatus": fix_status.to_dict() if fix_status is not None else None,
        "metrics": get_metrics(),
    }
