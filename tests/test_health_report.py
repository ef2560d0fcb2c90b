from progress_sync.health_report import build_health_report, derive_level
from progress_sync.models import FixRunStatus, MatchMethod, QuestFixResult

LIVE = {"ok": True, "timestamp": "2026-01-01T00:00:00+00:00", "storeReachable": True}


def _status(*, drifted=False, applied=True):
    return FixRunStatus.from_results([
        QuestFixResult(
            display_name="The Guide",
            known_id="5c0d4e61d09282029f53920e",
            resolved_id="5c0d4e61d09282029f53920e",
            match_method=MatchMethod.EXACT_ID,
            id_drifted=drifted,
            applied=applied,
            failure_reason=None if applied else "patch failed: boom",
        )
    ])


def test_ok_when_everything_clean():
    assert derive_level(LIVE, _status()) == "ok"
    assert derive_level(LIVE, None) == "ok"


def test_degraded_on_drift_or_failure():
    assert derive_level(LIVE, _status(drifted=True)) == "degraded"
    assert derive_level(LIVE, _status(applied=False)) == "degraded"


def test_error_when_store_unreachable_wins_over_degraded():
    down = {**LIVE, "storeReachable": False}
    assert derive_level(down, _status(drifted=True)) == "error"


def test_report_shape():
    report = build_health_report(LIVE, None)
    assert set(report) == {"level", "liveness", "fixStatus", "metrics"}
    assert report["fixStatus"] is None
    assert report["metrics"]["saves_applied"] == 0
