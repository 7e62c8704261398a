from dataclasses import asdict, dataclass
from datetime import datetime

from telemetry_store.session_types import classify


@dataclass(frozen=True)
class SessionMeta:
    track: str
    date_start: str
    date_end: str | None
    car: str | None
    driver: str | None
    session_type: str
    session_category: str
    session_type_code: int | None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SessionSummary:
    lap_count: int
    laps_valid: int
    best_lap_ms: int | None
    avg_clean_lap_ms: int | None
    total_time_ms: int
    stint_count: int

    def as_dict(self) -> dict:
        return asdict(self)


def _as_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_text(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _list_length(value: object) -> int:
    return len(value) if isinstance(value, list) else 0


def extract_metadata(document: dict, uploaded_at: datetime) -> tuple[SessionMeta, SessionSummary]:
    """Pull list-view fields out of a parsed capture.

    Missing fields fall back the same way the capture tools write them:
    ``session_info`` first, then top-level keys, then a neutral default.
    """
    info = document.get("session_info")
    if not isinstance(info, dict):
        info = {}

    session_type = classify(info.get("session_type"))
    meta = SessionMeta(
        track=_as_text(info.get("track") or document.get("track")) or "Unknown",
        date_start=_as_text(info.get("date_start") or document.get("date")) or uploaded_at.isoformat(),
        date_end=_as_text(info.get("date_end")),
        car=_as_text(info.get("car_model") or info.get("car") or document.get("car")),
        driver=_as_text(info.get("driver")),
        session_type=session_type.name,
        session_category=session_type.category.value,
        session_type_code=session_type.code,
    )
    summary = SessionSummary(
        lap_count=_as_int(info.get("laps_total")) or _list_length(document.get("laps")),
        laps_valid=_as_int(info.get("laps_valid")) or 0,
        best_lap_ms=_as_int(info.get("session_best_lap") or document.get("bestLap")) or None,
        avg_clean_lap_ms=_as_int(info.get("avg_clean_lap")) or None,
        total_time_ms=_as_int(info.get("total_drive_time_ms")) or 0,
        stint_count=_list_length(document.get("stints")),
    )
    return meta, summary
