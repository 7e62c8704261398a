"""Canonical session-type classification for telemetry captures.

Captures carry ``session_info.session_type`` either as a numeric code or as a
label. Every caller classifies through :func:`classify` so the code table
lives in one place.
"""

import enum
from dataclasses import dataclass


class SessionCategory(str, enum.Enum):
    practice = "practice"
    qualifying = "qualifying"
    race = "race"
    unknown = "unknown"


@dataclass(frozen=True)
class SessionType:
    code: int | None
    name: str
    category: SessionCategory


SESSION_TYPES: dict[int, SessionType] = {
    0: SessionType(0, "Practice", SessionCategory.practice),
    1: SessionType(1, "Qualifying", SessionCategory.qualifying),
    2: SessionType(2, "Race", SessionCategory.race),
    3: SessionType(3, "Hotlap", SessionCategory.practice),
    4: SessionType(4, "Time Attack", SessionCategory.practice),
    5: SessionType(5, "Drift", SessionCategory.practice),
    6: SessionType(6, "Drag", SessionCategory.practice),
}

_LABEL_ALIASES: dict[str, int] = {
    "practice": 0,
    "qualify": 1,
    "qualifying": 1,
    "qualy": 1,
    "race": 2,
    "hotlap": 3,
    "hot lap": 3,
    "time attack": 4,
    "timeattack": 4,
    "drift": 5,
    "drag": 6,
}

UNKNOWN = SessionType(None, "Unknown", SessionCategory.unknown)


def classify(value: object) -> SessionType:
    if value is None or isinstance(value, bool):
        return UNKNOWN
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return SESSION_TYPES.get(value, UNKNOWN)
    if isinstance(value, str):
        label = value.strip().lower().replace("_", " ")
        if label.isdigit():
            return SESSION_TYPES.get(int(label), UNKNOWN)
        code = _LABEL_ALIASES.get(label)
        if code is None:
            return UNKNOWN
        return SESSION_TYPES[code]
    return UNKNOWN
