import pytest

from telemetry_store.session_types import SESSION_TYPES, SessionCategory, classify


@pytest.mark.parametrize(
    "value,name,category",
    [
        (0, "Practice", SessionCategory.practice),
        (1, "Qualifying", SessionCategory.qualifying),
        (2, "Race", SessionCategory.race),
        (3, "Hotlap", SessionCategory.practice),
        (4, "Time Attack", SessionCategory.practice),
        (5, "Drift", SessionCategory.practice),
        (6, "Drag", SessionCategory.practice),
        (2.0, "Race", SessionCategory.race),
        ("1", "Qualifying", SessionCategory.qualifying),
        ("Practice", "Practice", SessionCategory.practice),
        ("Qualify", "Qualifying", SessionCategory.qualifying),
        ("RACE", "Race", SessionCategory.race),
        ("time_attack", "Time Attack", SessionCategory.practice),
    ],
)
def test_known_values(value, name: str, category: SessionCategory) -> None:
    session_type = classify(value)
    assert session_type.name == name
    assert session_type.category is category


@pytest.mark.parametrize("value", [None, 7, -1, "endurance", True, [], 1.5])
def test_unknown_values_are_not_folded_into_practice(value) -> None:
    session_type = classify(value)
    assert session_type.category is SessionCategory.unknown
    assert session_type.code is None


def test_every_code_round_trips_through_its_name() -> None:
    for code, session_type in SESSION_TYPES.items():
        assert classify(code) == session_type
        assert classify(session_type.name) == session_type
