import pytest

from bluegreen.errors import CutoverFailed, HealthCheckTimeout, InvalidRelease
from bluegreen.slots import HealthVerdict, Release, Slot


def test_complement_is_an_involution():
    assert Slot.A.complement() is Slot.B
    assert Slot.B.complement() is Slot.A
    for s in Slot:
        assert s.complement().complement() is s


@pytest.mark.parametrize("raw,expected", [("a", Slot.A), ("B", Slot.B), (" b ", Slot.B), (Slot.A, Slot.A)])
def test_parse_accepts_slot_values(raw, expected):
    assert Slot.parse(raw) is expected


@pytest.mark.parametrize("raw", ["", "  ", "blue", "green", "c", None, 1])
def test_parse_rejects_everything_else(raw):
    with pytest.raises(ValueError):
        Slot.parse(raw)


def test_release_is_immutable_and_derives_target():
    r = Release(route="payments", build_id="42", artifact_ref="shop/payments:42")
    resolved = r.with_target(Slot.B)

    assert r.target_slot is None
    assert resolved.target_slot is Slot.B
    assert resolved.release_id == r.release_id
    with pytest.raises(AttributeError):
        r.build_id = "43"


def test_release_ids_are_unique():
    ids = {Release(route="r", build_id="1", artifact_ref="x:1").release_id for _ in range(50)}
    assert len(ids) == 50


def test_unknown_verdict_is_not_healthy():
    v = HealthVerdict.unknown("No response")
    assert not v.is_healthy
    assert not v.is_unhealthy
    assert HealthVerdict.healthy().is_healthy
    assert HealthVerdict.unhealthy("HTTP 500").is_unhealthy


def test_error_categories():
    assert CutoverFailed("x").requires_operator
    assert not HealthCheckTimeout("x").requires_operator
    payload = InvalidRelease("bad ref").to_dict()
    assert payload == {
        "code": "invalid_release",
        "category": "validation_or_config",
        "detail": "bad ref",
        "requires_operator": False,
    }
