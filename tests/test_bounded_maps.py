from __future__ import annotations

from payroute.runtime.bounded_maps import BoundedValueMap


def test_bounded_value_map_evicts_oldest_key() -> None:
    values = BoundedValueMap[str, bool](max_keys=2)
    values.set("a", True)
    values.set("b", False)
    evicted = values.set("c", True)

    assert evicted == "a"
    assert values.to_dict() == {"b": False, "c": True}


def test_get_marks_key_as_recently_used() -> None:
    values = BoundedValueMap[str, int](max_keys=2)
    values.set("a", 1)
    values.set("b", 2)
    assert values.get("a") == 1
    values.set("c", 3)

    assert "a" in values
    assert "b" not in values
    assert values.get("b", -1) == -1


def test_updating_existing_key_does_not_evict() -> None:
    values = BoundedValueMap[str, int](max_keys=2)
    values.set("a", 1)
    values.set("b", 2)

    assert values.set("a", 10) is None
    assert len(values) == 2
    assert values.pop("a") == 10
    assert values.pop("a") is None
    values.clear()
    assert len(values) == 0
