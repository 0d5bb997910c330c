from __future__ import annotations

from collections import OrderedDict
from collections.abc import ItemsView


class _BoundedMap[K, V]:
    def __init__(self, max_keys: int):
        self._max_keys = max(1, int(max_keys))
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K, default: V | None = None, *, touch: bool = False) -> V | None:
        if key not in self._data:
            return default
        value = self._data[key]
        if touch:
            self._data.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> K | None:
        is_new = key not in self._data
        self._data[key] = value
        self._data.move_to_end(key)
        if is_new and len(self._data) > self._max_keys:
            evicted, _ = self._data.popitem(last=False)
            return evicted
        return None

    def pop(self, key: K) -> V | None:
        return self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def items(self) -> ItemsView[K, V]:
        return self._data.items()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class BoundedValueMap[K, V]:
    """LRU map that drops the least recently used key once ``max_keys`` is exceeded."""

    def __init__(self, max_keys: int):
        self._map: _BoundedMap[K, V] = _BoundedMap(max_keys=max_keys)

    def set(self, key: K, value: V) -> K | None:
        return self._map.set(key, value)

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._map.get(key, default, touch=True)

    def pop(self, key: K) -> V | None:
        return self._map.pop(key)

    def clear(self) -> None:
        self._map.clear()

    def items(self) -> ItemsView[K, V]:
        return self._map.items()

    def to_dict(self) -> dict[K, V]:
        return dict(self._map.items())

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key: object) -> bool:
        return key in self._map
