"""
Deep mutation tracking for plain ``dict``/``list`` structures.

``track(value, on_change)`` returns a ``dict`` or ``list`` subclass that
reports every write or deletion, at any nesting depth, to ``on_change``.
Nested containers are wrapped lazily the first time they are read and the
wrapped child replaces the stored one, so repeated reads of the same path
return the same object.

Scalars (anything that is not a ``dict`` or ``list``) are never wrapped.
Wrapping is idempotent: an already tracked value is returned as is.

Usage:
    row = track({"name": "a", "extra": {"tags": []}}, on_change=mark_dirty)
    row["extra"]["tags"].append("x")   # mark_dirty() is called once
"""
from __future__ import annotations

import contextlib
import copy
from collections.abc import Callable, Iterator
from typing import Any, ContextManager, Optional

OnChange = Callable[[], None]

_MISSING = object()
_NO_LOCK = contextlib.nullcontext()


class Tracked:
    """Marker for containers whose mutations are reported to an owner."""

    __slots__ = ()


def is_composite(value: Any) -> bool:
    return isinstance(value, (dict, list))


def track(value: Any, on_change: OnChange, lock: Optional[ContextManager] = None) -> Any:
    """
    Wrap ``value`` so that mutations anywhere inside it call ``on_change``.

    Args:
        value: Any value; only dicts and lists are wrapped
        on_change: Called synchronously after every effective mutation
        lock: Optional re-entrant lock held around each mutation and its
              notification (shared by every nested child)

    Returns:
        The tracked container, or ``value`` unchanged for scalars and
        already tracked values
    """
    if isinstance(value, Tracked):
        return value
    if isinstance(value, dict):
        return TrackedDict(value, on_change, lock)
    if isinstance(value, list):
        return TrackedList(value, on_change, lock)
    return value


def _changed(old: Any, new: Any) -> bool:
    # Identity for containers, value equality for scalars.
    if old is new:
        return False
    if is_composite(old) or is_composite(new):
        return True
    return bool(old != new)


class _TrackingMixin(Tracked):
    __slots__ = ()

    _on_change: OnChange
    _lock: ContextManager

    def _init_tracking(self, on_change: OnChange, lock: Optional[ContextManager]) -> None:
        self._on_change = on_change
        self._lock = lock if lock is not None else _NO_LOCK

    def _track_child(self, value: Any) -> Any:
        return track(value, self._on_change, self._lock)

    def _notify(self) -> None:
        self._on_change()

    def __copy__(self) -> Any:
        return self.copy()

    def __deepcopy__(self, memo: dict) -> Any:
        return copy.deepcopy(self._raw(), memo)

    def __reduce__(self) -> Any:
        # Pickles as the plain container; the callback is not transferable.
        raw = self._raw()
        return (type(raw), (raw,))

    def _raw(self) -> Any:
        raise NotImplementedError


class TrackedDict(_TrackingMixin, dict):
    """dict whose writes and deletions are reported to ``on_change``."""

    __slots__ = ("_on_change", "_lock")

    def __init__(self, data: dict, on_change: OnChange, lock: Optional[ContextManager] = None) -> None:
        dict.__init__(self, data)
        self._init_tracking(on_change, lock)

    def _raw(self) -> dict:
        return dict(dict.items(self))

    def copy(self) -> dict:
        """Plain shallow copy; nested containers are the tracked children."""
        return dict(self.items())

    # -- reads --

    def __getitem__(self, key: Any) -> Any:
        # Read and adopt under one lock so a concurrent write is never overwritten.
        with self._lock:
            value = dict.__getitem__(self, key)
            if not is_composite(value) or isinstance(value, Tracked):
                return value
            wrapped = self._track_child(value)
            dict.__setitem__(self, key, wrapped)
            return wrapped

    def get(self, key: Any, default: Any = None) -> Any:
        if key in self:
            return self[key]
        return default

    def values(self) -> list[Any]:  # type: ignore[override]
        return [self[key] for key in list(dict.keys(self))]

    def items(self) -> list[tuple[Any, Any]]:  # type: ignore[override]
        return [(key, self[key]) for key in list(dict.keys(self))]

    # -- writes --

    def __setitem__(self, key: Any, value: Any) -> None:
        with self._lock:
            old = dict.get(self, key, _MISSING)
            dict.__setitem__(self, key, value)
            if _changed(old, value):
                self._notify()

    def setdefault(self, key: Any, default: Any = None) -> Any:
        if key not in self:
            self[key] = default
        return self[key]

    def update(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[override]
        for key, value in dict(*args, **kwargs).items():
            self[key] = value

    def __ior__(self, other: Any) -> "TrackedDict":  # type: ignore[override]
        self.update(other)
        return self

    # -- deletions (always notify) --

    def __delitem__(self, key: Any) -> None:
        with self._lock:
            try:
                dict.__delitem__(self, key)
            finally:
                self._notify()

    def pop(self, key: Any, *default: Any) -> Any:
        with self._lock:
            try:
                return dict.pop(self, key, *default)
            finally:
                self._notify()

    def popitem(self) -> tuple[Any, Any]:
        with self._lock:
            try:
                return dict.popitem(self)
            finally:
                self._notify()

    def clear(self) -> None:
        with self._lock:
            dict.clear(self)
            self._notify()


class TrackedList(_TrackingMixin, list):
    """list whose writes and deletions are reported to ``on_change``."""

    __slots__ = ("_on_change", "_lock")

    def __init__(self, data: list, on_change: OnChange, lock: Optional[ContextManager] = None) -> None:
        list.__init__(self, data)
        self._init_tracking(on_change, lock)

    def _raw(self) -> list:
        return list(list.__iter__(self))

    def copy(self) -> list:
        """Plain shallow copy; nested containers are the tracked children."""
        return list(self)

    # -- reads --

    def __getitem__(self, index: Any) -> Any:
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(len(self)))]
        with self._lock:
            value = list.__getitem__(self, index)
            if not is_composite(value) or isinstance(value, Tracked):
                return value
            wrapped = self._track_child(value)
            list.__setitem__(self, index, wrapped)
            return wrapped

    def __iter__(self) -> Iterator[Any]:
        for i in range(len(self)):
            yield self[i]

    def __reversed__(self) -> Iterator[Any]:
        for i in range(len(self) - 1, -1, -1):
            yield self[i]

    # -- writes --

    def __setitem__(self, index: Any, value: Any) -> None:
        with self._lock:
            if isinstance(index, slice):
                list.__setitem__(self, index, value)
                self._notify()
                return
            old = list.__getitem__(self, index)
            list.__setitem__(self, index, value)
            if _changed(old, value):
                self._notify()

    def append(self, value: Any) -> None:
        with self._lock:
            list.append(self, value)
            self._notify()

    def extend(self, values: Any) -> None:
        with self._lock:
            list.extend(self, values)
            self._notify()

    def insert(self, index: int, value: Any) -> None:
        with self._lock:
            list.insert(self, index, value)
            self._notify()

    def __iadd__(self, values: Any) -> "TrackedList":  # type: ignore[override]
        self.extend(values)
        return self

    def __imul__(self, n: int) -> "TrackedList":  # type: ignore[override]
        with self._lock:
            list.__imul__(self, n)
            self._notify()
        return self

    def sort(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            list.sort(self, *args, **kwargs)
            self._notify()

    def reverse(self) -> None:
        with self._lock:
            list.reverse(self)
            self._notify()

    # -- deletions (always notify) --

    def __delitem__(self, index: Any) -> None:
        with self._lock:
            try:
                list.__delitem__(self, index)
            finally:
                self._notify()

    def pop(self, index: int = -1) -> Any:
        with self._lock:
            try:
                return list.pop(self, index)
            finally:
                self._notify()

    def remove(self, value: Any) -> None:
        with self._lock:
            try:
                list.remove(self, value)
            finally:
                self._notify()

    def clear(self) -> None:
        with self._lock:
            list.clear(self)
            self._notify()
