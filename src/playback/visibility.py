"""Visibility multiplexer.

One platform visibility primitive is shared by every tile on the page; the
multiplexer keeps the element -> callback table and forwards each primitive
entry to the callback of that element only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Optional, Protocol

VisibilityCallback = Callable[[bool], None]


@dataclass(frozen=True)
class VisibilityEntry:
    target: Hashable
    is_intersecting: bool
    intersection_ratio: float = 0.0


Dispatch = Callable[[Iterable[VisibilityEntry]], None]


class VisibilityPrimitive(Protocol):
    def observe(self, element: Hashable) -> None: ...

    def unobserve(self, element: Hashable) -> None: ...

    def disconnect(self) -> None: ...


PrimitiveFactory = Callable[[Dispatch], VisibilityPrimitive]


class ReportedIntersectionPrimitive:
    """Primitive fed by intersection ratios the browser reports.

    ``report(element, ratio)`` ส่ง entry เฉพาะ element ที่กำลัง observe อยู่
    element จะนับว่ามองเห็นเมื่อ ratio > 0 และ >= threshold
    ขณะที่แท็บถูกซ่อน ทุก element ถือว่ามองไม่เห็น
    """

    def __init__(self, dispatch: Dispatch, threshold: float = 0.1) -> None:
        self._dispatch = dispatch
        self.threshold = max(0.0, min(float(threshold), 1.0))
        self._observed: set[Hashable] = set()
        self._last_ratio: dict[Hashable, float] = {}
        self._document_hidden = False

    def observe(self, element: Hashable) -> None:
        self._observed.add(element)

    def unobserve(self, element: Hashable) -> None:
        self._observed.discard(element)
        self._last_ratio.pop(element, None)

    def disconnect(self) -> None:
        self._observed.clear()
        self._last_ratio.clear()

    def _entry(self, element: Hashable, ratio: float) -> VisibilityEntry:
        visible = (
            not self._document_hidden and ratio > 0.0 and ratio >= self.threshold
        )
        return VisibilityEntry(element, visible, ratio)

    def report(self, element: Hashable, ratio: float) -> bool:
        if element not in self._observed:
            return False
        ratio = max(0.0, min(float(ratio), 1.0))
        self._last_ratio[element] = ratio
        self._dispatch([self._entry(element, ratio)])
        return True

    @property
    def document_hidden(self) -> bool:
        return self._document_hidden

    def set_document_hidden(self, hidden: bool) -> None:
        hidden = bool(hidden)
        if hidden == self._document_hidden:
            return
        self._document_hidden = hidden
        entries = [
            self._entry(element, self._last_ratio.get(element, 0.0))
            for element in self._observed
            if hidden or element in self._last_ratio
        ]
        if entries:
            self._dispatch(entries)


class VisibilityObserver:
    def __init__(
        self,
        primitive_factory: Optional[PrimitiveFactory] = None,
        threshold: float = 0.1,
    ) -> None:
        self._logger = logging.getLogger("visibility")
        self._callbacks: dict[Hashable, VisibilityCallback] = {}
        # None = ยังไม่เคยได้รับ entry ของ element นี้
        self._visibility: dict[Hashable, Optional[bool]] = {}
        if primitive_factory is None:
            self.primitive: Any = ReportedIntersectionPrimitive(self._dispatch, threshold)
        else:
            self.primitive = primitive_factory(self._dispatch)

    def _dispatch(self, entries: Iterable[VisibilityEntry]) -> None:
        for entry in entries:
            callback = self._callbacks.get(entry.target)
            if callback is None:
                continue
            visible = bool(entry.is_intersecting)
            if self._visibility.get(entry.target) is visible:
                continue
            self._visibility[entry.target] = visible
            try:
                callback(visible)
            except Exception:
                self._logger.exception(
                    "visibility callback failed for element %r", entry.target
                )

    def observe(self, element: Hashable, callback: VisibilityCallback) -> None:
        if element is None:
            return
        is_new = element not in self._callbacks
        self._callbacks[element] = callback
        if is_new:
            self._visibility[element] = None
            self.primitive.observe(element)

    def unobserve(self, element: Hashable) -> None:
        if element is None or element not in self._callbacks:
            return
        del self._callbacks[element]
        self._visibility.pop(element, None)
        self.primitive.unobserve(element)

    def disconnect(self) -> None:
        self._callbacks.clear()
        self._visibility.clear()
        self.primitive.disconnect()

    def is_observing(self, element: Hashable) -> bool:
        return element in self._callbacks

    def get_visibility(self, element: Hashable) -> bool:
        return bool(self._visibility.get(element))

    def get_observed_count(self) -> int:
        return len(self._callbacks)


def create_visibility_observer(
    primitive_factory: Optional[PrimitiveFactory] = None,
    threshold: float = 0.1,
) -> VisibilityObserver:
    return VisibilityObserver(primitive_factory, threshold)


_shared_observer: VisibilityObserver | None = None


def get_shared_visibility_observer(threshold: float = 0.1) -> VisibilityObserver:
    """Process-wide observer used by the viewer grid."""
    global _shared_observer
    if _shared_observer is None:
        _shared_observer = create_visibility_observer(threshold=threshold)
    return _shared_observer


def reset_shared_observer() -> None:
    global _shared_observer
    if _shared_observer is not None:
        _shared_observer.disconnect()
        _shared_observer = None
