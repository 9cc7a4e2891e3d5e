"""
Scroll spy for the about page sidebar.

``SectionTracker`` decides which anchor the reader is looking at from
batches of viewport-intersection reports, and lets a click on a sidebar
entry override that decision for a short while so the highlight does not
fight the browser's own scroll-to-anchor motion.

The page side is reached only through three small collaborators:

* ``Layout.find(anchor_id)`` returns an element or ``None``;
* ``IntersectionSource.connect(callback, zone)`` returns an observer with
  ``observe(element)`` and ``disconnect()``;
* ``ScrollSource.listen(callback)`` returns a callable that removes the
  listener.

Timers go through a ``Scheduler`` (see ``folio.scheduling``).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol, Sequence

from .navigation import NavItem, flatten, is_item_active, nav_rows, walk
from .scheduling import Handle, Scheduler, VirtualScheduler

log = logging.getLogger(__name__)

FALLBACK_UNLOCK = 1.0  # seconds after a click, whatever happens
SETTLE_UNLOCK = 0.15  # seconds of scroll silence while suppressed
BACK_TO_TOP_Y = 300


@dataclass(frozen=True)
class ReadZone:
    """
    Band of the viewport in which a region counts as intersecting.

    ``top_margin`` is the sticky-header strip (px), ``bottom_ratio`` the
    share of the viewport cut off at the bottom, ``buffer`` how far below
    the header line a heading must sit to win the tie-break.
    """

    top_margin: float = 100.0
    bottom_ratio: float = 0.70
    buffer: float = 50.0

    def root_margin(self) -> str:
        return f"-{self.top_margin:g}px 0px -{self.bottom_ratio * 100:g}% 0px"


@dataclass(frozen=True)
class Intersection:
    """One entry of a visibility snapshot."""

    id: str
    is_intersecting: bool
    top: float


class Mode(enum.Enum):
    IDLE = "idle"
    SUPPRESSED = "suppressed"


@dataclass
class ActiveState:
    active_id: str | None = None
    mode: Mode = Mode.IDLE
    suppress_until: float | None = None

    @property
    def suppressed(self) -> bool:
        return self.mode is Mode.SUPPRESSED


class Phase(enum.Enum):
    NEW = "new"
    PENDING = "pending"  # waiting out the initial layout delay
    RUNNING = "running"
    CLOSED = "closed"


class Layout(Protocol):
    def find(self, anchor_id: str) -> object | None: ...


class Observer(Protocol):
    def observe(self, element: object) -> None: ...
    def disconnect(self) -> None: ...


class IntersectionSource(Protocol):
    def connect(
        self, callback: Callable[[Sequence[Intersection]], None], zone: ReadZone
    ) -> Observer: ...


class ScrollSource(Protocol):
    def listen(self, callback: Callable[[float], None]) -> Callable[[], None]: ...


def choose_candidate(
    candidates: Iterable[Intersection],
    buffer: float,
    order: dict[str, int] | None = None,
) -> str | None:
    """
    Pick the active id among intersecting entries.

    Entries are ranked top to bottom (document order breaks ties).  The
    first one whose top edge sits more than *buffer* below the header line
    wins; if every heading has already scrolled past, the last one is the
    section being read.
    """
    order = order or {}
    ranked = sorted(candidates, key=lambda e: (e.top, order.get(e.id, 0)))
    if not ranked:
        return None
    for entry in ranked:
        if entry.top > buffer:
            return entry.id
    return ranked[-1].id


class SectionTracker:
    def __init__(
        self,
        nav: Sequence[NavItem],
        *,
        layout: Layout,
        intersections: IntersectionSource,
        scroll: ScrollSource,
        scheduler: Scheduler,
        zone: ReadZone = ReadZone(),
        fallback: float = FALLBACK_UNLOCK,
        settle: float = SETTLE_UNLOCK,
        initial_delay: float = 0.0,
        on_change: Callable[[str | None], None] | None = None,
    ):
        self.nav = tuple(nav)
        self.ids = flatten(self.nav)
        self._order = {item_id: i for i, item_id in enumerate(self.ids)}
        self._items = {item.id: item for item, _ in walk(self.nav)}

        self.layout = layout
        self.intersections = intersections
        self.scroll = scroll
        self.scheduler = scheduler
        self.zone = zone
        self.fallback = fallback
        self.settle = settle
        self.initial_delay = initial_delay
        self.on_change = on_change

        self.state = ActiveState()
        self.phase = Phase.NEW
        self.snapshot: dict[str, Intersection] = {}
        self.observed: list[str] = []
        self.show_back_to_top = False

        self._observer: Observer | None = None
        self._unlisten: Callable[[], None] | None = None
        self._attach_handle: Handle | None = None
        self._fallback_handle: Handle | None = None
        self._settle_handle: Handle | None = None
        self._fallback_at: float | None = None

    # ── lifecycle ───────────────────────────────────────────────────
    def __enter__(self) -> "SectionTracker":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()

    def start(self) -> "SectionTracker":
        if self.phase is not Phase.NEW:
            return self
        if self.initial_delay > 0:
            self.phase = Phase.PENDING
            self._attach_handle = self.scheduler.call_later(self.initial_delay, self._attach)
        else:
            self._attach()
        return self

    def _attach(self) -> None:
        self._attach_handle = None
        if self.phase is Phase.CLOSED:
            return
        try:
            self._observer = self.intersections.connect(self.handle_intersections, self.zone)
            for anchor_id in self.ids:
                element = self.layout.find(anchor_id)
                if element is None:
                    log.debug("no anchor for %r, not observed", anchor_id)
                    continue
                self._observer.observe(element)
                self.observed.append(anchor_id)
            self._unlisten = self.scroll.listen(self.handle_scroll)
        except Exception:
            self.close()
            raise
        self.phase = Phase.RUNNING

    def close(self) -> None:
        """Release every subscription and timer; safe to call repeatedly."""
        if self.phase is Phase.CLOSED:
            return
        self.phase = Phase.CLOSED
        self._cancel(self._attach_handle)
        self._attach_handle = None
        self._clear_timers()
        observer, self._observer = self._observer, None
        unlisten, self._unlisten = self._unlisten, None
        try:
            if observer is not None:
                observer.disconnect()
        finally:
            if unlisten is not None:
                unlisten()

    # ── queries ─────────────────────────────────────────────────────
    @property
    def active_id(self) -> str | None:
        return self.state.active_id

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def suppressed(self) -> bool:
        return self.state.suppressed

    def is_active(self, item_id: str) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return bool(self.active_id) and item_id == self.active_id
        return is_item_active(item, self.active_id)

    def rows(self) -> list[dict]:
        return nav_rows(self.nav, self.active_id)

    # ── event handlers ──────────────────────────────────────────────
    def handle_intersections(self, entries: Iterable[Intersection]) -> None:
        if self.phase is not Phase.RUNNING:
            return
        batch: dict[str, Intersection] = {}
        for entry in entries:
            if entry.id in self._order:
                batch[entry.id] = entry
        # the whole batch lands before anything is computed from it
        self.snapshot.update(batch)

        if self.suppressed:
            return
        chosen = choose_candidate(
            (e for e in batch.values() if e.is_intersecting),
            self.zone.buffer,
            self._order,
        )
        if chosen is not None:
            self._set_active(chosen)

    def handle_scroll(self, scroll_y: float | None = None) -> None:
        if self.phase is Phase.CLOSED:
            return
        if scroll_y is not None:
            self.show_back_to_top = scroll_y > BACK_TO_TOP_Y
        if not self.suppressed:
            return
        self._cancel(self._settle_handle)
        self._settle_handle = self.scheduler.call_later(self.settle, self._unlock)
        deadline = self.scheduler.time() + self.settle
        if self._fallback_at is not None:
            deadline = min(deadline, self._fallback_at)
        self.state.suppress_until = deadline

    def select(self, item_id: str) -> None:
        """Click on a sidebar entry: highlight it now, mute scroll updates."""
        if self.phase is Phase.CLOSED:
            return
        log.debug("manual selection of %r", item_id)
        self._set_active(item_id)
        self._clear_timers()
        self.state.mode = Mode.SUPPRESSED
        self._fallback_at = self.scheduler.time() + self.fallback
        self.state.suppress_until = self._fallback_at
        self._fallback_handle = self.scheduler.call_later(self.fallback, self._unlock)

    # ── internals ───────────────────────────────────────────────────
    def _set_active(self, item_id: str) -> None:
        if item_id == self.state.active_id:
            return
        self.state.active_id = item_id
        if self.on_change is not None:
            self.on_change(item_id)

    def _unlock(self) -> None:
        self._clear_timers()

    def _clear_timers(self) -> None:
        self._cancel(self._fallback_handle)
        self._cancel(self._settle_handle)
        self._fallback_handle = self._settle_handle = None
        self._fallback_at = None
        self.state.mode = Mode.IDLE
        self.state.suppress_until = None

    @staticmethod
    def _cancel(handle: Handle | None) -> None:
        if handle is not None:
            handle.cancel()


###############################################################################
# Recorded sessions
###############################################################################
class RecordedPage:
    """
    In-memory page implementing ``Layout``, ``IntersectionSource`` and
    ``ScrollSource``.  Elements are just their anchor ids; *anchors*
    limits which ids exist (``None`` = all of them).
    """

    def __init__(self, anchors: Iterable[str] | None = None):
        self.anchors = set(anchors) if anchors is not None else None
        self.callback: Callable[[Sequence[Intersection]], None] | None = None
        self.zone: ReadZone | None = None
        self.observed: list[str] = []
        self.listeners: list[Callable[[float], None]] = []
        self.disconnects = 0

    def find(self, anchor_id: str) -> str | None:
        if self.anchors is None or anchor_id in self.anchors:
            return anchor_id
        return None

    def connect(self, callback, zone: ReadZone) -> "RecordedPage":
        self.callback = callback
        self.zone = zone
        return self

    def observe(self, element: str) -> None:
        self.observed.append(element)

    def disconnect(self) -> None:
        self.disconnects += 1
        self.callback = None
        self.observed.clear()

    def listen(self, callback: Callable[[float], None]) -> Callable[[], None]:
        self.listeners.append(callback)

        def remove() -> None:
            if callback in self.listeners:
                self.listeners.remove(callback)

        return remove

    def intersect(self, *entries: Intersection) -> None:
        if self.callback is not None:
            self.callback(list(entries))

    def scroll(self, y: float = 0.0) -> None:
        for cb in list(self.listeners):
            cb(y)


def replay(
    events: Iterable[dict],
    nav: Sequence[NavItem],
    *,
    zone: ReadZone = ReadZone(),
    fallback: float = FALLBACK_UNLOCK,
    settle: float = SETTLE_UNLOCK,
    anchors: Iterable[str] | None = None,
) -> list[tuple[int, str | None]]:
    """
    Run a recorded scroll session through a tracker on a virtual clock.

    Events are dicts with ``t`` (ms) and ``type``:
    ``intersect`` (``entries``: ``[{id, intersecting, top}]``),
    ``scroll`` (``y``) or ``click`` (``id``).
    Returns ``(ms, active_id)`` for every change of the active id.
    """
    clock = VirtualScheduler()
    page = RecordedPage(anchors)
    changes: list[tuple[int, str | None]] = []
    tracker = SectionTracker(
        nav,
        layout=page,
        intersections=page,
        scroll=page,
        scheduler=clock,
        zone=zone,
        fallback=fallback,
        settle=settle,
        on_change=lambda item_id: changes.append((round(clock.now * 1000), item_id)),
    )
    with tracker:
        for ev in sorted(events, key=lambda e: e.get("t", 0)):
            clock.advance_to(ev.get("t", 0) / 1000)
            kind = ev.get("type")
            if kind == "intersect":
                page.intersect(
                    *(
                        Intersection(
                            e["id"], bool(e.get("intersecting", True)), float(e.get("top", 0))
                        )
                        for e in ev.get("entries", ())
                    )
                )
            elif kind == "scroll":
                page.scroll(float(ev.get("y", 0)))
            elif kind == "click":
                tracker.select(ev["id"])
            else:
                raise ValueError(f"unknown event type {kind!r}")
    return changes
