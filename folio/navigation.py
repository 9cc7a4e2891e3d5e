"""
Sidebar navigation tree for the about page.

The tree is built once from ``ABOUT_TABS`` and never mutated afterwards;
everything here is a pure function over it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator

ABOUT_TABS = [
    {
        "label": "Coding",
        "slug": "coding",
        "subtabs": [
            ("Projects", "projects"),
            ("Languages", "languages"),
            ("Frameworks", "frameworks"),
            ("Tools", "tools"),
        ],
    },
    {
        "label": "Polyglot",
        "slug": "language-nerd",
        "subtabs": [
            ("Mandarin", "mandarin"),
            ("English", "english"),
            ("German", "german"),
            ("French", "french"),
            ("Japanese", "japanese"),
            ("Latin", "latin"),
            ("Sanskrit", "sanskrit"),
        ],
    },
    {
        "label": "Social Activity",
        "slug": "social-activity",
        "subtabs": [
            ("Kaifeng", "kaifeng"),
            ("Volunteering", "volunteering"),
            ("Animals on Campus", "animal-on-campus"),
        ],
    },
    {
        "label": "Life",
        "slug": "life",
        "subtabs": [
            ("Mental Health", "mental-health"),
            ("Cooking", "cooking"),
            ("Travel", "travel"),
            ("Sports", "sports"),
            ("Gaming", "gaming"),
            ("Films", "films"),
            ("TV Series", "tv-series"),
            ("Ceramics", "ceramics"),
        ],
    },
]

# subtab id → nested entries appended below it in the sidebar
NAV_EXTENSIONS = {
    "languages": [("Python", "python"), ("Rust", "rust"), ("Others", "others")],
}


@dataclass(frozen=True)
class NavItem:
    id: str
    label: str
    children: tuple["NavItem", ...] = field(default_factory=tuple)

    @property
    def href(self) -> str:
        return f"#{self.id}"


def tab_anchor(slug: str) -> str:
    """Anchor id of a whole about tab (``coding`` → ``coding-content``)."""
    return f"{slug}-content"


def build_nav(tabs: Iterable[dict] = ABOUT_TABS, extensions: dict | None = None) -> tuple[NavItem, ...]:
    ext = NAV_EXTENSIONS if extensions is None else extensions
    items = []
    for tab in tabs:
        children = tuple(
            NavItem(
                id=sid,
                label=label,
                children=tuple(NavItem(id=cid, label=cl) for cl, cid in ext.get(sid, ())),
            )
            for label, sid in tab["subtabs"]
        )
        items.append(NavItem(id=tab_anchor(tab["slug"]), label=tab["label"], children=children))
    nav = tuple(items)
    check_unique(nav)
    return nav


def walk(items: Iterable[NavItem], depth: int = 0) -> Iterator[tuple[NavItem, int]]:
    """Depth-first ``(item, depth)`` pairs, parents before children."""
    for item in items:
        yield item, depth
        yield from walk(item.children, depth + 1)


def flatten(items: Iterable[NavItem]) -> list[str]:
    return [item.id for item, _ in walk(items)]


def check_unique(items: Iterable[NavItem]) -> None:
    seen: set[str] = set()
    for item_id in flatten(items):
        if item_id in seen:
            raise ValueError(f"duplicate navigation id: {item_id!r}")
        seen.add(item_id)


def find(items: Iterable[NavItem], item_id: str) -> NavItem | None:
    for item, _ in walk(items):
        if item.id == item_id:
            return item
    return None


def is_item_active(item: NavItem, active_id: str | None) -> bool:
    """True if *active_id* is the item itself or any of its descendants."""
    if not active_id:
        return False
    if item.id == active_id:
        return True
    return any(is_item_active(child, active_id) for child in item.children)


def is_rendered_active(item: NavItem, active_id: str | None, level: int) -> bool:
    """
    Highlight rule of the sidebar: top-level entries light up for any
    active descendant, nested entries only for themselves.
    """
    if level == 0:
        return is_item_active(item, active_id)
    return bool(active_id) and item.id == active_id


def nav_rows(items: Iterable[NavItem], active_id: str | None) -> list[dict]:
    """Flat rows for the template: id, label, href, level, active."""
    return [
        {
            "id": item.id,
            "label": item.label,
            "href": item.href,
            "level": depth,
            "active": is_rendered_active(item, active_id, depth),
            "has_children": bool(item.children),
        }
        for item, depth in walk(items)
    ]
