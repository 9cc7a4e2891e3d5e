"""
Post helpers: threads, tags, status and compose-form parsing.

Rows are plain dicts as returned by the content store.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Iterable
from urllib.parse import urlparse

VIDEO_EXTS = (".mp4", ".webm", ".mov", ".m4v")
IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".avif")
EXCERPT_LEN = 160


def parse_ts(value) -> datetime | None:
    """ISO string (or datetime) → aware datetime, ``None`` if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def post_tags(row: dict) -> list[dict]:
    """
    Flatten the ``tweet_tags(tags(...))`` join.  The store returns either a
    single tag object or a one-element list per link row.
    """
    out = []
    for link in row.get("tweet_tags") or []:
        tag = link.get("tags") if isinstance(link, dict) else None
        if isinstance(tag, list):
            tag = tag[0] if tag else None
        if tag:
            out.append(tag)
    return out


def ancestors(
    parent_id: str | None, lookup: Callable[[str], dict | None], *, limit: int = 50
) -> list[dict]:
    """
    Walk the parent chain upwards from *parent_id* and return it root-first.

    The walk stops at the first missing (or unpublished, if *lookup* hides
    those) row, at a repeated id, or after *limit* hops.
    """
    chain: list[dict] = []
    seen: set[str] = set()
    current = parent_id
    while current and current not in seen and len(chain) < limit:
        seen.add(current)
        row = lookup(current)
        if not row:
            break
        chain.append(row)
        current = row.get("parent_tweet_id")
    chain.reverse()
    return chain


def reply_count_map(rows: Iterable[dict]) -> dict[str, int]:
    return dict(Counter(r["parent_tweet_id"] for r in rows if r.get("parent_tweet_id")))


def post_status(row: dict, now: datetime) -> str:
    """``draft``, ``scheduled`` or ``published``."""
    if not row.get("is_published"):
        return "draft"
    when = parse_ts(row.get("published_at"))
    if when is not None and when > now:
        return "scheduled"
    return "published"


def relative_time(when, now: datetime, *, short: bool = False) -> str:
    dt = parse_ts(when)
    if dt is None:
        return ""
    secs = (now - dt).total_seconds()
    mins, hours, days = int(secs // 60), int(secs // 3600), int(secs // 86400)
    suffix = "" if short else " ago"
    if mins < 1:
        return "just now"
    if mins < 60:
        return f"{mins}m{suffix}"
    if hours < 24:
        return f"{hours}h{suffix}"
    if days < 7:
        return f"{days}d{suffix}"
    if short and dt.year == now.year:
        return f"{dt:%b} {dt.day}"
    return f"{dt:%b} {dt.day}, {dt.year}"


def excerpt(text: str | None, limit: int = EXCERPT_LEN) -> str:
    if not text:
        return ""
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit].rstrip() + "..."


def slugify(name: str) -> str:
    """Tag name → URL slug (``"Rust & C++"`` → ``"rust-c"``)."""
    s = name.strip().lower()
    s = re.sub(r"[^\w\s-]", "", s)
    s = re.sub(r"[\s_-]+", "-", s)
    return s.strip("-")


def media_type(url: str) -> str:
    path = urlparse(url).path.lower()
    if path.endswith(IMAGE_EXTS):
        return "image"
    if path.endswith(VIDEO_EXTS):
        return "video"
    return "link"


def parse_media(text: str | None) -> list[dict]:
    """
    One attachment per line: ``URL`` or ``URL | alt text``.
    Anything that is not an http(s) URL is dropped.
    """
    media = []
    for ln in (text or "").splitlines():
        url, _, alt = ln.partition("|")
        url, alt = url.strip(), alt.strip()
        if not url.lower().startswith(("http://", "https://")):
            continue
        item = {"type": media_type(url), "url": url}
        if alt:
            item["alt"] = alt
        media.append(item)
    return media


def media_lines(media: Iterable[dict] | None) -> str:
    """Inverse of ``parse_media`` for pre-filling the edit form."""
    return "\n".join(
        f"{m['url']} | {m['alt']}" if m.get("alt") else m["url"] for m in media or ()
    )


def compose_row(form, now: datetime) -> dict:
    """
    Build the tweet row from the compose form.

    ``publish`` unchecked → draft.  Checked with a ``scheduled_at`` → that
    date as given (a future one keeps the post hidden until then, a past
    one keeps or backdates it).  Checked without a date → published now.
    """
    content = (form.get("content") or "").strip()
    publish = form.get("publish") in ("1", "on", "true")
    scheduled = parse_ts(form.get("scheduled_at") or None)

    if not publish:
        published_at = None
    elif scheduled is not None:
        published_at = scheduled
    else:
        published_at = now

    row = {
        "content": content,
        "media_attachments": parse_media(form.get("media")),
        "is_published": publish,
        "published_at": published_at.isoformat() if published_at else None,
        "updated_at": now.isoformat(),
    }
    parent = (form.get("parent_tweet_id") or "").strip()
    row["parent_tweet_id"] = parent or None
    return row
