"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
from collections import Counter
from datetime import timedelta
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from folio import blog
from folio.blog import app
from folio.store import StoreError
from folio.threads import post_status

ADMIN = "me@example.com"
CSRF = "test-token"


class FakeStore:
    """In-memory stand-in for ``folio.store.ContentStore``."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.tag_rows: dict[int, dict] = {}
        self.links: list[tuple[str, int]] = []
        self.views: Counter = Counter()
        self.fail = False
        self._ids = itertools.count(1)

    # helpers for tests ---------------------------------------------------
    def add(self, content, *, ago=timedelta(minutes=5), is_published=True,
            parent=None, tags=(), media=()) -> str:
        tid = f"t{next(self._ids)}"
        when = blog.utc_now() - ago if ago is not None else None
        self.rows[tid] = {
            "id": tid,
            "content": content,
            "media_attachments": list(media),
            "parent_tweet_id": parent,
            "is_published": is_published,
            "published_at": when.isoformat() if when else None,
            "created_at": blog.utc_now().isoformat(),
            "like_count": 0,
        }
        for tag_id in tags:
            self.links.append((tid, tag_id))
        return tid

    def add_tag(self, name, slug) -> int:
        tag_id = next(self._ids)
        self.tag_rows[tag_id] = {"id": tag_id, "name": name, "slug": slug}
        return tag_id

    def _check(self):
        if self.fail:
            raise StoreError("backend down", status=503)

    def _shape(self, row: dict) -> dict:
        out = dict(row)
        out["view_count"] = self.views[row["id"]]
        out["tweet_tags"] = [
            {"tags": self.tag_rows[tag_id]}
            for tid, tag_id in self.links
            if tid == row["id"] and tag_id in self.tag_rows
        ]
        return out

    # ContentStore API ----------------------------------------------------
    def tags(self):
        self._check()
        return sorted(self.tag_rows.values(), key=lambda t: t["name"])

    def tag_by_slug(self, slug):
        return next((t for t in self.tag_rows.values() if t["slug"] == slug), None)

    def published_tweets(self, *, tag=None, now=None, limit=None):
        self._check()
        now = now or blog.utc_now()
        rows = [r for r in self.rows.values() if post_status(r, now) == "published"]
        if tag:
            found = self.tag_by_slug(tag)
            if found:
                ids = {tid for tid, tag_id in self.links if tag_id == found["id"]}
                rows = [r for r in rows if r["id"] in ids]
        rows.sort(key=lambda r: r["published_at"], reverse=True)
        if limit:
            rows = rows[:limit]
        return [self._shape(r) for r in rows]

    def all_tweets(self):
        self._check()
        return [self._shape(r) for r in self.rows.values()]

    def tweet(self, tweet_id, *, published_only=False):
        self._check()
        row = self.rows.get(tweet_id)
        if row is None or (published_only and not row["is_published"]):
            return None
        return self._shape(row)

    def replies(self, tweet_id, *, now=None):
        now = now or blog.utc_now()
        rows = [
            r for r in self.rows.values()
            if r["parent_tweet_id"] == tweet_id and post_status(r, now) == "published"
        ]
        rows.sort(key=lambda r: r["published_at"])
        return [self._shape(r) for r in rows]

    def reply_rows(self, tweet_ids):
        ids = set(tweet_ids)
        return [
            {"parent_tweet_id": r["parent_tweet_id"]}
            for r in self.rows.values()
            if r["parent_tweet_id"] in ids and r["is_published"]
        ]

    def create_tweet(self, row):
        self._check()
        tid = f"t{next(self._ids)}"
        self.rows[tid] = {"id": tid, "like_count": 0, "created_at": blog.utc_now().isoformat(), **row}
        return self.rows[tid]

    def update_tweet(self, tweet_id, row):
        self._check()
        self.rows[tweet_id].update(row)

    def delete_tweet(self, tweet_id):
        self._check()
        self.rows.pop(tweet_id, None)
        self.links = [ln for ln in self.links if ln[0] != tweet_id]

    def set_tweet_tags(self, tweet_id, tag_ids):
        self.links = [ln for ln in self.links if ln[0] != tweet_id]
        self.links.extend((tweet_id, int(t)) for t in tag_ids)

    def create_tag(self, name, slug):
        self._check()
        return self.tag_rows[self.add_tag(name, slug)]

    def delete_tag(self, tag_id):
        self._check()
        self.tag_rows.pop(int(tag_id), None)

    def increment_view_count(self, tweet_id):
        self.views[tweet_id] += 1


class FakeIdentity:
    def __init__(self):
        self.sent: list[dict] = []
        self.exchanged: list[tuple[str, str]] = []
        self.signed_out: list[str] = []
        self.email = ADMIN
        self.fail = False

    def send_magic_link(self, email, *, redirect_to, code_challenge):
        if self.fail:
            raise StoreError("smtp down")
        self.sent.append(
            {"email": email, "redirect_to": redirect_to, "code_challenge": code_challenge}
        )

    def exchange_code(self, auth_code, code_verifier):
        self.exchanged.append((auth_code, code_verifier))
        if self.fail or auth_code == "bad":
            raise StoreError("invalid grant", status=400)
        return {"access_token": "jwt-123", "user": {"email": self.email}}

    def sign_out(self, token):
        self.signed_out.append(token)


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        ADMIN_EMAIL=ADMIN,
        SUPABASE_URL="https://backend.test",
        SUPABASE_ANON_KEY="anon",
        SESSION_COOKIE_SECURE=False,
    )


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(blog, "ContentStore", lambda *a, **kw: fake)
    return fake


@pytest.fixture
def identity(monkeypatch) -> FakeIdentity:
    fake = FakeIdentity()
    monkeypatch.setattr(blog, "Identity", lambda *a, **kw: fake)
    return fake


@pytest.fixture
def client(store, identity) -> Generator[FlaskClient, None, None]:
    """
    Gives each test a test client wired to a fresh fake backend.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        yield client


def login_admin(client, email: str = ADMIN) -> None:
    with client.session_transaction() as sess:
        sess["logged_in"] = True
        sess["email"] = email
        sess["access_token"] = "jwt-123"
        sess["csrf"] = CSRF
