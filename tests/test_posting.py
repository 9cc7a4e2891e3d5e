"""
tests/test_posting.py
"""
from __future__ import annotations

import io
import re
from datetime import timedelta

from conftest import CSRF, login_admin
from folio import blog


def _html(resp) -> str:
    return resp.get_data(as_text=True)


# ── public feed ──────────────────────────────────────────────────────────
def test_feed_lists_published_only(client, store):
    store.add("visible-post")
    store.add("draft-post", is_published=False, ago=None)
    store.add("future-post", ago=-timedelta(hours=2))

    html = _html(client.get("/posts"))
    assert "visible-post" in html
    assert "draft-post" not in html
    assert "future-post" not in html


def test_feed_newest_first(client, store):
    store.add("older-post", ago=timedelta(days=2))
    store.add("newer-post", ago=timedelta(minutes=1))
    html = _html(client.get("/posts"))
    assert html.index("newer-post") < html.index("older-post")


def test_feed_tag_filter(client, store):
    rust = store.add_tag("Rust", "rust")
    store.add("borrow-checker", tags=[rust])
    store.add("plain-post-xyz")

    html = _html(client.get("/posts?tag=rust"))
    assert "borrow-checker" in html
    assert "plain-post-xyz" not in html
    assert 'class="pill on" href="/posts?tag=rust"' in html


def test_feed_shows_reply_counts(client, store):
    root = store.add("root-post", ago=timedelta(hours=1))
    store.add("first reply", parent=root)
    store.add("second reply", parent=root)
    assert "2 replies" in _html(client.get("/posts"))


def test_index_shows_latest(client, store):
    for i in range(7):
        store.add(f"note-{i}", ago=timedelta(minutes=10 - i))
    html = _html(client.get("/"))
    assert "note-6" in html and "note-2" in html
    assert "note-1" not in html


# ── thread page ──────────────────────────────────────────────────────────
def test_thread_shows_ancestors_and_replies(client, store):
    root = store.add("root-post", ago=timedelta(hours=3))
    middle = store.add("middle-post", ago=timedelta(hours=2), parent=root)
    store.add("leaf-reply", ago=timedelta(hours=1), parent=middle)
    store.add("hidden-reply", is_published=False, ago=None, parent=middle)

    html = _html(client.get(f"/posts/{middle}")).split("<main>", 1)[1]
    assert 'class="post ancestor"' in html
    assert html.index("root-post") < html.index("middle-post") < html.index("leaf-reply")
    assert "1 reply" in html
    assert "hidden-reply" not in html


def test_thread_skips_unpublished_parent(client, store):
    parent = store.add("secret-parent", is_published=False, ago=None)
    child = store.add("public-child", parent=parent)
    html = _html(client.get(f"/posts/{child}"))
    assert "public-child" in html
    assert "secret-parent" not in html


def test_hidden_posts_are_404_for_public(client, store):
    draft = store.add("draft", is_published=False, ago=None)
    later = store.add("later", ago=-timedelta(days=1))
    assert client.get(f"/posts/{draft}").status_code == 404
    assert client.get(f"/posts/{later}").status_code == 404


def test_admin_sees_hidden_posts_with_status(client, store):
    login_admin(client)
    draft = store.add("draft-body", is_published=False, ago=None)
    later = store.add("later-body", ago=-timedelta(days=1))
    assert "This post is draft." in _html(client.get(f"/posts/{draft}"))
    assert "This post is scheduled." in _html(client.get(f"/posts/{later}"))


def test_views_counted_for_visitors_only(client, store):
    tid = store.add("counted")
    client.get(f"/posts/{tid}")
    client.get(f"/posts/{tid}")
    assert store.views[tid] == 2

    login_admin(client)
    client.get(f"/posts/{tid}")
    assert store.views[tid] == 2


def test_post_media_rendering(client, store):
    tid = store.add("", media=[
        {"type": "image", "url": "https://cdn.test/cat.png", "alt": "a cat"},
        {"type": "link", "url": "https://blog.test/entry"},
    ])
    html = _html(client.get(f"/posts/{tid}"))
    assert '<img src="https://cdn.test/cat.png" alt="a cat"' in html
    assert ">blog.test</a>" in html


# ── admin ────────────────────────────────────────────────────────────────
def test_dashboard_counts_by_status(client, store):
    login_admin(client)
    store.add("pub")
    store.add("draft", is_published=False, ago=None)
    store.add("soon", ago=-timedelta(hours=1))
    store.add("also-pub")
    html = _html(client.get("/posts/admin"))
    assert "<strong>2</strong> published" in html
    assert "<strong>1</strong> scheduled" in html
    assert "<strong>1</strong> drafts" in html


def test_compose_creates_post(client, store):
    login_admin(client)
    rust = store.add_tag("Rust", "rust")
    resp = client.post(
        "/posts/admin/compose",
        data={
            "csrf": CSRF,
            "content": "Hello #rust",
            "media": "https://cdn.test/a.png | diagram",
            "tags": [str(rust)],
            "publish": "1",
        },
    )
    assert resp.status_code == 302
    (tid,) = [k for k, r in store.rows.items() if r["content"] == "Hello #rust"]
    assert resp.headers["Location"].endswith(f"/posts/{tid}")

    row = store.rows[tid]
    assert row["is_published"] is True
    assert row["media_attachments"] == [
        {"type": "image", "url": "https://cdn.test/a.png", "alt": "diagram"}
    ]
    assert (tid, rust) in store.links

    html = _html(client.get(f"/posts/{tid}"))
    assert "Post saved." in html
    assert '<a href="/posts?tag=rust">#rust</a>' in html


def test_compose_draft_and_schedule(client, store):
    login_admin(client)
    client.post("/posts/admin/compose", data={"csrf": CSRF, "content": "just a draft"})
    later = (blog.utc_now() + timedelta(days=3)).strftime("%Y-%m-%dT%H:%M")
    client.post(
        "/posts/admin/compose",
        data={"csrf": CSRF, "content": "see you later", "publish": "1", "scheduled_at": later},
    )
    by_content = {r["content"]: r for r in store.rows.values()}
    assert by_content["just a draft"]["is_published"] is False
    assert by_content["just a draft"]["published_at"] is None
    assert by_content["see you later"]["published_at"].startswith(later)

    feed = _html(client.get("/posts"))
    assert "just a draft" not in feed
    assert "see you later" not in feed


def test_compose_rejects_empty_post(client, store):
    login_admin(client)
    resp = client.post("/posts/admin/compose", data={"csrf": CSRF, "content": "   "})
    assert resp.status_code == 200
    assert "A post needs some text or at least one attachment." in _html(resp)
    assert store.rows == {}


def test_reply_keeps_parent(client, store):
    login_admin(client)
    root = store.add("root-post")
    assert "Replying to" in _html(client.get(f"/posts/admin/compose?reply={root}"))

    client.post(
        "/posts/admin/compose",
        data={"csrf": CSRF, "content": "a reply", "publish": "1", "parent_tweet_id": root},
    )
    reply = next(r for r in store.rows.values() if r["content"] == "a reply")
    assert reply["parent_tweet_id"] == root

    client.post(
        f"/posts/admin/compose?edit={reply['id']}",
        data={"csrf": CSRF, "content": "an edited reply", "publish": "1"},
    )
    assert store.rows[reply["id"]]["content"] == "an edited reply"
    assert store.rows[reply["id"]]["parent_tweet_id"] == root


def test_edit_keeps_publication_date(client, store):
    login_admin(client)
    tid = store.add("old news wiht a typo", ago=timedelta(days=30))
    original = store.rows[tid]["published_at"]

    html = _html(client.get(f"/posts/admin/compose?edit={tid}"))
    (prefilled,) = re.findall(r'name="scheduled_at" value="([^"]*)"', html)
    assert prefilled == original[:16]

    client.post(
        f"/posts/admin/compose?edit={tid}",
        data={"csrf": CSRF, "content": "old news with a typo", "publish": "1", "scheduled_at": prefilled},
    )
    assert store.rows[tid]["content"] == "old news with a typo"
    assert store.rows[tid]["published_at"] == original


def test_edit_can_backdate(client, store):
    login_admin(client)
    tid = store.add("moved back")
    client.post(
        f"/posts/admin/compose?edit={tid}",
        data={"csrf": CSRF, "content": "moved back", "publish": "1", "scheduled_at": "2025-01-02T03:04"},
    )
    assert store.rows[tid]["published_at"] == "2025-01-02T03:04:00+00:00"


def test_edit_form_prefills(client, store):
    login_admin(client)
    tid = store.add("existing words")
    html = _html(client.get(f"/posts/admin/compose?edit={tid}"))
    assert "existing words</textarea>" in html
    assert "Edit post" in html
    assert client.get("/posts/admin/compose?edit=missing").status_code == 404


def test_delete_post(client, store):
    login_admin(client)
    tid = store.add("short-lived")
    resp = client.post(f"/posts/admin/{tid}/delete", data={"csrf": CSRF}, follow_redirects=True)
    assert "Post deleted." in _html(resp)
    assert tid not in store.rows


# ── tags ─────────────────────────────────────────────────────────────────
def test_tag_lifecycle(client, store):
    login_admin(client)
    resp = client.post(
        "/posts/admin/tags", data={"csrf": CSRF, "name": "Machine Learning"}, follow_redirects=True
    )
    assert "Tag “Machine Learning” created." in _html(resp)
    (tag,) = store.tag_rows.values()
    assert tag["slug"] == "machine-learning"

    resp = client.post(
        "/posts/admin/tags", data={"csrf": CSRF, "name": "machine learning"}, follow_redirects=True
    )
    assert "already exists" in _html(resp)

    resp = client.post("/posts/admin/tags", data={"csrf": CSRF, "name": "!!!"}, follow_redirects=True)
    assert "needs at least one letter or digit" in _html(resp)
    assert len(store.tag_rows) == 1

    resp = client.post(
        "/posts/admin/tags",
        data={"csrf": CSRF, "action": "delete", "tag_id": str(tag["id"])},
        follow_redirects=True,
    )
    assert "Tag deleted." in _html(resp)
    assert store.tag_rows == {}


# ── uploads ──────────────────────────────────────────────────────────────
R2 = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "media",
    "R2_PUBLIC_BASE": "https://media.test",
}


class FakeS3:
    def __init__(self):
        self.uploads = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.uploads.append((bucket, key, ExtraArgs, fileobj.read()))


def _upload(client, payload, name, mime):
    return client.post(
        "/posts/admin/upload",
        data={"file": (io.BytesIO(payload), name, mime)},
        headers={"X-CSRFToken": CSRF},
    )


def test_upload_needs_configuration(client, monkeypatch):
    login_admin(client)
    monkeypatch.setattr(blog, "r2_config", lambda: {})
    resp = _upload(client, b"png", "a.png", "image/png")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Media uploads are not configured."


def test_upload_rejects_other_types(client, monkeypatch):
    login_admin(client)
    monkeypatch.setattr(blog, "r2_config", lambda: dict(R2))
    resp = _upload(client, b"hello", "notes.txt", "text/plain")
    assert resp.status_code == 415


def test_upload_stores_object(client, monkeypatch):
    login_admin(client)
    s3 = FakeS3()
    monkeypatch.setattr(blog, "r2_config", lambda: dict(R2))
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: s3)

    resp = _upload(client, b"\x89PNG", "Cat Photo.PNG", "image/png")
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["key"].startswith("media/") and data["key"].endswith(".png")
    assert data["url"] == f"https://media.test/{data['key']}"
    bucket, key, extra, body = s3.uploads[0]
    assert (bucket, key, extra, body) == ("media", data["key"], {"ContentType": "image/png"}, b"\x89PNG")
