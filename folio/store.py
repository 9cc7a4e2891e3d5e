"""
Clients for the hosted backend: a PostgREST table API for posts and tags,
and a GoTrue-style identity service for magic-link sign-in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import requests

log = logging.getLogger(__name__)

TIMEOUT = 10
NO_MATCH_ID = "00000000-0000-0000-0000-000000000000"

TWEET_COLUMNS = (
    "id,content,media_attachments,parent_tweet_id,is_published,published_at,"
    "view_count,like_count,tweet_tags(tags(id,name,slug))"
)


class StoreError(RuntimeError):
    """Any failed call to the content store or the identity service."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _in(values) -> str:
    return "in.(" + ",".join(str(v) for v in values) + ")"


class _Client:
    def __init__(self, url: str, key: str, *, session=None):
        if not url or not key:
            raise StoreError("backend URL and key must be configured")
        self.url = url.rstrip("/")
        self.key = key
        self.session = session or requests.Session()

    def _headers(self, token: str | None = None, **extra) -> dict:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {token or self.key}",
            **extra,
        }

    def _call(self, method: str, path: str, *, token=None, headers=None, **kw):
        log.debug("%s %s %s", method, path, kw.get("params") or "")
        try:
            resp = self.session.request(
                method,
                f"{self.url}{path}",
                headers=self._headers(token, **(headers or {})),
                timeout=TIMEOUT,
                **kw,
            )
        except requests.RequestException as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise StoreError(
                f"{method} {path} → {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise StoreError(f"{method} {path}: response is not JSON") from exc


class ContentStore(_Client):
    """Rows of ``tweets``, ``tags`` and ``tweet_tags``."""

    def __init__(self, url: str, key: str, *, token: str | None = None, session=None):
        super().__init__(url, key, session=session)
        self.token = token

    def _rest(self, method: str, table: str, *, params=None, json=None, prefer=None):
        headers = {"Prefer": prefer} if prefer else None
        return self._call(
            method,
            f"/rest/v1/{table}",
            token=self.token,
            headers=headers,
            params=params,
            json=json,
        )

    # ── reads ──────────────────────────────────────────────────────
    def tags(self) -> list[dict]:
        return self._rest("GET", "tags", params={"select": "*", "order": "name"}) or []

    def tag_by_slug(self, slug: str) -> dict | None:
        rows = self._rest(
            "GET", "tags", params={"select": "id,name,slug", "slug": f"eq.{slug}"}
        )
        return rows[0] if rows else None

    def published_tweets(self, *, tag: str | None = None, now: datetime | None = None, limit=None):
        now = now or datetime.now(timezone.utc)
        params = {
            "select": TWEET_COLUMNS,
            "is_published": "eq.true",
            "published_at": f"lte.{now.isoformat()}",
            "order": "published_at.desc",
        }
        if limit:
            params["limit"] = str(limit)
        if tag:
            found = self.tag_by_slug(tag)
            if found:
                links = self._rest(
                    "GET",
                    "tweet_tags",
                    params={"select": "tweet_id", "tag_id": f"eq.{found['id']}"},
                ) or []
                ids = [ln["tweet_id"] for ln in links] or [NO_MATCH_ID]
                params["id"] = _in(ids)
        return self._rest("GET", "tweets", params=params) or []

    def all_tweets(self) -> list[dict]:
        return self._rest(
            "GET",
            "tweets",
            params={"select": TWEET_COLUMNS + ",created_at", "order": "created_at.desc"},
        ) or []

    def tweet(self, tweet_id: str, *, published_only: bool = False) -> dict | None:
        params = {"select": TWEET_COLUMNS, "id": f"eq.{tweet_id}"}
        if published_only:
            params["is_published"] = "eq.true"
        rows = self._rest("GET", "tweets", params=params)
        return rows[0] if rows else None

    def replies(self, tweet_id: str, *, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now(timezone.utc)
        return self._rest(
            "GET",
            "tweets",
            params={
                "select": TWEET_COLUMNS,
                "parent_tweet_id": f"eq.{tweet_id}",
                "is_published": "eq.true",
                "published_at": f"lte.{now.isoformat()}",
                "order": "published_at.asc",
            },
        ) or []

    def reply_rows(self, tweet_ids) -> list[dict]:
        """``parent_tweet_id`` of every published reply to *tweet_ids*."""
        tweet_ids = list(tweet_ids)
        if not tweet_ids:
            return []
        return self._rest(
            "GET",
            "tweets",
            params={
                "select": "parent_tweet_id",
                "parent_tweet_id": _in(tweet_ids),
                "is_published": "eq.true",
            },
        ) or []

    # ── writes ─────────────────────────────────────────────────────
    def create_tweet(self, row: dict) -> dict:
        rows = self._rest("POST", "tweets", json=row, prefer="return=representation")
        if not rows:
            raise StoreError("insert returned no row")
        return rows[0]

    def update_tweet(self, tweet_id: str, row: dict) -> None:
        self._rest("PATCH", "tweets", params={"id": f"eq.{tweet_id}"}, json=row)

    def delete_tweet(self, tweet_id: str) -> None:
        self._rest("DELETE", "tweets", params={"id": f"eq.{tweet_id}"})

    def set_tweet_tags(self, tweet_id: str, tag_ids) -> None:
        self._rest("DELETE", "tweet_tags", params={"tweet_id": f"eq.{tweet_id}"})
        links = [{"tweet_id": tweet_id, "tag_id": int(t)} for t in tag_ids]
        if links:
            self._rest("POST", "tweet_tags", json=links)

    def create_tag(self, name: str, slug: str) -> dict:
        rows = self._rest(
            "POST", "tags", json={"name": name, "slug": slug}, prefer="return=representation"
        )
        if not rows:
            raise StoreError("insert returned no row")
        return rows[0]

    def delete_tag(self, tag_id) -> None:
        self._rest("DELETE", "tags", params={"id": f"eq.{tag_id}"})

    def increment_view_count(self, tweet_id: str) -> None:
        self._call(
            "POST",
            "/rest/v1/rpc/increment_view_count",
            token=self.token,
            json={"tweet_id": tweet_id},
        )


class Identity(_Client):
    """Magic-link sign-in (PKCE flow)."""

    def send_magic_link(self, email: str, *, redirect_to: str, code_challenge: str) -> None:
        self._call(
            "POST",
            "/auth/v1/otp",
            params={"redirect_to": redirect_to},
            json={
                "email": email,
                "create_user": False,
                "code_challenge": code_challenge,
                "code_challenge_method": "s256",
            },
        )

    def exchange_code(self, auth_code: str, code_verifier: str) -> dict:
        data = self._call(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )
        if not data or not data.get("access_token"):
            raise StoreError("code exchange returned no session")
        return data

    def sign_out(self, token: str) -> None:
        self._call("POST", "/auth/v1/logout", token=token)
