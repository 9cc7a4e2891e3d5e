#!/usr/bin/env python3
"""
A single-file portfolio + microblog.
"""

import base64
import hashlib
import json
import os
import re
import secrets
import uuid
from collections import Counter, defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlparse

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from folio.navigation import ABOUT_TABS, build_nav, flatten, nav_rows, tab_anchor, walk
from folio.store import ContentStore, Identity, StoreError
from folio.threads import (
    ancestors,
    compose_row,
    excerpt,
    media_lines,
    post_status,
    post_tags,
    relative_time,
    reply_count_map,
    slugify,
)
from folio.tracker import BACK_TO_TOP_Y, ReadZone, replay

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
signer = TimestampSigner(SECRET_KEY, salt="login-next")

SITE_NAME = os.environ.get("SITE_NAME", "folio")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "")
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
CALLBACK_MAX_AGE = int(os.environ.get("CALLBACK_MAX_AGE", "3600"))
FEED_LATEST = 5

SECTION_TOP_MARGIN = float(os.environ.get("SECTION_TOP_MARGIN", "100"))
SECTION_BOTTOM_RATIO = float(os.environ.get("SECTION_BOTTOM_RATIO", "0.7"))
SECTION_BUFFER = float(os.environ.get("SECTION_BUFFER", "50"))
SECTION_FALLBACK_MS = int(os.environ.get("SECTION_FALLBACK_MS", "1000"))
SECTION_SETTLE_MS = int(os.environ.get("SECTION_SETTLE_MS", "150"))

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
UPLOAD_MAX_BYTES = 32 * 1024 * 1024
MEDIA_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/svg+xml",
    "video/mp4",
    "video/webm",
}

_TOKEN_CHARS = r"0-9A-Za-z\u0080-\uFFFF_-"
TAG_RE = re.compile(rf"(?<![\w&#/\[])#([{_TOKEN_CHARS}]+)")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CODE_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_CODE_SPAN_RE = re.compile(r"(`+[^`]*`+)")

NAV = build_nav(ABOUT_TABS)

try:
    __version__ = version("folio")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SUPABASE_URL=SUPABASE_URL,
    SUPABASE_ANON_KEY=SUPABASE_ANON_KEY,
    ADMIN_EMAIL=ADMIN_EMAIL,
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=True,  # only if you serve over HTTPS
    SECTION_TOP_MARGIN=SECTION_TOP_MARGIN,
    SECTION_BOTTOM_RATIO=SECTION_BOTTOM_RATIO,
    SECTION_BUFFER=SECTION_BUFFER,
    SECTION_FALLBACK_MS=SECTION_FALLBACK_MS,
    SECTION_SETTLE_MS=SECTION_SETTLE_MS,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _hashtags_to_links(line: str) -> str:
    parts = _CODE_SPAN_RE.split(line)
    for i in range(0, len(parts), 2):  # odd indexes are code spans
        parts[i] = TAG_RE.sub(
            lambda m: f"[#{m.group(1)}](/posts?tag={m.group(1).lower()})", parts[i]
        )
    return "".join(parts)


def render_post_html(text: str | None) -> str:
    """Markdown → HTML, with every #tag outside code turned into a feed link."""
    if not text:
        return ""
    out, in_fence = [], False
    for ln in text.splitlines():
        if _CODE_FENCE_RE.match(ln):
            in_fence = not in_fence
            out.append(ln)
            continue
        out.append(ln if in_fence else _hashtags_to_links(ln))
    md = markdown.Markdown(extensions=["fenced_code", "sane_lists", "nl2br"])
    return md.convert("\n".join(out))


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_post_html(text))


@app.template_filter("ago")
def ago_filter(iso: str | None, short: bool = False) -> str:
    return relative_time(iso, utc_now(), short=short)


@app.template_filter("host")
def host_filter(url: str | None) -> str:
    if not url:
        return ""
    return urlparse(url).netloc or url


###############################################################################
# Backend helpers
###############################################################################
def get_store() -> ContentStore:
    """One content-store client per request, acting as the signed-in user."""
    if "store" not in g:
        g.store = ContentStore(
            app.config["SUPABASE_URL"],
            app.config["SUPABASE_ANON_KEY"],
            token=session.get("access_token"),
        )
    return g.store


def get_identity() -> Identity:
    if "identity" not in g:
        g.identity = Identity(app.config["SUPABASE_URL"], app.config["SUPABASE_ANON_KEY"])
    return g.identity


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    base = cfg.get("R2_PUBLIC_BASE")
    if base:
        return f"{base.rstrip('/')}/{key.lstrip('/')}"
    return f"https://{cfg['R2_BUCKET']}.{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com/{key.lstrip('/')}"


###############################################################################
# Navigation helpers
###############################################################################
def read_zone() -> ReadZone:
    return ReadZone(
        top_margin=float(app.config["SECTION_TOP_MARGIN"]),
        bottom_ratio=float(app.config["SECTION_BOTTOM_RATIO"]),
        buffer=float(app.config["SECTION_BUFFER"]),
    )


def sidebar_rows(active_id: str | None) -> list[dict]:
    """
    Rows for the about sidebar.  Top-level rows also carry the ids of all
    their descendants so the browser can apply the same highlight rule.
    """
    descendants = {
        item.id: " ".join(flatten(item.children)) for item in NAV
    }
    rows = nav_rows(NAV, active_id)
    for row in rows:
        row["descendants"] = descendants.get(row["id"], "")
    return rows


def known_section(section: str | None) -> str | None:
    return section if section in {item.id for item, _ in walk(NAV)} else None


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en" style="scroll-behavior:smooth;">
<title>{{ title or site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1, shrink-to-fit=no">
<meta charset="utf-8">
<meta name="description" content="{{ description or site_name ~ ' – portfolio and posts' }}">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:40em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{text-decoration-color:#c9c9c9}
header.site{position:sticky;top:0;z-index:100;background:#222;display:flex;gap:1.2rem;align-items:baseline;padding:.8rem 0;border-bottom:1px solid #444}
header.site a[aria-current]{border-bottom:2px solid #95bbec}
.flash{padding:.5rem 1rem;border-left:4px solid #95bbec;background:#333;margin:1rem 0}
.post{border-bottom:1px solid #444;padding:1rem 0}
.post .meta{font-size:.75em;color:#888;display:flex;gap:.8rem;flex-wrap:wrap}
.pill{display:inline-block;padding:.05em .6em;margin-right:.3em;background:#444;color:#fff;border-radius:1em;font-size:.75em;text-decoration:none}
.pill.on{background:#95bbec;color:#000}
.ancestor{margin-left:1.5rem;padding-left:1rem;border-left:2px solid #555;opacity:.9}
#about-nav{position:fixed;top:8rem;left:1rem;width:16rem;font-size:.8em}
#about-nav ul{list-style:none;padding-left:0}
#about-nav a{color:#888;text-decoration:none}
#about-nav a.active{color:#fff;font-weight:700}
#back-to-top:not([hidden]){display:block;margin-top:1.5rem}
#about-nav li.level-0{margin-top:1rem;text-transform:uppercase;letter-spacing:.08em}
#about-nav li.level-1{padding-left:1rem}
#about-nav li.level-2{padding-left:2rem}
.about-section>div{scroll-margin-top:8rem}
@media (max-width:1100px){ #about-nav{position:static;width:auto}}
textarea,input,select{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box}
textarea{width:100%}
button,input[type=submit]{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer}
img,video{max-width:100%;height:auto}
</style>
<body>
<header class="site" id="page-top">
  <a href="{{ url_for('index') }}" style="font-weight:700;">{{ site_name }}</a>
  <a href="{{ url_for('about') }}"{% if request.endpoint == 'about' %} aria-current="page"{% endif %}>About</a>
  <a href="{{ url_for('posts') }}"{% if request.endpoint in ('posts', 'post_detail') %} aria-current="page"{% endif %}>Posts</a>
  {% if is_admin() %}
    <a href="{{ url_for('admin') }}"{% if request.endpoint and request.endpoint.startswith('admin') %} aria-current="page"{% endif %}>Admin</a>
  {% endif %}
</header>
<main>
{% for msg in get_flashed_messages() %}
  <div class="flash">{{ msg }}</div>
{% endfor %}
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2em;padding-top:1.5em;font-size:.8em;color:#888;border-top:1px solid #444;display:flex;justify-content:space-between;">
  <span>{{ site_name }} <span style="color:#666;">v{{ version }}</span></span>
  <span>
  {% if session.get('logged_in') %}
    <a href="{{ url_for('logout') }}">Sign out</a>
  {% else %}
    <a href="{{ url_for('login') }}">Sign in</a>
  {% endif %}
  </span>
</footer>
</body>
</html>
"""

TEMPL_POST = """
{% macro post_card(p, counts={}, link=True, cls='post') %}
<article class="{{ cls }}">
  <div class="meta">
    {% if p.published_at %}
      <a href="{{ url_for('post_detail', tweet_id=p.id) }}"><time datetime="{{ p.published_at }}">{{ p.published_at|ago }}</time></a>
    {% else %}
      <a href="{{ url_for('post_detail', tweet_id=p.id) }}">draft</a>
    {% endif %}
    {% if p.parent_tweet_id and link %}
      <a href="{{ url_for('post_detail', tweet_id=p.parent_tweet_id) }}">↳ in reply</a>
    {% endif %}
    {% if counts.get(p.id) %}
      <span>{{ counts[p.id] }} repl{{ 'y' if counts[p.id] == 1 else 'ies' }}</span>
    {% endif %}
    {% if p.view_count %}<span>{{ p.view_count }} views</span>{% endif %}
  </div>
  <div class="e-content">{{ p.content|md }}</div>
  {% for m in p.media_attachments or [] %}
    {% if m.type == 'image' %}
      <img src="{{ m.url }}" alt="{{ m.alt or '' }}" loading="lazy">
    {% elif m.type == 'video' %}
      <video src="{{ m.url }}" controls preload="metadata"></video>
    {% else %}
      <a href="{{ m.url }}" rel="noopener">{{ m.alt or (m.url|host) }}</a>
    {% endif %}
  {% endfor %}
  {% set tags = post_tags(p) %}
  {% if tags %}
    <div>{% for t in tags %}<a class="pill" href="{{ url_for('posts', tag=t.slug) }}">#{{ t.name }}</a>{% endfor %}</div>
  {% endif %}
</article>
{% endmacro %}
"""


app.jinja_env.globals.update(
    site_name=SITE_NAME,
    version=__version__,
    post_tags=post_tags,
    r2_enabled=r2_is_configured,
)


###############################################################################
# Authentication
###############################################################################
def is_admin() -> bool:
    email = (session.get("email") or "").strip().lower()
    admin = (app.config.get("ADMIN_EMAIL") or "").strip().lower()
    return bool(session.get("logged_in") and admin and email == admin)


def login_required() -> None:
    if not is_admin():
        abort(403)


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


app.jinja_env.globals["csrf_token"] = _csrf_token
app.jinja_env.globals["is_admin"] = is_admin


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method != "POST":
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def pkce_pair() -> tuple[str, str]:
    """Return ``(verifier, S256 challenge)``."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


def safe_next(signed: str | None) -> str:
    """Unsign the post-login target; anything odd falls back to the admin page."""
    default = url_for("admin")
    if not signed:
        return default
    try:
        target = signer.unsign(signed, max_age=CALLBACK_MAX_AGE).decode()
    except (SignatureExpired, BadSignature):
        return default
    if not target.startswith("/") or target.startswith("//"):
        return default
    return target


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    sent = False
    if request.method == "POST":
        email = request.form.get("email", "").strip()
        if not EMAIL_RE.match(email):
            flash("Please enter a valid email address.")
        else:
            verifier, challenge = pkce_pair()
            session["pkce_verifier"] = verifier
            target = request.args.get("next") or url_for("admin")
            redirect_to = url_for(
                "auth_callback", next=signer.sign(target).decode(), _external=True
            )
            try:
                get_identity().send_magic_link(
                    email, redirect_to=redirect_to, code_challenge=challenge
                )
            except StoreError:
                app.logger.exception("magic link request failed")
                flash("Could not send the sign-in link – try again later.")
            else:
                sent = True

    return render_template_string(
        TEMPL_LOGIN,
        title=f"Sign in | {SITE_NAME}",
        sent=sent,
        error=request.args.get("error"),
    )


TEMPL_LOGIN = wrap("""
{% block body %}
<h2>Sign in</h2>
{% if error %}
  <div class="flash">That sign-in link was invalid or has expired.</div>
{% endif %}
{% if sent %}
  <p>Check your inbox – we sent you a sign-in link.</p>
{% else %}
<form method="post">
  <label for="email">Email</label>
  <input id="email" name="email" type="email" autocomplete="email" required style="width:100%;">
  <button type="submit">Send magic link</button>
</form>
{% endif %}
{% endblock %}
""")


@app.route("/auth/callback")
def auth_callback():
    code = request.args.get("code", "")
    verifier = session.pop("pkce_verifier", None)
    target = safe_next(request.args.get("next"))
    if not code or not verifier:
        app.logger.warning("auth callback without code or verifier")
        return redirect(url_for("login", error="auth_callback_failed"))

    try:
        data = get_identity().exchange_code(code, verifier)
    except StoreError as exc:
        app.logger.warning("auth callback error: %s", exc)
        return redirect(url_for("login", error="auth_callback_failed"))

    session.clear()
    session.permanent = True
    session["logged_in"] = True
    session["email"] = (data.get("user") or {}).get("email", "")
    session["access_token"] = data["access_token"]
    session["csrf"] = secrets.token_hex(16)
    return redirect(target)


@app.route("/logout")
def logout():
    token = session.get("access_token")
    if token:
        try:
            get_identity().sign_out(token)
        except StoreError:
            app.logger.exception("sign-out call failed")
    session.clear()
    return redirect(url_for("index"))


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ no logged-in flag yet ⇒ allow (covers /login POST)
    if not session.get("logged_in"):
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


@app.route("/robots.txt")
def robots():
    rules = "User-agent: *\nDisallow: /posts/admin\nDisallow: /login\nAllow: /\n"
    return (
        Response(rules, mimetype="text/plain", direct_passthrough=True),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )


###############################################################################
# Home + about
###############################################################################
INTRO = """
Hi, I write software, collect languages, and post short notes here.

Read more [about me](/about) or browse the [posts](/posts).
"""

ABOUT_TEXT = {
    "projects": "Small tools, a few web apps, and this site.",
    "languages": "The languages I reach for, roughly in order of how often.",
    "python": "My go-to for prototyping, data work and scripting: Flask and FastAPI on the web, pandas and numpy for numbers, and a lot of glue code.",
    "rust": "Ownership and zero-cost abstractions keep pulling me back, mostly for CLI tools and systems experiments.",
    "others": "C and C++ from the early days, TypeScript for the front end, and the occasional shell script that grew too big.",
    "frameworks": "Flask, Django, React and Next.js; whatever keeps the moving parts few.",
    "tools": "Git, a tiling terminal, Docker, and a notebook for the things worth keeping.",
    "mandarin": "Native speaker.",
    "english": "Daily working language.",
    "german": "Learned while living abroad; still fighting with the articles.",
    "french": "Reading comfortably, speaking slowly.",
    "japanese": "Kana, a few hundred kanji, and many songs.",
    "latin": "Declensions as a hobby.",
    "sanskrit": "Devanagari and the first chapters of a grammar.",
    "kaifeng": "Community work in my home town.",
    "volunteering": "Teaching programming basics to kids on weekends.",
    "animal-on-campus": "Feeding and finding homes for the campus cats.",
    "mental-health": "Walks, sleep, and fewer notifications.",
    "cooking": "Noodles from scratch whenever there is time.",
    "travel": "Slow trips by train.",
    "sports": "Running and badminton.",
    "gaming": "Story-driven games and the odd roguelike.",
    "films": "Anything by Kore-eda.",
    "tv-series": "Long dramas, watched slowly.",
    "ceramics": "Wheel-thrown bowls of uneven quality.",
}


@app.route("/")
def index():
    latest = []
    try:
        latest = get_store().published_tweets(now=utc_now(), limit=FEED_LATEST)
    except StoreError:
        app.logger.exception("could not load latest posts")
    return render_template_string(TEMPL_INDEX, intro=INTRO, latest=latest)


TEMPL_INDEX = wrap(TEMPL_POST + """
{% block body %}
<div class="e-content">{{ intro|md }}</div>
{% if latest %}
  <h3>Latest posts</h3>
  {% for p in latest %}{{ post_card(p) }}{% endfor %}
  <p><a href="{{ url_for('posts') }}">All posts →</a></p>
{% endif %}
{% endblock %}
""")


@app.route("/about")
def about():
    active = known_section(request.args.get("section"))
    zone = read_zone()
    return render_template_string(
        TEMPL_ABOUT,
        title=f"About | {SITE_NAME}",
        nav=NAV,
        rows=sidebar_rows(active),
        about_text=ABOUT_TEXT,
        root_margin=zone.root_margin(),
        buffer=zone.buffer,
        fallback_ms=app.config["SECTION_FALLBACK_MS"],
        settle_ms=app.config["SECTION_SETTLE_MS"],
        back_to_top_y=BACK_TO_TOP_Y,
    )


@app.route("/about/<tab>")
def about_tab(tab):
    if tab not in {t["slug"] for t in ABOUT_TABS}:
        abort(404)
    return redirect(url_for("about") + "#" + tab_anchor(tab))


TEMPL_ABOUT = wrap("""
{% block body %}
<nav id="about-nav" aria-label="Table of contents"
     data-root-margin="{{ root_margin }}" data-buffer="{{ buffer }}"
     data-fallback="{{ fallback_ms }}" data-settle="{{ settle_ms }}"
     data-back-to-top="{{ back_to_top_y }}">
  <ul>
  {% for r in rows %}
    <li class="level-{{ r.level }}">
      <a href="{{ r.href }}" data-id="{{ r.id }}" data-level="{{ r.level }}"
         data-descendants="{{ r.descendants }}"
         {% if r.active %}class="active" aria-current="location"{% endif %}>{{ r.label }}</a>
    </li>
  {% endfor %}
  </ul>
  <a href="#page-top" id="back-to-top" hidden>Scroll to top</a>
</nav>

{% macro section_body(item, depth) %}
  <div id="{{ item.id }}">
    <h{{ depth + 2 }}>{{ item.label }}</h{{ depth + 2 }}>
    {% if about_text.get(item.id) %}<p>{{ about_text[item.id] }}</p>{% endif %}
    {% for child in item.children %}{{ section_body(child, depth + 1) }}{% endfor %}
  </div>
{% endmacro %}

{% for tab in nav %}
<section id="{{ tab.id }}" class="about-section">
  <h2>{{ tab.label }}</h2>
  {% for item in tab.children %}{{ section_body(item, 1) }}{% endfor %}
</section>
{% endfor %}

<script>
(() => {
  const nav = document.getElementById('about-nav');
  if (!nav || !('IntersectionObserver' in window)) return;
  const buffer = parseFloat(nav.dataset.buffer);
  const fallback = parseInt(nav.dataset.fallback, 10);
  const settle = parseInt(nav.dataset.settle, 10);
  const links = Array.from(nav.querySelectorAll('a[data-id]'));

  const setActive = (id) => links.forEach((a) => {
    const on = a.dataset.level === '0'
      ? a.dataset.id === id || a.dataset.descendants.split(' ').includes(id)
      : a.dataset.id === id;
    a.classList.toggle('active', on);
  });

  let muted = false, fallbackT = null, settleT = null;
  const unlock = () => {
    muted = false;
    clearTimeout(fallbackT);
    clearTimeout(settleT);
  };

  const observer = new IntersectionObserver((entries) => {
    if (muted) return;
    const hits = entries.filter((e) => e.isIntersecting)
      .map((e) => ({id: e.target.id, top: e.boundingClientRect.top}))
      .sort((a, b) => a.top - b.top);
    if (!hits.length) return;
    const pick = hits.find((h) => h.top > buffer) || hits[hits.length - 1];
    setActive(pick.id);
  }, {rootMargin: nav.dataset.rootMargin});

  links.forEach((a) => {
    const el = document.getElementById(a.dataset.id);
    if (el) observer.observe(el);
    a.addEventListener('click', () => {
      setActive(a.dataset.id);
      muted = true;
      clearTimeout(fallbackT);
      fallbackT = setTimeout(unlock, fallback);
    });
  });

  const topBtn = document.getElementById('back-to-top');
  const topAfter = parseFloat(nav.dataset.backToTop);
  const onScroll = () => {
    topBtn.hidden = !(window.scrollY > topAfter);
    if (!muted) return;
    clearTimeout(settleT);
    settleT = setTimeout(unlock, settle);
  };
  window.addEventListener('scroll', onScroll, {passive: true});
  window.addEventListener('pagehide', () => {
    observer.disconnect();
    window.removeEventListener('scroll', onScroll);
    unlock();
  });
})();
</script>
{% endblock %}
""")


###############################################################################
# Posts
###############################################################################
@app.route("/posts")
def posts():
    tag = request.args.get("tag", "").strip() or None
    store = get_store()
    rows = store.published_tweets(tag=tag, now=utc_now())
    counts = reply_count_map(store.reply_rows(r["id"] for r in rows))
    return render_template_string(
        TEMPL_POSTS,
        title=f"Posts | {SITE_NAME}",
        rows=rows,
        counts=counts,
        all_tags=store.tags(),
        tag=tag,
    )


TEMPL_POSTS = wrap(TEMPL_POST + """
{% block body %}
<h2>Posts</h2>
{% if all_tags %}
<div style="margin-bottom:1rem;">
  <a class="pill{% if not tag %} on{% endif %}" href="{{ url_for('posts') }}">All</a>
  {% for t in all_tags %}
    <a class="pill{% if tag == t.slug %} on{% endif %}" href="{{ url_for('posts', tag=t.slug) }}">#{{ t.name }}</a>
  {% endfor %}
</div>
{% endif %}
{% for p in rows %}
  {{ post_card(p, counts) }}
{% else %}
  <p>No posts{% if tag %} tagged #{{ tag }}{% endif %} yet.</p>
{% endfor %}
{% endblock %}
""")


def _visible(row: dict | None) -> dict | None:
    """The row if the public may see it right now."""
    if row and post_status(row, utc_now()) == "published":
        return row
    return None


@app.route("/posts/<tweet_id>")
def post_detail(tweet_id):
    store = get_store()
    tweet = store.tweet(tweet_id)
    admin = is_admin()
    if not tweet or (not admin and not _visible(tweet)):
        abort(404)

    if not admin:
        try:
            store.increment_view_count(tweet_id)
        except StoreError:
            app.logger.exception("view count update failed")

    chain = ancestors(
        tweet.get("parent_tweet_id"),
        lambda pid: _visible(store.tweet(pid, published_only=True)),
    )
    return render_template_string(
        TEMPL_POST_DETAIL,
        title=f"{excerpt(tweet.get('content'), 60) or 'A post'} | Posts",
        description=excerpt(tweet.get("content")) or "A post",
        tweet=tweet,
        status=post_status(tweet, utc_now()),
        chain=chain,
        replies=store.replies(tweet_id, now=utc_now()),
    )


TEMPL_POST_DETAIL = wrap(TEMPL_POST + """
{% block body %}
<p><a href="{{ url_for('posts') }}">← Posts</a></p>
{% for p in chain %}{{ post_card(p, link=False, cls='post ancestor') }}{% endfor %}
{% if status != 'published' %}<div class="flash">This post is {{ status }}.</div>{% endif %}
{{ post_card(tweet, link=False) }}
{% if is_admin() %}
  <p>
    <a href="{{ url_for('admin_compose', edit=tweet.id) }}">Edit</a>
    · <a href="{{ url_for('admin_compose', reply=tweet.id) }}">Reply</a>
  </p>
{% endif %}
{% if replies %}
  <h3>{{ replies|length }} repl{{ 'y' if replies|length == 1 else 'ies' }}</h3>
  {% for r in replies %}{{ post_card(r, link=False) }}{% endfor %}
{% endif %}
{% endblock %}
""")


###############################################################################
# Admin
###############################################################################
@app.route("/posts/admin")
def admin():
    login_required()
    rows = get_store().all_tweets()
    now = utc_now()
    for r in rows:
        r["status"] = post_status(r, now)
    stats = Counter(r["status"] for r in rows)
    return render_template_string(
        TEMPL_ADMIN, title=f"Admin | {SITE_NAME}", rows=rows, stats=stats
    )


TEMPL_ADMIN = wrap("""
{% block body %}
<h2>Dashboard</h2>
<p>
  <strong>{{ stats.published }}</strong> published ·
  <strong>{{ stats.scheduled }}</strong> scheduled ·
  <strong>{{ stats.draft }}</strong> drafts
</p>
<p>
  <a class="pill on" href="{{ url_for('admin_compose') }}">New post</a>
  <a class="pill" href="{{ url_for('admin_tags') }}">Tags</a>
</p>
<table>
{% for p in rows %}
  <tr>
    <td><span class="pill">{{ p.status }}</span></td>
    <td><a href="{{ url_for('post_detail', tweet_id=p.id) }}">{{ (p.content or '(media only)')[:80] }}</a></td>
    <td style="white-space:nowrap;">
      <a href="{{ url_for('admin_compose', edit=p.id) }}">Edit</a>
      <form method="post" action="{{ url_for('admin_delete', tweet_id=p.id) }}" style="display:inline;">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit" onclick="return confirm('Delete this post?')">Delete</button>
      </form>
    </td>
  </tr>
{% endfor %}
</table>
{% endblock %}
""")


@app.route("/posts/admin/compose", methods=["GET", "POST"])
def admin_compose():
    login_required()
    store = get_store()
    edit_id = request.args.get("edit") or None
    existing = store.tweet(edit_id) if edit_id else None
    if edit_id and not existing:
        abort(404)

    if request.method == "POST":
        row = compose_row(request.form, utc_now())
        tag_ids = request.form.getlist("tags")
        if not row["content"] and not row["media_attachments"]:
            flash("A post needs some text or at least one attachment.")
        else:
            try:
                if existing:
                    row.pop("parent_tweet_id")  # replies keep their parent
                    kept = existing.get("published_at")
                    if kept and row["is_published"] and request.form.get("scheduled_at") == kept[:16]:
                        row["published_at"] = kept
                    store.update_tweet(edit_id, row)
                    tweet_id = edit_id
                else:
                    tweet_id = store.create_tweet(row)["id"]
                store.set_tweet_tags(tweet_id, tag_ids)
            except StoreError:
                app.logger.exception("saving post failed")
                flash("Saving failed – the post was not stored.")
            else:
                flash("Post saved.")
                return redirect(url_for("post_detail", tweet_id=tweet_id))

    form = request.form if request.method == "POST" else {}
    current = existing or {}
    return render_template_string(
        TEMPL_COMPOSE,
        title=f"{'Edit' if existing else 'New'} post | {SITE_NAME}",
        existing=existing,
        content=form.get("content", current.get("content") or ""),
        media=form.get("media", media_lines(current.get("media_attachments"))),
        selected={str(t["id"]) for t in post_tags(current)}
        | set(request.form.getlist("tags")),
        publish=current.get("is_published", True) if not form else bool(form.get("publish")),
        scheduled_at=(current.get("published_at") or "")[:16],
        parent_id=request.args.get("reply") or current.get("parent_tweet_id") or "",
        all_tags=store.tags(),
    )


TEMPL_COMPOSE = wrap("""
{% block body %}
<h2>{{ 'Edit post' if existing else 'New post' }}</h2>
{% if parent_id %}
  <p>Replying to <a href="{{ url_for('post_detail', tweet_id=parent_id) }}">this post</a>.</p>
{% endif %}
<form method="post" id="compose">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="parent_tweet_id" value="{{ parent_id }}">
  <textarea name="content" rows="6" placeholder="What's happening?">{{ content }}</textarea>

  <label for="media">Media (one URL per line, optional “| alt text”)</label>
  <textarea id="media" name="media" rows="2">{{ media }}</textarea>
  {% if r2_enabled() %}
    <input type="file" id="media-file" accept="image/*,video/mp4,video/webm">
    <span id="media-status" style="font-size:.75em;color:#888;"></span>
  {% endif %}

  {% if all_tags %}
  <fieldset>
    <legend>Tags</legend>
    {% for t in all_tags %}
      <label style="display:inline-block;font-weight:normal;margin-right:1rem;">
        <input type="checkbox" name="tags" value="{{ t.id }}"
               {% if t.id|string in selected %}checked{% endif %}> {{ t.name }}
      </label>
    {% endfor %}
  </fieldset>
  {% endif %}

  <label style="font-weight:normal;">
    <input type="checkbox" name="publish" value="1" {% if publish %}checked{% endif %}> Publish
  </label>
  <label for="scheduled_at">Publish date (UTC, empty = now, future = scheduled)</label>
  <input type="datetime-local" id="scheduled_at" name="scheduled_at" value="{{ scheduled_at }}">
  <div><button type="submit">{{ 'Update' if existing else 'Post' }}</button></div>
</form>
{% if r2_enabled() %}
<script>
(() => {
  const input = document.getElementById('media-file');
  const status = document.getElementById('media-status');
  const ta = document.getElementById('media');
  const csrf = document.querySelector('input[name="csrf"]').value;
  input.addEventListener('change', async () => {
    if (!input.files.length) return;
    const fd = new FormData();
    fd.append('file', input.files[0]);
    status.textContent = 'Uploading...';
    try {
      const res = await fetch('{{ url_for('admin_upload') }}', {method: 'POST', headers: {'X-CSRFToken': csrf}, body: fd});
      const data = await res.json();
      if (!res.ok || !data.url) throw new Error(data.error || 'Upload failed');
      ta.value = (ta.value.trim() ? ta.value.trim() + '\\n' : '') + data.url;
      status.textContent = 'Added.';
    } catch (err) {
      status.textContent = err.message || 'Upload failed.';
    }
    input.value = '';
  });
})();
</script>
{% endif %}
{% endblock %}
""")


@app.route("/posts/admin/<tweet_id>/delete", methods=["POST"])
def admin_delete(tweet_id):
    login_required()
    try:
        get_store().delete_tweet(tweet_id)
    except StoreError:
        app.logger.exception("deleting post failed")
        flash("Deleting failed.")
    else:
        flash("Post deleted.")
    return redirect(url_for("admin"))


@app.route("/posts/admin/tags", methods=["GET", "POST"])
def admin_tags():
    login_required()
    store = get_store()
    if request.method == "POST":
        action = request.form.get("action", "create")
        try:
            if action == "delete":
                store.delete_tag(request.form.get("tag_id", ""))
                flash("Tag deleted.")
            else:
                name = request.form.get("name", "").strip()
                slug = slugify(name)
                existing = store.tags()
                if not slug:
                    flash("Tag name needs at least one letter or digit.")
                elif any(t["slug"] == slug or t["name"].lower() == name.lower() for t in existing):
                    flash(f"Tag “{name}” already exists.")
                else:
                    store.create_tag(name, slug)
                    flash(f"Tag “{name}” created.")
        except StoreError:
            app.logger.exception("tag update failed")
            flash("Tag update failed.")
        return redirect(url_for("admin_tags"))

    return render_template_string(
        TEMPL_TAGS, title=f"Tags | {SITE_NAME}", tags=store.tags()
    )


TEMPL_TAGS = wrap("""
{% block body %}
<h2>Tags</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="create">
  <input name="name" placeholder="New tag name" required>
  <button type="submit">Add</button>
</form>
<ul>
{% for t in tags %}
  <li>
    <a href="{{ url_for('posts', tag=t.slug) }}">{{ t.name }}</a>
    <span style="color:#888;">({{ t.slug }})</span>
    <form method="post" style="display:inline;">
      <input type="hidden" name="csrf" value="{{ csrf_token() }}">
      <input type="hidden" name="action" value="delete">
      <input type="hidden" name="tag_id" value="{{ t.id }}">
      <button type="submit" onclick="return confirm('Delete tag {{ t.name }}?')">×</button>
    </form>
  </li>
{% else %}
  <li>No tags yet.</li>
{% endfor %}
</ul>
{% endblock %}
""")


@app.route("/posts/admin/upload", methods=["POST"])
def admin_upload():
    login_required()

    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Media uploads are not configured."}, 400

    if "file" not in request.files:
        return {"error": "No file received."}, 400

    f = request.files["file"]
    if not f.filename:
        return {"error": "No file selected."}, 400

    mime = (f.mimetype or "").lower()
    if mime not in MEDIA_MIMES:
        return {"error": "Only images and mp4/webm videos are allowed."}, 415

    clen = request.content_length
    if clen and clen > UPLOAD_MAX_BYTES:
        return {"error": "File too large (32 MiB max)."}, 413

    ext = Path(secure_filename(f.filename)).suffix.lower()
    key = f"media/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"

    try:
        client = _r2_client(cfg)
        f.stream.seek(0)
        client.upload_fileobj(
            f.stream,
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        return {"error": "Upload failed – check R2 credentials."}, 502

    return {"url": r2_object_url(cfg, key), "key": key}, 201


###############################################################################
# CLI
###############################################################################
@app.cli.command("nav")
def cli_nav():
    """Print the about-page sidebar tree."""
    for item, depth in walk(NAV):
        click.echo(f"{'  ' * depth}{item.label}  #{item.id}")


@app.cli.command("replay-scroll")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--buffer", type=float, default=None, help="Tie-break buffer below the header (px).")
@click.option("--fallback-ms", type=int, default=None, help="Unlock after a click (ms).")
@click.option("--settle-ms", type=int, default=None, help="Scroll silence that unlocks (ms).")
def cli_replay_scroll(events_file: Path, buffer, fallback_ms, settle_ms):
    """Replay a recorded scroll session and print every highlight change."""
    zone = read_zone()
    if buffer is not None:
        zone = ReadZone(zone.top_margin, zone.bottom_ratio, buffer)
    fallback = (fallback_ms if fallback_ms is not None else app.config["SECTION_FALLBACK_MS"]) / 1000
    settle = (settle_ms if settle_ms is not None else app.config["SECTION_SETTLE_MS"]) / 1000

    try:
        payload = json.loads(events_file.read_text())
        events = payload["events"] if isinstance(payload, dict) else payload
        anchors = payload.get("anchors") if isinstance(payload, dict) else None
        changes = replay(
            events, NAV, zone=zone, fallback=fallback, settle=settle, anchors=anchors
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(f"bad event log: {exc}") from exc

    if not changes:
        click.secho("No highlight changes.", fg="yellow")
    for ms, item_id in changes:
        click.echo(f"{ms:>7} ms  {item_id}")


###############################################################################
# Errors
###############################################################################
@app.errorhandler(StoreError)
def store_unavailable(exc):
    app.logger.exception("content store unavailable")
    return render_template_string(TEMPL_503, title=SITE_NAME), 503


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(TEMPL_404, title=SITE_NAME), 404


@app.errorhandler(500)
def internal_error(exc):
    return render_template_string(TEMPL_500, title=SITE_NAME), 500


TEMPL_404 = wrap("""
{% block body %}
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
{% endblock %}
""")

TEMPL_503 = wrap("""
{% block body %}
  <h2>Posts are unavailable</h2>
  <p>The post storage could not be reached. Please try again later.</p>
{% endblock %}
""")
