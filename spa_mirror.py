#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import posixpath
import re
import sys
import tomllib
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import quote, unquote, urldefrag, urljoin, urlparse, urlunparse

import requests
import yaml
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

# content kinds
SCRIPT = "script"
STYLESHEET = "stylesheet"
STRUCTURED = "structured"
OTHER = "other"
HTML = "html"

SCANNABLE = {SCRIPT, STYLESHEET, STRUCTURED}

EXT_KINDS = {
    ".js": SCRIPT,
    ".mjs": SCRIPT,
    ".css": STYLESHEET,
    ".json": STRUCTURED,
}
HTML_LIKE_EXTS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm"}
# binary and media files keep kind OTHER whatever the referencing context says
OPAQUE_EXTS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif", ".bmp", ".ico", ".svg",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp4", ".webm", ".ogg", ".mp3", ".wav", ".m4a", ".mov",
    ".pdf", ".zip", ".gz", ".wasm", ".map",
}
DEFAULT_PORTS = {"http": 80, "https": 443}

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
ABSOLUTE_RE = re.compile(r"^https?://", re.IGNORECASE)
PATH_EXT_RE = re.compile(r"\.[A-Za-z0-9]{1,10}$")
ABS_URL_IN_TEXT_RE = re.compile(r"https?://[^\s\"'<>{}|\\^`\]]+")
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")

MANIFEST_PATH = ".mirror/manifest.json"

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 8
    sourcemaps: bool = False
    same_origin_only: bool = False
    user_agent: Optional[str] = None
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- URL classification --------------------


def canonical_url(u: str) -> str:
    p = urlparse(u)
    return urlunparse(
        (p.scheme.lower(), p.netloc.lower(), p.path or "/", p.params, p.query, "")
    )


def classify_reference(ref: Optional[str], base_url: str) -> Optional[str]:
    """Resolve a raw reference to an absolute http(s) URL.

    Returns None for anything that is not a fetchable asset: data URIs,
    fragment-only references, other schemes and malformed input. Never raises.
    """
    if not ref or not isinstance(ref, str):
        return None
    ref = ref.strip()
    if not ref or ref.lower().startswith("data:") or ref.startswith("#"):
        return None
    try:
        if ref.startswith("//"):
            absu = "https:" + ref
        elif ABSOLUTE_RE.match(ref):
            absu = ref
        else:
            absu = urljoin(base_url, ref)
        p = urlparse(absu)
        if p.scheme.lower() not in ("http", "https") or not p.hostname:
            return None
        return canonical_url(absu)
    except ValueError:
        return None


def is_rooted_ref(ref: str) -> bool:
    # absolute, protocol-relative or root-relative
    ref = ref.strip()
    return bool(ABSOLUTE_RE.match(ref)) or ref.startswith("/")


def url_extension(url: str) -> str:
    try:
        return posixpath.splitext(urlparse(url).path)[1].lower()
    except ValueError:
        return ""


def content_type_for(url: str) -> str:
    return EXT_KINDS.get(url_extension(url), OTHER)


def is_opaque(url: str) -> bool:
    return url_extension(url) in OPAQUE_EXTS


def merge_kind(current: str, observed: Optional[str]) -> str:
    # most specific observed kind wins; a specific kind is never replaced
    if current == OTHER and observed:
        return observed
    return current


def origin_of(u: str) -> Tuple[str, str, Optional[int]]:
    p = urlparse(u)
    scheme = p.scheme.lower()
    try:
        port = p.port or DEFAULT_PORTS.get(scheme)
    except ValueError:
        port = None
    return scheme, (p.hostname or "").lower(), port


def is_same_origin(base: str, other: str) -> bool:
    return origin_of(base) == origin_of(other)


def is_page_like(u: str) -> bool:
    path = urlparse(u).path or "/"
    if path == "/":
        return True
    return posixpath.splitext(path)[1].lower() in HTML_LIKE_EXTS


def looks_like_path(ref: str) -> bool:
    if "${" in ref or any(c in ref for c in "<>{}\\"):
        return False
    if ABSOLUTE_RE.match(ref) or ref.startswith(("/", "./", "../")):
        return True
    path = ref.split("?", 1)[0].split("#", 1)[0]
    return "/" in path or bool(PATH_EXT_RE.search(path))


# -------------------- Idiom tables --------------------

_Q = r"(?P<q>[`'\"])(?P<u>[^`'\"\s]+?)(?P=q)"

# (regex, kind hint); each regex exposes the reference as group "u"
JS_IDIOMS: Tuple[Tuple[re.Pattern, Optional[str]], ...] = (
    (re.compile(r"\bimport\s*\(\s*" + _Q + r"\s*\)"), SCRIPT),
    (re.compile(r"\bimport\s*(?:[\w$*{}\s,]{1,400}?\s*\bfrom\s*)?" + _Q), SCRIPT),
    (re.compile(r"\bexport\s*[\w$*{}\s,]{1,400}?\s*\bfrom\s*" + _Q), SCRIPT),
    (re.compile(r"\brequire\s*\(\s*" + _Q + r"\s*\)"), None),
    (re.compile(r"\bnew\s+URL\s*\(\s*" + _Q), None),
    (re.compile(r"__webpack_require__\.p\s*\+\s*" + _Q), None),
    (re.compile(r"__webpack_public_path__\s*\+\s*" + _Q), None),
    (re.compile(r"\bfetch\s*\(\s*" + _Q), None),
    (re.compile(r"\bloadScript\s*\(\s*" + _Q + r"\s*\)"), SCRIPT),
    (re.compile(r"\bimportScripts\s*\(\s*" + _Q), SCRIPT),
    (re.compile(r"\b(?:chunk|src|href|url)[\"']?\s*:\s*" + _Q), None),
)
JS_ABSOLUTE_LITERAL_RE = re.compile(
    r"(?P<q>[`'\"])(?P<u>(?:https?:)?//[^`'\"\s]+)(?P=q)", re.IGNORECASE
)

CSS_URL_RE = re.compile(
    r"url\(\s*(?P<q>[\"']?)(?P<u>[^)\"']+?)(?P=q)\s*\)", re.IGNORECASE
)
CSS_IMPORT_RE = re.compile(r"@import\s+(?P<q>[\"'])(?P<u>[^\"']+)(?P=q)", re.IGNORECASE)

JSON_KEYS = ("src", "href", "url", "image", "icon", "logo", "poster", "thumbnail")
JSON_ASSET_RE = re.compile(
    r"\"(?:" + "|".join(JSON_KEYS) + r")\"\s*:\s*\"(?P<u>[^\"]+?)\""
)
JSON_ABSOLUTE_VALUE_RE = re.compile(r":\s*\"(?P<u>(?:https?:)?//[^\"\s]+)\"", re.IGNORECASE)

SOURCE_MAP_LINE_RE = re.compile(r"//[#@]\s*sourceMappingURL=(?P<u>[^\s'\"]+)")
SOURCE_MAP_BLOCK_RE = re.compile(r"/\*[#@]\s*sourceMappingURL=(?P<u>[^\s*]+)\s*\*/")

REWRITE_PATTERNS: Dict[str, Tuple[re.Pattern, ...]] = {
    SCRIPT: tuple(rx for rx, _ in JS_IDIOMS) + (JS_ABSOLUTE_LITERAL_RE,),
    STYLESHEET: (CSS_URL_RE, CSS_IMPORT_RE),
    STRUCTURED: (JSON_ASSET_RE, JSON_ABSOLUTE_VALUE_RE),
}

# -------------------- Extraction --------------------


def _dedupe(refs: Iterable[Tuple[str, Optional[str]]]) -> List[Tuple[str, Optional[str]]]:
    seen: Dict[str, Optional[str]] = {}
    for u, hint in refs:
        if u not in seen or seen[u] is None:
            seen[u] = hint
    return list(seen.items())


def extract_references(
    text: str, kind: str, base_url: str
) -> List[Tuple[str, Optional[str]]]:
    """Find asset references in script, stylesheet or structured text.

    Returns (absolute url, kind hint) pairs in order of first appearance so
    that discovery, and therefore path tie-breaking, is reproducible.
    """
    found: List[Tuple[str, Optional[str]]] = []
    if kind == SCRIPT:
        for rx, hint in JS_IDIOMS:
            for m in rx.finditer(text):
                ref = m.group("u")
                if not looks_like_path(ref):
                    continue
                absu = classify_reference(ref, base_url)
                if absu:
                    found.append((absu, hint))
    elif kind == STYLESHEET:
        for m in CSS_IMPORT_RE.finditer(text):
            absu = classify_reference(m.group("u"), base_url)
            if absu:
                found.append((absu, STYLESHEET))
        for m in CSS_URL_RE.finditer(text):
            absu = classify_reference(m.group("u"), base_url)
            if absu:
                found.append((absu, None))
    elif kind == STRUCTURED:
        # relative paths in JSON have no reliable base
        for m in JSON_ASSET_RE.finditer(text):
            ref = m.group("u")
            if not ABSOLUTE_RE.match(ref):
                continue
            absu = classify_reference(ref, base_url)
            if absu:
                found.append((absu, None))
    return _dedupe(found)


def extract_assets(text: str, kind: str, base_url: str) -> List[str]:
    return [u for u, _ in extract_references(text, kind, base_url)]


def find_source_map(text: str) -> Optional[re.Match]:
    last: Optional[re.Match] = None
    for rx in (SOURCE_MAP_LINE_RE, SOURCE_MAP_BLOCK_RE):
        for m in rx.finditer(text):
            if last is None or m.start() > last.start():
                last = m
    return last


def source_map_url(script_text: str, script_url: str) -> Optional[str]:
    m = find_source_map(script_text)
    if m is None:
        return None
    return classify_reference(m.group("u"), script_url)


def rewrite_source_map_directive(script_text: str, map_ref: str) -> str:
    m = find_source_map(script_text)
    if m is None:
        return script_text
    return (
        script_text[: m.start()]
        + f"//# sourceMappingURL={map_ref}"
        + script_text[m.end():]
    )


# -------------------- HTML utils --------------------

ASSET_LINK_RELS = {
    "stylesheet",
    "icon",
    "apple-touch-icon",
    "mask-icon",
    "manifest",
    "preload",
    "modulepreload",
    "prefetch",
}
ASSET_TAG_ATTRS: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ("script", "src", SCRIPT),
    ("img", "src", None),
    ("source", "src", None),
    ("video", "src", None),
    ("video", "poster", None),
    ("audio", "src", None),
    ("track", "src", None),
    ("embed", "src", None),
    ("object", "data", None),
    ("iframe", "src", None),
)
LAZY_ATTRS = ("data-src", "data-href")
SRCSET_ATTRS = ("srcset", "data-srcset")
REWRITE_ATTRS = ("href", "src", "data", "poster") + LAZY_ATTRS
INTEGRITY_ATTRS = ("integrity", "crossorigin")
PRELOAD_AS = {"script": SCRIPT, "style": STYLESHEET, "fetch": None}
JS_SCRIPT_TYPES = {
    "",
    "module",
    "text/javascript",
    "application/javascript",
    "text/ecmascript",
    "application/ecmascript",
}
JSON_SCRIPT_TYPES = {"application/json", "application/ld+json", "importmap"}


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        absu = classify_reference(tag["href"], fallback)
        if absu:
            return absu
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def inline_script_kind(type_attr: Optional[str]) -> Optional[str]:
    t = (type_attr or "").split(";")[0].strip().lower()
    if t in JS_SCRIPT_TYPES:
        return SCRIPT
    if t in JSON_SCRIPT_TYPES:
        return STRUCTURED
    return None


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts:
            urls.append(parts[0])
    return urls


def extract_from_html(
    soup: BeautifulSoup, page_url: str
) -> List[Tuple[str, Optional[str]]]:
    base = effective_base_url(soup, page_url)
    found: List[Tuple[str, Optional[str]]] = []

    def add(ref: Optional[str], hint: Optional[str] = None) -> None:
        absu = classify_reference(ref, base)
        if absu:
            found.append((absu, hint))

    for link in soup.select("link[href]"):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if not rels & ASSET_LINK_RELS:
            continue
        hint: Optional[str] = None
        if "stylesheet" in rels:
            hint = STYLESHEET
        elif "modulepreload" in rels:
            hint = SCRIPT
        elif "manifest" in rels:
            hint = STRUCTURED
        elif "preload" in rels:
            hint = PRELOAD_AS.get((link.get("as") or "").lower())
        add(link.get("href"), hint)
    for tag_name, attr, hint in ASSET_TAG_ATTRS:
        for tag in soup.find_all(tag_name):
            add(tag.get(attr), hint)
    for tag in soup.find_all(True):
        for attr in LAZY_ATTRS:
            add(tag.get(attr))
        for attr in SRCSET_ATTRS:
            for u in parse_srcset(tag.get(attr) or ""):
                add(u)
        for attr, val in tag.attrs.items():
            if not attr.startswith("data-") or attr in LAZY_ATTRS or attr in SRCSET_ATTRS:
                continue
            if not isinstance(val, str):
                continue
            # tracking pixels, beacons and lazy backgrounds hidden in data-*
            for u in ABS_URL_IN_TEXT_RE.findall(val):
                u = u.rstrip(",;")
                if PATH_EXT_RE.search(urlparse(u).path):
                    add(u)
        style = tag.get("style")
        if isinstance(style, str) and style:
            found.extend(extract_references(style, STYLESHEET, base))
    for style in soup.find_all("style"):
        if style.string:
            found.extend(extract_references(style.string, STYLESHEET, base))
    for script in soup.find_all("script"):
        if script.get("src") or not script.string:
            continue
        kind = inline_script_kind(script.get("type"))
        if kind:
            found.extend(extract_references(script.string, kind, base))
    return _dedupe(found)


# -------------------- Path allocation --------------------


def short_h(s: str) -> str:
    return hashlib.md5(s.encode("utf-8")).hexdigest()[:8]


def safe_segment(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    if name in ("", ".", ".."):
        return "_"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def _parents(path: str) -> List[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


class PathAllocator:
    """Bidirectional map between asset URLs and paths under the output root.

    Paths are posix strings relative to the output root. Once a URL has a
    path it keeps it for the rest of the run, and no path is ever handed to
    two owners. A path also counts as taken when it would need a claimed file
    as a directory, or when a claimed file already lives below it.
    """

    def __init__(self) -> None:
        self._by_url: Dict[str, str] = {}
        self._by_path: Dict[str, str] = {}
        self._dirs: Set[str] = set()

    def __contains__(self, url: str) -> bool:
        return url in self._by_url

    def __len__(self) -> int:
        return len(self._by_url)

    def get(self, url: str) -> Optional[str]:
        return self._by_url.get(url)

    def owner(self, path: str) -> Optional[str]:
        return self._by_path.get(path)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._by_url.items())

    @staticmethod
    def default_path(url: str) -> str:
        p = urlparse(url)
        raw = p.path or "/"
        if raw.endswith("/"):
            raw += "index"
        path = "/".join(safe_segment(unquote(s)) for s in raw.split("/") if s)
        if p.query:
            stem, ext = posixpath.splitext(path)
            path = f"{stem}-{short_h(p.query)}{ext}"
        return path

    def available(self, path: str) -> bool:
        if path in self._by_path or path in self._dirs:
            return False
        return not any(parent in self._by_path for parent in _parents(path))

    def _variant(self, candidate: str, n: int) -> str:
        # a claimed file sitting where a directory is needed gets the suffix instead
        for parent in _parents(candidate):
            if parent in self._by_path:
                return f"{parent}-{n}" + candidate[len(parent):]
        stem, ext = posixpath.splitext(candidate)
        return f"{stem}-{n}{ext}"

    def reserve(self, path: str, owner: str) -> bool:
        if self._by_path.get(path) == owner:
            return True
        if not self.available(path):
            return False
        self._by_path[path] = owner
        self._dirs.update(_parents(path))
        return True

    def allocate(self, url: str, preferred: Optional[str] = None) -> str:
        existing = self._by_url.get(url)
        if existing is not None:
            return existing
        candidate = preferred or self.default_path(url)
        path = candidate
        n = 1
        while not self.available(path):
            path = self._variant(candidate, n)
            n += 1
        self._by_url[url] = path
        self._by_path[path] = url
        self._dirs.update(_parents(path))
        return path


def route_filename(page: str) -> str:
    path = urlparse(page).path if "://" in page else page.split("?", 1)[0].split("#", 1)[0]
    segs = [safe_segment(unquote(s)) for s in path.split("/") if s]
    if not segs:
        return "index.html"
    name = "/".join(segs)
    if posixpath.splitext(name)[1].lower() in (".html", ".htm"):
        return name
    return name + ".html"


def relative_ref(from_path: str, to_path: str) -> str:
    rel = posixpath.relpath(to_path, posixpath.dirname(from_path) or ".")
    return quote(rel, safe="/!$&'()*+,;=@")


def lands_on(ref: str, from_path: str, to_path: str) -> bool:
    """True when a document-relative ``ref`` in ``from_path`` already opens ``to_path``."""
    ref = ref.strip()
    if is_rooted_ref(ref) or ":" in ref.split("/", 1)[0]:
        return False
    path, _, query = urldefrag(ref)[0].partition("?")
    if query or not path:
        return False
    local = posixpath.normpath(posixpath.join(posixpath.dirname(from_path), unquote(path)))
    return local == to_path


def absolute_ref(ref: str, base_url: str) -> Optional[str]:
    # pins an uncaptured reference to where the removed <base> pointed it
    if ABSOLUTE_RE.match(ref.strip()):
        return None
    absu = classify_reference(ref, base_url)
    if absu is None:
        return None
    frag = urldefrag(ref.strip())[1]
    return f"{absu}#{frag}" if frag else absu


# -------------------- Rewriters --------------------


class ReferenceRewriter:
    """Rewrites references in saved files to paths relative to that file.

    ``assets`` maps captured asset URLs to their local paths. ``pages`` maps
    page URLs to page files and is consulted for markup attributes only.
    """

    def __init__(
        self, assets: Mapping[str, str], pages: Optional[Mapping[str, str]] = None
    ) -> None:
        self.assets = assets
        self.pages = pages or {}

    def resolve(
        self,
        ref: str,
        base_url: str,
        own_path: str,
        *,
        allow_pages: bool = False,
        module: bool = False,
    ) -> Optional[str]:
        """Local replacement for ``ref``, or None when it should stay as written.

        ``module`` keeps the result a relative specifier (``./x.js``) so that
        it is never read as a bare module name.
        """
        if not ref:
            return None
        absu = classify_reference(ref, base_url)
        if absu is None:
            return None
        target = self.assets.get(absu)
        if target is None and allow_pages:
            target = self.pages.get(absu)
        if target is None or lands_on(ref, own_path, target):
            return None
        rel = relative_ref(own_path, target)
        if module and not rel.startswith("../"):
            rel = "./" + rel
        frag = urldefrag(ref.strip())[1]
        return f"{rel}#{frag}" if frag else rel

    def rewrite_text(self, text: str, kind: str, own_path: str, base_url: str) -> str:
        def repl(m: re.Match) -> str:
            new = self.resolve(m.group("u"), base_url, own_path, module=kind == SCRIPT)
            if new is None:
                return m.group(0)
            start, end = m.span("u")
            whole = m.group(0)
            return whole[: start - m.start()] + new + whole[end - m.start():]

        for rx in REWRITE_PATTERNS.get(kind, ()):
            text = rx.sub(repl, text)
        return text

    def rewrite_html(self, html: str, own_path: str, page_url: str) -> str:
        soup = bs4_parse(html)
        base = effective_base_url(soup, page_url)
        # rewritten paths resolve against the saved file, never a <base>
        base_tags = soup.find_all("base", href=True)
        rebase = base != page_url
        for tag in base_tags:
            tag.decompose()
        changed = bool(base_tags)
        for tag in soup.find_all(True):
            touched = False
            for attr in REWRITE_ATTRS:
                val = tag.get(attr)
                if not isinstance(val, str):
                    continue
                new = self.resolve(val, base, own_path, allow_pages=attr == "href")
                if new is None and rebase:
                    new = absolute_ref(val, base)
                if new is not None and new != val:
                    tag[attr] = new
                    touched = True
            for attr in SRCSET_ATTRS:
                val = tag.get(attr)
                if not isinstance(val, str) or not val:
                    continue
                new_srcset = self._rewrite_srcset(val, base, own_path)
                if new_srcset != val:
                    tag[attr] = new_srcset
                    touched = True
            style = tag.get("style")
            if isinstance(style, str) and style:
                new_css = self.rewrite_text(style, STYLESHEET, own_path, base)
                if new_css != style:
                    tag["style"] = new_css
                    touched = True
            if touched:
                for rm in INTEGRITY_ATTRS:
                    if rm in tag.attrs:
                        del tag.attrs[rm]
                changed = True
        for style in soup.find_all("style"):
            if style.string:
                new_text = self.rewrite_text(style.string, STYLESHEET, own_path, base)
                if new_text != style.string:
                    style.string.replace_with(new_text)
                    changed = True
        for script in soup.find_all("script"):
            if script.get("src") or not script.string:
                continue
            kind = inline_script_kind(script.get("type"))
            if kind is None:
                continue
            new_text = self.rewrite_text(script.string, kind, own_path, base)
            if new_text != script.string:
                script.string.replace_with(new_text)
                changed = True
        return serialize_html(soup) if changed else html

    def _rewrite_srcset(self, srcset: str, base: str, own_path: str) -> str:
        parts = []
        changed = False
        for candidate in SRCSET_SPLIT_RE.split(srcset.strip()):
            if not candidate:
                continue
            comp = WS_RE.split(candidate.strip())
            url_part = comp[0]
            desc = " ".join(comp[1:])
            new = self.resolve(url_part, base, own_path)
            if new is not None:
                url_part = new
                changed = True
            parts.append(f"{url_part} {desc}".strip())
        return ", ".join(parts) if changed else srcset


# -------------------- HTTP --------------------


def build_session(settings: Optional[Settings] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=max(10, settings.workers),
        pool_maxsize=max(10, settings.workers),
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if settings.user_agent:
        s.headers["User-Agent"] = settings.user_agent
    for h in settings.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        s.headers[k.strip()] = v.strip()
    return s


def fetch(session: requests.Session, url: str, timeout: float) -> requests.Response:
    resp = session.get(url, timeout=timeout)
    if not 200 <= resp.status_code < 300:
        raise requests.HTTPError(f"HTTP {resp.status_code} for {url}", response=resp)
    return resp


def response_text(resp: requests.Response) -> str:
    ct = (resp.headers.get("Content-Type") or "").lower()
    if "charset=" not in ct:
        try:
            resp.encoding = resp.apparent_encoding or "utf-8"
        except Exception:
            resp.encoding = "utf-8"
    return resp.text


def decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="surrogateescape")


def encode_text(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def write_bytes(p: Path, data: bytes) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)


# -------------------- Source maps --------------------


class SourceMapHandler:
    """Saves a script's source map next to it and points the directive there.

    The map is fetched and validated as JSON; the sources it lists are not
    fetched.
    """

    def __init__(self, session: requests.Session, output_root: Path, timeout: float):
        self.session = session
        self.output_root = output_root
        self.timeout = timeout

    def save(self, script_url: str, map_url: str, map_path: str) -> bool:
        dest = self.output_root / map_path
        try:
            if dest.exists():
                data = dest.read_bytes()
            else:
                data = fetch(self.session, map_url, self.timeout).content
            parsed = json.loads(data.decode("utf-8"))
            if not isinstance(parsed, dict):
                raise ValueError("source map is not a JSON object")
            if not dest.exists():
                write_bytes(dest, data)
        except (requests.RequestException, OSError, ValueError) as e:
            logging.warning("source map for %s unavailable: %s", script_url, e)
            return False
        if parsed.get("sourcesContent"):
            logging.info(
                "source map %s embeds %d sources",
                map_path,
                len(parsed.get("sources") or []),
            )
        return True

    @staticmethod
    def apply(script_path: str, content: bytes, map_path: str) -> bytes:
        text = decode_text(content)
        if find_source_map(text) is None:
            return content
        new_text = rewrite_source_map_directive(text, relative_ref(script_path, map_path))
        return encode_text(new_text)


# -------------------- Orchestrator --------------------


@dataclass
class AssetRecord:
    url: str
    kind: str = OTHER
    local_path: Optional[str] = None
    fetched: bool = False
    content: Optional[bytes] = None
    saved: bool = False
    failed: bool = False

    def observe(self, kind: Optional[str]) -> bool:
        if is_opaque(self.url):
            return False
        new = merge_kind(self.kind, kind)
        changed = new != self.kind
        self.kind = new
        return changed


@dataclass
class MirrorResult:
    output_dir: str
    pages: List[str]
    assets: Dict[str, str]
    source_maps: Dict[str, str]
    failed: List[str]

    def summary(self, with_maps: bool = False) -> str:
        line = f"Stats: {len(self.pages)} pages, {len(self.assets)} assets"
        if with_maps:
            line += f", {len(self.source_maps)} source maps"
        return line


class Mirror:
    """One capture run: pages, asset closure, downloads, then a rewrite pass.

    Phases run in order: fetching-pages, scanning-pages, discovering,
    downloading, rewriting, done. All tracking state lives on the instance.
    """

    def __init__(
        self,
        base_url: str,
        pages: Iterable[str],
        output_dir: Union[str, Path],
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url
        self.pages = list(pages) or ["/"]
        self.output_root = Path(output_dir)
        self.settings = settings or Settings()
        self.session = session or build_session(self.settings)
        self.phase = "idle"

        self.records: Dict[str, AssetRecord] = {}
        self.worklist: Deque[str] = deque()
        self.processed: Set[str] = set()
        self.allocator = PathAllocator()
        self.allocator.reserve(MANIFEST_PATH, "")
        self.page_files: Dict[str, str] = {}
        self.source_map_links: Dict[str, str] = {}
        self.source_maps: Dict[str, str] = {}
        self.failed: List[str] = []

    # ---- phases ----

    def run(self) -> MirrorResult:
        self.output_root.mkdir(parents=True, exist_ok=True)
        self.fetch_pages()
        self.scan_pages()
        self.discover_assets()
        self.download_assets()
        self.rewrite_all()
        self.phase = "done"
        result = MirrorResult(
            output_dir=str(self.output_root),
            pages=list(self.page_files.values()),
            assets=self.asset_map(include_maps=False),
            source_maps=dict(self.source_maps),
            failed=sorted(set(self.failed)),
        )
        write_manifest(self.base_url, self.output_root, result)
        return result

    def fetch_pages(self) -> None:
        self.phase = "fetching-pages"
        for page in self.pages:
            url = classify_reference(page, self.base_url)
            if url is None:
                logging.warning("skipping page %r: not an http(s) URL", page)
                continue
            if url in self.page_files:
                continue
            name = route_filename(page)
            if not self.allocator.reserve(name, url):
                logging.warning("skipping page %s: %s already taken", url, name)
                continue
            logging.info("page: %s", url)
            try:
                html = response_text(fetch(self.session, url, self.settings.timeout))
                write_bytes(self.output_root / name, encode_text(html))
            except (requests.RequestException, OSError) as e:
                logging.warning("failed to fetch page %s: %s", url, e)
                self.failed.append(url)
                continue
            self.page_files[url] = name
            logging.info("saved %s", name)

    def scan_pages(self) -> None:
        self.phase = "scanning-pages"
        for url, name in self.page_files.items():
            try:
                html = decode_text((self.output_root / name).read_bytes())
            except OSError as e:
                logging.warning("cannot read %s: %s", name, e)
                continue
            for asset_url, hint in extract_from_html(bs4_parse(html), url):
                self.observe(asset_url, hint)
        logging.info("%d assets referenced by pages", len(self.records))

    def discover_assets(self) -> None:
        self.phase = "discovering"
        logging.info("scanning for dependencies...")
        while self.worklist:
            url = self.worklist.popleft()
            if url in self.processed:
                continue
            self.processed.add(url)
            record = self.records[url]
            if record.kind not in SCANNABLE:
                continue
            try:
                record.content = fetch(self.session, url, self.settings.timeout).content
                record.fetched = True
            except requests.RequestException as e:
                logging.warning("failed to scan %s: %s", url, e)
                record.failed = True
                self.failed.append(url)
                continue
            text = decode_text(record.content)
            for found, hint in extract_references(text, record.kind, url):
                self.observe(found, hint)
            if self.settings.sourcemaps and record.kind == SCRIPT:
                map_url = source_map_url(text, url)
                if map_url:
                    self.source_map_links[url] = map_url

    def download_assets(self) -> None:
        self.phase = "downloading"
        jobs: List[AssetRecord] = []
        for url, record in self.records.items():
            if record.failed:
                continue
            record.local_path = self.allocator.allocate(url)
            jobs.append(record)
        # map paths are claimed, and each map saved once, before any thread starts writing
        handler = SourceMapHandler(self.session, self.output_root, self.settings.timeout)
        map_paths: Dict[str, str] = {}
        map_ready: Dict[str, bool] = {}
        for script_url, map_url in self.source_map_links.items():
            script_path = self.records[script_url].local_path
            if not script_path:
                continue
            map_path = self.allocator.allocate(map_url, preferred=script_path + ".map")
            if map_url not in map_ready:
                captured = self.records.get(map_url)
                if captured is not None:
                    map_ready[map_url] = not captured.failed
                else:
                    map_ready[map_url] = handler.save(script_url, map_url, map_path)
            if map_ready[map_url]:
                map_paths[script_url] = map_path
        logging.info("downloading %d assets...", len(jobs))
        if not jobs:
            return
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            future_map = {
                pool.submit(self._download_one, record, map_paths.get(record.url)): record
                for record in jobs
            }
            for fut in as_completed(future_map):
                record = future_map[fut]
                map_path = fut.result()
                if record.failed:
                    self.failed.append(record.url)
                if map_path:
                    self.source_maps[record.url] = map_path

    def _download_one(self, record: AssetRecord, map_path: Optional[str]) -> Optional[str]:
        assert record.local_path is not None
        dest = self.output_root / record.local_path
        content = record.content
        if content is None:
            if dest.exists():
                logging.info("cached: %s", record.local_path)
                record.saved = True
                return None
            try:
                content = fetch(self.session, record.url, self.settings.timeout).content
            except requests.RequestException as e:
                logging.warning("failed to download %s: %s", record.url, e)
                record.failed = True
                return None
        if map_path:
            content = SourceMapHandler.apply(record.local_path, content, map_path)
        try:
            write_bytes(dest, content)
        except OSError as e:
            logging.warning("failed to save %s: %s", record.local_path, e)
            record.failed = True
            return None
        record.saved = True
        record.content = None
        logging.info("saved %s", record.local_path)
        return map_path

    def rewrite_all(self) -> None:
        self.phase = "rewriting"
        rewriter = ReferenceRewriter(self.asset_map(), self.page_map())
        for url, name in self.page_files.items():
            self._rewrite_file(rewriter, name, HTML, url)
        for url, record in self.records.items():
            if record.saved and record.kind in SCANNABLE and record.local_path:
                self._rewrite_file(rewriter, record.local_path, record.kind, url)

    def _rewrite_file(
        self, rewriter: ReferenceRewriter, path: str, kind: str, url: str
    ) -> bool:
        p = self.output_root / path
        try:
            text = decode_text(p.read_bytes())
            if kind == HTML:
                new_text = rewriter.rewrite_html(text, path, url)
            else:
                new_text = rewriter.rewrite_text(text, kind, path, url)
            if new_text == text:
                return False
            p.write_bytes(encode_text(new_text))
        except OSError as e:
            logging.warning("failed to rewrite %s: %s", path, e)
            return False
        logging.debug("rewrote %s", path)
        return True

    # ---- state ----

    def observe(self, url: str, hint: Optional[str] = None) -> None:
        if url in self.page_files:
            return
        if self.settings.same_origin_only and not is_same_origin(self.base_url, url):
            return
        record = self.records.get(url)
        if record is None:
            record = AssetRecord(url, content_type_for(url))
            record.observe(hint)
            if record.kind == OTHER and is_page_like(url):
                return
            self.records[url] = record
            self.worklist.append(url)
            logging.debug("found: %s", url)
            return
        upgraded = record.observe(hint)
        # an asset skipped as opaque that turns out scannable gets its scan
        if (
            upgraded
            and record.kind in SCANNABLE
            and url in self.processed
            and not record.fetched
            and not record.failed
        ):
            self.processed.discard(url)
            self.worklist.append(url)

    def asset_map(self, include_maps: bool = True) -> Dict[str, str]:
        out = {
            u: r.local_path
            for u, r in self.records.items()
            if r.saved and r.local_path is not None
        }
        if include_maps:
            for script_url in self.source_maps:
                map_url = self.source_map_links[script_url]
                path = self.allocator.get(map_url)
                if path:
                    out.setdefault(map_url, path)
        return out

    def page_map(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for url, name in self.page_files.items():
            out[url] = name
            p = urlparse(url)
            if p.path and p.path != "/":
                alt = p.path[:-1] if p.path.endswith("/") else p.path + "/"
                out.setdefault(urlunparse(p._replace(path=alt)), name)
        return out


# -------------------- Root crawl --------------------


def crawl_root(session: requests.Session, base_url: str, timeout: float) -> List[str]:
    root = urljoin(base_url, "/")
    try:
        html = response_text(fetch(session, root, timeout))
    except requests.RequestException as e:
        logging.warning("failed to crawl %s: %s", root, e)
        return ["/"]
    soup = bs4_parse(html)
    base = effective_base_url(soup, root)
    paths: Dict[str, None] = {"/": None}
    for a in soup.select("a[href]"):
        absu = classify_reference(a.get("href"), base)
        if not absu or not is_same_origin(base_url, absu):
            continue
        path = urlparse(absu).path or "/"
        ext = posixpath.splitext(path)[1].lower()
        if ext and ext not in HTML_LIKE_EXTS:
            continue
        paths.setdefault(path, None)
    return list(paths)


# -------------------- Manifest --------------------


def write_manifest(base_url: str, output_root: Path, result: MirrorResult) -> None:
    created_ts = (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
    data = {
        "site": base_url,
        "created_utc": created_ts,
        "pages": result.pages,
        "assets": result.assets,
        "source_maps": result.source_maps,
        "failed": result.failed,
    }
    try:
        write_bytes(output_root / MANIFEST_PATH, json.dumps(data, indent=2).encode("utf-8"))
    except OSError as e:
        logging.warning("failed to write manifest: %s", e)


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise RuntimeError("Top-level YAML must be a mapping")
        return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="spa-mirror",
        description="Mirror pages of a site, including SPA bundles and their "
        "lazily loaded chunks, into a folder that works from a plain file server.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", nargs="?", help="http(s) URL of the site")
    p.add_argument(
        "targets",
        nargs="*",
        metavar="PAGE",
        help="page paths starting with '/', optionally followed by the output folder",
    )
    p.add_argument(
        "--sourcemaps",
        action="store_true",
        help="download source maps and point scripts at the local copies",
    )
    p.add_argument(
        "--same-origin-only",
        action="store_true",
        help="leave third-party assets as remote references",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--workers", type=int, default=8, help="concurrent downloads")
    p.add_argument("--user-agent", type=str, default=None, help="User-Agent header")
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_intermixed_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        flat = dict(cfg)
        for g in ("general", "network", "capture"):
            if isinstance(cfg.get(g), dict):
                flat.update(cfg[g])
        flat = {k.replace("-", "_"): v for k, v in flat.items()}
        parser.set_defaults(**flat)
    args = parser.parse_intermixed_args(argv)
    if not args.url:
        parser.error("the following arguments are required: url")
    return args


def split_targets(targets: List[str]) -> Tuple[List[str], str]:
    remaining = list(targets)
    out_dir = "mirror"
    if remaining and not remaining[-1].startswith("/"):
        out_dir = remaining.pop()
    return remaining, out_dir


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = Settings(
        timeout=max(1.0, args.timeout),
        workers=max(1, args.workers),
        sourcemaps=args.sourcemaps,
        same_origin_only=args.same_origin_only,
        user_agent=args.user_agent,
        extra_headers=args.header or [],
    )
    session = build_session(settings)
    pages, out_dir = split_targets(args.targets)
    if not pages:
        pages = crawl_root(session, args.url, settings.timeout)
        logging.info("pages from root: %s", ", ".join(pages))

    print("Reminder: only mirror content you own or have permission to copy.")
    result = Mirror(args.url, pages, out_dir, settings, session).run()
    print(f"Done! Mirror saved to: {os.path.abspath(out_dir)}")
    print(result.summary(with_maps=settings.sourcemaps))


if __name__ == "__main__":
    main()
