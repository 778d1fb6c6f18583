import argparse
import json
import logging
import os
import posixpath
import re
import sys
import tempfile
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, fields
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import urlsplit

import cssutils
import minify_html
import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# ---------- Config ----------

DEFAULT_URL = "https://www.plesk.com/extensions/"
DEFAULT_TEMPLATE_NAME = "index.tpl"
DEFAULT_RULESET = "plesk-extensions-2018"

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)

# Path prefixes eligible for mirroring: theme/plugin content and core includes.
ASSET_NAMESPACES: Tuple[str, ...] = ("/wp-content/", "/wp-includes/")

# (tag, attribute) pairs scanned for asset references, lazy-load variants included.
SOURCE_ATTRIBUTES: Tuple[Tuple[str, str], ...] = (
    ("img", "data-cfsrc"),
    ("img", "src"),
    ("img", "data-lazy-src"),
    ("link", "href"),
    ("script", "src"),
)

DOM_ATTRIBUTE = "dom-attribute"
INLINE_STYLE = "inline-style"
CSS_FILE = "css-file"

DOWNLOAD_CHUNK_SIZE = 64 * 1024

cssutils.log.setLevel(logging.FATAL)


# ---------- Errors ----------

class LayoutError(Exception):
    """Base class for every failure that aborts a layout download."""


class ConfigurationError(LayoutError):
    pass


class StructuralMismatchError(LayoutError):
    """The fetched page no longer has the markup this tool expects."""


class PathTraversalError(LayoutError):
    """A reference would be written outside the public directory."""


class DownloadError(LayoutError):
    pass


# ---------- Settings ----------

@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 1
    max_bytes: int = 50_000_000
    retries: int = 0

    # Stylesheet passes over the mirror; None repeats until nothing new is found.
    css_depth: Optional[int] = 1

    ruleset: str = DEFAULT_RULESET
    namespaces: Optional[Tuple[str, ...]] = None


SETTINGS_FIELDS = {f.name for f in fields(Settings)}


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    if p.suffix.lower() not in {".toml", ".tml"}:
        raise ConfigurationError(f"Unsupported config format for {p}. Use .toml")
    try:
        with open(p, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"cannot read config file {p}: {e}") from e


def settings_from_mapping(data: Mapping[str, Any], base: Optional[Settings] = None) -> Settings:
    unknown = set(data) - SETTINGS_FIELDS
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    values = dict(vars(base or Settings()))
    values.update(data)
    if values.get("css_depth") == "fixed-point":
        values["css_depth"] = None
    if values.get("namespaces") is not None:
        values["namespaces"] = tuple(values["namespaces"])
    return Settings(**values)


# ---------- Page rulesets ----------

@dataclass(frozen=True)
class Ruleset:
    """Cleanup rules for one known revision of a source page's markup."""

    name: str
    origin: str
    expected_title: Optional[str]
    remove_selectors: Tuple[str, ...]
    unhighlight_class: Optional[str] = None
    root_selector: Optional[str] = None
    root_id: str = "root"
    namespaces: Tuple[str, ...] = ASSET_NAMESPACES


RULESETS: Dict[str, Ruleset] = {
    "plesk-extensions-2018": Ruleset(
        name="plesk-extensions-2018",
        origin="https://www.plesk.com",
        expected_title="Plesk Extensions",
        remove_selectors=(
            "head title",
            'head script[src="/wp-content/themes/plesk/assets/js/plugins/cookies/cookiesSystem.js"]',
            'head script[src="https://consent.cookiebot.com/uc.js"]',
            'head meta[name="description"]',
            'head link[rel="canonical"]',
            'head link[rel="next"]',
            'head meta[property^="og:"]',
            'head meta[name^="twitter:"]',
            "header .mk-page-section-wrapper",
            "#mk-boxed-layout meta",
            'script:-soup-contains("googletagmanager")',
            'noscript:-soup-contains("googletagmanager")',
            ".header-toolbar-contact",
            ".main-nav-side-search",
            ".responsive-searchform",
            'script:-soup-contains("!loading")',
            'script:-soup-contains("livechatinc.com")',
            'script:-soup-contains("connect.facebook.net")',
            'noscript:-soup-contains("www.facebook.com")',
            ".mk-go-top",
            'script[src*="/wp-content/themes/plesk/inc/js/plesk-popup.js"]',
        ),
        unhighlight_class="current-menu-item",
        root_selector="main#main",
    ),
}

def get_ruleset(name: str) -> Ruleset:
    try:
        return RULESETS[name]
    except KeyError:
        known = ", ".join(sorted(RULESETS))
        raise ConfigurationError(f'Unknown ruleset "{name}" (known: {known})') from None


# ---------- Utilities ----------

def can_fetch_url(url: str) -> bool:
    if not url:
        return False
    url = url.strip()
    if url.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def origin_of(url: str) -> str:
    p = urlsplit(url)
    if p.scheme not in {"http", "https"} or not p.netloc:
        raise ConfigurationError(f"Invalid URL {url!r}. Use http:// or https://")
    return f"{p.scheme}://{p.netloc}"


def build_session(settings: Optional[Settings] = None, headers: Optional[Dict[str, str]] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=16, pool_maxsize=16)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_text_atomic(path: Path, text: str) -> None:
    ensure_parent_dir(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ---------- Resolver ----------

@dataclass(frozen=True)
class AssetReference:
    raw_value: str
    source_kind: str
    origin_file: Optional[Path] = None


@dataclass(frozen=True)
class ResolvedAsset:
    fetch_url: str
    local_path: Path


def strip_query(value: str) -> str:
    return value.split("#", 1)[0].split("?", 1)[0]


def in_namespace(path: str, namespaces: Iterable[str] = ASSET_NAMESPACES) -> bool:
    return any(path.startswith(ns) for ns in namespaces)


def reference_path(raw_value: str, origin: str, base_path: str = "/") -> Optional[str]:
    """Return the same-origin path (query included) a reference points at.

    Foreign and unfetchable references give None. Relative references are
    joined to the directory of ``base_path`` without collapsing ``..`` so
    the containment check sees the path as written.
    """
    value = raw_value.strip()
    if not can_fetch_url(value):
        return None
    if value.startswith("//"):
        value = "https:" + value
    p = urlsplit(value)
    if p.scheme or p.netloc:
        if p.scheme.lower() not in {"http", "https"}:
            return None
        if p.netloc.lower() != urlsplit(origin).netloc.lower():
            return None
        path = p.path or "/"
    elif p.path.startswith("/"):
        path = p.path
    elif p.path:
        path = posixpath.join(posixpath.dirname(base_path) or "/", p.path)
    else:
        return None
    if p.query:
        path = f"{path}?{p.query}"
    return path


def _root_of(public_directory: Path) -> str:
    return os.path.normpath(os.path.abspath(public_directory))


def contained_path(public_directory: Path, path: str) -> Path:
    root = _root_of(public_directory)
    candidate = os.path.normpath(os.path.join(root, strip_query(path).lstrip("/")))
    prefix = root if root.endswith(os.sep) else root + os.sep
    if not candidate.startswith(prefix):
        raise PathTraversalError(f'The source url "{path}" resolves outside {root}')
    return Path(candidate)


def mirror_path(public_directory: Path, local_file: Path) -> str:
    """Site path ("/a/b.css") of a file inside the mirror."""
    rel = os.path.relpath(os.path.abspath(local_file), _root_of(public_directory))
    return "/" + Path(rel).as_posix()


def resolve_reference(
    reference: AssetReference,
    origin: str,
    public_directory: Path,
    base_path: str = "/",
) -> Optional[ResolvedAsset]:
    if reference.source_kind == CSS_FILE and reference.origin_file is not None:
        base_path = mirror_path(public_directory, reference.origin_file)
    path = reference_path(reference.raw_value, origin, base_path)
    if path is None:
        return None
    local_path = contained_path(public_directory, path)
    rel = local_path.relative_to(_root_of(public_directory)).as_posix()
    fetch_url = f"{origin.rstrip('/')}/{rel}"
    query = urlsplit(path).query
    if query:
        fetch_url = f"{fetch_url}?{query}"
    return ResolvedAsset(fetch_url=fetch_url, local_path=local_path)


# ---------- Extraction ----------

def _iter_css_values(rules: Iterable[Any]) -> Iterator[str]:
    for rule in rules:
        if rule.type == rule.IMPORT_RULE and rule.href:
            yield f"url({rule.href})"
        style = getattr(rule, "style", None)
        if style is not None:
            for prop in style.getProperties(all=True):
                if prop.value:
                    yield prop.value
        nested = getattr(rule, "cssRules", None)
        if nested is not None:
            yield from _iter_css_values(nested)


def _no_fetch(url: str) -> None:
    logging.debug("not following @import of %s while parsing", url)
    return None


def extract_css_urls(text: str) -> List[str]:
    """Collect url(...) arguments from declaration values and @import rules.

    Stylesheets that cannot be parsed give an empty list.
    """
    parser = cssutils.CSSParser(raiseExceptions=False, validate=False, fetcher=_no_fetch)
    try:
        sheet = parser.parseString(text)
        values = list(_iter_css_values(sheet.cssRules))
    except Exception as e:
        logging.warning("unparseable css, skipping url discovery: %s", e)
        return []

    urls: List[str] = []
    seen: Set[str] = set()
    for value in values:
        for m in CSS_URL_RE.finditer(value):
            u = m.group(2).strip()
            if can_fetch_url(u) and u not in seen:
                seen.add(u)
                urls.append(u)
    return urls


# ---------- Downloaders ----------

def fetch_page(session: requests.Session, url: str, *, timeout: float) -> str:
    try:
        r = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise DownloadError(f"failed to fetch {url}: {e}") from e
    try:
        if r.status_code != 200:
            raise DownloadError(f"Invalid status code: {r.status_code} for {url}")
        if "charset" not in r.headers.get("Content-Type", "").lower():
            # requests assumes ISO-8859-1 for text/html without a charset
            try:
                r.content.decode("utf-8")
                r.encoding = "utf-8"
            except UnicodeDecodeError:
                r.encoding = r.apparent_encoding or "utf-8"
        return r.text
    finally:
        r.close()


def _write_body(resp: requests.Response, fh, fetch_url: str, max_bytes: int) -> int:
    written = 0
    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
        if not chunk:
            continue
        written += len(chunk)
        if written > max_bytes:
            raise DownloadError(f"{fetch_url} is larger than {max_bytes} bytes")
        fh.write(chunk)
    return written


def download_file(
    session: requests.Session,
    fetch_url: str,
    local_path: Path,
    *,
    timeout: float,
    max_bytes: int = 50_000_000,
) -> bool:
    """Stream ``fetch_url`` into ``local_path`` unless the file already exists.

    The body goes to a temporary file beside the destination and is renamed
    into place only once complete. Returns True when a file was written.
    """
    if local_path.exists():
        logging.debug("already mirrored: %s", local_path)
        return False

    try:
        resp = session.get(fetch_url, timeout=timeout, stream=True)
    except requests.RequestException as e:
        raise DownloadError(f"error downloading {fetch_url}: {e}") from e

    try:
        if not 200 <= resp.status_code < 300:
            raise DownloadError(f"failed {fetch_url} -> HTTP {resp.status_code}")
        ensure_parent_dir(local_path)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{local_path.name}.", suffix=".part", dir=local_path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                written = _write_body(resp, fh, fetch_url, max_bytes)
            os.replace(tmp_path, local_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    except requests.RequestException as e:
        raise DownloadError(f"error downloading {fetch_url}: {e}") from e
    except OSError as e:
        raise DownloadError(f"error writing {local_path}: {e}") from e
    finally:
        resp.close()

    if written == 0:
        logging.warning("empty response %s", fetch_url)
    logging.info("downloaded asset: %s -> %s", fetch_url, local_path)
    return True


# ---------- Mirroring ----------

class MirrorState:
    """Local paths already handled during one run."""

    def __init__(self) -> None:
        self._claimed: Set[str] = set()
        self._lock = Lock()

    def claim(self, local_path: Path) -> bool:
        key = os.path.normpath(str(local_path))
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def __contains__(self, local_path: Path) -> bool:
        with self._lock:
            return os.path.normpath(str(local_path)) in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)


class AssetMirror:
    def __init__(
        self,
        session: requests.Session,
        public_directory: Path,
        origin: str,
        settings: Optional[Settings] = None,
        namespaces: Sequence[str] = ASSET_NAMESPACES,
    ):
        self.session = session
        self.public_directory = Path(public_directory)
        self.origin = origin.rstrip("/")
        self.settings = settings or Settings()
        self.namespaces = tuple(namespaces)
        self.state = MirrorState()
        self.downloaded = 0

    def local_href(self, asset: ResolvedAsset) -> str:
        return mirror_path(self.public_directory, asset.local_path)

    def _resolve(self, reference: AssetReference, base_path: str = "/") -> Optional[ResolvedAsset]:
        return resolve_reference(reference, self.origin, self.public_directory, base_path)

    def _resolve_namespaced(self, reference: AssetReference, base_path: str) -> Optional[ResolvedAsset]:
        path = reference_path(reference.raw_value, self.origin, base_path)
        if path is None or not in_namespace(path, self.namespaces):
            return None
        asset = self._resolve(reference, base_path)
        if asset is None or not in_namespace(self.local_href(asset), self.namespaces):
            return None
        return asset

    def _resolve_from_css(self, reference: AssetReference) -> Optional[ResolvedAsset]:
        value = reference.raw_value.strip()
        p = urlsplit(value)
        if value.startswith("/") or p.scheme:
            return self._resolve_namespaced(reference, "/")
        # relative references are only followed from mirrored site stylesheets
        if not in_namespace(mirror_path(self.public_directory, reference.origin_file), self.namespaces):
            return None
        return self._resolve(reference)

    def scan_document(self, soup: BeautifulSoup, page_url: str) -> List[ResolvedAsset]:
        """Rewrite recognised asset attributes to mirror paths, in place."""
        page_path = urlsplit(page_url).path or "/"
        matched = 0
        assets: List[ResolvedAsset] = []
        for tag_name, attr in SOURCE_ATTRIBUTES:
            for node in soup.find_all(tag_name):
                value = node.get(attr)
                if not value or not any(ns in value for ns in self.namespaces):
                    continue
                matched += 1
                asset = self._resolve_namespaced(AssetReference(value, DOM_ATTRIBUTE), page_path)
                if asset is None:
                    if value.startswith("//"):
                        node[attr] = "https:" + value
                    logging.debug("asset left in place: %s", node[attr])
                    continue
                node[attr] = self.local_href(asset)
                assets.append(asset)
        if matched == 0:
            raise StructuralMismatchError("No matches found: the page markup has no recognised asset references")
        logging.debug("found %d asset references in markup", matched)
        return assets

    def mirror_document(self, soup: BeautifulSoup, page_url: str) -> int:
        return self.download_all(self.scan_document(soup, page_url))

    def mirror_inline_styles(self, soup: BeautifulSoup, page_url: str) -> int:
        page_path = urlsplit(page_url).path or "/"
        assets: List[ResolvedAsset] = []
        for style in soup.find_all("style"):
            text = style.get_text()
            if not text.strip():
                continue
            for u in extract_css_urls(text):
                asset = self._resolve_namespaced(AssetReference(u, INLINE_STYLE), page_path)
                if asset is not None:
                    assets.append(asset)
        return self.download_all(assets)

    def mirror_stylesheets(self) -> int:
        depth = self.settings.css_depth
        total = 0
        passes = 0
        while depth is None or passes < depth:
            passes += 1
            assets: List[ResolvedAsset] = []
            for css_file in sorted(self.public_directory.rglob("*.css")):
                if not css_file.is_file():
                    continue
                text = css_file.read_text(encoding="utf-8", errors="ignore")
                for u in extract_css_urls(text):
                    asset = self._resolve_from_css(AssetReference(u, CSS_FILE, css_file))
                    if asset is not None:
                        assets.append(asset)
            claimed = self.download_all(assets)
            logging.debug("stylesheet pass %d claimed %d new assets", passes, claimed)
            total += claimed
            if claimed == 0:
                break
        return total

    def _download(self, asset: ResolvedAsset) -> bool:
        return download_file(
            self.session,
            asset.fetch_url,
            asset.local_path,
            timeout=self.settings.timeout,
            max_bytes=self.settings.max_bytes,
        )

    def download_all(self, assets: Iterable[ResolvedAsset]) -> int:
        """Download every asset not yet claimed in this run; returns the number claimed."""
        pending = [a for a in assets if self.state.claim(a.local_path)]
        if not pending:
            return 0

        if self.settings.workers <= 1:
            for asset in pending:
                if self._download(asset):
                    self.downloaded += 1
            return len(pending)

        with ThreadPoolExecutor(max_workers=self.settings.workers) as pool:
            future_map = {pool.submit(self._download, a): a for a in pending}
            try:
                for fut in as_completed(future_map):
                    if fut.result():
                        self.downloaded += 1
            except BaseException:
                for fut in future_map:
                    fut.cancel()
                raise
        return len(pending)

    def run(self, soup: BeautifulSoup, page_url: str) -> int:
        self.mirror_document(soup, page_url)
        self.mirror_inline_styles(soup, page_url)
        self.mirror_stylesheets()
        logging.info("mirrored %d assets, %d downloaded", len(self.state), self.downloaded)
        return self.downloaded


# ---------- Page transforms ----------

@dataclass
class Placeholders:
    title: Optional[str] = None
    head_prepend: Optional[str] = None
    head_append: Optional[str] = None
    body_prepend: Optional[str] = None
    body_append: Optional[str] = None
    root: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Placeholders":
        """Accept {"title", "head": {"prepend", "append"}, "body": {...}, "root"}."""
        head = data.get("head") or {}
        body = data.get("body") or {}
        return cls(
            title=data.get("title"),
            head_prepend=head.get("prepend"),
            head_append=head.get("append"),
            body_prepend=body.get("prepend"),
            body_append=body.get("append"),
            root=data.get("root"),
        )


def check_title(soup: BeautifulSoup, expected: str) -> None:
    actual = "".join(t.get_text() for t in soup.find_all("title"))
    if actual != expected:
        raise StructuralMismatchError(f'Title must be "{expected}", got "{actual}"')


def apply_cleanup_rules(soup: BeautifulSoup, ruleset: Ruleset) -> None:
    if ruleset.expected_title is not None:
        check_title(soup, ruleset.expected_title)

    for selector in ruleset.remove_selectors:
        for node in soup.select(selector):
            node.extract()

    if ruleset.unhighlight_class:
        for node in soup.select(f".{ruleset.unhighlight_class}"):
            node["class"] = [c for c in node.get("class", []) if c != ruleset.unhighlight_class]

    for a in soup.select("a[href]"):
        href = a["href"]
        if href.startswith("/") and not href.startswith("//"):
            a["href"] = ruleset.origin + href

    if ruleset.root_selector:
        root = soup.select_one(ruleset.root_selector)
        if root is None:
            raise StructuralMismatchError(f'Root node "{ruleset.root_selector}" not found')
        root.clear()
        root["id"] = ruleset.root_id


def _fragment_nodes(html: str) -> list:
    return list(BeautifulSoup(html, "html.parser").contents)


def _ensure_tag(soup: BeautifulSoup, name: str):
    tag = soup.find(name)
    if tag is None:
        tag = soup.new_tag(name)
        parent = soup.find("html") or soup
        if name == "head":
            parent.insert(0, tag)
        else:
            parent.append(tag)
    return tag


def _append_html(target, html: str) -> None:
    for node in _fragment_nodes(html):
        target.append(node)


def _prepend_html(target, html: str) -> None:
    for index, node in enumerate(_fragment_nodes(html)):
        target.insert(index, node)


def inject_placeholders(soup: BeautifulSoup, placeholders: Placeholders) -> None:
    if placeholders.title:
        _append_html(_ensure_tag(soup, "head"), f"<title>{placeholders.title}</title>")
    if placeholders.head_prepend:
        _prepend_html(_ensure_tag(soup, "head"), placeholders.head_prepend)
    if placeholders.head_append:
        _append_html(_ensure_tag(soup, "head"), placeholders.head_append)
    if placeholders.body_prepend:
        _prepend_html(_ensure_tag(soup, "body"), placeholders.body_prepend)
    if placeholders.body_append:
        _append_html(_ensure_tag(soup, "body"), placeholders.body_append)
    if placeholders.root:
        root = soup.find(id="root")
        if root is None:
            logging.warning("no #root element, root placeholder skipped")
        else:
            _append_html(root, placeholders.root)


def serialize(soup: BeautifulSoup) -> str:
    return str(soup)


def minify_markup(html: str) -> str:
    return minify_html.minify(html, minify_css=True, minify_js=True)


# ---------- Main flow ----------

def download_layout(
    public_directory,
    *,
    url: str = DEFAULT_URL,
    filename=None,
    placeholders: Optional[Placeholders] = None,
    minify: bool = False,
    modify: Optional[Callable[[BeautifulSoup], None]] = None,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """Fetch ``url``, mirror its assets under ``public_directory`` and write the template.

    Returns the template path. Any LayoutError aborts the run before the
    template is written.
    """
    if not public_directory:
        raise ConfigurationError('The "public_directory" option is required')
    settings = settings or Settings()
    ruleset = get_ruleset(settings.ruleset)
    origin = origin_of(url)
    public_root = Path(public_directory).resolve()
    namespaces = settings.namespaces or ruleset.namespaces

    own_session = session is None
    if own_session:
        session = build_session(settings)
    try:
        logging.info("GET %s", url)
        html = fetch_page(session, url, timeout=settings.timeout)
        soup = BeautifulSoup(html, "html.parser")

        if origin == ruleset.origin:
            apply_cleanup_rules(soup, ruleset)

        mirror = AssetMirror(session, public_root, origin, settings, namespaces)
        mirror.run(soup, url)
    finally:
        if own_session:
            session.close()

    if placeholders is not None:
        inject_placeholders(soup, placeholders)
    if modify is not None:
        modify(soup)

    html = serialize(soup)
    if minify:
        html = minify_markup(html)

    target = Path(filename) if filename else public_root / DEFAULT_TEMPLATE_NAME
    try:
        write_text_atomic(target, html)
    except OSError as e:
        raise LayoutError(f"cannot write template {target}: {e}") from e
    logging.info("saved template: %s", target)
    return target


# ---------- CLI ----------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="layout-mirror",
        description="Turn a remote page into a template and mirror its local assets.",
    )
    p.add_argument("public_directory", help="directory the assets and template are written to")
    p.add_argument("--url", default=DEFAULT_URL, help="page to download")
    p.add_argument("--output", default=None, help="template file (default PUBLIC_DIR/index.tpl)")
    p.add_argument("--minify", action="store_true", help="minify the template")
    p.add_argument("--config", default=None, help="TOML file with settings")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # placeholders
    p.add_argument("--placeholders", default=None, help="JSON file with placeholders")
    p.add_argument("--title", default=None, help="title placeholder")
    p.add_argument("--head-prepend", default=None, help="HTML inserted at the start of <head>")
    p.add_argument("--head-append", default=None, help="HTML inserted at the end of <head>")
    p.add_argument("--body-prepend", default=None, help="HTML inserted at the start of <body>")
    p.add_argument("--body-append", default=None, help="HTML inserted at the end of <body>")
    p.add_argument("--root", default=None, help="HTML inserted into the #root element")

    # settings
    p.add_argument("--ruleset", default=None, help=f"page ruleset ({', '.join(sorted(RULESETS))})")
    p.add_argument("--namespace", action="append", default=None, help="path prefix eligible for mirroring")
    depth = p.add_mutually_exclusive_group()
    depth.add_argument("--css-depth", type=int, default=None, help="stylesheet scan passes (0 disables)")
    depth.add_argument("--css-fixed-point", action="store_true", help="scan stylesheets until nothing new is found")
    p.add_argument("--timeout", type=float, default=None, help="request timeout seconds")
    p.add_argument("--workers", type=int, default=None, help="concurrent downloads")
    p.add_argument("--max-bytes", type=int, default=None, help="max bytes per file")
    p.add_argument("--retries", type=int, default=None, help="retries per request")

    return p.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings()
    if args.config:
        settings = settings_from_mapping(load_config_file(args.config))

    overrides: Dict[str, Any] = {}
    if args.ruleset is not None:
        overrides["ruleset"] = args.ruleset
    if args.namespace:
        overrides["namespaces"] = args.namespace
    if args.css_fixed_point:
        overrides["css_depth"] = None
    elif args.css_depth is not None:
        overrides["css_depth"] = max(0, args.css_depth)
    if args.timeout is not None:
        overrides["timeout"] = max(0.1, args.timeout)
    if args.workers is not None:
        overrides["workers"] = max(1, args.workers)
    if args.max_bytes is not None:
        overrides["max_bytes"] = max(1024, args.max_bytes)
    if args.retries is not None:
        overrides["retries"] = max(0, args.retries)
    return settings_from_mapping(overrides, settings)


def build_placeholders(args: argparse.Namespace) -> Optional[Placeholders]:
    placeholders = Placeholders()
    if args.placeholders:
        try:
            with open(args.placeholders, "r", encoding="utf-8") as f:
                placeholders = Placeholders.from_mapping(json.load(f))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot read placeholders {args.placeholders}: {e}") from e
    for name in ("title", "head_prepend", "head_append", "body_prepend", "body_append", "root"):
        value = getattr(args, name)
        if value is not None:
            setattr(placeholders, name, value)
    if placeholders == Placeholders():
        return None
    return placeholders


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        settings = build_settings(args)
        target = download_layout(
            args.public_directory,
            url=args.url,
            filename=args.output,
            placeholders=build_placeholders(args),
            minify=args.minify,
            settings=settings,
        )
    except LayoutError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    print("Layout download complete")
    print(f"Saved to: {target}")


if __name__ == "__main__":
    main()
