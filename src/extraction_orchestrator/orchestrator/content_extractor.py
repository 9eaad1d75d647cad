"""Page metrics, metadata and link discovery from raw HTML.

Link collection uses the stdlib ``html.parser``; title, language and the
main-text word count come from ``trafilatura``.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from html.parser import HTMLParser

import trafilatura

from extraction_orchestrator.orchestrator.config import MAX_CONTENT_BYTES

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Output dataclass
# ---------------------------------------------------------------------------


@dataclass
class PageSummary:
    """What was learned about a fetched page.

    Attributes:
        links_found: Number of distinct navigable ``<a href>`` targets.
        title: Page title, or ``None`` if not detected.
        language: Language code detected by trafilatura, or ``None``.
        word_count: Words in the extracted main text, or ``None`` if no main
            text could be extracted.
    """

    links_found: int
    title: str | None = None
    language: str | None = None
    word_count: int | None = None

    def as_metadata(self) -> dict[str, object]:
        """Non-empty fields for the extraction's metadata map."""
        values = {
            "title": self.title,
            "language": self.language,
            "word_count": self.word_count,
        }
        return {key: value for key, value in values.items() if value is not None}


# ---------------------------------------------------------------------------
# Link collection
# ---------------------------------------------------------------------------

LINK_INTERNAL = "internal"
LINK_EXTERNAL = "external"
LINK_FILE = "file"

_FILE_EXTENSIONS: frozenset[str] = frozenset({
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx",
    "zip", "rar", "7z", "tar", "gz",
    "jpg", "jpeg", "png", "gif", "svg", "webp",
    "mp3", "mp4", "avi", "mov", "wmv",
    "txt", "csv", "json", "xml",
})


@dataclass
class DiscoveredLink:
    """A link target found on a page.

    Attributes:
        url: Absolute URL without fragment.
        title: ``title`` attribute, anchor text or ``alt`` text, if any.
        category: ``internal`` (same host as the page), ``external`` or
            ``file`` (a downloadable document or media file).
    """

    url: str
    title: str | None
    category: str


class _LinkCollector(HTMLParser):
    """Collects resolved ``href`` targets of ``<a>`` and ``<area>`` tags, in page order."""

    _SKIP_SCHEMES: frozenset[str] = frozenset({"javascript", "mailto", "tel", "data"})

    def __init__(self, base_url: str) -> None:
        super().__init__()
        self._base_url = base_url
        self.links: dict[str, str | None] = {}
        self._open_anchor: str | None = None
        self._anchor_text: list[str] = []

    def _resolve(self, href: str | None) -> str | None:
        if not href or href.startswith("#"):
            return None
        resolved = urllib.parse.urljoin(self._base_url, href.strip())
        if urllib.parse.urlparse(resolved).scheme.lower() in self._SKIP_SCHEMES:
            return None
        return urllib.parse.urldefrag(resolved)[0]

    def _add(self, url: str, title: str | None) -> None:
        title = " ".join(title.split()) if title else None
        if url not in self.links or (self.links[url] is None and title):
            self.links[url] = title or None

    def handle_starttag(self, tag: str, attrs: list) -> None:  # type: ignore[override]
        tag = tag.lower()
        if tag not in ("a", "area"):
            return
        values = dict(attrs)
        url = self._resolve(values.get("href"))
        if url is None:
            return
        if tag == "area":
            self._add(url, values.get("title") or values.get("alt"))
            return
        self._add(url, values.get("title") or values.get("aria-label"))
        self._open_anchor = url
        self._anchor_text = []

    def handle_data(self, data: str) -> None:
        if self._open_anchor is not None:
            self._anchor_text.append(data)

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() == "a" and self._open_anchor is not None:
            self._add(self._open_anchor, "".join(self._anchor_text))
            self._open_anchor = None


def _collect(html: str, base_url: str) -> dict[str, str | None]:
    collector = _LinkCollector(base_url)
    try:
        collector.feed(html)
        collector.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("orchestrator: link parsing stopped early for %s: %s", base_url, exc)
    return collector.links


def count_links(html: str, base_url: str) -> int:
    """Return the number of distinct link targets in ``html``."""
    return len(_collect(html, base_url))


def categorize_link(url: str, base_url: str) -> str:
    path = urllib.parse.urlparse(url).path
    extension = path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    if extension in _FILE_EXTENSIONS:
        return LINK_FILE
    host = (urllib.parse.urlparse(url).hostname or "").lower()
    base_host = (urllib.parse.urlparse(base_url).hostname or "").lower()
    return LINK_INTERNAL if host == base_host else LINK_EXTERNAL


def discover_links(html: str, base_url: str) -> list[DiscoveredLink]:
    """Return every distinct link target on a page, in the order first seen."""
    return [
        DiscoveredLink(url=url, title=title, category=categorize_link(url, base_url))
        for url, title in _collect(html, base_url).items()
    ]


# ---------------------------------------------------------------------------
# Public summary function
# ---------------------------------------------------------------------------


def summarize_html(html: str, url: str) -> PageSummary:
    """Count links and extract title, language and word count from ``html``.

    Args:
        html: Raw HTML string (may be partial or malformed).
        url: Final URL of the page, used to resolve relative links.

    Returns:
        A :class:`PageSummary`.
    """
    summary = PageSummary(links_found=count_links(html, url))

    encoded = html.encode("utf-8", errors="ignore")
    if len(encoded) > MAX_CONTENT_BYTES:
        html = encoded[:MAX_CONTENT_BYTES].decode("utf-8", errors="ignore")

    try:
        text = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=True,
            output_format="txt",
        )
        if text:
            summary.word_count = len(text.split())

        meta = trafilatura.extract_metadata(html, default_url=url)
        if meta:
            summary.title = getattr(meta, "title", None) or None
            summary.language = getattr(meta, "language", None) or None
    except Exception as exc:  # noqa: BLE001
        logger.warning("orchestrator: trafilatura extraction failed for %s: %s", url, exc)

    return summary
