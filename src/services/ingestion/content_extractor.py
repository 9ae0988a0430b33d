"""Markup-to-text extraction for crawled and uploaded documents.

:class:`ContentExtractor` turns raw HTML into ``{title, content, excerpt,
length}``.  trafilatura's main-content engine runs first, with its
metadata supplying the title.  When it finds too little text, a
BeautifulSoup pass strips scripts, styles, navigation and other page
chrome, then picks the primary content region:

1. an explicit landmark (``<main>``, ``<article>``, ``[role=main]``,
   ``#content`` ...), else
2. the densest subtree -- the container whose paragraph text is longest,
   else
3. the whole ``<body>``.

Block elements are separated by blank lines so that the semantic chunker
still sees paragraph, list and table structure.  Extraction never raises:
any parse failure falls back to the plain text of the body, and a
hopeless input yields an empty result.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

import structlog
import trafilatura
from bs4 import BeautifulSoup, NavigableString, Tag
from pydantic import BaseModel, ConfigDict

from src.utils.text_normalizer import make_excerpt, normalize_whitespace

logger = structlog.get_logger(logger_name=__name__)

_STRIP_TAGS = (
    "script", "style", "noscript", "nav", "header", "footer", "aside",
    "form", "iframe", "svg", "button", "template",
)
_BOILERPLATE_ATTR_RE = re.compile(
    r"(cookie|consent|banner|advert|\bads?\b|sidebar|menu|breadcrumb|share|social|popup|newsletter)",
    re.IGNORECASE,
)
_LANDMARK_SELECTORS = (
    "main",
    "article",
    "[role=main]",
    "#content",
    "#main-content",
    ".content",
    ".post-content",
    ".entry-content",
)
_BLOCK_TAGS = (
    "p", "div", "section", "article", "main", "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "pre", "blockquote", "table", "dl",
)
_MARKUP_SNIFF_RE = re.compile(
    r"<\s*(html|head|body|div|p|article|main|section|span|h[1-6]|ul|table)\b",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"<[^>]+>")

# Landmark regions shorter than this are ignored in favour of density search.
_MIN_LANDMARK_CHARS = 100
# trafilatura output shorter than this falls through to the soup pass.
_MIN_TRAFILATURA_CHARS = 100
_GROUPED_LINE_PREFIXES = ("- ", "* ", "|")


class ExtractedContent(BaseModel):
    """Result of extracting one document."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    content: str = ""
    excerpt: str = ""
    length: int = 0
    method: str = "empty"


class ContentExtractor:
    """Extracts clean text from HTML documents.

    Parameters
    ----------
    use_trafilatura:
        Try trafilatura before the BeautifulSoup region search.
    """

    def __init__(self, use_trafilatura: bool = True) -> None:
        self._use_trafilatura = use_trafilatura

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, markup: str, url: str | None = None) -> ExtractedContent:
        """Extract the primary text content of *markup*.

        Parameters
        ----------
        markup:
            Raw HTML as supplied by the crawler/uploader.
        url:
            Source URL; its hostname is the title of last resort.

        Returns
        -------
        ExtractedContent
            Possibly empty; never raises.
        """
        if not markup or not markup.strip():
            return ExtractedContent(title=self._host_title(url))

        if self._use_trafilatura:
            extracted = self._extract_trafilatura(markup, url)
            if extracted is not None:
                return extracted

        try:
            return self._extract_structured(markup, url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("extraction_failed_fallback", url=url, error=str(exc))
            return self._extract_fallback(markup, url)

    @staticmethod
    def looks_like_markup(text: str) -> bool:
        """Return True when *text* appears to be HTML rather than plain text."""
        return bool(_MARKUP_SNIFF_RE.search(text[:5000]))

    # ------------------------------------------------------------------
    # Extraction strategies
    # ------------------------------------------------------------------

    def _extract_trafilatura(self, markup: str, url: str | None) -> ExtractedContent | None:
        try:
            text = trafilatura.extract(
                markup, url=url, include_comments=False, include_tables=True
            )
            if not text or len(text.strip()) < _MIN_TRAFILATURA_CHARS:
                logger.debug("trafilatura_extraction_short", url=url)
                return None
            metadata = trafilatura.extract_metadata(markup, default_url=url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura_extraction_failed", url=url, error=str(exc))
            return None

        title = (metadata.title if metadata is not None else None) or ""
        if not title:
            title = self._find_title(BeautifulSoup(markup, "html.parser")) or self._host_title(url)
        content = self._space_blocks(text)
        logger.debug("content_extracted", url=url, method="trafilatura", length=len(content))
        return self._build(title, content, "trafilatura")

    def _extract_structured(self, markup: str, url: str | None) -> ExtractedContent:
        soup = BeautifulSoup(markup, "html.parser")
        title = self._find_title(soup) or self._host_title(url)

        self._strip_chrome(soup)

        region = self._find_landmark(soup)
        method = "landmark"
        if region is None:
            region = self._find_densest(soup)
            method = "density"
        if region is None:
            region = soup.body or soup
            method = "body"

        content = self._render_text(region)
        if not content:
            return self._extract_fallback(markup, url, title=title)

        logger.debug("content_extracted", url=url, method=method, length=len(content))
        return self._build(title, content, method)

    def _extract_fallback(
        self,
        markup: str,
        url: str | None,
        title: str | None = None,
    ) -> ExtractedContent:
        """Plain text of the body, with no region detection or structure."""
        try:
            soup = BeautifulSoup(markup, "html.parser")
            for tag in soup(["script", "style", "noscript"]):
                tag.decompose()
            body = soup.body or soup
            text = normalize_whitespace(body.get_text(separator="\n"))
            resolved_title = title or self._find_title(soup) or self._host_title(url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("fallback_parse_failed", url=url, error=str(exc))
            text = normalize_whitespace(_TAG_RE.sub(" ", markup))
            resolved_title = title or self._host_title(url)

        if not text:
            return ExtractedContent(title=resolved_title)
        return self._build(resolved_title, text, "fallback")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build(title: str, content: str, method: str) -> ExtractedContent:
        return ExtractedContent(
            title=title,
            content=content,
            excerpt=make_excerpt(content),
            length=len(content),
            method=method,
        )

    @staticmethod
    def _space_blocks(text: str) -> str:
        """Blank lines between paragraphs; list items and table rows stay together."""
        parts: list[str] = []
        previous_grouped = False
        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue
            grouped = line.startswith(_GROUPED_LINE_PREFIXES)
            if parts:
                parts.append("\n" if grouped and previous_grouped else "\n\n")
            parts.append(line)
            previous_grouped = grouped
        return normalize_whitespace("".join(parts))

    @staticmethod
    def _find_title(soup: BeautifulSoup) -> str:
        if soup.title and soup.title.get_text(strip=True):
            return soup.title.get_text(strip=True)
        og_title = soup.find("meta", attrs={"property": "og:title"})
        if isinstance(og_title, Tag) and og_title.get("content"):
            return str(og_title["content"]).strip()
        heading = soup.find("h1")
        if heading is not None:
            return heading.get_text(strip=True)
        return ""

    @staticmethod
    def _host_title(url: str | None) -> str:
        if not url:
            return ""
        return urlparse(url).hostname or url

    @staticmethod
    def _strip_chrome(soup: BeautifulSoup) -> None:
        for tag in soup(list(_STRIP_TAGS)):
            tag.decompose()
        for tag in soup.find_all(True):
            if tag.decomposed or tag.name in ("html", "body", "main", "article"):
                continue
            attrs = " ".join(
                [str(tag.get("id") or ""), " ".join(tag.get("class") or [])]
            )
            if attrs.strip() and _BOILERPLATE_ATTR_RE.search(attrs):
                tag.decompose()

    @staticmethod
    def _find_landmark(soup: BeautifulSoup) -> Tag | None:
        for selector in _LANDMARK_SELECTORS:
            region = soup.select_one(selector)
            if region is not None and len(region.get_text(strip=True)) >= _MIN_LANDMARK_CHARS:
                return region
        return None

    @staticmethod
    def _find_densest(soup: BeautifulSoup) -> Tag | None:
        """Score containers by the paragraph text they hold.

        Each paragraph credits its parent with its full length and its
        grandparent with half, so the tightest container around the
        article body wins over the page-wide wrapper.
        """
        scores: dict[int, float] = {}
        nodes: dict[int, Tag] = {}
        for para in soup.find_all(["p", "pre", "li", "blockquote"]):
            length = len(para.get_text(strip=True))
            if length < 25:
                continue
            parent = para.parent
            if isinstance(parent, Tag):
                scores[id(parent)] = scores.get(id(parent), 0.0) + length
                nodes[id(parent)] = parent
                grandparent = parent.parent
                if isinstance(grandparent, Tag):
                    scores[id(grandparent)] = scores.get(id(grandparent), 0.0) + length / 2
                    nodes[id(grandparent)] = grandparent
        if not scores:
            return None
        best = max(scores, key=lambda key: scores[key])
        return nodes[best]

    @staticmethod
    def _render_text(region: Tag | BeautifulSoup) -> str:
        """Flatten *region* to text with blank lines between blocks.

        List items are prefixed with ``- `` and table cells joined with
        `` | `` so the chunker can still detect list and table structure.
        """
        for br in region.find_all("br"):
            br.replace_with(NavigableString("\n"))
        for item in region.find_all("li"):
            item.insert(0, NavigableString("- "))
            item.append(NavigableString("\n"))
        for row in region.find_all("tr"):
            cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"])]
            row.replace_with(NavigableString(" | ".join(cells) + "\n"))
        for block in region.find_all(list(_BLOCK_TAGS)):
            block.insert_before(NavigableString("\n\n"))
            block.insert_after(NavigableString("\n\n"))
        return normalize_whitespace(region.get_text())
