"""HTML parsing and extraction."""

import logging
import re
from datetime import datetime
from typing import Optional

from bs4 import BeautifulSoup, Tag

from clara_ingest.core.config import NormalizerConfig
from clara_ingest.core.constants import (
    MAIN_CONTENT_SELECTORS,
    REMOVE_SELECTORS,
    SKIPPED_LINK_EXTENSIONS,
    ContentFormat,
)
from clara_ingest.core.errors import ContentTooShort
from clara_ingest.core.utils import normalize_text, normalize_url, utcnow
from clara_ingest.ingestion.models import NormalizedContent

logger = logging.getLogger(__name__)

HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
BLOCK_TAGS = HEADING_TAGS + ["p", "ul", "ol", "blockquote", "pre", "table"]

# h1 renders one level below the page title
MARKDOWN_HEADING_PREFIX = {"h1": "##", "h2": "###", "h3": "####", "h4": "#####", "h5": "#####", "h6": "#####"}


def extract_title(soup: BeautifulSoup, default: str) -> str:
    """Extract page title: <title>, else first <h1>, else ``default``."""
    title_tag = soup.find("title")
    if title_tag:
        title = normalize_text(title_tag.get_text())
        if title:
            return title
    h1 = soup.find("h1")
    if h1:
        title = normalize_text(h1.get_text())
        if title:
            return title
    return default


def remove_boilerplate(soup: BeautifulSoup) -> None:
    """Drop scripts, styles, navigation, footers and ad containers in place."""
    for selector in REMOVE_SELECTORS:
        for element in soup.select(selector):
            element.decompose()


def select_main_content(soup: BeautifulSoup) -> Optional[Tag]:
    """First non-empty match of the main-content selectors, else <body>."""
    for selector in MAIN_CONTENT_SELECTORS:
        for candidate in soup.select(selector):
            if normalize_text(candidate.get_text()):
                return candidate
    return soup.body or soup


def _inside_block(element: Tag, container: Tag) -> bool:
    for parent in element.parents:
        if parent is container:
            return False
        if parent.name in BLOCK_TAGS:
            return True
    return False


def extract_blocks(container: Tag, min_paragraph_length: int = 10) -> list[dict]:
    """Walk the content container and return structural blocks in document order."""
    blocks: list[dict] = []
    for element in container.find_all(BLOCK_TAGS):
        if _inside_block(element, container):
            continue
        name = element.name
        if name in HEADING_TAGS:
            text = normalize_text(element.get_text(" "))
            if text:
                blocks.append({"kind": "heading", "tag": name, "text": text})
        elif name in ("ul", "ol"):
            items = [normalize_text(li.get_text(" ")) for li in element.find_all("li")]
            items = [item for item in items if item]
            if items:
                blocks.append({"kind": "list", "ordered": name == "ol", "items": items})
        elif name == "table":
            rows = []
            for tr in element.find_all("tr"):
                cells = [normalize_text(td.get_text(" ")) for td in tr.find_all(["td", "th"])]
                if any(cells):
                    rows.append(" | ".join(cells))
            if rows:
                blocks.append({"kind": "table", "rows": rows})
        else:
            text = normalize_text(element.get_text(" "))
            if text and len(text) > min_paragraph_length:
                kind = "quote" if name == "blockquote" else "paragraph"
                blocks.append({"kind": kind, "text": text})

    if not blocks:
        # No block markup at all: keep the container's text lines
        for line in container.get_text("\n").splitlines():
            text = normalize_text(line)
            if text and len(text) > min_paragraph_length:
                blocks.append({"kind": "paragraph", "text": text})
    return blocks


def render_markdown(title: str, url: str, blocks: list[dict], extracted_at: datetime) -> str:
    """Render blocks as Markdown with a source/date header."""
    parts = [f"# {title}", f"**Source**: {url}\n**Last Updated**: {extracted_at.date().isoformat()}"]
    for block in blocks:
        kind = block["kind"]
        if kind == "heading":
            parts.append(f"{MARKDOWN_HEADING_PREFIX[block['tag']]} {block['text']}")
        elif kind == "list":
            if block["ordered"]:
                parts.append("\n".join(f"{i}. {item}" for i, item in enumerate(block["items"], 1)))
            else:
                parts.append("\n".join(f"- {item}" for item in block["items"]))
        elif kind == "table":
            parts.append("\n".join(block["rows"]))
        elif kind == "quote":
            parts.append(f"> {block['text']}")
        else:
            parts.append(block["text"])
    return "\n\n".join(parts)


def render_plain(title: str, blocks: list[dict]) -> str:
    """Render blocks as plain text, one block per paragraph."""
    parts = [title]
    for block in blocks:
        if block["kind"] == "list":
            parts.append("\n".join(block["items"]))
        elif block["kind"] == "table":
            parts.append("\n".join(block["rows"]))
        else:
            parts.append(block["text"])
    return "\n\n".join(parts)


def clean_layout(text: str) -> str:
    """Collapse spaces inside lines and runs of blank lines."""
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def normalize(raw_html: str, url: str, config: Optional[NormalizerConfig] = None) -> NormalizedContent:
    """Convert raw HTML into clean, structure-preserving text.

    Raises:
        ContentTooShort: if the result is under ``config.min_content_length``.
    """
    config = config or NormalizerConfig()
    soup = BeautifulSoup(raw_html or "", "lxml")

    title = extract_title(soup, config.default_title)
    remove_boilerplate(soup)
    container = select_main_content(soup)
    blocks = extract_blocks(container, config.min_paragraph_length)
    extracted_at = utcnow()

    if config.content_format == ContentFormat.PLAIN:
        text = render_plain(title, blocks)
    else:
        text = render_markdown(title, url, blocks, extracted_at)
    text = clean_layout(text)

    if len(text) < config.min_content_length:
        raise ContentTooShort(url, len(text), config.min_content_length)

    headings = [block["text"] for block in blocks if block["kind"] == "heading"]
    logger.debug(f"Normalized {url}: {len(text)} chars, {len(headings)} headings")
    return NormalizedContent(
        url=url,
        title=title,
        text=text,
        extracted_at=extracted_at,
        headings=headings,
    )


def extract_links(raw_html: str, base_url: str) -> list[str]:
    """Collect normalized absolute http(s) links from a page, in order."""
    soup = BeautifulSoup(raw_html or "", "lxml")
    links: list[str] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        url = normalize_url(href, base_url)
        if not url or url in seen:
            continue
        if url.split("?", 1)[0].endswith(SKIPPED_LINK_EXTENSIONS):
            continue
        seen.add(url)
        links.append(url)
    return links
