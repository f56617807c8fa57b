"""RSS/Atom feed parsing using feedparser."""

import calendar
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import islice
from time import struct_time
from typing import Iterator

import feedparser
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200
EXCERPT_MARKER = "..."
UNTITLED = "Untitled"

_WHITESPACE = re.compile(r"\s+")


class FeedParseError(Exception):
    """Raised when a feed body cannot be parsed at all."""


@dataclass(frozen=True)
class EntryFields:
    """Normalized fields of one feed entry."""

    guid: str
    title: str
    url: str
    author: str | None
    published_at: datetime | None
    content: str | None
    excerpt: str | None
    image_url: str | None


@dataclass(frozen=True)
class CompleteEntry(EntryFields):
    """An entry whose identifying fields all came from the feed."""


@dataclass(frozen=True)
class DefaultedEntry(EntryFields):
    """An entry where one or more fields had to be synthesized.

    `defaults` names the synthesized fields (any of guid, title, url).
    """

    defaults: tuple[str, ...] = ()


ParsedEntry = CompleteEntry | DefaultedEntry


def parse_feed(content: bytes, max_entries: int | None = None) -> Iterator[ParsedEntry]:
    """Parse a feed body into a lazy sequence of entries.

    Args:
        content: Raw feed bytes.
        max_entries: Stop after this many entries, if given.

    Returns:
        A one-shot iterator of CompleteEntry / DefaultedEntry values. Entries
        that fail to normalize are logged and skipped.

    Raises:
        FeedParseError: If the body is not an RSS or Atom document.
    """
    parsed = feedparser.parse(content)

    if not parsed.get("version") and not parsed.entries:
        if parsed.bozo:
            raise FeedParseError(f"Malformed feed: {parsed.get('bozo_exception')}")
        raise FeedParseError("Document is not an RSS or Atom feed")

    if parsed.bozo:
        logger.info("Feed has formatting issues: %s", parsed.get("bozo_exception"))

    entries = _iter_entries(parsed.entries)
    if max_entries is not None:
        entries = islice(entries, max_entries)
    return entries


def _iter_entries(entries: list) -> Iterator[ParsedEntry]:
    for entry in entries:
        try:
            yield build_entry(entry)
        except Exception as e:
            logger.warning(
                "Skipping malformed entry %r: %s", entry.get("title", "unknown"), e
            )


def build_entry(entry: dict) -> ParsedEntry:
    """Normalize one feedparser entry."""
    defaults = []

    raw_title = entry.get("title")
    title = clean_text(raw_title) if raw_title else ""
    if not title:
        title = UNTITLED
        defaults.append("title")

    link = entry.get("link") or ""
    published_at = parse_date(entry)

    guid = entry.get("id") or entry.get("guid") or link
    if not guid:
        date_key = entry.get("published") or entry.get("updated") or ""
        guid = generate_guid(raw_title or "", link, date_key)
        defaults.append("guid")

    url = link
    if not url:
        url = guid if guid.startswith(("http://", "https://")) else ""
        defaults.append("url")

    raw_content = select_raw_content(entry)
    content, excerpt = extract_content(raw_content)

    fields = dict(
        guid=guid,
        title=title,
        url=url,
        author=entry.get("author") or None,
        published_at=published_at,
        content=content,
        excerpt=excerpt,
        image_url=extract_image_url(entry, raw_content),
    )
    if defaults:
        return DefaultedEntry(**fields, defaults=tuple(defaults))
    return CompleteEntry(**fields)


def select_raw_content(entry: dict) -> str:
    """Pick full content over description over summary."""
    for item in entry.get("content") or []:
        value = item.get("value")
        if value:
            return value
    return entry.get("description") or entry.get("summary") or ""


def extract_content(raw: str) -> tuple[str | None, str | None]:
    """Strip HTML from raw content and derive a bounded excerpt."""
    if not raw:
        return None, None

    soup = BeautifulSoup(raw, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = clean_text(soup.get_text(separator=" "))
    if not text:
        return None, None

    if len(text) > EXCERPT_LENGTH:
        excerpt = text[:EXCERPT_LENGTH].rstrip() + EXCERPT_MARKER
    else:
        excerpt = text
    return text, excerpt


def extract_image_url(entry: dict, raw_content: str = "") -> str | None:
    """Find an image for the entry.

    Probes image enclosures, then media:thumbnail, then image media:content,
    then the first <img> in the content.
    """
    for enclosure in entry.get("enclosures") or []:
        if (enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
            return enclosure["href"]

    for thumbnail in entry.get("media_thumbnail") or []:
        if thumbnail.get("url"):
            return thumbnail["url"]

    for media in entry.get("media_content") or []:
        is_image = media.get("medium") == "image" or (
            media.get("type") or ""
        ).startswith("image/")
        if is_image and media.get("url"):
            return media["url"]

    if raw_content:
        img = BeautifulSoup(raw_content, "html.parser").find("img")
        if img is not None and img.get("src"):
            return img["src"]

    return None


def parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry, as UTC."""
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if isinstance(time_struct, struct_time):
            try:
                return datetime.fromtimestamp(calendar.timegm(time_struct), tz=timezone.utc)
            except (ValueError, OverflowError):
                continue
    return None


def clean_text(text: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return _WHITESPACE.sub(" ", text).strip()


def generate_guid(title: str, link: str, date: str) -> str:
    """Stable identifier for entries that carry none."""
    digest = hashlib.sha256(f"{title}{link}{date}".encode()).hexdigest()[:16]
    return f"generated-{digest}"
