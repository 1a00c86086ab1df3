from __future__ import annotations

import hashlib
import html
import re

from forumai.core.config import get_settings
from forumai.providers.remote.base import ContentItem, PreparedItem


_TAG_RE = re.compile(r"<[^>]+>")
_SHORTCODE_RE = re.compile(r"\[/?[a-zA-Z][^\]]*\]")
_SPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def clean_body(body: str) -> str:
    # Strip markup and shortcodes, keep paragraph breaks for chunking.
    text = body.replace("<br>", "\n").replace("<br/>", "\n").replace("<br />", "\n")
    text = re.sub(r"</p\s*>", "\n\n", text, flags=re.IGNORECASE)
    text = _TAG_RE.sub(" ", text)
    text = _SHORTCODE_RE.sub(" ", text)
    text = html.unescape(text)
    text = _SPACE_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def build_embedding_text(item: ContentItem, *, max_chars: int | None = None) -> str:
    """Compose the exact text submitted for embedding; the fingerprint hashes this."""
    limit = max_chars or get_settings().max_embedding_chars
    title = item.title.strip()
    body = clean_body(item.body)
    if not body:
        return ""
    parts = []
    if title:
        parts.append(f"Topic: {title}")
    parts.append(body)
    tags = [tag.strip() for tag in item.tags if tag.strip()]
    if tags:
        parts.append("Tags: " + ", ".join(tags))
    # Repeating the title weights it at both ends of long threads.
    if title:
        parts.append(f"Topic: {title}")
    return "\n\n".join(parts)[:limit]


def content_fingerprint(text: str, image_count: int) -> str:
    # Image count is part of the fingerprint so adding or removing images triggers a reindex.
    return hashlib.md5(f"{text}|images:{image_count}".encode("utf-8")).hexdigest()


def prepare_item(item: ContentItem, *, include_images: bool, max_chars: int | None = None) -> PreparedItem:
    # Build the text and fingerprint sent for one item.
    text = build_embedding_text(item, max_chars=max_chars)
    image_count = item.image_count if include_images else 0
    return PreparedItem(
        item_id=item.item_id,
        board_id=item.board_id,
        text=text,
        content_hash=content_fingerprint(text, image_count),
        image_count=image_count,
    )
