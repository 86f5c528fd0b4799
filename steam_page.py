import re
from dataclasses import dataclass, field
from typing import List
from urllib.parse import parse_qs, urlparse

from selectolax.lexbor import LexborHTMLParser


@dataclass(frozen=True)
class RequiredItem:
    id: int
    title: str


@dataclass
class FileDetailsWeb:
    title: str = ""
    required_items: List[RequiredItem] = field(default_factory=list)


def _clean_text(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip()


def _item_id_from_href(href: str) -> int | None:
    query = parse_qs(urlparse(href).query)
    for value in query.get("id") or []:
        if value.isdigit():
            return int(value)
    return None


def extract_file_details(html_text: str) -> FileDetailsWeb:
    """Read the title and the required items from a workshop file details page."""
    parser = LexborHTMLParser(html_text)
    result = FileDetailsWeb()

    title_node = parser.css_first(".workshopItemTitle")
    if title_node is not None:
        result.title = _clean_text(title_node.text())

    seen: set[int] = set()
    for node in parser.css("#RequiredItems a"):
        href = node.attributes.get("href") or ""
        item_id = _item_id_from_href(href)
        if item_id is None or item_id in seen:
            continue
        seen.add(item_id)
        title_node = node.css_first(".requiredItem")
        title = _clean_text(title_node.text() if title_node is not None else node.text())
        result.required_items.append(RequiredItem(item_id, title))
    return result
