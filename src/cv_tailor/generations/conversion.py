"""Markdown draft conversion into rendered HTML and plain text."""

from __future__ import annotations

import re
from dataclasses import dataclass

import markdown
from bs4 import BeautifulSoup

_UNSAFE_TAGS = ("script", "style", "iframe", "object", "embed")
_UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:")
_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(slots=True)
class ConvertedDraft:
    html: str
    text: str


def convert_markdown(source: str) -> ConvertedDraft:
    """Render markdown to sanitized HTML and derive its plain-text form."""

    rendered = markdown.markdown(source, extensions=["tables", "fenced_code"])
    soup = BeautifulSoup(rendered, "html.parser")
    for tag in soup.find_all(_UNSAFE_TAGS):
        tag.decompose()
    for tag in soup.find_all(href=True):
        if str(tag["href"]).strip().lower().startswith(_UNSAFE_SCHEMES):
            del tag["href"]

    html = str(soup)
    text = _BLANK_LINES.sub("\n\n", soup.get_text()).strip()
    return ConvertedDraft(html=html, text=text)
