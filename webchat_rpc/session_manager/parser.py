"""Parse the final assistant message HTML.

Code blocks are rendered as ``<pre><code class="language-xyz">``; the language
tag comes from that class-name convention and may be missing.
"""

from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup, Tag

from ..models.reply import CodeBlock

_LANGUAGE_CLASS_RE = re.compile(r"language-([a-z0-9_+-]+)", re.I)


def _language_of(code: Tag) -> Optional[str]:
    classes = code.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    for cls in classes:
        match = _LANGUAGE_CLASS_RE.search(cls)
        if match:
            return match.group(1).lower()
    # Some renderers put the class on the <pre> instead.
    pre = code.find_parent("pre")
    if pre is not None and pre is not code:
        for cls in pre.get("class") or []:
            match = _LANGUAGE_CLASS_RE.search(cls)
            if match:
                return match.group(1).lower()
    return None


def extract_code_blocks(html: str) -> list[CodeBlock]:
    """Return code blocks in document order, skipping empty ones."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    blocks = []
    for code in soup.select("pre code"):
        text = code.get_text().strip()
        if not text:
            continue
        blocks.append(CodeBlock(language=_language_of(code), text=text))
    return blocks
