"""Leaf-level helpers for WordprocessingML markup.

Everything here operates on plain strings. Text leaves are ``<w:t>`` elements;
runs are ``<w:r>`` elements. No DOM is built.
"""

import html
import re
from typing import List, Optional, Tuple

# <w:t>, <w:t xml:space="preserve"> ... but never <w:tab/>, <w:tbl>, <w:tc>
TEXT_LEAF = re.compile(r"(<w:t(?:\s[^>]*)?>)([^<]*)(</w:t>)")
RUN_OPEN = re.compile(r"<w:r(?=[\s>])[^>]*>")
PAGE_BREAK = re.compile(r"<w:br\b[^>]*w:type=\"page\"[^>]*/?>")

_BROKEN_ATTRIBUTE = re.compile(r"=\"[^\"]*<[^\"]*\"")
_TAG_IN_ATTRIBUTE = re.compile(r"=\"[^\"]*\{\{[A-Z_0-9]+\}\}[^\"]*\"")


def open_pattern(tag: str) -> "re.Pattern":
    """Regex matching the open marker of ``tag`` (``w:p`` does not match ``w:pPr``)."""
    return re.compile(r"<" + re.escape(tag) + r"(?=[\s>/])")


def escape_xml(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def flatten_text(markup: str) -> str:
    """Concatenate every text leaf in document order (entities decoded)."""
    return "".join(html.unescape(m.group(2)) for m in TEXT_LEAF.finditer(markup))


def text_leaves(markup: str) -> List["re.Match"]:
    return list(TEXT_LEAF.finditer(markup))


def find_close(markup: str, tag: str, pos: int) -> Optional[int]:
    """Offset just past the close marker balancing an open already consumed.

    ``pos`` points right after the opening element. Nested opens of the same
    tag are counted; self-closing ones are ignored. Returns None when the
    element is never closed.
    """
    opener = open_pattern(tag)
    closer = f"</{tag}>"
    depth = 1
    while depth:
        next_close = markup.find(closer, pos)
        if next_close == -1:
            return None
        next_open = opener.search(markup, pos, next_close)
        if next_open:
            gt = markup.find(">", next_open.start())
            if gt == -1:
                return None
            if markup[gt - 1] != "/":
                depth += 1
            pos = gt + 1
        else:
            depth -= 1
            pos = next_close + len(closer)
    return pos


def find_elements(markup: str, tag: str, start: int = 0, end: Optional[int] = None) -> List[Tuple[int, int]]:
    """Top-level ``[start, end)`` ranges of ``tag`` elements inside ``markup[start:end]``."""
    if end is None:
        end = len(markup)
    opener = open_pattern(tag)
    ranges: List[Tuple[int, int]] = []
    pos = start
    while pos < end:
        match = opener.search(markup, pos, end)
        if not match:
            break
        gt = markup.find(">", match.start(), end)
        if gt == -1:
            break
        if markup[gt - 1] == "/":
            pos = gt + 1
            continue
        close = find_close(markup, tag, gt + 1)
        if close is None or close > end:
            pos = match.end()
            continue
        ranges.append((match.start(), close))
        pos = close
    return ranges


def replace_leaf_content(markup: str, leaf: "re.Match", content: str) -> str:
    """Rewrite one text leaf, forcing ``xml:space="preserve"`` when spaces matter."""
    open_tag = leaf.group(1)
    if content != content.strip() and "xml:space" not in open_tag:
        open_tag = '<w:t xml:space="preserve">'
    return markup[:leaf.start()] + open_tag + content + leaf.group(3) + markup[leaf.end():]


def count_page_breaks(xml: str) -> int:
    return len(PAGE_BREAK.findall(xml))


def validate_markup(xml: str) -> List[str]:
    """Structural anomalies worth reporting. Informational only."""
    problems: List[str] = []
    if _BROKEN_ATTRIBUTE.search(xml):
        problems.append("attribute value contains '<'")
    if _TAG_IN_ATTRIBUTE.search(xml):
        problems.append("placeholder found inside an attribute value")
    body_opens = len(open_pattern("w:body").findall(xml))
    body_closes = xml.count("</w:body>")
    if body_opens != body_closes:
        problems.append(f"unbalanced w:body ({body_opens} open, {body_closes} close)")
    paragraph_opens = sum(
        1 for m in open_pattern("w:p").finditer(xml)
        if xml[xml.find(">", m.start()) - 1] != "/"
    )
    paragraph_closes = xml.count("</w:p>")
    if paragraph_opens != paragraph_closes:
        problems.append(f"unbalanced w:p ({paragraph_opens} open, {paragraph_closes} close)")
    return problems
