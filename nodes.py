"""Paragraph node extraction over raw document.xml markup."""

from dataclasses import dataclass
from typing import List, Optional

from markup import find_close, flatten_text, open_pattern
from textutils import has_existing_tag, normalize_text, table_position

MAX_PARAGRAPHS = 5_000

_PARAGRAPH_OPEN = open_pattern("w:p")


@dataclass
class ParagraphNode:
    """One paragraph (or synthesized empty cell) with its half-open buffer range."""
    index: int
    text: str
    range_start: int
    range_end: int
    section_id: str = ""
    is_table_cell: bool = False
    table_index: Optional[int] = None
    row_index: Optional[int] = None
    column_index: Optional[int] = None
    row_header: str = ""
    column_header: str = ""
    has_existing_tag: bool = False
    synthetic: bool = False

    @property
    def length(self) -> int:
        return self.range_end - self.range_start

    @property
    def position(self) -> str:
        return table_position(self.table_index, self.row_index, self.column_index)

    def same_cell(self, table_index, row_index, column_index) -> bool:
        return (
            self.table_index is not None
            and self.table_index == table_index
            and self.row_index == row_index
            and self.column_index == column_index
        )


def node_text(markup: str) -> str:
    return normalize_text(flatten_text(markup))


def extract_paragraphs(xml: str, max_paragraphs: int = MAX_PARAGRAPHS) -> List[ParagraphNode]:
    """Scan ``xml`` for top-level paragraphs in document order.

    Self-closing ``<w:p/>`` markers are skipped. Paragraphs nested inside
    another paragraph (text boxes) belong to the outer node. An open marker
    that is never closed is abandoned and scanning resumes just past it.
    """
    nodes: List[ParagraphNode] = []
    pos = 0
    while len(nodes) < max_paragraphs:
        match = _PARAGRAPH_OPEN.search(xml, pos)
        if not match:
            break
        start = match.start()
        gt = xml.find(">", start)
        if gt == -1:
            break
        if xml[gt - 1] == "/":
            pos = gt + 1
            continue

        end = find_close(xml, "w:p", gt + 1)
        if end is None:
            print(f"[Extractor] Unterminated paragraph at offset {start}, resynchronizing")
            pos = match.end()
            continue

        text = node_text(xml[start:end])
        nodes.append(ParagraphNode(
            index=len(nodes),
            text=text,
            range_start=start,
            range_end=end,
            has_existing_tag=has_existing_tag(text),
        ))
        pos = end

    if len(nodes) >= max_paragraphs and _PARAGRAPH_OPEN.search(xml, pos):
        print(f"[Extractor] Paragraph ceiling reached ({max_paragraphs}), remaining markup ignored")
    return nodes
