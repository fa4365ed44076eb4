"""Mutable markup buffer with position-tracked paragraph nodes."""

from bisect import bisect_right
from typing import List, Optional, Tuple

from nodes import MAX_PARAGRAPHS, ParagraphNode, extract_paragraphs, node_text
from textutils import detect_section, has_existing_tag
from topology import TableInfo, resolve_tables


def assign_sections(nodes: List[ParagraphNode]) -> None:
    """Carry lettered section markers ("A - Identification") forward over nodes."""
    current = ""
    for node in nodes:
        current = detect_section(node.text, current)
        node.section_id = current


class MarkupDocument:
    """A document.xml buffer plus its node array.

    Nodes are kept sorted by ``range_start`` and ``node.index`` equals the
    list position. All offset arithmetic goes through :meth:`replace_markup`.
    """

    def __init__(self, xml: str, nodes: List[ParagraphNode], tables: Optional[List[TableInfo]] = None):
        self.xml = xml
        self.nodes = nodes
        self.tables = tables or []
        self._starts = [n.range_start for n in nodes]

    @classmethod
    def parse(cls, xml: str, max_paragraphs: int = MAX_PARAGRAPHS) -> "MarkupDocument":
        nodes = extract_paragraphs(xml, max_paragraphs)
        tables, nodes = resolve_tables(xml, nodes)
        assign_sections(nodes)
        return cls(xml, nodes, tables)

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> Optional[ParagraphNode]:
        if 0 <= index < len(self.nodes):
            return self.nodes[index]
        return None

    def markup(self, node: ParagraphNode) -> str:
        return self.xml[node.range_start:node.range_end]

    def node_at(self, offset: int) -> Optional[ParagraphNode]:
        """Node whose range contains ``offset``."""
        i = bisect_right(self._starts, offset) - 1
        if i >= 0 and self.nodes[i].range_start <= offset < self.nodes[i].range_end:
            return self.nodes[i]
        return None

    def cell_node(self, table_index: int, row_index: int, column_index: int) -> Optional[ParagraphNode]:
        for node in self.nodes:
            if node.same_cell(table_index, row_index, column_index):
                return node
        return None

    def cell_nodes(self, table_index: int, row_index: int, column_index: int) -> List[ParagraphNode]:
        return [n for n in self.nodes if n.same_cell(table_index, row_index, column_index)]

    def replace_markup(self, node: ParagraphNode, new_markup: str, focus: Optional[Tuple[int, int]] = None) -> int:
        """Replace the node's slice and shift every later node by the length delta.

        ``focus`` (offsets relative to ``new_markup``) narrows the node onto a
        sub-slice of the replacement, used when a synthesized cell node gains
        its first real paragraph. Returns the delta.
        """
        start, end = node.range_start, node.range_end
        self.xml = self.xml[:start] + new_markup + self.xml[end:]
        delta = len(new_markup) - (end - start)

        if focus is not None:
            node.range_start = start + focus[0]
            node.range_end = start + focus[1]
            node.synthetic = False
        else:
            node.range_end = end + delta
        node.text = node_text(self.xml[node.range_start:node.range_end])
        node.has_existing_tag = has_existing_tag(node.text)
        self._starts[node.index] = node.range_start

        if delta:
            for later in self.nodes[node.index + 1:]:
                later.range_start += delta
                later.range_end += delta
            self._starts[node.index + 1:] = [n.range_start for n in self.nodes[node.index + 1:]]
        return delta

    @property
    def text(self) -> str:
        return "\n".join(n.text for n in self.nodes if n.text)

    def snapshot(self) -> List[Tuple[int, int, str]]:
        """(range_start, range_end, text) for every node, for comparisons."""
        return [(n.range_start, n.range_end, n.text) for n in self.nodes]
