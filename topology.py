"""Table topology: (table, row, column) coordinates and headers for every node."""

from bisect import bisect_left
from dataclasses import dataclass, field
from typing import List, Tuple

from markup import find_close, find_elements, open_pattern
from nodes import ParagraphNode

_TABLE_OPEN = open_pattern("w:tbl")


@dataclass
class TableCell:
    table_index: int
    row_index: int
    column_index: int
    range_start: int
    range_end: int
    text: str = ""


@dataclass
class TableInfo:
    index: int
    range_start: int
    range_end: int
    rows: List[List[TableCell]] = field(default_factory=list)

    @property
    def cells(self) -> List[TableCell]:
        return [cell for row in self.rows for cell in row]

    @property
    def column_headers(self) -> List[str]:
        return [cell.text for cell in self.rows[0]] if self.rows else []

    @property
    def row_headers(self) -> List[str]:
        return [row[0].text if row else "" for row in self.rows]

    def cell(self, row_index: int, column_index: int):
        if 0 <= row_index < len(self.rows) and 0 <= column_index < len(self.rows[row_index]):
            return self.rows[row_index][column_index]
        return None


def find_tables(xml: str) -> List[TableInfo]:
    """Every table, nested ones included, indexed by the order of its open marker."""
    tables: List[TableInfo] = []
    for match in _TABLE_OPEN.finditer(xml):
        gt = xml.find(">", match.start())
        if gt == -1 or xml[gt - 1] == "/":
            continue
        end = find_close(xml, "w:tbl", gt + 1)
        if end is None:
            continue
        table = TableInfo(index=len(tables), range_start=match.start(), range_end=end)
        for row_index, (row_start, row_end) in enumerate(find_elements(xml, "w:tr", gt + 1, end)):
            row_gt = xml.find(">", row_start)
            row = [
                TableCell(table.index, row_index, column_index, cell_start, cell_end)
                for column_index, (cell_start, cell_end) in enumerate(
                    find_elements(xml, "w:tc", row_gt + 1, row_end)
                )
            ]
            table.rows.append(row)
        tables.append(table)
    return tables


def _nodes_within(nodes: List[ParagraphNode], starts: List[int], start: int, end: int) -> List[ParagraphNode]:
    found = []
    i = bisect_left(starts, start)
    while i < len(nodes) and nodes[i].range_start < end:
        if nodes[i].range_end <= end:
            found.append(nodes[i])
        i += 1
    return found


def resolve_tables(xml: str, nodes: List[ParagraphNode]) -> Tuple[List[TableInfo], List[ParagraphNode]]:
    """Annotate nodes with table coordinates and synthesize nodes for empty cells.

    Returns the tables and a new node list sorted by range and re-indexed.
    Nested tables are resolved after their parent, so the innermost cell wins.
    """
    tables = find_tables(xml)
    nodes = sorted(nodes, key=lambda n: n.range_start)
    starts = [n.range_start for n in nodes]
    synthesized: List[ParagraphNode] = []

    for table in tables:
        cell_nodes = {}
        for cell in table.cells:
            inside = _nodes_within(nodes, starts, cell.range_start, cell.range_end)
            cell_nodes[(cell.row_index, cell.column_index)] = inside
            cell.text = " ".join(n.text for n in inside if n.text).strip()

        headers = table.column_headers
        for cell in table.cells:
            row = table.rows[cell.row_index]
            row_header = row[0].text if row else ""
            column_header = headers[cell.column_index] if cell.column_index < len(headers) else ""
            inside = cell_nodes[(cell.row_index, cell.column_index)]
            if not inside:
                if _TABLE_OPEN.search(xml, cell.range_start, cell.range_end):
                    # the nested table's own cells get the nodes
                    continue
                inside = [ParagraphNode(
                    index=-1,
                    text="",
                    range_start=cell.range_start,
                    range_end=cell.range_end,
                    synthetic=True,
                )]
                synthesized.extend(inside)
            for node in inside:
                node.is_table_cell = True
                node.table_index = table.index
                node.row_index = cell.row_index
                node.column_index = cell.column_index
                node.row_header = row_header
                node.column_header = column_header

    if synthesized:
        print(f"[Topology] Synthesized {len(synthesized)} empty cell node(s)")
    merged = sorted(nodes + synthesized, key=lambda n: n.range_start)
    for index, node in enumerate(merged):
        node.index = index
    return tables, merged
