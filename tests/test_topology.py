"""Table coordinates, headers and synthesized empty-cell nodes."""

from conftest import cell, document, para, table
from document import MarkupDocument


def test_every_cell_of_a_sparse_table_is_resolved():
    # 3 columns x 2 rows, four cells without text
    xml = document(table([["Nom", "", None], ["", "x", None]]))
    doc = MarkupDocument.parse(xml)

    assert len(doc.tables) == 1
    cells = doc.tables[0].cells
    assert len(cells) == 6
    assert [(c.row_index, c.column_index) for c in cells] == [
        (0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2),
    ]

    assert len(doc.nodes) == 6
    assert [(n.row_index, n.column_index) for n in doc.nodes] == [
        (0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2),
    ]
    assert all(n.is_table_cell and n.table_index == 0 for n in doc.nodes)
    assert [n.synthetic for n in doc.nodes] == [False, True, True, True, False, True]
    assert [n.index for n in doc.nodes] == list(range(6))


def test_synthesized_nodes_cover_their_cell():
    xml = document(table([["Nom", None]]))
    doc = MarkupDocument.parse(xml)

    empty = doc.cell_node(0, 0, 1)
    assert empty.synthetic
    assert empty.text == ""
    markup = doc.markup(empty)
    assert markup.startswith("<w:tc>")
    assert markup.endswith("</w:tc>")


def test_headers():
    xml = document(table([
        ["Exercice", "N", "N-1"],
        ["Chiffre d'affaires", "100", ""],
    ]))
    doc = MarkupDocument.parse(xml)
    info = doc.tables[0]

    assert info.column_headers == ["Exercice", "N", "N-1"]
    assert info.row_headers == ["Exercice", "Chiffre d'affaires"]
    node = doc.cell_node(0, 1, 2)
    assert node.row_header == "Chiffre d'affaires"
    assert node.column_header == "N-1"


def test_nested_table_cells_win_and_tables_are_indexed_by_open_order():
    nested = table([["In1", "In2"]])
    outer = (
        '<w:tbl><w:tr>'
        f'{cell("Outer")}'
        f'<w:tc><w:tcPr/>{nested}<w:p/></w:tc>'
        '</w:tr></w:tbl>'
    )
    xml = document(outer, table([["Suivant"]]))
    doc = MarkupDocument.parse(xml)

    assert len(doc.tables) == 3
    by_text = {n.text: n for n in doc.nodes}
    assert (by_text["Outer"].table_index, by_text["Outer"].column_index) == (0, 0)
    assert (by_text["In1"].table_index, by_text["In1"].column_index) == (1, 0)
    assert (by_text["In2"].table_index, by_text["In2"].column_index) == (1, 1)
    assert by_text["Suivant"].table_index == 2
    # the outer cell holding only a nested table gets no synthesized node
    assert not any(n.synthetic for n in doc.nodes)
    assert doc.tables[0].cell(0, 1).text == "In1 In2"


def test_nodes_outside_tables_and_sections():
    xml = document(
        para("A - Identification du candidat"),
        para("Nom :"),
        table([["Exercice", "N"]]),
        para("B : Capacités"),
        para("Effectif :"),
    )
    doc = MarkupDocument.parse(xml)

    assert [n.section_id for n in doc.nodes] == ["A", "A", "A", "A", "B", "B"]
    assert not doc.nodes[1].is_table_cell
    assert doc.nodes[1].position == ""
    assert doc.nodes[2].position == "T0R0C0"
