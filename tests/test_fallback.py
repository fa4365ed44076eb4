"""Deterministic fallback matching."""

from conftest import document, para
from document import MarkupDocument
from fallback import PatternFallbackMatcher, keyword_score
from tag_context import build_checklist, extract_tag_contexts


def _checklist(xml):
    return build_checklist(extract_tag_contexts(MarkupDocument.parse(xml)))


def test_keyword_score():
    assert keyword_score(["siret"], "Numéro SIRET :") == 10
    assert keyword_score(["siret"], "Numéro SIRET") == 5
    assert keyword_score(["siret"], "Adresse :") == 0


def test_table_position_match(ca_template_xml, ca_target_xml):
    target = MarkupDocument.parse(ca_target_xml)
    (match,) = PatternFallbackMatcher().match(_checklist(ca_template_xml), target.nodes)

    assert match.tag == "CA_N2"
    assert match.target_paragraph_index == target.cell_node(1, 2, 3).index
    assert match.insertion_strategy == "table_cell"
    assert match.confidence == 0.90
    assert match.source == "fallback"


def test_keyword_match(siret_template_xml, siret_target_xml):
    target = MarkupDocument.parse(siret_target_xml)
    (match,) = PatternFallbackMatcher().match(_checklist(siret_template_xml), target.nodes)

    assert match.target_paragraph_index == 7
    assert match.insertion_strategy == "after_colon"
    assert match.confidence == 0.75


def test_no_keyword_hit_means_no_match(siret_template_xml):
    target = MarkupDocument.parse(document(para("Lorem ipsum :"), para("Dolor sit amet")))
    assert PatternFallbackMatcher().match(_checklist(siret_template_xml), target.nodes) == []


def test_each_node_is_used_once(siret_template_xml, siret_target_xml):
    target = MarkupDocument.parse(siret_target_xml)
    matches = PatternFallbackMatcher().match(_checklist(siret_template_xml), target.nodes, used_nodes={7})

    assert all(m.target_paragraph_index != 7 for m in matches)
