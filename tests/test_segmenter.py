"""Segmentation strategies and template/target segment pairing."""

from conftest import document, para, table
from document import MarkupDocument
from schemas import Segment, SegmentMetadata
from segmenter import detect_strategy, pair_segments, relevance_score, segment_document, segment_similarity

PAGE_BREAK = '<w:p><w:r><w:br w:type="page"/></w:r></w:p>'


def _segment(id, section=None, table_index=None, text="", tags=(), **flags):
    return Segment(
        id=id,
        type="table" if table_index is not None else "section",
        section_letter=section,
        table_index=table_index,
        text=text,
        range_start=0,
        range_end=1,
        tags=list(tags),
        metadata=SegmentMetadata(**flags),
    )


def _strategy(*blocks):
    return detect_strategy(MarkupDocument.parse(document(*blocks)))[0]


def test_strategy_detection():
    tables = [table([["x"]]) for _ in range(8)]
    assert _strategy(*tables) == "tables"
    assert _strategy(para("A - Identification du candidat"), *tables[:5]) == "hybrid"
    assert _strategy(para("Texte"), PAGE_BREAK, PAGE_BREAK, PAGE_BREAK) == "pages"
    assert _strategy(para("A - Identification du candidat"), para("Nom :")) == "sections"
    assert _strategy(para("Texte libre")) == "hybrid"


def test_sections_become_segments():
    xml = document(
        para("A - Identification du candidat"),
        para("Nom commercial et dénomination sociale de l'entreprise candidate :"),
        para("Numéro SIRET : {{SIRET}}"),
        para("B - Capacités du candidat"),
        para("Chiffre d'affaires global des trois derniers exercices disponibles :"),
    )
    plan = segment_document(MarkupDocument.parse(xml))

    assert plan.strategy == "sections"
    assert [s.section_letter for s in plan.segments] == ["A", "B"]
    first, second = plan.segments
    assert first.tags == ["SIRET"]
    assert first.node_indices == [0, 1, 2]
    assert first.metadata.has_identification
    assert second.metadata.has_financial_data
    assert first.relevance_score >= 35


def test_small_untagged_segments_are_dropped():
    xml = document(para("A - Objet"), para("B - Identification du candidat"), para("Nom : {{NOM}}"))
    plan = segment_document(MarkupDocument.parse(xml))

    assert [s.section_letter for s in plan.segments] == ["B"]


def test_relevance_score():
    segment = _segment("s", tags=["A", "B"], has_identification=True, has_financial_data=True)
    assert relevance_score(segment) == 70
    assert relevance_score(_segment("s", tags=["T"] * 6)) == 100


def test_similarity():
    a = _segment("a", section="A", table_index=2, text="identification entreprise", has_identification=True)
    b = _segment("b", section="A", table_index=2, text="identification candidat", has_identification=True)
    # 40 section + 30 table + 15 identification + 10 word overlap
    assert segment_similarity(a, b) == 95
    assert segment_similarity(a, _segment("c", section="C")) == 0


def test_pairing_reports_unmatched_template_segments():
    templates = [
        _segment("t1", section="A", text="Identification", tags=["SIRET"], has_identification=True),
        _segment("t2", section="C", text="zzzzz", tags=["X"]),
        _segment("t3", section="A", text="Identification"),
    ]
    targets = [
        _segment("s1", section="A", text="Identification", has_identification=True),
        _segment("s2", section="B", text="Chiffre", has_financial_data=True),
    ]
    pairs, warnings = pair_segments(templates, targets, threshold=30)

    assert [(p.template.id, p.target.id) for p in pairs] == [("t1", "s1")]
    assert len(warnings) == 1
    assert "t2" in warnings[0]


def test_hyphenated_words_do_not_open_sections():
    xml = document(
        para("A - Identification du candidat"),
        para("E-mail : {{EMAIL}}"),
        para("Adresse postale et coordonnées téléphoniques du siège social de l'entreprise candidate :"),
        para("B-Capacités du candidat"),
        para("Effectif moyen annuel du candidat pour chacune des trois dernières années : {{EFFECTIF}}"),
    )
    plan = segment_document(MarkupDocument.parse(xml))

    assert [s.section_letter for s in plan.segments] == ["A", "B"]
    assert plan.segments[0].tags == ["EMAIL"]
