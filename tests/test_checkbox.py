"""Checkbox detection, pairing and state transfer."""

import json
import warnings
from dataclasses import replace

import pytest
from pydantic import ValidationError

from checkbox import (
    CheckboxProcessor, detect_checkboxes, pair_yes_no, parse_checkbox_decisions,
)
from conftest import StubOracle, document, para, run
from context import RunContext
from document import MarkupDocument
from oracle import MatchingOracleAdapter
from schemas import CheckboxInfo


def form_checkbox(checked: bool) -> str:
    state = '<w:default w:val="1"/>' if checked else '<w:default w:val="0"/>'
    return (
        '<w:r><w:fldChar w:fldCharType="begin"><w:ffData><w:name w:val="CaseACocher1"/>'
        f'<w:checkBox><w:sizeAuto/>{state}</w:checkBox></w:ffData></w:fldChar></w:r>'
        '<w:r><w:instrText xml:space="preserve"> FORMCHECKBOX </w:instrText></w:r>'
        '<w:r><w:fldChar w:fldCharType="end"/></w:r>'
    )


def content_checkbox(checked: bool) -> str:
    glyph = "☒" if checked else "☐"
    return (
        '<w:sdt><w:sdtPr><w14:checkbox>'
        f'<w14:checked w14:val="{1 if checked else 0}"/>'
        '<w14:checkedState w14:val="2612" w14:font="MS Gothic"/>'
        '<w14:uncheckedState w14:val="2610" w14:font="MS Gothic"/>'
        f'</w14:checkbox></w:sdtPr><w:sdtContent><w:r><w:t>{glyph}</w:t></w:r></w:sdtContent></w:sdt>'
    )


def _boxes(xml):
    doc = MarkupDocument.parse(xml)
    return doc, detect_checkboxes(doc)


def test_unicode_boxes_and_labels():
    _, boxes = _boxes(document(para("Êtes-vous une PME ? ☐ Oui ☑ Non")))

    assert [(b.kind, b.checked, b.label) for b in boxes] == [
        ("unicode", False, "Oui"),
        ("unicode", True, "Non"),
    ]
    assert boxes[0].node_index == 0
    assert boxes[0].glyph == "☐"


def test_label_falls_back_to_text_before_the_box():
    _, boxes = _boxes(document(para("Candidat individuel ☐")))
    assert boxes[0].label == "Candidat individuel"


def test_form_control_and_content_control_detection():
    xml = document(
        "<w:p>" + form_checkbox(True) + run(" Candidat individuel") + "</w:p>",
        "<w:p>" + content_checkbox(False) + run(" Groupement") + "</w:p>",
    )
    _, boxes = _boxes(xml)

    assert [(b.kind, b.checked, b.label) for b in boxes] == [
        ("form_control", True, "Candidat individuel"),
        ("content_control", False, "Groupement"),
    ]


def test_yes_no_pairs():
    doc, boxes = _boxes(document(
        para("Êtes-vous une PME ? ☑ Oui ☐ Non"),
        para("☐ Oui ☐ Non"),
    ))
    first, second = pair_yes_no(doc, boxes)

    assert first.question == "Êtes-vous une PME ?"
    assert first.value is True
    assert second.value is None
    # no usable question text on the line: the previous paragraph is used
    assert second.question == "Êtes-vous une PME ? ☑ Oui ☐ Non"[:60]


def test_unnamed_question():
    doc, boxes = _boxes(document(para("☐ Oui ☐ Non")))
    (pair,) = pair_yes_no(doc, boxes)
    assert pair.question == "Question_1"


def test_template_states_are_copied(config):
    template = document(
        para("Êtes-vous une PME ? ☑ Oui ☐ Non"),
        "<w:p>" + form_checkbox(True) + run(" Candidat individuel") + "</w:p>",
        "<w:p>" + content_checkbox(True) + run(" Oui, en groupement") + "</w:p>",
    )
    target = document(
        para("Êtes-vous une PME ? ☐ Oui ☐ Non"),
        "<w:p>" + form_checkbox(False) + run(" Candidat individuel") + "</w:p>",
        "<w:p>" + content_checkbox(False) + run(" Oui, en groupement") + "</w:p>",
    )
    xml, stats = CheckboxProcessor(config, RunContext()).run(template, target)

    assert "Êtes-vous une PME ? ☑ Oui ☐ Non" in MarkupDocument.parse(xml).text
    assert '<w:default w:val="1"/>' in xml
    assert '<w14:checked w14:val="1"/>' in xml
    assert "<w:t>☒</w:t>" in xml
    assert [b.checked for b in detect_checkboxes(MarkupDocument.parse(xml))] == [True, False, True, True]
    assert (stats.template_count, stats.target_count, stats.pairs) == (4, 4, 1)
    assert stats.decisions == 4
    assert stats.applied == 3


def test_off_mode_leaves_document_alone(config):
    target = document(para("☐ Oui ☐ Non"))
    xml, stats = CheckboxProcessor(replace(config, checkbox_mode="off"), RunContext()).run(target, target)
    assert xml == target
    assert stats.mode == "off"
    assert stats.target_count == 0


def test_oracle_mode(config):
    template = document(para("Êtes-vous une PME ? ☐ Oui ☐ Non"))
    target = document(para("Êtes-vous une PME ? ☐ Oui ☐ Non"))
    answer = json.dumps({"checkboxDecisions": [
        {"targetIndex": 0, "shouldBeChecked": True, "confidence": 0.9},
        {"targetIndex": 1, "shouldBeChecked": True, "confidence": 0.5},
    ]})
    context = RunContext()
    oracle = StubOracle([answer])
    oracle_config = replace(config, checkbox_mode="oracle")
    adapter = MatchingOracleAdapter(oracle, oracle_config, context)

    xml, stats = CheckboxProcessor(oracle_config, context, adapter).run(template, target)

    assert "Êtes-vous une PME ? ☑ Oui ☐ Non" in MarkupDocument.parse(xml).text
    assert stats.decisions == 1
    assert stats.applied == 1
    assert "TARGET CHECKBOXES" in oracle.prompts[0]


def test_oracle_mode_falls_back_to_template(config):
    template = document(para("Êtes-vous une PME ? ☐ Oui ☑ Non"))
    target = document(para("Êtes-vous une PME ? ☐ Oui ☐ Non"))
    oracle_config = replace(config, checkbox_mode="oracle")
    context = RunContext()
    adapter = MatchingOracleAdapter(StubOracle(["not json"]), oracle_config, context)

    xml, stats = CheckboxProcessor(oracle_config, context, adapter).run(template, target)

    assert "Êtes-vous une PME ? ☐ Oui ☑ Non" in MarkupDocument.parse(xml).text
    assert stats.applied == 1


def test_decision_parsing():
    text = json.dumps({"decisions": [
        {"idx": 0, "checked": False, "confidence": 0.8, "reason": "non"},
        {"targetIdx": 5, "shouldBeChecked": True, "confidence": 0.9},
        {"targetIndex": True, "shouldBeChecked": True, "confidence": 0.9},
        {"targetIndex": 1, "shouldBeChecked": "yes", "confidence": 0.9},
        {"targetIndex": 1, "shouldBeChecked": True},
    ]})
    decisions, rejected = parse_checkbox_decisions(text, target_count=2, min_confidence=0.7)

    assert [(d.target_index, d.should_be_checked, d.source) for d in decisions] == [(0, False, "oracle")]
    assert len(rejected) == 4
    assert "out of range" in rejected[0]
    assert "targetIndex: Input should be a valid integer" in rejected[1]
    assert "shouldBeChecked: Input should be a valid boolean" in rejected[2]
    assert "confidence: Field required" in rejected[3]


def test_decision_parsing_applies_the_floor_after_the_schema():
    text = json.dumps({"checkboxDecisions": [
        {"targetIndex": 0, "shouldBeChecked": True, "confidence": 0.6},
        {"targetIndex": -1, "shouldBeChecked": True, "confidence": 0.9},
        "oui",
    ]})
    decisions, rejected = parse_checkbox_decisions(text, target_count=2, min_confidence=0.7)

    assert decisions == []
    assert "below 0.70" in rejected[0]
    assert "greater than or equal to 0" in rejected[1]
    assert "valid dictionary" in rejected[2]


def test_checkbox_info_uses_model_config():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        info = CheckboxInfo(index=0, kind="unicode", checked=True, position=12, glyph="☑")
    assert info.label == ""

    with pytest.raises(ValidationError):
        CheckboxInfo(index=0, kind="unicode", checked=True, position=12, colour="red")
