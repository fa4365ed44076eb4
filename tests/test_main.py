import json
import sys

import pytest

import main
from conftest import StubOracle, make_docx, matches_json

SIRET_AT_7 = {"tag": "SIRET", "targetIdx": 7, "confidence": 0.95, "insertionPoint": "after_colon"}


@pytest.fixture
def stub_oracle(monkeypatch):
    oracle = StubOracle(handler=lambda prompt: matches_json(SIRET_AT_7))
    monkeypatch.setattr(main, "OpenAIOracle", lambda config: oracle)
    return oracle


def test_process_documents_writes_archive_and_report(tmp_path, stub_oracle, config, siret_template_xml, siret_target_xml):
    template = tmp_path / "modele.docx"
    template.write_bytes(make_docx(siret_template_xml))
    blank = tmp_path / "blank.docx"
    blank.write_bytes(make_docx(siret_target_xml))

    results = main.process_documents(str(template), [str(blank)], tmp_path / "out", config)

    assert [r.ok for r in results] == [True]
    assert (tmp_path / "out" / "blank_TEMPLATE.docx").exists()
    report = json.loads((tmp_path / "out" / "blank_TEMPLATE.json").read_text(encoding="utf-8"))
    assert report["satisfaction"] == 100
    assert report["applied_tags"] == ["SIRET"]
    assert "trace" not in report


def test_missing_template_exits_with_error(tmp_path, monkeypatch, capsys, stub_oracle):
    monkeypatch.setattr(sys, "argv", ["main.py", str(tmp_path / "none.docx"), str(tmp_path / "blank.docx")])

    with pytest.raises(SystemExit) as excinfo:
        main.main()
    assert excinfo.value.code == 1
    assert "Template not found" in capsys.readouterr().err


def test_failed_item_exits_with_error(tmp_path, monkeypatch, stub_oracle, siret_template_xml, siret_target_xml):
    template = tmp_path / "modele.docx"
    template.write_bytes(make_docx(siret_template_xml))
    good = tmp_path / "good.docx"
    good.write_bytes(make_docx(siret_target_xml))
    broken = tmp_path / "broken.docx"
    broken.write_bytes(b"garbage")
    monkeypatch.setattr(sys, "argv", [
        "main.py", str(template), str(broken), str(good), "--continue-on-failure", "-o", str(tmp_path / "out"),
    ])

    with pytest.raises(SystemExit) as excinfo:
        main.main()
    assert excinfo.value.code == 1
    assert (tmp_path / "out" / "good_TEMPLATE.docx").exists()


def test_data_mode_cli(tmp_path, monkeypatch, stub_oracle, siret_target_xml):
    blank = tmp_path / "blank.docx"
    blank.write_bytes(make_docx(siret_target_xml))
    data = tmp_path / "fields.json"
    data.write_text(json.dumps({"siret": ""}), encoding="utf-8")
    monkeypatch.setattr(sys, "argv", [
        "main.py", "--data", str(data), str(blank), "-o", str(tmp_path / "out"),
        "--output-name", "DC1_tagged.docx", "--document-type", "DC1",
        "--confidence-threshold", "80", "--include-details",
    ])

    main.main()

    assert (tmp_path / "out" / "DC1_tagged.docx").exists()
    report = json.loads((tmp_path / "out" / "DC1_tagged.json").read_text(encoding="utf-8"))
    assert report["document_type"] == "DC1"
    assert report["fields_provided"] == 1
    assert report["data_structure"] == {"SIRET": ""}
    assert report["mapping_details"][0]["tag"] == "SIRET"
    assert "trace" in report
    assert "Document type: DC1" in stub_oracle.prompts[0]


def test_load_data_structure_accepts_inline_json(tmp_path):
    assert main.load_data_structure('{"client": {"nom": ""}}') == {"client": {"nom": ""}}
    with pytest.raises(ValueError):
        main.load_data_structure("[1, 2]")
    with pytest.raises(ValueError):
        main.load_data_structure(str(tmp_path / "missing.json"))


@pytest.mark.parametrize("extra", [[], ["--confidence-threshold", "150"]])
def test_bad_arguments_are_usage_errors(tmp_path, monkeypatch, stub_oracle, extra):
    documents = [str(tmp_path / "only.docx")] if not extra else [str(tmp_path / "t.docx"), str(tmp_path / "b.docx")]
    monkeypatch.setattr(sys, "argv", ["main.py", *documents, *extra])

    with pytest.raises(SystemExit) as excinfo:
        main.main()
    assert excinfo.value.code == 2
