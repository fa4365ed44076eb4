"""Text helpers shared by the label, segment and fallback code."""

import pytest

from conftest import document, para
from document import MarkupDocument
from textutils import detect_section, extract_keywords, table_position, tag_from_path


@pytest.mark.parametrize("text, expected", [
    ("A - Identification du candidat", "A"),
    ("B-Capacités du candidat", "B"),
    ("C: Renseignements", "C"),
    ("D –", "D"),
    ("E-mail : contact@exemple.fr", "A"),
    ("N-2", "A"),
    ("Numéro SIRET :", "A"),
])
def test_detect_section(text, expected):
    assert detect_section(text, "A") == expected


def test_inline_hyphenated_words_keep_the_current_section():
    xml = document(
        para("A - Identification du candidat"),
        para("E-mail : {{EMAIL}}"),
        para("Nom : {{NOM}}"),
    )
    doc = MarkupDocument.parse(xml)
    assert [n.section_id for n in doc.nodes] == ["A", "A", "A"]


def test_keywords_skip_table_position_labels():
    label = "Chiffre d'affaires HT [N-2] (T1R2C3)"
    keywords = extract_keywords(label)

    assert "trc" not in keywords
    assert keywords == ["chiffre", "daffaires"]
    assert extract_keywords(f"Effectif ({table_position(2, None, 4)})") == ["effectif"]


def test_keywords_drop_stop_words_and_duplicates():
    assert extract_keywords("Nom de la société et nom commercial") == ["nom", "société", "commercial"]


@pytest.mark.parametrize("path, tag", [
    ("client.nom", "CLIENT_NOM"),
    ("Société.Raison sociale", "SOCIETE_RAISON_SOCIALE"),
    ("ca.n-1", "CA_N_1"),
    ("_interne_", "INTERNE"),
])
def test_tag_from_path(path, tag):
    assert tag_from_path(path) == tag
