"""Markup builders, archive helpers and a stub oracle shared by the suite."""

import io
import json
import zipfile
from dataclasses import replace
from typing import Callable, List, Optional, Sequence, Union

import pytest

from config import GPT5_MINI, MappingConfig
from context import RunContext
from markup import escape_xml

NAMESPACES = (
    'xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main" '
    'xmlns:w14="http://schemas.microsoft.com/office/word/2010/wordml"'
)

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    '</Types>'
)


def run(text: str) -> str:
    return f'<w:r><w:t xml:space="preserve">{escape_xml(text)}</w:t></w:r>'


def para(*texts: str) -> str:
    """Paragraph with one run per text (no run at all when called without text)."""
    return "<w:p>" + "".join(run(t) for t in texts) + "</w:p>"


def cell(content: Union[str, None]) -> str:
    """Table cell; ``None`` gives a cell holding no paragraph, "" an empty paragraph."""
    props = '<w:tcPr><w:tcW w:w="2000" w:type="dxa"/></w:tcPr>'
    if content is None:
        return f"<w:tc>{props}</w:tc>"
    if content == "":
        return f"<w:tc>{props}<w:p/></w:tc>"
    return f"<w:tc>{props}{para(content)}</w:tc>"


def table(rows: Sequence[Sequence[Optional[str]]]) -> str:
    body = "".join("<w:tr>" + "".join(cell(c) for c in row) + "</w:tr>" for row in rows)
    return f'<w:tbl><w:tblPr><w:tblW w:w="0" w:type="auto"/></w:tblPr>{body}</w:tbl>'


def document(*blocks: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f"<w:document {NAMESPACES}><w:body>{''.join(blocks)}<w:sectPr/></w:body></w:document>"
    )


def make_docx(xml: str, extra: Optional[dict] = None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", CONTENT_TYPES)
        archive.writestr("word/document.xml", xml)
        archive.writestr("word/styles.xml", f"<w:styles {NAMESPACES}/>")
        for name, content in (extra or {}).items():
            archive.writestr(name, content)
    return buffer.getvalue()


def read_document_part(data: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return archive.read("word/document.xml").decode("utf-8")


def matches_json(*items: dict, envelope: str = "matches") -> str:
    return json.dumps({envelope: list(items)})


class StubOracle:
    """Records prompts; answers from a handler, a response list, or with no matches."""

    def __init__(self, responses: Optional[List[str]] = None, handler: Optional[Callable[[str], str]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.prompts: List[str] = []

    def invoke(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.handler is not None:
            return self.handler(prompt)
        if self.responses:
            return self.responses.pop(0)
        return '{"matches": []}'


class FailingOracle:
    def __init__(self):
        self.calls = 0

    def invoke(self, prompt: str) -> str:
        self.calls += 1
        raise ConnectionError("oracle unreachable")


@pytest.fixture
def config() -> MappingConfig:
    return replace(MappingConfig(model=GPT5_MINI), debug_enabled=False)


@pytest.fixture
def run_context() -> RunContext:
    return RunContext()


@pytest.fixture
def empty_oracle() -> StubOracle:
    return StubOracle()


# Label rows reused by the SIRET scenario: node 7 is the bare SIRET label.
SIRET_TARGET_TEXTS = [
    "DÉCLARATION DU CANDIDAT",
    "A - Identification du candidat",
    "Nom commercial et dénomination sociale :",
    "Adresse postale et siège social :",
    "Adresse électronique :",
    "Numéros de téléphone et de télécopie :",
    "Forme juridique :",
    "Numéro SIRET :",
    "B - Capacités du candidat",
    "Chiffre d'affaires global",
]


@pytest.fixture
def siret_template_xml() -> str:
    return document(
        para("DÉCLARATION DU CANDIDAT"),
        para("A - Identification du candidat"),
        para("Numéro SIRET : {{SIRET}}"),
    )


@pytest.fixture
def siret_target_xml() -> str:
    return document(*(para(text) for text in SIRET_TARGET_TEXTS))


def ca_rows(filled: bool) -> List[List[Optional[str]]]:
    """3 rows x 4 columns; (2, 3) holds CA_N2 in the template and no paragraph in the target."""
    return [
        ["Exercice", "N", "N-1", "N-2"],
        ["Date de clôture", "31/12", "31/12", "31/12"],
        ["Chiffre d'affaires HT", "", "", "{{CA_N2}}" if filled else None],
    ]


@pytest.fixture
def ca_template_xml() -> str:
    return document(
        para("B - Capacités du candidat"),
        table([["Effectif", "Total"], ["Personnel", "12"]]),
        para("Chiffre d'affaires des trois derniers exercices"),
        table(ca_rows(filled=True)),
    )


@pytest.fixture
def ca_target_xml() -> str:
    return document(
        para("B - Capacités du candidat"),
        table([["Effectif", "Total"], ["Personnel", ""]]),
        para("Chiffre d'affaires des trois derniers exercices"),
        table(ca_rows(filled=False)),
    )
