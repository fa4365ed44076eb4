"""Tag contexts from the reference document and the expected-tag checklist."""

from typing import Any, Dict, List

from document import MarkupDocument
from nodes import ParagraphNode
from schemas import DataField, ExpectedLocation, ExpectedTag, TagContext
from textutils import (
    TAG_PATTERN, contains_letters, has_existing_tag, strip_tags, tag_from_path, wrap_tag,
)

UNKNOWN_SECTION = "UNKNOWN"

# Tag-name fragment -> words a reader would expect near the field
SEMANTIC_HINTS = {
    "NOM_COMMERCIAL": "nom commercial dénomination sociale raison sociale",
    "DENOMINATION": "dénomination sociale",
    "ADRESSE_SIEGE": "siège social adresse siège",
    "ADRESSE": "adresse postale siège",
    "SIRET": "numéro SIRET SIREN identification",
    "EMAIL": "adresse électronique courriel email",
    "TELEPHONE": "téléphone numéro tel",
    "FORME_JURIDIQUE": "forme juridique statut entreprise",
    "CHECK_PME": "PME petite moyenne entreprise artisan",
    "PART_CA": "part pourcentage chiffre affaires",
    "CA_": "chiffre affaires exercice",
}


def infer_tag_type(tag: str) -> str:
    """Closed-form classifier on the tag name: checkbox, date or text."""
    if tag.startswith("CHECK_") or tag.startswith("EST_") or "_OUI" in tag or "_NON" in tag:
        return "checkbox"
    if "DATE" in tag or "_DEBUT" in tag or "_FIN" in tag:
        return "date"
    return "text"


def infer_data_type(tag: str) -> str:
    if infer_tag_type(tag) == "checkbox":
        return "boolean"
    if "DATE" in tag or "_DEBUT" in tag or "_FIN" in tag:
        return "date"
    if "MONTANT" in tag or "PRIX" in tag or "CA_" in tag:
        return "number"
    return "string"


def semantic_hint(tag: str) -> str:
    for fragment, hint in SEMANTIC_HINTS.items():
        if fragment in tag:
            return hint
    return ""


def _label_before(text: str, token_start: int, nodes: List[ParagraphNode], position: int, lookback: int) -> str:
    before = text[:token_start].strip()
    if len(before) > 2 and contains_letters(before):
        return before
    for j in range(position - 1, max(-1, position - 1 - lookback), -1):
        previous = nodes[j].text.strip()
        if len(previous) > 3 and not has_existing_tag(previous) and contains_letters(previous):
            return previous[:150]
    return ""


def _label_after(text: str, token_end: int) -> str:
    after = text[token_end:].strip()
    if after and not has_existing_tag(after):
        return after[:50]
    return ""


def extract_tag_contexts(document: MarkupDocument, lookback: int = 5) -> List[TagContext]:
    """One TagContext per placeholder occurrence, in document order."""
    contexts: List[TagContext] = []
    nodes = document.nodes
    for position, node in enumerate(nodes):
        for match in TAG_PATTERN.finditer(node.text):
            tag = match.group(1)
            tag_type = infer_tag_type(tag)
            label = _label_before(node.text, match.start(), nodes, position, lookback)

            hint = semantic_hint(tag)
            if hint:
                label = f"{label} {hint}"
            if node.is_table_cell:
                if tag_type == "text":
                    tag_type = "table_cell"
                if node.column_header and node.column_header not in label:
                    label = f"{label} [{node.column_header}]"
                label = f"{label} ({node.position})"

            contexts.append(TagContext(
                tag=tag,
                full_token=match.group(0),
                label_before=strip_tags(label),
                label_after=strip_tags(_label_after(node.text, match.end())),
                section=node.section_id,
                type=tag_type,
                paragraph_index=node.index,
                table_index=node.table_index,
                row_index=node.row_index,
                column_index=node.column_index,
                row_header=node.row_header or None,
                column_header=node.column_header or None,
            ))
    return contexts


def build_checklist(contexts: List[TagContext]) -> List[ExpectedTag]:
    """Deduplicate contexts into one ExpectedTag per tag (first occurrence wins)."""
    checklist: Dict[str, ExpectedTag] = {}
    for ctx in contexts:
        if ctx.tag in checklist:
            continue
        location = ExpectedLocation(
            type="table_cell" if ctx.table_index is not None else "text",
            table_index=ctx.table_index,
            row_index=ctx.row_index,
            column_index=ctx.column_index,
            near_text=ctx.label_before[:50] or None,
            section=ctx.section or UNKNOWN_SECTION,
        )
        checklist[ctx.tag] = ExpectedTag(
            tag=ctx.tag,
            full_token=wrap_tag(ctx.tag),
            expected_location=location,
            template_context=ctx,
        )
    return list(checklist.values())


def generate_data_structure(tags: List[str]) -> Dict[str, Any]:
    """Empty fill-in structure for a downstream template filler."""
    defaults = {"boolean": False, "number": 0, "date": "", "string": ""}
    return {tag: defaults[infer_data_type(tag)] for tag in tags}


def flatten_data_structure(data: Dict[str, Any], prefix: str = "") -> List[DataField]:
    """Leaf fields of a nested mapping; dicts recurse, lists and scalars are leaves."""
    fields: List[DataField] = []
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            fields.extend(flatten_data_structure(value, path))
        else:
            fields.append(DataField(key=str(key), path=path, tag=tag_from_path(path)))
    return fields


def contexts_from_fields(fields: List[DataField]) -> List[TagContext]:
    """Tag contexts built from field paths instead of a reference document."""
    contexts: Dict[str, TagContext] = {}
    for data_field in fields:
        if not data_field.tag or data_field.tag in contexts:
            continue
        label = data_field.path.replace(".", " ").replace("_", " ")
        hint = semantic_hint(data_field.tag)
        if hint:
            label = f"{label} {hint}"
        contexts[data_field.tag] = TagContext(
            tag=data_field.tag,
            full_token=wrap_tag(data_field.tag),
            label_before=label,
            type=infer_tag_type(data_field.tag),
        )
    return list(contexts.values())
