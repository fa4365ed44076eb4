"""Composable prompt components for tag placement and checkbox decisions."""

import json
from typing import Dict, List, Optional

from nodes import ParagraphNode
from schemas import CheckboxInfo, CheckboxPair, ExpectedTag, TagContext
from textutils import table_position


SYSTEM_PROMPT = """You are a document structure analyst. You map placeholder tags from a
filled-in reference form onto the matching locations of a blank copy of the same form.
You answer with JSON only."""


MATCHING_RULES = """## MATCHING RULES
- Match each tag to the paragraph whose label means the same thing as the tag's label in the reference.
- A label ending with ':' is usually followed by the value: use insertionPoint "after_colon".
- Empty or near-empty table cells are the usual target for tabular values: use "table_cell".
- Repeated labels across table columns (e.g. three fiscal years) are distinguished by the column header and position T{table}R{row}C{column}.
- Never place two tags in the same paragraph unless they form a start/end date pair (_DEBUT/_FIN).
- Skip a tag rather than guess. Only report confidence >= 0.7 when the label clearly matches."""


INSERTION_STRATEGY_GUIDE = """## INSERTION POINTS
| insertionPoint | Use when |
|----------------|----------|
| after_colon | paragraph ends with a label and a colon ("Numéro SIRET :") |
| table_cell | target is a table cell, empty or holding a short label |
| replace_empty | paragraph is empty or only holds filler dots |
| inline | value follows the label text without a colon |
| checkbox | tag encodes a yes/no choice next to a checkbox |"""


MATCHES_RESPONSE_FORMAT = """## RESPONSE FORMAT
Return exactly:
{"matches": [{"tag": "SIRET", "targetIdx": 7, "confidence": 0.95, "insertionPoint": "after_colon", "reason": "same label"}]}"""


PLACEMENTS_RESPONSE_FORMAT = """## RESPONSE FORMAT
Return exactly (idx refers to the section-local paragraph list above):
{"placements": [{"tag": "CA_N1", "targetIdx": 3, "confidence": 0.9, "insertionPoint": "table_cell", "reason": "row and column match"}]}"""


CHECKBOX_RULES = """## CHECKBOX RULES
- Decide for every target checkbox whether it must be checked, using the reference answers and the document text.
- Yes/No twins are exclusive: never check both.
- Leave a checkbox unchecked when nothing supports checking it.

## RESPONSE FORMAT
{"checkboxDecisions": [{"targetIndex": 0, "shouldBeChecked": true, "confidence": 0.9, "reason": "reference answers Oui"}]}"""


def _describe_context(ctx: TagContext) -> Dict:
    entry = {
        "tag": ctx.tag,
        "type": ctx.type,
        "labelBefore": ctx.label_before[:150],
    }
    if ctx.label_after:
        entry["labelAfter"] = ctx.label_after
    if ctx.section:
        entry["section"] = ctx.section
    if ctx.table_index is not None:
        entry["position"] = table_position(ctx.table_index, ctx.row_index, ctx.column_index)
        if ctx.row_header:
            entry["rowHeader"] = ctx.row_header[:40]
        if ctx.column_header:
            entry["columnHeader"] = ctx.column_header[:40]
    return entry


def describe_node(node: ParagraphNode, idx: int, preview_chars: int) -> Dict:
    entry = {"idx": idx, "text": node.text[:preview_chars]}
    if node.is_table_cell:
        entry["isCell"] = True
        entry["pos"] = node.position
    entry["empty"] = len(node.text.strip()) < 3
    return entry


def build_matching_prompt(
    contexts: List[TagContext],
    candidates: List[ParagraphNode],
    preview_chars: int = 80,
    scope: str = "document",
    document_type: Optional[str] = None,
) -> str:
    """Document- or segment-scoped prompt; idx values are absolute node indices."""
    form_line = f"\nDocument type: {document_type}" if document_type else ""
    tags_json = json.dumps([_describe_context(c) for c in contexts], ensure_ascii=False, indent=1)
    nodes_json = json.dumps(
        [describe_node(n, n.index, preview_chars) for n in candidates],
        ensure_ascii=False,
    )
    return f"""{SYSTEM_PROMPT}

# TASK ({scope})
Place {len(contexts)} tag(s) into the blank document.{form_line}

{MATCHING_RULES}

{INSERTION_STRATEGY_GUIDE}

## REFERENCE TAGS
{tags_json}

## TARGET PARAGRAPHS (not yet tagged)
{nodes_json}

{MATCHES_RESPONSE_FORMAT}"""


def build_section_prompt(
    section: str,
    missing: List[ExpectedTag],
    section_nodes: List[ParagraphNode],
    relative_tables: Dict[int, int],
    iteration: int,
    preview_chars: int = 50,
    feedback: Optional[List[str]] = None,
) -> str:
    """Section-scoped repair prompt with section-relative paragraph and table indices."""
    lines = [
        f"# REPAIR - SECTION {section} (iteration {iteration})",
        "",
        "## CONTEXT",
        f"- Tags to place: {len(missing)}",
        f"- Paragraphs available: {len(section_nodes)}",
        f"- Tables in this section: {len(relative_tables)}",
    ]
    if relative_tables:
        lines += ["", "## TABLE INDICES ARE RELATIVE TO THIS SECTION"]
        lines += [f"- Table {rel} (here) = table {absolute} (document)" for absolute, rel in sorted(relative_tables.items())]

    table_tags = [t for t in missing if t.expected_location.type == "table_cell"]
    text_tags = [t for t in missing if t.expected_location.type != "table_cell"]
    if table_tags:
        lines += ["", f"## TABLE TAGS ({len(table_tags)})"]
        for tag in table_tags:
            loc = tag.expected_location
            rel = relative_tables.get(loc.table_index, "?")
            line = f"- {tag.full_token} -> Table{rel} R{loc.row_index} C{loc.column_index}"
            if tag.template_context.row_header:
                line += f' (row: "{tag.template_context.row_header[:30]}")'
            if tag.template_context.column_header:
                line += f' (column: "{tag.template_context.column_header[:30]}")'
            lines.append(line)
    if text_tags:
        lines += ["", f"## TEXT TAGS ({len(text_tags)})"]
        for tag in text_tags:
            lines.append(f'- {tag.full_token} -> "{tag.template_context.label_before[:50]}"')

    if feedback:
        lines += ["", "## PREVIOUS ATTEMPTS"] + [f"- {item}" for item in feedback]

    paragraphs = []
    for idx, node in enumerate(section_nodes):
        entry = describe_node(node, idx, preview_chars)
        if node.is_table_cell:
            entry["pos"] = table_position(
                relative_tables.get(node.table_index, node.table_index), node.row_index, node.column_index
            )
        paragraphs.append(entry)
    lines += ["", "## PARAGRAPHS", json.dumps(paragraphs, ensure_ascii=False), "", PLACEMENTS_RESPONSE_FORMAT]
    return "\n".join(lines)


def build_checkbox_prompt(
    document_text: str,
    targets: List[CheckboxInfo],
    template_pairs: List[CheckboxPair],
    template_boxes: List[CheckboxInfo],
    context_chars: int = 4_000,
) -> str:
    reference = [
        {"question": p.question, "answer": {True: "Oui", False: "Non", None: "?"}[p.value]}
        for p in template_pairs
    ]
    reference += [
        {"label": b.label, "checked": b.checked}
        for b in template_boxes
        if not any(b.index in (p.yes.index, p.no.index) for p in template_pairs)
    ]
    target_json = json.dumps(
        [{"targetIndex": b.index, "label": b.label, "context": b.context[:80], "checked": b.checked} for b in targets],
        ensure_ascii=False,
    )
    return f"""{SYSTEM_PROMPT}

# TASK
Decide the state of {len(targets)} checkbox(es) in the blank document.

## REFERENCE ANSWERS
{json.dumps(reference, ensure_ascii=False)}

## DOCUMENT TEXT (truncated)
{document_text[:context_chars]}

## TARGET CHECKBOXES
{target_json}

{CHECKBOX_RULES}"""
