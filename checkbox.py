"""Checkbox detection, yes/no pairing and state transfer."""

import html
import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from config import MappingConfig
from context import RunContext
from document import MarkupDocument
from markup import TEXT_LEAF, find_close
from oracle import MatchingOracleAdapter, extract_json, validation_reason
from prompts import build_checkbox_prompt
from schemas import CheckboxDecision, CheckboxDecisionCandidate, CheckboxInfo, CheckboxPair, CheckboxStats
from textutils import extract_keywords, normalize_text

CHECKED_GLYPHS = "☑✓✔☒■"
UNCHECKED_GLYPHS = "☐□○◯◻"
GLYPHS = CHECKED_GLYPHS + UNCHECKED_GLYPHS
CHECKED_GLYPH = "☑"
UNCHECKED_GLYPH = "☐"
CONTROL_CHECKED_GLYPH = "☒"

FORM_CHECKBOX = re.compile(r"<w:checkBox\s*/>|<w:checkBox>.*?</w:checkBox>", re.DOTALL)
FORM_CHECKED = re.compile(r"<w:checked(?:\s+w:val=\"(?:1|true|on)\")?\s*/>")
FORM_UNCHECKED = re.compile(r"<w:checked\s+w:val=\"(?:0|false|off)\"\s*/>")
FORM_DEFAULT_ON = re.compile(r"<w:default\s+w:val=\"(?:1|true|on)\"\s*/>")
FORM_DEFAULT = re.compile(r"<w:default\s+w:val=\"[^\"]*\"\s*/>")
CONTENT_CHECKED = re.compile(r"<w14:checked\s+w14:val=\"([^\"]*)\"\s*/>")

YES_LABEL = re.compile(r"^(oui|yes)\b", re.IGNORECASE)
NO_LABEL = re.compile(r"^(non|no)\b", re.IGNORECASE)
YES_NO_WORDS = re.compile(r"\b(oui|non|yes|no)\b", re.IGNORECASE)

PAIR_WINDOW = 5


def is_yes(label: str) -> bool:
    return bool(YES_LABEL.match(label.strip()))


def is_no(label: str) -> bool:
    return bool(NO_LABEL.match(label.strip()))


def form_control_checked(markup: str) -> bool:
    if FORM_UNCHECKED.search(markup):
        return False
    if FORM_CHECKED.search(markup):
        return True
    return bool(FORM_DEFAULT_ON.search(markup))


def _content_control_ranges(xml: str) -> List[Tuple[int, int]]:
    """Ranges of ``<w:sdt>`` elements that hold a w14 checkbox."""
    ranges = []
    pos = 0
    while True:
        start = xml.find("<w:sdt>", pos)
        attr_start = xml.find("<w:sdt ", pos)
        if start == -1 or (attr_start != -1 and attr_start < start):
            start = attr_start
        if start == -1:
            break
        gt = xml.find(">", start)
        end = find_close(xml, "w:sdt", gt + 1)
        if end is None:
            break
        props_end = xml.find("</w:sdtPr>", start, end)
        if props_end != -1 and xml.find("<w14:checkbox", start, props_end) != -1:
            ranges.append((start, end))
            pos = end
        else:
            pos = gt + 1
    return ranges


def detect_checkboxes(document: MarkupDocument) -> List[CheckboxInfo]:
    """Glyph, legacy form-field and content-control checkboxes in document order."""
    xml = document.xml
    anchors: List[Tuple[int, str, bool, Optional[str]]] = []

    controls = _content_control_ranges(xml)
    for start, end in controls:
        state = CONTENT_CHECKED.search(xml, start, end)
        anchors.append((start, "content_control", bool(state and state.group(1) in ("1", "true")), None))
    for match in FORM_CHECKBOX.finditer(xml):
        anchors.append((match.start(), "form_control", form_control_checked(match.group(0)), None))

    chars: List[Tuple[int, str]] = []
    for leaf in TEXT_LEAF.finditer(xml):
        base = leaf.start(2)
        for offset, char in enumerate(leaf.group(2)):
            chars.append((base + offset, char))
            if char in GLYPHS and not any(s <= base + offset < e for s, e in controls):
                anchors.append((base + offset, "unicode", char in CHECKED_GLYPHS, char))

    anchors.sort(key=lambda a: a[0])
    boxes: List[CheckboxInfo] = []
    for position, kind, checked, glyph in anchors:
        node = document.node_at(position)
        if node is None:
            continue
        boxes.append(CheckboxInfo(
            index=len(boxes),
            kind=kind,
            checked=checked,
            node_index=node.index,
            position=position,
            glyph=glyph,
            context=node.text[:200],
        ))

    for i, box in enumerate(boxes):
        node = document.node(box.node_index)
        next_position = node.range_end
        if i + 1 < len(boxes) and boxes[i + 1].node_index == box.node_index:
            next_position = boxes[i + 1].position
        previous_position = node.range_start
        if i > 0 and boxes[i - 1].node_index == box.node_index:
            previous_position = boxes[i - 1].position
        label = _text_between(chars, box.position + 1, next_position)
        if not label:
            label = _text_between(chars, previous_position, box.position)
        box.label = label[:100]
    return boxes


def _text_between(chars: List[Tuple[int, str]], start: int, end: int) -> str:
    raw = "".join(c for offset, c in chars if start <= offset < end and c not in GLYPHS)
    return normalize_text(html.unescape(raw))


def _question_text(document: MarkupDocument, box: CheckboxInfo) -> str:
    text = normalize_text(YES_NO_WORDS.sub("", "".join(c for c in box.context if c not in GLYPHS)))
    if len(text) < 10 and box.node_index:
        previous = document.node(box.node_index - 1)
        if previous is not None:
            text = normalize_text(previous.text)
    return text


def pair_yes_no(document: MarkupDocument, boxes: List[CheckboxInfo]) -> List[CheckboxPair]:
    """Pair each yes box with the next unpaired no box within a small window."""
    pairs: List[CheckboxPair] = []
    used = set()
    for i, box in enumerate(boxes):
        if box.index in used or not is_yes(box.label):
            continue
        for other in boxes[i + 1:i + 1 + PAIR_WINDOW]:
            if other.index in used or not is_no(other.label):
                continue
            used.update((box.index, other.index))
            if box.checked and not other.checked:
                value = True
            elif other.checked and not box.checked:
                value = False
            else:
                value = None
            question = _question_text(document, box)
            if len(question) < 10:
                question = f"Question_{len(pairs) + 1}"
            pairs.append(CheckboxPair(question=question[:60], yes=box, no=other, value=value))
            break
    return pairs


def _keyword_overlap(a: str, b: str) -> int:
    lowered = b.lower()
    return sum(len(k) for k in extract_keywords(a) if k in lowered)


def match_checkboxes(
    template: List[CheckboxInfo],
    targets: List[CheckboxInfo],
) -> List[CheckboxDecision]:
    """Copy template states onto target boxes with the closest label."""
    decisions: List[CheckboxDecision] = []
    used = set()
    for target in targets:
        target_label = normalize_text(target.label).lower()
        best, best_score, confidence = None, 0, 0.0
        for candidate in template:
            if candidate.index in used:
                continue
            label = normalize_text(candidate.label).lower()
            context_bonus = _keyword_overlap(candidate.context, target.context)
            if (is_yes(label) and is_yes(target_label)) or (is_no(label) and is_no(target_label)):
                score, conf = 100 + context_bonus, 0.9
            elif label and label == target_label:
                score, conf = 200 + context_bonus, 1.0
            else:
                score = _keyword_overlap(candidate.label, target.label)
                conf = 0.8
                if score < 10:
                    continue
            if score > best_score:
                best, best_score, confidence = candidate, score, conf
        if best is None:
            continue
        used.add(best.index)
        decisions.append(CheckboxDecision(
            target_index=target.index,
            should_be_checked=best.checked,
            confidence=confidence,
            reason=f'template box "{best.label[:40]}"',
            source="template",
        ))
    return decisions


def parse_checkbox_decisions(text: str, target_count: int, min_confidence: float) -> Tuple[List[CheckboxDecision], List[str]]:
    payload = extract_json(text, envelope="checkboxDecisions")
    if payload is None:
        return [], ["no JSON object found in response"]
    items = None
    for key in ("checkboxDecisions", "decisions", "matches"):
        if isinstance(payload.get(key), list):
            items = payload[key]
            break
    if items is None:
        return [], ["response has no decision list"]

    decisions: List[CheckboxDecision] = []
    rejected: List[str] = []
    for item in items:
        try:
            candidate = CheckboxDecisionCandidate.model_validate(item)
        except ValidationError as e:
            rejected.append(f"checkbox decision: {validation_reason(e)}")
            continue
        idx = candidate.target_index
        if idx >= target_count:
            rejected.append(f"checkbox index {idx} out of range (0..{target_count - 1})")
            continue
        if candidate.confidence < min_confidence:
            rejected.append(f"checkbox {idx}: confidence {candidate.confidence:.2f} below {min_confidence:.2f}")
            continue
        decisions.append(candidate.to_decision())
    return decisions, rejected


def _set_form_state(markup: str, checked: bool) -> str:
    value = "1" if checked else "0"
    if markup.rstrip().endswith("/>") and "</w:checkBox>" not in markup:
        return f'<w:checkBox><w:default w:val="{value}"/></w:checkBox>'
    if FORM_CHECKED.search(markup) or FORM_UNCHECKED.search(markup):
        markup = FORM_UNCHECKED.sub("", FORM_CHECKED.sub("", markup))
    if FORM_DEFAULT.search(markup):
        return FORM_DEFAULT.sub(f'<w:default w:val="{value}"/>', markup, count=1)
    return markup.replace("</w:checkBox>", f'<w:default w:val="{value}"/></w:checkBox>', 1)


def apply_decisions(xml: str, boxes: List[CheckboxInfo], decisions: List[CheckboxDecision]) -> Tuple[str, int]:
    """Write decided states back to the buffer, last box first. Returns (xml, changed count)."""
    by_index = {b.index: b for b in boxes}
    changed = 0
    for decision in sorted(decisions, key=lambda d: by_index[d.target_index].position, reverse=True):
        box = by_index[decision.target_index]
        if box.checked == decision.should_be_checked:
            continue
        checked = decision.should_be_checked
        if box.kind == "unicode":
            glyph = CHECKED_GLYPH if checked else UNCHECKED_GLYPH
            xml = xml[:box.position] + glyph + xml[box.position + 1:]
        elif box.kind == "form_control":
            match = FORM_CHECKBOX.match(xml, box.position)
            if match is None:
                continue
            xml = xml[:match.start()] + _set_form_state(match.group(0), checked) + xml[match.end():]
        else:
            gt = xml.find(">", box.position)
            end = find_close(xml, "w:sdt", gt + 1)
            if end is None:
                continue
            control = xml[box.position:end]
            control = CONTENT_CHECKED.sub(f'<w14:checked w14:val="{1 if checked else 0}"/>', control, count=1)
            for leaf in TEXT_LEAF.finditer(control):
                content = leaf.group(2)
                glyph_at = next((i for i, c in enumerate(content) if c in GLYPHS), None)
                if glyph_at is not None:
                    at = leaf.start(2) + glyph_at
                    control = control[:at] + (CONTROL_CHECKED_GLYPH if checked else UNCHECKED_GLYPH) + control[at + 1:]
                    break
            xml = xml[:box.position] + control + xml[end:]
        changed += 1
    return xml, changed


class CheckboxProcessor:
    """Runs once on the final buffer, independent of the tag loop."""

    def __init__(self, config: MappingConfig, context: RunContext, adapter: Optional[MatchingOracleAdapter] = None):
        self.config = config
        self.context = context
        self.adapter = adapter

    def run(self, template_xml: str, target_xml: str) -> Tuple[str, CheckboxStats]:
        stats = CheckboxStats(mode=self.config.checkbox_mode)
        if self.config.checkbox_mode == "off":
            return target_xml, stats

        template_doc = self.context.parse(template_xml)
        target_doc = self.context.parse(target_xml)
        template_boxes = detect_checkboxes(template_doc)
        target_boxes = detect_checkboxes(target_doc)
        pairs = pair_yes_no(template_doc, template_boxes)
        stats.template_count = len(template_boxes)
        stats.target_count = len(target_boxes)
        stats.pairs = len(pairs)
        self._log(f"{len(template_boxes)} template / {len(target_boxes)} target checkbox(es), {len(pairs)} yes/no pair(s)")
        if not target_boxes:
            return target_xml, stats

        decisions: List[CheckboxDecision] = []
        if self.config.checkbox_mode == "oracle" and self.adapter is not None:
            decisions = self._ask_oracle(target_doc, target_boxes, pairs, template_boxes)
        if not decisions:
            decisions = match_checkboxes(template_boxes, target_boxes)
        decisions = [d for d in decisions if d.confidence >= self.config.checkbox_min_confidence]

        xml, changed = apply_decisions(target_xml, target_boxes, decisions)
        stats.decisions = len(decisions)
        stats.applied = changed
        self.context.log_action(
            "apply_tags",
            f"checkboxes: {len(decisions)} decision(s), {changed} changed",
            result="success" if decisions else "partial",
        )
        return xml, stats

    def _ask_oracle(self, document, targets, pairs, template_boxes) -> List[CheckboxDecision]:
        prompt = build_checkbox_prompt(
            document.text, targets, pairs, template_boxes,
            context_chars=self.config.checkbox_context_chars,
        )
        raw = self.adapter.call(prompt, "checkboxes")
        if not raw.is_ok:
            return []
        decisions, rejected = parse_checkbox_decisions(
            raw.value, len(targets), self.config.checkbox_min_confidence
        )
        for reason in rejected:
            self._log(f"  Dropped decision: {reason}")
        self.context.log_action(
            "call_llm",
            f"checkboxes: {len(decisions)} decision(s), {len(rejected)} dropped",
            result="success" if decisions else "failed",
        )
        return decisions

    def _log(self, message: str) -> None:
        print(f"[Checkbox] {message}")
