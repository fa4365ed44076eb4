"""Logical segmentation of documents and template/target segment pairing."""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from document import MarkupDocument
from markup import PAGE_BREAK, count_page_breaks
from nodes import ParagraphNode
from schemas import Segment, SegmentMetadata, SegmentPair
from textutils import find_tags

SECTION_TEXT_PATTERNS = [
    re.compile(r"([A-H])\s*[-–—]\s*Identification", re.IGNORECASE),
    re.compile(r"([A-H])\s*[-–—]\s*Objet", re.IGNORECASE),
    re.compile(r"([A-H])\s*[-–—]\s*(?:Renseignements|Capacit[ée]s)", re.IGNORECASE),
    re.compile(r"Section\s+([A-H])\b"),
]
SECTION_MARKER = re.compile(r"^([A-H])\s*[-–—:](?=\s|[A-ZÀ-Ý])\s*(.+?)(?:\s*$|\.)")

FINANCIAL_PATTERN = re.compile(r"chiffre\s+d['’]?affaires|montant|€|euros?|exercice|bilan|revenue|turnover", re.IGNORECASE)
CONTACT_PATTERN = re.compile(r"adresse|t[ée]l[ée]phone|courriel|e-?mail|fax|address|phone", re.IGNORECASE)
IDENTIFICATION_PATTERN = re.compile(r"siret|siren|d[ée]nomination|raison\s+sociale|nom\s+commercial|identification", re.IGNORECASE)
LEGAL_PATTERN = re.compile(r"forme\s+juridique|statut|capital|rcs|tva|legal", re.IGNORECASE)
DATE_PATTERN = re.compile(r"\bdate\b|\bdu\b.*\bau\b|\d{2}/\d{2}/\d{4}", re.IGNORECASE)

LONG_WORD = re.compile(r"[a-zà-ÿ]{5,}")


@dataclass
class SegmentationPlan:
    strategy: str
    table_count: int
    page_breaks: int
    has_section_markers: bool
    segments: List[Segment] = field(default_factory=list)


def detect_strategy(document: MarkupDocument) -> Tuple[str, int, int, bool]:
    table_count = len(document.tables)
    page_breaks = count_page_breaks(document.xml)
    text = document.text
    has_markers = any(p.search(text) for p in SECTION_TEXT_PATTERNS) or any(
        SECTION_MARKER.match(n.text) for n in document.nodes
    )

    if table_count >= 5 and has_markers:
        strategy = "hybrid"
    elif table_count >= 8:
        strategy = "tables"
    elif page_breaks >= 3:
        strategy = "pages"
    elif has_markers:
        strategy = "sections"
    else:
        strategy = "hybrid"
    return strategy, table_count, page_breaks, has_markers


def analyze_metadata(text: str) -> SegmentMetadata:
    return SegmentMetadata(
        has_financial_data=bool(FINANCIAL_PATTERN.search(text)),
        has_contact_info=bool(CONTACT_PATTERN.search(text)),
        has_identification=bool(IDENTIFICATION_PATTERN.search(text)),
        has_legal_info=bool(LEGAL_PATTERN.search(text)),
        has_dates=bool(DATE_PATTERN.search(text)),
    )


def relevance_score(segment: Segment) -> float:
    meta = segment.metadata
    score = len(segment.tags) * 20
    if meta.has_identification:
        score += 15
    if meta.has_contact_info:
        score += 10
    if meta.has_financial_data:
        score += 15
    if meta.has_legal_info:
        score += 5
    if len(segment.text) > 500:
        score += 5
    if len(segment.node_indices) > 5:
        score += 5
    return float(min(100, score))


def _boundary_key(strategy: str, node: ParagraphNode, section: Optional[str], page: int):
    """Grouping key; consecutive nodes sharing a key form one segment."""
    if strategy == "pages":
        return ("page", page)
    if strategy == "sections":
        return ("section", section)
    if strategy == "tables":
        return ("table", node.table_index) if node.table_index is not None else ("text", None)
    # hybrid: tables carved out of lettered sections
    if node.table_index is not None:
        return ("table", node.table_index)
    return ("section", section)


def _build_segment(document: MarkupDocument, key, members: List[ParagraphNode], section: Optional[str], number: int) -> Segment:
    kind, value = key
    text = "\n".join(n.text for n in members if n.text)
    segment = Segment(
        id=f"seg_{number:03d}",
        type="table" if kind == "table" else ("page" if kind == "page" else "section"),
        section_letter=section or None,
        table_index=value if kind == "table" else None,
        text=text,
        range_start=members[0].range_start,
        range_end=members[-1].range_end,
        node_indices=[n.index for n in members],
        tags=list(dict.fromkeys(find_tags(text))),
        metadata=analyze_metadata(text),
    )
    segment.relevance_score = relevance_score(segment)
    return segment


def segment_document(
    document: MarkupDocument,
    min_segment_size: int = 50,
    merge_segment_size: int = 100,
) -> SegmentationPlan:
    strategy, table_count, page_breaks, has_markers = detect_strategy(document)
    plan = SegmentationPlan(strategy, table_count, page_breaks, has_markers)

    groups: List[Tuple[tuple, List[ParagraphNode], Optional[str]]] = []
    section: Optional[str] = None
    page = 0
    for node in document.nodes:
        marker = SECTION_MARKER.match(node.text)
        if marker:
            section = marker.group(1)
        key = _boundary_key(strategy, node, section, page)
        if groups and groups[-1][0] == key:
            groups[-1][1].append(node)
        else:
            groups.append((key, [node], section))
        if strategy == "pages" and PAGE_BREAK.search(document.markup(node)):
            page += 1

    segments = [
        _build_segment(document, key, members, seg_section, i)
        for i, (key, members, seg_section) in enumerate(groups)
    ]
    segments = [s for s in segments if len(s.text) >= min_segment_size or s.tags]
    plan.segments = _merge_small(document, segments, merge_segment_size)
    print(f"[Segmenter] Strategy: {strategy} ({table_count} tables, {page_breaks} page breaks) -> {len(plan.segments)} segments")
    return plan


def _merge_small(document: MarkupDocument, segments: List[Segment], threshold: int) -> List[Segment]:
    """Fold consecutive small segments of the same kind into one."""
    merged: List[Segment] = []
    for segment in segments:
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and len(previous.text) < threshold
            and len(segment.text) < threshold
            and previous.type == segment.type
            and previous.table_index == segment.table_index
        ):
            members = [document.nodes[i] for i in previous.node_indices + segment.node_indices]
            key = ("table", previous.table_index) if previous.type == "table" else (previous.type, None)
            combined = _build_segment(document, key, members, previous.section_letter, 0)
            combined.id = previous.id
            merged[-1] = combined
        else:
            merged.append(segment)
    return merged


def segment_similarity(a: Segment, b: Segment) -> float:
    score = 0.0
    if a.section_letter and a.section_letter == b.section_letter:
        score += 40
    if a.table_index is not None and a.table_index == b.table_index:
        score += 30
    if a.metadata.has_financial_data and b.metadata.has_financial_data:
        score += 20
    if a.metadata.has_contact_info and b.metadata.has_contact_info:
        score += 15
    if a.metadata.has_identification and b.metadata.has_identification:
        score += 15

    words_a = set(LONG_WORD.findall(a.text.lower()))
    words_b = set(LONG_WORD.findall(b.text.lower()))
    if words_a and words_b:
        common = len(words_a & words_b)
        total = max(len(words_a), len(words_b))
        score += min(20.0, common / total * 20)
    return min(100.0, score)


def pair_segments(
    template_segments: List[Segment],
    target_segments: List[Segment],
    threshold: float = 30,
) -> Tuple[List[SegmentPair], List[str]]:
    """Best target for every tagged template segment; weak pairs are skipped with a warning."""
    pairs: List[SegmentPair] = []
    warnings: List[str] = []
    for template in template_segments:
        if not template.tags:
            continue
        best, best_score = None, -1.0
        for target in target_segments:
            score = segment_similarity(template, target)
            if score > best_score:
                best, best_score = target, score
        if best is None or best_score < threshold:
            warnings.append(
                f"Segment {template.id} ({', '.join(template.tags)}) has no target above "
                f"score {threshold} (best {max(best_score, 0):.0f})"
            )
            continue
        pairs.append(SegmentPair(template=template, target=best, score=best_score))
    return pairs, warnings
