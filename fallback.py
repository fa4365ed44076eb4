"""Deterministic safety net used when the oracle proposes nothing usable."""

from typing import Iterable, List, Optional, Set

from nodes import ParagraphNode
from schemas import ExpectedTag, MatchResult
from textutils import ends_with_colon, extract_keywords

TABLE_POSITION_CONFIDENCE = 0.90
KEYWORD_CONFIDENCE = 0.75
COLON_BONUS = 5


def keyword_score(keywords: List[str], text: str) -> int:
    """Summed length of the keywords found in ``text`` (0 when none is found)."""
    lowered = text.lower()
    hits = sum(len(k) for k in keywords if k in lowered)
    if not hits:
        return 0
    return hits + (COLON_BONUS if ends_with_colon(text) else 0)


class PatternFallbackMatcher:
    """Table-position equality first, then keyword overlap on the template label."""

    def __init__(self, min_keyword_score: int = 5):
        self.min_keyword_score = min_keyword_score

    def match(
        self,
        expected: Iterable[ExpectedTag],
        nodes: List[ParagraphNode],
        used_nodes: Optional[Set[int]] = None,
    ) -> List[MatchResult]:
        expected = list(expected)
        used: Set[int] = set(used_nodes or ())
        matches: List[MatchResult] = []
        placed: Set[str] = set()

        for item in expected:
            loc = item.expected_location
            if loc.type != "table_cell" or loc.table_index is None:
                continue
            node = self._cell(nodes, used, loc.table_index, loc.row_index, loc.column_index)
            if node is None:
                continue
            used.add(node.index)
            placed.add(item.tag)
            matches.append(MatchResult(
                tag=item.tag,
                target_paragraph_index=node.index,
                confidence=TABLE_POSITION_CONFIDENCE,
                insertion_strategy="table_cell",
                reason=f"table position {node.position}",
                source="fallback",
            ))

        for item in expected:
            if item.tag in placed or item.expected_location.type == "table_cell":
                continue
            keywords = extract_keywords(item.template_context.label_before)
            if not keywords:
                continue
            best, best_score = None, 0
            for node in nodes:
                if node.index in used or node.has_existing_tag or not node.text:
                    continue
                score = keyword_score(keywords, node.text)
                if score > best_score:
                    best, best_score = node, score
            if best is None or best_score < self.min_keyword_score:
                continue
            used.add(best.index)
            matches.append(MatchResult(
                tag=item.tag,
                target_paragraph_index=best.index,
                confidence=KEYWORD_CONFIDENCE,
                insertion_strategy="after_colon" if ends_with_colon(best.text) else "inline",
                reason=f"keyword score {best_score}",
                source="fallback",
            ))

        print(f"[Fallback] {len(matches)} match(es) for {len(expected)} tag(s)")
        return matches

    @staticmethod
    def _cell(nodes, used, table_index, row_index, column_index) -> Optional[ParagraphNode]:
        for node in nodes:
            if node.index in used or node.has_existing_tag:
                continue
            if node.same_cell(table_index, row_index, column_index):
                return node
        return None
