"""Verification / repair loop over the expected-tag checklist."""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from applicator import TagApplicator
from config import MappingConfig
from context import RunContext
from document import MarkupDocument
from fallback import PatternFallbackMatcher, keyword_score
from markup import validate_markup
from nodes import ParagraphNode
from oracle import MatchingOracleAdapter
from prompts import build_section_prompt
from schemas import AgentIssue, ApplyOutcome, ExpectedTag, MatchResult
from tag_context import UNKNOWN_SECTION
from textutils import TAG_PATTERN, ends_with_colon, extract_keywords, strip_tags


@dataclass
class FoundTag:
    tag: str
    node_index: int
    table_index: Optional[int]
    row_index: Optional[int]
    column_index: Optional[int]
    context: str


@dataclass
class AgentResult:
    xml: str
    checklist: List[ExpectedTag]
    issues: List[AgentIssue]
    satisfaction: int
    success: bool
    iterations: int
    warnings: List[str] = field(default_factory=list)
    placed: List[str] = field(default_factory=list)
    outcomes: List[ApplyOutcome] = field(default_factory=list)

    @property
    def verified(self) -> List[str]:
        return [t.tag for t in self.checklist if t.status == "verified"]

    @property
    def failed(self) -> List[str]:
        return [t.tag for t in self.checklist if t.status == "failed"]


def extract_found_tags(document: MarkupDocument) -> Dict[str, List[FoundTag]]:
    """Every tag occurrence in the buffer, with its cell and surrounding text."""
    found: Dict[str, List[FoundTag]] = {}
    nodes = document.nodes
    for position, node in enumerate(nodes):
        if not node.has_existing_tag:
            continue
        previous = nodes[position - 1].text if position > 0 else ""
        context = strip_tags(f"{previous} {node.text}")
        for match in TAG_PATTERN.finditer(node.text):
            found.setdefault(match.group(1), []).append(FoundTag(
                tag=match.group(1),
                node_index=node.index,
                table_index=node.table_index,
                row_index=node.row_index,
                column_index=node.column_index,
                context=context,
            ))
    return found


def semantic_match(label: str, context: str) -> bool:
    """True when the context shares at least min(2, n) keywords with the label."""
    if len(label) < 5:
        return True
    keywords = extract_keywords(label)
    lowered = context.lower()
    hits = sum(1 for k in keywords if k in lowered)
    return hits >= min(2, len(keywords))


def satisfaction_score(verified: int, expected: int) -> int:
    if not expected:
        return 0
    return int(verified * 100 / expected + 0.5)


class RepairController:
    """Per-section repair iterations followed by one whole-document verification."""

    def __init__(
        self,
        checklist: List[ExpectedTag],
        adapter: MatchingOracleAdapter,
        config: MappingConfig,
        context: RunContext,
    ):
        self.checklist = checklist
        self.adapter = adapter
        self.config = config
        self.context = context
        self.fallback = PatternFallbackMatcher(config.min_keyword_score)
        self.iterations = 0
        self.placed: Set[str] = set()
        self.outcomes: List[ApplyOutcome] = []
        self.xml = ""

    def run(self, xml: str) -> AgentResult:
        self.xml = xml
        self._sync_statuses(self.context.parse(self.xml))

        for section, tags in self._sections().items():
            self._repair_section(section, tags)

        document = self.context.parse(self.xml)
        issues = self.verify(document)
        verified = sum(1 for t in self.checklist if t.status == "verified")
        satisfaction = satisfaction_score(verified, len(self.checklist))
        success = satisfaction >= self.config.satisfaction_threshold

        warnings = [f"Markup check: {problem}" for problem in validate_markup(self.xml)]
        for warning in warnings:
            self._log(f"  ⚠ {warning}")
        self.context.log_action(
            "verify",
            f"{verified}/{len(self.checklist)} verified, satisfaction {satisfaction}%, {len(issues)} issue(s)",
            result="success" if success else ("partial" if verified else "failed"),
        )
        self._log(f"Satisfaction: {satisfaction}% ({verified}/{len(self.checklist)})")
        return AgentResult(
            xml=self.xml,
            checklist=self.checklist,
            issues=issues,
            satisfaction=satisfaction,
            success=success,
            iterations=self.iterations,
            warnings=warnings,
            placed=sorted(self.placed),
            outcomes=list(self.outcomes),
        )

    def _sections(self) -> "OrderedDict[str, List[ExpectedTag]]":
        grouped: "OrderedDict[str, List[ExpectedTag]]" = OrderedDict()
        for item in self.checklist:
            grouped.setdefault(item.expected_location.section or UNKNOWN_SECTION, []).append(item)
        return grouped

    def _sync_statuses(self, document: MarkupDocument) -> None:
        found = extract_found_tags(document)
        for item in self.checklist:
            hits = found.get(item.tag)
            if hits and item.status in ("pending", "failed"):
                item.status = "placed"
                item.placed_at = hits[0].node_index

    def _repair_section(self, section: str, tags: List[ExpectedTag]) -> None:
        feedback: List[str] = []
        for iteration in range(1, self.config.max_iterations_per_section + 1):
            missing = [t for t in tags if t.status in ("pending", "failed")]
            if not missing:
                self.context.log_action("observe", f"section {section} complete", section=section, iteration=iteration)
                return

            self.iterations += 1
            self.context.iteration = self.iterations
            document = self.context.parse(self.xml)
            candidates = self._section_nodes(document, section, missing)
            self._log(f"Section {section} iteration {iteration}: {len(missing)} missing, {len(candidates)} candidate(s)")
            self.context.log_action(
                "think",
                f"{len(missing)} missing tag(s): {', '.join(t.tag for t in missing)}",
                section=section,
            )
            if not candidates:
                self.context.log_action("observe", "no candidate paragraphs", result="failed", section=section)
                return

            matches = self._ask_oracle(section, missing, candidates, iteration, feedback)
            if not matches:
                matches = self.fallback.match(missing, candidates)
                self.context.fallback_uses += 1
                self.context.log_action(
                    "correct",
                    f"fallback matcher proposed {len(matches)} match(es)",
                    result="success" if matches else "failed",
                    section=section,
                )
            if not matches:
                feedback.append("no usable placement was found in the previous attempt")
                continue

            applicator = TagApplicator(document)
            outcomes = applicator.apply(matches)
            self.xml = document.xml
            self._record(outcomes)
            feedback = [
                f"{o.tag} could not be placed at idx {self._relative(candidates, o.target_paragraph_index)}: {o.reason}"
                for o in outcomes if not o.success
            ]
            placed = sum(1 for o in outcomes if o.success)
            self.context.log_action(
                "apply_tags",
                f"{placed}/{len(outcomes)} placement(s) applied",
                result="success" if placed == len(outcomes) else ("partial" if placed else "failed"),
                section=section,
            )

    @staticmethod
    def _relative(candidates: List[ParagraphNode], index: int):
        for position, node in enumerate(candidates):
            if node.index == index:
                return position
        return "?"

    def _section_nodes(self, document: MarkupDocument, section: str, missing: List[ExpectedTag]) -> List[ParagraphNode]:
        """Untagged nodes of the section (whole document when the section is unknown there)."""
        free = [n for n in document.nodes if not n.has_existing_tag]
        scoped = [n for n in free if section != UNKNOWN_SECTION and n.section_id == section]
        nodes = scoped or free

        limit = self.config.max_section_paragraphs
        if len(nodes) <= limit:
            return nodes

        keywords = [extract_keywords(t.template_context.label_before) for t in missing]
        cells = {
            (t.expected_location.table_index, t.expected_location.row_index, t.expected_location.column_index)
            for t in missing if t.expected_location.table_index is not None
        }

        def rank(node: ParagraphNode) -> int:
            if (node.table_index, node.row_index, node.column_index) in cells:
                return 2
            if ends_with_colon(node.text) or any(keyword_score(k, node.text) for k in keywords):
                return 1
            return 0

        kept = sorted(nodes, key=lambda n: (-rank(n), n.index))[:limit]
        return sorted(kept, key=lambda n: n.index)

    def _ask_oracle(
        self,
        section: str,
        missing: List[ExpectedTag],
        candidates: List[ParagraphNode],
        iteration: int,
        feedback: List[str],
    ) -> List[MatchResult]:
        tables = sorted({n.table_index for n in candidates if n.table_index is not None})
        relative_tables = {absolute: rel for rel, absolute in enumerate(tables)}
        prompt = build_section_prompt(
            section, missing, candidates, relative_tables, iteration,
            preview_chars=self.config.section_preview_chars,
            feedback=feedback,
        )
        result = self.adapter.request_matches(
            prompt,
            label=f"section_{section}_{iteration}",
            min_confidence=self.config.section_min_confidence,
            envelopes=("placements", "matches", "tags"),
            known_tags={t.tag for t in missing},
        )
        matches: List[MatchResult] = []
        for match in result.unwrap_or([]):
            if match.target_paragraph_index >= len(candidates):
                self._log(f"  Dropped candidate: {match.tag}: section idx {match.target_paragraph_index} out of range")
                continue
            absolute = candidates[match.target_paragraph_index].index
            matches.append(match.model_copy(update={"target_paragraph_index": absolute}))
        return matches

    def _record(self, outcomes: List[ApplyOutcome]) -> None:
        self.outcomes.extend(outcomes)
        by_tag = {t.tag: t for t in self.checklist}
        for outcome in outcomes:
            item = by_tag.get(outcome.tag)
            if item is not None and outcome.success:
                item.status = "placed"
                item.placed_at = outcome.target_paragraph_index
                self.placed.add(outcome.tag)

    def verify(self, document: MarkupDocument) -> List[AgentIssue]:
        """Classify every checklist entry against the tags actually in the buffer."""
        found = extract_found_tags(document)
        issues: List[AgentIssue] = []

        for item in self.checklist:
            hits = found.get(item.tag, [])
            loc = item.expected_location
            if not hits:
                item.status = "failed"
                issues.append(AgentIssue(
                    type="missing_tag",
                    severity="critical",
                    tag=item.tag,
                    description=f"{item.full_token} was not placed",
                    suggested_fix=f'place it near "{loc.near_text}"' if loc.near_text else None,
                ))
                continue

            if len(hits) > 1:
                issues.append(AgentIssue(
                    type="duplicate",
                    severity="warning",
                    tag=item.tag,
                    description=f"{item.full_token} appears {len(hits)} times",
                ))

            hit = hits[0]
            item.placed_at = hit.node_index
            if loc.type == "table_cell" and loc.table_index is not None:
                expected = (loc.table_index, loc.row_index, loc.column_index)
                actual = (hit.table_index, hit.row_index, hit.column_index)
                if actual != expected:
                    # counted as verified; reported for review
                    issues.append(AgentIssue(
                        type="wrong_position",
                        severity="warning",
                        tag=item.tag,
                        description=f"{item.full_token} expected at T{expected[0]}R{expected[1]}C{expected[2]}, "
                                    f"found at node #{hit.node_index} {actual}",
                    ))
            elif loc.type == "text":
                label = item.template_context.label_before
                if len(label) > 10 and not semantic_match(label, hit.context):
                    issues.append(AgentIssue(
                        type="semantic_mismatch",
                        severity="info",
                        tag=item.tag,
                        description=f'{item.full_token} context "{hit.context[:60]}" differs from label "{label[:60]}"',
                    ))
            item.status = "verified"

        for item in self.checklist:
            loc = item.expected_location
            if item.status not in ("pending", "failed") or loc.type != "table_cell" or loc.table_index is None:
                continue
            cell = document.cell_node(loc.table_index, loc.row_index, loc.column_index)
            if cell is not None and len(cell.text.strip()) < 5 and not cell.has_existing_tag:
                issues.append(AgentIssue(
                    type="empty_cell",
                    severity="critical",
                    tag=item.tag,
                    description=f"cell T{loc.table_index}R{loc.row_index}C{loc.column_index} is still empty",
                    suggested_fix=f"insert {item.full_token} with the table_cell strategy",
                ))

        for issue in issues:
            self.context.log_action("observe", f"{issue.type}: {issue.description}", result="failed" if issue.severity == "critical" else "partial")
        return issues

    def _log(self, message: str) -> None:
        print(f"[Agent] {message}")
