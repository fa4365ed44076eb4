"""Mapping pipeline orchestration."""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple
import time

from agent import AgentResult, RepairController
from applicator import TagApplicator
from archive import DocxPackage
from checkbox import CheckboxProcessor
from config import MappingConfig, DEFAULT_CONFIG
from context import RunContext
from document import MarkupDocument
from errors import ArchiveError, MappingError, TemplateError
from fallback import PatternFallbackMatcher
from nodes import ParagraphNode
from oracle import MatchingOracleAdapter, Oracle
from prompts import build_matching_prompt
from schemas import ApplyOutcome, CheckboxStats, DataField, ExpectedTag, MappingReport, MatchResult, TagContext
from segmenter import pair_segments, segment_document
from tag_context import (
    build_checklist, contexts_from_fields, extract_tag_contexts, flatten_data_structure, generate_data_structure,
)

__all__ = [
    "ArchiveError", "MappingError", "TemplateError",
    "PipelineMetrics", "PipelineResult", "MappingPipeline", "DataStructurePipeline",
    "BatchItem", "map_document", "map_data_structure", "run_batch", "run_data_batch", "output_name",
]

MIN_PROMPT_NODES = 20


@dataclass
class PipelineMetrics:
    """Metrics collected during mapping."""
    template_nodes: int = 0
    target_nodes: int = 0
    tags_expected: int = 0
    segments: int = 0
    segment_pairs: int = 0
    oracle_calls: int = 0
    fallback_uses: int = 0
    iterations: int = 0
    cache_hits: int = 0
    duration_seconds: float = 0.0
    strategy_used: str = ""


@dataclass
class PipelineResult:
    """Result of the mapping pipeline."""
    xml: str
    report: MappingReport
    metrics: PipelineMetrics
    warnings: List[str] = field(default_factory=list)


def output_name(source_filename: str) -> str:
    return f"{Path(source_filename).stem}_TEMPLATE.docx"


class MappingPipeline:

    def __init__(
        self,
        template_xml: str,
        target_xml: str,
        oracle: Oracle,
        config: MappingConfig = DEFAULT_CONFIG,
        context: Optional[RunContext] = None,
        source_filename: Optional[str] = None,
        output_filename: Optional[str] = None,
    ):
        self.template_xml = template_xml
        self.target_xml = target_xml
        self.config = config
        self.context = context or RunContext(config.max_paragraphs)
        self.adapter = MatchingOracleAdapter(oracle, config, self.context)
        self.fallback = PatternFallbackMatcher(config.min_keyword_score)
        self.source_filename = source_filename
        self.output_filename = output_filename
        self.metrics = PipelineMetrics()
        self.warnings: List[str] = []

        # Intermediate state
        self._contexts: List[TagContext] = []
        self._checklist: List[ExpectedTag] = []
        self._initial_placed: Set[str] = set()
        self._initial_outcomes: List[ApplyOutcome] = []
        self._template: Optional[MarkupDocument] = None

    def run(self) -> PipelineResult:
        """Execute the full mapping pipeline."""
        start_time = time.time()

        try:
            # Step 1: Template analysis
            self._analyze_template()

            # Step 2: Initial placement pass
            target = self.context.parse(self.target_xml)
            self.metrics.target_nodes = len(target)
            self._log(f"Target: {len(target)} paragraph node(s), {len(target.tables)} table(s)")
            xml = self._initial_pass(target)

            # Step 3: Verification and repair
            self._log("Verifying and repairing...")
            agent = RepairController(self._checklist, self.adapter, self.config, self.context).run(xml)
            self.warnings.extend(agent.warnings)

            # Step 4: Checkboxes
            xml, checkbox_stats = self._transfer_checkboxes(agent.xml)

            self._finalize_metrics(start_time, agent)
            report = self._build_report(agent, checkbox_stats)
            self._log(
                f"Done: {report.tags_verified}/{report.tags_expected} verified, "
                f"satisfaction {report.satisfaction}% in {self.metrics.duration_seconds:.1f}s"
            )
            return PipelineResult(xml=xml, report=report, metrics=self.metrics, warnings=self.warnings)

        except MappingError as e:
            self.metrics.duration_seconds = time.time() - start_time
            if e.metrics is None:
                e.metrics = self.metrics
            raise
        except Exception as e:
            self.metrics.duration_seconds = time.time() - start_time
            raise MappingError(f"Pipeline failed: {e}", metrics=self.metrics) from e

    def _analyze_template(self) -> None:
        self._template = self.context.parse(self.template_xml)
        self.metrics.template_nodes = len(self._template)
        self._contexts = extract_tag_contexts(self._template, self.config.label_lookback)
        if not self._contexts:
            raise TemplateError("No {{TAG}} placeholders found in the template")

        self._checklist = build_checklist(self._contexts)
        self.metrics.tags_expected = len(self._checklist)
        self.context.log_action(
            "analyze",
            f"{len(self._contexts)} placeholder(s), {len(self._checklist)} distinct tag(s) "
            f"in {len(self._template)} template node(s)",
        )
        self._log(f"Template: {len(self._checklist)} tag(s) across {len(self._template)} node(s)")

    def _initial_pass(self, target: MarkupDocument) -> str:
        """Segment-scoped (large targets) or whole-document matching, then one applicator pass."""
        applicator = TagApplicator(target)
        use_segments = self.config.use_segmentation and len(target) >= self.config.segmentation_min_nodes

        if use_segments:
            self._segmented_pass(target, applicator)
        else:
            self.metrics.strategy_used = "document"
            self._log("Mode: whole document")
            candidates = [n for n in target.nodes if not n.has_existing_tag]
            self._match_scope("document", self._unique_contexts(self._contexts), candidates, applicator)

        self._initial_outcomes = list(applicator.outcomes)
        by_tag = {t.tag: t for t in self._checklist}
        for outcome in applicator.outcomes:
            if outcome.success and outcome.tag in by_tag:
                by_tag[outcome.tag].status = "placed"
                by_tag[outcome.tag].placed_at = outcome.target_paragraph_index
                self._initial_placed.add(outcome.tag)
        self.context.log_action(
            "apply_tags",
            f"initial pass placed {len(applicator.applied)}/{len(self._checklist)} tag(s)",
            result="success" if len(applicator.applied) == len(self._checklist) else (
                "partial" if applicator.applied else "failed"),
        )
        return target.xml

    def _segmented_pass(self, target: MarkupDocument, applicator: TagApplicator) -> None:
        template_plan = segment_document(
            self._template, self.config.min_segment_size, self.config.merge_segment_size
        )
        target_plan = segment_document(target, self.config.min_segment_size, self.config.merge_segment_size)
        pairs, warnings = pair_segments(
            template_plan.segments, target_plan.segments, self.config.segment_match_threshold
        )
        self.warnings.extend(warnings)
        self.metrics.strategy_used = f"segments:{target_plan.strategy}"
        self.metrics.segments = len(target_plan.segments)
        self.metrics.segment_pairs = len(pairs)
        self._log(f"Mode: segmented ({len(pairs)} pair(s) over {len(target_plan.segments)} target segment(s))")
        for warning in warnings:
            self._log(f"  ⚠ {warning}")

        for pair in pairs:
            wanted = set(pair.template.tags) - applicator.used_tags
            contexts = [c for c in self._unique_contexts(self._contexts) if c.tag in wanted]
            contexts = contexts[:self.config.max_segment_tag_contexts]
            candidates = [
                target.nodes[i] for i in pair.target.node_indices
                if not target.nodes[i].has_existing_tag
            ][:self.config.max_segment_paragraphs]
            self._match_scope(
                f"segment_{pair.template.id}_{pair.target.id}", contexts, candidates, applicator, scope="segment"
            )

    def _match_scope(
        self,
        label: str,
        contexts: List[TagContext],
        candidates: List[ParagraphNode],
        applicator: TagApplicator,
        scope: str = "document",
    ) -> None:
        if not contexts or not candidates:
            return

        candidates = candidates[:self.config.max_prompt_nodes]
        prompt = self._matching_prompt(contexts, candidates, scope)
        while len(prompt) > self.config.prompt_char_budget and len(candidates) > MIN_PROMPT_NODES:
            candidates = candidates[:max(MIN_PROMPT_NODES, int(len(candidates) * 0.8))]
            prompt = self._matching_prompt(contexts, candidates, scope)

        allowed = {n.index for n in candidates}
        result = self.adapter.request_matches(prompt, label, known_tags={c.tag for c in contexts})
        matches: List[MatchResult] = []
        for match in result.unwrap_or([]):
            if match.target_paragraph_index not in allowed:
                self._log(f"  Dropped candidate: {match.tag}: idx {match.target_paragraph_index} not in scope")
                continue
            matches.append(match)

        if not matches:
            by_tag = {t.tag: t for t in self._checklist}
            expected = [by_tag[c.tag] for c in contexts if c.tag in by_tag]
            matches = self.fallback.match(expected, candidates)
            self.context.fallback_uses += 1
            self.context.log_action(
                "correct",
                f"{label}: fallback matcher proposed {len(matches)} match(es)",
                result="success" if matches else "failed",
            )
        applicator.apply(matches)

    def _transfer_checkboxes(self, xml: str) -> Tuple[str, CheckboxStats]:
        return CheckboxProcessor(self.config, self.context, self.adapter).run(self.template_xml, xml)

    def _matching_prompt(self, contexts: List[TagContext], candidates: List[ParagraphNode], scope: str) -> str:
        return build_matching_prompt(
            contexts, candidates, self.config.node_preview_chars, scope, self.config.document_type
        )

    @staticmethod
    def _unique_contexts(contexts: Sequence[TagContext]) -> List[TagContext]:
        seen: Dict[str, TagContext] = {}
        for ctx in contexts:
            seen.setdefault(ctx.tag, ctx)
        return list(seen.values())

    def _finalize_metrics(self, start_time: float, agent: AgentResult) -> None:
        self.metrics.oracle_calls = self.context.oracle_calls
        self.metrics.fallback_uses = self.context.fallback_uses
        self.metrics.iterations = agent.iterations
        self.metrics.cache_hits = self.context.cache_hits
        self.metrics.duration_seconds = time.time() - start_time

    def _build_report(self, agent: AgentResult, checkbox_stats: CheckboxStats) -> MappingReport:
        placed = self._initial_placed | set(agent.placed)
        return MappingReport(
            success=agent.success,
            satisfaction=agent.satisfaction,
            strategy=self.metrics.strategy_used,
            source_filename=self.source_filename,
            output_filename=self.output_filename or (
                output_name(self.source_filename) if self.source_filename else None
            ),
            document_type=self.config.document_type,
            tags_expected=len(self._checklist),
            tags_placed=len(placed),
            tags_verified=len(agent.verified),
            tags_failed=len(agent.failed),
            applied_tags=agent.verified,
            failed_tags=agent.failed,
            issues=agent.issues,
            checkboxes=checkbox_stats,
            data_structure=generate_data_structure([t.tag for t in self._checklist]),
            warnings=list(self.warnings),
            iterations=agent.iterations,
            trace=list(self.context.trace) if self.config.include_trace else None,
            mapping_details=self._initial_outcomes + agent.outcomes if self.config.include_trace else None,
        )

    def _log(self, message: str) -> None:
        """Log a message."""
        print(f"[Mapper] {message}")


class DataStructurePipeline(MappingPipeline):
    """Places tags derived from a caller's data structure instead of a reference document.

    ``{"client": {"nom": ""}}`` expects ``{{CLIENT_NOM}}``. Matching is whole
    document only and checkboxes are left alone: there is no reference
    document to segment or copy states from.
    """

    def __init__(
        self,
        data: Dict[str, Any],
        target_xml: str,
        oracle: Oracle,
        config: MappingConfig = DEFAULT_CONFIG,
        context: Optional[RunContext] = None,
        source_filename: Optional[str] = None,
        output_filename: Optional[str] = None,
    ):
        super().__init__(
            "", target_xml, oracle, replace(config, use_segmentation=False),
            context, source_filename, output_filename,
        )
        self.data = data
        self._fields: List[DataField] = []

    def _analyze_template(self) -> None:
        if not isinstance(self.data, dict):
            raise TemplateError("The data structure must be a JSON object")
        self._fields = flatten_data_structure(self.data)
        self._contexts = contexts_from_fields(self._fields)
        if not self._contexts:
            raise TemplateError("No fields found in the data structure")

        self._checklist = build_checklist(self._contexts)
        self.metrics.tags_expected = len(self._checklist)
        self.context.log_action(
            "analyze", f"{len(self._fields)} field(s), {len(self._checklist)} distinct tag(s) from the data structure"
        )
        self._log(f"Data structure: {len(self._checklist)} tag(s) from {len(self._fields)} field(s)")

    def _transfer_checkboxes(self, xml: str) -> Tuple[str, CheckboxStats]:
        return xml, CheckboxStats(mode="off")

    def _build_report(self, agent: AgentResult, checkbox_stats: CheckboxStats) -> MappingReport:
        report = super()._build_report(agent, checkbox_stats)
        report.fields_provided = len(self._fields)
        report.data_structure = generate_data_structure(agent.verified)
        return report


def map_document(
    template_bytes: bytes,
    target_bytes: bytes,
    oracle: Oracle,
    config: MappingConfig = DEFAULT_CONFIG,
    context: Optional[RunContext] = None,
    source_filename: Optional[str] = None,
    output_filename: Optional[str] = None,
) -> Tuple[bytes, PipelineResult]:
    """Map one target archive; returns the rewritten archive and the pipeline result."""
    template = DocxPackage.from_bytes(template_bytes, name="template")
    target = DocxPackage.from_bytes(target_bytes, name=source_filename or "target")
    result = MappingPipeline(
        template.xml, target.xml, oracle, config, context, source_filename, output_filename
    ).run()
    return target.with_document(result.xml), result


def map_data_structure(
    data: Dict[str, Any],
    target_bytes: bytes,
    oracle: Oracle,
    config: MappingConfig = DEFAULT_CONFIG,
    context: Optional[RunContext] = None,
    source_filename: Optional[str] = None,
    output_filename: Optional[str] = None,
) -> Tuple[bytes, PipelineResult]:
    """Tag one target archive from a data structure's field paths."""
    target = DocxPackage.from_bytes(target_bytes, name=source_filename or "target")
    result = DataStructurePipeline(
        data, target.xml, oracle, config, context, source_filename, output_filename
    ).run()
    return target.with_document(result.xml), result


@dataclass
class BatchItem:
    name: str
    output: Optional[bytes] = None
    result: Optional[PipelineResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


MapOne = Callable[[bytes, RunContext, str, Optional[str]], Tuple[bytes, PipelineResult]]


def _run_items(
    items: Sequence[Tuple[str, bytes]],
    map_one: MapOne,
    config: MappingConfig,
    continue_on_failure: bool,
    context: Optional[RunContext],
    output_filename: Optional[str],
) -> List[BatchItem]:
    if output_filename and len(items) > 1:
        raise ValueError("An output filename can only be given for a single document")
    context = context or RunContext(config.max_paragraphs)
    results: List[BatchItem] = []
    try:
        for position, (name, data) in enumerate(items, 1):
            context.reset()
            print(f"[Mapper] [{position}/{len(items)}] {name}")
            try:
                output, result = map_one(data, context, name, output_filename)
            except Exception as e:
                if not continue_on_failure:
                    raise
                print(f"[Mapper] ✗ {name}: {type(e).__name__}: {e}")
                results.append(BatchItem(name=name, error=f"{type(e).__name__}: {e}"))
                continue
            results.append(BatchItem(name=name, output=output, result=result))
    finally:
        context.reset()
    return results


def run_batch(
    template_bytes: bytes,
    items: Sequence[Tuple[str, bytes]],
    oracle: Oracle,
    config: MappingConfig = DEFAULT_CONFIG,
    continue_on_failure: bool = False,
    context: Optional[RunContext] = None,
    output_filename: Optional[str] = None,
) -> List[BatchItem]:
    """Map ``(name, archive bytes)`` items one after another against one template.

    The run context is reset before every item and once more when the batch
    ends. Without ``continue_on_failure`` the first failure aborts the batch.
    """
    def map_one(data, ctx, name, out):
        return map_document(template_bytes, data, oracle, config, ctx, name, out)

    return _run_items(items, map_one, config, continue_on_failure, context, output_filename)


def run_data_batch(
    data: Dict[str, Any],
    items: Sequence[Tuple[str, bytes]],
    oracle: Oracle,
    config: MappingConfig = DEFAULT_CONFIG,
    continue_on_failure: bool = False,
    context: Optional[RunContext] = None,
    output_filename: Optional[str] = None,
) -> List[BatchItem]:
    """Same batch rules as :func:`run_batch`, tags taken from ``data``."""
    def map_one(target, ctx, name, out):
        return map_data_structure(data, target, oracle, config, ctx, name, out)

    return _run_items(items, map_one, config, continue_on_failure, context, output_filename)
