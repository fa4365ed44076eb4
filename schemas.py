from typing import Any, Dict, List, Literal, Optional
from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, StrictBool, StrictInt, confloat, field_validator,
)

from textutils import unwrap_tag


TagType = Literal["text", "date", "checkbox", "table_cell"]
InsertionStrategy = Literal["after_colon", "replace_empty", "inline", "checkbox", "table_cell"]
TagStatus = Literal["pending", "placed", "verified", "failed"]
IssueType = Literal["missing_tag", "wrong_position", "empty_cell", "duplicate", "semantic_mismatch"]
Severity = Literal["critical", "warning", "info"]
ActionType = Literal["analyze", "think", "call_llm", "apply_tags", "observe", "verify", "correct"]
ActionResult = Literal["success", "partial", "failed"]
SegmentType = Literal["table", "section", "page"]

INSERTION_STRATEGIES = ("after_colon", "replace_empty", "inline", "checkbox", "table_cell")

# Oracle confidences: finite, in [0, 1], bools rejected
Confidence = confloat(ge=0.0, le=1.0, strict=True, allow_inf_nan=False)


def normalize_insertion_point(value: Any) -> str:
    if isinstance(value, str):
        point = value.strip().lower()
        if point in INSERTION_STRATEGIES:
            return point
    return "after_colon"


def _text_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


# 1. TEMPLATE CONTEXT
class TagContext(BaseModel):
    """One placeholder occurrence in the reference document."""
    tag: str = Field(..., description="Tag name without braces (e.g. 'SIRET')")
    full_token: str = Field(..., description="Tag with braces (e.g. '{{SIRET}}')")
    label_before: str = Field("", description="Label preceding the tag, with semantic hints")
    label_after: str = Field("", description="Text following the tag in the same paragraph")
    section: str = Field("", description="Lettered section the tag belongs to")
    type: TagType = "text"
    paragraph_index: Optional[int] = Field(None, description="Node index in the reference document (None for data fields)")
    table_index: Optional[int] = None
    row_index: Optional[int] = None
    column_index: Optional[int] = None
    row_header: Optional[str] = None
    column_header: Optional[str] = None

    @property
    def in_table(self) -> bool:
        return self.table_index is not None


class DataField(BaseModel):
    """One leaf of a caller-supplied data structure (``client.nom`` -> ``CLIENT_NOM``)."""
    key: str
    path: str
    tag: str


# 2. CHECKLIST
class ExpectedLocation(BaseModel):
    type: Literal["text", "table_cell"] = "text"
    table_index: Optional[int] = None
    row_index: Optional[int] = None
    column_index: Optional[int] = None
    near_text: Optional[str] = None
    section: Optional[str] = None


class ExpectedTag(BaseModel):
    """Checklist entry, one per distinct tag of the reference document."""
    tag: str
    full_token: str
    expected_location: ExpectedLocation
    template_context: TagContext
    status: TagStatus = "pending"
    placed_at: Optional[int] = Field(None, description="Target node index once placed")


# 3. MATCHING
class MatchResult(BaseModel):
    tag: str
    target_paragraph_index: int = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    insertion_strategy: InsertionStrategy = "after_colon"
    reason: Optional[str] = None
    source: Literal["oracle", "fallback"] = "oracle"


class MatchCandidate(BaseModel):
    """One placement exactly as the oracle proposed it, before any floor applies."""
    tag: str
    target_paragraph_index: StrictInt = Field(
        ..., ge=0, validation_alias=AliasChoices("targetIdx", "targetParagraphIndex"),
    )
    confidence: Confidence
    insertion_strategy: InsertionStrategy = Field(
        "after_colon", validation_alias=AliasChoices("insertionPoint", "insertionStrategy"),
    )
    reason: Optional[str] = None

    @field_validator("tag", mode="before")
    @classmethod
    def _unwrap_tag(cls, value: Any) -> str:
        if not isinstance(value, str) or not unwrap_tag(value):
            raise ValueError("missing or empty tag")
        return unwrap_tag(value)

    @field_validator("insertion_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> str:
        return normalize_insertion_point(value)

    @field_validator("reason", mode="before")
    @classmethod
    def _reason(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    def to_match(self) -> "MatchResult":
        return MatchResult(**self.model_dump())


class ApplyOutcome(BaseModel):
    tag: str
    target_paragraph_index: int
    success: bool
    strategy_used: Optional[InsertionStrategy] = None
    reason: Optional[str] = None


# 4. SEGMENTS
class SegmentMetadata(BaseModel):
    has_financial_data: bool = False
    has_contact_info: bool = False
    has_identification: bool = False
    has_legal_info: bool = False
    has_dates: bool = False


class Segment(BaseModel):
    id: str
    type: SegmentType
    section_letter: Optional[str] = None
    table_index: Optional[int] = None
    text: str = ""
    range_start: int
    range_end: int
    node_indices: List[int] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: SegmentMetadata = Field(default_factory=SegmentMetadata)
    relevance_score: float = 0.0


class SegmentPair(BaseModel):
    template: Segment
    target: Segment
    score: float


# 5. VERIFICATION
class AgentIssue(BaseModel):
    type: IssueType
    severity: Severity
    tag: Optional[str] = None
    description: str
    suggested_fix: Optional[str] = None


class AgentAction(BaseModel):
    """One step of the structured trace."""
    type: ActionType
    iteration: int = 0
    timestamp: float
    details: str
    result: ActionResult = "success"
    section: Optional[str] = None


# 6. CHECKBOXES
class CheckboxInfo(BaseModel):
    index: int
    kind: Literal["unicode", "form_control", "content_control"]
    checked: bool
    label: str = ""
    context: str = Field("", description="Paragraph text around the checkbox")
    node_index: Optional[int] = None
    position: int = Field(..., description="Offset of the glyph or control in the buffer")
    glyph: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class CheckboxPair(BaseModel):
    question: str
    yes: CheckboxInfo
    no: CheckboxInfo
    value: Optional[bool] = None


class CheckboxDecision(BaseModel):
    target_index: int
    should_be_checked: bool
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    reason: Optional[str] = None
    source: Literal["template", "oracle"] = "template"


class CheckboxDecisionCandidate(BaseModel):
    """One checkbox decision exactly as the oracle proposed it."""
    target_index: StrictInt = Field(..., ge=0, validation_alias=AliasChoices("targetIndex", "targetIdx", "idx"))
    should_be_checked: StrictBool = Field(..., validation_alias=AliasChoices("shouldBeChecked", "checked"))
    confidence: Confidence
    reason: Optional[str] = None

    @field_validator("reason", mode="before")
    @classmethod
    def _reason(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    def to_decision(self) -> "CheckboxDecision":
        return CheckboxDecision(**self.model_dump(), source="oracle")


class CheckboxStats(BaseModel):
    mode: str = "template"
    template_count: int = 0
    target_count: int = 0
    pairs: int = 0
    decisions: int = 0
    applied: int = 0


# 7. REPORT
class MappingReport(BaseModel):
    """Per-document report handed back to the caller."""
    success: bool
    satisfaction: int = Field(..., ge=0, le=100)
    strategy: str = "document"
    source_filename: Optional[str] = None
    output_filename: Optional[str] = None
    document_type: Optional[str] = None
    fields_provided: Optional[int] = None
    tags_expected: int = 0
    tags_placed: int = 0
    tags_verified: int = 0
    tags_failed: int = 0
    applied_tags: List[str] = Field(default_factory=list)
    failed_tags: List[str] = Field(default_factory=list)
    issues: List[AgentIssue] = Field(default_factory=list)
    checkboxes: CheckboxStats = Field(default_factory=CheckboxStats)
    data_structure: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    iterations: int = 0
    trace: Optional[List[AgentAction]] = None
    mapping_details: Optional[List[ApplyOutcome]] = None
