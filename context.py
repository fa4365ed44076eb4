"""Per-run state passed through the pipeline instead of module-level caches."""

import hashlib
import time
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from document import MarkupDocument
from nodes import MAX_PARAGRAPHS, ParagraphNode
from schemas import AgentAction
from topology import TableInfo


class RunContext:
    """Paragraph-extraction memo, action trace and counters for one document.

    The batch runner resets it before every item and once more when the batch
    ends, so node ranges computed for one document never leak into the next.
    """

    def __init__(self, max_paragraphs: int = MAX_PARAGRAPHS):
        self.max_paragraphs = max_paragraphs
        self._paragraph_cache: Dict[str, Tuple[List[ParagraphNode], List[TableInfo]]] = {}
        self.trace: List[AgentAction] = []
        self.oracle_calls = 0
        self.fallback_uses = 0
        self.iteration = 0
        self.cache_hits = 0

    def parse(self, xml: str) -> MarkupDocument:
        """MarkupDocument for ``xml``; nodes are fresh copies, safe to mutate."""
        key = hashlib.sha1(xml.encode("utf-8")).hexdigest()
        cached = self._paragraph_cache.get(key)
        if cached is None:
            document = MarkupDocument.parse(xml, self.max_paragraphs)
            cached = ([replace(n) for n in document.nodes], document.tables)
            self._paragraph_cache[key] = cached
        else:
            self.cache_hits += 1
        nodes, tables = cached
        return MarkupDocument(xml, [replace(n) for n in nodes], tables)

    def log_action(
        self,
        action_type: str,
        details: str,
        result: str = "success",
        section: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> AgentAction:
        action = AgentAction(
            type=action_type,
            iteration=self.iteration if iteration is None else iteration,
            timestamp=time.time(),
            details=details,
            result=result,
            section=section,
        )
        self.trace.append(action)
        return action

    def actions(self, action_type: str) -> List[AgentAction]:
        return [a for a in self.trace if a.type == action_type]

    @property
    def cache_size(self) -> int:
        return len(self._paragraph_cache)

    def reset(self) -> None:
        """Forget everything from the previous document."""
        self._paragraph_cache.clear()
        self.trace = []
        self.oracle_calls = 0
        self.fallback_uses = 0
        self.iteration = 0
        self.cache_hits = 0
