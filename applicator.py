"""Position-tracked insertion of accepted matches into the live document."""

import re
from typing import Callable, Dict, List, Optional, Set, Tuple

from document import MarkupDocument
from markup import RUN_OPEN, escape_xml, replace_leaf_content, text_leaves
from nodes import ParagraphNode, node_text
from schemas import ApplyOutcome, MatchResult
from textutils import wrap_tag

DATE_PAIR = re.compile(r"(\bdu\s*)([.…_]+|\s{5,})(\s*au\s*)([.…_]+|\s{5,})", re.IGNORECASE)
DU_AU = re.compile(r"\bdu\s+au\b", re.IGNORECASE)
DU_WORD = re.compile(r"\bdu\b", re.IGNORECASE)
AU_WORD = re.compile(r"\bau\b", re.IGNORECASE)
TRAILING_COLON = re.compile(r":(\s*)$")
THREE_LETTERS = re.compile(r"[A-Za-zÀ-ÿ]{3}")
SELF_CLOSING_PARAGRAPH = re.compile(r"<w:p(\s[^>]*?)?/>")
PARAGRAPH_RUN_PROPS = re.compile(r"<w:pPr>.*?(<w:rPr>.*?</w:rPr>).*?</w:pPr>", re.DOTALL)

REPLACE_EMPTY_MAX = 5


def _new_run(token: str, markup: str = "") -> str:
    props = PARAGRAPH_RUN_PROPS.search(markup)
    run_props = props.group(1) if props else ""
    return f"<w:r>{run_props}<w:t>{escape_xml(token)}</w:t></w:r>"


def _fill_empty(markup: str, token: str) -> Optional[str]:
    """Put the token in the first text leaf, else the first run, else a new run."""
    leaves = text_leaves(markup)
    if leaves:
        return replace_leaf_content(markup, leaves[0], escape_xml(token))

    run = RUN_OPEN.search(markup)
    if run:
        run_close = markup.find("</w:r>", run.end())
        if run_close != -1:
            props_end = markup.find("</w:rPr>", run.end(), run_close)
            at = props_end + len("</w:rPr>") if props_end != -1 else run_close
            return markup[:at] + f"<w:t>{escape_xml(token)}</w:t>" + markup[at:]

    close = markup.rfind("</w:p>")
    if close == -1:
        return None
    return markup[:close] + _new_run(token, markup) + markup[close:]


def insert_after_colon(markup: str, token: str, text: str) -> Optional[str]:
    for leaf in reversed(text_leaves(markup)):
        content = leaf.group(2)
        if ":" not in content or "{{" in content:
            continue
        updated = TRAILING_COLON.sub(lambda m: f": {escape_xml(token)}{m.group(1)}", content, count=1)
        if updated != content:
            return replace_leaf_content(markup, leaf, updated)
        return None
    return None


def insert_replace_empty(markup: str, token: str, text: str) -> Optional[str]:
    if len(text.strip()) >= REPLACE_EMPTY_MAX:
        return None
    return _fill_empty(markup, token)


def insert_inline(markup: str, token: str, text: str) -> Optional[str]:
    for leaf in reversed(text_leaves(markup)):
        if "{{" in leaf.group(2):
            continue
        return replace_leaf_content(markup, leaf, f"{leaf.group(2)} {escape_xml(token)}")
    return None


def insert_table_cell(markup: str, token: str, text: str) -> Optional[str]:
    leaves = text_leaves(markup)
    if text.endswith("%"):
        for leaf in reversed(leaves):
            content = leaf.group(2)
            cut = content.rfind("%")
            if cut != -1:
                updated = content[:cut].rstrip() + f" {escape_xml(token)} " + content[cut:]
                return replace_leaf_content(markup, leaf, updated.lstrip())
    if not leaves or len(text) < 3:
        return _fill_empty(markup, token)
    if text.endswith(":"):
        return insert_after_colon(markup, token, text)
    if len(text) < 10 and not THREE_LETTERS.search(text):
        # filler such as dots or dashes
        return replace_leaf_content(markup, leaves[-1], escape_xml(token))
    return insert_inline(markup, token, text)


STRATEGIES: Dict[str, Callable[[str, str, str], Optional[str]]] = {
    "table_cell": insert_table_cell,
    "after_colon": insert_after_colon,
    "replace_empty": insert_replace_empty,
    "inline": insert_inline,
    "checkbox": insert_inline,
}


def strategy_chain(node: ParagraphNode, requested: str) -> List[str]:
    chain = ["table_cell"] if node.is_table_cell else []
    chain += [requested, "after_colon", "replace_empty", "inline"]
    return list(dict.fromkeys(chain))


def fill_synthetic_cell(markup: str, token: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    """Give an empty cell a paragraph holding the token; returns markup and the paragraph span."""
    run = _new_run(token)
    placeholder = SELF_CLOSING_PARAGRAPH.search(markup)
    if placeholder:
        paragraph = f"<w:p{placeholder.group(1) or ''}>{run}</w:p>"
        at = placeholder.start()
        return markup[:at] + paragraph + markup[placeholder.end():], (at, at + len(paragraph))
    close = markup.rfind("</w:tc>")
    if close == -1:
        return None
    paragraph = f"<w:p>{run}</w:p>"
    return markup[:close] + paragraph + markup[close:], (close, close + len(paragraph))


def insert_date_pair(markup: str, start_token: str, end_token: str) -> Optional[str]:
    """One edit placing both tokens of a start/end date pair."""
    leaves = text_leaves(markup)
    start_xml, end_xml = escape_xml(start_token), escape_xml(end_token)

    for leaf in leaves:
        match = DATE_PAIR.search(leaf.group(2))
        if match:
            content = leaf.group(2)
            filled = f"{match.group(1).rstrip()} {start_xml} {match.group(3).strip()} {end_xml}"
            return replace_leaf_content(markup, leaf, content[:match.start()] + filled + content[match.end():])

    for leaf in leaves:
        match = DU_AU.search(leaf.group(2))
        if match:
            content = leaf.group(2)
            filled = f"du {start_xml} au {end_xml}"
            return replace_leaf_content(markup, leaf, content[:match.start()] + filled + content[match.end():])

    du_leaf = next((i for i, leaf in enumerate(leaves) if DU_WORD.search(leaf.group(2))), None)
    if du_leaf is not None:
        au_leaf = next((i for i in range(du_leaf + 1, len(leaves)) if AU_WORD.search(leaves[i].group(2))), None)
        if au_leaf is not None:
            au = list(AU_WORD.finditer(leaves[au_leaf].group(2)))[-1]
            content = leaves[au_leaf].group(2)
            markup = replace_leaf_content(
                markup, leaves[au_leaf], content[:au.end()] + f" {end_xml}" + content[au.end():]
            )
            leaf = text_leaves(markup)[du_leaf]
            du = list(DU_WORD.finditer(leaf.group(2)))[-1]
            content = leaf.group(2)
            return replace_leaf_content(markup, leaf, content[:du.end()] + f" {start_xml}" + content[du.end():])

    for leaf in reversed(leaves):
        if "{{" not in leaf.group(2):
            return replace_leaf_content(markup, leaf, f"{leaf.group(2)} {start_xml} au {end_xml}")
    return None


def is_date_tag(tag: str) -> bool:
    return tag.endswith("_DEBUT") or tag.endswith("_FIN")


class TagApplicator:
    """Applies matches to a MarkupDocument, one guarded edit at a time.

    ``used_tags`` and ``modified`` span the applicator's lifetime (one pass).
    """

    def __init__(self, document: MarkupDocument):
        self.document = document
        self.used_tags: Set[str] = set()
        self.modified: Set[int] = set()
        self.outcomes: List[ApplyOutcome] = []

    @property
    def applied(self) -> List[str]:
        return [o.tag for o in self.outcomes if o.success]

    def apply(self, matches: List[MatchResult]) -> List[ApplyOutcome]:
        """Apply matches in descending paragraph order; returns this call's outcomes."""
        start = len(self.outcomes)
        ordered = sorted(matches, key=lambda m: m.target_paragraph_index, reverse=True)
        paired = self._apply_date_pairs(ordered)
        for match in ordered:
            if match.tag in paired:
                continue
            self._apply_one(match)
        return self.outcomes[start:]

    def _reject(self, match: MatchResult, reason: str, quiet: bool = False) -> None:
        if not quiet:
            self._log(f"  ✗ {match.tag} -> #{match.target_paragraph_index}: {reason}")
        self.outcomes.append(ApplyOutcome(
            tag=match.tag,
            target_paragraph_index=match.target_paragraph_index,
            success=False,
            reason=reason,
        ))

    def _precheck(self, match: MatchResult) -> Optional[str]:
        if match.tag in self.used_tags:
            return "tag already used in this pass"
        if wrap_tag(match.tag) in self.document.xml:
            return "tag already present in document"
        if self.document.node(match.target_paragraph_index) is None:
            return "paragraph not found"
        return None

    def _apply_date_pairs(self, matches: List[MatchResult]) -> Set[str]:
        by_tag = {m.tag: m for m in matches}
        paired: Set[str] = set()
        for match in matches:
            if not match.tag.endswith("_DEBUT"):
                continue
            partner = by_tag.get(match.tag[:-len("_DEBUT")] + "_FIN")
            if partner is None or partner.target_paragraph_index != match.target_paragraph_index:
                continue
            if self._precheck(match) or self._precheck(partner):
                continue
            node = self.document.node(match.target_paragraph_index)
            if node.synthetic:
                continue
            start_token, end_token = wrap_tag(match.tag), wrap_tag(partner.tag)
            updated = insert_date_pair(self.document.markup(node), start_token, end_token)
            if updated is None:
                continue
            text = node_text(updated)
            if start_token not in text or end_token not in text:
                continue
            self.document.replace_markup(node, updated)
            self.modified.add(node.index)
            for item in (match, partner):
                self.used_tags.add(item.tag)
                paired.add(item.tag)
                self.outcomes.append(ApplyOutcome(
                    tag=item.tag,
                    target_paragraph_index=node.index,
                    success=True,
                    strategy_used="inline",
                    reason="date range",
                ))
            self._log(f"  ✓ {match.tag} + {partner.tag} -> #{node.index} (date range)")
        return paired

    def _apply_one(self, match: MatchResult) -> None:
        problem = self._precheck(match)
        if problem:
            self._reject(match, problem, quiet=is_date_tag(match.tag) and match.tag in self.used_tags)
            return
        node = self.document.node(match.target_paragraph_index)
        if node.index in self.modified and not is_date_tag(match.tag):
            self._reject(match, "paragraph already modified in this pass")
            return

        token = wrap_tag(match.tag)
        if node.synthetic:
            filled = fill_synthetic_cell(self.document.markup(node), token)
            if filled is None:
                self._reject(match, "empty cell could not be filled")
                return
            markup, focus = filled
            self.document.replace_markup(node, markup, focus=focus)
            self._succeed(match, node, "table_cell")
            return

        markup = self.document.markup(node)
        for strategy in strategy_chain(node, match.insertion_strategy):
            updated = STRATEGIES[strategy](markup, token, node.text)
            if updated is None or token not in node_text(updated):
                continue
            self.document.replace_markup(node, updated)
            self._succeed(match, node, strategy)
            return
        self._reject(match, "no insertion strategy succeeded")

    def _succeed(self, match: MatchResult, node: ParagraphNode, strategy: str) -> None:
        self.used_tags.add(match.tag)
        self.modified.add(node.index)
        self.outcomes.append(ApplyOutcome(
            tag=match.tag,
            target_paragraph_index=node.index,
            success=True,
            strategy_used=strategy,
        ))
        self._log(f"  ✓ {match.tag} -> #{node.index} ({strategy})")

    def _log(self, message: str) -> None:
        print(f"[Applicator] {message}")
