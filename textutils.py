"""Text helpers shared by the extractor, matchers and verifier."""

import re
import unicodedata
from typing import List, Optional

TAG_PATTERN = re.compile(r"\{\{([A-Z_0-9]+)\}\}")

# Private-use glyphs (Wingdings/Symbol fonts) and control characters
_NOISE_CHARS = re.compile(r"[\uE000-\uF8FF\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_WHITESPACE = re.compile(r"\s+")
_LETTERS = re.compile(r"[a-zA-ZÀ-ÿ]")
_SECTION_MARKER = re.compile(r"^([A-Z])\s*[-–:](?=\s|[A-ZÀ-Ý]|$)")
_POSITION_LABEL = re.compile(r"\(T[\d?]+R[\d?]+C[\d?]+\)")
_NON_LETTERS = re.compile(r"[^a-zà-ÿ]")
_TAG_UNSAFE = re.compile(r"[^A-Z0-9]+")

STOP_WORDS = frozenset({
    # French
    "le", "la", "les", "de", "du", "des", "un", "une", "et", "ou", "à", "au",
    "aux", "en", "pour", "par", "sur", "dans", "avec", "sans", "ce", "cette",
    "ces", "est", "son", "ses", "qui", "que",
    # English
    "the", "and", "for", "with", "from", "this", "that", "are", "its",
})


def normalize_text(text: str) -> str:
    """Strip noise characters, turn NBSP into spaces and collapse whitespace."""
    if not text:
        return ""
    text = _NOISE_CHARS.sub("", text)
    text = text.replace("\u00a0", " ")
    return _WHITESPACE.sub(" ", text).strip()


def find_tags(text: str) -> List[str]:
    """Tag names in order of appearance (duplicates kept)."""
    return TAG_PATTERN.findall(text or "")


def has_existing_tag(text: str) -> bool:
    return bool(TAG_PATTERN.search(text or ""))


def strip_tags(text: str) -> str:
    return _WHITESPACE.sub(" ", TAG_PATTERN.sub("", text or "")).strip()


def wrap_tag(tag: str) -> str:
    return "{{" + tag + "}}"


def unwrap_tag(token: str) -> str:
    return token.strip().strip("{}").strip()


def tag_from_path(path: str) -> str:
    """Tag name for a dotted data path: ``client.prénom`` -> ``CLIENT_PRENOM``."""
    folded = unicodedata.normalize("NFKD", path).encode("ascii", "ignore").decode("ascii")
    return _TAG_UNSAFE.sub("_", folded.upper()).strip("_")


def contains_letters(text: str) -> bool:
    return bool(_LETTERS.search(text or ""))


def detect_section(text: str, current: str) -> str:
    """Return the section letter opened by ``text``, or keep ``current``."""
    match = _SECTION_MARKER.match(text or "")
    if match:
        return match.group(1)
    return current


def extract_keywords(label: str, min_length: int = 3) -> List[str]:
    """Significant lowercase words of a label, stop-words removed, order kept."""
    keywords: List[str] = []
    label = _POSITION_LABEL.sub(" ", label or "")
    for word in label.lower().split():
        word = _NON_LETTERS.sub("", word)
        if len(word) < min_length or word in STOP_WORDS:
            continue
        if word not in keywords:
            keywords.append(word)
    return keywords


def ends_with_colon(text: str) -> bool:
    return (text or "").rstrip().endswith(":")


def table_position(
    table_index: Optional[int],
    row_index: Optional[int],
    column_index: Optional[int],
) -> str:
    """Compact ``T1R2C3`` position label ("" outside tables)."""
    if table_index is None:
        return ""
    row = "?" if row_index is None else row_index
    col = "?" if column_index is None else column_index
    return f"T{table_index}R{row}C{col}"
