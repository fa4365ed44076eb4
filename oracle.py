"""Oracle transport and the strict parser for its match proposals."""

import json
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from openai import OpenAI
from pydantic import ValidationError
import tiktoken

from config import MappingConfig
from context import RunContext
from result import ParseResult
from schemas import MatchCandidate, MatchResult

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_TOKENIZER = None


def _get_tokenizer():
    global _TOKENIZER
    if _TOKENIZER is None:
        try:
            _TOKENIZER = tiktoken.get_encoding("o200k_base")
        except Exception:
            _TOKENIZER = tiktoken.get_encoding("cl100k_base")
    return _TOKENIZER


def estimate_tokens(text: str) -> int:
    """Accurately count tokens using tiktoken."""
    return len(_get_tokenizer().encode(text))


class Oracle(Protocol):
    def invoke(self, prompt: str) -> Any:
        ...


class ClientManager:
    _sync_client: Optional[OpenAI] = None

    @classmethod
    def get_sync_client(cls, timeout: float = 600.0, max_retries: int = 2) -> OpenAI:
        """Get or create sync OpenAI client."""
        if cls._sync_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable not set")
            cls._sync_client = OpenAI(
                api_key=api_key,
                timeout=timeout,
                max_retries=max_retries,
            )
        return cls._sync_client

    @classmethod
    def reset(cls) -> None:
        """Reset clients (useful for testing or API key rotation)."""
        if cls._sync_client:
            cls._sync_client.close()
            cls._sync_client = None


class OpenAIOracle:
    """``invoke(prompt) -> text`` over the OpenAI chat completions API."""

    def __init__(self, config: MappingConfig, client: Optional[OpenAI] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = ClientManager.get_sync_client(
                timeout=self.config.request_timeout,
                max_retries=self.config.max_retries,
            )
        return self._client

    def invoke(self, prompt: str) -> str:
        tokens = estimate_tokens(prompt)
        if tokens > self.config.available_input_tokens:
            print(f"[Oracle] Warning: prompt is {tokens:,} tokens, above the {self.config.available_input_tokens:,} budget")
        print(f"[Oracle] Calling {self.config.model.name} ({tokens:,} prompt tokens)")

        completion = self.client.chat.completions.create(
            model=self.config.model.name,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            max_completion_tokens=self.config.max_completion_tokens,
        )
        choice = completion.choices[0]
        if choice.finish_reason == "length":
            print("[Oracle] Warning: response truncated (length limit)")
        return choice.message.content or ""


def response_text(response: Any) -> str:
    """Accept plain strings or message objects exposing ``.content``/``.text``."""
    if isinstance(response, str):
        return response
    for attribute in ("content", "text"):
        value = getattr(response, attribute, None)
        if isinstance(value, str):
            return value
    if isinstance(response, dict):
        for key in ("content", "text"):
            if isinstance(response.get(key), str):
                return response[key]
    return "" if response is None else str(response)


def _outer_span(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def _load(candidate: Optional[str]) -> Any:
    if not candidate:
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


def extract_json(text: str, envelope: str = "matches") -> Optional[Dict[str, Any]]:
    """Pull a JSON object out of free text.

    Order: fenced code block holding an object, outermost ``{...}``, outermost
    ``[...]`` wrapped as ``{envelope: [...]}``. A bare array of objects is
    recognized before its first item is mistaken for the outermost object.
    """
    fenced = _FENCED_BLOCK.search(text)
    if fenced and fenced.group(1).strip().startswith("{"):
        parsed = _load(fenced.group(1).strip())
        if isinstance(parsed, dict):
            return parsed

    array = _load(_outer_span(text, "[", "]"))
    bracket_start, brace_start = text.find("["), text.find("{")
    if isinstance(array, list) and -1 < bracket_start < brace_start:
        return {envelope: array}

    parsed = _load(_outer_span(text, "{", "}"))
    if isinstance(parsed, dict):
        return parsed
    if isinstance(array, list):
        return {envelope: array}
    return None


def validation_reason(error: ValidationError) -> str:
    """Flatten a pydantic error into one log-friendly line."""
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'candidate'}: {e['msg']}"
        for e in error.errors()
    )


def validate_match(
    item: Any,
    min_confidence: float,
    known_tags: Optional[Iterable[str]] = None,
) -> ParseResult[MatchResult]:
    """Validate one oracle candidate; the floor and tag set are checked after the schema."""
    try:
        candidate = MatchCandidate.model_validate(item)
    except ValidationError as e:
        tag = item.get("tag") if isinstance(item, dict) else None
        prefix = f"{tag}: " if isinstance(tag, str) and tag else ""
        return ParseResult.invalid(f"{prefix}{validation_reason(e)}")

    if known_tags is not None and candidate.tag not in known_tags:
        return ParseResult.invalid(f"unknown tag {candidate.tag}")
    if candidate.confidence < min_confidence:
        return ParseResult.invalid(
            f"{candidate.tag}: confidence {candidate.confidence:.2f} below {min_confidence:.2f}"
        )
    return ParseResult.ok(candidate.to_match())


def parse_match_response(
    response: Any,
    min_confidence: float = 0.7,
    envelopes=("matches", "placements", "tags"),
    known_tags: Optional[Iterable[str]] = None,
) -> ParseResult[List[MatchResult]]:
    """Ok(list of valid matches, possibly empty) or Invalid(reason)."""
    text = response_text(response)
    if not text.strip():
        return ParseResult.invalid("empty response")

    payload = extract_json(text, envelope=envelopes[0])
    if payload is None:
        return ParseResult.invalid("no JSON object found in response")

    items = None
    for key in envelopes:
        if isinstance(payload.get(key), list):
            items = payload[key]
            break
    if items is None:
        return ParseResult.invalid(f"response has none of the keys {list(envelopes)}")

    known = set(known_tags) if known_tags is not None else None
    matches: List[MatchResult] = []
    warnings: List[str] = []
    for item in items:
        checked = validate_match(item, min_confidence, known)
        if checked.is_ok:
            matches.append(checked.value)
        else:
            warnings.append(checked.reason)
    return ParseResult.ok(matches, warnings)


class MatchingOracleAdapter:
    """Invokes the oracle and turns its answer into validated match records."""

    def __init__(self, oracle: Oracle, config: MappingConfig, context: RunContext):
        self.oracle = oracle
        self.config = config
        self.context = context

    def call(self, prompt: str, label: str) -> ParseResult[str]:
        """Raw oracle call; transport failures become Invalid."""
        self.context.oracle_calls += 1
        self._save_debug(f"{label}_prompt", prompt)
        try:
            text = response_text(self.oracle.invoke(prompt))
        except Exception as e:
            self._log(f"Oracle call failed ({label}): {type(e).__name__}: {e}")
            self.context.log_action("call_llm", f"{label}: transport failure: {e}", result="failed")
            return ParseResult.invalid(f"transport failure: {e}")
        self._save_debug(f"{label}_response", text)
        return ParseResult.ok(text)

    def request_matches(
        self,
        prompt: str,
        label: str,
        min_confidence: Optional[float] = None,
        envelopes=("matches", "placements", "tags"),
        known_tags: Optional[Iterable[str]] = None,
    ) -> ParseResult[List[MatchResult]]:
        floor = self.config.min_confidence if min_confidence is None else min_confidence
        raw = self.call(prompt, label)
        if not raw.is_ok:
            return ParseResult.invalid(raw.reason)

        parsed = parse_match_response(raw.value, floor, envelopes, known_tags)
        if not parsed.is_ok:
            self._log(f"Unusable response ({label}): {parsed.reason}")
            self.context.log_action("call_llm", f"{label}: {parsed.reason}", result="failed")
            return parsed

        for warning in parsed.warnings:
            self._log(f"  Dropped candidate: {warning}")
        matches = parsed.value
        outcome = "success" if matches and not parsed.warnings else ("partial" if matches else "failed")
        self.context.log_action(
            "call_llm",
            f"{label}: {len(matches)} match(es), {len(parsed.warnings)} dropped",
            result=outcome,
        )
        return parsed

    def _save_debug(self, name: str, content: str) -> None:
        if not self.config.debug_enabled:
            return
        debug_dir = Path(self.config.debug_dir)
        debug_dir.mkdir(exist_ok=True)
        timestamp = time.strftime("%Y%m%d_%H%M%S")
        path = debug_dir / f"{name}_{self.context.oracle_calls:03d}_{timestamp}.txt"
        path.write_text(content, encoding="utf-8")

    def _log(self, message: str) -> None:
        print(f"[Oracle] {message}")
