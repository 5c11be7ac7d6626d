from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from .config import (
    GEMINI_ENDPOINT_TEMPLATE,
    get_gemini_api_key,
    get_gemini_model,
    get_gemini_timeout_seconds,
)

JsonExpectation = Literal["object", "array", "any"]

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class GeminiError(RuntimeError):
    pass


@dataclass
class JsonParseResult:
    ok: bool
    value: Any = None
    error: str | None = None

    @classmethod
    def success(cls, value: Any) -> "JsonParseResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "JsonParseResult":
        return cls(ok=False, error=error)


def build_request_body(prompt: str, *, temperature: float | None, json_mode: bool) -> dict[str, Any]:
    body: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
    generation_config: dict[str, Any] = {}
    if temperature is not None:
        generation_config["temperature"] = temperature
    if json_mode:
        generation_config["responseMimeType"] = "application/json"
    if generation_config:
        body["generationConfig"] = generation_config
    return body


def extract_response_text(payload: object) -> str:
    if not isinstance(payload, dict):
        raise GeminiError("Gemini returned a non-object payload")

    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise GeminiError("Gemini returned empty candidates")

    content = candidates[0].get("content", {}) if isinstance(candidates[0], dict) else {}
    parts = content.get("parts", []) if isinstance(content, dict) else []
    if not isinstance(parts, list) or not parts:
        raise GeminiError("Gemini returned empty parts")

    text = str(parts[0].get("text", "")).strip() if isinstance(parts[0], dict) else ""
    if not text:
        raise GeminiError("Gemini response text is empty")
    return text


def call_gemini(
    prompt: str,
    *,
    model: str | None = None,
    temperature: float | None = None,
    json_mode: bool = False,
) -> str:
    api_key = get_gemini_api_key()
    if not api_key:
        raise GeminiError("GEMINI_API_KEY is not configured")

    endpoint = GEMINI_ENDPOINT_TEMPLATE.format(model=(model or "").strip() or get_gemini_model())
    body = build_request_body(prompt, temperature=temperature, json_mode=json_mode)

    with httpx.Client(timeout=get_gemini_timeout_seconds()) as client:
        response = client.post(endpoint, params={"key": api_key}, json=body)
        if response.status_code >= 400:
            raise GeminiError(f"Gemini API error: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GeminiError("Gemini returned invalid json") from exc

    return extract_response_text(payload)


def find_balanced_span(text: str, *, opener: str, closer: str) -> str | None:
    """Return the first balanced ``opener ... closer`` span in ``text``.

    Brackets inside JSON string literals are ignored.
    """
    start = text.find(opener)
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find(opener, start + 1)
    return None


def _matches_expectation(value: Any, expect: JsonExpectation) -> bool:
    if expect == "object":
        return isinstance(value, dict)
    if expect == "array":
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def _candidate_spans(content: str, expect: JsonExpectation) -> list[str]:
    if expect == "object":
        pairs = [("{", "}")]
    elif expect == "array":
        pairs = [("[", "]")]
    else:
        first_brace = content.find("{")
        first_bracket = content.find("[")
        if first_bracket >= 0 and (first_brace < 0 or first_bracket < first_brace):
            pairs = [("[", "]"), ("{", "}")]
        else:
            pairs = [("{", "}"), ("[", "]")]

    spans: list[str] = []
    for opener, closer in pairs:
        span = find_balanced_span(content, opener=opener, closer=closer)
        if span is not None:
            spans.append(span)
    return spans


def parse_json_response(text: str, *, expect: JsonExpectation = "object") -> JsonParseResult:
    """Pull a JSON payload out of free-form model output.

    A fenced code block wins when present; otherwise the first balanced span of
    the expected shape is used. Never raises: callers branch on ``ok``.
    """
    content = (text or "").strip()
    if not content:
        return JsonParseResult.failure("empty response")

    fenced = FENCED_JSON_PATTERN.search(content)
    if fenced:
        content = fenced.group(1).strip()

    try:
        direct = json.loads(content)
    except (ValueError, RecursionError):
        direct = None
    if direct is not None and _matches_expectation(direct, expect):
        return JsonParseResult.success(direct)

    for span in _candidate_spans(content, expect):
        try:
            parsed = json.loads(span)
        except (ValueError, RecursionError):
            continue
        if _matches_expectation(parsed, expect):
            return JsonParseResult.success(parsed)

    return JsonParseResult.failure(f"no json {expect} found in response")
