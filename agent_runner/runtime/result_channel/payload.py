from __future__ import annotations

import json
import re
from typing import Any, Optional, Tuple

import jsonschema
from pydantic import TypeAdapter, ValidationError

from ...errors import AgentConfigurationError, InvalidResultPayloadError

INVALID_JSON_MESSAGE = "Invalid JSON payload. Provide a valid JSON object."
DEFAULT_INVALID_MESSAGE = "Invalid result payload."

_CODE_FENCE_PATTERNS = (r"```json\s*(\{.*?\})\s*```", r"```(?:json)?\s*(\{.*?\})\s*```")
_TRAILING_COMMA_PATTERN = re.compile(r",(\s*[}\]])")
_MISSING = object()


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return _MISSING


def _extract_code_fence_candidates(text: str) -> list[str]:
    candidates: list[str] = []
    for pattern in _CODE_FENCE_PATTERNS:
        for match in re.finditer(pattern, text, re.DOTALL):
            value = match.group(1).strip()
            if value and value not in candidates:
                candidates.append(value)
    return candidates


def _extract_first_json_object(text: str) -> Optional[str]:
    start = -1
    depth = 0
    in_string = False
    escape = False
    for idx, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and start >= 0:
                return text[start : idx + 1]
    return None


def _strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_PATTERN.sub(r"\1", text)


def parse_json_with_repair(text: str) -> Tuple[Any, str]:
    """
    Parse `text` as JSON, repairing common agent formatting mistakes.

    Steps, first success wins: strict parse, trimmed parse, fenced code
    blocks, first balanced object, then each of those with trailing commas
    removed. Returns `(value, repair_level)`; raises `ValueError` when no
    candidate parses.
    """
    parsed = _try_parse(text)
    if parsed is not _MISSING:
        return parsed, "none"

    stripped = text.strip()
    candidates: list[str] = []
    if stripped and stripped != text:
        candidates.append(stripped)
    candidates.extend(_extract_code_fence_candidates(text))
    first_obj = _extract_first_json_object(stripped)
    if first_obj:
        candidates.append(first_obj)

    for candidate in candidates:
        parsed = _try_parse(candidate)
        if parsed is not _MISSING:
            return parsed, "deterministic"

    for candidate in [stripped, *candidates]:
        repaired = _strip_trailing_commas(candidate)
        if repaired == candidate:
            continue
        parsed = _try_parse(repaired)
        if parsed is not _MISSING:
            return parsed, "trailing_comma"
        first_obj = _extract_first_json_object(repaired)
        if first_obj:
            parsed = _try_parse(first_obj)
            if parsed is not _MISSING:
                return parsed, "trailing_comma"

    raise ValueError("no JSON value could be recovered")


def is_json_content_type(content_type: str | None) -> bool:
    return "application/json" in (content_type or "").lower()


def parse_result_body(content_type: str | None, body: str) -> Any:
    """JSON bodies are repaired and parsed; anything else is trimmed text."""
    text = body.strip()
    if not is_json_content_type(content_type):
        return text
    try:
        value, _ = parse_json_with_repair(text)
    except ValueError as exc:
        raise InvalidResultPayloadError(INVALID_JSON_MESSAGE) from exc
    return value


class ResultValidator:
    """
    Validates a delivered result against the caller's schema.

    A `dict` schema is treated as JSON Schema; any other non-None schema is a
    type validated through a pydantic `TypeAdapter` (models, `Literal`s,
    `TypedDict`s, ...). Without a schema every value is accepted.
    """

    def __init__(self, schema: Any = None) -> None:
        self.schema = schema
        self._adapter: TypeAdapter[Any] | None = None
        if schema is None:
            return
        if isinstance(schema, dict):
            try:
                jsonschema.validators.validator_for(schema).check_schema(schema)
            except jsonschema.SchemaError as exc:
                raise AgentConfigurationError(f"Invalid result schema: {exc.message}") from exc
            return
        self._adapter = TypeAdapter(schema)

    @property
    def expects_json(self) -> bool:
        return self.schema is not None

    def validate(self, value: Any) -> Any:
        if self.schema is None:
            return value
        if self._adapter is None:
            try:
                jsonschema.validate(instance=value, schema=self.schema)
            except jsonschema.ValidationError as exc:
                raise InvalidResultPayloadError(
                    exc.message or DEFAULT_INVALID_MESSAGE,
                    {"path": list(exc.absolute_path)},
                ) from exc
            return value
        try:
            return self._adapter.validate_python(value)
        except ValidationError as exc:
            errors = exc.errors()
            first = errors[0] if errors else {}
            raise InvalidResultPayloadError(
                str(first.get("msg") or DEFAULT_INVALID_MESSAGE),
                {"path": [str(part) for part in first.get("loc", ())]},
            ) from exc

    def parse_and_validate(self, content_type: str | None, body: str) -> Any:
        return self.validate(parse_result_body(content_type, body))

    def json_schema(self) -> dict[str, Any] | None:
        if self.schema is None:
            return None
        if self._adapter is None:
            return dict(self.schema)
        return self._adapter.json_schema()
