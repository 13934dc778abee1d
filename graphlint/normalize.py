"""Repair and decode structured oracle responses.

Generative models routinely wrap JSON in markdown fences and put raw
newlines or tabs inside string values.  :func:`normalize_response` fixes
exactly those two problems and nothing else; the payload models below then
decode the result strictly.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ParseError

_FENCE_RE = re.compile(r"```[\w+-]*\s*(.+?)\s*```", re.DOTALL)

_CONTROL_ESCAPES = {"\t": "\\t", "\n": "\\n", "\r": "\\r"}


def extract_fenced(text: str) -> str:
    """Return the interior of the first fenced block, or the stripped text."""
    text = text.strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def escape_control_chars(text: str) -> str:
    """Escape literal tab, CR and LF characters inside JSON string literals."""
    out: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\" and in_string:
            out.append(ch)
            escaped = True
        elif ch == '"':
            in_string = not in_string
            out.append(ch)
        elif in_string and ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        else:
            out.append(ch)
    return "".join(out)


def normalize_response(text: str) -> str:
    return escape_control_chars(extract_fenced(text))


class SummaryPayload(BaseModel):
    """Response of the summary pass."""

    kind: Literal["summary"] = "summary"
    purpose: str = Field(description="A brief description of what the unit does")
    behavior: str = Field(description="Detailed description of the unit's behavior")
    invariants: List[str] = Field(
        default_factory=list, description="Invariants the unit maintains",
    )
    security: List[str] = Field(
        default_factory=list, description="Notable security properties",
    )

    @field_validator("invariants", "security", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class FindingPayload(BaseModel):
    """A single issue reported by a finding pass."""

    function: str = Field(default="", description="Name of the function where the issue occurs")
    line: int = Field(
        default=0,
        description="Line number within the code block shown, where line 1 is its first line",
    )
    severity: Literal["critical", "important", "minor"]
    message: str = Field(description="Description of the issue")
    suggestion: str = Field(default="", description="Suggested fix for the issue")
    code: str = Field(default="", description="Verbatim code fragment the issue refers to")

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("function", "suggestion", "code", mode="before")
    @classmethod
    def _null_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("line", mode="before")
    @classmethod
    def _null_as_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class FindingsPayload(BaseModel):
    """Response of a finding pass."""

    kind: Literal["findings"] = "findings"
    issues: List[FindingPayload] = Field(default_factory=list)


def _schema(name: str, model: type) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema["properties"].pop("kind", None)
    return {"name": name, "schema": schema}


SUMMARY_SCHEMA = _schema("summary", SummaryPayload)
FINDINGS_SCHEMA = _schema("issues", FindingsPayload)


def _decode(raw: str, normalized: str) -> Any:
    try:
        return json.loads(normalized)
    except json.JSONDecodeError as exc:
        raise ParseError(str(exc), raw=raw, normalized=normalized) from exc


def parse_summary(raw: str) -> SummaryPayload:
    """Decode a summary pass response.

    Raises:
        ParseError: if the normalized text is not a valid summary object.
    """
    normalized = normalize_response(raw)
    data = _decode(raw, normalized)
    try:
        return SummaryPayload.model_validate(data)
    except ValidationError as exc:
        raise ParseError(str(exc), raw=raw, normalized=normalized) from exc


def parse_findings(raw: str) -> List[FindingPayload]:
    """Decode a finding pass response; an empty body means no findings."""
    normalized = normalize_response(raw)
    if normalized in ("", "{}"):
        return []
    data = _decode(raw, normalized)
    try:
        return FindingsPayload.model_validate(data).issues
    except ValidationError as exc:
        raise ParseError(str(exc), raw=raw, normalized=normalized) from exc
