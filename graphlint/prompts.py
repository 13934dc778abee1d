"""Prompt construction for the summary pass and the finding passes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigError
from .models import AnalysisUnit, ExternalFunc, FunctionInfo, Summary

logger = logging.getLogger(__name__)

BUILTIN_PREFIX = "builtin:"

SUMMARY_INSTRUCTIONS = (
    "Summarize the code below for engineers who will call it. Describe its "
    "purpose, its observable behavior (including error cases), the invariants "
    "it relies on or maintains, and any security relevant properties.\n"
    'Respond with JSON: {"purpose": str, "behavior": str, '
    '"invariants": [str], "security": [str]}.'
)

_FINDING_FOCUS: Dict[str, str] = {
    "security": "security vulnerabilities: injection, unsafe deserialization, path traversal, "
                "missing authorization, secrets handling and unsafe use of callee results",
    "errors": "error handling: ignored or swallowed errors, lost context, wrong error types "
              "and paths that fail silently",
    "cleanliness": "readability: dead code, misleading names, duplicated logic and "
                   "functions doing too many things",
    "concurrency": "concurrency bugs: data races, missing synchronization, deadlocks, "
                   "leaked goroutines or threads and unsafe shared state",
    "performance": "performance problems: needless allocations, quadratic loops, repeated "
                   "work and blocking calls on hot paths",
    "api-design": "API design: confusing signatures, leaky abstractions, inconsistent "
                  "conventions and hard to use parameters",
    "testing": "testability: hidden dependencies, global state and behavior that cannot "
               "be exercised in isolation",
    "logging": "logging: missing context, sensitive data in logs, wrong levels and noisy output",
    "resources": "resource management: unclosed files, connections or handles and missing cleanup "
                 "on error paths",
    "validation": "input validation: unchecked bounds, missing nil or empty checks and "
                  "trusting caller supplied data",
    "dependencies": "misuse of callees: violated preconditions, ignored results and wrong "
                    "assumptions about the behavior summarized below",
    "complexity": "complexity: deep nesting, long functions and convoluted control flow "
                  "that could be simplified",
}

FINDING_TEMPLATE = (
    "Review the code below and report only real problems concerning {focus}.\n"
    'Respond with JSON: {{"issues": [{{"function": str, "line": int, '
    '"severity": "critical" | "important" | "minor", "message": str, '
    '"suggestion": str, "code": str}}]}}. "line" counts from 1 at the first '
    'line of the function shown, "code" quotes the offending line verbatim. '
    'Return {{"issues": []}} when there is nothing to report.'
)


def builtin_names() -> List[str]:
    return ["summary"] + sorted(_FINDING_FOCUS)


def load_instructions(prompt: str, prompts_dir: Optional[Path] = None) -> str:
    """Resolve a pass ``prompt`` setting to instruction text.

    ``builtin:<name>`` selects a built-in prompt; anything else is a path to
    a text file whose contents are used verbatim.  When ``prompts_dir`` is
    given, ``<prompts_dir>/<name>.txt`` replaces the built-in text for
    ``builtin:<name>`` wherever that file exists.

    Raises:
        ConfigError: for an unknown built-in name or an unreadable file.
    """
    if prompt.startswith(BUILTIN_PREFIX):
        name = prompt[len(BUILTIN_PREFIX):]
        if prompts_dir is not None:
            candidate = Path(prompts_dir) / f"{name}.txt"
            if candidate.is_file():
                logger.debug("Using %s for %s", candidate, prompt)
                return _read_prompt_file(candidate, prompt)
        if name == "summary":
            return SUMMARY_INSTRUCTIONS
        if name in _FINDING_FOCUS:
            return FINDING_TEMPLATE.format(focus=_FINDING_FOCUS[name])
        raise ConfigError(f"unknown builtin prompt '{name}'", details={"prompt": prompt})

    return _read_prompt_file(Path(prompt), prompt)


def _read_prompt_file(path: Path, prompt: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read prompt file {path}: {exc}", details={"prompt": prompt}) from exc


@dataclass
class PromptContext:
    """Everything a prompt may show about one analysis unit."""
    unit_id: str
    functions: List[FunctionInfo]
    dependencies: List[Tuple[str, Summary]] = field(default_factory=list)
    externals: List[ExternalFunc] = field(default_factory=list)
    summary: Optional[Summary] = None


def build_prompt_context(
    unit: AnalysisUnit,
    dependency_summaries: Mapping[str, Summary],
    externals: Mapping[str, ExternalFunc],
    external_ids: Optional[List[str]] = None,
    summary: Optional[Summary] = None,
) -> PromptContext:
    """Collect the unit's members, dependency summaries and external callees.

    ``external_ids`` are the ids of external callees of this unit; only
    those with known metadata in *externals* are included.
    """
    deps = [
        (dep_id, dependency_summaries[dep_id])
        for dep_id in unit.dependencies
        if dep_id in dependency_summaries
    ]
    ext = [externals[e] for e in (external_ids or []) if e in externals]
    return PromptContext(
        unit_id=unit.id,
        functions=list(unit.members),
        dependencies=deps,
        externals=ext,
        summary=summary,
    )


def _render_function(fn: FunctionInfo) -> str:
    header = f"### {fn.name}"
    if fn.receiver:
        header += f" (receiver {fn.receiver})"
    lines = [header, f"Location: {fn.file_path}:{fn.start_line}"]
    if fn.signature:
        lines.append(f"Signature: {fn.signature}")
    if fn.docstring:
        lines.append(f"Documentation:\n{fn.docstring.strip()}")
    lines.append(f"```\n{fn.code}\n```")
    return "\n".join(lines)


def _render_summary(summary: Summary) -> List[str]:
    lines = [f"Purpose: {summary.purpose}", f"Behavior: {summary.behavior}"]
    lines.extend(f"Invariant: {item}" for item in summary.invariants)
    lines.extend(f"Security: {item}" for item in summary.security)
    return lines


def render_prompt(instructions: str, ctx: PromptContext) -> str:
    sections = [instructions.strip(), ""]

    if len(ctx.functions) == 1:
        sections.append("## Function")
    else:
        sections.append(
            f"## Mutually recursive functions ({len(ctx.functions)}), analyze them together"
        )
    sections.extend(_render_function(fn) for fn in ctx.functions)

    if ctx.dependencies:
        sections.append("\n## Callees (summaries)")
        for dep_id, summary in ctx.dependencies:
            sections.append(f"### {dep_id}")
            sections.extend(_render_summary(summary))

    if ctx.externals:
        sections.append("\n## External callees")
        for ext in ctx.externals:
            name = f"{ext.package}.{ext.name}" if ext.package else ext.name
            line = f"- {name}"
            if ext.signature:
                line += f": {ext.signature}"
            sections.append(line)
            if ext.docstring.strip():
                sections.append(f"  {ext.docstring.strip().splitlines()[0]}")

    if ctx.summary is not None:
        sections.append("\n## Summary of this code")
        sections.extend(_render_summary(ctx.summary))

    return "\n".join(sections).rstrip() + "\n"
