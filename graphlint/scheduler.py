"""Dependency-ordered, cached and resumable execution of analysis passes.

Units are processed leaves first.  Before a unit runs, every unit it
depends on already has a result in the :class:`~graphlint.state.RunState`,
so its fingerprint and its prompt can both include the dependency
summaries.  Each unit goes through one of::

    PENDING -> CACHED
    PENDING -> RUNNING -> DONE
    PENDING -> RUNNING -> FAILED

A failed unit aborts the run.  Whatever has been recorded is checkpointed
first, so re-running with the same checkpoint resumes at the first unit
without a result.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .cache import NullCache, fingerprint
from .condense import CallGraph
from .config import AnalysisPass, Config
from .errors import CacheError, ConfigError, GraphError, OracleError, RunCancelled
from .models import AnalysisUnit, ExternalFunc, Finding, FunctionRef, Position, Summary, UnitResult
from .normalize import FINDINGS_SCHEMA, SUMMARY_SCHEMA, FindingPayload, parse_findings, parse_summary
from .oracle import Oracle, OracleRequest
from .prompts import build_prompt_context, load_instructions, render_prompt
from .state import ResultAccumulator, RunState, save_checkpoint
from .units import dependency_layers

logger = logging.getLogger(__name__)

SUMMARY_PASS = "summary"
PARTIAL_MATCH_MIN_LENGTH = 10


class UnitStatus(str, Enum):
    PENDING = "pending"
    CACHED = "cached"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class FindingEvent:
    category: str
    severity: str


@dataclass
class ProgressEvent:
    """Progress notification emitted by the scheduler.

    ``phase`` is the pass currently running (``"summary"`` or a finding pass
    name) while a unit is RUNNING, and repeats the status name otherwise.
    """
    unit_id: str
    index: int
    total: int
    status: UnitStatus
    phase: str
    finding: Optional[FindingEvent] = None


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class RunContext:
    """Per-run state owned by the caller: results, checkpointing, progress, cancellation."""
    accumulator: ResultAccumulator = field(default_factory=ResultAccumulator)
    checkpoint_path: Optional[Path] = None
    on_progress: Optional[ProgressCallback] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    statuses: Dict[str, UnitStatus] = field(default_factory=dict)
    completed: int = 0

    @property
    def state(self) -> RunState:
        return self.accumulator.state

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()


def find_line_in_body(body: str, code: str) -> int:
    """1-based line of *body* where the *code* fragment appears, or 0.

    Tries an exact substring match, then a match on trimmed text, then a
    partial match on the fragment's first line once it is long enough to
    be meaningful.
    """
    if not code.strip():
        return 0
    lines = body.split("\n")

    for i, line in enumerate(lines, 1):
        if code in line:
            return i

    trimmed = code.strip()
    for i, line in enumerate(lines, 1):
        if trimmed in line.strip():
            return i

    first = next(part.strip() for part in trimmed.split("\n") if part.strip())
    collapsed = " ".join(first.split())
    if len(collapsed) > PARTIAL_MATCH_MIN_LENGTH:
        for i, line in enumerate(lines, 1):
            if collapsed in " ".join(line.split()):
                return i
    return 0


class PipelineScheduler:
    """Runs the configured passes over analysis units in dependency order."""

    def __init__(
        self,
        config: Config,
        oracle: Oracle,
        cache=None,
        graph: Optional[CallGraph] = None,
        externals: Optional[Mapping[str, ExternalFunc]] = None,
        prompts_dir: Optional[Path] = None,
    ):
        self.config = config
        self.oracle = oracle
        self.cache = cache if cache is not None else NullCache()
        self.graph = graph or {}
        self.externals = dict(externals or {})
        self._lock = threading.RLock()

        passes = config.enabled_passes()
        summary_passes = [p for p in passes if p.name == SUMMARY_PASS]
        if not summary_passes:
            raise ConfigError("no enabled summary pass configured")
        self.summary_pass = summary_passes[0]
        self.finding_passes = [p for p in passes if p.name != SUMMARY_PASS]
        self.instructions: Dict[str, str] = {
            p.name: load_instructions(p.prompt, prompts_dir) for p in passes
        }

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(
        self,
        units: Sequence[AnalysisUnit],
        context: Optional[RunContext] = None,
        concurrency: Optional[int] = None,
    ) -> RunState:
        """Process every unit not yet present in the context's RunState.

        Raises:
            OracleError: a pass failed; the checkpoint holds all completed units.
            RunCancelled: ``context.cancel()`` was called; checkpoint written.
        """
        context = context or RunContext()
        concurrency = concurrency or self.config.run.concurrency
        state = context.state
        state.metadata.total_units = len(units)
        summaries = state.summaries()
        for unit in units:
            context.statuses.setdefault(
                unit.id, UnitStatus.DONE if unit.id in state else UnitStatus.PENDING,
            )

        already = sum(1 for unit in units if unit.id in state)
        if already:
            logger.info("Resuming: %d of %d unit(s) already analyzed", already, len(units))

        try:
            if concurrency > 1:
                self._run_layers(units, context, summaries, concurrency)
            else:
                self._run_sequential(units, context, summaries)
        except BaseException:
            self._checkpoint(context)
            raise

        self._checkpoint(context)
        return state

    def _run_sequential(
        self,
        units: Sequence[AnalysisUnit],
        context: RunContext,
        summaries: Dict[str, Summary],
    ) -> None:
        for index, unit in enumerate(units, 1):
            if unit.id in context.state:
                continue
            if context.cancelled:
                raise RunCancelled(len(context.state))
            self._process(unit, index, len(units), context, summaries)

    def _run_layers(
        self,
        units: Sequence[AnalysisUnit],
        context: RunContext,
        summaries: Dict[str, Summary],
        concurrency: int,
    ) -> None:
        positions = {unit.id: i for i, unit in enumerate(units, 1)}
        for layer in dependency_layers(units):
            pending = [u for u in layer if u.id not in context.state]
            if not pending:
                continue
            if context.cancelled:
                raise RunCancelled(len(context.state))

            first_error: Optional[BaseException] = None
            with ThreadPoolExecutor(max_workers=concurrency) as executor:
                futures = [
                    executor.submit(
                        self._process_unless_cancelled,
                        unit, positions[unit.id], len(units), context, summaries,
                    )
                    for unit in pending
                ]
                for future in as_completed(futures):
                    if future.cancelled():
                        continue
                    exc = future.exception()
                    if exc is not None and first_error is None:
                        first_error = exc
                        for other in futures:
                            other.cancel()

            if first_error is not None:
                raise first_error
            if context.cancelled:
                raise RunCancelled(len(context.state))

    def _process_unless_cancelled(self, unit, index, total, context, summaries) -> None:
        if context.cancelled:
            return
        self._process(unit, index, total, context, summaries)

    # ------------------------------------------------------------------
    # Single unit
    # ------------------------------------------------------------------

    def _process(
        self,
        unit: AnalysisUnit,
        index: int,
        total: int,
        context: RunContext,
        summaries: Dict[str, Summary],
    ) -> UnitResult:
        with self._lock:
            missing = [d for d in unit.dependencies if d not in summaries]
            if missing:
                raise GraphError(
                    f"unit '{unit.id}' scheduled before its dependencies: {', '.join(missing)}",
                    details={"unit_id": unit.id, "missing": missing},
                )
            dep_summaries = {d: summaries[d] for d in unit.dependencies}

        logger.info("[%d/%d] %s", index, total, unit.id)
        try:
            result = self.analyze_unit(unit, dep_summaries, context, index, total)
        except BaseException:
            self._set_status(context, unit, index, total, UnitStatus.FAILED, "failed")
            raise

        with self._lock:
            context.accumulator.record(unit.id, result)
            summaries[unit.id] = result.summary
            status = UnitStatus.CACHED if result.cached else UnitStatus.DONE
            context.completed += 1
            if context.completed % self.config.run.checkpoint_every == 0:
                self._checkpoint(context)
        self._set_status(context, unit, index, total, status, status.value)
        logger.info("    %s: %d finding(s)%s", unit.id, len(result.findings), " (cached)" if result.cached else "")
        return result

    def analyze_unit(
        self,
        unit: AnalysisUnit,
        dependency_summaries: Mapping[str, Summary],
        context: Optional[RunContext] = None,
        index: int = 0,
        total: int = 0,
    ) -> UnitResult:
        """Produce the result for one unit, from the cache or by running passes."""
        context = context or RunContext()
        key = fingerprint(unit, dependency_summaries)
        functions = [FunctionRef.from_function(fn) for fn in unit.members]

        cached = self._cache_lookup(key, unit.id)
        if cached is not None:
            return UnitResult(unit_id=unit.id, summary=cached, functions=functions, cached=True)

        self._set_status(context, unit, index, total, UnitStatus.RUNNING, SUMMARY_PASS)
        external_ids = self._external_ids(unit)
        prompt_ctx = build_prompt_context(unit, dependency_summaries, self.externals, external_ids)

        summary = self._run_summary_pass(unit, render_prompt(self.instructions[SUMMARY_PASS], prompt_ctx))
        self._cache_store(key, summary, unit.id)

        prompt_ctx.summary = summary
        findings: List[Finding] = []
        for analysis in self.finding_passes:
            self._notify(context, ProgressEvent(unit.id, index, total, UnitStatus.RUNNING, analysis.name))
            prompt = render_prompt(self.instructions[analysis.name], prompt_ctx)
            for issue in self._run_finding_pass(unit, analysis, prompt):
                finding = self._place_finding(unit, issue, analysis.name)
                findings.append(finding)
                self._notify(
                    context,
                    ProgressEvent(
                        unit.id, index, total, UnitStatus.RUNNING, analysis.name,
                        finding=FindingEvent(category=analysis.name, severity=finding.severity),
                    ),
                )

        return UnitResult(unit_id=unit.id, summary=summary, functions=functions, findings=findings)

    def _external_ids(self, unit: AnalysisUnit) -> List[str]:
        ids = set()
        for fn in unit.members:
            ids.update(c for c in self.graph.get(fn.node_id, ()) if c in self.externals)
        return sorted(ids)

    # ------------------------------------------------------------------
    # Oracle passes
    # ------------------------------------------------------------------

    def _request(self, analysis: AnalysisPass, prompt: str, schema) -> OracleRequest:
        llm = self.config.llm_for(analysis)
        return OracleRequest(
            prompt=prompt,
            model=llm.model,
            max_tokens=llm.max_tokens,
            temperature=llm.temperature,
            response_schema=schema,
        )

    def _complete(self, unit: AnalysisUnit, pass_name: str, request: OracleRequest) -> str:
        try:
            return self.oracle.complete(request)
        except OracleError as exc:
            exc.details.update(unit_id=unit.id, analysis=pass_name)
            raise
        except Exception as exc:
            raise OracleError(
                f"{pass_name} pass for {unit.id}: oracle failed: {exc}",
                details={"unit_id": unit.id, "analysis": pass_name},
            ) from exc

    def _run_summary_pass(self, unit: AnalysisUnit, prompt: str) -> Summary:
        raw = self._complete(unit, SUMMARY_PASS, self._request(self.summary_pass, prompt, SUMMARY_SCHEMA))
        try:
            payload = parse_summary(raw)
        except OracleError as exc:
            exc.details.update(unit_id=unit.id, analysis=SUMMARY_PASS)
            raise
        return Summary(
            purpose=payload.purpose,
            behavior=payload.behavior,
            invariants=list(payload.invariants),
            security=list(payload.security),
        )

    def _run_finding_pass(self, unit: AnalysisUnit, analysis: AnalysisPass, prompt: str) -> List[FindingPayload]:
        raw = self._complete(unit, analysis.name, self._request(analysis, prompt, FINDINGS_SCHEMA))
        try:
            return parse_findings(raw)
        except OracleError as exc:
            exc.details.update(unit_id=unit.id, analysis=analysis.name)
            raise

    def _place_finding(self, unit: AnalysisUnit, issue: FindingPayload, category: str) -> Finding:
        """Attribute *issue* to a member and refine its line.

        A finding naming no known member is attributed to the unit's first
        member.  For recursive groups that guess is flagged on the finding.
        """
        target = None
        for fn in unit.members:
            if issue.function and issue.function in (fn.name, fn.node_id):
                target = fn
                break
        fallback = False
        if target is None:
            target = unit.members[0]
            fallback = unit.is_recursive_group
            if fallback:
                logger.debug(
                    "Finding names unknown function '%s' in %s, attributing to %s",
                    issue.function, unit.id, target.node_id,
                )

        line = target.start_line
        if issue.code:
            offset = find_line_in_body(target.code, issue.code)
            if offset:
                line = target.start_line + offset - 1

        return Finding(
            position=Position(target.file_path, line),
            severity=issue.severity,
            category=category,
            message=issue.message,
            suggestion=issue.suggestion,
            function=target.name,
            attributed_by_fallback=fallback,
        )

    # ------------------------------------------------------------------
    # Cache, checkpoint, progress
    # ------------------------------------------------------------------

    def _cache_lookup(self, key: str, unit_id: str) -> Optional[Summary]:
        try:
            with self._lock:
                payload, found = self.cache.get(key)
        except CacheError as exc:
            logger.warning("Cache read for %s failed, treating as miss: %s", unit_id, exc)
            return None
        if not found:
            return None
        try:
            return Summary.from_dict(json.loads(payload))
        except (json.JSONDecodeError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring corrupt cache entry for %s: %s", unit_id, exc)
            return None

    def _cache_store(self, key: str, summary: Summary, unit_id: str) -> None:
        try:
            with self._lock:
                self.cache.set(key, summary.canonical_json())
        except CacheError as exc:
            logger.warning("Cache write for %s failed: %s", unit_id, exc)

    def _checkpoint(self, context: RunContext) -> None:
        if context.checkpoint_path is None:
            return
        try:
            with self._lock:
                save_checkpoint(context.state, context.checkpoint_path)
        except OSError as exc:
            logger.error("Failed to save checkpoint to %s: %s", context.checkpoint_path, exc)

    def _set_status(self, context, unit, index, total, status: UnitStatus, phase: str) -> None:
        with self._lock:
            context.statuses[unit.id] = status
        self._notify(context, ProgressEvent(unit.id, index, total, status, phase))

    def _notify(self, context: RunContext, event: ProgressEvent) -> None:
        if context.on_progress is None:
            return
        with self._lock:
            context.on_progress(event)
