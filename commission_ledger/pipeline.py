from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from commission_ledger.assignments import derive_broker_assignments, merge_assignments
from commission_ledger.calculation import CalculationEngine, CalculationResult
from commission_ledger.config import LedgerConfig
from commission_ledger.conformance import ConformanceResult, classify
from commission_ledger.errors import (
    ExportPreconditionError,
    HashCollisionError,
    LedgerError,
    RunAbortedError,
    TransientInfraError,
)
from commission_ledger.hashing import ContentHashRegistry, HashFunc, sha256_hex
from commission_ledger.hierarchy import HierarchyBuildResult, build_hierarchies
from commission_ledger.models import (
    CommissionAssignmentVersion,
    Hierarchy,
    HierarchyParticipant,
    HierarchyVersion,
    PolicyHierarchyAssignment,
    Proposal,
)
from commission_ledger.proposals import ProposalBuildResult, resolve_proposals
from commission_ledger.sources import SourceData

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

STEP_HIERARCHIES = "hierarchies"
STEP_PROPOSALS = "proposals"
STEP_ASSIGNMENTS = "assignments"
STEP_CONFORMANCE = "conformance"
STEP_CALCULATION = "calculation"
STEP_PERSIST = "persist"
STEP_EXPORT = "export"

INVARIANTS = {
    HashCollisionError: "ContentHash must identify exactly one SplitConfig",
    ExportPreconditionError: "export preconditions must hold before publish",
    TransientInfraError: "source and sink stores must be reachable",
}
UNEXPECTED_ERROR = "unexpected error"


def new_run_id() -> str:
    return f"{datetime.now(UTC).strftime('run-%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


@dataclass
class RunState:
    run_id: str
    status: str
    total_steps: int
    current_step: str | None = None
    completed_steps: int = 0
    error_message: str | None = None
    failed_stage: str | None = None
    can_resume: bool = True


class CheckpointReporter(Protocol):
    def run_started(self, run: RunState) -> None: ...

    def step_started(self, run_id: str, step: str) -> None: ...

    def step_completed(self, run_id: str, step: str, row_counts: dict[str, int]) -> None: ...

    def run_finished(self, run: RunState) -> None: ...


class InMemoryCheckpointReporter:
    def __init__(self) -> None:
        self.runs: dict[str, RunState] = {}
        self.steps: dict[str, list[dict[str, Any]]] = {}

    def run_started(self, run: RunState) -> None:
        self.runs[run.run_id] = RunState(**run.__dict__)
        self.steps[run.run_id] = []

    def step_started(self, run_id: str, step: str) -> None:
        self.steps[run_id].append({"step": step, "status": STEP_RUNNING, "row_counts": {}})

    def step_completed(self, run_id: str, step: str, row_counts: dict[str, int]) -> None:
        for entry in self.steps[run_id]:
            if entry["step"] == step:
                entry["status"] = STEP_COMPLETED
                entry["row_counts"] = dict(row_counts)

    def run_finished(self, run: RunState) -> None:
        self.runs[run.run_id] = RunState(**run.__dict__)
        if run.status == RUN_FAILED:
            for entry in self.steps.get(run.run_id, []):
                if entry["status"] == STEP_RUNNING:
                    entry["status"] = STEP_FAILED


class OutputSink(Protocol):
    def save_run_outputs(self, output: PipelineOutput) -> dict[str, int]: ...

    def publish_export(self, payload: ExportPayload) -> dict[str, int]: ...


@dataclass
class RunContext:
    """Run-scoped dedup state; one per run so concurrent runs and tests stay independent."""

    run_id: str
    config: LedgerConfig
    registry: ContentHashRegistry
    map_func: Callable[..., Iterable[Any]] = map


@dataclass
class ExportPayload:
    run_id: str
    groups: list[str]
    proposals: list[Proposal]
    hierarchies: list[Hierarchy]
    hierarchy_versions: list[HierarchyVersion]
    hierarchy_participants: list[HierarchyParticipant]
    policies: list[str]
    phas: list[PolicyHierarchyAssignment]
    withheld_groups: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "groups": len(self.groups),
            "proposals": len(self.proposals),
            "hierarchies": len(self.hierarchies),
            "hierarchy_participants": len(self.hierarchy_participants),
            "policies": len(self.policies),
            "phas": len(self.phas),
            "withheld_groups": len(self.withheld_groups),
        }


@dataclass
class PipelineOutput:
    run_id: str
    sources: SourceData
    hierarchies: HierarchyBuildResult
    proposals: ProposalBuildResult
    assignments: list[CommissionAssignmentVersion]
    conformance: ConformanceResult
    calculation: CalculationResult
    content_hashes: dict[str, str]

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "hierarchies": len(self.hierarchies.hierarchies),
            "hierarchy_participants": len(self.hierarchies.participants),
            "proposals": len(self.proposals.proposals),
            "key_mappings": len(self.proposals.key_mappings),
            "phas": len(self.proposals.phas),
            "pha_reasons": self.proposals.pha_counts(),
            "assignments": len(self.assignments),
            "groups": len(self.conformance.groups),
            "exportable_groups": len(self.conformance.exportable_groups()),
            "gl_entries": len(self.calculation.gl_entries),
            "traceability_reports": len(self.calculation.traceability),
            "failed_reports": self.calculation.failure_counts(),
        }


def check_export_preconditions(output: PipelineOutput) -> None:
    if output.proposals.proposals and not output.hierarchies.hierarchies:
        raise ExportPreconditionError(
            "hierarchies", f"{len(output.proposals.proposals)} proposals but zero hierarchies were built"
        )
    referenced = {p.schedule_code for p in output.hierarchies.participants if p.schedule_code}
    if referenced and not output.sources.schedule_rates:
        raise ExportPreconditionError(
            "schedules", f"{len(referenced)} schedule codes referenced but the schedule directory is empty"
        )


def export_payload(output: PipelineOutput, config: LedgerConfig) -> ExportPayload:
    """Proposals, hierarchies and policies of Conformant / Nearly Conformant groups only."""
    allowed = output.conformance.exportable_groups()
    proposals = [p for p in output.proposals.proposals if p.group_id in allowed]
    hierarchies = [h for h in output.hierarchies.hierarchies if h.group_id in allowed]

    proposal_cap = config.debug.cap("proposals")
    if proposal_cap is not None:
        proposals = proposals[:proposal_cap]
    hierarchy_cap = config.debug.cap("hierarchies")
    if hierarchy_cap is not None:
        hierarchies = hierarchies[:hierarchy_cap]

    version_ids = {h.current_version_id for h in hierarchies}
    return ExportPayload(
        run_id=output.run_id,
        groups=sorted(allowed),
        proposals=proposals,
        hierarchies=hierarchies,
        hierarchy_versions=[v for v in output.hierarchies.versions if v.id in version_ids],
        hierarchy_participants=[p for p in output.hierarchies.participants if p.hierarchy_version_id in version_ids],
        policies=sorted(c.certificate_id for c in output.conformance.certificates if c.group_id in allowed),
        phas=[p for p in output.proposals.phas if p.group_id in allowed],
        withheld_groups=sorted(output.conformance.withheld_groups()),
    )


@contextmanager
def _worker_map(max_workers: int) -> Iterator[Callable[..., Iterable[Any]]]:
    if max_workers <= 1:
        yield map
        return
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        yield executor.map


class _StepTracker:
    def __init__(self, reporter: CheckpointReporter, state: RunState) -> None:
        self.reporter = reporter
        self.state = state

    @contextmanager
    def step(self, name: str) -> Iterator[dict[str, int]]:
        self.state.current_step = name
        self.reporter.step_started(self.state.run_id, name)
        logger.info("[%s] step %s started", self.state.run_id, name)
        counts: dict[str, int] = {}
        yield counts
        self.state.completed_steps += 1
        self.reporter.step_completed(self.state.run_id, name, counts)
        logger.info("[%s] step %s completed: %s", self.state.run_id, name, counts)


def run_pipeline(
    sources: SourceData,
    config: LedgerConfig | None = None,
    reporter: CheckpointReporter | None = None,
    sink: OutputSink | None = None,
    export: bool = False,
    run_id: str | None = None,
    hash_func: HashFunc = sha256_hex,
) -> PipelineOutput:
    """Run one full batch recompute.

    Nothing reaches ``sink`` until every computing step has finished; any
    failure is recorded on the reporter and re-raised as ``RunAbortedError``;
    only a ``LedgerError`` may leave the run resumable.
    """
    config = config or LedgerConfig.default()
    reporter = reporter or InMemoryCheckpointReporter()
    run_id = run_id or new_run_id()
    steps = [STEP_HIERARCHIES, STEP_PROPOSALS, STEP_ASSIGNMENTS, STEP_CONFORMANCE, STEP_CALCULATION]
    if sink is not None:
        steps.append(STEP_PERSIST)
        if export:
            steps.append(STEP_EXPORT)

    state = RunState(run_id=run_id, status=RUN_RUNNING, total_steps=len(steps))
    reporter.run_started(state)
    tracker = _StepTracker(reporter, state)
    logger.info("[%s] run started with %s certificate rows", run_id, len(sources.certificates))

    try:
        with _worker_map(config.max_workers) as map_func:
            ctx = RunContext(run_id, config, ContentHashRegistry(hash_func), map_func)
            output = _compute(ctx, sources, tracker)

        if sink is not None:
            with tracker.step(STEP_PERSIST) as counts:
                counts.update(sink.save_run_outputs(output))
            if export:
                with tracker.step(STEP_EXPORT) as counts:
                    check_export_preconditions(output)
                    counts.update(sink.publish_export(export_payload(output, config)))
    except LedgerError as exc:
        invariant = INVARIANTS.get(type(exc), str(exc))
        stage = _mark_failed(reporter, state, str(exc), exc.can_resume)
        logger.error("[%s] run aborted at %s (%s): %s", run_id, stage, invariant, exc)
        raise RunAbortedError(run_id, stage, invariant, exc.can_resume) from exc
    except Exception as exc:
        stage = _mark_failed(reporter, state, f"{type(exc).__name__}: {exc}", False)
        logger.exception("[%s] run aborted at %s by an unexpected error", run_id, stage)
        raise RunAbortedError(run_id, stage, UNEXPECTED_ERROR, False) from exc

    state.status = RUN_COMPLETED
    state.current_step = None
    reporter.run_finished(state)
    logger.info("[%s] run completed: %s", run_id, output.summary())
    return output


def _mark_failed(reporter: CheckpointReporter, state: RunState, message: str, can_resume: bool) -> str:
    stage = state.current_step or "startup"
    state.status = RUN_FAILED
    state.error_message = message
    state.failed_stage = stage
    state.can_resume = can_resume
    reporter.run_finished(state)
    return stage


def _compute(ctx: RunContext, sources: SourceData, tracker: _StepTracker) -> PipelineOutput:
    config = ctx.config

    with tracker.step(STEP_HIERARCHIES) as counts:
        hierarchies = build_hierarchies(sources.certificates, config.batch_size, ctx.map_func)
        counts.update(
            hierarchies=len(hierarchies.hierarchies),
            versions=len(hierarchies.versions),
            participants=len(hierarchies.participants),
        )

    with tracker.step(STEP_PROPOSALS) as counts:
        proposals = resolve_proposals(
            sources.certificates,
            ctx.registry,
            hierarchies.key_to_hierarchy,
            tolerance=config.split_percent_tolerance,
            entropy=config.entropy,
            batch_size=config.batch_size,
            map_func=ctx.map_func,
        )
        counts.update(
            proposals=len(proposals.proposals),
            split_participants=len(proposals.split_participants),
            key_mappings=len(proposals.key_mappings),
            phas=len(proposals.phas),
        )

    with tracker.step(STEP_ASSIGNMENTS) as counts:
        assignments = merge_assignments(sources.assignments, derive_broker_assignments(sources.certificates))
        counts.update(assignments=len(assignments))

    with tracker.step(STEP_CONFORMANCE) as counts:
        conformance = classify(sources.certificates, proposals.key_mappings, config.conformance, sources.groups)
        counts.update(certificates=len(conformance.certificates), groups=len(conformance.groups))

    with tracker.step(STEP_CALCULATION) as counts:
        engine = CalculationEngine(
            policies=sources.policies(),
            proposals=proposals.proposals,
            split_versions=proposals.split_versions,
            split_participants=proposals.split_participants,
            hierarchy_versions=hierarchies.versions,
            hierarchy_participants=hierarchies.participants,
            schedule_rates=sources.schedule_rates,
            certificate_rates=sources.certificate_rates,
            assignments=assignments,
            groups=sources.groups,
        )
        calculation = engine.run(sources.premiums)
        counts.update(
            gl_entries=len(calculation.gl_entries),
            traceability_reports=len(calculation.traceability),
            broker_traceability=len(calculation.broker_traceability),
        )

    return PipelineOutput(
        run_id=ctx.run_id,
        sources=sources,
        hierarchies=hierarchies,
        proposals=proposals,
        assignments=assignments,
        conformance=conformance,
        calculation=calculation,
        content_hashes={p.id: p.content_hash for p in proposals.proposals},
    )
