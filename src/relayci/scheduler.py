# scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .cache import CacheStore
from .context import ExecutionContext, ExecutionContextManager, runner_info
from .dag import DependencyGraph, build_graph
from .errors import (
    CacheAccessError,
    ConfigurationError,
    JobTimeoutError,
    RelayError,
    StepExecutionError,
)
from .expressions import Scope, check_condition, interpolate, interpolations, uses_status_function, validate
from .matrix import expand_workflow
from .model import (
    Condition,
    InstanceId,
    Job,
    JobInstance,
    JobState,
    Step,
    StepContext,
    StepOutcome,
    StepResult,
    Workflow,
)
from .summary import RunSummary
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

SKIPPED_NEEDS_PROPAGATE = "propagate"   # a skipped need skips its dependents
SKIPPED_NEEDS_SATISFY = "satisfy"       # a skipped need counts as done

# Upper bound on how long the main loop waits before re-checking abort/deadlines.
POLL_INTERVAL = 0.1


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class _Outcome:
    state: JobState
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class _Handle:
    """Main-loop bookkeeping for one running instance."""
    instance: InstanceId
    deadline: Optional[float] = None
    timeout: Optional[float] = None
    context: Optional[ExecutionContext] = None
    cancelled: bool = False
    timed_out: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def attach(self, ctx: ExecutionContext) -> None:
        with self.lock:
            self.context = ctx
            stop = self.cancelled or self.timed_out
        if stop:
            ctx.cancel()

    def cancel(self) -> None:
        with self.lock:
            self.cancelled = True
            ctx = self.context
        if ctx is not None:
            ctx.cancel()

    def expire(self) -> None:
        with self.lock:
            self.timed_out = True
            ctx = self.context
        if ctx is not None:
            ctx.cancel()


@dataclass
class _PendingSave:
    step: str
    key: str
    paths: List[str]


class Scheduler:
    """
    Drives one workflow run to completion (or abort).

    Owns all run state: the expanded instances, the dependency graph and the
    per-instance results. Create one Scheduler per run.
    """

    def __init__(
        self,
        workflow: Workflow | Sequence[Job],
        *,
        cache: CacheStore | None = None,
        contexts: ExecutionContextManager | None = None,
        max_workers: int | None = None,
        fail_fast: bool = False,
        skipped_needs: str = SKIPPED_NEEDS_PROPAGATE,
        console: Console | None = None,
    ):
        if not isinstance(workflow, Workflow):
            workflow = Workflow(name="workflow", jobs=tuple(workflow))
        if skipped_needs not in (SKIPPED_NEEDS_PROPAGATE, SKIPPED_NEEDS_SATISFY):
            raise ValueError(f"skipped_needs must be 'propagate' or 'satisfy', got {skipped_needs!r}")

        self.workflow = workflow
        self.cache = cache
        self.contexts = contexts or ExecutionContextManager(workflow_env=workflow.env)
        self.max_workers = max_workers if max_workers is not None else default_workers()
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.fail_fast = fail_fast
        self.skipped_needs = skipped_needs
        self.console = console or get_console()

        # Everything that can be wrong with the definition fails here, before any dispatch.
        _validate_expressions(workflow.jobs)
        self.graph: DependencyGraph = build_graph(
            expand_workflow(workflow),
            templates=[j.name for j in workflow.jobs],
        )

        self._abort = threading.Event()
        self._admitted: Set[InstanceId] = set()
        self._failed: List[InstanceId] = []
        self._started = False
        self._max_running = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def instances(self) -> List[JobInstance]:
        return list(self.graph.nodes)

    @property
    def max_observed_concurrency(self) -> int:
        return self._max_running

    def plan(self) -> List[List[InstanceId]]:
        return self.graph.levels()

    def abort(self) -> None:
        """Request cancellation; safe to call from any thread or a signal handler."""
        if not self._abort.is_set():
            log.info("abort requested")
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def run(self) -> RunSummary:
        if self._started:
            raise RuntimeError("a Scheduler drives exactly one run; create a new one")
        self._started = True
        started_at = time.time()

        self.console.print_run_started(
            repository=os.path.basename(str(self.contexts.source)),
            workflow=self.workflow.name,
            job_count=len(self.graph),
        )
        self.graph.resolve_initial_states()

        running: Dict[Future, _Handle] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relayci") as pool:
            while True:
                self._settle()

                if self._abort.is_set():
                    for handle in running.values():
                        handle.cancel()
                    self._skip_unstarted(reason="cancelled")
                elif self.fail_fast and self._failed:
                    self._skip_unstarted(reason="fail-fast", causes=list(self._failed))
                else:
                    self._dispatch(pool, running)

                if not running:
                    if not self.graph.unfinished():
                        break
                    if not self._dispatchable():
                        # Nothing running and nothing can start: settle() leaves no such node.
                        self._skip_unstarted(reason="unreachable")
                        continue

                done, _ = wait(list(running), timeout=self._wait_timeout(running), return_when=FIRST_COMPLETED)

                now = time.monotonic()
                for handle in running.values():
                    if handle.deadline is not None and now >= handle.deadline and not handle.timed_out:
                        log.info("%s exceeded its timeout", handle.instance)
                        handle.expire()

                for fut in sorted(done, key=lambda f: self.graph.index[running[f].instance]):
                    handle = running.pop(fut)
                    self._finish(handle, fut)

        summary = RunSummary.from_instances(
            self.workflow.name,
            self.graph.nodes,
            started_at=started_at,
            finished_at=time.time(),
            cancelled=self._abort.is_set(),
        )
        self.console.print_summary(summary)
        return summary

    # ------------------------------------------------------------------
    # Graph progression (main thread only)
    # ------------------------------------------------------------------

    def _terminal_ids(self) -> Set[InstanceId]:
        return {n.id for n in self.graph.nodes if n.state.terminal}

    def _dispatchable(self) -> List[InstanceId]:
        ready = self.graph.runnable_set(self._terminal_ids())
        return [iid for iid in self.graph.ordered(ready) if self.graph[iid].state is JobState.RUNNABLE]

    def _settle(self) -> None:
        """
        Decide every not-yet-admitted instance whose needs are all terminal:
        admit it (RUNNABLE) or skip it. Repeats until nothing changes, so
        skips propagate transitively in one call.
        """
        if self._abort.is_set():
            return
        changed = True
        while changed:
            changed = self._skip_doomed()
            for iid in self.graph.ordered(self.graph.runnable_set(self._terminal_ids())):
                if iid in self._admitted:
                    continue
                node = self.graph[iid]
                decision = self._admission(node)
                if decision is None:
                    if node.state is JobState.BLOCKED:
                        node.transition(JobState.RUNNABLE)
                    self._admitted.add(iid)
                else:
                    reason, causes = decision
                    self._skip(node, reason=reason, causes=causes)
                changed = True

    def _skip_doomed(self) -> bool:
        """
        Skip BLOCKED instances that can no longer pass an implicit success()
        without waiting for their remaining needs. Conditions that call a
        status function (always(), failure(), ...) still wait for every need.
        """
        skipped_any = False
        for node in self.graph.nodes:
            if node.state is not JobState.BLOCKED or not _implicit_success(node.template.if_):
                continue
            deps = self.graph.dependencies_of(node.id)
            failed = [d for d in deps if d.state is JobState.FAILED]
            skipped = []
            if self.skipped_needs == SKIPPED_NEEDS_PROPAGATE:
                skipped = [d for d in deps if d.state is JobState.SKIPPED]
            if not failed and not skipped:
                continue
            reason = "needs failed" if failed else "needs skipped"
            self._skip(node, reason=reason, causes=_root_causes(failed + skipped))
            skipped_any = True
        return skipped_any

    def _admission(self, node: JobInstance) -> Optional[Tuple[str, List[InstanceId]]]:
        """None to admit; otherwise (reason, causes) to skip."""
        deps = self.graph.dependencies_of(node.id)
        failed = [d for d in deps if d.state is JobState.FAILED]
        skipped = [d for d in deps if d.state is JobState.SKIPPED]
        causes = _root_causes(failed + skipped)
        satisfied = not skipped or self.skipped_needs == SKIPPED_NEEDS_SATISFY

        ctx = StepContext(
            job=node.id.template,
            matrix=node.matrix,
            env=dict(self.workflow.env),
            runner=runner_info(node.template.runs_on),
            needs=_aggregate_needs(deps),
            job_failed=bool(failed),
            needs_satisfied=satisfied,
            cancelled=self._abort.is_set(),
        )
        try:
            admitted = check_condition(node.template.if_, ctx)
        except ConfigurationError as e:
            node.error = f"invalid job condition: {e}"
            return (node.error, causes)

        if admitted:
            return None
        if failed:
            return ("needs failed", causes)
        if not satisfied:
            return ("needs skipped", causes)
        return ("condition not met", causes)

    def _skip(self, node: JobInstance, *, reason: str, causes: Iterable[InstanceId] = ()) -> None:
        node.skipped_because = _dedupe(causes)
        node.skip_reason = reason
        node.transition(JobState.SKIPPED)
        node.finished_at = time.time()
        self.console.print_job_skipped(node.name, _describe_skip(node))

    def _skip_unstarted(self, *, reason: str, causes: Iterable[InstanceId] = ()) -> None:
        causes = list(causes)
        for node in self.graph.nodes:
            if node.state in (JobState.PENDING, JobState.BLOCKED, JobState.RUNNABLE):
                self._skip(node, reason=reason, causes=causes)

    def _dispatch(self, pool: ThreadPoolExecutor, running: Dict[Future, _Handle]) -> None:
        free = self.max_workers - len(running)
        for iid in self._dispatchable()[: max(0, free)]:
            node = self.graph[iid]
            node.transition(JobState.RUNNING)
            node.started_at = time.time()
            timeout = node.template.timeout
            handle = _Handle(
                instance=iid,
                timeout=timeout,
                deadline=time.monotonic() + timeout if timeout else None,
            )
            running[pool.submit(self._execute, node, handle)] = handle
        self._max_running = max(self._max_running, len(running))

    def _wait_timeout(self, running: Dict[Future, _Handle]) -> float:
        now = time.monotonic()
        deadlines = [h.deadline - now for h in running.values() if h.deadline is not None and not h.timed_out]
        return max(0.0, min([POLL_INTERVAL, *deadlines]))

    def _finish(self, handle: _Handle, fut: Future) -> None:
        node = self.graph[handle.instance]
        try:
            outcome: _Outcome = fut.result()
        except Exception as e:  # engine bug or collaborator crash: the job fails, the run goes on
            log.exception("job %s crashed", node.id)
            outcome = _Outcome(JobState.FAILED, error=f"{type(e).__name__}: {e}")

        node.finished_at = time.time()
        node.error = outcome.error
        if outcome.state is JobState.SKIPPED:
            node.skip_reason = outcome.reason
        node.transition(outcome.state)

        if outcome.state is JobState.SUCCEEDED:
            self.console.print_success(node.name)
        elif outcome.state is JobState.FAILED:
            self._failed.append(node.id)
            self.console.print_failure(node.name, outcome.error or "failed", is_job=True)
            if node.template.matrix_fail_fast:
                for sibling in self.graph.nodes:
                    if sibling.id.template == node.id.template and sibling.state in (
                        JobState.PENDING,
                        JobState.BLOCKED,
                        JobState.RUNNABLE,
                    ):
                        self._skip(sibling, reason="matrix fail-fast", causes=[node.id])
        else:
            self.console.print_job_skipped(node.name, outcome.reason or "cancelled")

    # ------------------------------------------------------------------
    # Job execution (worker threads)
    # ------------------------------------------------------------------

    def _job_env(self, node: JobInstance) -> Dict[str, str]:
        scope = Scope(
            {
                "matrix": node.matrix,
                "runner": runner_info(node.template.runs_on),
                "env": dict(self.workflow.env),
                "job": {"name": node.id.template},
            }
        )
        env = dict(self.workflow.env)
        env.update({k: interpolate(str(v), scope) for k, v in node.template.env.items()})
        return env

    def _execute(self, node: JobInstance, handle: _Handle) -> _Outcome:
        self.console.print_job_start(node.name)
        ctx = self.contexts.acquire(node, job_env=self._job_env(node))
        try:
            handle.attach(ctx)
            return self._run_steps(node, ctx, handle)
        finally:
            ctx.close()

    def _run_steps(self, node: JobInstance, ctx: ExecutionContext, handle: _Handle) -> _Outcome:
        sctx = StepContext(
            job=node.id.template,
            matrix=node.matrix,
            env=ctx.env,
            runner=ctx.runner,
            workdir=str(ctx.workdir),
        )
        pending_saves: List[_PendingSave] = []
        error: Optional[str] = None
        abort_exit: Optional[int] = None

        for step in node.template.steps:
            sctx.cancelled = handle.cancelled
            if handle.timed_out:
                break

            result = StepResult(name=step.name, outcome=StepOutcome.SKIPPED)
            try:
                should_run = check_condition(step.if_, sctx)
            except ConfigurationError as e:
                should_run = False
                result.outcome = StepOutcome.FAILURE
                result.error = str(e)
                sctx.job_failed = True
                error = error or f"[{node.name}] step '{step.name}': {e}"

            if not should_run:
                node.steps.append(result)
                sctx.steps[step.name] = result
                continue

            self.console.print_step(step.name)
            result.started_at = time.time()
            try:
                self._run_step(node, step, ctx, sctx, handle, result, pending_saves)
            except StepExecutionError as e:
                if handle.timed_out:
                    result.error = str(JobTimeoutError(node.name, handle.timeout or 0))
                elif handle.cancelled:
                    result.outcome = StepOutcome.CANCELLED
                    abort_exit = e.exit_code
                elif step.continue_on_error:
                    result.tolerated = True
                    log.info("%s: step %r failed, continuing (continue-on-error)", node.id, step.name)
                else:
                    sctx.job_failed = True
                    error = error or str(e)
                result.error = result.error or str(e)
            finally:
                result.finished_at = time.time()
                node.steps.append(result)
                sctx.steps[step.name] = result

            if handle.cancelled:
                break

        if handle.timed_out:
            return _Outcome(JobState.FAILED, error=str(JobTimeoutError(node.name, handle.timeout or 0)))
        if sctx.job_failed:
            return _Outcome(JobState.FAILED, error=error)
        if handle.cancelled:
            # forced termination only counts as a failure when the runtime reported one
            if abort_exit not in (None, 0) and not _killed_by_signal(abort_exit):
                return _Outcome(JobState.FAILED, error=f"[{node.name}] exited {abort_exit} after cancellation")
            return _Outcome(JobState.SKIPPED, reason="cancelled")

        for save in pending_saves:
            self._save_cache(node, ctx, save)
        return _Outcome(JobState.SUCCEEDED)

    def _remaining(self, handle: _Handle, step: Step) -> Optional[float]:
        limits = [t for t in (step.timeout,) if t]
        if handle.deadline is not None:
            limits.append(max(0.0, handle.deadline - time.monotonic()))
        return min(limits) if limits else None

    def _run_step(
        self,
        node: JobInstance,
        step: Step,
        ctx: ExecutionContext,
        sctx: StepContext,
        handle: _Handle,
        result: StepResult,
        pending_saves: List[_PendingSave],
    ) -> None:
        scope = Scope.from_step_context(sctx)
        hit = False

        try:
            if step.is_cache_step:
                key = interpolate(step.cache_key or "", scope)
                paths = [interpolate(p, scope) for p in step.cache_paths]
                hit = self._restore_cache(node, ctx, key, paths, result)
                if not hit and not step.run:
                    pending_saves.append(_PendingSave(step.name, key, paths))
                if hit or not step.run:
                    result.outcome = StepOutcome.SUCCESS
                    return

            command = interpolate(step.run, scope)
            env = {k: interpolate(str(v), scope) for k, v in step.env.items()}
            cwd = interpolate(step.cwd, scope) if step.cwd else None
        except ConfigurationError as e:
            result.outcome = StepOutcome.FAILURE
            result.error = str(e)
            raise StepExecutionError(node.name, step.name, step.run, -1, str(e)) from e

        try:
            res = ctx.run(command, env=env, cwd=cwd, timeout=self._remaining(handle, step))
        except (OSError, RelayError) as e:
            result.outcome = StepOutcome.FAILURE
            result.error = str(e)
            raise StepExecutionError(node.name, step.name, command, -1, str(e)) from e

        result.exit_code = res.exit_code
        result.output = res.output
        if res.timed_out and not handle.timed_out:
            if step.timeout and (handle.deadline is None or time.monotonic() < handle.deadline):
                result.error = f"step timed out after {step.timeout:g}s"
            else:
                # the runtime was bounded by the job deadline
                handle.expire()
        if res.exit_code != 0 or res.timed_out:
            result.outcome = StepOutcome.FAILURE
            self.console.print_failure(step.name, res.output, exit_code=res.exit_code)
            raise StepExecutionError(node.name, step.name, command, res.exit_code, res.output)

        result.outcome = StepOutcome.SUCCESS
        if step.is_cache_step and not hit:
            self._save_cache(node, ctx, _PendingSave(step.name, key, paths), result=result)

    # ------------------------------------------------------------------
    # Cache (best effort: never fails a job)
    # ------------------------------------------------------------------

    def _restore_cache(
        self,
        node: JobInstance,
        ctx: ExecutionContext,
        key: str,
        paths: List[str],
        result: StepResult,
    ) -> bool:
        if self.cache is None:
            result.cache = "disabled"
            return False
        try:
            entry = self.cache.lookup(key)
            if entry is None:
                result.cache = "miss"
                self.console.print_cache_miss(node.name)
                return False
            self.cache.restore(entry, [ctx.resolve(p) for p in entry.paths])
        except CacheAccessError as e:
            log.warning("%s: cache %s unusable, running cold: %s", node.id, key, e)
            result.cache = "error"
            self.console.print_cache_miss(node.name)
            return False
        result.cache = "hit"
        self.console.print_cache_hit(node.name, key)
        return True

    def _save_cache(
        self,
        node: JobInstance,
        ctx: ExecutionContext,
        save: _PendingSave,
        *,
        result: Optional[StepResult] = None,
    ) -> None:
        if self.cache is None:
            return
        try:
            entry = self.cache.save(save.key, [ctx.resolve(p) for p in save.paths], declared=save.paths)
        except CacheAccessError as e:
            log.warning("%s: could not save cache %s: %s", node.id, save.key, e)
            status = "error"
        else:
            status = "saved" if entry is not None else "exists"
            if entry is not None:
                self.console.print_cache_saved(node.name, save.key)
        if result is None:
            result = next((s for s in node.steps if s.name == save.step), None)
        if result is not None:
            result.cache = status


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _validate_expressions(jobs: Iterable[Job]) -> None:
    """Syntax-check every condition and every ${{ }} template up front."""
    for job in jobs:
        conditions = [job.if_] + [s.if_ for s in job.steps]
        templates = [job.title, *job.env.values()]
        for step in job.steps:
            templates.extend([step.run, step.cwd, step.cache_key, *step.cache_paths, *step.env.values()])
        try:
            for cond in conditions:
                if isinstance(cond, str):
                    validate(cond)
            for text in templates:
                if isinstance(text, str):
                    for inner in interpolations(text):
                        validate(inner)
        except ConfigurationError as e:
            raise ConfigurationError(f"Job '{job.name}': {e}") from e


def _implicit_success(condition: Condition) -> bool:
    if condition is None:
        return True
    return isinstance(condition, str) and not uses_status_function(condition)


def _root_causes(deps: Iterable[JobInstance]) -> List[InstanceId]:
    causes: List[InstanceId] = []
    for d in deps:
        if d.state is JobState.FAILED:
            causes.append(d.id)
        elif d.state is JobState.SKIPPED:
            causes.extend(d.skipped_because)
    return _dedupe(causes)


def _dedupe(ids: Iterable[InstanceId]) -> List[InstanceId]:
    seen: Set[InstanceId] = set()
    out: List[InstanceId] = []
    for iid in ids:
        if iid not in seen:
            seen.add(iid)
            out.append(iid)
    return out


def _aggregate_needs(deps: Iterable[JobInstance]) -> Dict[str, JobState]:
    """Template -> combined result of all its instances (failed > skipped > succeeded)."""
    rank = {JobState.SUCCEEDED: 0, JobState.SKIPPED: 1, JobState.FAILED: 2}
    out: Dict[str, JobState] = {}
    for d in deps:
        prev = out.get(d.id.template)
        if prev is None or rank.get(d.state, 0) > rank.get(prev, 0):
            out[d.id.template] = d.state
    return out


def _describe_skip(node: JobInstance) -> str:
    if node.skipped_because:
        return f"{node.skip_reason}: {', '.join(str(c) for c in node.skipped_because)}"
    return node.skip_reason or "skipped"


def _killed_by_signal(exit_code: int) -> bool:
    # negative: killed by signal (subprocess); 128+N: killed by signal N (shell)
    return exit_code < 0 or exit_code in (130, 137, 143)


def run_workflow(
    workflow: Workflow | Sequence[Job],
    *,
    cache: CacheStore | None = None,
    contexts: ExecutionContextManager | None = None,
    max_workers: int | None = None,
    fail_fast: bool = False,
    skipped_needs: str = SKIPPED_NEEDS_PROPAGATE,
    console: Console | None = None,
) -> RunSummary:
    """Convenience: build a Scheduler and run it once."""
    return Scheduler(
        workflow,
        cache=cache,
        contexts=contexts,
        max_workers=max_workers,
        fail_fast=fail_fast,
        skipped_needs=skipped_needs,
        console=console,
    ).run()
