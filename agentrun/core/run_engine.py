"""Run engine — the state machine behind every agent run.

Lifecycle::

    created --drive--> streaming --no tool calls--> completed
    streaming --auto-approved calls--> streaming (next turn)
    streaming --calls need approval--> interrupted
    interrupted --resume, all calls decided--> resumed --drive--> streaming
    streaming --provider error / timeout / round limit / budget--> failed
    any non-terminal --cancel--> canceled

``start``, ``resume`` and ``cancel`` are called from the API.  ``drive`` runs
in a worker and advances the run until it completes, fails, is canceled or
is interrupted, writing events to an ``EventSink`` in the order they happen.
Between drives the run lives only in its row: ``status``,
``pending_tool_calls`` and the ``RunCheckpoint``.  Nothing is held in memory
while a run waits for approval, so any worker can pick it up again.

Every status change goes through ``RunRepository.compare_and_set``; the
loser of a race sees ``None`` and backs off.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import aclosing
from datetime import UTC, datetime
from uuid import uuid4

from agentrun.config import Settings, get_settings
from agentrun.core.classifier import classify
from agentrun.core.errors import (
    AgentRunError,
    BudgetExceeded,
    InvalidState,
    NotFound,
    ProviderError,
    ProviderTimeout,
    RoundLimitExceeded,
    TurnError,
    UnknownCall,
)
from agentrun.core.logging import bind_run_context, get_logger
from agentrun.core.pricing import calculate_cost
from agentrun.core.provider import ModelProvider, TextDelta, TurnComplete
from agentrun.core.streams import (
    EVENT_END,
    EVENT_ERROR,
    EVENT_INTERRUPT,
    EVENT_RATE_LIMIT,
    EVENT_TOOL_CALL_PROPOSED,
    EVENT_TOOL_CALL_RESULT,
    EVENT_USAGE_UPDATE,
    DeltaBatcher,
    EventSink,
)
from agentrun.core.tool_registry import ToolRegistry, tool_registry
from agentrun.core.tools.executor import ToolExecutor
from agentrun.repos.interfaces import AgentCatalog, RunRepository, ToolCallRepository
from agentrun.schemas.agent_run import (
    AgentRunRead,
    ApprovalDecision,
    ApprovalOutcome,
    ResumeResponse,
    RunCheckpoint,
    RunStatus,
    ToolCallDisposition,
    ToolCallRequest,
)
from agentrun.schemas.trust import TrustScope
from agentrun.services.rate_limiter import RateLimiter
from agentrun.services.trust import TrustStore

logger = get_logger(__name__)

DENIED_RESULT = json.dumps({"error": "The user denied this tool call. Do not retry it."})
_DRIVABLE = (RunStatus.CREATED, RunStatus.RESUMED)


class _RunLost(Exception):
    """The run left ``streaming`` under us (canceled or failed by the watchdog)."""


def _now() -> datetime:
    return datetime.now(UTC)


class RunEngine:
    def __init__(
        self,
        *,
        runs: RunRepository,
        tool_calls: ToolCallRepository,
        catalog: AgentCatalog,
        trust: TrustStore,
        limiter: RateLimiter,
        provider: ModelProvider,
        executor: ToolExecutor,
        registry: ToolRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.runs = runs
        self.tool_calls = tool_calls
        self.catalog = catalog
        self.trust = trust
        self.limiter = limiter
        self.provider = provider
        self.executor = executor
        self.registry = registry or tool_registry
        self.settings = settings or get_settings()

    # ── Caller-facing operations ────────────────────────────────

    async def start(
        self,
        *,
        owner_id: str,
        thread_id: str,
        agent_id: str,
        message: str,
    ) -> AgentRunRead:
        """Admit and create a run.  Raises ``NotFound`` or ``BudgetExceeded``.

        No run exists when either is raised.  The admission reservation is
        stored on the checkpoint and settled by the first turn.
        """
        agent = await self.catalog.get_agent(agent_id, owner_id)
        if agent is None:
            raise NotFound("agent", agent_id)
        thread = await self.catalog.get_thread(thread_id, owner_id)
        if thread is None:
            raise NotFound("thread", thread_id)

        admission = await self.limiter.admit(owner_id)
        if not admission.allowed:
            raise BudgetExceeded(admission.reason or "Budget exceeded", admission.reset_at)

        run_id = str(uuid4())
        checkpoint = RunCheckpoint(
            system_prompt=agent.system_prompt,
            model=agent.model or self.settings.llm_model,
            messages=[*thread.history(), {"role": "user", "content": message}],
            tools=self.registry.descriptors(agent.tool_names),
            segment=1,
            reserved_cost=admission.reserved,
            reserved_window=admission.window.key,
        )
        try:
            run = await self.runs.create(
                AgentRunRead(
                    id=run_id,
                    owner_id=owner_id,
                    thread_id=thread_id,
                    agent_id=agent_id,
                    status=RunStatus.CREATED,
                    input_text=message,
                    checkpoint=checkpoint,
                )
            )
            await self.catalog.append_message(thread_id, role="user", content=message, run_id=run_id)
        except Exception:
            await self.limiter.release(owner_id, admission.reserved, admission.window.key)
            raise

        logger.info(
            "run_created",
            run_id=run.id,
            owner_id=owner_id,
            thread_id=thread_id,
            agent_id=agent_id,
            tool_count=len(checkpoint.tools),
        )
        return run

    async def get(self, run_id: str, owner_id: str) -> AgentRunRead:
        run = await self.runs.get(run_id)
        if run is None or run.owner_id != owner_id:
            raise NotFound("run", run_id)
        return run

    async def resume(
        self,
        run_id: str,
        owner_id: str,
        decisions: list[ApprovalDecision],
    ) -> ResumeResponse:
        """Record decisions on an interrupted run.

        Decisions may cover a subset of the pending calls; the run stays
        interrupted until every pending call has one.  When the last one
        arrives the run moves to ``resumed`` with a new stream segment and
        the caller schedules ``drive``.  Trust grants for ``approve-always-*``
        are written only by the winning resume and before any execution.
        """
        run = await self.get(run_id, owner_id)
        if run.status != RunStatus.INTERRUPTED:
            raise InvalidState(run_id, run.status.value)

        pending = {c.call_id: c for c in run.pending_tool_calls}
        unknown = [d.call_id for d in decisions if d.call_id not in pending]
        if unknown:
            raise UnknownCall(unknown)

        by_call = {d.call_id: d.outcome for d in decisions}
        updated_calls = [
            c.model_copy(update={"decision": by_call.get(c.call_id, c.decision)})
            for c in run.pending_tool_calls
        ]
        complete = all(c.decision is not None for c in updated_calls)

        changes: dict = {"pending_tool_calls": updated_calls}
        if complete:
            checkpoint = run.checkpoint.model_copy(update={"segment": run.checkpoint.segment + 1})
            changes.update(status=RunStatus.RESUMED, checkpoint=checkpoint)

        updated = await self.runs.compare_and_set(
            run_id,
            expected=[RunStatus.INTERRUPTED],
            expected_version=run.version,
            **changes,
        )
        if updated is None:
            logger.info("run_resume_conflict", run_id=run_id)
            raise InvalidState(run_id)

        for call in updated_calls:
            if call.call_id not in by_call:
                continue
            if call.decision == ApprovalOutcome.APPROVE_ALWAYS_TOOL:
                await self.trust.grant(owner_id, TrustScope.TOOL, call.tool_name)
            elif call.decision == ApprovalOutcome.APPROVE_ALWAYS_INTEGRATION:
                if call.integration_id:
                    await self.trust.grant(owner_id, TrustScope.INTEGRATION, call.integration_id)
                else:
                    # No integration to trust; remember the tool instead.
                    await self.trust.grant(owner_id, TrustScope.TOOL, call.tool_name)

        logger.info(
            "run_resumed" if complete else "run_decisions_recorded",
            run_id=run_id,
            decided=len(by_call),
            undecided=len(updated.undecided_calls()),
        )
        return ResumeResponse(
            run=updated,
            segment=updated.checkpoint.segment if complete else None,
        )

    async def cancel(self, run_id: str, owner_id: str) -> AgentRunRead:
        """Cancel a run.

        A run nobody is driving (created, interrupted, resumed) is canceled
        on the spot.  A streaming run gets its cancel flag set and the
        driver stops at the next turn boundary or after the current tool.
        """
        run = await self.get(run_id, owner_id)
        if run.is_terminal:
            return run

        if run.status != RunStatus.STREAMING:
            canceled = await self.runs.compare_and_set(
                run_id,
                expected=[run.status],
                expected_version=run.version,
                status=RunStatus.CANCELED,
                cancel_requested=True,
                pending_tool_calls=[],
                completed_at=_now(),
            )
            if canceled is not None:
                await self.tool_calls.supersede_pending(run_id)
                await self._release_reservation(canceled)
                logger.info("run_canceled", run_id=run_id, previous_status=run.status.value)
                return canceled

        flagged = await self.runs.request_cancel(run_id)
        logger.info("run_cancel_requested", run_id=run_id)
        return flagged or await self.get(run_id, owner_id)

    async def abort(self, run_id: str, error: AgentRunError, sink: EventSink) -> AgentRunRead | None:
        """Fail a streaming run from outside its driver (worker abort, watchdog).

        Returns ``None`` when the run is not streaming any more.
        """
        run = await self.runs.get(run_id)
        if run is None or run.status != RunStatus.STREAMING:
            return None
        events = DeltaBatcher(sink, batch_ms=self.settings.agent_delta_batch_ms)
        return await self._fail(run, error, events)

    # ── Driving ─────────────────────────────────────────────────

    async def drive(self, run_id: str, sink: EventSink) -> AgentRunRead:
        """Advance a created or resumed run until it stops.

        Returns the final snapshot.  If the run is not drivable (another
        worker got it first, or it was canceled meanwhile) nothing happens.
        """
        run = await self.runs.get(run_id)
        if run is None:
            raise NotFound("run", run_id)

        bind_run_context(run.id, run.owner_id, run.thread_id)

        if run.status not in _DRIVABLE:
            logger.info("run_drive_skipped", run_id=run_id, status=run.status.value)
            return run

        resuming = run.status == RunStatus.RESUMED
        claimed = await self.runs.compare_and_set(
            run_id,
            expected=[run.status],
            expected_version=run.version,
            status=RunStatus.STREAMING,
            started_at=run.started_at or _now(),
        )
        if claimed is None:
            logger.info("run_drive_lost_claim", run_id=run_id)
            return await self.runs.get(run_id) or run
        run = claimed
        logger.info("run_streaming", run_id=run_id, segment=run.checkpoint.segment, resuming=resuming)
        if resuming:
            # Grants from the resume may have been written by another process.
            self.trust.invalidate(run.owner_id)

        events = DeltaBatcher(sink, batch_ms=self.settings.agent_delta_batch_ms)
        try:
            if resuming:
                run = await self._apply_decisions(run, events)
                if run.status != RunStatus.STREAMING:
                    return run
            return await self._loop(run, events)
        except _RunLost:
            return await self._finish_lost(run_id, events)
        except AgentRunError as e:
            return await self._fail(run, e, events)
        except Exception:
            logger.exception("run_drive_crashed", run_id=run_id)
            return await self._fail(
                run, TurnError("The run stopped because of an internal error."), events
            )

    async def _loop(self, run: AgentRunRead, events: DeltaBatcher) -> AgentRunRead:
        while True:
            if await self._cancel_requested(run.id):
                return await self._cancel_driven(run, events)
            if run.checkpoint.rounds >= self.settings.agent_max_rounds:
                raise RoundLimitExceeded(self.settings.agent_max_rounds)

            reserved, reserved_window = await self._admit_turn(run, events)
            try:
                turn = await self._stream_turn(run, events)
            except BaseException:
                await self.limiter.release(run.owner_id, reserved, reserved_window)
                raise

            run = await self._account_turn(run, turn, reserved, reserved_window, events)

            if not turn.tool_calls:
                return await self._complete(run, events)

            run = await self._handle_tool_calls(run, turn.tool_calls, events)
            if run.status != RunStatus.STREAMING:
                return run

    # ── Turn ────────────────────────────────────────────────────

    async def _admit_turn(self, run: AgentRunRead, events: DeltaBatcher) -> tuple[float, str | None]:
        """Take a budget reservation for the next turn.

        The first turn uses the reservation ``start`` already holds.
        """
        cp = run.checkpoint
        if cp.reserved_cost > 0:
            reserved, window = cp.reserved_cost, cp.reserved_window
            cp.reserved_cost, cp.reserved_window = 0.0, None
            await self._save(run, checkpoint=cp)
            return reserved, window

        admission = await self.limiter.admit(run.owner_id)
        if not admission.allowed:
            await events.emit(
                EVENT_RATE_LIMIT,
                {
                    "reason": admission.reason,
                    "reset_at": admission.reset_at.isoformat(),
                    "consumed": admission.window.consumed,
                    "limit": admission.window.limit,
                },
            )
            raise BudgetExceeded(admission.reason or "Budget exceeded", admission.reset_at)
        return admission.reserved, admission.window.key

    async def _stream_turn(self, run: AgentRunRead, events: DeltaBatcher) -> TurnComplete:
        cp = run.checkpoint
        hints = await self.trust.snapshot(
            run.owner_id,
            [ToolCallRequest(call_id="", tool_name=t.name, integration_id=t.integration_id) for t in cp.tools],
        )
        trusted = [t.name for t in cp.tools if hints.trusts(t.name, t.integration_id)]

        timeout = self.settings.provider_turn_timeout_seconds
        complete: TurnComplete | None = None
        try:
            async with asyncio.timeout(timeout):
                stream = self.provider.stream_turn(
                    system_prompt=cp.system_prompt,
                    messages=cp.messages,
                    tools=cp.tools,
                    trust_hints=trusted,
                    model=cp.model,
                )
                async with aclosing(stream) as items:
                    async for item in items:
                        if isinstance(item, TextDelta):
                            await events.delta(item.text)
                        else:
                            complete = item
        except TimeoutError as e:
            logger.warning("provider_turn_timeout", run_id=run.id, timeout=timeout)
            raise ProviderTimeout(timeout) from e

        if complete is None:
            raise ProviderError("stream ended without a completed turn")
        return complete

    async def _account_turn(
        self,
        run: AgentRunRead,
        turn: TurnComplete,
        reserved: float,
        reserved_window: str | None,
        events: DeltaBatcher,
    ) -> AgentRunRead:
        cp = run.checkpoint
        usage = turn.usage
        cost = calculate_cost(cp.model, usage.input_units, usage.output_units)
        window = await self.limiter.record(
            run.owner_id,
            run.id,
            usage.input_units,
            usage.output_units,
            cost,
            model=cp.model,
            reserved=reserved,
            reserved_window=reserved_window,
        )

        cp.rounds += 1
        cp.messages.append(turn.assistant_message())
        run = await self._save(
            run,
            checkpoint=cp,
            accumulated_output=run.accumulated_output + turn.text,
            tokens_input=run.tokens_input + usage.input_units,
            tokens_output=run.tokens_output + usage.output_units,
            cost=run.cost + cost,
            rounds=cp.rounds,
        )
        await events.emit(
            EVENT_USAGE_UPDATE,
            {
                "input_units": usage.input_units,
                "output_units": usage.output_units,
                "cost": cost,
                "run_cost": run.cost,
                "consumed": window.consumed,
                "limit": window.limit,
                "reset_at": window.reset_at.isoformat(),
            },
        )
        return run

    # ── Tool calls ──────────────────────────────────────────────

    async def _handle_tool_calls(
        self,
        run: AgentRunRead,
        calls: list[ToolCallRequest],
        events: DeltaBatcher,
    ) -> AgentRunRead:
        """Classify, run the trusted calls, interrupt for the rest."""
        await self.tool_calls.add(run.id, calls, round=run.checkpoint.rounds)

        trust = await self.trust.snapshot(run.owner_id, calls)
        split = classify(calls, trust)
        needs = {c.call_id for c in split.needs_approval}
        for call in calls:
            await events.emit(
                EVENT_TOOL_CALL_PROPOSED,
                {
                    **call.model_dump(mode="json", exclude={"decision"}),
                    "requires_approval": call.call_id in needs,
                },
            )

        logger.info(
            "tool_calls_classified",
            run_id=run.id,
            auto_approved=[c.tool_name for c in split.auto_approved],
            needs_approval=[c.tool_name for c in split.needs_approval],
        )

        for call in split.auto_approved:
            await self._execute(run, call, events)
            if await self._cancel_requested(run.id):
                return await self._cancel_driven(run, events)

        if not split.needs_approval:
            return await self._save(run, checkpoint=run.checkpoint)

        if await self._cancel_requested(run.id):
            return await self._cancel_driven(run, events)

        interrupted = await self.runs.compare_and_set(
            run.id,
            expected=[RunStatus.STREAMING],
            status=RunStatus.INTERRUPTED,
            pending_tool_calls=split.needs_approval,
            checkpoint=run.checkpoint,
        )
        if interrupted is None:
            raise _RunLost()

        await events.emit(
            EVENT_INTERRUPT,
            {
                "run_id": run.id,
                "pending_tool_calls": [
                    c.model_dump(mode="json", exclude={"decision"}) for c in split.needs_approval
                ],
            },
        )
        await events.emit(EVENT_END, {"status": RunStatus.INTERRUPTED.value})
        logger.info("run_interrupted", run_id=run.id, pending=len(split.needs_approval))
        return interrupted

    async def _apply_decisions(self, run: AgentRunRead, events: DeltaBatcher) -> AgentRunRead:
        """Execute approved calls and answer denied ones, in proposal order."""
        for call in run.pending_tool_calls:
            if call.decision is not None and call.decision.approves:
                await self._execute(run, call, events)
            else:
                run.checkpoint.messages.append(
                    {"role": "tool", "tool_call_id": call.call_id, "content": DENIED_RESULT}
                )
                await self.tool_calls.resolve(
                    run.id, call.call_id, disposition=ToolCallDisposition.DENIED, result=DENIED_RESULT
                )
                await events.emit(
                    EVENT_TOOL_CALL_RESULT,
                    {
                        "call_id": call.call_id,
                        "tool_name": call.tool_name,
                        "disposition": ToolCallDisposition.DENIED.value,
                        "result": DENIED_RESULT,
                    },
                )
            if await self._cancel_requested(run.id):
                return await self._cancel_driven(run, events)

        return await self._save(run, pending_tool_calls=[], checkpoint=run.checkpoint)

    async def _execute(self, run: AgentRunRead, call: ToolCallRequest, events: DeltaBatcher) -> None:
        cp = run.checkpoint
        failures = cp.failure_counts.get(call.tool_name, 0)
        if failures >= self.settings.tool_max_failures_per_call:
            content = json.dumps(
                {"error": f"{call.tool_name} failed {failures} times in this run and was not called again."}
            )
            disposition = ToolCallDisposition.FAILED
        else:
            result = await self.executor.execute(call, owner_id=run.owner_id)
            content = result.to_tool_message()
            if result.success:
                disposition = ToolCallDisposition.EXECUTED
            else:
                disposition = ToolCallDisposition.FAILED
                cp.failure_counts[call.tool_name] = failures + 1

        cp.messages.append({"role": "tool", "tool_call_id": call.call_id, "content": content})
        await self.tool_calls.resolve(run.id, call.call_id, disposition=disposition, result=content)
        await events.emit(
            EVENT_TOOL_CALL_RESULT,
            {
                "call_id": call.call_id,
                "tool_name": call.tool_name,
                "disposition": disposition.value,
                "result": content,
            },
        )

    # ── Terminal transitions ────────────────────────────────────

    async def _complete(self, run: AgentRunRead, events: DeltaBatcher) -> AgentRunRead:
        completed = await self.runs.compare_and_set(
            run.id,
            expected=[RunStatus.STREAMING],
            status=RunStatus.COMPLETED,
            pending_tool_calls=[],
            completed_at=_now(),
        )
        if completed is None:
            raise _RunLost()
        await self.catalog.append_message(
            run.thread_id, role="assistant", content=completed.accumulated_output, run_id=run.id
        )
        await events.emit(EVENT_END, {"status": RunStatus.COMPLETED.value})
        logger.info(
            "run_completed",
            run_id=run.id,
            rounds=completed.rounds,
            tokens_in=completed.tokens_input,
            tokens_out=completed.tokens_output,
            cost=completed.cost,
        )
        return completed

    async def _fail(self, run: AgentRunRead, error: AgentRunError, events: DeltaBatcher) -> AgentRunRead:
        await self.tool_calls.supersede_pending(run.id)
        failed = await self.runs.compare_and_set(
            run.id,
            expected=[RunStatus.STREAMING],
            status=RunStatus.FAILED,
            pending_tool_calls=[],
            error_code=error.code,
            failure_reason=error.message,
            completed_at=_now(),
        )
        if failed is None:
            return await self._finish_lost(run.id, events)
        await self._release_reservation(failed)
        await events.emit(EVENT_ERROR, {"code": error.code, "message": error.message})
        await events.emit(EVENT_END, {"status": RunStatus.FAILED.value})
        logger.warning("run_failed", run_id=run.id, error_code=error.code, reason=error.message)
        return failed

    async def _cancel_driven(self, run: AgentRunRead, events: DeltaBatcher) -> AgentRunRead:
        await self.tool_calls.supersede_pending(run.id)
        canceled = await self.runs.compare_and_set(
            run.id,
            expected=[RunStatus.STREAMING],
            status=RunStatus.CANCELED,
            pending_tool_calls=[],
            checkpoint=run.checkpoint,
            completed_at=_now(),
        )
        if canceled is None:
            return await self._finish_lost(run.id, events)
        await self._release_reservation(canceled)
        await events.emit(EVENT_END, {"status": RunStatus.CANCELED.value})
        logger.info("run_canceled", run_id=run.id, rounds=canceled.rounds)
        return canceled

    async def _finish_lost(self, run_id: str, events: DeltaBatcher) -> AgentRunRead:
        """Close the segment for a run someone else moved out of streaming."""
        await self.tool_calls.supersede_pending(run_id)
        current = await self.runs.get(run_id)
        if current is None:
            raise NotFound("run", run_id)
        await events.emit(EVENT_END, {"status": current.status.value})
        logger.info("run_drive_abandoned", run_id=run_id, status=current.status.value)
        return current

    # ── Helpers ─────────────────────────────────────────────────

    async def _save(self, run: AgentRunRead, **changes) -> AgentRunRead:
        saved = await self.runs.compare_and_set(run.id, expected=[RunStatus.STREAMING], **changes)
        if saved is None:
            raise _RunLost()
        return saved

    async def _cancel_requested(self, run_id: str) -> bool:
        current = await self.runs.get(run_id)
        return current is None or current.cancel_requested

    async def _release_reservation(self, run: AgentRunRead) -> None:
        cp = run.checkpoint
        if cp.reserved_cost > 0:
            await self.limiter.release(run.owner_id, cp.reserved_cost, cp.reserved_window)
