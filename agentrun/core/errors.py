"""Error taxonomy for run orchestration.

Every error carries a stable machine ``code`` and a human-readable
``message``.  The message is what ends up in ``failure_reason`` on a run
and in ``error`` stream events; the code is for clients and logs.

- Admission errors: raised before any run exists, never retried automatically.
- Turn errors: terminate a run as ``failed``.
- Approval errors: rejected synchronously on resume, run left untouched.
- Tool execution errors: fed back to the model as a tool result.
"""

from __future__ import annotations

from datetime import datetime


class AgentRunError(Exception):
    """Base class for all orchestration errors."""

    code: str = "agent_run_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ── Admission ───────────────────────────────────────────────────────


class AdmissionError(AgentRunError):
    code = "admission_error"


class BudgetExceeded(AdmissionError):
    """Raised when the rate limiter denies admission."""

    code = "budget_exceeded"

    def __init__(self, reason: str, reset_at: datetime) -> None:
        self.reason = reason
        self.reset_at = reset_at
        super().__init__(
            f"{reason}. Your budget resets at {reset_at.isoformat()}."
        )


class NotFound(AdmissionError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


# ── Turn ────────────────────────────────────────────────────────────


class TurnError(AgentRunError):
    code = "turn_error"


class ProviderTimeout(TurnError):
    code = "provider_timeout"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"The model took too long to respond (over {timeout:g}s).")


class ProviderError(TurnError):
    code = "provider_error"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__("The model provider failed while generating a response.")


class RoundLimitExceeded(TurnError):
    code = "round_limit_exceeded"

    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        super().__init__(
            f"The agent did not finish within {max_rounds} tool rounds and was stopped."
        )


# ── Approval ────────────────────────────────────────────────────────


class ApprovalError(AgentRunError):
    code = "approval_error"


class InvalidState(ApprovalError):
    code = "invalid_state"

    def __init__(self, run_id: str, status: str | None = None) -> None:
        self.run_id = run_id
        self.status = status
        if status is None:
            msg = f"Run {run_id} was modified concurrently; reload and retry"
        else:
            msg = f"Run {run_id} is {status}, not interrupted"
        super().__init__(msg)


class UnknownCall(ApprovalError):
    code = "unknown_call"

    def __init__(self, call_ids: list[str]) -> None:
        self.call_ids = call_ids
        super().__init__(f"Unknown tool call(s): {', '.join(call_ids)}")


# ── Tools ───────────────────────────────────────────────────────────


class ToolExecutionError(AgentRunError):
    """Raised by tool handlers.  ``transient`` failures may be retried once."""

    code = "tool_execution_error"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


# ── Worker ──────────────────────────────────────────────────────────


class WorkerAborted(TurnError):
    code = "worker_aborted"

    def __init__(self) -> None:
        super().__init__("The run was interrupted by a worker shutdown or timeout.")


class StuckRun(TurnError):
    code = "watchdog_timeout"

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        super().__init__(f"The run made no progress for over {threshold}s and was stopped.")
