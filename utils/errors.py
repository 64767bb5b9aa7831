"""
Error taxonomy shared by the flow engine, the chat-bot driver and transports.

Every error carries a stable `kind` string so callers (and logs) can branch
on the category without importing the concrete class:

  config_error      malformed flow, unknown step, missing param, cycles
  template_error    unresolved variable, unterminated ${
  dispatch_error    unknown function, wrong arity, non-coercible argument
  condition_error   unparseable expression, unknown variable
  transport_error   HTTP failure, non-2xx, timeout
  agent_error       vendor API failure, missing model or client
  validation_error  user input failed a form rule (never fatal)
  state_error       state store unreachable, malformed frame
"""
from __future__ import annotations

from typing import Any, Optional


class FlowError(Exception):
    """Base exception for the conversational flow engine."""

    kind: str = "flow_error"

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "error": self.message, "retryable": self.retryable}


class ConfigError(FlowError):
    kind = "config_error"


class TemplateError(FlowError):
    kind = "template_error"


class DispatchError(FlowError):
    kind = "dispatch_error"


class HandlerError(DispatchError):
    """A registered handler returned (result, error) with a non-empty error."""

    def __init__(self, function: str, error: Any, result: Any = None):
        self.function = function
        self.error = error
        self.result = result
        super().__init__(f"function {function} failed: {error}")


class ConditionError(FlowError):
    kind = "condition_error"


class TransportError(FlowError):
    """
    Outbound I/O failure.

    `failure` is one of not_authorized | rate_limited | transient | permanent.
    """

    kind = "transport_error"

    def __init__(
        self,
        message: str,
        failure: str = "permanent",
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        self.failure = failure
        self.status_code = status_code
        self.result: Optional[dict[str, Any]] = None
        if retryable is None:
            retryable = failure in ("rate_limited", "transient")
        super().__init__(message, retryable=retryable)


def failure_for_status(status_code: int) -> str:
    """Map an HTTP status to the transport failure taxonomy."""
    if status_code in (401, 403):
        return "not_authorized"
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500 or status_code in (408, 425):
        return "transient"
    return "permanent"


class DeadlineExceeded(FlowError):
    kind = "deadline_exceeded"

    def __init__(self, message: str = "execution deadline exceeded"):
        super().__init__(message, retryable=True)


class AgentError(FlowError):
    kind = "agent_error"

    def __init__(self, message: str, vendor: str = "", retryable: bool = False):
        self.vendor = vendor
        super().__init__(f"{vendor}: {message}" if vendor else message, retryable=retryable)


class InputValidationError(FlowError):
    """User input rejected by a form rule. Carries the user-facing message."""

    kind = "validation_error"

    def __init__(self, message: str, field: str = ""):
        self.field = field
        super().__init__(message)


class StateError(FlowError):
    kind = "state_error"

    def __init__(self, message: str, key: str = "", retryable: bool = True):
        self.key = key
        super().__init__(message, retryable=retryable)


class ParallelExecutionError(FlowError):
    """Aggregates failures from the children of one parallel step."""

    kind = "parallel_error"

    def __init__(self, step: str, errors: dict[str, Exception]):
        self.step = step
        self.errors = errors
        lines = [f"error in parallel step {name}: {err}" for name, err in errors.items()]
        super().__init__("parallel execution errors:\n" + "\n".join(lines))
