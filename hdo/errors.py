"""Orchestrator error types and the error codes surfaced to callers.

Error codes
-----------
E_MAX_ITERATIONS     Run exceeded the global node-execution cap.
E_NODE_FAILED        A node raised an unexpected exception.
E_CHECKPOINT_FAILED  The checkpoint store could not persist or load state.
E_REJECTED           Feasibility analysis rejected the project (not a failure).
E_ABORTED            A human aborted the run at an escalation point.
"""

from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    E_MAX_ITERATIONS = "E_MAX_ITERATIONS"
    E_NODE_FAILED = "E_NODE_FAILED"
    E_CHECKPOINT_FAILED = "E_CHECKPOINT_FAILED"
    E_REJECTED = "E_REJECTED"
    E_ABORTED = "E_ABORTED"


class OrchestratorError(Exception):
    """Base class for orchestration errors."""

    code: ErrorCode = ErrorCode.E_NODE_FAILED


class MaxIterationsExceeded(OrchestratorError):
    code = ErrorCode.E_MAX_ITERATIONS

    def __init__(self, limit: int):
        super().__init__(f"Orchestration exceeded maximum iterations ({limit})")
        self.limit = limit


class CheckpointPersistenceError(OrchestratorError):
    code = ErrorCode.E_CHECKPOINT_FAILED

    def __init__(self, cause: BaseException):
        super().__init__(f"Checkpoint persistence failed: {cause}")
        self.cause = cause


class NodeExecutionError(OrchestratorError):
    code = ErrorCode.E_NODE_FAILED

    def __init__(self, node: str, cause: BaseException):
        super().__init__(f"Node {node} failed: {cause}")
        self.node = node
        self.cause = cause


class ThreadBusyError(OrchestratorError):
    """Raised when a second run is started on a thread that is already executing."""


class FinalSpecLockedError(OrchestratorError):
    """Raised when an update tries to replace a locked final spec."""
