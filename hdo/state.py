"""Orchestrator state: the single record threaded through every node.

Nodes never mutate the state they receive. They return a sparse
``StateUpdate`` and the driver folds it in with ``merge_state``.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, TypedDict

from hdo.errors import FinalSpecLockedError

Mode = Literal["autonomous", "assisted", "manual"]
Stage = Literal["spec", "pcb", "enclosure", "firmware", "export"]
StageStatus = Literal["pending", "in_progress", "complete"]
RunStatus = Literal["running", "awaiting_input", "paused", "complete", "rejected", "error"]
HistoryType = Literal[
    "tool_call", "tool_result", "validation", "error", "fix", "progress", "thinking"
]

MODES: tuple[str, ...] = ("autonomous", "assisted", "manual")
STAGE_ORDER: tuple[str, ...] = ("spec", "pcb", "enclosure", "firmware", "export")
TERMINAL_STATUSES = {"complete", "rejected", "error"}


class StageState(TypedDict, total=False):
    status: StageStatus
    completed_at: str


class HistoryItem(TypedDict, total=False):
    id: str
    timestamp: str
    type: HistoryType
    stage: Stage
    action: str
    result: str
    details: dict


class ReviewIssue(TypedDict, total=False):
    severity: str  # critical | warning | info
    description: str
    suggestion: str


class ReviewResult(TypedDict):
    score: int  # 0-100
    verdict: Literal["accept", "revise"]
    issues: list[ReviewIssue]
    positives: list[str]
    summary: str


class GeneratedName(TypedDict):
    name: str
    style: str
    reasoning: str


class OrchestratorState(TypedDict):
    project_id: str  # Also the checkpoint thread_id.
    mode: Mode  # Fixed for the lifetime of a run.
    status: RunStatus
    current_stage: Stage  # Advanced only by mark-complete nodes.
    stages: dict[str, StageState]
    description: str
    available_blocks: list[dict]  # Read-only catalog input.

    # Spec stage
    feasibility: Optional[dict]
    open_questions: list[dict]
    decisions: list[dict]  # Append-only.
    blueprints: list[dict]
    selected_blueprint: Optional[int]
    generated_names: list[GeneratedName]
    selected_name: Optional[str]
    final_spec: Optional[dict]  # Write-once once locked.

    # PCB stage
    pcb: Optional[dict]
    pcb_validation: Optional[dict]

    # Enclosure loop
    enclosure: Optional[dict]
    enclosure_review: Optional[ReviewResult]
    enclosure_attempts: int
    enclosure_feedback: Optional[str]  # Consumed and cleared by generate_enclosure.

    # Firmware loop
    firmware: Optional[dict]
    firmware_review: Optional[ReviewResult]
    firmware_attempts: int
    firmware_feedback: Optional[str]  # Consumed and cleared by generate_firmware.

    # Human-in-the-loop
    escalation: Optional[dict]
    pending_input: Optional[dict]
    human_input: Optional[dict]

    history: list[HistoryItem]  # Append-only, never truncated.
    completed_stages: list[str]  # Union-merged, kept in STAGE_ORDER.
    error: Optional[str]
    iteration_count: int
    started_at: Optional[str]
    completed_at: Optional[str]


# Every key is optional in a node's return value.
StateUpdate = TypedDict("StateUpdate", OrchestratorState.__annotations__, total=False)

STATE_KEYS = frozenset(OrchestratorState.__annotations__)


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def create_history_item(
    type: HistoryType,
    stage: str,
    action: str,
    result: str | None = None,
    details: dict | None = None,
) -> HistoryItem:
    """Create a history entry with a generated id and timestamp."""
    item: HistoryItem = {
        "id": f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
        "timestamp": utc_now(),
        "type": type,
        "stage": stage,
        "action": action,
    }
    if result is not None:
        item["result"] = result
    if details is not None:
        item["details"] = details
    return item


def default_stages() -> dict[str, StageState]:
    return {
        "spec": {"status": "in_progress"},
        "pcb": {"status": "pending"},
        "enclosure": {"status": "pending"},
        "firmware": {"status": "pending"},
        "export": {"status": "pending"},
    }


def initial_state(
    project_id: str,
    mode: Mode,
    description: str,
    available_blocks: list[dict],
) -> OrchestratorState:
    """Build a fresh state for a new design project."""
    return {
        "project_id": project_id,
        "mode": mode,
        "status": "running",
        "current_stage": "spec",
        "stages": default_stages(),
        "description": description,
        "available_blocks": list(available_blocks),
        "feasibility": None,
        "open_questions": [],
        "decisions": [],
        "blueprints": [],
        "selected_blueprint": None,
        "generated_names": [],
        "selected_name": None,
        "final_spec": None,
        "pcb": None,
        "pcb_validation": None,
        "enclosure": None,
        "enclosure_review": None,
        "enclosure_attempts": 0,
        "enclosure_feedback": None,
        "firmware": None,
        "firmware_review": None,
        "firmware_attempts": 0,
        "firmware_feedback": None,
        "escalation": None,
        "pending_input": None,
        "human_input": None,
        "history": [],
        "completed_stages": [],
        "error": None,
        "iteration_count": 0,
        "started_at": utc_now(),
        "completed_at": None,
    }


# --- Merging ---


def _concat(prev: list, new: list) -> list:
    return list(prev or []) + list(new or [])


def _union_stages(prev: list, new: list) -> list:
    seen = set(prev or []) | set(new or [])
    return [stage for stage in STAGE_ORDER if stage in seen]


def _merge_stages(prev: dict, new: dict) -> dict:
    merged = dict(prev or {})
    merged.update(new or {})
    return merged


_REDUCERS = {
    "history": _concat,
    "decisions": _concat,
    "completed_stages": _union_stages,
    "stages": _merge_stages,
}


def is_spec_locked(state: OrchestratorState) -> bool:
    final_spec = state.get("final_spec")
    return bool(final_spec and final_spec.get("locked"))


def merge_state(state: OrchestratorState, update: StateUpdate) -> OrchestratorState:
    """Fold a node's partial update into the state, field by field.

    Raises KeyError for fields the state does not define and
    FinalSpecLockedError when the update would replace a locked final spec.
    """
    unknown = set(update) - STATE_KEYS
    if unknown:
        raise KeyError(f"Unknown state fields in update: {sorted(unknown)}")

    if "final_spec" in update and is_spec_locked(state):
        if update["final_spec"] != state["final_spec"]:
            raise FinalSpecLockedError("final_spec is locked and cannot be replaced")

    merged = dict(state)
    for key, value in update.items():
        reducer = _REDUCERS.get(key)
        merged[key] = reducer(state.get(key), value) if reducer else value
    return merged


# --- Project spec conversion ---

_SPEC_FIELDS = (
    "feasibility",
    "open_questions",
    "decisions",
    "blueprints",
    "selected_blueprint",
    "generated_names",
    "selected_name",
    "final_spec",
    "pcb",
    "enclosure",
    "firmware",
)


def state_to_project_spec(state: OrchestratorState) -> dict[str, Any]:
    """Convert state into the persistable project-spec shape."""
    spec: dict[str, Any] = {"description": state.get("description", "")}
    for key in _SPEC_FIELDS:
        spec[key] = state.get(key)
    spec["stages"] = {stage: dict(state["stages"].get(stage, {})) for stage in STAGE_ORDER}
    return spec


def state_from_project_spec(
    project_id: str,
    mode: Mode,
    spec: dict[str, Any],
    available_blocks: list[dict],
) -> OrchestratorState:
    """Rehydrate state from an existing (possibly partial) project spec.

    The current stage is the first ``in_progress`` stage, or the stage after
    the last ``complete`` one.
    """
    state = initial_state(project_id, mode, spec.get("description", ""), available_blocks)
    for key in _SPEC_FIELDS:
        if spec.get(key) is not None:
            state[key] = spec[key]

    stages = spec.get("stages") or default_stages()
    state["stages"] = _merge_stages(default_stages(), stages)

    current = "spec"
    for index, stage in enumerate(STAGE_ORDER):
        status = state["stages"][stage].get("status")
        if status == "in_progress":
            current = stage
            break
        if status == "complete" and index < len(STAGE_ORDER) - 1:
            current = STAGE_ORDER[index + 1]
    state["current_stage"] = current
    state["completed_stages"] = [
        stage for stage in STAGE_ORDER if state["stages"][stage].get("status") == "complete"
    ]
    return state
