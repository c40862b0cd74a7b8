"""Nodes shared by every stage: mark-complete, human escalation, cross-stage validation."""

import logging
from dataclasses import dataclass, field

from hdo.services import ImageService, TextService
from hdo.state import (
    STAGE_ORDER,
    OrchestratorState,
    StateUpdate,
    create_history_item,
    state_to_project_spec,
    utc_now,
)
from hdo.utils.validation import validate_cross_stage as run_cross_stage_checks

logger = logging.getLogger(__name__)

ESCALATION_OPTIONS = ["accept", "regenerate", "abort"]


@dataclass
class NodeContext:
    """Everything a node may use besides the state itself."""

    text: TextService
    image: ImageService | None = None
    config: dict = field(default_factory=dict)

    @property
    def generator_model(self) -> str | None:
        return self.config.get("generator_model")

    @property
    def reviewer_model(self) -> str | None:
        return self.config.get("reviewer_model")


def make_mark_complete(stage: str):
    """Build the mark-complete node for *stage*.

    The node completes *stage*, advances ``current_stage`` to the next stage
    (staying on ``export``) and opens that stage.
    """
    index = STAGE_ORDER.index(stage)
    next_stage = STAGE_ORDER[index + 1] if index < len(STAGE_ORDER) - 1 else stage

    async def mark_complete(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
        now = utc_now()
        stages = {stage: {"status": "complete", "completed_at": now}}
        if next_stage != stage:
            stages[next_stage] = {"status": "in_progress"}
        logger.info("[Nodes] Stage %s complete, advancing to %s", stage, next_stage)
        return {
            "stages": stages,
            "completed_stages": [stage],
            "current_stage": next_stage,
            "history": [
                create_history_item(
                    "tool_result",
                    stage,
                    "mark_complete",
                    f"Stage {stage} complete, advancing to {next_stage}",
                    {"completed_stage": stage, "next_stage": next_stage},
                )
            ],
        }

    mark_complete.__name__ = f"mark_{stage}_complete"
    return mark_complete


mark_spec_complete = make_mark_complete("spec")
mark_pcb_complete = make_mark_complete("pcb")
mark_enclosure_complete = make_mark_complete("enclosure")
mark_firmware_complete = make_mark_complete("firmware")
mark_export_complete = make_mark_complete("export")


async def request_user_input(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Resolve an open escalation with a human answer.

    In autonomous mode the first offered option is taken. Otherwise the
    answer comes from ``human_input`` (the driver interrupts before this node
    until one is supplied).
    """
    escalation = state.get("escalation") or {
        "stage": state["current_stage"],
        "question": "How should the run continue?",
        "options": ESCALATION_OPTIONS,
        "issues": [],
    }
    stage = escalation["stage"]
    options = escalation.get("options") or ESCALATION_OPTIONS
    human_input = state.get("human_input")

    if human_input and human_input.get("answer") in options:
        answer = human_input["answer"]
        feedback = human_input.get("feedback")
        source = "user"
    else:
        answer = options[0]
        feedback = None
        source = "auto"

    update: StateUpdate = {
        "escalation": {**escalation, "answer": answer},
        "human_input": None,
        "pending_input": None,
    }

    if answer == "regenerate":
        update[f"{stage}_attempts"] = 0
        update[f"{stage}_feedback"] = feedback or format_feedback(escalation.get("issues", []))
    elif answer == "abort":
        update["error"] = "Aborted by user"

    update["history"] = [
        create_history_item(
            "tool_result",
            stage,
            "request_user_input",
            f"{'Auto-selected' if source == 'auto' else 'User chose'}: {answer}",
            {"question": escalation.get("question"), "answer": answer, "auto_selected": source == "auto"},
        )
    ]
    return update


def format_feedback(issues: list[dict]) -> str:
    lines = []
    for issue in issues:
        line = f"- {issue.get('description', '')}"
        if issue.get("suggestion"):
            line += f": {issue['suggestion']}"
        lines.append(line)
    return "\n".join(lines)


def validate_cross_stage(state: OrchestratorState, check: str = "all") -> StateUpdate:
    """Run a cross-stage check and record the outcome as a ``validation`` history entry.

    Validation never halts the run; failures are only recorded.
    """
    result = validate_cross_stage_result(state, check)
    summary = (
        "Validation passed" if result["valid"] else f"Validation failed: {len(result['issues'])} issues"
    )
    return {
        "history": [
            create_history_item(
                "validation",
                state["current_stage"],
                f"validate_{check}",
                summary,
                {
                    "valid": result["valid"],
                    "issue_count": len(result["issues"]),
                    "issues": [
                        {"severity": i["severity"], "stage": i["stage"], "message": i["message"]}
                        for i in result["issues"]
                    ],
                    "suggestions": result["suggestions"],
                },
            )
        ]
    }


def validate_cross_stage_result(state: OrchestratorState, check: str = "all") -> dict:
    return run_cross_stage_checks(state_to_project_spec(state), check)
