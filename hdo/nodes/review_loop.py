"""Generate -> review -> decide -> accept loop shared by enclosure and firmware.

Each loop stage owns four state fields: ``<stage>`` (artifact),
``<stage>_review``, ``<stage>_attempts`` and ``<stage>_feedback``.

Decision policy (pure, see ``decide``):
  score >= ACCEPT_THRESHOLD and verdict == "accept"   -> accept
  otherwise, attempts < MAX_LOOP_ATTEMPTS              -> retry (issues become feedback)
  otherwise                                            -> escalate to a human
"""

import logging
from typing import Literal

from hdo.nodes.shared import ESCALATION_OPTIONS, NodeContext, format_feedback, validate_cross_stage
from hdo.state import OrchestratorState, ReviewResult, StateUpdate, create_history_item, utc_now
from hdo.utils.parsing import parse_json

logger = logging.getLogger(__name__)

ACCEPT_THRESHOLD = 85
MAX_LOOP_ATTEMPTS = 3
VALID_VERDICTS = {"accept", "revise"}

Decision = Literal["accept", "retry", "escalate"]

# Cross-stage check run when a loop artifact is accepted.
_ACCEPT_CHECKS = {"enclosure": "pcb_fits_enclosure", "firmware": "firmware_matches_pcb"}


def decide(
    score: int,
    verdict: str,
    attempts: int,
    threshold: int = ACCEPT_THRESHOLD,
    max_attempts: int = MAX_LOOP_ATTEMPTS,
) -> Decision:
    """Pure loop policy over (score, verdict, attempts)."""
    if score >= threshold and verdict == "accept":
        return "accept"
    if attempts < max_attempts:
        return "retry"
    return "escalate"


def loop_limits(config: dict) -> tuple[int, int]:
    """Return (accept_threshold, max_loop_attempts) from config, with module defaults."""
    return (
        config.get("accept_threshold", ACCEPT_THRESHOLD),
        config.get("max_loop_attempts", MAX_LOOP_ATTEMPTS),
    )


def decision_for(state: OrchestratorState, stage: str, config: dict) -> Decision | None:
    """Apply ``decide`` to the stage's current review, or None when there is none."""
    review = state.get(f"{stage}_review")
    if review is None:
        return None
    threshold, max_attempts = loop_limits(config)
    return decide(review["score"], review["verdict"], state.get(f"{stage}_attempts", 0), threshold, max_attempts)


def fallback_review(message: str, raw: str = "") -> ReviewResult:
    return {
        "score": 70,
        "verdict": "revise",
        "issues": [{"severity": "warning", "description": message, "suggestion": "Re-run review"}],
        "positives": [],
        "summary": raw[:200],
    }


def normalize_review(data: dict) -> ReviewResult:
    """Coerce a parsed reviewer response into a complete ReviewResult."""
    try:
        score = int(data.get("score") or 0)
    except (TypeError, ValueError):
        score = 0
    verdict = data.get("verdict")
    issues = [
        {
            "severity": i.get("severity", "info"),
            "description": i.get("description", ""),
            "suggestion": i.get("suggestion", ""),
        }
        for i in data.get("issues") or []
        if isinstance(i, dict)
    ]
    return {
        "score": max(0, min(100, score)),
        "verdict": verdict if verdict in VALID_VERDICTS else "revise",
        "issues": issues,
        "positives": list(data.get("positives") or []),
        "summary": data.get("summary") or "Review completed",
    }


async def run_review(
    state: OrchestratorState,
    ctx: NodeContext,
    stage: str,
    system_prompt: str,
    user_prompt: str | None,
) -> StateUpdate:
    """Call the reviewer and store a review for *stage*.

    ``user_prompt`` is None when there is no artifact to review; that, a
    service failure and unparseable output all produce a ``revise`` review so
    the loop stays bounded by its attempt cap.
    """
    action = f"review_{stage}"
    if user_prompt is None:
        review = fallback_review(f"No {stage} artifact to review")
        review["score"] = 0
        return {
            f"{stage}_review": review,
            "history": [create_history_item("error", stage, action, f"No {stage} artifact to review")],
        }

    try:
        response = await ctx.text.chat(
            system_prompt,
            user_prompt,
            temperature=0.2,
            max_tokens=2048,
            project_id=state["project_id"],
            model=ctx.reviewer_model,
        )
    except Exception as exc:
        logger.warning("[Nodes] %s review failed: %s", stage, exc)
        return {
            f"{stage}_review": fallback_review(f"Review failed: {exc}"),
            "error": f"{stage.capitalize()} review failed: {exc}",
            "history": [create_history_item("error", stage, action, str(exc))],
        }

    data = parse_json(response.content)
    if data is None:
        return {
            f"{stage}_review": fallback_review("Could not parse review response", response.content),
            "history": [
                create_history_item(
                    "tool_result", stage, action, "Review completed (parse fallback)", {"parse_error": True}
                )
            ],
        }

    review = normalize_review(data)
    return {
        f"{stage}_review": review,
        "history": [
            create_history_item(
                "tool_result",
                stage,
                action,
                f"Review score: {review['score']}, verdict: {review['verdict']}",
                {"score": review["score"], "verdict": review["verdict"], "issue_count": len(review["issues"])},
            )
        ],
    }


def make_decide_node(stage: str):
    """Build ``decide_<stage>``: records the decision and prepares retry or escalation."""

    async def decide_node(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
        action = f"decide_{stage}"
        review = state.get(f"{stage}_review")
        if review is None:
            return {
                "history": [
                    create_history_item("progress", stage, action, "No review found, routing to review")
                ]
            }

        attempts = state.get(f"{stage}_attempts", 0)
        decision = decision_for(state, stage, ctx.config)
        details = {"score": review["score"], "verdict": review["verdict"], "attempts": attempts, "decision": decision}

        if decision == "accept":
            return {
                f"{stage}_feedback": None,
                "history": [
                    create_history_item(
                        "progress", stage, action, f"{stage.capitalize()} accepted (score: {review['score']})", details
                    )
                ],
            }

        if decision == "retry":
            # Feedback still set here was never consumed by a generation call.
            feedback = state.get(f"{stage}_feedback") or format_feedback(review["issues"])
            return {
                f"{stage}_feedback": feedback,
                "history": [
                    create_history_item(
                        "progress",
                        stage,
                        action,
                        f"Regenerating {stage} (score: {review['score']}, attempt {attempts + 1})",
                        details,
                    )
                ],
            }

        logger.info("[Nodes] %s loop exhausted after %d attempts, escalating", stage, attempts)
        return {
            "escalation": {
                "stage": stage,
                "question": (
                    f"The {stage} did not pass review after {attempts} attempts "
                    f"(last score {review['score']}). How should we continue?"
                ),
                "options": list(ESCALATION_OPTIONS),
                "issues": review["issues"],
            },
            "history": [
                create_history_item(
                    "progress", stage, action, f"Max attempts ({attempts}) reached, requesting user input", details
                )
            ],
        }

    decide_node.__name__ = f"decide_{stage}"
    return decide_node


def make_accept_node(stage: str):
    """Build ``accept_<stage>``: freezes the artifact and records a cross-stage check."""

    async def accept_node(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
        action = f"accept_{stage}"
        artifact = state.get(stage)
        review = state.get(f"{stage}_review") or {}
        if not artifact:
            return {
                "escalation": None,
                "error": f"No {stage} to accept",
                "history": [create_history_item("error", stage, action, f"No {stage} available")],
            }

        accepted = {**artifact, "accepted": True, "accepted_at": utc_now()}
        check = validate_cross_stage({**state, stage: accepted}, _ACCEPT_CHECKS[stage])
        return {
            stage: accepted,
            "escalation": None,
            "history": [
                create_history_item(
                    "tool_result",
                    stage,
                    action,
                    f"{stage.capitalize()} accepted with score {review.get('score', 'N/A')}",
                    {"accepted": True, "score": review.get("score")},
                ),
                *check["history"],
            ],
        }

    accept_node.__name__ = f"accept_{stage}"
    return accept_node


def generation_reset(state: OrchestratorState, stage: str) -> StateUpdate:
    """Fields every ``generate_<stage>`` call sets: bump attempts, clear review/feedback/escalation."""
    return {
        f"{stage}_attempts": state.get(f"{stage}_attempts", 0) + 1,
        f"{stage}_review": None,
        f"{stage}_feedback": None,
        "escalation": None,
    }


def generation_failure(
    state: OrchestratorState, stage: str, update: StateUpdate, message: str, detail: str
) -> StateUpdate:
    """Finish a ``generate_<stage>`` call that produced nothing.

    The previous draft is dropped so the reviewer cannot pass it again, and
    the pending feedback is kept for the next generation.
    """
    update[stage] = None
    update[f"{stage}_feedback"] = state.get(f"{stage}_feedback")
    update["error"] = message
    update["history"] = [create_history_item("error", stage, f"generate_{stage}", detail)]
    return update
