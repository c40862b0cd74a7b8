"""Enclosure loop nodes: OpenSCAD generation, review, decision and acceptance."""

import logging
import re

from hdo import prompts
from hdo.nodes.review_loop import (
    generation_failure,
    generation_reset,
    make_accept_node,
    make_decide_node,
    run_review,
)
from hdo.nodes.shared import NodeContext
from hdo.state import OrchestratorState, StateUpdate, create_history_item
from hdo.utils.parsing import extract_code_block

logger = logging.getLogger(__name__)

_DIMENSION_PATTERNS = {
    "case_w": re.compile(r"case_w(?:idth)?\s*=\s*([\d.]+)"),
    "case_h": re.compile(r"case_h(?:eight)?\s*=\s*([\d.]+)"),
    "case_d": re.compile(r"case_d(?:epth)?\s*=\s*([\d.]+)"),
    "wall": re.compile(r"wall(?:_thickness)?\s*=\s*([\d.]+)"),
}


def extract_dimensions(code: str) -> dict[str, float]:
    dims = {}
    for name, pattern in _DIMENSION_PATTERNS.items():
        match = pattern.search(code)
        if match:
            try:
                dims[name] = float(match.group(1))
            except ValueError:
                continue
    return dims


def extract_features(code: str) -> dict:
    features = {}
    buttons = re.findall(r"button|btn", code, re.IGNORECASE)
    if buttons:
        features["button_count"] = len(buttons)
    if re.search(r"usb|type.?c", code, re.IGNORECASE):
        features["has_usb_cutout"] = True
    leds = re.findall(r"led|light.?pipe", code, re.IGNORECASE)
    if leds:
        features["led_count"] = len(leds)
    if re.search(r"mount|screw|boss", code, re.IGNORECASE):
        features["has_mounting_holes"] = True
    return features


async def generate_enclosure(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Generate OpenSCAD source, folding in feedback from a rejected attempt."""
    update = generation_reset(state, "enclosure")
    attempt = update["enclosure_attempts"]
    final_spec, pcb = state.get("final_spec"), state.get("pcb")
    if not final_spec or not pcb:
        return generation_failure(
            state,
            "enclosure",
            update,
            "Spec and PCB must be complete before enclosure generation",
            "Missing spec or PCB",
        )

    feedback = state.get("enclosure_feedback")
    user_prompt = prompts.with_feedback(prompts.build_enclosure_prompt(final_spec, pcb), feedback)

    try:
        response = await ctx.text.chat(
            prompts.ENCLOSURE_SYSTEM_PROMPT,
            user_prompt,
            temperature=0.3,
            max_tokens=4096,
            project_id=state["project_id"],
            model=ctx.generator_model,
        )
    except Exception as exc:
        logger.warning("[Nodes] Enclosure generation failed: %s", exc)
        return generation_failure(state, "enclosure", update, f"Enclosure generation failed: {exc}", str(exc))

    code = extract_code_block(response.content, "openscad")
    update["enclosure"] = {
        "openscad_code": code,
        "dimensions": extract_dimensions(code),
        "features": extract_features(code),
        "accepted": False,
    }
    update["history"] = [
        create_history_item(
            "tool_result",
            "enclosure",
            "generate_enclosure",
            f"Generated enclosure (attempt {attempt})",
            {"code_length": len(code), "is_revision": bool(feedback)},
        )
    ]
    return update


async def review_enclosure(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    enclosure = state.get("enclosure") or {}
    user_prompt = None
    if enclosure.get("openscad_code") and state.get("final_spec"):
        user_prompt = prompts.build_enclosure_review_prompt(
            state["final_spec"], state.get("pcb") or {}, enclosure["openscad_code"]
        )
    return await run_review(state, ctx, "enclosure", prompts.ENCLOSURE_REVIEW_PROMPT, user_prompt)


decide_enclosure = make_decide_node("enclosure")
accept_enclosure = make_accept_node("enclosure")
