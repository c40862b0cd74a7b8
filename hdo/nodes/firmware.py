"""Firmware loop nodes: source generation, review, decision and acceptance."""

import logging

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
from hdo.utils.parsing import extract_code_block, parse_json

logger = logging.getLogger(__name__)

VALID_LANGUAGES = {"cpp", "c", "h", "json"}


def parse_firmware_files(content: str) -> list[dict]:
    """Parse ``{"files": [...]}`` from a response, else wrap the code as src/main.cpp."""
    data = parse_json(content) or {}
    files = [
        {
            "path": f["path"],
            "content": f.get("content", ""),
            "language": f.get("language") if f.get("language") in VALID_LANGUAGES else "cpp",
        }
        for f in data.get("files") or []
        if isinstance(f, dict) and f.get("path")
    ]
    if files:
        return files
    return [{"path": "src/main.cpp", "content": extract_code_block(content, "cpp"), "language": "cpp"}]


async def generate_firmware(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Generate firmware sources, folding in feedback from a rejected attempt."""
    update = generation_reset(state, "firmware")
    attempt = update["firmware_attempts"]
    final_spec, pcb = state.get("final_spec"), state.get("pcb")
    if not final_spec or not pcb:
        return generation_failure(
            state,
            "firmware",
            update,
            "Spec and PCB must be complete before firmware generation",
            "Missing spec or PCB",
        )

    feedback = state.get("firmware_feedback")
    user_prompt = prompts.with_feedback(prompts.build_firmware_prompt(final_spec, pcb), feedback)

    try:
        response = await ctx.text.chat(
            prompts.FIRMWARE_SYSTEM_PROMPT,
            user_prompt,
            temperature=0.3,
            max_tokens=8192,
            project_id=state["project_id"],
            model=ctx.generator_model,
        )
    except Exception as exc:
        logger.warning("[Nodes] Firmware generation failed: %s", exc)
        return generation_failure(state, "firmware", update, f"Firmware generation failed: {exc}", str(exc))

    files = parse_firmware_files(response.content)
    update["firmware"] = {"files": files, "build_status": "pending", "accepted": False}
    update["history"] = [
        create_history_item(
            "tool_result",
            "firmware",
            "generate_firmware",
            f"Generated firmware (attempt {attempt})",
            {"file_count": len(files), "file_names": [f["path"] for f in files], "is_revision": bool(feedback)},
        )
    ]
    return update


async def review_firmware(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    firmware = state.get("firmware") or {}
    user_prompt = None
    if firmware.get("files") and state.get("final_spec"):
        user_prompt = prompts.build_firmware_review_prompt(
            state["final_spec"], state.get("pcb") or {}, firmware["files"]
        )
    return await run_review(state, ctx, "firmware", prompts.FIRMWARE_REVIEW_PROMPT, user_prompt)


decide_firmware = make_decide_node("firmware")
accept_firmware = make_accept_node("firmware")
