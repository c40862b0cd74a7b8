"""PCB-stage nodes: block selection and layout validation."""

import logging

from hdo.nodes.shared import NodeContext
from hdo.state import OrchestratorState, StateUpdate, create_history_item
from hdo.utils.blocks import auto_select_blocks
from hdo.utils.validation import validate_pcb_layout, validate_spec_satisfied

logger = logging.getLogger(__name__)


def _net_list(placed_blocks: list[dict], available_blocks: list[dict]) -> list[dict]:
    """Collect GPIO nets declared by the catalog for every placed block."""
    by_slug = {b["slug"]: b for b in available_blocks}
    nets = []
    for placed in placed_blocks:
        for net in by_slug.get(placed["block_slug"], {}).get("nets", []):
            nets.append({**net, "block_slug": placed["block_slug"]})
    return nets


async def select_circuit_blocks(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Place catalog blocks satisfying the locked spec on the board grid."""
    final_spec = state.get("final_spec")
    if not final_spec:
        return {
            "error": "Final spec must be complete before block selection",
            "history": [create_history_item("error", "pcb", "select_blocks", "No final spec available")],
        }

    blocks = state.get("available_blocks", [])
    selection = auto_select_blocks(final_spec, blocks)
    pcb = {
        "placed_blocks": selection["placed_blocks"],
        "board_size": selection["board_size"],
        "net_list": _net_list(selection["placed_blocks"], blocks),
    }
    for warning in selection["warnings"]:
        logger.warning("[Nodes] Block selection: %s", warning)

    return {
        "pcb": pcb,
        "history": [
            create_history_item(
                "tool_result",
                "pcb",
                "select_blocks",
                f"Placed {len(pcb['placed_blocks'])} blocks",
                {
                    "block_count": len(pcb["placed_blocks"]),
                    "board_size": pcb["board_size"],
                    "warnings": selection["warnings"],
                    "reasoning": selection["reasoning"],
                },
            )
        ],
    }


async def validate_pcb(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Check the layout and that it satisfies the spec. Never blocks the run."""
    pcb = state.get("pcb")
    if not pcb or not pcb.get("placed_blocks"):
        return {
            "error": "No PCB layout to validate",
            "history": [create_history_item("error", "pcb", "validate_pcb", "No PCB layout")],
        }

    layout = validate_pcb_layout(pcb, state.get("available_blocks", []))
    coverage = validate_spec_satisfied(state.get("final_spec"), pcb)
    issues = layout["issues"] + coverage["issues"]
    errors = [i["message"] for i in issues if i["severity"] == "error"]
    warnings = [i["message"] for i in issues if i["severity"] != "error"]
    valid = not errors

    return {
        "pcb_validation": {
            "valid": valid,
            "issues": issues,
            "suggestions": coverage["suggestions"],
        },
        "history": [
            create_history_item(
                "tool_result" if valid else "validation",
                "pcb",
                "validate_pcb",
                "PCB validation passed" if valid else f"PCB validation failed: {len(errors)} issues",
                {"valid": valid, "issues": errors, "warnings": warnings},
            )
        ],
    }
