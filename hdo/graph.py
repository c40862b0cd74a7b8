"""Fixed pipeline topology: node table, routers and the interrupt policy.

The topology is static. ``NODES`` maps each node name to its function and
the nodes it may hand off to; branching nodes carry a router that picks one
of them from the state.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable

from hdo.nodes.enclosure import accept_enclosure, decide_enclosure, generate_enclosure, review_enclosure
from hdo.nodes.firmware import accept_firmware, decide_firmware, generate_firmware, review_firmware
from hdo.nodes.pcb import select_circuit_blocks, validate_pcb
from hdo.nodes.review_loop import decision_for
from hdo.nodes.shared import (
    NodeContext,
    mark_enclosure_complete,
    mark_export_complete,
    mark_firmware_complete,
    mark_pcb_complete,
    mark_spec_complete,
    request_user_input,
)
from hdo.nodes.spec import (
    analyze_feasibility,
    answer_open_questions,
    finalize_spec,
    generate_blueprints,
    generate_names,
    select_blueprint,
    select_name,
)
from hdo.state import OrchestratorState, StateUpdate, is_spec_locked, merge_state

END = "__end__"
ENTRY_NODE = "analyze_feasibility"

NodeFn = Callable[[OrchestratorState, NodeContext], Awaitable[StateUpdate]]
Router = Callable[[OrchestratorState, dict], str]


# --- Routers ---


def route_after_feasibility(state: OrchestratorState, config: dict) -> str:
    """End on failed analysis or rejection, else answer questions or go to blueprints."""
    feasibility = state.get("feasibility")
    if feasibility is None:
        return END
    if not feasibility.get("manufacturable", False):
        return END
    if state.get("open_questions"):
        return "answer_open_questions"
    return "generate_blueprints"


def _make_decide_router(stage: str) -> Router:
    def route(state: OrchestratorState, config: dict) -> str:
        decision = decision_for(state, stage, config)
        if decision is None:
            return f"review_{stage}"
        if decision == "accept":
            return f"accept_{stage}"
        if decision == "retry":
            return f"generate_{stage}"
        return "request_user_input"

    route.__name__ = f"route_after_decide_{stage}"
    return route


route_after_decide_enclosure = _make_decide_router("enclosure")
route_after_decide_firmware = _make_decide_router("firmware")


def route_after_user_input(state: OrchestratorState, config: dict) -> str:
    """accept -> accept_<stage>, regenerate -> generate_<stage>, abort -> END."""
    escalation = state.get("escalation") or {}
    stage = escalation.get("stage", state["current_stage"])
    answer = escalation.get("answer")
    if answer == "accept":
        return f"accept_{stage}"
    if answer == "regenerate":
        return f"generate_{stage}"
    return END


# --- Topology ---


@dataclass(frozen=True)
class NodeSpec:
    fn: NodeFn
    next_nodes: tuple[str, ...]
    router: Router | None = None


NODES: dict[str, NodeSpec] = {
    # Spec
    "analyze_feasibility": NodeSpec(
        analyze_feasibility,
        ("answer_open_questions", "generate_blueprints", END),
        route_after_feasibility,
    ),
    "answer_open_questions": NodeSpec(answer_open_questions, ("generate_blueprints",)),
    "generate_blueprints": NodeSpec(generate_blueprints, ("select_blueprint",)),
    "select_blueprint": NodeSpec(select_blueprint, ("generate_names",)),
    "generate_names": NodeSpec(generate_names, ("select_name",)),
    "select_name": NodeSpec(select_name, ("finalize_spec",)),
    "finalize_spec": NodeSpec(finalize_spec, ("mark_spec_complete",)),
    "mark_spec_complete": NodeSpec(mark_spec_complete, ("select_circuit_blocks",)),
    # PCB
    "select_circuit_blocks": NodeSpec(select_circuit_blocks, ("validate_pcb",)),
    "validate_pcb": NodeSpec(validate_pcb, ("mark_pcb_complete",)),
    "mark_pcb_complete": NodeSpec(mark_pcb_complete, ("generate_enclosure",)),
    # Enclosure loop
    "generate_enclosure": NodeSpec(generate_enclosure, ("review_enclosure",)),
    "review_enclosure": NodeSpec(review_enclosure, ("decide_enclosure",)),
    "decide_enclosure": NodeSpec(
        decide_enclosure,
        ("accept_enclosure", "generate_enclosure", "request_user_input", "review_enclosure"),
        route_after_decide_enclosure,
    ),
    "accept_enclosure": NodeSpec(accept_enclosure, ("mark_enclosure_complete",)),
    "mark_enclosure_complete": NodeSpec(mark_enclosure_complete, ("generate_firmware",)),
    # Firmware loop
    "generate_firmware": NodeSpec(generate_firmware, ("review_firmware",)),
    "review_firmware": NodeSpec(review_firmware, ("decide_firmware",)),
    "decide_firmware": NodeSpec(
        decide_firmware,
        ("accept_firmware", "generate_firmware", "request_user_input", "review_firmware"),
        route_after_decide_firmware,
    ),
    "accept_firmware": NodeSpec(accept_firmware, ("mark_firmware_complete",)),
    "mark_firmware_complete": NodeSpec(mark_firmware_complete, ("mark_export_complete",)),
    # Export
    "mark_export_complete": NodeSpec(mark_export_complete, (END,)),
    # Escalation
    "request_user_input": NodeSpec(
        request_user_input,
        ("accept_enclosure", "generate_enclosure", "accept_firmware", "generate_firmware", END),
        route_after_user_input,
    ),
}


def next_node(node_name: str, state: OrchestratorState, config: dict) -> str:
    """Pick the node that follows *node_name* given the merged state."""
    spec = NODES[node_name]
    if spec.router is None:
        return spec.next_nodes[0]
    target = spec.router(state, config)
    if target not in spec.next_nodes:
        raise ValueError(f"Router for {node_name} returned unknown target '{target}'")
    return target


# --- Human-in-the-loop ---

INTERRUPT_NODES: dict[str, frozenset[str]] = {
    "autonomous": frozenset(),
    "assisted": frozenset({"request_user_input"}),
    "manual": frozenset({"select_blueprint", "select_name", "request_user_input"}),
}


def should_interrupt(state: OrchestratorState, node_name: str) -> bool:
    """True when the run must pause for a human before executing *node_name*.

    A node whose answer is already in ``human_input`` runs without pausing.
    ``select_blueprint`` with no blueprints runs too and records its own error.
    """
    if node_name not in INTERRUPT_NODES.get(state["mode"], frozenset()):
        return False
    if node_name == "select_blueprint" and not state.get("blueprints"):
        return False
    return state.get("human_input") is None


def pending_input_for(state: OrchestratorState, node_name: str) -> dict:
    """Describe what an interrupted run is waiting for."""
    if node_name == "select_blueprint":
        return {
            "node": node_name,
            "question": "Select a blueprint",
            "options": [b.get("style") or b.get("url") for b in state.get("blueprints", [])],
        }
    if node_name == "select_name":
        return {
            "node": node_name,
            "question": "Select a project name (or provide a custom one)",
            "options": [n["name"] for n in state.get("generated_names", [])],
        }
    escalation = state.get("escalation") or {}
    return {
        "node": node_name,
        "question": escalation.get("question", "How should the run continue?"),
        "options": escalation.get("options", ["accept", "regenerate", "abort"]),
        "issues": escalation.get("issues", []),
    }


def entry_node_for(state: OrchestratorState) -> str:
    """Where a rehydrated project resumes, based on its stage and existing artifacts."""
    stage = state["current_stage"]
    if stage == "spec":
        if is_spec_locked(state):
            return "mark_spec_complete"
        if state.get("selected_name"):
            return "finalize_spec"
        if state.get("generated_names"):
            return "select_name"
        if state.get("selected_blueprint") is not None:
            return "generate_names"
        if state.get("blueprints"):
            return "select_blueprint"
        if state.get("feasibility"):
            return route_after_feasibility(state, {})
        return ENTRY_NODE
    if stage == "pcb":
        return "validate_pcb" if state.get("pcb") else "select_circuit_blocks"
    if stage == "enclosure":
        return "generate_enclosure"
    if stage == "firmware":
        return "generate_firmware"
    if state["stages"].get("export", {}).get("status") == "complete":
        return END
    return "mark_export_complete"


# --- Step-execution helpers for manual stepping ---


async def run_single_step(state: OrchestratorState, node_name: str, ctx: NodeContext) -> OrchestratorState:
    """Run a single node and return the merged state.

    Does not checkpoint; used for manual step-by-step execution and tests.
    """
    updates = await NODES[node_name].fn(state, ctx)
    return merge_state(state, updates)


def to_mermaid() -> str:
    """Render the topology as a Mermaid flowchart."""
    lines = ["flowchart TD", f"    __start__([start]) --> {ENTRY_NODE}"]
    for name, spec in NODES.items():
        arrow = "-.->" if spec.router else "-->"
        for target in spec.next_nodes:
            target_id = "__end__([end])" if target == END else target
            lines.append(f"    {name} {arrow} {target_id}")
    return "\n".join(lines)
