"""Input validation: checks run inputs and human answers before the orchestrator uses them."""

from hdo.state import MODES


def validate_input(description: str) -> str:
    """Validate that the product description is a non-empty string.

    Returns the stripped input on success.
    Raises ValueError if input is empty or whitespace-only.
    """
    if not isinstance(description, str) or not description.strip():
        raise ValueError("Product description must be a non-empty string.")
    return description.strip()


def validate_mode(mode: str) -> str:
    """Validate that mode is one of the supported operating modes."""
    if mode not in MODES:
        raise ValueError(f"Invalid mode '{mode}'. Must be one of: {', '.join(MODES)}")
    return mode


def validate_blocks(blocks) -> list[dict]:
    """Validate the circuit-block catalog shape (slug and grid footprint per block)."""
    if not isinstance(blocks, list):
        raise ValueError("Block catalog must be a list of block objects.")
    for i, block in enumerate(blocks):
        if not isinstance(block, dict):
            raise ValueError(f"Block {i} must be an object.")
        missing = {"slug", "width_units", "height_units"} - set(block)
        if missing:
            raise ValueError(f"Block {i} missing required fields: {sorted(missing)}")
    return blocks


ESCALATION_ANSWERS = ("accept", "regenerate", "abort")


def validate_human_input(node: str, human_input) -> dict:
    """Validate an answer supplied for the node a run paused before.

    ``select_blueprint`` takes ``{"index": int}``, ``select_name`` takes
    ``{"index": int}`` or ``{"custom_name": str}`` and ``request_user_input``
    takes ``{"answer": ..., "feedback": str}`` with optional feedback.
    """
    if not isinstance(human_input, dict):
        raise ValueError("Human input must be an object.")

    if node == "request_user_input":
        if human_input.get("answer") not in ESCALATION_ANSWERS:
            raise ValueError(f"Answer must be one of: {', '.join(ESCALATION_ANSWERS)}")
        feedback = human_input.get("feedback")
        if feedback is not None and not isinstance(feedback, str):
            raise ValueError("Feedback must be a string.")
        return human_input

    if node == "select_name" and "custom_name" in human_input:
        name = human_input["custom_name"]
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Custom name must be a non-empty string.")
        return human_input

    if node in ("select_blueprint", "select_name"):
        index = human_input.get("index")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise ValueError("Selection index must be a non-negative integer.")
        return human_input

    raise ValueError(f"Node {node} does not accept human input.")
