"""Spec-stage nodes: feasibility through the locked final spec.

Service failures and unparseable output are node-local errors: the node sets
``error``, records an ``error`` history entry and the run continues (or the
feasibility router ends it when no analysis exists).
"""

import asyncio
import logging
import re

from hdo import prompts
from hdo.nodes.shared import NodeContext
from hdo.state import OrchestratorState, StateUpdate, create_history_item, is_spec_locked, utc_now
from hdo.utils.parsing import parse_json

logger = logging.getLogger(__name__)

DEFAULT_STYLE_HINTS = [
    "minimalist modern design with clean lines",
    "industrial rugged design with exposed components",
    "consumer electronics polished design",
    "maker/DIY aesthetic with visible electronics",
]

FALLBACK_NAMES = [
    {"name": "Project Alpha", "style": "abstract", "reasoning": "Default fallback"},
    {"name": "DevBoard One", "style": "compound", "reasoning": "Default fallback"},
    {"name": "Prototype", "style": "punchy", "reasoning": "Default fallback"},
    {"name": "HardwareKit", "style": "descriptive", "reasoning": "Default fallback"},
]

_LEADING_INT_RE = re.compile(r"\s*(\d+)")


def _error(action: str, message: str, result: str | None = None) -> StateUpdate:
    return {
        "error": message,
        "history": [create_history_item("error", "spec", action, result or message)],
    }


async def analyze_feasibility(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Ask the text service whether the description can be built from the catalog."""
    description = state.get("description")
    if not description:
        return _error("analyze_feasibility", "No description provided for feasibility analysis")

    try:
        response = await ctx.text.chat(
            prompts.FEASIBILITY_SYSTEM_PROMPT,
            prompts.build_feasibility_prompt(description),
            temperature=0.3,
            max_tokens=4096,
            project_id=state["project_id"],
            model=ctx.generator_model,
        )
    except Exception as exc:
        logger.warning("[Nodes] Feasibility analysis failed: %s", exc)
        return _error("analyze_feasibility", f"Feasibility analysis failed: {exc}", str(exc))

    data = parse_json(response.content)
    if data is None:
        return _error(
            "analyze_feasibility",
            "Failed to parse feasibility response",
            "Failed to parse JSON response",
        )

    open_questions = data.pop("openQuestions", None) or []
    score = data.get("overallScore")

    if not data.get("manufacturable", False):
        reason = data.get("rejectionReason") or "Project not manufacturable"
        return {
            "feasibility": data,
            "open_questions": [],
            "error": reason,
            "history": [
                create_history_item(
                    "tool_result",
                    "spec",
                    "analyze_feasibility",
                    f"Rejected: {reason}",
                    {"score": score, "manufacturable": False},
                )
            ],
        }

    return {
        "feasibility": data,
        "open_questions": open_questions,
        "error": None,
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "analyze_feasibility",
                f"Feasibility score: {score}",
                {"score": score, "manufacturable": True, "open_question_count": len(open_questions)},
            )
        ],
    }


async def answer_open_questions(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Answer every open question with its first option and clear the list."""
    questions = state.get("open_questions") or []
    now = utc_now()
    decisions = [
        {
            "question_id": q.get("id"),
            "question": q.get("question", ""),
            "answer": (q.get("options") or [""])[0],
            "timestamp": now,
        }
        for q in questions
    ]
    return {
        "decisions": decisions,
        "open_questions": [],
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "answer_questions",
                f"Answered {len(decisions)} questions",
                {"answered_count": len(decisions), "mode": state["mode"]},
            )
        ],
    }


async def generate_blueprints(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Render one product image per style hint; failures are collected per image."""
    if ctx.image is None:
        return _error("generate_blueprints", "No image service configured")

    styles = ctx.config.get("blueprint_styles") or DEFAULT_STYLE_HINTS
    context = prompts.build_blueprint_context(
        state.get("description", ""), state.get("decisions", []), state.get("feasibility")
    )
    prompt_list = [prompts.build_blueprint_prompt(context, style) for style in styles]

    results = await asyncio.gather(
        *(ctx.image.generate_image(p) for p in prompt_list), return_exceptions=True
    )

    blueprints, failures = [], []
    for style, prompt, result in zip(styles, prompt_list, results):
        if isinstance(result, BaseException):
            failures.append({"style": style, "error": str(result)})
        else:
            blueprints.append({"url": result.url, "prompt": prompt, "style": style})

    update: StateUpdate = {
        "blueprints": blueprints,
        "selected_blueprint": None,
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "generate_blueprints",
                f"Generated {len(blueprints)} of {len(prompt_list)} blueprints",
                {"generated": len(blueprints), "failures": failures},
            )
        ],
    }
    if failures:
        update["history"].append(
            create_history_item(
                "error", "spec", "generate_blueprints",
                f"{len(failures)} blueprint image(s) failed", {"failures": failures},
            )
        )
    # A partial batch is still usable; only an empty one is an error.
    if not blueprints:
        update["error"] = "All image generations failed"
    return update


async def select_blueprint(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Pick a blueprint: the human's ``{"index": n}`` if given, else the first."""
    blueprints = state.get("blueprints") or []
    human_input = state.get("human_input") or {}
    consumed: StateUpdate = {"human_input": None, "pending_input": None}

    if not blueprints:
        return {**consumed, **_error("select_blueprint", "No blueprints available to select")}

    index = human_input.get("index", 0)
    if not isinstance(index, int) or not 0 <= index < len(blueprints):
        return {**consumed, **_error("select_blueprint", f"Invalid blueprint index: {index}")}

    return {
        **consumed,
        "selected_blueprint": index,
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "select_blueprint",
                f"Selected blueprint {index + 1}",
                {"selected_index": index, "by_user": "index" in human_input},
            )
        ],
    }


async def generate_names(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Generate four candidate product names, falling back to fixed defaults."""
    description = state.get("description")
    if not description:
        return {
            "generated_names": FALLBACK_NAMES,
            "history": [
                create_history_item(
                    "tool_result", "spec", "generate_names",
                    "Using fallback names (no description)", {"fallback": True},
                )
            ],
        }

    try:
        response = await ctx.text.chat(
            prompts.NAMING_SYSTEM_PROMPT,
            prompts.build_naming_prompt(description, state.get("feasibility"), state.get("decisions", [])),
            temperature=0.8,
            max_tokens=1024,
            project_id=state["project_id"],
            model=ctx.generator_model,
        )
    except Exception as exc:
        logger.warning("[Nodes] Name generation failed: %s", exc)
        return {
            "generated_names": FALLBACK_NAMES,
            "error": f"Name generation failed: {exc}",
            "history": [create_history_item("error", "spec", "generate_names", str(exc))],
        }

    data = parse_json(response.content) or {}
    names = [
        {"name": n["name"], "style": n.get("style", ""), "reasoning": n.get("reasoning", "")}
        for n in data.get("names") or []
        if isinstance(n, dict) and n.get("name")
    ]
    if not names:
        return {
            "generated_names": FALLBACK_NAMES,
            "history": [
                create_history_item(
                    "tool_result", "spec", "generate_names",
                    "Using fallback names (parse failed)", {"fallback": True},
                )
            ],
        }

    return {
        "generated_names": names,
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "generate_names",
                f"Generated {len(names)} name options",
                {"name_count": len(names), "names": [n["name"] for n in names]},
            )
        ],
    }


async def select_name(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Pick a name: ``{"custom_name": s}`` wins, then ``{"index": n}``, else the first."""
    names = state.get("generated_names") or []
    human_input = state.get("human_input") or {}
    consumed: StateUpdate = {"human_input": None, "pending_input": None}

    custom = (human_input.get("custom_name") or "").strip()
    if custom:
        return {
            **consumed,
            "selected_name": custom,
            "history": [
                create_history_item(
                    "tool_result", "spec", "select_name",
                    f"Selected custom name: {custom}", {"custom_name": custom},
                )
            ],
        }

    if not names:
        return {**consumed, **_error("select_name", "No generated names available to select")}

    index = human_input.get("index", 0)
    if not isinstance(index, int) or not 0 <= index < len(names):
        return {**consumed, **_error("select_name", f"Invalid name index: {index}")}

    chosen = names[index]
    return {
        **consumed,
        "selected_name": chosen["name"],
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "select_name",
                f"Selected name: {chosen['name']}",
                {"selected_index": index, "reasoning": chosen.get("reasoning", "")},
            )
        ],
    }


def build_final_spec(state: OrchestratorState) -> dict:
    """Assemble the locked final spec from name, decisions and feasibility."""
    description = state.get("description") or ""
    final_spec = {
        "name": state.get("selected_name") or description[:50] or "Hardware Project",
        "summary": description,
        "pcb_size": {"width": 50.8, "height": 38.1, "unit": "mm"},
        "inputs": [],
        "outputs": [],
        "power": {"source": "USB-C", "voltage": "5V", "current": "500mA"},
        "communication": {"type": "WiFi", "protocol": "HTTP/MQTT"},
        "enclosure": {"style": "rounded_box", "width": 60, "height": 45, "depth": 25},
        "estimated_bom": [],
        "locked": True,
        "locked_at": utc_now(),
    }

    for decision in state.get("decisions", []):
        question = (decision.get("question") or "").lower()
        answer = decision.get("answer") or ""
        if not question or not answer:
            continue
        lowered = answer.lower()
        if "power" in question:
            final_spec["power"]["source"] = answer
        if "display" in question:
            if "oled" in lowered:
                final_spec["outputs"].append({"type": "OLED Display", "count": 1, "notes": '0.96" I2C'})
            elif "lcd" in lowered:
                final_spec["outputs"].append({"type": "LCD Display", "count": 1, "notes": "SPI"})
        if "led" in question:
            match = _LEADING_INT_RE.match(lowered)
            count = int(match.group(1)) if match and int(match.group(1)) else 4
            final_spec["outputs"].append({"type": "WS2812B LEDs", "count": count, "notes": "RGB addressable"})

    feasibility = state.get("feasibility") or {}
    for item in (feasibility.get("inputs") or {}).get("items") or []:
        final_spec["inputs"].append({"type": item, "count": 1, "notes": ""})
    for item in (feasibility.get("outputs") or {}).get("items") or []:
        if not item:
            continue
        if not any(item.lower() in (o.get("type") or "").lower() for o in final_spec["outputs"]):
            final_spec["outputs"].append({"type": item, "count": 1, "notes": ""})

    return final_spec


async def finalize_spec(state: OrchestratorState, ctx: NodeContext) -> StateUpdate:
    """Lock the final spec. A spec that is already locked is left untouched."""
    if is_spec_locked(state):
        return {
            "history": [
                create_history_item("progress", "spec", "finalize_spec", "Spec already locked")
            ]
        }

    final_spec = build_final_spec(state)
    return {
        "final_spec": final_spec,
        "history": [
            create_history_item(
                "tool_result",
                "spec",
                "finalize_spec",
                f"Spec locked: {final_spec['name']}",
                {
                    "spec_locked": True,
                    "project_name": final_spec["name"],
                    "input_count": len(final_spec["inputs"]),
                    "output_count": len(final_spec["outputs"]),
                },
            )
        ],
    }
