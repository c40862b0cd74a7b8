"""Export writer: renders a finished design into a Markdown summary plus artifacts."""

import json
import re
from pathlib import Path

from hdo.config import get_config
from hdo.state import STAGE_ORDER, OrchestratorState


def _slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "hardware-project"


def _render_markdown(state: OrchestratorState) -> str:
    """Convert the orchestrator state into a Markdown design summary."""
    spec = state.get("final_spec") or {}
    lines = []

    name = spec.get("name") or state.get("selected_name") or "Hardware Project"
    lines.append(f"# {name}: Hardware Design Summary")
    lines.append("")

    summary = spec.get("summary") or state.get("description", "")
    if summary:
        lines.append("## Overview")
        lines.append("")
        lines.append(summary)
        lines.append("")

    lines.append("## Stages")
    lines.append("")
    lines.append("| Stage | Status | Completed |")
    lines.append("|-------|--------|-----------|")
    for stage in STAGE_ORDER:
        info = state["stages"].get(stage, {})
        lines.append(f"| {stage} | {info.get('status', 'pending')} | {info.get('completed_at', '')} |")
    lines.append("")

    decisions = state.get("decisions", [])
    if decisions:
        lines.append("## Design Decisions")
        lines.append("")
        for d in decisions:
            lines.append(f"- **{d.get('question', '')}** {d.get('answer', '')}")
        lines.append("")

    if spec:
        lines.append("## Specification")
        lines.append("")
        size = spec.get("pcb_size", {})
        power = spec.get("power", {})
        comms = spec.get("communication", {})
        lines.append(f"- **PCB size:** {size.get('width')} x {size.get('height')} {size.get('unit', 'mm')}")
        lines.append(
            f"- **Power:** {power.get('source', '')} ({power.get('voltage', '')}, {power.get('current', '')})"
        )
        lines.append(f"- **Communication:** {comms.get('type', '')} / {comms.get('protocol', '')}")
        lines.append("")
        for title, key in (("Inputs", "inputs"), ("Outputs", "outputs")):
            items = spec.get(key, [])
            if items:
                lines.append(f"### {title}")
                lines.append("")
                lines.append("| Type | Count | Notes |")
                lines.append("|------|-------|-------|")
                for item in items:
                    lines.append(f"| {item.get('type', '')} | {item.get('count', 1)} | {item.get('notes', '')} |")
                lines.append("")

    pcb = state.get("pcb")
    if pcb:
        board = pcb.get("board_size", {})
        lines.append("## PCB Layout")
        lines.append("")
        lines.append(f"Board: {board.get('width', 0):.1f} x {board.get('height', 0):.1f} mm")
        lines.append("")
        lines.append("| Block | Grid | Reason |")
        lines.append("|-------|------|--------|")
        for block in pcb.get("placed_blocks", []):
            lines.append(
                f"| `{block['block_slug']}` | ({block['grid_x']}, {block['grid_y']}) | {block.get('reason', '')} |"
            )
        lines.append("")

    for stage in ("enclosure", "firmware"):
        review = state.get(f"{stage}_review")
        if not review:
            continue
        lines.append(f"## {stage.capitalize()} Review")
        lines.append("")
        lines.append(f"- **Score:** {review.get('score')} ({review.get('verdict')})")
        if review.get("summary"):
            lines.append(f"- **Summary:** {review['summary']}")
        for issue in review.get("issues", []):
            lines.append(f"- **[{issue.get('severity', 'info')}]** {issue.get('description', '')}")
        lines.append("")

    firmware = state.get("firmware")
    if firmware and firmware.get("files"):
        lines.append("## Firmware Files")
        lines.append("")
        for f in firmware["files"]:
            lines.append(f"- `{f['path']}` ({f.get('language', 'cpp')})")
        lines.append("")

    return "\n".join(lines)


def write_export(state: OrchestratorState, output_dir: str | Path | None = None) -> Path:
    """Write the design summary and generated artifacts into a fresh directory.

    The directory is named after the project and never overwrites an earlier
    export. Returns the Path to the written Markdown summary.
    """
    if output_dir is None:
        output_dir = Path(__file__).resolve().parent.parent / get_config()["output_path"]
    base = Path(output_dir)
    base.mkdir(parents=True, exist_ok=True)

    spec = state.get("final_spec") or {}
    stem = _slug(spec.get("name") or state.get("selected_name") or "")

    # Find a non-conflicting directory name
    target = base / stem
    counter = 1
    while target.exists():
        counter += 1
        target = base / f"{stem} ({counter})"
    target.mkdir(parents=True)

    enclosure = state.get("enclosure")
    if enclosure and enclosure.get("openscad_code"):
        (target / "enclosure.scad").write_text(enclosure["openscad_code"], encoding="utf-8")

    firmware = state.get("firmware")
    for f in (firmware or {}).get("files", []):
        # Generated paths are relative; refuse anything escaping the export dir.
        path = (target / "firmware" / f["path"]).resolve()
        if not path.is_relative_to(target.resolve()):
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f.get("content", ""), encoding="utf-8")

    (target / "spec.json").write_text(json.dumps(spec, indent=2), encoding="utf-8")

    summary_path = target / "DESIGN.md"
    summary_path.write_text(_render_markdown(state), encoding="utf-8")
    return summary_path
