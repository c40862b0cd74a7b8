"""Entry point: validates input, drives a thread, answers interrupts, writes the export."""

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from hdo.checkpoint import SqliteCheckpointSaver
from hdo.config import get_config, load_config
from hdo.graph import END, to_mermaid
from hdo.orchestrator import Orchestrator, RunInput
from hdo.services import build_services
from hdo.utils.formatter import write_export
from hdo.utils.validator import validate_blocks

USAGE = """usage:
  hdo "<description>" [--mode autonomous|assisted|manual] [--thread ID] [--blocks FILE] [--db PATH]
  hdo --resume ID [--mode M] [--db PATH]
  hdo --history ID [--db PATH]
  hdo --graph
options:
  --config FILE   use a different config.yaml"""


def _pop_option(args: list[str], flag: str) -> str | None:
    """Remove ``flag VALUE`` from *args* and return VALUE."""
    if flag not in args:
        return None
    i = args.index(flag)
    if i + 1 >= len(args):
        raise SystemExit(f"[HDO] {flag} requires a value\n{USAGE}")
    value = args[i + 1]
    del args[i:i + 2]
    return value


def _load_blocks(path: str | None) -> list[dict]:
    if path is None:
        return []
    return validate_blocks(json.loads(Path(path).read_text()))


def _ask_human(pending: dict) -> dict | None:
    """Prompt on the terminal for the input a paused run is waiting for.

    Returns None when there is nothing to choose from.
    """
    node = pending.get("node")
    options = pending.get("options") or []
    print(f"\n--- {pending.get('question', 'Input needed')} ---\n")
    if not options and node != "select_name":
        print("[HDO] No options available, continuing without a choice.")
        return None
    for issue in pending.get("issues", []):
        print(f"  [{issue.get('severity', 'info')}] {issue.get('description', '')}")
    for i, option in enumerate(options, 1):
        print(f"  {i}. {option}")
    if node == "select_name":
        print(f"  {len(options) + 1}. Custom (type your own)")

    while True:
        choice = input("Your choice (number): ").strip()
        try:
            choice_num = int(choice)
        except ValueError:
            print("Please enter a number.")
            continue

        if node == "select_name" and choice_num == len(options) + 1:
            return {"custom_name": input("Project name: ").strip()}
        if 1 <= choice_num <= len(options):
            break
        print(f"Please enter a number between 1 and {len(options) + (node == 'select_name')}.")

    if node == "request_user_input":
        answer = options[choice_num - 1]
        human_input = {"answer": answer}
        if answer == "regenerate":
            feedback = input("Feedback for the next attempt (blank for reviewer issues): ").strip()
            if feedback:
                human_input["feedback"] = feedback
        return human_input
    return {"index": choice_num - 1}


async def _stream(stream) -> dict | None:
    """Print one line per delta; return the last delta's state."""
    last = None
    async for delta in stream:
        last = delta
        if delta.node == END:
            continue
        print(f"[HDO] {delta.node} -> {delta.next_node} ({delta.status})")
        if delta.status == "error" and delta.state.get("error"):
            print(f"[HDO] Error: {delta.state['error']}")
    return last


async def run(
    description: str | None,
    *,
    mode: str,
    thread_id: str,
    blocks_path: str | None,
    db_path: str,
    resume: bool = False,
    config: dict,
) -> None:
    """Run (or resume) a thread to completion, answering interrupts interactively."""
    text, image = build_services(config)
    async with SqliteCheckpointSaver.from_path(db_path) as saver:
        orchestrator = Orchestrator(text, image, saver, config)
        if resume:
            last = await _stream(orchestrator.resume(thread_id, mode=mode))
        else:
            run_input = RunInput(thread_id, mode, description, _load_blocks(blocks_path))
            last = await _stream(orchestrator.run(run_input))

        while last is not None and last.status == "awaiting_input":
            human_input = _ask_human(last.state["pending_input"])
            last = await _stream(orchestrator.resume(thread_id, human_input=human_input))

    if last is None:
        return
    state = last.state
    print(f"[HDO] Thread: {thread_id}")
    print(f"[HDO] Status: {state['status']}")
    print(f"[HDO] Completed stages: {', '.join(state['completed_stages']) or 'none'}")
    if state.get("error"):
        print(f"[HDO] Error: {state['error']}")
    if state["status"] == "complete":
        output_path = write_export(state, config.get("output_path"))
        print(f"[HDO] Output written to: {output_path}")


async def show_history(thread_id: str, db_path: str, config: dict) -> None:
    text, image = build_services(config)
    async with SqliteCheckpointSaver.from_path(db_path) as saver:
        orchestrator = Orchestrator(text, image, saver, config)
        entries = await orchestrator.get_history(thread_id)
    if not entries:
        print(f"[HDO] No checkpoints for thread {thread_id}")
        return
    for entry in reversed(entries):
        print(
            f"[HDO] {entry['checkpoint_id']}  step={entry['step']:<3} "
            f"{entry['node']:<24} -> {entry['next']:<24} {entry['status']}"
        )


def main() -> None:
    """CLI entry point: description as arguments or from stdin."""
    args = sys.argv[1:]
    if "-h" in args or "--help" in args:
        print(USAGE)
        return

    if "--graph" in args:
        print(to_mermaid())
        return

    config_path = _pop_option(args, "--config")
    config = load_config(config_path) if config_path else get_config()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    mode = _pop_option(args, "--mode")
    thread_id = _pop_option(args, "--thread")
    blocks_path = _pop_option(args, "--blocks")
    db_path = _pop_option(args, "--db") or config["checkpoint_db"]
    resume_id = _pop_option(args, "--resume")
    history_id = _pop_option(args, "--history")

    if history_id:
        asyncio.run(show_history(history_id, db_path, config))
        return

    if resume_id:
        asyncio.run(
            run(None, mode=mode, thread_id=resume_id, blocks_path=None, db_path=db_path, resume=True, config=config)
        )
        return

    if args:
        description = " ".join(args)
    else:
        print("Enter your product description (Ctrl+D / Ctrl+Z to submit):")
        description = sys.stdin.read()

    asyncio.run(
        run(
            description,
            mode=mode or "assisted",
            thread_id=thread_id or uuid.uuid4().hex[:12],
            blocks_path=blocks_path,
            db_path=db_path,
            config=config,
        )
    )


if __name__ == "__main__":
    main()
