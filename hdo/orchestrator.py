"""Execution driver: steps the node table, checkpoints every step, and streams deltas.

One step is::

    interrupt / cancel / iteration-cap checks
    -> run node -> record its update as a pending write
    -> merge into state -> route -> persist checkpoint -> yield StateDelta

A checkpoint stores ``{"state": ..., "next": ...}`` in its channel values,
so resuming re-enters exactly at ``next``. If a node finished but its
checkpoint was never written, the pending write is replayed instead of
running the node again.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from langgraph.checkpoint.base import BaseCheckpointSaver, empty_checkpoint
from langgraph.checkpoint.memory import InMemorySaver

from hdo.checkpoint import thread_config
from hdo.config import get_config
from hdo.errors import (
    CheckpointPersistenceError,
    ErrorCode,
    MaxIterationsExceeded,
    NodeExecutionError,
    OrchestratorError,
    ThreadBusyError,
)
from hdo.graph import END, ENTRY_NODE, NODES, entry_node_for, next_node, pending_input_for, should_interrupt
from hdo.nodes.shared import NodeContext
from hdo.services import ImageService, TextService
from hdo.state import (
    OrchestratorState,
    StateUpdate,
    create_history_item,
    initial_state,
    merge_state,
    state_from_project_spec,
    utc_now,
)
from hdo.utils.validator import validate_human_input, validate_input, validate_mode

logger = logging.getLogger(__name__)

UPDATE_CHANNEL = "update"


@dataclass
class RunInput:
    thread_id: str
    mode: str
    description: str
    available_blocks: list[dict] = field(default_factory=list)
    existing_state: dict | None = None  # Partial project spec to continue from.


@dataclass
class StateDelta:
    node: str
    update: dict
    state: OrchestratorState
    status: str
    next_node: str
    checkpoint_id: str | None = None


def final_status(state: OrchestratorState) -> str:
    """Status of a run that reached END."""
    feasibility = state.get("feasibility")
    if feasibility is not None and not feasibility.get("manufacturable", False):
        return "rejected"
    if state["stages"].get("export", {}).get("status") == "complete":
        return "complete"
    return "error"


class Orchestrator:
    """Drives orchestrator threads against a checkpoint store.

    Args:
        text_service: Text-generation collaborator used by nodes.
        image_service: Image-generation collaborator (blueprints).
        checkpointer: Any LangGraph ``BaseCheckpointSaver``. Defaults to
            an ``InMemorySaver``.
        config: Configuration dict. Defaults to ``get_config()``.
    """

    def __init__(
        self,
        text_service: TextService,
        image_service: ImageService | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
        config: dict | None = None,
    ):
        self.config = config if config is not None else get_config()
        self.checkpointer = checkpointer if checkpointer is not None else InMemorySaver()
        self.ctx = NodeContext(text=text_service, image=image_service, config=self.config)
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancelled: set[str] = set()

    # --- Public API ---

    async def run(self, run_input: RunInput) -> AsyncIterator[StateDelta]:
        """Start a run for a thread and stream a delta per executed node."""
        description = validate_input(run_input.description)
        mode = validate_mode(run_input.mode)

        if run_input.existing_state:
            state = state_from_project_spec(
                run_input.thread_id, mode, run_input.existing_state, run_input.available_blocks
            )
            state["description"] = description
            node = entry_node_for(state)
        else:
            state = initial_state(run_input.thread_id, mode, description, run_input.available_blocks)
            node = ENTRY_NODE

        logger.info("[Orchestrator] Starting thread %s in %s mode at %s", run_input.thread_id, mode, node)
        async with aclosing(self._drive(run_input.thread_id, state, node, None)) as stream:
            async for delta in stream:
                yield delta

    async def resume(
        self,
        thread_id: str,
        human_input: dict | None = None,
        mode: str | None = None,
    ) -> AsyncIterator[StateDelta]:
        """Continue a thread from its latest checkpoint.

        ``human_input`` answers the node the run paused before. ``mode``
        overrides the operating mode stored in the checkpoint.
        """
        saved = await self._load(thread_id)
        if saved is None:
            raise ValueError(f"No checkpoint found for thread {thread_id}")
        state, node, tuple_ = saved
        if node == END:
            raise ValueError(f"Thread {thread_id} has already finished ({state['status']})")

        update: StateUpdate = {}
        if mode is not None:
            update["mode"] = validate_mode(mode)
        if human_input is not None:
            update["human_input"] = validate_human_input(node, human_input)
        if update:
            state = merge_state(state, update)

        logger.info("[Orchestrator] Resuming thread %s at %s", thread_id, node)
        async with aclosing(self._drive(thread_id, state, node, tuple_)) as stream:
            async for delta in stream:
                yield delta

    def cancel(self, thread_id: str) -> bool:
        """Ask a running thread to stop at the next step boundary.

        Returns False when the thread is not running.
        """
        lock = self._locks.get(thread_id)
        if lock is None or not lock.locked():
            return False
        self._cancelled.add(thread_id)
        logger.info("[Orchestrator] Cancel requested for thread %s", thread_id)
        return True

    async def get_state(self, thread_id: str) -> OrchestratorState | None:
        saved = await self._load(thread_id)
        return saved[0] if saved else None

    async def get_history(
        self, thread_id: str, limit: int | None = None, before: str | None = None
    ) -> list[dict[str, Any]]:
        """List checkpoints of a thread, newest first."""
        before_config = thread_config(thread_id, before) if before else None
        entries = []
        async for tuple_ in self.checkpointer.alist(thread_config(thread_id), before=before_config, limit=limit):
            values = tuple_.checkpoint["channel_values"]
            parent = (tuple_.parent_config or {}).get("configurable", {})
            entries.append({
                "checkpoint_id": tuple_.config["configurable"]["checkpoint_id"],
                "parent_checkpoint_id": parent.get("checkpoint_id"),
                "step": tuple_.metadata.get("step"),
                "node": tuple_.metadata.get("node"),
                "status": tuple_.metadata.get("status"),
                "next": values.get("next"),
                "state": values.get("state"),
            })
        return entries

    async def delete_thread(self, thread_id: str) -> None:
        if self._locks.get(thread_id) and self._locks[thread_id].locked():
            raise ThreadBusyError(f"Thread {thread_id} is running")
        await self.checkpointer.adelete_thread(thread_id)
        self._locks.pop(thread_id, None)

    # --- Checkpoint helpers ---

    async def _load(self, thread_id: str):
        try:
            tuple_ = await self.checkpointer.aget_tuple(thread_config(thread_id))
        except Exception as exc:
            raise CheckpointPersistenceError(exc) from exc
        if tuple_ is None:
            return None
        values = tuple_.checkpoint["channel_values"]
        return values["state"], values["next"], tuple_

    async def _persist(
        self, config: dict, state: OrchestratorState, next_name: str, step: int, node: str, source: str
    ) -> dict:
        checkpoint = empty_checkpoint()
        version = checkpoint["id"]
        checkpoint["channel_values"] = {"state": state, "next": next_name}
        checkpoint["channel_versions"] = {"state": version, "next": version}
        metadata = {"source": source, "step": step, "node": node, "status": state["status"], "parents": {}}
        try:
            return await self.checkpointer.aput(
                config, checkpoint, metadata, {"state": version, "next": version}
            )
        except Exception as exc:
            raise CheckpointPersistenceError(exc) from exc

    async def _record_write(self, config: dict, node: str, update: StateUpdate) -> None:
        try:
            await self.checkpointer.aput_writes(
                config, [(UPDATE_CHANNEL, {"node": node, "update": update})], task_id=node
            )
        except Exception as exc:
            raise CheckpointPersistenceError(exc) from exc

    # --- Driver loop ---

    def _failure_update(self, state: OrchestratorState, exc: OrchestratorError) -> StateUpdate:
        return {
            "status": "error",
            "error": str(exc),
            "history": [
                create_history_item(
                    "error", state["current_stage"], "orchestrator", str(exc), {"code": exc.code.value}
                )
            ],
        }

    def _finish_update(self, state: OrchestratorState) -> StateUpdate:
        status = final_status(state)
        update: StateUpdate = {"status": status, "completed_at": utc_now(), "pending_input": None}
        details: dict = {"status": status}
        if status == "rejected":
            details["code"] = ErrorCode.E_REJECTED.value
        elif status == "error":
            escalation = state.get("escalation") or {}
            if escalation.get("answer") == "abort":
                details["code"] = ErrorCode.E_ABORTED.value
            else:
                details["code"] = ErrorCode.E_NODE_FAILED.value
            update["error"] = state.get("error") or "Run ended before export"
        update["history"] = [
            create_history_item("progress", state["current_stage"], "finish", f"Run finished: {status}", details)
        ]
        return update

    async def _drive(
        self, thread_id: str, state: OrchestratorState, node: str, saved_tuple
    ) -> AsyncIterator[StateDelta]:
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        if lock.locked():
            raise ThreadBusyError(f"Thread {thread_id} already has a run in progress")

        async with lock:
            self._cancelled.discard(thread_id)
            max_iterations = self.config.get("max_iterations", 100)
            step = (saved_tuple.metadata.get("step", 0) + 1) if saved_tuple else 0

            try:
                recorded = self._pending_update(saved_tuple, node) if saved_tuple is not None else None
                if recorded is not None:
                    # Node output recorded before a crash: apply it instead of re-running.
                    state = merge_state(state, recorded)
                    logger.info("[Orchestrator] Replaying recorded output of %s", node)
                    node = next_node(node, state, self.config)
                # The iteration cap counts node executions of this run only.
                state = merge_state(state, {"status": "running", "iteration_count": 0, "pending_input": None})
                config = await self._persist(
                    saved_tuple.config if saved_tuple else thread_config(thread_id),
                    state, node, step, node, "resume" if saved_tuple else "input",
                )
            except CheckpointPersistenceError as exc:
                state = merge_state(state, self._failure_update(state, exc))
                yield StateDelta(node, {}, state, "error", node)
                return

            try:
                async with aclosing(self._loop(thread_id, state, node, config, step, max_iterations)) as stream:
                    async for delta in stream:
                        yield delta
            finally:
                self._cancelled.discard(thread_id)

        prune = getattr(self.checkpointer, "aprune", None)
        keep = self.config.get("checkpoint_keep")
        if prune is not None and keep:
            await prune(thread_id, keep)

    @staticmethod
    def _pending_update(saved_tuple, node: str) -> StateUpdate | None:
        for _task_id, channel, value in saved_tuple.pending_writes or []:
            if channel == UPDATE_CHANNEL and value.get("node") == node:
                return value["update"]
        return None

    async def _loop(
        self,
        thread_id: str,
        state: OrchestratorState,
        node: str,
        config: dict,
        step: int,
        max_iterations: int,
    ) -> AsyncIterator[StateDelta]:
        while True:
            step += 1
            halt = True
            try:
                if node == END:
                    update = self._finish_update(state)
                    state = merge_state(state, update)
                    target = END
                    config = await self._persist(config, state, END, step, END, "loop")
                    logger.info("[Orchestrator] Thread %s finished: %s", thread_id, state["status"])
                elif thread_id in self._cancelled:
                    update = {"status": "paused"}
                    state = merge_state(state, update)
                    target = node
                    config = await self._persist(config, state, node, step, node, "cancel")
                    logger.info("[Orchestrator] Thread %s paused before %s", thread_id, node)
                elif should_interrupt(state, node):
                    update = {"status": "awaiting_input", "pending_input": pending_input_for(state, node)}
                    state = merge_state(state, update)
                    target = node
                    config = await self._persist(config, state, node, step, node, "interrupt")
                    logger.info("[Orchestrator] Thread %s awaiting input before %s", thread_id, node)
                else:
                    if state["iteration_count"] >= max_iterations:
                        raise MaxIterationsExceeded(max_iterations)

                    logger.debug("[Orchestrator] Thread %s running %s", thread_id, node)
                    try:
                        update = dict(await NODES[node].fn(state, self.ctx))
                    except Exception as exc:
                        raise NodeExecutionError(node, exc) from exc
                    update["iteration_count"] = state["iteration_count"] + 1

                    await self._record_write(config, node, update)
                    try:
                        state = merge_state(state, update)
                        target = next_node(node, state, self.config)
                    except Exception as exc:
                        raise NodeExecutionError(node, exc) from exc

                    config = await self._persist(config, state, target, step, node, "loop")
                    halt = False
            except (MaxIterationsExceeded, NodeExecutionError) as exc:
                logger.error("[Orchestrator] Thread %s failed: %s", thread_id, exc)
                failure = self._failure_update(state, exc)
                state = merge_state(state, failure)
                checkpoint_id = None
                try:
                    config = await self._persist(config, state, node, step, node, "error")
                    checkpoint_id = config["configurable"]["checkpoint_id"]
                except CheckpointPersistenceError:
                    logger.exception("[Orchestrator] Could not persist failure for thread %s", thread_id)
                yield StateDelta(node, failure, state, "error", node, checkpoint_id)
                return
            except CheckpointPersistenceError as exc:
                logger.error("[Orchestrator] Thread %s failed: %s", thread_id, exc)
                failure = self._failure_update(state, exc)
                state = merge_state(state, failure)
                yield StateDelta(node, failure, state, "error", node)
                return

            yield StateDelta(node, update, state, state["status"], target, config["configurable"]["checkpoint_id"])
            if halt:
                return
            node = target
