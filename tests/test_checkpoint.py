"""Tests for the SQLite checkpoint store."""

import pytest
from langgraph.checkpoint.base import empty_checkpoint

from hdo.checkpoint import SqliteCheckpointSaver, thread_config
from hdo.state import create_history_item, merge_state


def _checkpoint(state: dict, next_node: str):
    checkpoint = empty_checkpoint()
    checkpoint["channel_values"] = {"state": state, "next": next_node}
    checkpoint["channel_versions"] = {"state": checkpoint["id"], "next": checkpoint["id"]}
    return checkpoint


async def _put(saver, config, step, next_node="select_name"):
    checkpoint = _checkpoint({"step": step}, next_node)
    metadata = {"source": "loop", "step": step, "node": f"node_{step}", "status": "running"}
    return await saver.aput(config, checkpoint, metadata, checkpoint["channel_versions"])


@pytest.fixture
async def saver(tmp_path):
    async with SqliteCheckpointSaver.from_path(tmp_path / "state" / "checkpoints.db") as saver:
        yield saver


class TestThreadConfig:
    def test_thread_only(self):
        assert thread_config("t1") == {"configurable": {"thread_id": "t1", "checkpoint_ns": ""}}

    def test_with_checkpoint(self):
        assert thread_config("t1", "abc")["configurable"]["checkpoint_id"] == "abc"


class TestPutAndGet:
    @pytest.mark.asyncio
    async def test_round_trip(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        loaded = await saver.aget_tuple(thread_config("t1"))
        assert loaded.config == config
        assert loaded.checkpoint["channel_values"] == {"state": {"step": 1}, "next": "select_name"}
        assert loaded.metadata["node"] == "node_1"
        assert loaded.parent_config is None

    @pytest.mark.asyncio
    async def test_latest_and_parent_chain(self, saver):
        first = await _put(saver, thread_config("t1"), 1)
        second = await _put(saver, first, 2)
        latest = await saver.aget_tuple(thread_config("t1"))
        assert latest.config == second
        assert latest.parent_config["configurable"]["checkpoint_id"] == first["configurable"]["checkpoint_id"]

    @pytest.mark.asyncio
    async def test_get_exact_checkpoint(self, saver):
        first = await _put(saver, thread_config("t1"), 1)
        await _put(saver, first, 2)
        loaded = await saver.aget_tuple(first)
        assert loaded.metadata["step"] == 1

    @pytest.mark.asyncio
    async def test_unknown_thread(self, saver):
        assert await saver.aget_tuple(thread_config("missing")) is None

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self, saver):
        checkpoint = _checkpoint({"step": 1}, "a")
        metadata = {"source": "loop", "step": 1, "node": "n", "status": "running"}
        await saver.aput(thread_config("t1"), checkpoint, metadata, {})
        await saver.aput(thread_config("t1"), checkpoint, metadata, {})
        assert len([t async for t in saver.alist(thread_config("t1"))]) == 1

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, saver):
        await _put(saver, thread_config("t1"), 1)
        await _put(saver, thread_config("t2"), 7)
        loaded = await saver.aget_tuple(thread_config("t1"))
        assert loaded.metadata["step"] == 1


class TestList:
    @pytest.mark.asyncio
    async def test_newest_first_with_limit_and_before(self, saver):
        config = thread_config("t1")
        configs = []
        for step in range(1, 5):
            config = await _put(saver, config, step)
            configs.append(config)

        steps = [t.metadata["step"] async for t in saver.alist(thread_config("t1"))]
        assert steps == [4, 3, 2, 1]

        limited = [t.metadata["step"] async for t in saver.alist(thread_config("t1"), limit=2)]
        assert limited == [4, 3]

        before = [t.metadata["step"] async for t in saver.alist(thread_config("t1"), before=configs[2])]
        assert before == [2, 1]

    @pytest.mark.asyncio
    async def test_metadata_filter(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        await _put(saver, config, 2)
        matches = [t.metadata["step"] async for t in saver.alist(thread_config("t1"), filter={"node": "node_2"})]
        assert matches == [2]


class TestPendingWrites:
    @pytest.mark.asyncio
    async def test_writes_attached_to_checkpoint(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        update = {"node": "generate_names", "update": {"selected_name": "Zap"}}
        await saver.aput_writes(config, [("update", update)], task_id="generate_names")
        loaded = await saver.aget_tuple(thread_config("t1"))
        assert loaded.pending_writes == [("generate_names", "update", update)]

    @pytest.mark.asyncio
    async def test_rewriting_same_task_replaces(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        await saver.aput_writes(config, [("update", {"v": 1})], task_id="n")
        await saver.aput_writes(config, [("update", {"v": 2})], task_id="n")
        loaded = await saver.aget_tuple(config)
        assert loaded.pending_writes == [("n", "update", {"v": 2})]

    @pytest.mark.asyncio
    async def test_new_checkpoint_has_no_writes(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        await saver.aput_writes(config, [("update", {"v": 1})], task_id="n")
        await _put(saver, config, 2)
        assert (await saver.aget_tuple(thread_config("t1"))).pending_writes == []


class TestDeleteAndPrune:
    @pytest.mark.asyncio
    async def test_delete_thread(self, saver):
        config = await _put(saver, thread_config("t1"), 1)
        await saver.aput_writes(config, [("update", {"v": 1})], task_id="n")
        await _put(saver, thread_config("t2"), 1)

        await saver.adelete_thread("t1")

        assert await saver.aget_tuple(thread_config("t1")) is None
        assert await saver.aget_tuple(thread_config("t2")) is not None

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, saver):
        config = thread_config("t1")
        for step in range(1, 6):
            config = await _put(saver, config, step)

        deleted = await saver.aprune("t1", keep=2)

        assert deleted == 3
        steps = [t.metadata["step"] async for t in saver.alist(thread_config("t1"))]
        assert steps == [5, 4]

    @pytest.mark.asyncio
    async def test_prune_nothing_to_do(self, saver):
        await _put(saver, thread_config("t1"), 1)
        assert await saver.aprune("t1", keep=5) == 0


class TestPersistence:
    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        path = tmp_path / "checkpoints.db"
        async with SqliteCheckpointSaver.from_path(path) as saver:
            await _put(saver, thread_config("t1"), 3, next_node="generate_enclosure")
        async with SqliteCheckpointSaver.from_path(path) as saver:
            loaded = await saver.aget_tuple(thread_config("t1"))
        assert loaded.checkpoint["channel_values"]["next"] == "generate_enclosure"


class TestFullState:
    @pytest.mark.asyncio
    async def test_orchestrator_state_round_trips(self, saver, base_state, locked_spec, pcb_layout):
        state = merge_state(base_state, {
            "status": "awaiting_input",
            "final_spec": locked_spec,
            "selected_name": "ThermoNode",
            "decisions": [{"question_id": "q1", "question": "How many LEDs?", "answer": "8 LEDs"}],
            "pcb": pcb_layout,
            "enclosure": {"openscad_code": "inner_width = 80;", "dimensions": {"wall": 2.0}, "accepted": False},
            "enclosure_attempts": 3,
            "enclosure_review": {"score": 60, "verdict": "revise", "issues": [], "positives": [], "summary": ""},
            "escalation": {"stage": "enclosure", "question": "Continue?", "options": ["accept", "abort"], "issues": []},
            "pending_input": {"node": "request_user_input", "question": "Continue?", "options": ["accept", "abort"]},
            "completed_stages": ["spec", "pcb"],
            "iteration_count": 17,
            "history": [create_history_item("validation", "pcb", "validate_pcb", "ok", {"valid": True})],
        })

        await saver.aput(thread_config("proj-1"), _checkpoint(state, "request_user_input"), {"step": 1}, {})
        loaded = await saver.aget_tuple(thread_config("proj-1"))

        restored = loaded.checkpoint["channel_values"]["state"]
        assert restored.keys() == state.keys()
        for key in state:
            assert restored[key] == state[key], key
