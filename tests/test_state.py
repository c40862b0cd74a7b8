"""Tests for state construction, merging and project-spec rehydration."""

import re

import pytest

from hdo.errors import FinalSpecLockedError
from hdo.state import (
    STAGE_ORDER,
    create_history_item,
    initial_state,
    is_spec_locked,
    merge_state,
    state_from_project_spec,
    state_to_project_spec,
)


class TestInitialState:
    def test_spec_stage_in_progress(self, base_state):
        assert base_state["current_stage"] == "spec"
        assert base_state["stages"]["spec"]["status"] == "in_progress"
        assert all(base_state["stages"][s]["status"] == "pending" for s in STAGE_ORDER[1:])

    def test_counters_start_at_zero(self, base_state):
        assert base_state["enclosure_attempts"] == 0
        assert base_state["firmware_attempts"] == 0
        assert base_state["iteration_count"] == 0
        assert base_state["history"] == []
        assert base_state["completed_stages"] == []

    def test_catalog_is_copied(self, blocks_catalog):
        state = initial_state("p", "manual", "desc", blocks_catalog)
        blocks_catalog.append({"slug": "extra", "width_units": 1, "height_units": 1})
        assert len(state["available_blocks"]) == len(blocks_catalog) - 1


class TestHistoryItem:
    def test_id_format(self):
        item = create_history_item("progress", "spec", "start")
        assert re.fullmatch(r"\d+_[0-9a-f]{6}", item["id"])

    def test_optional_fields_omitted(self):
        item = create_history_item("progress", "spec", "start")
        assert "result" not in item
        assert "details" not in item

    def test_optional_fields_included(self):
        item = create_history_item("error", "pcb", "validate", "failed", {"count": 2})
        assert item["result"] == "failed"
        assert item["details"] == {"count": 2}


class TestMergeState:
    def test_plain_fields_replace(self, base_state):
        merged = merge_state(base_state, {"error": "boom", "enclosure_attempts": 2})
        assert merged["error"] == "boom"
        assert merged["enclosure_attempts"] == 2

    def test_does_not_mutate_input(self, base_state):
        merge_state(base_state, {"error": "boom"})
        assert base_state["error"] is None

    def test_history_appends(self, base_state):
        first = create_history_item("progress", "spec", "a")
        second = create_history_item("progress", "spec", "b")
        merged = merge_state(base_state, {"history": [first]})
        merged = merge_state(merged, {"history": [second]})
        assert [h["action"] for h in merged["history"]] == ["a", "b"]

    def test_decisions_append(self, base_state):
        merged = merge_state(base_state, {"decisions": [{"question_id": "q1"}]})
        merged = merge_state(merged, {"decisions": [{"question_id": "q2"}]})
        assert [d["question_id"] for d in merged["decisions"]] == ["q1", "q2"]

    def test_completed_stages_union_in_stage_order(self, base_state):
        merged = merge_state(base_state, {"completed_stages": ["pcb"]})
        merged = merge_state(merged, {"completed_stages": ["spec", "pcb"]})
        assert merged["completed_stages"] == ["spec", "pcb"]

    def test_stages_merge_per_key(self, base_state):
        merged = merge_state(base_state, {"stages": {"spec": {"status": "complete"}}})
        assert merged["stages"]["spec"]["status"] == "complete"
        assert merged["stages"]["pcb"]["status"] == "pending"

    def test_unknown_field_raises(self, base_state):
        with pytest.raises(KeyError):
            merge_state(base_state, {"not_a_field": 1})

    def test_locked_spec_cannot_be_replaced(self, base_state, locked_spec):
        state = merge_state(base_state, {"final_spec": locked_spec})
        with pytest.raises(FinalSpecLockedError):
            merge_state(state, {"final_spec": {**locked_spec, "name": "Other"}})

    def test_locked_spec_same_value_allowed(self, base_state, locked_spec):
        state = merge_state(base_state, {"final_spec": locked_spec})
        merged = merge_state(state, {"final_spec": dict(locked_spec)})
        assert merged["final_spec"]["name"] == "ThermoNode"

    def test_unlocked_spec_can_be_replaced(self, base_state):
        state = merge_state(base_state, {"final_spec": {"name": "Draft", "locked": False}})
        merged = merge_state(state, {"final_spec": {"name": "Final", "locked": True}})
        assert is_spec_locked(merged)


class TestProjectSpecConversion:
    def test_round_trip_keeps_artifacts(self, base_state, locked_spec, pcb_layout):
        state = merge_state(base_state, {"final_spec": locked_spec, "pcb": pcb_layout})
        spec = state_to_project_spec(state)
        assert spec["final_spec"]["name"] == "ThermoNode"
        assert spec["pcb"]["board_size"]["width"] == 50.8
        assert set(spec["stages"]) == set(STAGE_ORDER)

    def test_rehydrate_after_spec_complete(self, locked_spec, blocks_catalog):
        spec = {
            "description": "Temp sensor",
            "final_spec": locked_spec,
            "stages": {"spec": {"status": "complete"}},
        }
        state = state_from_project_spec("p", "assisted", spec, blocks_catalog)
        assert state["current_stage"] == "pcb"
        assert state["completed_stages"] == ["spec"]
        assert state["final_spec"]["locked"] is True

    def test_rehydrate_in_progress_stage_wins(self, blocks_catalog):
        spec = {
            "description": "x",
            "stages": {
                "spec": {"status": "complete"},
                "pcb": {"status": "complete"},
                "enclosure": {"status": "in_progress"},
            },
        }
        state = state_from_project_spec("p", "manual", spec, blocks_catalog)
        assert state["current_stage"] == "enclosure"
        assert state["completed_stages"] == ["spec", "pcb"]

    def test_rehydrate_empty_spec_starts_fresh(self, blocks_catalog):
        state = state_from_project_spec("p", "autonomous", {}, blocks_catalog)
        assert state["current_stage"] == "spec"
        assert state["final_spec"] is None
