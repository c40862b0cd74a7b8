"""Tests for spec-stage nodes: feasibility through the locked final spec."""

import pytest

from hdo import prompts
from hdo.nodes.spec import (
    DEFAULT_STYLE_HINTS,
    FALLBACK_NAMES,
    analyze_feasibility,
    answer_open_questions,
    build_final_spec,
    finalize_spec,
    generate_blueprints,
    generate_names,
    select_blueprint,
    select_name,
)
from hdo.state import merge_state

from conftest import FEASIBILITY_REJECTED, FEASIBILITY_WITH_QUESTIONS, ScriptedImageService


class TestAnalyzeFeasibility:
    @pytest.mark.asyncio
    async def test_manufacturable(self, base_state, ctx, text_service):
        update = await analyze_feasibility(base_state, ctx)
        assert update["feasibility"]["overallScore"] == 92
        assert update["open_questions"] == []
        assert update["error"] is None
        call = text_service.calls[0]
        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 4096
        assert call["project_id"] == "proj-1"
        assert call["model"] == "claude-test"

    @pytest.mark.asyncio
    async def test_open_questions_split_out(self, base_state, ctx, text_service):
        text_service.responses[prompts.FEASIBILITY_SYSTEM_PROMPT] = FEASIBILITY_WITH_QUESTIONS
        update = await analyze_feasibility(base_state, ctx)
        assert [q["id"] for q in update["open_questions"]] == ["q1", "q2"]
        assert "openQuestions" not in update["feasibility"]

    @pytest.mark.asyncio
    async def test_rejection_sets_reason_and_drops_questions(self, base_state, ctx, text_service):
        text_service.responses[prompts.FEASIBILITY_SYSTEM_PROMPT] = FEASIBILITY_REJECTED
        update = await analyze_feasibility(base_state, ctx)
        assert update["error"] == "requires FPGA"
        assert update["open_questions"] == []
        assert update["feasibility"]["manufacturable"] is False

    @pytest.mark.asyncio
    async def test_unparseable_response(self, base_state, ctx, text_service):
        text_service.responses[prompts.FEASIBILITY_SYSTEM_PROMPT] = "I cannot answer that."
        update = await analyze_feasibility(base_state, ctx)
        assert update["error"] == "Failed to parse feasibility response"
        assert "feasibility" not in update
        assert update["history"][0]["type"] == "error"

    @pytest.mark.asyncio
    async def test_service_failure(self, base_state, ctx, text_service):
        text_service.responses[prompts.FEASIBILITY_SYSTEM_PROMPT] = ConnectionError("down")
        update = await analyze_feasibility(base_state, ctx)
        assert "down" in update["error"]
        assert "feasibility" not in update


class TestAnswerOpenQuestions:
    @pytest.mark.asyncio
    async def test_first_option_chosen(self, base_state, ctx):
        state = merge_state(base_state, {"open_questions": [
            {"id": "q1", "question": "Which display?", "options": ["OLED", "LCD"]},
            {"id": "q2", "question": "Color?", "options": []},
        ]})
        update = await answer_open_questions(state, ctx)
        assert [d["answer"] for d in update["decisions"]] == ["OLED", ""]
        assert update["decisions"][0]["question_id"] == "q1"
        assert update["open_questions"] == []


class TestGenerateBlueprints:
    @pytest.mark.asyncio
    async def test_one_per_style(self, base_state, ctx, image_service):
        update = await generate_blueprints(base_state, ctx)
        assert [b["style"] for b in update["blueprints"]] == ["minimalist", "industrial"]
        assert update["blueprints"][0]["prompt"].endswith(" - minimalist style")
        assert update["selected_blueprint"] is None
        assert "error" not in update

    @pytest.mark.asyncio
    async def test_default_styles(self, base_state, ctx, image_service):
        ctx.config["blueprint_styles"] = None
        update = await generate_blueprints(base_state, ctx)
        assert len(update["blueprints"]) == len(DEFAULT_STYLE_HINTS)

    @pytest.mark.asyncio
    async def test_partial_failure_collected(self, base_state, ctx):
        ctx.image = ScriptedImageService(fail_on=("industrial",))
        update = await generate_blueprints(base_state, ctx)
        assert [b["style"] for b in update["blueprints"]] == ["minimalist"]
        assert "error" not in update
        assert update["history"][0]["details"]["failures"][0]["style"] == "industrial"
        assert update["history"][1]["type"] == "error"
        assert update["history"][1]["result"] == "1 blueprint image(s) failed"

    @pytest.mark.asyncio
    async def test_every_image_failed(self, base_state, ctx):
        ctx.image = ScriptedImageService(fail_on=("style",))
        update = await generate_blueprints(base_state, ctx)
        assert update["blueprints"] == []
        assert update["error"] == "All image generations failed"

    @pytest.mark.asyncio
    async def test_no_image_service(self, base_state, ctx):
        ctx.image = None
        update = await generate_blueprints(base_state, ctx)
        assert update["error"] == "No image service configured"


class TestSelectBlueprint:
    @pytest.fixture
    def with_blueprints(self, base_state):
        return merge_state(base_state, {"blueprints": [
            {"url": "u1", "prompt": "p1", "style": "a"},
            {"url": "u2", "prompt": "p2", "style": "b"},
        ]})

    @pytest.mark.asyncio
    async def test_defaults_to_first(self, with_blueprints, ctx):
        update = await select_blueprint(with_blueprints, ctx)
        assert update["selected_blueprint"] == 0

    @pytest.mark.asyncio
    async def test_human_index_consumed(self, with_blueprints, ctx):
        state = merge_state(with_blueprints, {"human_input": {"index": 1}})
        update = await select_blueprint(state, ctx)
        assert update["selected_blueprint"] == 1
        assert update["human_input"] is None
        assert update["pending_input"] is None

    @pytest.mark.asyncio
    async def test_out_of_range_index(self, with_blueprints, ctx):
        state = merge_state(with_blueprints, {"human_input": {"index": 7}})
        update = await select_blueprint(state, ctx)
        assert "selected_blueprint" not in update
        assert update["error"] == "Invalid blueprint index: 7"


class TestGenerateNames:
    @pytest.mark.asyncio
    async def test_parsed_names(self, base_state, ctx, text_service):
        update = await generate_names(base_state, ctx)
        assert [n["name"] for n in update["generated_names"]][:2] == ["ThermoNode", "Klima"]
        call = text_service.calls_for(prompts.NAMING_SYSTEM_PROMPT)[0]
        assert call["temperature"] == 0.8
        assert call["max_tokens"] == 1024

    @pytest.mark.asyncio
    async def test_parse_failure_uses_fallback(self, base_state, ctx, text_service):
        text_service.responses[prompts.NAMING_SYSTEM_PROMPT] = "no json here"
        update = await generate_names(base_state, ctx)
        assert update["generated_names"] == FALLBACK_NAMES

    @pytest.mark.asyncio
    async def test_service_failure_uses_fallback(self, base_state, ctx, text_service):
        text_service.responses[prompts.NAMING_SYSTEM_PROMPT] = RuntimeError("quota")
        update = await generate_names(base_state, ctx)
        assert update["generated_names"] == FALLBACK_NAMES
        assert "quota" in update["error"]


class TestSelectName:
    @pytest.fixture
    def with_names(self, base_state):
        return merge_state(base_state, {"generated_names": [
            {"name": "Alpha", "style": "abstract", "reasoning": ""},
            {"name": "Beta", "style": "punchy", "reasoning": ""},
        ]})

    @pytest.mark.asyncio
    async def test_defaults_to_first(self, with_names, ctx):
        assert (await select_name(with_names, ctx))["selected_name"] == "Alpha"

    @pytest.mark.asyncio
    async def test_index(self, with_names, ctx):
        state = merge_state(with_names, {"human_input": {"index": 1}})
        assert (await select_name(state, ctx))["selected_name"] == "Beta"

    @pytest.mark.asyncio
    async def test_custom_name_wins(self, with_names, ctx):
        state = merge_state(with_names, {"human_input": {"custom_name": "  Gamma ", "index": 1}})
        update = await select_name(state, ctx)
        assert update["selected_name"] == "Gamma"
        assert update["human_input"] is None


class TestBuildFinalSpec:
    def test_decisions_shape_outputs_and_power(self, base_state):
        state = merge_state(base_state, {
            "selected_name": "ThermoNode",
            "decisions": [
                {"question": "Which display?", "answer": "OLED 0.96 inch"},
                {"question": "How many LEDs?", "answer": "8 LEDs"},
                {"question": "Power source?", "answer": "LiPo battery"},
            ],
            "feasibility": {"inputs": {"items": ["Button"]}, "outputs": {"items": ["OLED", "Buzzer"]}},
        })
        spec = build_final_spec(state)
        types = [o["type"] for o in spec["outputs"]]
        assert types == ["OLED Display", "WS2812B LEDs", "Buzzer"]
        assert spec["outputs"][1]["count"] == 8
        assert spec["power"]["source"] == "LiPo battery"
        assert spec["inputs"] == [{"type": "Button", "count": 1, "notes": ""}]
        assert spec["name"] == "ThermoNode"
        assert spec["locked"] is True

    def test_led_count_defaults_to_four(self, base_state):
        state = merge_state(base_state, {"decisions": [{"question": "LED count?", "answer": "lots"}]})
        assert build_final_spec(state)["outputs"][0]["count"] == 4

    def test_name_falls_back_to_description(self, base_state):
        assert build_final_spec(base_state)["name"] == "A WiFi temperature sensor with LEDs"


class TestFinalizeSpec:
    @pytest.mark.asyncio
    async def test_locks_spec(self, base_state, ctx):
        state = merge_state(base_state, {"selected_name": "ThermoNode"})
        update = await finalize_spec(state, ctx)
        assert update["final_spec"]["locked"] is True
        assert "current_stage" not in update

    @pytest.mark.asyncio
    async def test_idempotent_when_locked(self, base_state, ctx, locked_spec):
        state = merge_state(base_state, {"final_spec": locked_spec})
        update = await finalize_spec(state, ctx)
        assert "final_spec" not in update
        merged = merge_state(state, update)
        assert merged["final_spec"] == locked_spec
