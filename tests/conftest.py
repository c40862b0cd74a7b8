"""Shared fixtures for the HDO test suite."""

import json

import pytest

from hdo import prompts
from hdo.nodes.shared import NodeContext
from hdo.services import ChatResponse, ImageResponse
from hdo.state import initial_state


class ScriptedTextService:
    """Text service returning canned responses keyed by system prompt.

    A list value is consumed in order and its last entry repeats. An
    exception value is raised instead of returned.
    """

    def __init__(self, responses: dict):
        self.responses = {k: list(v) if isinstance(v, list) else v for k, v in responses.items()}
        self.calls: list[dict] = []

    async def chat(self, system_prompt, user_prompt, *, temperature, max_tokens, project_id, model=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "project_id": project_id,
            "model": model,
        })
        script = self.responses.get(system_prompt)
        if isinstance(script, list):
            value = script.pop(0) if len(script) > 1 else script[0]
        else:
            value = script
        if value is None:
            raise AssertionError("No scripted response for this prompt")
        if isinstance(value, BaseException):
            raise value
        return ChatResponse(content=value)

    def calls_for(self, system_prompt: str) -> list[dict]:
        return [c for c in self.calls if c["system_prompt"] == system_prompt]


class ScriptedImageService:
    """Image service returning numbered URLs; prompts containing a ``fail_on`` fragment raise."""

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.fail_on = fail_on
        self.prompts: list[str] = []

    async def generate_image(self, prompt: str) -> ImageResponse:
        self.prompts.append(prompt)
        if any(fragment in prompt for fragment in self.fail_on):
            raise RuntimeError("render failed")
        return ImageResponse(url=f"https://images.test/{len(self.prompts)}.png")


def review_json(score: int, verdict: str, issues: list[dict] | None = None) -> str:
    return json.dumps({
        "score": score,
        "verdict": verdict,
        "issues": issues or [],
        "positives": ["Clear structure"],
        "summary": f"Scored {score}",
    })


FEASIBILITY_OK = json.dumps({
    "manufacturable": True,
    "overallScore": 92,
    "inputs": {"items": []},
    "outputs": {"items": ["Temperature sensor"]},
    "power": {"options": ["USB-C powered"]},
    "openQuestions": [],
})

FEASIBILITY_WITH_QUESTIONS = json.dumps({
    "manufacturable": True,
    "overallScore": 88,
    "inputs": {"items": []},
    "outputs": {"items": []},
    "openQuestions": [
        {"id": "q1", "question": "Which display?", "options": ["OLED 0.96 inch", "LCD 1.8 inch"]},
        {"id": "q2", "question": "How many LEDs?", "options": ["8 LEDs", "16 LEDs"]},
    ],
})

FEASIBILITY_REJECTED = json.dumps({
    "manufacturable": False,
    "overallScore": 20,
    "rejectionReason": "requires FPGA",
    "openQuestions": [{"id": "q1", "question": "Ignored?", "options": ["yes"]}],
})

NAMES = json.dumps({
    "names": [
        {"name": "ThermoNode", "style": "compound", "reasoning": "Temperature node"},
        {"name": "Klima", "style": "abstract", "reasoning": "Climate"},
        {"name": "HeatSense", "style": "descriptive", "reasoning": "Senses heat"},
        {"name": "Zap", "style": "punchy", "reasoning": "Short"},
    ]
})

ENCLOSURE_CODE = (
    "Here is the enclosure:\n"
    "```openscad\n"
    "inner_width = 80;\n"
    "inner_height = 60;\n"
    "inner_depth = 25;\n"
    "wall = 2;\n"
    "// usb cutout and mounting screw bosses\n"
    "difference() { cube([84, 64, 29]); }\n"
    "```"
)

FIRMWARE_FILES = json.dumps({
    "files": [
        {
            "path": "src/main.cpp",
            "content": "#define PIN_LED_DATA 8\n#include <Wire.h>\n// BME280 at 0x76\nvoid setup() {}\nvoid loop() {}\n",
            "language": "cpp",
        },
        {"path": "platformio.ini", "content": "[env:esp32c6]\n", "language": "ini"},
    ]
})

REVIEW_ACCEPT = review_json(92, "accept")
REVIEW_REVISE = review_json(
    60,
    "revise",
    [{"severity": "critical", "description": "Walls too thin", "suggestion": "Use 2mm walls"}],
)


@pytest.fixture
def blocks_catalog():
    """Small circuit-block catalog covering MCU, power, sensors and outputs."""
    return [
        {"slug": "mcu-esp32c6", "width_units": 2, "height_units": 2},
        {"slug": "power-usb", "width_units": 1, "height_units": 1},
        {"slug": "power-lipo", "width_units": 2, "height_units": 1},
        {"slug": "sensor-bme280", "width_units": 1, "height_units": 1},
        {
            "slug": "output-ws2812b",
            "width_units": 1,
            "height_units": 1,
            "nets": [{"net": "led_data", "gpio": "GPIO8"}],
        },
        {"slug": "output-oled-096", "width_units": 2, "height_units": 1},
        {"slug": "connector-buttons-2", "width_units": 1, "height_units": 1},
    ]


@pytest.fixture
def mock_config():
    """Config dict mirroring config.yaml with deterministic test values."""
    return {
        "generator_model": "claude-test",
        "reviewer_model": "claude-test-reviewer",
        "llm_max_retries": 0,
        "image_endpoint": None,
        "image_timeout_s": 5,
        "max_iterations": 100,
        "accept_threshold": 85,
        "max_loop_attempts": 3,
        "checkpoint_keep": None,
        "blueprint_styles": ["minimalist", "industrial"],
        "output_path": "./output",
    }


@pytest.fixture
def responses():
    """Happy-path responses for every text-service call."""
    return {
        prompts.FEASIBILITY_SYSTEM_PROMPT: FEASIBILITY_OK,
        prompts.NAMING_SYSTEM_PROMPT: NAMES,
        prompts.ENCLOSURE_SYSTEM_PROMPT: ENCLOSURE_CODE,
        prompts.ENCLOSURE_REVIEW_PROMPT: REVIEW_ACCEPT,
        prompts.FIRMWARE_SYSTEM_PROMPT: FIRMWARE_FILES,
        prompts.FIRMWARE_REVIEW_PROMPT: REVIEW_ACCEPT,
    }


@pytest.fixture
def text_service(responses):
    return ScriptedTextService(responses)


@pytest.fixture
def image_service():
    return ScriptedImageService()


@pytest.fixture
def ctx(text_service, image_service, mock_config):
    return NodeContext(text=text_service, image=image_service, config=mock_config)


@pytest.fixture
def base_state(blocks_catalog):
    """Fresh autonomous state for a temperature-sensor project."""
    return initial_state("proj-1", "autonomous", "A WiFi temperature sensor with LEDs", blocks_catalog)


@pytest.fixture
def locked_spec():
    return {
        "name": "ThermoNode",
        "summary": "A WiFi temperature sensor with LEDs",
        "pcb_size": {"width": 50.8, "height": 38.1, "unit": "mm"},
        "inputs": [],
        "outputs": [
            {"type": "WS2812B LEDs", "count": 8, "notes": "RGB addressable"},
            {"type": "Temperature sensor", "count": 1, "notes": ""},
        ],
        "power": {"source": "USB-C", "voltage": "5V", "current": "500mA"},
        "communication": {"type": "WiFi", "protocol": "HTTP/MQTT"},
        "enclosure": {"style": "rounded_box", "width": 60, "height": 45, "depth": 25},
        "estimated_bom": [],
        "locked": True,
        "locked_at": "2026-01-01T00:00:00+00:00",
    }


@pytest.fixture
def pcb_layout():
    """PCB produced by auto_select_blocks for ``locked_spec`` on ``blocks_catalog``."""
    return {
        "placed_blocks": [
            {"block_slug": "mcu-esp32c6", "grid_x": 0, "grid_y": 0, "rotation": 0, "reason": "Required MCU"},
            {"block_slug": "power-usb", "grid_x": 2, "grid_y": 0, "rotation": 0, "reason": "Power source: USB-C"},
            {"block_slug": "output-ws2812b", "grid_x": 3, "grid_y": 0, "rotation": 0, "reason": "Output"},
            {"block_slug": "sensor-bme280", "grid_x": 4, "grid_y": 0, "rotation": 0, "reason": "Sensor"},
        ],
        "board_size": {"width": 50.8, "height": 38.1, "unit": "mm"},
        "net_list": [{"net": "led_data", "gpio": "GPIO8", "block_slug": "output-ws2812b"}],
    }
