"""Default system prompts and user-prompt builders for the text service.

Prompts only carry enough instruction to get parseable output; design
quality is judged by the services, not by the orchestrator.
"""

import json

FEASIBILITY_SYSTEM_PROMPT = """\
You are an expert hardware design assistant. Analyze a product description and decide \
whether it can be manufactured from the available building blocks.

Available blocks: ESP32-C6 MCU (WiFi 6, BLE 5.3, Zigbee/Thread); power from LiPo with USB-C \
charging, buck converter (7-24V), 2xAA/AAA with boost, or CR2032; sensors BME280, SHT40, \
LIS3DH, VEML7700, VL53L0X, PIR; outputs WS2812B LEDs, piezo buzzer, relay, DRV8833 motor \
driver; connectors for a 0.96" OLED, buttons, rotary encoder and SPI LCD. Max 24V, ~2A total, \
12.7mm PCB grid.

You MUST reject projects that need an FPGA or more compute than an ESP32-C6, mains or >24V, \
safety-critical or medical use, complex RF beyond WiFi/BLE/Zigbee, or precision analog.

Respond ONLY with a JSON object:
{
  "communication": {"type": "string", "confidence": 0-100, "notes": "string"},
  "processing": {"level": "low | medium | high", "confidence": 0-100, "notes": "string"},
  "power": {"options": ["string"], "confidence": 0-100, "notes": "string"},
  "inputs": {"items": ["string"], "confidence": 0-100},
  "outputs": {"items": ["string"], "confidence": 0-100},
  "overallScore": 0-100,
  "manufacturable": true or false,
  "rejectionReason": "string or null",
  "openQuestions": [{"id": "kebab-id", "question": "string", "options": ["string"]}]
}

Always ask about the power source unless the description states it.
"""

NAMING_SYSTEM_PROMPT = """\
You are a creative product naming specialist. Generate distinctive, memorable names for \
hardware projects: 1-2 words, max 15 characters, each in a DIFFERENT style (compound, \
abstract, portmanteau, punchy). Never use generic words like Smart, IoT, Hub or Device.

Respond ONLY with JSON:
{"names": [{"name": "string", "style": "string", "reasoning": "string"}]}
"""

ENCLOSURE_SYSTEM_PROMPT = """\
You are an expert parametric CAD assistant specializing in OpenSCAD. Generate complete, \
valid OpenSCAD code for a 3D-printable two-part electronics enclosure.

- Define every dimension as a variable at the top, including inner_width, inner_height, \
inner_depth and wall_thickness.
- Leave at least 2mm clearance on each side of the PCB.
- Minimum wall thickness 1.5mm; use $fn = 32; never use text().
- Add PCB mounting bosses and cutouts for every port, button, display and LED.

Return the code in a single ```openscad fenced block.
"""

FIRMWARE_SYSTEM_PROMPT = """\
You are an expert embedded firmware developer for ESP32-C6 using Arduino on PlatformIO. \
Generate a complete, compilable project: platformio.ini, include/config.h with every pin \
definition, and src/ files for sensors, outputs and networking.

Respond ONLY with JSON:
{"files": [{"path": "src/main.cpp", "content": "string", "language": "cpp | c | h | json"}]}
"""

ENCLOSURE_REVIEW_PROMPT = """\
You are an expert enclosure design analyst for 3D-printed hardware. Review the OpenSCAD code \
against the specification: dimensional accuracy and PCB clearance, component cutouts, \
assembly features, printability, and code quality.

Respond ONLY with JSON:
{
  "score": 0-100,
  "verdict": "accept" or "revise",
  "issues": [{"severity": "critical | warning | info", "description": "string", "suggestion": "string"}],
  "positives": ["string"],
  "summary": "one sentence"
}

Use "accept" only when score >= 85 and there are no critical issues.
"""

FIRMWARE_REVIEW_PROMPT = """\
You are an expert ESP32-C6 firmware analyst. Review the firmware against the specification \
and PCB: pin configuration, peripheral initialization and I2C addresses, functional \
completeness, power management, code quality and reliability.

Respond ONLY with JSON:
{
  "score": 0-100,
  "verdict": "accept" or "revise",
  "issues": [{"severity": "critical | warning | info", "description": "string", "suggestion": "string"}],
  "positives": ["string"],
  "summary": "one sentence"
}

Use "accept" only when score >= 85, there are no critical issues and every required \
feature is present.
"""

FEEDBACK_HEADER = "## PREVIOUS REVIEW FEEDBACK - Address these issues:"


def build_feasibility_prompt(description: str) -> str:
    return (
        "Analyze this product description for feasibility:\n\n"
        f'"{description}"\n\n'
        "Determine if this can be built with the available components. Identify any open "
        "questions that need user decisions. Respond with JSON only."
    )


def build_naming_prompt(description: str, feasibility: dict | None, decisions: list[dict]) -> str:
    feasibility = feasibility or {}
    components = ", ".join(feasibility.get("matchedComponents") or []) or "various sensors"
    choices = "\n".join(f"- {d['answer']}" for d in decisions[:3]) or "- Standard configuration"
    primary = feasibility.get("primaryFunction") or "Environmental monitoring and control"
    return (
        "Generate 4 creative name options for this hardware project.\n\n"
        f'## Project Description\n"{description}"\n\n'
        f"## Key Components\n{components}\n\n"
        f"## Design Choices\n{choices}\n\n"
        f"## Primary Function\n{primary}\n\n"
        "Generate 4 distinct names using different naming styles."
    )


def build_blueprint_context(description: str, decisions: list[dict], feasibility: dict | None) -> str:
    """Short product context shared by every blueprint image prompt."""
    parts = [description]
    for d in decisions:
        question = d.get("question", "").lower()
        if "display" in question or "led" in question:
            parts.append(d["answer"])
    power_options = ((feasibility or {}).get("power") or {}).get("options") or []
    if power_options:
        parts.append(power_options[0])
    return ", ".join(p for p in parts if p)


def build_blueprint_prompt(context: str, style: str) -> str:
    return f"{context} - {style} style"


def _spec_section(final_spec: dict, pcb: dict) -> str:
    return (
        f"## Project\nName: {final_spec.get('name')}\nSummary: {final_spec.get('summary')}\n\n"
        f"## Inputs\n{json.dumps(final_spec.get('inputs', []), indent=2)}\n\n"
        f"## Outputs\n{json.dumps(final_spec.get('outputs', []), indent=2)}\n\n"
        f"## Power\n{json.dumps(final_spec.get('power', {}), indent=2)}\n\n"
        f"## PCB\nBoard size: {json.dumps(pcb.get('board_size', {}))}\n"
        f"Placed blocks: {', '.join(b['block_slug'] for b in pcb.get('placed_blocks', []))}\n"
    )


def with_feedback(prompt: str, feedback: str | None) -> str:
    """Append prior review feedback to a generation prompt when present."""
    if not feedback:
        return prompt
    return f"{prompt}\n\n{FEEDBACK_HEADER}\n{feedback}"


def build_enclosure_prompt(final_spec: dict, pcb: dict) -> str:
    enclosure = final_spec.get("enclosure", {})
    return (
        "Design an enclosure for this device.\n\n"
        f"{_spec_section(final_spec, pcb)}\n"
        f"## Enclosure Requirements\n{json.dumps(enclosure, indent=2)}\n"
    )


def build_firmware_prompt(final_spec: dict, pcb: dict) -> str:
    comms = final_spec.get("communication", {})
    return (
        "Write firmware for this device.\n\n"
        f"{_spec_section(final_spec, pcb)}\n"
        f"## Communication\n{json.dumps(comms, indent=2)}\n\n"
        f"## Net list\n{json.dumps(pcb.get('net_list', []), indent=2)}\n"
    )


def build_enclosure_review_prompt(final_spec: dict, pcb: dict, openscad_code: str) -> str:
    return (
        f"{_spec_section(final_spec, pcb)}\n"
        f"## Enclosure Requirements\n{json.dumps(final_spec.get('enclosure', {}), indent=2)}\n\n"
        f"## OpenSCAD Code to Review\n```openscad\n{openscad_code}\n```\n"
    )


def build_firmware_review_prompt(final_spec: dict, pcb: dict, files: list[dict]) -> str:
    rendered = "\n\n".join(
        f"### {f['path']}\n```{f.get('language', 'cpp')}\n{f.get('content', '')}\n```" for f in files
    )
    return f"{_spec_section(final_spec, pcb)}\n## Firmware to Review\n{rendered}\n"
