"""Circuit-block auto-selection and grid placement.

Catalog blocks are dicts with at least ``slug``, ``width_units`` and
``height_units``. Placement packs blocks row by row on a 12.7 mm grid.
"""

GRID_SIZE_MM = 12.7
MAX_ROW_UNITS = 6
MIN_BOARD_UNITS = (4, 3)  # (width, height)

# Slug prefixes that satisfy a power source, checked in order.
_POWER_RULES = [
    (("usb",), "power-usb"),
    (("lipo", "battery", "lithium"), "power-lipo"),
    (("aa", "aaa"), "power-boost"),
    (("cr2032", "coin"), "power-cr2032"),
]

# Spec output keywords mapped to candidate block slugs (first found wins).
_OUTPUT_RULES = [
    (("temperature", "humidity", "environmental"), ("sensor-bme280", "sensor-sht40"), "Sensor"),
    (("acceleration", "motion", "tilt"), ("sensor-lis3dh",), "Sensor"),
    (("light", "ambient", "lux"), ("sensor-veml7700",), "Sensor"),
    (("distance", "proximity", "range"), ("sensor-vl53l0x",), "Sensor"),
    (("pir", "presence"), ("sensor-pir",), "Sensor"),
    (("led", "neopixel", "ws2812"), ("output-ws2812b",), "Output"),
    (("display", "oled", "screen"), ("output-oled",), "Display"),
    (("buzzer", "sound", "beep"), ("output-buzzer",), "Output"),
    (("relay", "switch"), ("output-relay",), "Output"),
    (("motor",), ("output-drv8833",), "Output"),
]


def find_block(available_blocks: list[dict], pattern: str) -> dict | None:
    """Return the first catalog block whose slug contains ``pattern``."""
    pattern = pattern.lower()
    for block in available_blocks:
        if pattern in block["slug"].lower():
            return block
    return None


def board_size(placed_blocks: list[dict], available_blocks: list[dict]) -> dict:
    """Compute the board size in mm covering every placed block."""
    by_slug = {b["slug"]: b for b in available_blocks}
    max_x, max_y = 0, 0
    for placed in placed_blocks:
        block = by_slug.get(placed["block_slug"])
        if block is None:
            continue
        max_x = max(max_x, placed["grid_x"] + block["width_units"])
        max_y = max(max_y, placed["grid_y"] + block["height_units"])
    return {
        "width": max(max_x, MIN_BOARD_UNITS[0]) * GRID_SIZE_MM,
        "height": max(max_y, MIN_BOARD_UNITS[1]) * GRID_SIZE_MM,
        "unit": "mm",
    }


class _Packer:
    """Row-based packer: fill a row up to MAX_ROW_UNITS, then start a new one."""

    def __init__(self, available_blocks: list[dict]):
        self.by_slug = {b["slug"]: b for b in available_blocks}
        self.placed: list[dict] = []
        self.warnings: list[str] = []
        self.x = 0
        self.y = 0
        self.max_height = 0

    def place(self, slug: str, reason: str) -> None:
        block = self.by_slug.get(slug)
        if block is None:
            self.warnings.append(f"Block {slug} not found in library")
            return
        if self.x + block["width_units"] > MAX_ROW_UNITS:
            self.x = 0
            self.y = self.max_height
        self.placed.append({
            "block_slug": slug,
            "grid_x": self.x,
            "grid_y": self.y,
            "rotation": 0,
            "reason": reason,
        })
        self.x += block["width_units"]
        self.max_height = max(self.max_height, self.y + block["height_units"])


def _power_block_pattern(source: str) -> str:
    source = source.lower()
    for keywords, pattern in _POWER_RULES:
        if any(k in source for k in keywords):
            return pattern
    return "power-usb"


def auto_select_blocks(final_spec: dict, available_blocks: list[dict]) -> dict:
    """Pick and place blocks satisfying a locked spec.

    Returns ``{"placed_blocks", "board_size", "warnings", "reasoning"}``.
    """
    packer = _Packer(available_blocks)

    mcu = find_block(available_blocks, "mcu-esp32c6")
    if mcu:
        packer.place(mcu["slug"], "Required MCU")
    else:
        packer.warnings.append("ESP32-C6 MCU block not found")

    power_source = (final_spec.get("power") or {}).get("source", "")
    power = find_block(available_blocks, _power_block_pattern(power_source))
    if power:
        packer.place(power["slug"], f"Power source: {power_source or 'USB-C'}")
    else:
        packer.warnings.append(f"No power block found for {power_source or 'USB-C'}")

    for output in final_spec.get("outputs", []):
        output_type = (output.get("type") or "").lower()
        for keywords, candidates, label in _OUTPUT_RULES:
            if not any(k in output_type for k in keywords):
                continue
            block = next(
                (b for b in (find_block(available_blocks, c) for c in candidates) if b), None
            )
            if block:
                packer.place(block["slug"], f"{label} for {output['type']}")

    for item in final_spec.get("inputs", []):
        input_type = (item.get("type") or "").lower()
        if "button" in input_type:
            pattern = "connector-buttons-2" if item.get("count", 1) <= 2 else "connector-buttons-4"
            block = find_block(available_blocks, pattern)
            if block:
                packer.place(block["slug"], f"Input for {item['type']}")
        if any(k in input_type for k in ("encoder", "dial", "knob")):
            block = find_block(available_blocks, "connector-encoder")
            if block:
                packer.place(block["slug"], f"Input for {item['type']}")

    size = board_size(packer.placed, available_blocks)
    return {
        "placed_blocks": packer.placed,
        "board_size": size,
        "warnings": packer.warnings,
        "reasoning": (
            f"Auto-selected {len(packer.placed)} blocks based on spec requirements. "
            f"Board size: {size['width']:.1f}x{size['height']:.1f}mm"
        ),
    }
