"""Cross-stage consistency checks between spec, PCB, enclosure and firmware.

Every check returns a result dict::

    {"valid": bool, "issues": [...], "suggestions": [...]}

``valid`` is False only when an issue has severity ``error``; warnings and
info never fail a check.
"""

import re

CLEARANCE_MM = 2  # Minimum clearance between PCB and enclosure wall, per side.
DEFAULT_WALL_MM = 2
CHECK_TYPES = ("pcb_fits_enclosure", "firmware_matches_pcb", "spec_satisfied", "all")

# Fixed I2C addresses of catalog parts.
I2C_ADDRESSES = {
    "sensor-bme280": "0x76",
    "sensor-sht40": "0x44",
    "sensor-lis3dh": "0x18",
    "sensor-veml7700": "0x10",
    "sensor-vl53l0x": "0x29",
    "output-oled-096": "0x3C",
}

# Spec output keyword -> block slug fragments that satisfy it.
_REQUIRED_BLOCK_PATTERNS = {
    "temperature": ["bme280", "sht40"],
    "humidity": ["bme280", "sht40"],
    "pressure": ["bme280"],
    "acceleration": ["lis3dh"],
    "motion": ["lis3dh", "pir"],
    "light": ["veml7700"],
    "distance": ["vl53l0x"],
    "led": ["ws2812b", "output-led"],
    "display": ["oled", "lcd"],
    "buzzer": ["buzzer"],
    "relay": ["relay"],
}

_SCAD_VARS = {
    "pcb_width": r"pcb_width\s*=\s*(\d+(?:\.\d+)?)",
    "pcb_height": r"pcb_height\s*=\s*(\d+(?:\.\d+)?)",
    "wall": r"wall(?:_thickness)?\s*=\s*(\d+(?:\.\d+)?)",
    "inner_width": r"inner_width\s*=\s*(\d+(?:\.\d+)?)",
    "inner_height": r"inner_height\s*=\s*(\d+(?:\.\d+)?)",
    "inner_depth": r"inner_depth\s*=\s*(\d+(?:\.\d+)?)",
    "case_width": r"case_width\s*=\s*(\d+(?:\.\d+)?)",
    "case_height": r"case_height\s*=\s*(\d+(?:\.\d+)?)",
}


def _result(issues: list[dict], suggestions: list[dict]) -> dict:
    return {
        "valid": not any(i["severity"] == "error" for i in issues),
        "issues": issues,
        "suggestions": suggestions,
    }


def _issue(id: str, severity: str, stage: str, message: str, details: str = "") -> dict:
    return {"id": id, "severity": severity, "stage": stage, "message": message, "details": details}


# --- PCB structure ---


def validate_pcb_layout(pcb: dict, available_blocks: list[dict]) -> dict:
    """Structural PCB checks: MCU and power present, no overlaps, I2C conflicts."""
    issues: list[dict] = []
    placed = pcb.get("placed_blocks", [])

    if not any(b["block_slug"].startswith("mcu-") for b in placed):
        issues.append(_issue("missing_mcu", "error", "pcb", "No MCU block selected"))
    if not any(b["block_slug"].startswith("power-") for b in placed):
        issues.append(_issue("missing_power", "error", "pcb", "No power block selected"))

    by_slug = {b["slug"]: b for b in available_blocks}
    occupied: dict[tuple[int, int], str] = {}
    for block in placed:
        definition = by_slug.get(block["block_slug"])
        if definition is None:
            continue
        for x in range(block["grid_x"], block["grid_x"] + definition["width_units"]):
            for y in range(block["grid_y"], block["grid_y"] + definition["height_units"]):
                if (x, y) in occupied:
                    issues.append(_issue(
                        f"overlap_{x}_{y}",
                        "error",
                        "pcb",
                        f"Block overlap at ({x}, {y}): {block['block_slug']} and {occupied[(x, y)]}",
                    ))
                else:
                    occupied[(x, y)] = block["block_slug"]

    by_address: dict[str, list[str]] = {}
    for block in placed:
        address = I2C_ADDRESSES.get(block["block_slug"])
        if address:
            by_address.setdefault(address, []).append(block["block_slug"])
    for address, slugs in by_address.items():
        if len(slugs) > 1:
            issues.append(_issue(
                f"i2c_conflict_{address}",
                "warning",
                "pcb",
                f"I2C address conflict at {address}: {', '.join(slugs)}",
            ))

    return _result(issues, [])


# --- Cross-stage ---


def validate_spec_satisfied(final_spec: dict | None, pcb: dict | None) -> dict:
    """Every spec output and the power source must have a matching placed block."""
    issues: list[dict] = []
    suggestions: list[dict] = []
    if not final_spec or not pcb or not pcb.get("placed_blocks"):
        return _result(issues, suggestions)

    slugs = [b["block_slug"].lower() for b in pcb["placed_blocks"]]

    for output in final_spec.get("outputs", []):
        output_type = (output.get("type") or "").lower()
        if not output_type:
            continue
        for keyword, patterns in _REQUIRED_BLOCK_PATTERNS.items():
            if keyword not in output_type:
                continue
            if any(p in slug for slug in slugs for p in patterns):
                continue
            issue_id = f"missing_block_{keyword}"
            issues.append(_issue(
                issue_id,
                "error",
                "pcb",
                f"Missing PCB block for {output['type']}",
                f"Spec requires {output['type']} but no matching block "
                f"({' or '.join(patterns)}) is placed",
            ))
            suggestions.append({
                "issue_id": issue_id,
                "stage": "pcb",
                "action": f"Add a {patterns[0]} block to satisfy {output['type']} requirement",
                "auto_fixable": True,
            })

    source = (final_spec.get("power") or {}).get("source", "")
    lowered = source.lower()

    def _matches_power(slug: str) -> bool:
        if "usb" in lowered:
            return "usb" in slug
        if "battery" in lowered or "lipo" in lowered:
            return "lipo" in slug or "battery" in slug
        if "aa" in lowered:
            return "boost" in slug or "battery" in slug
        return "power" in slug

    if not any(_matches_power(slug) for slug in slugs):
        issues.append(_issue(
            "missing_power_block",
            "error",
            "pcb",
            f"Missing power block for {source}",
            f"Spec requires {source} but no matching power block is placed",
        ))
        suggestions.append({
            "issue_id": "missing_power_block",
            "stage": "pcb",
            "action": f"Add a power block matching {source}",
            "auto_fixable": True,
        })

    return _result(issues, suggestions)


def parse_enclosure_dimensions(openscad_code: str) -> dict | None:
    """Derive inner enclosure dimensions from OpenSCAD variable assignments.

    Inner width/height come from ``inner_*`` if present, else ``pcb_*`` + 1,
    else ``case_*`` minus two walls. Returns None if either cannot be found.
    """
    values = {}
    for key, pattern in _SCAD_VARS.items():
        match = re.search(pattern, openscad_code)
        if match:
            values[key] = float(match.group(1))

    wall = values.get("wall") or DEFAULT_WALL_MM

    def _inner(axis: str) -> float | None:
        if values.get(f"inner_{axis}"):
            return values[f"inner_{axis}"]
        if values.get(f"pcb_{axis}"):
            return values[f"pcb_{axis}"] + 1
        if values.get(f"case_{axis}"):
            return values[f"case_{axis}"] - wall * 2
        return None

    inner_width = _inner("width")
    inner_height = _inner("height")
    if inner_width is None or inner_height is None:
        return None
    return {
        "inner_width": inner_width,
        "inner_height": inner_height,
        "inner_depth": values.get("inner_depth") or 20,
        "wall_thickness": wall,
    }


def validate_pcb_fits_enclosure(pcb: dict | None, enclosure: dict | None) -> dict:
    issues: list[dict] = []
    suggestions: list[dict] = []
    if not pcb or not pcb.get("board_size") or not enclosure or not enclosure.get("openscad_code"):
        return _result(issues, suggestions)

    dims = parse_enclosure_dimensions(enclosure["openscad_code"])
    if dims is None:
        issues.append(_issue(
            "enclosure_parse_error",
            "warning",
            "enclosure",
            "Could not parse enclosure dimensions",
            "Unable to extract dimensions from OpenSCAD code for validation",
        ))
        return _result(issues, suggestions)

    board = pcb["board_size"]
    for axis, issue_id, word in (
        ("width", "enclosure_too_narrow", "narrow"),
        ("height", "enclosure_too_short", "short"),
    ):
        required = board[axis] + CLEARANCE_MM * 2
        inner = dims[f"inner_{axis}"]
        if inner < required:
            issues.append(_issue(
                issue_id,
                "error",
                "enclosure",
                f"Enclosure too {word} for PCB",
                f"Enclosure inner {axis} ({inner}mm) < PCB {axis} ({board[axis]}mm) "
                f"+ {CLEARANCE_MM * 2}mm clearance",
            ))
            suggestions.append({
                "issue_id": issue_id,
                "stage": "enclosure",
                "action": f"Increase enclosure {axis} to at least {required + 2}mm",
                "auto_fixable": True,
            })

    return _result(issues, suggestions)


def validate_firmware_matches_pcb(pcb: dict | None, firmware: dict | None) -> dict:
    """Every net GPIO must be referenced in firmware; missing I2C addresses only warn."""
    issues: list[dict] = []
    suggestions: list[dict] = []
    if not pcb or not firmware or not firmware.get("files"):
        return _result(issues, suggestions)

    code = "\n".join(f.get("content", "") for f in firmware["files"])

    for net in pcb.get("net_list") or []:
        gpio = net.get("gpio")
        if not gpio:
            continue
        number = re.sub(r"[^0-9]", "", gpio)
        name = net["net"]
        patterns = [
            rf"GPIO{number}\b",
            rf"PIN_{re.escape(name.upper())}",
            rf"#define.*\b{number}\b",
            rf"const.*=.*\b{number}\b",
            rf"gpio_num_t.*\b{number}\b",
        ]
        if any(re.search(p, code, re.IGNORECASE) for p in patterns):
            continue
        issue_id = f"missing_gpio_{name}"
        issues.append(_issue(
            issue_id,
            "error",
            "firmware",
            f"Firmware missing GPIO for {name}",
            f"PCB assigns {gpio} to {name} but firmware doesn't define this pin",
        ))
        suggestions.append({
            "issue_id": issue_id,
            "stage": "firmware",
            "action": f"Add pin definition: #define PIN_{name.upper()} {number}",
            "auto_fixable": True,
        })

    found = {a.lower() for a in re.findall(r"0x[0-9a-fA-F]{2}", code)}
    for block in pcb.get("placed_blocks", []):
        address = I2C_ADDRESSES.get(block["block_slug"])
        if address and address.lower() not in found:
            device = block["block_slug"].split("-", 1)[-1]
            issues.append(_issue(
                f"missing_i2c_{device}",
                "warning",
                "firmware",
                f"Firmware may be missing I2C address for {device}",
                f"Expected I2C address {address} for {device} not found in firmware",
            ))

    return _result(issues, suggestions)


def validate_cross_stage(project_spec: dict, check: str = "all") -> dict:
    """Run one named cross-stage check, or all of them, on a project spec dict."""
    if check not in CHECK_TYPES:
        raise ValueError(f"Unknown validation check '{check}'. Must be one of: {CHECK_TYPES}")

    issues: list[dict] = []
    suggestions: list[dict] = []
    results = []
    if check in ("all", "spec_satisfied"):
        results.append(validate_spec_satisfied(project_spec.get("final_spec"), project_spec.get("pcb")))
    if check in ("all", "pcb_fits_enclosure"):
        results.append(validate_pcb_fits_enclosure(project_spec.get("pcb"), project_spec.get("enclosure")))
    if check in ("all", "firmware_matches_pcb"):
        results.append(validate_firmware_matches_pcb(project_spec.get("pcb"), project_spec.get("firmware")))
    for result in results:
        issues.extend(result["issues"])
        suggestions.extend(result["suggestions"])
    return _result(issues, suggestions)


def validation_report(result: dict) -> str:
    """Render a validation result as plain text."""
    lines = ["=== Cross-Stage Validation Report ===", ""]
    lines.append("Status: PASSED" if result["valid"] else "Status: FAILED")
    lines.append("")
    if not result["issues"]:
        lines.append("No issues found.")
    else:
        lines.append(f"Found {len(result['issues'])} issue(s):")
        lines.append("")
        for issue in result["issues"]:
            lines.append(f"[{issue['severity'].upper()}] {issue['stage']}: {issue['message']}")
            if issue.get("details"):
                lines.append(f"  {issue['details']}")
    if result["suggestions"]:
        lines.append("")
        lines.append("Suggested fixes:")
        for suggestion in result["suggestions"]:
            lines.append(f"- [{suggestion['stage']}] {suggestion['action']}")
    return "\n".join(lines)
