# scenarios.py
# Demo scenarios: canned observations and precomputed fallback plans.
#
# The analyze stage uses the mock observation when the image is missing; the
# plan stage loads <scenario>.plan.json when the model is quota-limited.

import json
import re
from pathlib import Path
from typing import Any

DEFAULT_SCENARIO = "scenario1"
DEFAULT_FALLBACK_DIR = Path(__file__).parent / "data" / "fallback_plans"

_SCENARIO_IN_PATH = re.compile(r"scenario(\d+)")

MOCK_OBSERVATIONS: dict[str, dict[str, Any]] = {
    "scenario1": {
        "equipmentType": "Commercial HVAC Air Conditioning Unit",
        "problemSummary": (
            "Unit showing signs of overheating with reduced airflow. Visible dirt buildup on condenser "
            "coils and air filter appears clogged. Fan motor running but airflow significantly reduced."
        ),
        "riskFlags": ["overheating", "reduced_airflow"],
        "environmentalNotes": "Indoor installation, ambient temperature elevated near unit",
    },
    "scenario2": {
        "equipmentType": "Backup Generator",
        "problemSummary": (
            "Generator fails to start during test cycle. Control panel shows no fault codes. Battery "
            "connections appear corroded. Fuel level adequate but age of fuel unknown."
        ),
        "riskFlags": ["electrical_components", "fuel_system"],
        "environmentalNotes": "Outdoor installation, some weather exposure visible",
    },
    "scenario3": {
        "equipmentType": "Industrial Water Pump",
        "problemSummary": (
            "Water pump showing active leak near seal area with visible water accumulation. Pump is "
            "located adjacent to electrical panel creating serious hazard. Exposed wiring visible in "
            "junction box. Motor casing shows water damage and corrosion."
        ),
        "riskFlags": ["water_near_power", "exposed_wires", "heavy_equipment"],
        "environmentalNotes": "Wet floor conditions, electrical panel within splash zone, immediate safety concern",
    },
}


def scenario_from_path(image_path: str | None) -> str | None:
    """'frames/scenario3.jpg' -> 'scenario3'. None when the path names no scenario."""
    if not image_path:
        return None
    match = _SCENARIO_IN_PATH.search(image_path)
    return f"scenario{match.group(1)}" if match else None


def mock_observation(scenario: str | None) -> tuple[str, dict[str, Any]]:
    """Return (scenario key actually used, observation payload). Unknown keys use scenario1."""
    key = scenario if scenario in MOCK_OBSERVATIONS else DEFAULT_SCENARIO
    return key, dict(MOCK_OBSERVATIONS[key])


def load_fallback_plan(scenario: str | None, fallback_dir: Path = DEFAULT_FALLBACK_DIR) -> dict[str, Any] | None:
    """Precomputed plan payload for a scenario, or None if there is no file for it."""
    path = Path(fallback_dir) / f"{scenario or DEFAULT_SCENARIO}.plan.json"
    if not path.is_file():
        return None
    return json.loads(path.read_text(encoding="utf-8"))
