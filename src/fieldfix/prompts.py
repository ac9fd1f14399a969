# prompts.py
# Prompt templates for every model call in the pipeline.

VISION_PROMPT = """\
You are an expert field service equipment analyzer. Analyze this equipment image and provide a detailed observation.

Return a JSON object with:
{
  "equipmentType": "string (e.g., Air Conditioner, Generator, Pump)",
  "problemSummary": "string (detailed summary of visible issues)",
  "riskFlags": ["array", "of", "risks"] (e.g., "water_near_power", "exposed_wires", "heavy_equipment"),
  "environmentalNotes": "string (optional, notes about environment/conditions)"
}

Focus on:
- Visible damage, wear, or malfunctions
- Safety hazards
- Environmental conditions that might affect repair
- Equipment age and condition indicators

Return ONLY valid JSON, no additional text.\
"""


def plan_prompt(observation: str, kb_results: str) -> str:
    return f"""\
You are an expert field service technician creating a repair plan.

OBSERVATION:
{observation}

KNOWLEDGE BASE RESULTS:
{kb_results}

Create a step-by-step repair plan. Each step MUST include at least one citation from the KB results above.

Return a JSON object with:
{{
  "steps": [
    {{
      "stepNumber": 1,
      "action": "string (detailed action)",
      "duration": number (minutes),
      "citations": ["MAN-001", "RB-002"] (must reference KB IDs from results above)
    }}
  ]
}}

Requirements:
- Minimum 3 steps, numbered from 1 with no gaps
- Each step must have at least 1 citation
- Duration must be realistic (5-60 minutes per step)
- Include safety checks, diagnostics, repairs, and verification

Return ONLY valid JSON, no additional text."""


def qa_prompt(plan: str) -> str:
    return f"""\
You are a quality assurance expert reviewing a field service plan.

PLAN TO REVIEW:
{plan}

Assess this plan for:
- Completeness
- Safety considerations
- Logical sequence
- Time estimates
- Missing steps

Return a JSON object with:
{{
  "pass": boolean,
  "issues": ["array of issues found"],
  "recommendations": ["array of improvements"],
  "score": number (0-100)
}}

Return ONLY valid JSON, no additional text."""


def fix_json_prompt(invalid_output: str, original_prompt: str) -> str:
    return f"""\
You previously generated invalid JSON. Fix it now.

YOUR PREVIOUS INVALID OUTPUT:
{invalid_output}

ORIGINAL PROMPT:
{original_prompt}

Return corrected, valid JSON only. No explanations, no markdown, just the JSON object."""


def describe_observation(equipment_type: str, problem_summary: str, risk_flags: list[str], notes: str | None) -> str:
    lines = [
        f"Equipment: {equipment_type}",
        f"Problem: {problem_summary}",
        f"Risk Flags: {', '.join(risk_flags) if risk_flags else 'none'}",
    ]
    if notes:
        lines.append(f"Environment: {notes}")
    return "\n".join(lines)
