"""
Analysis prompts.

Every prompt is a template with a single `{transcript}` placeholder. The
defaults below can be replaced wholesale by a JSON file mapping each
analysis kind to its template (`ANALYSIS_PROMPTS_FILE`).
"""

import json
from functools import lru_cache
from pathlib import Path
from textwrap import dedent

SUMMARY = "summary"
STRUCTURED_NOTE = "structured_note"
RECOMMENDATIONS = "recommendations"

ANALYSIS_KINDS = (SUMMARY, STRUCTURED_NOTE, RECOMMENDATIONS)

SUMMARY_PROMPT = dedent(
    """
    You are an expert meeting assistant. Summarize the following transcript
    in clear, concise language. Highlight the main themes, the concerns that
    were raised, and any significant progress or open issues. Keep it
    factual and professional.

    <transcript>
    {transcript}
    </transcript>
    """
).strip()

STRUCTURED_NOTE_PROMPT = dedent(
    """
    Write structured notes for the meeting transcript below, using these
    sections:

    S (Subjective): what participants reported in their own words
    O (Objective): facts, figures and observations stated in the meeting
    A (Assessment): interpretation of the situation
    P (Plan): agreed next steps and owners

    <transcript>
    {transcript}
    </transcript>
    """
).strip()

RECOMMENDATIONS_PROMPT = dedent(
    """
    Based on the transcript below, give exactly 3 practical, expert-level
    recommendations for the participants. Format:
    1.
    2.
    3.

    <transcript>
    {transcript}
    </transcript>
    """
).strip()

DEFAULT_PROMPTS = {
    SUMMARY: SUMMARY_PROMPT,
    STRUCTURED_NOTE: STRUCTURED_NOTE_PROMPT,
    RECOMMENDATIONS: RECOMMENDATIONS_PROMPT,
}


def validate_prompts(prompts: dict[str, str]) -> dict[str, str]:
    missing = [kind for kind in ANALYSIS_KINDS if kind not in prompts]
    if missing:
        raise ValueError(f"Missing analysis prompts: {', '.join(missing)}")
    for kind in ANALYSIS_KINDS:
        if "{transcript}" not in prompts[kind]:
            raise ValueError(f"Prompt {kind} has no {{transcript}} placeholder")
    return {kind: prompts[kind] for kind in ANALYSIS_KINDS}


@lru_cache(maxsize=None)
def load_prompts(path: str | None = None) -> dict[str, str]:
    """Prompts from `path`, or the defaults. Read once per path."""
    if not path:
        return dict(DEFAULT_PROMPTS)
    with Path(path).open(encoding="utf-8") as f:
        prompts = json.load(f)
    if not isinstance(prompts, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return validate_prompts(prompts)


def render_prompt(template: str, transcript: str) -> str:
    # plain replace, templates may contain other braces
    return template.replace("{transcript}", transcript)
