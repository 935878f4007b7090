"""Prompt assembly for batch scoring and scenario parsing.

The scoring system prompt is built static-first: rating scale and output
format, then the optional web-search block, then the scenario. Providers
cache identical prompt prefixes, so the variable part stays at the end.
"""
from typing import Dict, List, Sequence

from stancemap.services.scoring.models import ScenarioContext

SCORING_INSTRUCTIONS = """You are an expert geopolitical analyst. You will rate each country's likely position on a given issue.

Rate each country from -1 to 1 where:
- 1.0 = Strongly supports Side A
- 0.5 = Moderately supports Side A
- 0.0 = Neutral / No clear position
- -0.5 = Moderately supports Side B
- -1.0 = Strongly supports Side B

Consider:
- Current alliances and treaties
- Economic ties and dependencies
- Ideological alignment
- Historical relationships
- Regional interests
- Domestic political considerations

Return a JSON object with this exact structure:
{
  "scores": {
    "CountryName": { "score": 0.5, "reasoning": "Brief explanation" },
    ...
  }
}

Only return valid JSON, no additional text. Country names must match exactly as provided."""

WEB_SEARCH_INSTRUCTIONS = """Use web search to check each country's most recent official statements, votes and policy moves on this issue before rating it. Prefer recent, authoritative sources over general knowledge. Your final answer must still be only the JSON object described above."""

SCENARIO_TEMPLATE = """SCENARIO: {title}
{description}

SIDE A ({side_a_label}): {side_a_description} → positive scores (0 to 1)
SIDE B ({side_b_label}): {side_b_description} → negative scores (-1 to 0)"""

# Current-events facts newer than most model training data.
RECENT_CONTEXT: Dict[str, str] = {
    "Finland": "Finland joined NATO in April 2023.",
    "Sweden": "Sweden joined NATO in March 2024.",
    "Syria": "The Assad government fell in December 2024; a transitional government now holds Damascus.",
    "Mali": "Mali, Burkina Faso and Niger formed the Alliance of Sahel States and left ECOWAS.",
    "Burkina Faso": "Burkina Faso, Mali and Niger formed the Alliance of Sahel States and left ECOWAS.",
    "Niger": "Niger's government was overthrown in a July 2023 coup; with Mali and Burkina Faso it formed the Alliance of Sahel States and left ECOWAS.",
}

PARSE_PROMPT_SYSTEM = """You are an expert at analyzing geopolitical scenarios. Given a user prompt describing a scenario or issue, parse it into a structured format with two opposing sides.

Return a JSON object with:
- title: A concise title for the issue (max 100 chars)
- description: A brief description of the overall scenario (1-2 sentences)
- primaryActor: The country or organization driving the scenario, if there is one (otherwise null)
- sideA: The side that supports/approves/is in favor (object with "label" and "description")
- sideB: The side that opposes/disapproves/is against (object with "label" and "description")

For example, if the prompt is "US annexation of Greenland", you might return:
{
  "title": "US Annexation of Greenland",
  "description": "The potential acquisition of Greenland by the United States.",
  "primaryActor": "United States",
  "sideA": { "label": "Supports", "description": "Countries that would support or approve of US annexation of Greenland" },
  "sideB": { "label": "Opposes", "description": "Countries that would oppose or disapprove of US annexation of Greenland" }
}

Only return valid JSON, no additional text."""


def build_system_prompt(scenario: ScenarioContext, use_grounding: bool = False) -> str:
    parts: List[str] = [SCORING_INSTRUCTIONS]
    if use_grounding:
        parts.append(WEB_SEARCH_INSTRUCTIONS)
    parts.append(SCENARIO_TEMPLATE.format(
        title=scenario.title,
        description=scenario.description,
        side_a_label=scenario.side_a.label,
        side_a_description=scenario.side_a.description,
        side_b_label=scenario.side_b.label,
        side_b_description=scenario.side_b.description,
    ))
    return "\n\n".join(parts)


def build_user_prompt(countries: Sequence[str]) -> str:
    prompt = f"Rate these countries: {', '.join(countries)}"
    notes = [f"- {c}: {RECENT_CONTEXT[c]}" for c in countries if c in RECENT_CONTEXT]
    if notes:
        prompt += "\n\nRecent context to account for:\n" + "\n".join(notes)
    return prompt
