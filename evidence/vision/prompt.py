"""
Prompt construction for photo-vs-claim verification.

The taxonomy of conditions the model should look for is a parameter: the
default one describes public basketball courts, but any subject with a
list of observable condition categories works.
"""

from __future__ import annotations

from dataclasses import dataclass, field

PROMPT_VERSION = "1.0"


@dataclass(frozen=True)
class Taxonomy:
    """What the photo should show, and the conditions worth checking."""

    subject: str
    elements: tuple[str, ...] = ()
    conditions: dict[str, tuple[str, ...]] = field(default_factory=dict)


COURT_TAXONOMY = Taxonomy(
    subject="basketball court",
    elements=(
        "Court surface (hardwood, concrete, asphalt, painted lines)",
        "Basketball hoops, nets, backboards",
        "Court markings (three-point line, free-throw line, center circle)",
        "Surrounding facilities (benches, lighting, fencing)",
    ),
    conditions={
        "CROWDING": ('"crowded" (6+ people)', '"busy" (3-5 people)', '"empty" (0-1 people)',
                     '"partially occupied" (2-4 people)'),
        "SURFACE": ("slippery", "wet", "flooded", "damaged", "cracked", "well-maintained", "dirty", "clean"),
        "EQUIPMENT": ("broken hoop", "missing net", "damaged backboard", "working condition"),
        "ENVIRONMENT": ("poor lighting", "good lighting", "court closed", "open", "indoor", "outdoor"),
        "MAINTENANCE": ("trash on court", "clean court", "needs cleaning", "well-maintained"),
        "OCCUPANCY": ("tents on court", "no tents on court", "special event at court",
                      "special event banner at court"),
    },
)

_RESPONSE_FORMAT = """RESPOND IN THIS EXACT JSON FORMAT:
{
  "isMatch": true/false,
  "confidence": 0-100,
  "reasoning": "Detailed explanation of what you see and why it matches/doesn't match",
  "feedback": "Brief user-friendly message explaining the decision"
}"""


def build_prompt(claim_text: str, context: str | None = None, taxonomy: Taxonomy = COURT_TAXONOMY) -> str:
    """Single-turn instruction embedding the claim, context and taxonomy."""
    subject = taxonomy.subject
    lines = [
        f"You are an expert {subject} condition analyzer. Your task is to verify if a photo "
        "accurately represents the reported condition described below.",
        "",
        f'REPORT DESCRIPTION: "{claim_text.strip()}"',
    ]
    if context:
        lines.append(f'CONTEXT: "{context.strip()}"')
    lines += ["", "Analyze the image and determine if it matches the reported condition."]

    if taxonomy.elements:
        lines += ["", f"{subject.upper()} ELEMENTS TO IDENTIFY:"]
        lines += [f"- {element}" for element in taxonomy.elements]

    if taxonomy.conditions:
        lines += ["", "CONDITION CATEGORIES TO EVALUATE:"]
        for category, terms in taxonomy.conditions.items():
            lines.append(f"- {category}: {', '.join(terms)}")

    lines += [
        "",
        "ANALYSIS CRITERIA:",
        f"1. Does the image clearly show a {subject}?",
        "2. Are the reported conditions visible and accurate?",
        "3. Is the evidence clear and unambiguous?",
        "4. Does the image quality allow for proper assessment?",
        "5. Are the time of day and weather conditions consistent with the report?",
        "",
        _RESPONSE_FORMAT,
        "",
        "IMPORTANT:",
        "- Return isMatch=true only if the image clearly shows the reported condition",
        f"- If the image is unclear, blurry, or doesn't show a {subject}, return isMatch=false",
        "- For crowding reports, count visible people accurately",
        "- Provide specific details in your reasoning",
        "- Respond with the JSON object only",
    ]
    return "\n".join(lines)
