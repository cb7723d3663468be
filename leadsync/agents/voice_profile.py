"""Voice profile builder.

Turns tone and follow-up preferences plus lead state into the instruction
block that draft generators prepend to their prompts.
"""

from dataclasses import dataclass
from typing import List, Optional

from leadsync.agents.lead_scoring import ADVANCED_STAGES

EARLY_STAGES = ("new", "cold")

TONE_GUIDANCE = {
    "friendly": [
        "- Write warmly and explain things clearly.",
        "- Keep it conversational while staying professional.",
        "- Open with a short greeting; a soft close is welcome.",
        "- Contractions are fine (\"I'm\", \"we're\").",
    ],
    "professional": [
        "- Keep the tone concise and businesslike.",
        "- Be clear and direct without sounding casual.",
        "- Open with a short greeting.",
        "- Keep sentences structured and polished.",
    ],
    "direct": [
        "- Be direct and brief; cut filler.",
        "- Lead with the point.",
        "- Skip the greeting unless the context calls for one.",
        "- Prefer short sentences and bullet points.",
    ],
}

INTENSITY_GUIDANCE = {
    "light": [
        "- Use soft language and nudge only after longer gaps.",
        "- Stay gentle and never pushy.",
        "- Frame follow-ups as helpful check-ins.",
    ],
    "strong": [
        "- Be proactive and use firmer language where it fits.",
        "- Convey urgency when the situation warrants it.",
        "- Prefer strong calls to action (\"Let's book a call this week\" over \"Would you like to chat?\").",
    ],
    "normal": [
        "- Keep follow-ups balanced.",
        "- Be helpful without pressing.",
    ],
}

STRUCTURE_GUIDANCE = [
    "- Open with a brief greeting (a direct tone may skip it).",
    "- Add one sentence tying back to the conversation (\"Thanks for reaching out...\" / \"Following up on...\").",
    "- Use bullet points when listing several items such as prices, times or next steps.",
    "- Finish with a call to action suited to the lead stage and intensity.",
    "- A friendly tone may end with a soft close (\"Looking forward to hearing from you!\").",
]

CTA_GUIDANCE = {
    (True, True): [
        "- Close with a sharp, sales-ready CTA (\"Let's set up a call this week to finalize the details.\").",
        "- Be explicit about moving to the next stage.",
    ],
    (True, False): [
        "- Close with a clear, professional CTA (\"Would you like to schedule a call to go over this?\").",
    ],
    (False, True): [
        "- Close with an assertive CTA (\"Let's connect this week.\").",
    ],
    (False, False): [
        "- Close with a standard, helpful CTA (\"Happy to answer any questions, or we can set up a call.\").",
    ],
}

BUSINESS_GUIDANCE = [
    "- Quote only the services and prices listed under BUSINESS INFORMATION.",
    "- Never invent or estimate prices, services or policies.",
    "- For pricing questions, match the relevant listed service and give its exact details.",
    "- Follow the brand voice given under BUSINESS INFORMATION.",
]


@dataclass(frozen=True)
class LeadVoiceContext:
    stage: Optional[str] = None
    score: Optional[int] = None
    urgency: Optional[str] = None


def _lead_guidance(lead: LeadVoiceContext) -> List[str]:
    lines: List[str] = []
    if lead.stage:
        lines.append(f"- Lead stage: {lead.stage}")
        if lead.stage in ADVANCED_STAGES:
            lines += [
                "- The lead is well along; take a sales-ready approach.",
                "- Include a concrete CTA (book a meeting, confirm details, close).",
                "- Reference specific next steps or commitments.",
            ]
        elif lead.stage == "qualified":
            lines += [
                "- The lead is qualified; move them forward with clear value.",
                "- Include a moderate CTA (a call, or more information).",
            ]
        elif lead.stage in EARLY_STAGES:
            lines += [
                "- The lead is early; build rapport and learn their needs.",
                "- Use a soft CTA (reply with questions, a short intro call).",
            ]

    if lead.score is not None:
        if lead.score >= 80:
            lines += [
                "- Hot lead (high score). Prioritise urgency and clear next steps.",
                "- Use the stronger CTAs suited to hot leads.",
            ]
        elif lead.score >= 60:
            lines.append("- Warm score. Keep them engaged with value-focused messaging.")

    if lead.urgency == "high":
        lines.append("- High urgency detected. Stress a timely response and action.")
    elif lead.urgency == "medium":
        lines.append("- Moderate urgency. Balance helpfulness with gentle prompting.")
    return lines


def build_voice_profile(
    tone_preset: Optional[str] = "professional",
    tone_custom_instructions: Optional[str] = None,
    follow_up_intensity: Optional[str] = "normal",
    lead: Optional[LeadVoiceContext] = None,
    has_business_context: bool = False,
) -> str:
    """Build the newline-joined voice instructions for a generation prompt.

    Args:
        tone_preset: ``friendly``, ``professional``, ``direct`` or ``custom``.
        tone_custom_instructions: Free text, used only with the ``custom`` preset.
        follow_up_intensity: ``light``, ``normal`` or ``strong``.
        lead: Stage, score and urgency of the recipient's lead, if known.
        has_business_context: Whether the prompt carries business data.

    Returns:
        str: Deterministic instruction text.
    """
    tone_preset = tone_preset or "professional"
    follow_up_intensity = follow_up_intensity or "normal"

    lines = ["=== TONE & STYLE ==="]
    if tone_preset == "custom":
        if tone_custom_instructions:
            lines.append(f"- Custom tone instructions: {tone_custom_instructions}")
    else:
        lines += TONE_GUIDANCE.get(tone_preset, [])

    lines.append("\n=== FOLLOW-UP INTENSITY ===")
    lines += INTENSITY_GUIDANCE.get(follow_up_intensity, INTENSITY_GUIDANCE["normal"])

    if lead is not None:
        lines.append("\n=== LEAD CONTEXT ===")
        lines += _lead_guidance(lead)

    lines.append("\n=== EMAIL STRUCTURE ===")
    lines += STRUCTURE_GUIDANCE

    lines.append("\n=== CTA STRENGTH ===")
    advanced = bool(lead and lead.stage in ADVANCED_STAGES)
    lines += CTA_GUIDANCE[(advanced, follow_up_intensity == "strong")]

    if has_business_context:
        lines.append("\n=== BUSINESS INFORMATION ===")
        lines += BUSINESS_GUIDANCE

    return "\n".join(lines)
