# =============================================================================
# Prompt Assembler — System and User Prompts for One Agent Call
# =============================================================================
#
# SYSTEM PROMPT: persona framing + identity layer + behavioural rules.
#   - The agent speaks FOR the text in third person ("this text", the
#     title, "the argument"). Never "I" or "my".
#   - The identity layer's `raw` text is embedded verbatim when present.
#   - Verbosity mode sets the length limit and the opt-out behaviour:
#       brief  → 1-2 sentences, a lone "—" when the passage is off-topic
#       normal → 2-4 sentences, a short acknowledgement when off-topic
#
# USER PROMPT, in this fixed order:
#   1. FULL TEXT OF SOURCE      (only when the context budget allows)
#   2. PASSAGE BEING DISCUSSED  (quoted)
#   3. PREVIOUS ANALYSIS        (only when this paper has history here)
#   4. One trailing instruction:
#        - the new question, if any
#        - else the default analytical prompt, if there is no history
#        - else nothing (the model continues from its previous analysis)
#
# Follow-up coherence depends on that ordering and on step 4's branches
# being mutually exclusive.
# =============================================================================

from __future__ import annotations

from typing import Literal

from marginalia.models.domain import EngagementEntry, HistoryEntry, Paper

PromptMode = Literal["brief", "normal"]

DEFAULT_INSTRUCTION = (
    "How does this text relate to the passage? "
    "What does the text affirm, challenge, or add?"
)


# ---------------------------------------------------------------------------
# System Prompt
# ---------------------------------------------------------------------------

_BRIEF_RULES = """YOUR TASK: Find relevant passages and respond in third person.

INSTRUCTIONS:
1. Search the full text for passages relevant to the topic being discussed
2. If relevant, respond in 1-2 sentences using "this text" or the title as subject
3. Include a brief quote to ground your response
4. If the topic doesn't connect to the text's concerns, respond with just "—"

FORMAT: [1-2 sentence response with inline quote]

EXAMPLES OF GOOD RESPONSES:
- "This text emphasizes human mediation: 'for the foreseeable future it is people that will continue to make libraries effective.'"
- "The argument here resists technological determinism; it insists 'we prioritize the security and privacy of users.'"
- "—" (when topic is outside the text's concerns)

DO NOT:
- Use "I" or "my"; always third person
- Give generic commentary that could come from any source
- Summarize the whole text
- Hedge with phrases like "This is an interesting point"
- Exceed 2 sentences"""

_NORMAL_FRAMING = """Respond as an analyst speaking FOR this text in third person. Use "this text," the title, or "the argument" as subject, never "I" or "my."

The text can argue, resist, emphasize, push back, but you are describing its position, not voicing an author."""

_NORMAL_RULES = """Guidelines:
- Respond to what's being discussed, not everything the text addresses
- Be concise (2-4 sentences typical, expand only when specifically asked)
- Use the text's characteristic vocabulary when apt
- Ground claims in specific quotes from the text
- If the passage doesn't touch the text's concerns, say so briefly

Do not:
- Use first person ("I", "my", "me")
- Give generic academic commentary
- Summarize the whole text
- Hedge excessively with disclaimers"""


def build_system_prompt(
    paper: Paper,
    mode: PromptMode = "brief",
    engagement_hint: EngagementEntry | None = None,
) -> str:
    """
    System prompt for one paper's agent.

    Args:
        paper: The commentating paper.
        mode: "brief" or "normal" verbosity.
        engagement_hint: The prefilter's verdict for this paper on the
            current paragraph, if one exists. Gives the agent its angle.
    """
    sections = [f'You are analyzing "{paper.title}" by {paper.author}.']

    if mode == "normal":
        sections.append(_NORMAL_FRAMING)

    if paper.identity_layer is not None:
        sections.append(f"ABOUT THIS TEXT:\n{paper.identity_layer.raw}")

    if engagement_hint is not None:
        sections.append(
            "LIKELY ENGAGEMENT:\n"
            f"This text probably {engagement_hint.type.value} the passage "
            f"({engagement_hint.angle}). Treat this as orientation, not a script."
        )

    sections.append(_BRIEF_RULES if mode == "brief" else _NORMAL_RULES)
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# User Prompt
# ---------------------------------------------------------------------------


def reply_instruction(content: str) -> str:
    """Instruction used when an agent answers another agent's comment."""
    return f'Respond to this comment from another source: "{content}"'


def build_user_prompt(
    passage: str,
    question: str | None = None,
    full_text: str | None = None,
    history: list[HistoryEntry] | None = None,
) -> str:
    """
    User prompt for one agent call.

    `full_text` is passed only when the context budget allows it; the
    caller makes that decision.
    """
    prompt = ""

    if full_text:
        prompt += f"FULL TEXT OF SOURCE:\n{full_text}\n\n---\n\n"

    prompt += f'PASSAGE BEING DISCUSSED:\n"{passage}"'

    if history:
        prompt += "\n\n---\n\nPREVIOUS ANALYSIS:"
        for entry in history:
            if entry.question:
                prompt += f'\n\nReader asked: "{entry.question}"'
            prompt += f'\nPrevious response: "{entry.response}"'
        prompt += "\n\n---"

    if question:
        prompt += f"\n\nNEW QUESTION: {question}"
    elif not history:
        prompt += f"\n\n{DEFAULT_INSTRUCTION}"

    return prompt
