"""Prompt templates for SIFT reports and follow-up commands."""

import logging
from datetime import date
from typing import Optional

from app.models import REPORT_TYPES
from app.services.errors import ValidationError

logger = logging.getLogger(__name__)

FOLLOWUP_COMMANDS = ("another round", "read the room")

SYSTEM_INSTRUCTIONS = """You are a meticulous and self-critical fact-checking/contextualization assistant adhering to the SIFT methodology. You will be given detailed instructions for tasks. Your responses should be structured and follow the formatting guidelines provided in those instructions.

You are in a chat session, so maintain conversational context. Handle follow-up questions, and commands like 'another round' or 'read the room', as described in the instructions of the first message.

Strive for accuracy and objectivity. If an image is provided with a user's query, describe it and transcribe any text in it as part of your analysis. All structured outputs, especially tables, must be rendered in pure Markdown; do not use HTML tags."""

FULL_CHECK_TEMPLATE = """You analyze claims about events, images, or artifacts, then respond with a comprehensive, structured assessment. Systematically verify claims, identify errors, provide corrections, and assess source reliability. Even if you are certain about something, look for what you might be missing, and ask whether the sources you cite are real and appropriate.

If an image is uploaded, describe the image and transcribe its text before doing anything else. If facts are presented, state the likely overarching claim in both a moderate and a strong version.

Your response must include the following sections, in this exact order (all sections have cites):

Generated {current_date}, may be out of date if significantly later.
AI-Generated: Will likely contain errors; treat this as one input into a human-checked process

1. Verified Facts Table (labeled "✅ Verified Facts") with columns | Statement | Status | Clarification & Correction | Confidence (1-5) |
2. Errors and Corrections Table (labeled "⚠️ Errors and Corrections") with columns | Statement | Issue | Correction | Correction Confidence (1-5) |
3. Corrections Summary (labeled "🛠️ Corrections Summary:")
4. Potential Leads (labeled "📌 Potential Leads")
5. Source Usefulness Assessment Table (labeled "🔴 Assessment of Source Reliability:") with columns | Source | Usefulness Assessment | Notes | Rating |
6. Revised Summary (labeled "📜 Revised Summary (Corrected & Accurate):")
7. What a Fact-Checker Might Say (labeled "🏆 What a Fact-Checker Might Say:")
8. Tip Suggestion (labeled "💡 Tip Suggestion:")

Format all tables as Markdown pipe tables. Place citations as [sitename](URL) before the period of the sentence they support. State-controlled media gets an asterisk in the sources table and a note that it is not a reliable source on anything that intersects with its national interests.

When asked for "another round", find if possible one source that conflicts with the majority view, one that supports it, and one with a completely different answer, update the sources table, then add a "Post-round update" saying what new information has come to light. If nothing new was found, admit the round mostly reinforced previous searches.

When asked to "read the room", summarize the structure of expert and public opinion as competing theories, majority/minority, consensus, or uncertainty, and say which applies.

{user_input_section}"""

CONTEXT_REPORT_TEMPLATE = """Analyze all information about this subject or photo and create a comprehensive summary using EXACTLY the following format. The current date is {current_date}.

## Core Context
* 4-6 bullet points of 1-3 sentences capturing the most essential information about the artifact's authenticity, origin, and common misconceptions.
* Include citations as ([Source Name](URL)).
* The first bullet describes how the artifact is commonly presented or misrepresented; the final bullets establish the factual reality.

## Expanded Context

### What does this appear to be/how is it described online?
1-2 paragraphs with citations. Say "commonly presented" if it appears in multiple places, otherwise "has been presented".

### What does this mean to its primary audience/audiences online?
1 paragraph on how audiences interpret the artifact and what narratives it reinforces.

### What is the actual story or deeper background?
1-2 paragraphs on the factual origin and history, addressing the misconceptions above, with multiple citations.

### What does the actual picture/graphic look like?
1 paragraph describing the authentic version, or what a factual representation would look like, with citations.

### What is (some of) the larger discourse context?
1-3 bullet points on broader patterns in media or information sharing that this example illustrates.

### What is (some of) the larger topical context?
5-10 comma-separated keywords placing the artifact in a broader research context.

Do not add any additional sections or deviate from the structure.

{user_input_section}"""

COMMUNITY_NOTE_TEMPLATE = """Run an artifact context report internally, then output only a very short response in the format of a Twitter Community Note. Limit the note to 700 characters and supply 2 to 5 supporting links in bare link format. Focus on the context without which the artifact is likely to be badly misinterpreted, not on finer details.

Format:
[Concise note text, under 700 characters]

Sources:
https://example.com/source1
https://example.com/source2

The current date is {current_date}.

{user_input_section}"""

REPORT_TEMPLATES = {
    "FULL_CHECK": FULL_CHECK_TEMPLATE,
    "CONTEXT_REPORT": CONTEXT_REPORT_TEMPLATE,
    "COMMUNITY_NOTE": COMMUNITY_NOTE_TEMPLATE,
}

FOLLOWUP_TEMPLATES = {
    "another round": (
        "another round\n\nRun another round of searches: find a source that conflicts with the majority "
        "view, one that supports it, and one with a completely different answer. Update the sources "
        "table and finish with a \"Post-round update\"."
    ),
    "read the room": (
        "read the room\n\nSummarize the structure of expert and public opinion on this question "
        "(competing theories, majority/minority, consensus, or uncertainty) and say which applies."
    ),
}


def normalize_report_type(report_type: Optional[str]) -> str:
    """
    Upper-case and validate a report type.

    Raises:
        ValidationError: If the report type is missing or unknown
    """
    normalized = (report_type or "").strip().upper()
    if not normalized:
        raise ValidationError("reportType is a required parameter.")
    if normalized not in REPORT_TYPES:
        raise ValidationError(f"Invalid report type: {report_type}. Valid types: {', '.join(REPORT_TYPES)}")
    return normalized


def system_instructions() -> str:
    return SYSTEM_INSTRUCTIONS


def build_report_prompt(
    report_type: str,
    user_input: Optional[str],
    has_image: bool = False,
    current_date: Optional[date] = None,
) -> str:
    """
    Build the first-turn prompt for a report.

    Args:
        report_type: One of FULL_CHECK, CONTEXT_REPORT, COMMUNITY_NOTE (any case)
        user_input: The user's text, may be empty when an image is attached
        has_image: Whether an image accompanies the prompt
        current_date: Date stamped into the report header (defaults to today)

    Returns:
        Prompt text
    """
    report_type = normalize_report_type(report_type)
    current_date = current_date or date.today()

    sections = []
    if user_input and user_input.strip():
        sections.append(f"User input:\n{user_input.strip()}")
    if has_image:
        sections.append("An image is attached to this message. Describe it and transcribe any text before the analysis.")
    user_input_section = "\n\n".join(sections)

    prompt = REPORT_TEMPLATES[report_type].format(
        current_date=current_date.strftime("%Y-%m-%d"),
        user_input_section=user_input_section,
    )
    logger.debug(f"Built {report_type} prompt ({len(prompt)} chars, image={has_image})")
    return prompt.strip()


def build_followup_prompt(text: Optional[str], command: Optional[str] = None) -> str:
    """
    Build the prompt for a follow-up turn.

    A recognised command expands to its instruction; free text is appended after it.

    Raises:
        ValidationError: If both text and command are empty, or the command is unknown
    """
    text = (text or "").strip()
    command = (command or "").strip().lower()

    if not text and not command:
        raise ValidationError("newUserMessageText is a required parameter.")

    if not command and text.lower() in FOLLOWUP_COMMANDS:
        command, text = text.lower(), ""

    if not command:
        return text
    if command not in FOLLOWUP_TEMPLATES:
        raise ValidationError(f"Unknown command: {command}. Valid commands: {', '.join(FOLLOWUP_COMMANDS)}")

    prompt = FOLLOWUP_TEMPLATES[command]
    if text:
        prompt = f"{prompt}\n\n{text}"
    return prompt
