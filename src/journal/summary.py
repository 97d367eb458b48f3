"""
Journal-entry summaries for finished sessions.
"""

from __future__ import annotations

from typing import Iterable

from src.journal.models import Speaker, Turn

SUMMARY_SYSTEM_PROMPT = """You are a thoughtful writer creating a personal reflection journal entry.
Your task is to transform a conversation transcript into a meaningful, reflective summary.

GUIDELINES:
- Write in second person ("You discussed...", "You shared...")
- Capture the emotional essence, not just the facts
- Highlight key themes, insights, and feelings expressed
- Keep it warm and personal, like a journal entry
- Be concise but meaningful (2-3 paragraphs)
- Focus on what seemed most important to the person
- Note any growth, realizations, or emotional shifts
- End with a forward-looking or grounding statement"""


def format_transcript(turns: Iterable[Turn]) -> str:
    lines = []
    for turn in turns:
        speaker = "You" if turn.speaker == Speaker.USER else "AI Companion"
        lines.append(f"{speaker}: {turn.text}")
    return "\n\n".join(lines)


def build_summary_prompt(transcript: str) -> str:
    return (
        "Please create a reflective journal entry summary of this conversation:\n\n"
        f"---\n{transcript}\n---\n\n"
        "Write a 2-3 paragraph summary that captures the emotional themes, key moments, "
        "and overall essence of what was shared.\n"
        "Make it feel like a personal journal entry that the person would appreciate reading later."
    )


def build_summary_messages(turns: Iterable[Turn]) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": build_summary_prompt(format_transcript(turns))},
    ]


def has_meaningful_input(turns: Iterable[Turn], total_user_speaking_time: float, min_seconds: float) -> bool:
    """A summary is only worth writing if the user actually talked for a while."""
    if total_user_speaking_time < min_seconds:
        return False
    return any(t.speaker == Speaker.USER for t in turns)
