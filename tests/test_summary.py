"""
Tests for journal summary prompts.
"""

from src.journal.models import Speaker, Turn
from src.journal.summary import (
    SUMMARY_SYSTEM_PROMPT,
    build_summary_messages,
    format_transcript,
    has_meaningful_input,
)


def turn(speaker, text, order):
    return Turn(session_id="s", speaker=speaker, text=text, start_time=order * 2.0, duration=1, order=order)


TURNS = [
    turn(Speaker.AI, "How was your day?", 0),
    turn(Speaker.USER, "Long, but good.", 1),
]


def test_format_transcript_labels_speakers():
    assert format_transcript(TURNS) == "AI Companion: How was your day?\n\nYou: Long, but good."


def test_summary_messages_wrap_transcript():
    messages = build_summary_messages(TURNS)

    assert messages[0] == {"role": "system", "content": SUMMARY_SYSTEM_PROMPT}
    assert messages[1]["role"] == "user"
    assert "You: Long, but good." in messages[1]["content"]


def test_meaningful_input_needs_user_turns_and_time():
    assert has_meaningful_input(TURNS, 10, 10) is True
    assert has_meaningful_input(TURNS, 9.5, 10) is False
    assert has_meaningful_input(TURNS[:1], 60, 10) is False
