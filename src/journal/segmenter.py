"""
Sentence segmentation for the streaming TTS pipeline.

LLM chunks are appended to a buffer; after every append the buffer is run through
`extract_sentences`, which peels complete sentences off the front so each one can
be synthesized as soon as it exists.

    sentences, buffer = extract_sentences(buffer + token)
"""

from __future__ import annotations

import re

# One or more terminal marks followed by whitespace or the end of the buffer.
SENTENCE_END = re.compile(r"[.!?]+(?:\s|\Z)")


def extract_sentences(text: str) -> tuple[list[str], str]:
    """
    Extract complete sentences from the start of `text`.

    Returns `(sentences, remaining)`. Sentences are stripped and never empty.
    `remaining` keeps its trailing whitespace so the next chunk concatenates
    correctly ("Hi " + "there" stays two words).
    """
    sentences: list[str] = []
    pos = 0

    for match in SENTENCE_END.finditer(text):
        sentence = text[pos:match.end()].strip()
        if sentence:
            sentences.append(sentence)
        pos = match.end()

    return sentences, text[pos:].lstrip()


def split_sentences(text: str) -> list[str]:
    """Split a complete text into sentences, keeping an unterminated tail."""
    sentences, remaining = extract_sentences(text or "")
    tail = remaining.strip()
    if tail:
        sentences.append(tail)
    return sentences
