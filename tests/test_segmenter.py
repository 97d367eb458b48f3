"""
Tests for sentence segmentation.
"""

import pytest

from src.journal.segmenter import extract_sentences, split_sentences


class TestExtractSentences:
    def test_two_complete_sentences(self):
        sentences, remaining = extract_sentences("Hello there. How are you? ")
        assert sentences == ["Hello there.", "How are you?"]
        assert remaining == ""

    def test_incomplete_tail_is_kept(self):
        sentences, remaining = extract_sentences("Hello there. How are")
        assert sentences == ["Hello there."]
        assert remaining == "How are"

    def test_no_boundary(self):
        assert extract_sentences("No boundary yet") == ([], "No boundary yet")

    def test_empty_buffer(self):
        assert extract_sentences("") == ([], "")

    def test_mark_at_end_of_buffer_is_a_boundary(self):
        assert extract_sentences("Done!") == (["Done!"], "")

    def test_repeated_marks_stay_with_sentence(self):
        sentences, remaining = extract_sentences("Really?! Yes... ok")
        assert sentences == ["Really?!", "Yes..."]
        assert remaining == "ok"

    def test_mark_without_following_space_is_not_a_boundary(self):
        sentences, remaining = extract_sentences("It costs 3.50 today")
        assert sentences == []
        assert remaining == "It costs 3.50 today"

    def test_punctuation_only_spans_are_kept_as_text(self):
        sentences, _ = extract_sentences("Hi.  ! Next. ")
        assert sentences == ["Hi.", "!", "Next."]

    def test_whitespace_only_input_drops_nothing_meaningful(self):
        assert extract_sentences("   ") == ([], "")

    def test_remaining_keeps_trailing_space_between_tokens(self):
        buffer = ""
        collected = []
        for token in ["I had ", "a long ", "day. ", "It was ", "fine."]:
            sentences, buffer = extract_sentences(buffer + token)
            collected.extend(sentences)
        assert collected == ["I had a long day.", "It was fine."]
        assert buffer == ""

    def test_no_characters_lost(self):
        text = "First one. Second one! Third one? tail"
        sentences, remaining = extract_sentences(text)
        rebuilt = " ".join(sentences + [remaining])
        assert rebuilt.split() == text.split()


class TestSplitSentences:
    def test_includes_unterminated_tail(self):
        assert split_sentences("One. Two") == ["One.", "Two"]

    def test_empty(self):
        assert split_sentences("") == []
        assert split_sentences(None) == []


RECONSTRUCTION_TEXTS = [
    "Hello there. How are you?",
    "I had a long day. Work was rough! But dinner was nice... tail",
    "Really?! Yes. No way",
    "It costs 3.50 today. Cheap!",
    "One sentence only",
    "Wait.  Two spaces.\nNew line? Done.",
]


def feed(tokens):
    sentences, buffer = [], ""
    for token in tokens:
        found, buffer = extract_sentences(buffer + token)
        sentences.extend(found)
    tail = buffer.strip()
    return sentences + ([tail] if tail else [])


def squeeze(text):
    return "".join(text.split())


@pytest.mark.parametrize("text", RECONSTRUCTION_TEXTS)
def test_every_two_token_split_reconstructs_input(text):
    for cut in range(len(text) + 1):
        pieces = feed([text[:cut], text[cut:]])
        assert squeeze("".join(pieces)) == squeeze(text), f"split at {cut}"
        assert all(p and p == p.strip() for p in pieces)


@pytest.mark.parametrize("text", RECONSTRUCTION_TEXTS)
@pytest.mark.parametrize("size", [1, 2, 3, 7])
def test_fixed_size_tokens_reconstruct_input(text, size):
    tokens = [text[i:i + size] for i in range(0, len(text), size)]
    assert squeeze("".join(feed(tokens))) == squeeze(text)


@pytest.mark.parametrize("text", RECONSTRUCTION_TEXTS)
def test_streamed_and_whole_agree_on_word_boundaries(text):
    words = text.split()
    tokens = [w + " " for w in words[:-1]] + words[-1:]
    assert " ".join(feed(tokens)).split() == " ".join(split_sentences(text)).split()
