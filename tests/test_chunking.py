from __future__ import annotations

import pytest

from audibible.chunking import (
    chunk_text,
    count_sentences,
    default_max_chunk_chars,
    normalize_whitespace,
    preprocess_text,
    split_sentences,
)


def test_split_sentences_keeps_terminators_and_spacing():
    sentences = split_sentences("First one. Second one! Third?  Fourth")

    assert sentences == ["First one. ", "Second one! ", "Third?  ", "Fourth."]


def test_split_sentences_attaches_stray_punctuation_to_previous_sentence():
    assert split_sentences("Wait... !? Then more.") == ["Wait... !? ", "Then more."]


def test_split_sentences_empty_input():
    assert split_sentences("") == []
    assert split_sentences("   ") == []
    assert count_sentences(None) == 0


def test_preprocess_text_converts_pause_markers():
    processed = preprocess_text("Wait /// then // now / go")

    assert processed == (
        'Wait <break time="1.5s"/> then <break time="1s"/> now <break time="0.5s"/> go'
    )


def test_preprocess_text_converts_emphasis():
    processed = preprocess_text("The **LORD** said *let* there be _light_")

    assert '<emphasis level="strong">LORD</emphasis>' in processed
    assert '<emphasis level="moderate">let</emphasis>' in processed
    assert '<emphasis level="reduced">light</emphasis>' in processed


def test_break_tags_do_not_split_sentences():
    sentences = split_sentences(preprocess_text("Rest /// then continue. Done."))

    assert sentences == ['Rest <break time="1.5s"/> then continue. ', "Done."]


def test_chunk_text_groups_by_sentence_count():
    text = " ".join(f"Sentence {index}." for index in range(1, 12))

    chunks = chunk_text(text, max_sentences=5)

    assert len(chunks) == 3
    assert [count_sentences(chunk) for chunk in chunks] == [5, 5, 1]
    assert chunks[-1] == "Sentence 11."


@pytest.mark.parametrize("max_sentences", [1, 2, 3, 7])
def test_chunks_reproduce_normalized_input(max_sentences):
    text = "In the beginning God created. The earth was formless!  Was it empty? It was dark. Light came"

    chunks = chunk_text(text, max_sentences=max_sentences)

    assert all(chunks)
    assert all(count_sentences(chunk) <= max_sentences for chunk in chunks)
    assert normalize_whitespace(" ".join(chunks)) == normalize_whitespace(text + ".")


def test_chunk_text_by_characters_never_splits_sentences():
    text = "Alpha beta gamma. Delta epsilon. Zeta eta theta iota kappa."

    chunks = chunk_text(text, max_chars=20)

    assert chunks == ["Alpha beta gamma.", "Delta epsilon.", "Zeta eta theta iota kappa."]


def test_chunk_text_packs_sentences_up_to_limit():
    chunks = chunk_text("One. Two. Three. Four.", max_chars=11)

    assert chunks == ["One. Two.", "Three.", "Four."]


def test_chunk_size_limit_from_environment(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE_LIMIT", "6")

    assert default_max_chunk_chars() == 6
    assert chunk_text("One. Two.") == ["One.", "Two."]


def test_chunk_text_without_text_is_empty():
    assert chunk_text("") == []
    assert chunk_text(None, max_sentences=3) == []
