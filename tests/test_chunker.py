from __future__ import annotations

import pytest

from src.errors import InvalidChunkOptionsError
from src.indexing.chunker import chunk_by_headings
from src.indexing.models import ChunkOptions


def _opts(max_chunk_size: int = 300, min_chunk_size: int = 0, overlap_size: int = 0) -> ChunkOptions:
    return ChunkOptions(
        max_chunk_size=max_chunk_size,
        min_chunk_size=min_chunk_size,
        overlap_size=overlap_size,
    )


def _paragraph(i: int, words: int = 15) -> str:
    return f"Paragraph{i:02d} " + " ".join(f"word{i}x{j}" for j in range(words))


def _long_document() -> str:
    sections = []
    for s in range(4):
        sections.append(f"# Part {s}")
        sections.append(_paragraph(s * 10, words=5))
        for sub in range(3):
            sections.append(f"## Part {s}.{sub}")
            sections.extend(_paragraph(s * 10 + sub * 3 + k, words=8 + k * 4) for k in range(3))
    return "\n\n".join(sections)


def _shape(chunks):
    return [
        (c.content, c.heading, c.heading_level, c.chunk_index, c.metadata.section_path)
        for c in chunks
    ]


# ---------------------------------------------------------------------------
# Heading path
# ---------------------------------------------------------------------------


def test_sibling_heading_replaces_previous_sibling_in_section_path():
    chunks = chunk_by_headings("# A\n\n## B\ntext\n\n## C\ntext", _opts(2000, 0, 200))

    by_heading = {chunk.heading: chunk for chunk in chunks}
    assert by_heading["A"].metadata.section_path == ["A"]
    assert by_heading["B"].metadata.section_path == ["A", "B"]
    assert by_heading["C"].metadata.section_path == ["A", "C"]


def test_skipped_heading_levels_pop_to_the_right_ancestor():
    chunks = chunk_by_headings("# A\n### B\nalpha\n## C\nbeta\n# D\ngamma", _opts())

    paths = {chunk.heading: chunk.metadata.section_path for chunk in chunks}
    assert paths["B"] == ["A", "B"]
    assert paths["C"] == ["A", "C"]
    assert paths["D"] == ["D"]
    levels = {chunk.heading: chunk.heading_level for chunk in chunks}
    assert levels == {"A": 1, "B": 3, "C": 2, "D": 1}


def test_metadata_serialises_section_path_in_camel_case():
    chunks = chunk_by_headings("# A\n## B\nbody", _opts())
    assert chunks[-1].metadata.to_dict() == {"sectionPath": ["A", "B"]}


def test_hash_without_title_is_body_text():
    chunks = chunk_by_headings("#   \nplain line", _opts())
    assert len(chunks) == 1
    assert chunks[0].heading is None
    assert "plain line" in chunks[0].content


# ---------------------------------------------------------------------------
# Index contiguity, determinism, coverage
# ---------------------------------------------------------------------------


def test_chunk_indexes_are_contiguous_from_zero():
    chunks = chunk_by_headings(_long_document(), _opts(300, 50, 40))
    assert len(chunks) > 5
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))


def test_chunking_is_deterministic():
    text = _long_document()
    first = chunk_by_headings(text, _opts(300, 50, 40))
    second = chunk_by_headings(text, _opts(300, 50, 40))
    assert _shape(first) == _shape(second)


def test_no_body_text_is_dropped():
    text = _long_document()
    chunks = chunk_by_headings(text, _opts(300, 50, 40))
    combined = "\n".join(chunk.content for chunk in chunks)

    words = [word for word in text.split() if set(word) != {"#"}]
    missing = [word for word in words if word not in combined]
    assert missing == []


# ---------------------------------------------------------------------------
# Size bound and splitting
# ---------------------------------------------------------------------------


def test_every_chunk_stays_within_max_size():
    options = _opts(300, 50, 40)
    chunks = chunk_by_headings(_long_document(), options)
    assert all(len(chunk.content) <= options.max_chunk_size for chunk in chunks)


def test_oversized_section_pieces_are_reprefixed_with_heading():
    body = "\n\n".join(_paragraph(i) for i in range(10))
    chunks = chunk_by_headings(f"# Big\n\n{body}", _opts(300, 0, 0))

    assert len(chunks) > 1
    assert all(chunk.content.startswith("Big\n\n") for chunk in chunks)
    assert all(chunk.heading == "Big" for chunk in chunks)
    assert all(len(chunk.content) <= 300 for chunk in chunks)
    for i in range(10):
        assert sum(_paragraph(i) in chunk.content for chunk in chunks) == 1


def test_single_block_of_lines_is_grouped_under_max_size():
    lines = [f"line {i:02d} " + "z" * 30 for i in range(30)]
    chunks = chunk_by_headings("\n".join(lines), _opts(300, 0, 0))

    assert len(chunks) > 1
    assert all(len(chunk.content) <= 300 for chunk in chunks)
    combined = "\n".join(chunk.content for chunk in chunks)
    assert all(line in combined for line in lines)


def test_unsplittable_line_is_kept_whole_even_above_max_size():
    long_line = "y" * 500
    chunks = chunk_by_headings(f"# H\n\n{long_line}", _opts(300, 0, 0))

    assert len(chunks) == 1
    assert long_line in chunks[0].content
    assert len(chunks[0].content) > 300


# ---------------------------------------------------------------------------
# Small sections and overlap
# ---------------------------------------------------------------------------


def test_small_section_is_appended_to_previous_chunk():
    intro = "intro " * 50
    chunks = chunk_by_headings(f"# A\n\n{intro}\n## B\nshort", _opts(2000, 200, 0))

    assert len(chunks) == 1
    assert chunks[0].heading == "A"
    assert chunks[0].content.endswith("B\n\nshort")


def test_first_chunk_is_emitted_even_when_below_min_size():
    chunks = chunk_by_headings("tiny", _opts(2000, 200, 200))
    assert len(chunks) == 1
    assert chunks[0].content == "tiny"


def test_chunks_after_the_first_start_with_previous_tail():
    body = "\n\n".join(_paragraph(i) for i in range(10))
    chunks = chunk_by_headings(f"# Big\n\n{body}", _opts(300, 0, 20))

    assert len(chunks) > 1
    for previous, current in zip(chunks, chunks[1:]):
        assert current.content.startswith(previous.content[-20:])
        assert len(current.content) <= 300


def test_overlap_is_not_duplicated_when_content_already_starts_with_it():
    chunks = chunk_by_headings("# X\n\n# X\nbody", _opts(2000, 0, 200))
    assert chunks[0].content == "X"
    assert chunks[1].content == "X\n\nbody"


# ---------------------------------------------------------------------------
# Edge cases
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("text", ["", "   \n\n  \t"])
def test_empty_text_yields_one_empty_chunk(text):
    chunks = chunk_by_headings(text, _opts())
    assert len(chunks) == 1
    assert chunks[0].content.strip() == ""
    assert chunks[0].heading is None
    assert chunks[0].heading_level == 0
    assert chunks[0].chunk_index == 0


def test_bare_heading_becomes_a_chunk():
    chunks = chunk_by_headings("## Lonely", _opts())
    assert len(chunks) == 1
    assert chunks[0].content == "Lonely"
    assert chunks[0].heading == "Lonely"
    assert chunks[0].heading_level == 2
    assert chunks[0].metadata.section_path == ["Lonely"]


def test_default_options_come_from_settings():
    options = ChunkOptions()
    assert (options.max_chunk_size, options.min_chunk_size, options.overlap_size) == (2000, 200, 200)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_chunk_size": 0, "min_chunk_size": 0, "overlap_size": 0},
        {"max_chunk_size": 100, "min_chunk_size": -1, "overlap_size": 0},
        {"max_chunk_size": 100, "min_chunk_size": 0, "overlap_size": -5},
        {"max_chunk_size": 100, "min_chunk_size": 150, "overlap_size": 0},
        {"max_chunk_size": 100, "min_chunk_size": 0, "overlap_size": 60},
    ],
)
def test_invalid_options_are_rejected(kwargs):
    with pytest.raises(InvalidChunkOptionsError):
        ChunkOptions(**kwargs)
    with pytest.raises(ValueError):
        ChunkOptions(**kwargs)
