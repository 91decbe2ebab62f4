# chunk_by_headings() with private helpers

from __future__ import annotations

"""Chunk construction for indexing.

Core responsibilities:
- Split extracted document text into markdown-heading sections.
- Fold small headingless sections into the section before them.
- Track the heading path (ancestor heading titles) of every section.
- Emit size-bounded chunks, splitting oversized sections on paragraph
  boundaries and re-prefixing every piece with its section heading.
- Carry the tail of each chunk into the next one as overlap.

Pure function: no I/O, no shared state, deterministic for a given input.
"""

import re
from dataclasses import dataclass

from src.indexing.models import ChunkMetadata, ChunkOptions, DocumentChunk


_HEADING_RE = re.compile(r"^(#{1,6})\s+(\S.*)$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SEPARATOR = "\n\n"


@dataclass
class _Section:
    heading: str | None
    heading_level: int
    body: str


# Section finding (_find_sections)
# walks the text line by line; every markdown heading line opens a new section,
# every other line goes into the current section's body.
# A document with no headings (or no text at all) is one section.

def _find_sections(text: str) -> list[_Section]:
    sections: list[_Section] = []
    current = _Section(heading=None, heading_level=0, body="")

    for line in text.split("\n"):
        match = _HEADING_RE.match(line)
        if match is None:
            current.body += line + "\n"
            continue
        if current.body.strip() or current.heading:
            sections.append(current)
        current = _Section(
            heading=match.group(2).strip(),
            heading_level=len(match.group(1)),
            body="",
        )

    if current.body.strip() or current.heading:
        sections.append(current)

    if not sections:
        sections.append(_Section(heading=None, heading_level=0, body=text))
    return sections


# Small-section merge (_merge_small_sections)
# a headingless section too short to stand alone is appended to the body of the
# section before it. The first section is always kept.

def _merge_small_sections(sections: list[_Section], min_chunk_size: int) -> list[_Section]:
    merged: list[_Section] = []
    for section in sections:
        content_length = len(section.heading or "") + len(section.body.strip())
        if merged and content_length < min_chunk_size and not section.heading:
            merged[-1].body += "\n" + section.body
            continue
        merged.append(
            _Section(
                heading=section.heading,
                heading_level=section.heading_level,
                body=section.body,
            )
        )
    return merged


# Paragraph splitting (_split_into_paragraphs, _group_lines)
# blank-line paragraphs first; any paragraph still larger than the budget is
# regrouped from its single lines into buffers just under the budget.
# A single line longer than the budget cannot be split and is kept whole.

def _group_lines(text: str, budget: int) -> list[str]:
    lines = [line for line in text.split("\n") if line.strip()]
    groups: list[str] = []
    buffer = ""

    for line in lines:
        if buffer and len(buffer) + len(line) + 1 > budget:
            groups.append(buffer.strip())
            buffer = line
        else:
            buffer = f"{buffer}\n{line}" if buffer else line

    if buffer.strip():
        groups.append(buffer.strip())
    return groups


def _split_into_paragraphs(text: str, budget: int) -> list[str]:
    paragraphs = [piece.strip() for piece in _PARAGRAPH_SPLIT_RE.split(text) if piece.strip()]

    units: list[str] = []
    for paragraph in paragraphs:
        if len(paragraph) <= budget:
            units.append(paragraph)
        else:
            units.extend(_group_lines(paragraph, budget))
    return units


# Overlap (_with_overlap)
# prepend the previous chunk's trailing characters unless the new content
# already starts with exactly that text.

def _with_overlap(chunks: list[DocumentChunk], content: str, overlap_size: int) -> str:
    if not chunks or overlap_size <= 0:
        return content
    overlap = chunks[-1].content[-overlap_size:]
    if content.startswith(overlap):
        return content
    return overlap + _SEPARATOR + content


class _ChunkEmitter:
    """Appends chunks in order and keeps chunk_index contiguous."""

    def __init__(self, options: ChunkOptions) -> None:
        self.options = options
        self.chunks: list[DocumentChunk] = []
        # Room the overlap prefix may take in any chunk after the first.
        self._overlap_reserve = (
            options.overlap_size + len(_SEPARATOR) if options.overlap_size > 0 else 0
        )

    def capacity(self) -> int:
        """Max length of new content so content + overlap stays within max_chunk_size."""
        if not self.chunks:
            return self.options.max_chunk_size
        return self.options.max_chunk_size - self._overlap_reserve

    def unit_budget(self, heading_prefix: str) -> int:
        return max(1, self.options.max_chunk_size - self._overlap_reserve - len(heading_prefix))

    def emit(self, content: str, section: _Section, section_path: list[str]) -> None:
        self.chunks.append(
            DocumentChunk(
                content=_with_overlap(self.chunks, content, self.options.overlap_size),
                heading=section.heading,
                heading_level=section.heading_level,
                chunk_index=len(self.chunks),
                metadata=ChunkMetadata(section_path=list(section_path)),
            )
        )

    def try_append_to_previous(self, content: str) -> bool:
        if not self.chunks:
            return False
        previous = self.chunks[-1]
        if len(previous.content) + len(_SEPARATOR) + len(content) > self.options.max_chunk_size:
            return False
        previous.content += _SEPARATOR + content
        return True


def _emit_oversized_section(
    emitter: _ChunkEmitter,
    section: _Section,
    section_path: list[str],
    heading_prefix: str,
    body_text: str,
) -> None:
    paragraphs = _split_into_paragraphs(body_text, emitter.unit_budget(heading_prefix))
    current: list[str] = []

    for paragraph in paragraphs:
        candidate = heading_prefix + _SEPARATOR.join(current + [paragraph])
        if current and len(candidate) > emitter.capacity():
            emitter.emit((heading_prefix + _SEPARATOR.join(current)).strip(), section, section_path)
            current = [paragraph]
            continue
        current.append(paragraph)

    if current:
        emitter.emit((heading_prefix + _SEPARATOR.join(current)).strip(), section, section_path)
    elif heading_prefix.strip():
        emitter.emit(heading_prefix.strip(), section, section_path)


# chunk_by_headings()
# the entry point that wires it all together

def chunk_by_headings(text: str, options: ChunkOptions | None = None) -> list[DocumentChunk]:
    """Split one document's extracted text into ordered, heading-scoped chunks.

    Every chunk after the first starts with up to ``overlap_size`` trailing
    characters of the chunk before it.  Chunk content stays within
    ``max_chunk_size`` unless a single line of text is longer than that on
    its own.  Empty text yields exactly one chunk with empty content.
    """
    opts = options or ChunkOptions()
    sections = _merge_small_sections(_find_sections(text), opts.min_chunk_size)

    emitter = _ChunkEmitter(opts)
    # (level, title) pairs for the strict ancestor chain of the current section.
    heading_stack: list[tuple[int, str]] = []

    for section in sections:
        if section.heading:
            while heading_stack and heading_stack[-1][0] >= section.heading_level:
                heading_stack.pop()
            heading_stack.append((section.heading_level, section.heading))
        section_path = [title for _level, title in heading_stack]

        heading_prefix = f"{section.heading}{_SEPARATOR}" if section.heading else ""
        body_text = section.body.strip()
        content = (heading_prefix + body_text).strip()

        if len(content) > emitter.capacity():
            _emit_oversized_section(emitter, section, section_path, heading_prefix, body_text)
            continue

        if len(content) >= opts.min_chunk_size or not emitter.chunks:
            emitter.emit(content, section, section_path)
        elif not emitter.try_append_to_previous(content):
            # Appending would push the previous chunk past max_chunk_size.
            emitter.emit(content, section, section_path)

    return emitter.chunks
