"""Paragraph segmentation, protected-span masking, and size estimation."""

from __future__ import annotations

import hashlib
import math
import re
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from .structures import Segment, SegmentKind, SizeCheck

PARAGRAPH_SEPARATOR = "\n\n"
FENCE_MARKERS = ("```", "~~~")
FRONTMATTER_MARKERS = ("---", "+++")
DEFAULT_MAX_TOKENS = 100_000
CHARS_PER_TOKEN = 4

FRONTMATTER_PATTERN = re.compile(
    r"\A(?P<marker>---|\+\+\+)[ \t]*\n.*?\n(?P=marker)[ \t]*(?:\n|\Z)",
    re.DOTALL,
)
FENCED_BLOCK_PATTERN = re.compile(
    r"(?P<fence>```|~~~).*?(?:(?P=fence)|\Z)",
    re.DOTALL,
)
INLINE_CODE_PATTERN = re.compile(r"`[^`\n]+`")
SENTENCE_BREAK_PATTERN = re.compile(r"(?<=[.!?。！？])\s+")

RestoreMap = Dict[str, str]


def content_hash(content: str) -> str:
    """Return the SHA-256 hex digest used as the cache key."""

    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _split_lines(document: str) -> List[str]:
    return document.replace("\r\n", "\n").split("\n")


def _is_blank(line: str) -> bool:
    return not line.strip()


def _fence_marker(line: str) -> Optional[str]:
    stripped = line.strip()
    for marker in FENCE_MARKERS:
        if stripped.startswith(marker):
            return marker
    return None


def _frontmatter_end(lines: Sequence[str]) -> Optional[int]:
    """Return the index of the closing front-matter delimiter, if any."""

    if not lines:
        return None
    opening = lines[0].rstrip()
    if opening not in FRONTMATTER_MARKERS:
        return None
    for idx in range(1, len(lines)):
        if lines[idx].rstrip() == opening:
            return idx
    return None


class Segmenter:
    """Splits documents into typed, hashed segments."""

    def segment(self, document: str) -> List[Segment]:
        """Scan the document line by line and return its segments in order."""

        lines = _split_lines(document)
        segments: List[Segment] = []

        position = 0
        closing = _frontmatter_end(lines)
        if closing is not None:
            segments.append(
                self._make_segment(lines[: closing + 1], SegmentKind.FRONTMATTER, 0, closing)
            )
            position = closing + 1

        current: List[str] = []
        start_line = position
        fence: Optional[str] = None

        for idx in range(position, len(lines)):
            line = lines[idx]

            if fence is not None:
                current.append(line)
                if idx != start_line and line.strip().startswith(fence):
                    segments.append(
                        self._make_segment(current, SegmentKind.CODE, start_line, idx)
                    )
                    current = []
                    fence = None
                continue

            marker = _fence_marker(line)
            if marker is not None:
                if current:
                    segments.append(
                        self._make_segment(current, SegmentKind.TEXT, start_line, idx - 1)
                    )
                fence = marker
                current = [line]
                start_line = idx
                continue

            if _is_blank(line):
                if current:
                    segments.append(
                        self._make_segment(current, SegmentKind.TEXT, start_line, idx - 1)
                    )
                    current = []
                continue

            if not current:
                start_line = idx
            current.append(line)

        if current:
            # An unterminated fence swallows the rest of the document.
            kind = SegmentKind.CODE if fence is not None else SegmentKind.TEXT
            segments.append(self._make_segment(current, kind, start_line, len(lines) - 1))

        return segments

    def _make_segment(
        self,
        lines: Sequence[str],
        kind: SegmentKind,
        start_line: int,
        end_line: int,
    ) -> Segment:
        content = "\n".join(lines)
        return Segment(
            content=content,
            kind=kind,
            hash=content_hash(content),
            start_line=start_line,
            end_line=end_line,
        )


def split_paragraphs(text: str) -> List[str]:
    """Split on blank lines only, without any code or front-matter awareness."""

    paragraphs: List[str] = []
    current: List[str] = []
    for line in _split_lines(text):
        if _is_blank(line):
            if current:
                paragraphs.append("\n".join(current))
                current = []
            continue
        current.append(line)
    if current:
        paragraphs.append("\n".join(current))
    return paragraphs


def join_paragraphs(paragraphs: Sequence[str]) -> str:
    return PARAGRAPH_SEPARATOR.join(paragraphs)


def join_segments(segments: Sequence[Segment]) -> str:
    return join_paragraphs([segment.content for segment in segments])


def normalize_document(document: str) -> str:
    """Apply the boundary normalisation that segmentation round-trips through."""

    return join_segments(Segmenter().segment(document))


def extract_protected_spans(text: str) -> Tuple[str, RestoreMap]:
    """Replace front-matter, fenced code and inline code with placeholders."""

    nonce = uuid.uuid4().hex[:8]
    restore_map: RestoreMap = {}

    def _placeholder(original: str) -> str:
        key = f"__PROTECTED_{nonce}_{len(restore_map)}__"
        restore_map[key] = original
        return key

    masked = text
    match = FRONTMATTER_PATTERN.match(masked)
    if match:
        block = match.group(0)
        # Keep the line break so the following paragraph stays separate.
        trailing = "\n" if block.endswith("\n") else ""
        body = block[: len(block) - len(trailing)]
        masked = _placeholder(body) + trailing + masked[match.end():]

    masked = FENCED_BLOCK_PATTERN.sub(lambda m: _placeholder(m.group(0)), masked)
    masked = INLINE_CODE_PATTERN.sub(lambda m: _placeholder(m.group(0)), masked)
    return masked, restore_map


def restore(masked_text: str, restore_map: RestoreMap) -> str:
    """Put protected spans back; placeholders that are gone are ignored."""

    result = masked_text
    for placeholder, original in restore_map.items():
        result = result.replace(placeholder, original)
    return result


def estimate_tokens(text: str) -> int:
    """Rough token estimate of about four characters per token."""

    return math.ceil(len(text) / CHARS_PER_TOKEN)


def check_size(text: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> SizeCheck:
    estimated = estimate_tokens(text)
    if estimated > max_tokens:
        return SizeCheck(
            valid=False,
            estimated_tokens=estimated,
            message=(
                f"Document is too large (estimated {estimated} tokens). "
                f"Maximum is {max_tokens} tokens."
            ),
        )
    return SizeCheck(valid=True, estimated_tokens=estimated)


def chunk_content(text: str, max_tokens_per_chunk: int = 4000) -> List[str]:
    """Greedily pack paragraphs into chunks that respect a token budget."""

    budget = max(1, max_tokens_per_chunk)
    chunks: List[str] = []
    current: List[str] = []
    current_tokens = 0

    for paragraph in split_paragraphs(text):
        tokens = estimate_tokens(paragraph)

        if tokens > budget:
            if current:
                chunks.append(join_paragraphs(current))
                current = []
                current_tokens = 0
            chunks.extend(_chunk_sentences(paragraph, budget))
            continue

        if current_tokens + tokens > budget and current:
            chunks.append(join_paragraphs(current))
            current = []
            current_tokens = 0

        current.append(paragraph)
        current_tokens += tokens

    if current:
        chunks.append(join_paragraphs(current))
    return chunks


def _chunk_sentences(paragraph: str, budget: int) -> List[str]:
    chunks: List[str] = []
    sentences: List[str] = []
    running = 0
    for sentence in SENTENCE_BREAK_PATTERN.split(paragraph):
        tokens = estimate_tokens(sentence)
        if running + tokens > budget and sentences:
            chunks.append(" ".join(sentences))
            sentences = []
            running = 0
        sentences.append(sentence)
        running += tokens
    if sentences:
        chunks.append(" ".join(sentences))
    return chunks
