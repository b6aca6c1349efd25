"""Route hand edits of a translation back into the source language."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .cancellation import CancelToken
from .dispatcher import DEFAULT_CONCURRENCY, ProgressCallback, TranslateOne, dispatch
from .policy import RetryPolicy
from .segmenter import Segmenter, content_hash, join_paragraphs
from .structures import ParagraphMapping, TokenUsage, TranslationUnit

logger = logging.getLogger(__name__)


@dataclass
class ReverseResult:
    """Outcome of a reverse reconciliation pass."""

    modified_indices: List[int]
    new_source_content: str
    paragraphs: List[ParagraphMapping]
    translated_paragraphs: List[Tuple[int, str]] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def changed(self) -> bool:
        return bool(self.modified_indices)


def find_modified_indices(
    edited_paragraphs: Sequence[str],
    prior: Sequence[ParagraphMapping],
) -> List[int]:
    """Compare paragraphs by position against the saved translations.

    Alignment is purely positional: inserting or removing a paragraph break
    shifts every following index, and those paragraphs then count as edited.
    """

    modified: List[int] = []
    for idx, paragraph in enumerate(edited_paragraphs):
        if idx >= len(prior) or paragraph != prior[idx].translated_content:
            modified.append(idx)
    return modified


def reconcile_reverse(
    edited_document: str,
    prior: Sequence[ParagraphMapping],
    source_language: str,
    translate_one: TranslateOne,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_token: Optional[CancelToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> ReverseResult:
    """Translate only the edited paragraphs back and rebuild the source.

    ``translate_one`` must already target ``source_language``; the language is
    only used for logging here.

    The edited document is split with the same boundaries as the forward pass,
    so a fenced block with blank lines inside stays one paragraph. Edited code
    and front-matter are copied back verbatim instead of being translated.
    """

    segments = Segmenter().segment(edited_document)
    edited = [segment.content for segment in segments]
    modified = find_modified_indices(edited, prior)

    if not modified:
        return ReverseResult(
            modified_indices=[],
            new_source_content=join_paragraphs([p.source_content for p in prior]),
            paragraphs=list(prior),
        )

    logger.info(
        "Reverse translating %s of %s paragraphs into %s.",
        len(modified),
        len(edited),
        source_language,
    )
    units = [
        TranslationUnit(index=idx, text=edited[idx])
        for idx in modified
        if segments[idx].translatable
    ]
    results = dispatch(
        units,
        translate_one,
        concurrency=concurrency,
        cancel_token=cancel_token,
        on_progress=on_progress,
        retry_policy=retry_policy,
    )

    new_sources = {idx: edited[idx] for idx in modified}
    usage = TokenUsage()
    translated: List[Tuple[int, str]] = []
    for unit, result in zip(units, results):
        usage = usage + result.usage
        translated.append((unit.index, result.text))
        new_sources[unit.index] = result.text

    paragraphs = list(prior)
    for idx in modified:
        entry = ParagraphMapping(
            source_content=new_sources[idx],
            translated_content=edited[idx],
            source_hash=content_hash(new_sources[idx]),
        )
        if idx < len(paragraphs):
            paragraphs[idx] = entry
        else:
            paragraphs.append(entry)

    return ReverseResult(
        modified_indices=modified,
        new_source_content=join_paragraphs([p.source_content for p in paragraphs]),
        paragraphs=paragraphs,
        translated_paragraphs=translated,
        token_usage=usage,
    )
