"""Decide which segments can reuse cached translations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from .cache import CacheIndex
from .structures import DocumentMapping, ParagraphMapping, Segment, TranslationUnit

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationPlan:
    """Mappings aligned with the segments, plus the units still to translate."""

    mappings: List[ParagraphMapping]
    pending: List[TranslationUnit] = field(default_factory=list)

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @property
    def reused_count(self) -> int:
        return len(self.mappings) - len(self.pending)

    @property
    def reused(self) -> List[ParagraphMapping]:
        pending_indices = {unit.index for unit in self.pending}
        return [
            mapping
            for idx, mapping in enumerate(self.mappings)
            if idx not in pending_indices
        ]

    def fill(self, translations: Sequence[str]) -> List[ParagraphMapping]:
        """Return the mappings with pending placeholders replaced in order."""

        if len(translations) != len(self.pending):
            raise ValueError(
                f"Expected {len(self.pending)} translations, got {len(translations)}."
            )
        filled = list(self.mappings)
        for unit, translated in zip(self.pending, translations):
            placeholder = filled[unit.index]
            filled[unit.index] = ParagraphMapping(
                source_content=placeholder.source_content,
                translated_content=translated,
                source_hash=placeholder.source_hash,
            )
        return filled


def plan(
    segments: Sequence[Segment],
    prior: Optional[Union[DocumentMapping, CacheIndex]] = None,
) -> ReconciliationPlan:
    """Classify every segment as reused, pass-through, or pending."""

    index = prior if isinstance(prior, CacheIndex) else CacheIndex.from_mapping(prior)

    mappings: List[ParagraphMapping] = []
    pending: List[TranslationUnit] = []

    for position, segment in enumerate(segments):
        if not segment.translatable:
            mappings.append(
                ParagraphMapping(
                    source_content=segment.content,
                    translated_content=segment.content,
                    source_hash=segment.hash,
                )
            )
            continue

        cached = index.lookup(segment.hash)
        if cached is not None:
            mappings.append(
                ParagraphMapping(
                    source_content=segment.content,
                    translated_content=cached.translated_content,
                    source_hash=segment.hash,
                )
            )
            continue

        pending.append(TranslationUnit(index=position, text=segment.content))
        mappings.append(
            ParagraphMapping(
                source_content=segment.content,
                translated_content="",
                source_hash=segment.hash,
            )
        )

    result = ReconciliationPlan(mappings=mappings, pending=pending)
    logger.debug(
        "Planned %s segments: %s reused, %s pending.",
        len(segments),
        result.reused_count,
        result.pending_count,
    )
    return result
