"""Content-addressed index over previously produced paragraph translations."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional

from .structures import DocumentMapping, ParagraphMapping


class CacheIndex:
    """Read-only lookup from source hash to a prior paragraph mapping.

    The index is built from a caller-owned snapshot and never changes it;
    :meth:`updated` returns a fresh index instead of mutating this one.
    """

    def __init__(self, entries: Optional[Mapping[str, ParagraphMapping]] = None) -> None:
        self._entries: Mapping[str, ParagraphMapping] = MappingProxyType(dict(entries or {}))

    @classmethod
    def from_paragraphs(cls, paragraphs: Iterable[ParagraphMapping]) -> "CacheIndex":
        entries: Dict[str, ParagraphMapping] = {}
        for paragraph in paragraphs:
            if not paragraph.source_hash:
                continue
            # Later entries win, matching positional overwrite semantics.
            entries[paragraph.source_hash] = paragraph
        return cls(entries)

    @classmethod
    def from_mapping(cls, mapping: Optional[DocumentMapping]) -> "CacheIndex":
        if mapping is None:
            return cls()
        return cls.from_paragraphs(mapping.paragraphs)

    def lookup(self, source_hash: str) -> Optional[ParagraphMapping]:
        return self._entries.get(source_hash)

    def updated(self, paragraphs: Iterable[ParagraphMapping]) -> "CacheIndex":
        merged = dict(self._entries)
        merged.update(CacheIndex.from_paragraphs(paragraphs)._entries)
        return CacheIndex(merged)

    def __contains__(self, source_hash: object) -> bool:
        return source_hash in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)
