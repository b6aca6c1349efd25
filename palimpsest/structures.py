"""Core data structures for the Palimpsest translation engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class SegmentKind(str, Enum):
    """Type of a document segment."""

    TEXT = "text"
    CODE = "code"
    FRONTMATTER = "frontmatter"


@dataclass(frozen=True)
class Segment:
    """A hashed, typed slice of a document."""

    content: str
    kind: SegmentKind
    hash: str
    start_line: int
    end_line: int

    @property
    def translatable(self) -> bool:
        return self.kind is SegmentKind.TEXT


@dataclass(frozen=True)
class ParagraphMapping:
    """Pairs a source paragraph with its translation, keyed by source hash."""

    source_content: str
    translated_content: str
    source_hash: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "source_content": self.source_content,
            "translated_content": self.translated_content,
            "source_hash": self.source_hash,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        *,
        hasher: Optional[Callable[[str], str]] = None,
    ) -> "ParagraphMapping":
        source = str(data.get("source_content", ""))
        source_hash = data.get("source_hash") or ""
        if not source_hash and hasher is not None:
            # Entries written before hashes were stored.
            source_hash = hasher(source)
        return cls(
            source_content=source,
            translated_content=str(data.get("translated_content", "")),
            source_hash=str(source_hash),
        )


@dataclass(frozen=True)
class DocumentMapping:
    """Persisted state for one translated document."""

    source_hash: str
    source_path: str
    paragraphs: List[ParagraphMapping] = field(default_factory=list)
    source_language: Optional[str] = None
    detected_at: Optional[float] = None

    def evolve(self, **changes: Any) -> "DocumentMapping":
        """Return a copy with the given fields replaced."""

        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "source_hash": self.source_hash,
            "source_path": self.source_path,
            "paragraphs": [paragraph.to_dict() for paragraph in self.paragraphs],
        }
        if self.source_language is not None:
            data["source_language"] = self.source_language
        if self.detected_at is not None:
            data["detected_at"] = self.detected_at
        return data

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        *,
        hasher: Optional[Callable[[str], str]] = None,
    ) -> "DocumentMapping":
        paragraphs = [
            ParagraphMapping.from_dict(item, hasher=hasher)
            for item in data.get("paragraphs") or []
            if isinstance(item, dict)
        ]
        detected_at = data.get("detected_at")
        return cls(
            source_hash=str(data.get("source_hash", "")),
            source_path=str(data.get("source_path", "")),
            paragraphs=paragraphs,
            source_language=data.get("source_language") or None,
            detected_at=float(detected_at) if detected_at is not None else None,
        )


@dataclass(frozen=True)
class TranslationUnit:
    """A pending piece of text and its position in the segment list."""

    index: int
    text: str


@dataclass(frozen=True)
class TokenUsage:
    """Prompt/completion/total token counts; zero when nothing was sent."""

    prompt: int = 0
    completion: int = 0
    total: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            prompt=self.prompt + other.prompt,
            completion=self.completion + other.completion,
            total=self.total + other.total,
        )

    @classmethod
    def from_counts(
        cls,
        prompt: Optional[int],
        completion: Optional[int],
        total: Optional[int] = None,
    ) -> "TokenUsage":
        prompt_value = int(prompt or 0)
        completion_value = int(completion or 0)
        total_value = int(total) if total is not None else prompt_value + completion_value
        return cls(prompt=prompt_value, completion=completion_value, total=total_value)


@dataclass(frozen=True)
class TranslationResult:
    """Output of a single translate call."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class GlossaryEntry:
    """Fixed terminology the provider must respect."""

    source: str
    target: str
    case_sensitive: bool = False


@dataclass(frozen=True)
class ProgressEvent:
    """Progress report emitted by the engine."""

    phase: str
    current: int
    total: int
    message: str = ""

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.current / self.total)


@dataclass(frozen=True)
class SizeCheck:
    """Outcome of the document size guard."""

    valid: bool
    estimated_tokens: int
    message: Optional[str] = None


@dataclass(frozen=True)
class ProviderConfig:
    """Everything needed to build one provider client."""

    provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    api_version: Optional[str] = None
    debug: bool = False


@dataclass(frozen=True)
class EngineConfig:
    """Per-operation settings for the translation engine."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    target_language: str = "zh-CN"
    max_concurrency: int = 3
    max_attempts: int = 3
    rate_limit_delay: float = 60.0
    base_retry_delay: float = 1.0
    max_document_tokens: int = 100_000
    glossary: List[GlossaryEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 1 <= self.max_concurrency <= 10:
            raise ValueError("max_concurrency must be between 1 and 10.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
