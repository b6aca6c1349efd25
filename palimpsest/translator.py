"""High-level orchestration for incremental document translation."""

from __future__ import annotations

import logging
import pathlib
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .cancellation import CancelToken
from .dispatcher import TranslateOne, dispatch
from .errors import (
    ErrorCategory,
    FileTooLargeError,
    PalimpsestError,
    TranslationCancelled,
    TranslationError,
)
from .planner import plan
from .policy import RetryPolicy
from .providers import (
    ChunkSink,
    LanguageDetector,
    TranslationProvider,
    build_provider,
    build_system_prompt,
)
from .reconciler import ReverseResult, reconcile_reverse
from .segmenter import (
    Segmenter,
    check_size,
    content_hash,
    extract_protected_spans,
    join_paragraphs,
    restore,
)
from .store import Workspace
from .structures import (
    DocumentMapping,
    EngineConfig,
    ProgressEvent,
    SizeCheck,
    TokenUsage,
    TranslationResult,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], None]


@dataclass
class IncrementalTranslation:
    """Result of a forward pass."""

    translated_text: str
    mapping: DocumentMapping
    changed_paragraphs: int
    reused_paragraphs: int
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ReverseTranslation:
    """Result of a reverse pass together with the mapping to persist."""

    result: ReverseResult
    mapping: DocumentMapping
    source_language: str


class TranslationEngine:
    """Segments, plans, and dispatches translations for one configuration."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        provider: Optional[TranslationProvider] = None,
        detector: Optional[LanguageDetector] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.provider = provider or build_provider(config.provider)
        self.segmenter = Segmenter()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_attempts,
            rate_limit_delay=config.rate_limit_delay,
            base_delay=config.base_retry_delay,
        )
        self.detector = detector or LanguageDetector(
            self.provider, retry_policy=self.retry_policy, clock=clock
        )
        self.clock = clock

    # --- Size guard -------------------------------------------------------

    def check_document_size(self, text: str) -> SizeCheck:
        return check_size(text, self.config.max_document_tokens)

    def ensure_size(self, text: str) -> SizeCheck:
        result = self.check_document_size(text)
        if not result.valid:
            raise FileTooLargeError(
                result.message or "Document is too large.",
                estimated_tokens=result.estimated_tokens,
            )
        return result

    # --- Forward ----------------------------------------------------------

    def translate_incremental(
        self,
        document: str,
        prior: Optional[DocumentMapping] = None,
        *,
        source_path: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
        on_event: Optional[EventSink] = None,
        detect_language: bool = False,
    ) -> IncrementalTranslation:
        """Translate only the paragraphs the prior mapping does not cover."""

        token = cancel_token or CancelToken()
        emit = on_event or (lambda event: None)
        token.raise_if_cancelled()
        self.ensure_size(document)

        segments = self.segmenter.segment(document)
        total = len(segments)
        emit(ProgressEvent("parsing", 0, total, "Analyzing document structure..."))

        reconciliation = plan(segments, prior)
        reused = reconciliation.reused_count
        pending = reconciliation.pending
        emit(
            ProgressEvent(
                "translating",
                reused,
                total,
                f"Reusing {reused} cached paragraphs, translating {len(pending)}...",
            )
        )
        logger.info(
            "Translating %s of %s paragraphs into %s.",
            len(pending),
            total,
            self.config.target_language,
        )

        def _on_progress(current: int, count: int) -> None:
            emit(
                ProgressEvent(
                    "translating",
                    reused + current,
                    total,
                    f"Translating paragraph {current}/{count}...",
                )
            )

        results = dispatch(
            pending,
            self._translator_for(self.config.target_language),
            concurrency=self.config.max_concurrency,
            cancel_token=token,
            on_progress=_on_progress,
            retry_policy=self.retry_policy,
        )
        usage = sum((result.usage for result in results), TokenUsage())
        mappings = reconciliation.fill([result.text for result in results])

        emit(ProgressEvent("saving", total, total, "Finalizing translation..."))

        source_language = prior.source_language if prior else None
        detected_at = prior.detected_at if prior else None
        if source_language is None and detect_language:
            source_language = self._detect_quietly(document, token)
            detected_at = self.clock() if source_language else None

        mapping = DocumentMapping(
            source_hash=content_hash(document),
            source_path=source_path or (prior.source_path if prior else ""),
            paragraphs=mappings,
            source_language=source_language,
            detected_at=detected_at,
        )
        return IncrementalTranslation(
            translated_text=join_paragraphs([m.translated_content for m in mappings]),
            mapping=mapping,
            changed_paragraphs=len(pending),
            reused_paragraphs=reused,
            token_usage=usage,
        )

    # --- Reverse ----------------------------------------------------------

    def reverse_translate(
        self,
        edited_translation: str,
        prior: DocumentMapping,
        source_language: Optional[str] = None,
        *,
        cancel_token: Optional[CancelToken] = None,
        on_event: Optional[EventSink] = None,
    ) -> ReverseTranslation:
        """Send edited paragraphs back into the source language."""

        token = cancel_token or CancelToken()
        emit = on_event or (lambda event: None)
        token.raise_if_cancelled()
        self.ensure_size(edited_translation)

        language = source_language or prior.source_language
        if not language:
            prior_source = join_paragraphs([p.source_content for p in prior.paragraphs])
            language = self._detect_quietly(prior_source, token)
        if not language:
            raise TranslationError(
                "Could not determine source language.", ErrorCategory.UNKNOWN
            )

        emit(ProgressEvent("parsing", 0, len(prior.paragraphs), "Detecting changes..."))

        def _on_progress(current: int, count: int) -> None:
            emit(
                ProgressEvent(
                    "translating",
                    current,
                    count,
                    f"Translating paragraph {current}/{count}...",
                )
            )

        result = reconcile_reverse(
            edited_translation,
            prior.paragraphs,
            language,
            self._translator_for(language),
            concurrency=self.config.max_concurrency,
            cancel_token=token,
            on_progress=_on_progress,
            retry_policy=self.retry_policy,
        )
        if not result.changed:
            return ReverseTranslation(result=result, mapping=prior, source_language=language)

        emit(ProgressEvent("saving", len(result.paragraphs), len(result.paragraphs), "Updating source..."))
        mapping = prior.evolve(
            source_hash=content_hash(result.new_source_content),
            paragraphs=result.paragraphs,
            source_language=language,
        )
        return ReverseTranslation(result=result, mapping=mapping, source_language=language)

    # --- Free text --------------------------------------------------------

    def translate_text(
        self,
        text: str,
        *,
        target_language: Optional[str] = None,
        on_chunk: Optional[ChunkSink] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> TranslationResult:
        """Translate a whole text at once, keeping code and front-matter intact."""

        token = cancel_token or CancelToken()
        self.ensure_size(text)
        language = target_language or self.config.target_language
        masked, restore_map = extract_protected_spans(text)
        instructions = build_system_prompt(language, self.config.glossary)
        # Placeholders must never reach the sink, so masked text is delivered whole.
        live_sink = on_chunk if not restore_map else None
        result = self.retry_policy.run(
            lambda: self.provider.translate(
                masked,
                target_language=language,
                system_instructions=instructions,
                cancel_token=token,
                on_chunk=live_sink,
            ),
            token,
        )
        restored = restore(result.text, restore_map)
        if on_chunk is not None and live_sink is None:
            on_chunk(restored)
        return TranslationResult(text=restored, usage=result.usage)

    def validate_api_key(self) -> bool:
        """Return False on an authentication failure; other errors propagate."""

        try:
            self.retry_policy.run(lambda: self.provider.detect_language("Hello world"))
        except TranslationError as exc:
            if exc.category is ErrorCategory.AUTH_FAILURE:
                return False
            raise
        return True

    # --- Internal helpers -------------------------------------------------

    def _translator_for(self, target_language: str) -> TranslateOne:
        instructions = build_system_prompt(target_language, self.config.glossary)

        def _translate_one(text: str, token: CancelToken) -> TranslationResult:
            masked, restore_map = extract_protected_spans(text)
            result = self.provider.translate(
                masked,
                target_language=target_language,
                system_instructions=instructions,
                cancel_token=token,
            )
            return TranslationResult(
                text=restore(result.text, restore_map), usage=result.usage
            )

        return _translate_one

    def _detect_quietly(self, text: str, token: CancelToken) -> Optional[str]:
        if not text.strip():
            return None
        try:
            return self.detector.detect(text, cache_key=content_hash(text), cancel_token=token)
        except TranslationCancelled:
            raise
        except PalimpsestError as exc:
            logger.warning("Language detection failed: %s", exc)
            return None


@dataclass
class TranslationSummary:
    """Report returned after processing a document."""

    source_path: pathlib.Path
    output_path: pathlib.Path
    direction: str
    total_paragraphs: int
    changed_paragraphs: int
    reused_paragraphs: int
    provider_name: str
    model: Optional[str]
    target_language: str
    source_language: Optional[str]
    token_usage: TokenUsage
    elapsed_seconds: float
    up_to_date: bool = False
    error_messages: List[str] = field(default_factory=list)


class TranslationRunner:
    """Coordinates the engine with the on-disk workspace."""

    def __init__(
        self,
        *,
        engine: TranslationEngine,
        workspace: Workspace,
        cancel_token: Optional[CancelToken] = None,
        on_event: Optional[EventSink] = None,
    ) -> None:
        self.engine = engine
        self.workspace = workspace
        self.cancel_token = cancel_token or CancelToken()
        self.on_event = on_event

    def translate(
        self,
        source_path: pathlib.Path,
        *,
        force: bool = False,
        detect_language: bool = False,
    ) -> TranslationSummary:
        start_time = time.time()
        first_record = len(self.engine.retry_policy.records)
        content = source_path.read_text(encoding="utf-8")
        translation_path = self.workspace.translation_path(source_path)
        prior = self.workspace.load_mapping(translation_path)

        if not force and not self.workspace.needs_translation(source_path, content):
            logger.info("Translation of %s is up to date.", source_path)
            return self._summary(
                source_path=source_path,
                output_path=translation_path,
                direction="forward",
                total=len(prior.paragraphs) if prior else 0,
                changed=0,
                reused=len(prior.paragraphs) if prior else 0,
                source_language=prior.source_language if prior else None,
                usage=TokenUsage(),
                start_time=start_time,
                first_record=first_record,
                up_to_date=True,
            )

        outcome = self.engine.translate_incremental(
            content,
            prior,
            source_path=self.workspace.relative_key(source_path),
            cancel_token=self.cancel_token,
            on_event=self.on_event,
            detect_language=detect_language,
        )
        self.workspace.save_translation(
            source_path, outcome.translated_text, outcome.mapping
        )
        return self._summary(
            source_path=source_path,
            output_path=translation_path,
            direction="forward",
            total=len(outcome.mapping.paragraphs),
            changed=outcome.changed_paragraphs,
            reused=outcome.reused_paragraphs,
            source_language=outcome.mapping.source_language,
            usage=outcome.token_usage,
            start_time=start_time,
            first_record=first_record,
        )

    def reverse(
        self,
        translation_path: pathlib.Path,
        *,
        source_language: Optional[str] = None,
    ) -> TranslationSummary:
        start_time = time.time()
        first_record = len(self.engine.retry_policy.records)
        if not self.workspace.is_translation_file(translation_path):
            raise PalimpsestError(
                "This is not a translation file. Reverse translation only works on "
                f"files inside {self.workspace.translation_dir}."
            )
        prior = self.workspace.load_mapping(translation_path)
        if prior is None:
            raise PalimpsestError(
                "No translation metadata found. Please translate the original file first."
            )
        source_path = self.workspace.source_path_from_translation(translation_path)

        edited = translation_path.read_text(encoding="utf-8")
        outcome = self.engine.reverse_translate(
            edited,
            prior,
            source_language,
            cancel_token=self.cancel_token,
            on_event=self.on_event,
        )
        result = outcome.result
        if result.changed:
            self.workspace.update_source(
                translation_path, result.new_source_content, outcome.mapping
            )

        return self._summary(
            source_path=source_path,
            output_path=translation_path,
            direction="reverse",
            total=len(result.paragraphs),
            changed=len(result.modified_indices),
            reused=len(result.paragraphs) - len(result.modified_indices),
            source_language=outcome.source_language,
            usage=result.token_usage,
            start_time=start_time,
            first_record=first_record,
            up_to_date=not result.changed,
        )

    def _summary(
        self,
        *,
        source_path: pathlib.Path,
        output_path: pathlib.Path,
        direction: str,
        total: int,
        changed: int,
        reused: int,
        source_language: Optional[str],
        usage: TokenUsage,
        start_time: float,
        first_record: int = 0,
        up_to_date: bool = False,
    ) -> TranslationSummary:
        config = self.engine.config
        return TranslationSummary(
            source_path=source_path,
            output_path=output_path,
            direction=direction,
            total_paragraphs=total,
            changed_paragraphs=changed,
            reused_paragraphs=reused,
            provider_name=config.provider.provider,
            model=config.provider.model,
            target_language=config.target_language,
            source_language=source_language,
            token_usage=usage,
            elapsed_seconds=time.time() - start_time,
            up_to_date=up_to_date,
            error_messages=[
                record.message
                for record in self.engine.retry_policy.records[first_record:]
            ],
        )
