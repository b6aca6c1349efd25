import json

import pytest

from palimpsest.cancellation import CancelToken
from palimpsest.errors import (
    ErrorCategory,
    FileTooLargeError,
    PalimpsestError,
    TranslationCancelled,
    TranslationError,
)
from palimpsest.segmenter import content_hash
from palimpsest.store import InMemoryMetadataStore, Workspace
from palimpsest.structures import EngineConfig, GlossaryEntry, ProviderConfig
from palimpsest.translator import TranslationEngine, TranslationRunner

DOCUMENT = "# Title\n\nHello\n\n```js\nconsole.log(1)\n```"


@pytest.fixture
def engine(engine_config, provider, retry_policy, clock):
    return TranslationEngine(
        engine_config, provider=provider, retry_policy=retry_policy, clock=clock
    )


def test_first_translation_sends_only_text(engine, provider):
    outcome = engine.translate_incremental(DOCUMENT, source_path="doc.md")
    assert sorted(provider.calls) == ["# Title", "Hello"]
    assert outcome.translated_text == (
        "[fr] # Title\n\n[fr] Hello\n\n```js\nconsole.log(1)\n```"
    )
    assert outcome.changed_paragraphs == 2
    assert outcome.reused_paragraphs == 1
    assert outcome.mapping.source_hash == content_hash(DOCUMENT)
    assert outcome.mapping.source_path == "doc.md"
    assert outcome.token_usage.total == 30


def test_unchanged_document_dispatches_nothing(engine, provider):
    first = engine.translate_incremental(DOCUMENT)
    provider.calls.clear()
    second = engine.translate_incremental(DOCUMENT, first.mapping)
    assert provider.calls == []
    assert second.translated_text == first.translated_text
    assert second.changed_paragraphs == 0
    assert second.reused_paragraphs == len(second.mapping.paragraphs) == 3
    assert second.token_usage.total == 0


def test_repeated_paragraph_reuses_cached_translation(engine, provider):
    first = engine.translate_incremental("Hello\n\nWorld")
    provider.calls.clear()
    second = engine.translate_incremental("Hello\n\nWorld\n\nHello", first.mapping)
    assert provider.calls == []
    assert second.translated_text == "[fr] Hello\n\n[fr] World\n\n[fr] Hello"
    paragraphs = second.mapping.paragraphs
    assert paragraphs[0].translated_content == paragraphs[2].translated_content


def test_one_changed_paragraph_dispatches_one_unit(engine, provider):
    first = engine.translate_incremental(DOCUMENT)
    provider.calls.clear()
    edited = DOCUMENT.replace("Hello", "Hello again")
    second = engine.translate_incremental(edited, first.mapping)
    assert provider.calls == ["Hello again"]
    assert "[fr] Hello again" in second.translated_text
    assert second.translated_text.startswith("[fr] # Title")


def test_inline_code_and_frontmatter_never_reach_provider(engine, provider):
    document = "---\ntitle: Guide\n---\n\nRun `make test` first.\n\n~~~\nraw\n~~~"
    outcome = engine.translate_incremental(document)
    assert len(provider.calls) == 1
    assert "make test" not in provider.calls[0]
    assert "title: Guide" not in provider.calls[0]
    assert outcome.translated_text == (
        "---\ntitle: Guide\n---\n\n[fr] Run `make test` first.\n\n~~~\nraw\n~~~"
    )


def test_progress_events_cover_each_phase(engine):
    events = []
    engine.translate_incremental(DOCUMENT, on_event=events.append)
    phases = [event.phase for event in events]
    assert phases[0] == "parsing"
    assert "translating" in phases
    assert phases[-1] == "saving"
    assert events[-1].fraction == 1.0


def test_detect_language_is_stored_with_timestamp(engine, provider, clock):
    outcome = engine.translate_incremental(DOCUMENT, detect_language=True)
    assert outcome.mapping.source_language == "en"
    assert outcome.mapping.detected_at == clock.now
    assert len(provider.detections) == 1


def test_oversized_document_is_rejected(provider, retry_policy):
    config = EngineConfig(provider=ProviderConfig(provider="echo"), max_document_tokens=10)
    engine = TranslationEngine(config, provider=provider, retry_policy=retry_policy)
    with pytest.raises(FileTooLargeError) as excinfo:
        engine.translate_incremental("x" * 100)
    assert excinfo.value.category is ErrorCategory.FILE_TOO_LARGE
    assert excinfo.value.estimated_tokens == 25
    assert provider.calls == []


def test_cancelled_token_stops_before_any_call(engine, provider):
    token = CancelToken()
    token.cancel()
    with pytest.raises(TranslationCancelled):
        engine.translate_incremental(DOCUMENT, cancel_token=token)
    assert provider.calls == []


def test_reverse_translates_only_edits(engine, provider):
    forward = engine.translate_incremental("Hello\n\nWorld")
    provider.calls.clear()
    edited = "[fr] Hello\n\nMonde"
    outcome = engine.reverse_translate(edited, forward.mapping, "en")
    assert provider.calls == ["Monde"]
    assert provider.targets[-1] == "en"
    assert outcome.result.new_source_content == "Hello\n\n[en] Monde"
    assert outcome.mapping.source_hash == content_hash("Hello\n\n[en] Monde")
    assert outcome.mapping.source_language == "en"


def test_reverse_without_changes_keeps_mapping(engine, provider):
    forward = engine.translate_incremental("Hello\n\nWorld")
    provider.calls.clear()
    outcome = engine.reverse_translate(forward.translated_text, forward.mapping, "en")
    assert outcome.mapping is forward.mapping
    assert not outcome.result.changed
    assert provider.calls == []


def test_reverse_keeps_code_block_with_blank_line_whole(engine, provider):
    document = "Intro\n\n```python\na = 1\n\nb = 2\n```\n\nOutro"
    forward = engine.translate_incremental(document)
    provider.calls.clear()
    outcome = engine.reverse_translate(forward.translated_text, forward.mapping, "en")
    assert outcome.result.modified_indices == []
    assert outcome.result.new_source_content == document
    assert provider.calls == []

    edited = forward.translated_text.replace("[fr] Outro", "Fin")
    outcome = engine.reverse_translate(edited, forward.mapping, "en")
    assert outcome.result.modified_indices == [2]
    assert provider.calls == ["Fin"]
    assert outcome.result.new_source_content == (
        "Intro\n\n```python\na = 1\n\nb = 2\n```\n\n[en] Fin"
    )


def test_reverse_detects_language_when_unknown(engine, provider):
    forward = engine.translate_incremental("Hello")
    outcome = engine.reverse_translate("Salut", forward.mapping)
    assert outcome.source_language == "en"
    assert provider.detections


def test_reverse_fails_when_language_cannot_be_found(engine, provider):
    def _fail(sample):
        raise ValueError("no idea")

    forward = engine.translate_incremental("Hello")
    provider.detect_language = _fail
    with pytest.raises(TranslationError) as excinfo:
        engine.reverse_translate("Salut", forward.mapping)
    assert "source language" in str(excinfo.value)


def test_translate_text_streams_plain_text(engine):
    chunks = []
    result = engine.translate_text("Hi there", on_chunk=chunks.append)
    assert chunks == ["[fr] Hi there"]
    assert result.text == "[fr] Hi there"


def test_translate_text_delivers_restored_text_when_masked(engine):
    chunks = []
    result = engine.translate_text("Use `pip`", target_language="de", on_chunk=chunks.append)
    assert result.text == "[de] Use `pip`"
    assert chunks == ["[de] Use `pip`"]


def test_glossary_is_sent_with_instructions(make_provider, retry_policy):
    seen = []

    class GlossaryProvider(type(make_provider())):
        def translate(self, text, *, target_language, system_instructions, **kwargs):
            seen.append(system_instructions)
            return super().translate(
                text,
                target_language=target_language,
                system_instructions=system_instructions,
                **kwargs,
            )

    config = EngineConfig(
        provider=ProviderConfig(provider="echo"),
        target_language="fr",
        glossary=[GlossaryEntry(source="widget", target="bidule")],
    )
    engine = TranslationEngine(config, provider=GlossaryProvider(), retry_policy=retry_policy)
    engine.translate_incremental("A widget")
    assert '"widget" -> "bidule"' in seen[0]


def test_validate_api_key_reports_auth_failure(engine, provider):
    def _unauthorized(sample):
        raise PermissionError("401 Unauthorized")

    assert engine.validate_api_key() is True
    provider.detect_language = _unauthorized
    assert engine.validate_api_key() is False


def test_runner_round_trip(tmp_path, engine, provider):
    source = tmp_path / "docs" / "guide.md"
    source.parent.mkdir()
    source.write_text("Hello\n\nWorld", encoding="utf-8")
    workspace = Workspace(tmp_path)
    runner = TranslationRunner(engine=engine, workspace=workspace)

    summary = runner.translate(source)
    translation = tmp_path / ".palimpsest" / "docs" / "guide.md"
    assert summary.output_path == translation.resolve()
    assert translation.read_text(encoding="utf-8") == "[fr] Hello\n\n[fr] World"
    metadata = json.loads((tmp_path / ".palimpsest" / "metadata.json").read_text("utf-8"))
    assert "docs/guide.md" in metadata["translations"]

    provider.calls.clear()
    again = runner.translate(source)
    assert again.up_to_date
    assert provider.calls == []

    translation.write_text("[fr] Hello\n\nLe monde", encoding="utf-8")
    reverse = runner.reverse(translation, source_language="en")
    assert reverse.direction == "reverse"
    assert reverse.changed_paragraphs == 1
    assert source.read_text(encoding="utf-8") == "Hello\n\n[en] Le monde"

    provider.calls.clear()
    assert runner.translate(source).up_to_date
    assert provider.calls == []


def test_runner_force_retranslates_from_cache(tmp_path, engine, provider):
    source = tmp_path / "a.md"
    source.write_text("Hello", encoding="utf-8")
    runner = TranslationRunner(
        engine=engine, workspace=Workspace(tmp_path, store=InMemoryMetadataStore())
    )
    runner.translate(source)
    provider.calls.clear()
    summary = runner.translate(source, force=True)
    assert not summary.up_to_date
    assert summary.reused_paragraphs == 1
    assert provider.calls == []


def test_runner_reverse_rejects_non_translation_file(tmp_path, engine):
    source = tmp_path / "a.md"
    source.write_text("Hello", encoding="utf-8")
    runner = TranslationRunner(engine=engine, workspace=Workspace(tmp_path))
    with pytest.raises(PalimpsestError):
        runner.reverse(source)


def test_runner_reverse_requires_metadata(tmp_path, engine):
    translation = tmp_path / ".palimpsest" / "orphan.md"
    translation.parent.mkdir()
    translation.write_text("Bonjour", encoding="utf-8")
    runner = TranslationRunner(engine=engine, workspace=Workspace(tmp_path))
    with pytest.raises(PalimpsestError) as excinfo:
        runner.reverse(translation)
    assert "metadata" in str(excinfo.value)


def test_runner_reports_only_retries_from_its_own_run(
    tmp_path, make_provider, engine_config, retry_policy, sleeper
):
    provider = make_provider(failures={"Hello": [ConnectionError("network down")]})
    engine = TranslationEngine(engine_config, provider=provider, retry_policy=retry_policy)
    runner = TranslationRunner(
        engine=engine, workspace=Workspace(tmp_path, store=InMemoryMetadataStore())
    )
    first = tmp_path / "a.md"
    first.write_text("Hello", encoding="utf-8")
    second = tmp_path / "b.md"
    second.write_text("World", encoding="utf-8")

    assert len(runner.translate(first).error_messages) == 1
    assert len(sleeper.delays) == 1
    assert runner.translate(second).error_messages == []
