"""Command line interface for the Palimpsest translator."""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys
import threading
from typing import Callable, Iterable, Optional, TypeVar

from .cancellation import CancelToken
from .configuration import PalimpsestConfig, get_settings, to_engine_config
from .errors import (
    FileTooLargeError,
    PalimpsestError,
    TranslationCancelled,
    TranslationProviderConfigurationError,
)
from .progress import ProgressChannel
from .segmenter import Segmenter, check_size
from .store import Workspace
from .structures import ProgressEvent
from .translator import TranslationEngine, TranslationRunner, TranslationSummary

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

T = TypeVar("T")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )


def _add_provider_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--provider",
        help="Translation provider identifier (default: openai).",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Provider-specific model or deployment identifier.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="palimpsest",
        description=(
            "Incrementally translate markdown documents, re-translating only the "
            "paragraphs that changed."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    translate = subparsers.add_parser(
        "translate", help="Translate a markdown file into the workspace."
    )
    translate.add_argument("input_file", help="Path to the markdown file to translate.")
    translate.add_argument(
        "-t",
        "--target-language",
        help="Destination language code (default from configuration).",
    )
    _add_provider_arguments(translate)
    translate.add_argument(
        "-c",
        "--concurrency",
        type=int,
        help="Maximum number of paragraphs translated at once (1-10).",
    )
    translate.add_argument(
        "--workspace",
        help="Workspace root holding the .palimpsest directory (default: current directory).",
    )
    translate.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Translate even if the stored translation is up to date.",
    )
    translate.add_argument(
        "--detect-language",
        action="store_true",
        help="Detect and remember the source language for later reverse translation.",
    )
    _add_common_arguments(translate)

    reverse = subparsers.add_parser(
        "reverse", help="Apply edits made to a translation back to its source file."
    )
    reverse.add_argument("translation_file", help="Path to the edited translation file.")
    reverse.add_argument(
        "-s",
        "--source-language",
        help="Language of the source document (default: stored or detected).",
    )
    _add_provider_arguments(reverse)
    reverse.add_argument(
        "--workspace",
        help="Workspace root holding the .palimpsest directory (default: current directory).",
    )
    _add_common_arguments(reverse)

    text = subparsers.add_parser("text", help="Translate a piece of text and stream the result.")
    text.add_argument(
        "text",
        nargs="?",
        default="-",
        help="Text to translate, or '-' to read standard input.",
    )
    text.add_argument(
        "-t",
        "--target-language",
        help="Destination language code (default from configuration).",
    )
    _add_provider_arguments(text)
    _add_common_arguments(text)

    check = subparsers.add_parser("check", help="Report the size and structure of a document.")
    check.add_argument("input_file", help="Path to the markdown file to inspect.")
    _add_common_arguments(check)

    return parser


def configure_logging(verbose: bool, level_name: str | None = None, provider_debug: bool = False) -> None:
    level = logging.INFO if verbose else logging.WARNING
    if level_name:
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    if provider_debug:
        logging.getLogger("palimpsest.providers").setLevel(logging.DEBUG)


def _print_event(event: ProgressEvent) -> None:
    print(
        f"[{event.phase}] {event.current}/{event.total} {event.message}".rstrip(),
        file=sys.stderr,
    )


def run_with_progress(
    job: Callable[[], T],
    channel: ProgressChannel,
    cancel_token: CancelToken,
    *,
    show_progress: bool,
) -> T:
    """Run ``job`` on a worker thread while this thread drains progress events."""

    outcome: dict = {}

    def _worker() -> None:
        try:
            outcome["value"] = job()
        except Exception as exc:
            outcome["error"] = exc
        finally:
            channel.close()

    worker = threading.Thread(target=_worker, name="palimpsest-worker", daemon=True)
    worker.start()
    try:
        for event in channel:
            if show_progress:
                _print_event(event)
    except KeyboardInterrupt:
        logger.warning("Cancellation requested; waiting for in-flight requests.")
        cancel_token.cancel()
    worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _build_engine(
    settings: PalimpsestConfig,
    *,
    provider: str | None,
    model: str | None,
    target_language: str | None = None,
    concurrency: int | None = None,
    provider_debug: bool = False,
) -> TranslationEngine:
    config = to_engine_config(
        settings,
        provider=provider,
        model=model,
        target_language=target_language,
        max_concurrency=concurrency,
        debug=provider_debug or None,
    )
    return TranslationEngine(config)


def execute_translation(
    *,
    settings: PalimpsestConfig,
    input_file: str,
    target_language: str | None,
    provider: str | None,
    model: str | None,
    concurrency: int | None,
    workspace_root: str | None,
    force: bool,
    detect_language: bool,
    verbose: bool,
    provider_debug: bool,
) -> tuple[int, TranslationSummary | None, str | None]:
    """Execute a forward run and return the exit code, summary, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    if not input_path.is_file():
        return 1, None, f"Input file not found: {input_path}"

    cancel_token = CancelToken()
    channel = ProgressChannel()
    try:
        engine = _build_engine(
            settings,
            provider=provider,
            model=model,
            target_language=target_language,
            concurrency=concurrency,
            provider_debug=provider_debug,
        )
        workspace = Workspace(pathlib.Path(workspace_root or pathlib.Path.cwd()))
        runner = TranslationRunner(
            engine=engine,
            workspace=workspace,
            cancel_token=cancel_token,
            on_event=channel,
        )
        summary = run_with_progress(
            lambda: runner.translate(
                input_path, force=force, detect_language=detect_language
            ),
            channel,
            cancel_token,
            show_progress=verbose,
        )
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)
    except TranslationCancelled:
        return 2, None, "Translation cancelled at your request."
    except FileTooLargeError as exc:
        return 1, None, str(exc)
    except PalimpsestError as exc:
        return 1, None, str(exc)
    except OSError as exc:
        return 1, None, f"Could not access {input_path}: {exc}"

    return 0, summary, None


def execute_reverse(
    *,
    settings: PalimpsestConfig,
    translation_file: str,
    source_language: str | None,
    provider: str | None,
    model: str | None,
    workspace_root: str | None,
    verbose: bool,
    provider_debug: bool,
) -> tuple[int, TranslationSummary | None, str | None]:
    """Execute a reverse run and return the exit code, summary, and message."""

    translation_path = pathlib.Path(translation_file).expanduser().resolve()
    if not translation_path.is_file():
        return 1, None, f"Translation file not found: {translation_path}"

    cancel_token = CancelToken()
    channel = ProgressChannel()
    try:
        engine = _build_engine(
            settings, provider=provider, model=model, provider_debug=provider_debug
        )
        workspace = Workspace(pathlib.Path(workspace_root or pathlib.Path.cwd()))
        runner = TranslationRunner(
            engine=engine,
            workspace=workspace,
            cancel_token=cancel_token,
            on_event=channel,
        )
        summary = run_with_progress(
            lambda: runner.reverse(translation_path, source_language=source_language),
            channel,
            cancel_token,
            show_progress=verbose,
        )
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)
    except TranslationCancelled:
        return 2, None, "Reverse translation cancelled at your request."
    except PalimpsestError as exc:
        return 1, None, str(exc)
    except OSError as exc:
        return 1, None, f"Could not access {translation_path}: {exc}"

    return 0, summary, None


def execute_text(
    *,
    settings: PalimpsestConfig,
    text: str,
    target_language: str | None,
    provider: str | None,
    model: str | None,
    provider_debug: bool,
) -> tuple[int, str | None]:
    """Translate free text, streaming it to stdout as it arrives."""

    cancel_token = CancelToken()

    def _write_chunk(chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    try:
        engine = _build_engine(
            settings,
            provider=provider,
            model=model,
            target_language=target_language,
            provider_debug=provider_debug,
        )
        engine.translate_text(text, on_chunk=_write_chunk, cancel_token=cancel_token)
    except KeyboardInterrupt:
        cancel_token.cancel()
        return 2, "\nTranslation interrupted by user."
    except TranslationCancelled:
        return 2, "\nTranslation cancelled at your request."
    except PalimpsestError as exc:
        return 1, str(exc)

    sys.stdout.write("\n")
    return 0, None


def execute_check(*, settings: PalimpsestConfig, input_file: str) -> tuple[int, str]:
    input_path = pathlib.Path(input_file).expanduser().resolve()
    try:
        content = input_path.read_text(encoding="utf-8")
    except OSError as exc:
        return 1, f"Could not read {input_path}: {exc}"

    segments = Segmenter().segment(content)
    translatable = sum(1 for segment in segments if segment.translatable)
    result = check_size(content, settings.PALIMPSEST_MAX_TOKENS)
    lines = [
        f"  Input file:       {input_path}",
        f"  Segments:         {len(segments)} ({translatable} translatable)",
        f"  Estimated tokens: {result.estimated_tokens} "
        f"(limit {settings.PALIMPSEST_MAX_TOKENS})",
    ]
    if not result.valid:
        lines.append(f"  {result.message}")
        return 1, "\n".join(lines)
    return 0, "\n".join(lines)


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report once processing completes."""

    if summary.up_to_date:
        print("\nNothing to do: translation is already up to date.")
    elif summary.direction == "reverse":
        print("\nSource updated from edited translation.")
    else:
        print("\nTranslation complete.")
    print(f"  Source file:     {summary.source_path}")
    print(f"  Translation:     {summary.output_path}")
    print(
        "  Paragraphs:      "
        f"{summary.changed_paragraphs} translated / {summary.total_paragraphs} total "
        f"({summary.reused_paragraphs} reused)"
    )
    print(
        f"  Provider:        {summary.provider_name}"
        + (f" ({summary.model})" if summary.model else "")
    )
    if summary.source_language:
        print(f"  Source language: {summary.source_language}")
    if summary.direction == "forward":
        print(f"  Target language: {summary.target_language}")
    usage = summary.token_usage
    if usage.total:
        print(
            f"  Tokens:          {usage.total} "
            f"({usage.prompt} prompt, {usage.completion} completion)"
        )
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.error_messages:
        print("  Notes:")
        for message in summary.error_messages:
            print(f"    - {message}")


def _read_text_argument(value: str) -> str:
    if value == "-":
        return sys.stdin.read()
    return value


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        settings = get_settings()
    except TranslationProviderConfigurationError as exc:
        configure_logging(args.verbose)
        print(exc)
        return 1

    provider_debug = bool(args.debug_provider or settings.PALIMPSEST_PROVIDER_DEBUG)
    configure_logging(args.verbose, settings.PALIMPSEST_LOG_LEVEL, provider_debug)

    if args.command == "check":
        exit_code, report = execute_check(settings=settings, input_file=args.input_file)
        print(report)
        return exit_code

    if args.command == "text":
        exit_code, message = execute_text(
            settings=settings,
            text=_read_text_argument(args.text),
            target_language=args.target_language,
            provider=args.provider,
            model=args.model,
            provider_debug=provider_debug,
        )
        if message:
            print(message)
        return exit_code

    if args.command == "reverse":
        exit_code, summary, message = execute_reverse(
            settings=settings,
            translation_file=args.translation_file,
            source_language=args.source_language,
            provider=args.provider,
            model=args.model,
            workspace_root=args.workspace,
            verbose=args.verbose,
            provider_debug=provider_debug,
        )
    else:
        exit_code, summary, message = execute_translation(
            settings=settings,
            input_file=args.input_file,
            target_language=args.target_language,
            provider=args.provider,
            model=args.model,
            concurrency=args.concurrency,
            workspace_root=args.workspace,
            force=args.force,
            detect_language=args.detect_language,
            verbose=args.verbose,
            provider_debug=provider_debug,
        )

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
