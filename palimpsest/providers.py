"""Translation provider abstractions."""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from openai import AzureOpenAI, OpenAI

from .cancellation import CancelToken
from .errors import (
    ErrorCategory,
    TranslationCancelled,
    TranslationError,
    TranslationProviderConfigurationError,
    classify_error,
)
from .policy import RetryPolicy
from .structures import GlossaryEntry, ProviderConfig, TokenUsage, TranslationResult

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], None]

DEFAULT_MODEL = "gpt-4o-mini"
OLLAMA_BASE_URL = "http://localhost:11434/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DETECTION_SAMPLE_CHARS = 500

DETECTION_PROMPT = (
    "You are a language detection expert. Detect the primary language of the "
    "given text and respond with ONLY the language code (e.g., \"en\" for English, "
    "\"zh-CN\" for Simplified Chinese, \"ja\" for Japanese, \"ko\" for Korean, "
    "\"fr\" for French, \"de\" for German, \"es\" for Spanish, etc.). "
    "Do not include any other text or explanation."
)


def build_system_prompt(
    target_language: str,
    glossary: Optional[Sequence[GlossaryEntry]] = None,
) -> str:
    """Instructions sent with every translation request."""

    prompt = (
        "You are a professional technical translator. Translate the markdown "
        f"content to {target_language}.\n\n"
        "CRITICAL RULES:\n"
        "1. DO NOT translate code blocks (content within ``` fences)\n"
        "2. DO NOT translate inline code (content within single backticks)\n"
        "3. DO NOT translate frontmatter keys (YAML keys in the header)\n"
        "4. DO NOT translate HTML attributes\n"
        "5. Keep placeholders such as __PROTECTED_x_0__ exactly as written\n"
        "6. DO NOT add any explanations or extra content\n"
        "7. Maintain original formatting strictly (line breaks, indentation, "
        "lists, headers)\n"
        "8. Only output the translated markdown, nothing else"
    )
    if glossary:
        lines = [
            f'- "{entry.source}" -> "{entry.target}"'
            + (" (case-sensitive)" if entry.case_sensitive else "")
            for entry in glossary
        ]
        prompt += (
            "\n\nGLOSSARY - Use these exact translations for the following terms:\n"
            + "\n".join(lines)
        )
    return prompt


class TranslationProvider(ABC):
    """Abstract adapter for translation providers."""

    name = "abstract"

    @abstractmethod
    def translate(
        self,
        text: str,
        *,
        target_language: str,
        system_instructions: str,
        cancel_token: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkSink] = None,
    ) -> TranslationResult:
        """Translate ``text`` and report the tokens spent."""

    @abstractmethod
    def detect_language(self, sample: str) -> str:
        """Return a language code for ``sample``."""


class EchoTranslationProvider(TranslationProvider):
    """A provider that returns the original text (useful for testing)."""

    name = "echo"

    def __init__(self, *, language: str = "en") -> None:
        self.language = language

    def translate(
        self,
        text: str,
        *,
        target_language: str,
        system_instructions: str,
        cancel_token: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkSink] = None,
    ) -> TranslationResult:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if on_chunk is not None:
            on_chunk(text)
        return TranslationResult(text=text)

    def detect_language(self, sample: str) -> str:
        return self.language


class OpenAITranslationProvider(TranslationProvider):
    """Translation provider that uses OpenAI-compatible chat models."""

    name = "openai"

    def __init__(self, config: ProviderConfig, *, client: Any = None) -> None:
        self.config = config
        self.debug = config.debug
        self.provider_kind = normalise_provider_name(config.provider)
        if client is not None:
            self._client = client
            self._default_model = config.model or DEFAULT_MODEL
        else:
            self._client, self._default_model = self._build_client()

    @property
    def model(self) -> str:
        return self.config.model or self._default_model

    def _build_client(self) -> Tuple[Any, str]:
        if self.provider_kind == "azure_openai":
            return self._build_azure_client()
        if self.provider_kind == "ollama":
            return (
                OpenAI(api_key="ollama", base_url=self.config.base_url or OLLAMA_BASE_URL),
                self.config.model or DEFAULT_MODEL,
            )
        if self.provider_kind == "openrouter":
            self._require_api_key("OPENROUTER_API_KEY")
            return (
                OpenAI(
                    api_key=self.config.api_key,
                    base_url=self.config.base_url or OPENROUTER_BASE_URL,
                ),
                self.config.model or DEFAULT_MODEL,
            )

        self._require_api_key("OPENAI_API_KEY")
        client = OpenAI(api_key=self.config.api_key, base_url=self.config.base_url or None)
        return client, self.config.model or DEFAULT_MODEL

    def _build_azure_client(self) -> Tuple[Any, str]:
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": self.config.api_key,
                "AZURE_OPENAI_ENDPOINT": self.config.base_url,
                "AZURE_OPENAI_API_VERSION": self.config.api_version,
                "AZURE_OPENAI_DEPLOYMENT_NAME": self.config.model,
            }.items()
            if not value
        ]
        if missing:
            raise TranslationProviderConfigurationError(
                "Azure OpenAI configuration incomplete. Please set: "
                + ", ".join(missing)
                + "."
            )

        client = AzureOpenAI(
            api_key=self.config.api_key,
            api_version=self.config.api_version,
            azure_endpoint=self.config.base_url,
        )
        return client, self.config.model  # type: ignore[return-value]

    def _require_api_key(self, setting: str) -> None:
        if not self.config.api_key:
            raise TranslationProviderConfigurationError(
                f"{self.provider_kind} configuration missing. Set {setting} or choose a "
                "different provider."
            )

    def translate(
        self,
        text: str,
        *,
        target_language: str,
        system_instructions: str,
        cancel_token: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkSink] = None,
    ) -> TranslationResult:
        messages = [
            {"role": "system", "content": system_instructions},
            {
                "role": "user",
                "content": f"Translate the following markdown:\n\n{text}",
            },
        ]
        self._log_debug("provider.request.messages", messages)

        if on_chunk is not None:
            translated, usage = self._stream(messages, cancel_token, on_chunk)
        else:
            translated, usage = self._complete(messages)

        if not translated.strip():
            raise TranslationError(
                "Translation provider response empty or unrecognised.",
                ErrorCategory.INVALID_RESPONSE,
            )
        if not text.lstrip().startswith(("```", "~~~")):
            translated = self._strip_code_fence(translated)
        result = TranslationResult(text=translated.strip("\r\n"), usage=usage)
        self._log_debug("provider.response.text", result.text)
        return result

    def detect_language(self, sample: str) -> str:
        messages = [
            {"role": "system", "content": DETECTION_PROMPT},
            {
                "role": "user",
                "content": "Detect the language of this text:\n\n"
                + sample[:DETECTION_SAMPLE_CHARS],
            },
        ]
        content, _ = self._complete(messages)
        language = content.strip().strip('"').strip()
        if not language:
            raise TranslationError(
                "Language detection returned no result.",
                ErrorCategory.INVALID_RESPONSE,
            )
        return language

    def _complete(self, messages: List[Dict[str, str]]) -> Tuple[str, TokenUsage]:
        """Call the Chat Completions API and return text plus usage."""

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=messages,
            )
        except Exception as exc:
            raise classify_error(exc) from exc
        self._log_debug("provider.response.raw", self._safe_dump_response(response))

        content: Optional[str] = None
        for choice in getattr(response, "choices", None) or []:
            message = getattr(choice, "message", None)
            message_content = getattr(message, "content", None) if message else None
            if isinstance(message_content, list):
                parts = [
                    str(part.get("text") if isinstance(part, dict) else getattr(part, "text", ""))
                    for part in message_content
                ]
                message_content = "".join(part for part in parts if part)
            if message_content:
                content = str(message_content)
                break

        if content is None:
            raise TranslationError(
                "Translation provider response empty or unrecognised.",
                ErrorCategory.INVALID_RESPONSE,
            )
        return content, self._convert_usage(getattr(response, "usage", None))

    def _stream(
        self,
        messages: List[Dict[str, str]],
        cancel_token: Optional[CancelToken],
        on_chunk: ChunkSink,
    ) -> Tuple[str, TokenUsage]:
        """Stream a completion, forwarding text deltas as they arrive."""

        try:
            stream = self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
            )
        except Exception as exc:
            raise classify_error(exc) from exc

        pieces: List[str] = []
        usage = TokenUsage()
        try:
            for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    raise TranslationCancelled()
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage is not None:
                    usage = self._convert_usage(chunk_usage)
                for choice in getattr(chunk, "choices", None) or []:
                    delta = getattr(choice, "delta", None)
                    piece = getattr(delta, "content", None) if delta else None
                    if piece:
                        pieces.append(piece)
                        on_chunk(piece)
        except TranslationCancelled:
            raise
        except Exception as exc:
            raise classify_error(exc) from exc
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
        return "".join(pieces), usage

    @staticmethod
    def _convert_usage(usage: Any) -> TokenUsage:
        if usage is None:
            return TokenUsage()
        return TokenUsage.from_counts(
            getattr(usage, "prompt_tokens", 0),
            getattr(usage, "completion_tokens", 0),
            getattr(usage, "total_tokens", None),
        )

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        try:
            if isinstance(payload, (dict, list)):
                message = json.dumps(payload, ensure_ascii=False, indent=2)
            else:
                message = str(payload)
        except (TypeError, ValueError):
            message = repr(payload)
        logger.debug("[provider-debug] %s:\n%s", label, message)

    def _safe_dump_response(self, response: Any) -> Any:
        """Best-effort conversion of SDK objects into JSON-friendly data."""

        dump = getattr(response, "model_dump", None)
        if callable(dump):
            try:
                return dump()
            except (TypeError, ValueError):
                pass
        return str(response)

    def _strip_code_fence(self, text: str) -> str:
        """Remove a markdown fence the model wrapped around its whole answer."""

        stripped = text.strip()
        if not stripped.startswith("```") or not stripped.endswith("```"):
            return text

        first_newline = stripped.find("\n")
        if first_newline == -1:
            return text
        body = stripped[first_newline + 1:]
        closing_index = body.rfind("```")
        if closing_index != -1:
            body = body[:closing_index]
        return body.strip("\n")


class LanguageDetector:
    """Caches language detection per key for a bounded time."""

    TTL_SECONDS = 24 * 60 * 60

    def __init__(
        self,
        provider: TranslationProvider,
        *,
        ttl: float = TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.provider = provider
        self.ttl = ttl
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def detect(
        self,
        text: str,
        *,
        cache_key: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        if cache_key is not None:
            with self._lock:
                self._evict_expired()
                cached = self._cache.get(cache_key)
            if cached is not None:
                return cached[0]

        sample = text[:DETECTION_SAMPLE_CHARS]
        language = self.retry_policy.run(
            lambda: self.provider.detect_language(sample), cancel_token
        )

        if cache_key is not None:
            with self._lock:
                self._cache[cache_key] = (language, self.clock())
        return language

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _evict_expired(self) -> None:
        # Caller holds the lock.
        now = self.clock()
        stale = [key for key, (_, stored) in self._cache.items() if now - stored >= self.ttl]
        for key in stale:
            del self._cache[key]


_PROVIDER_SYNONYMS = {
    "gpt": "openai",
    "default": "openai",
    "azure_open_ai": "azure_openai",
    "azureopenai": "azure_openai",
    "azure": "azure_openai",
    "noop": "echo",
    "mock": "echo",
}

OPENAI_COMPATIBLE = frozenset({"openai", "azure_openai", "ollama", "openrouter"})
KNOWN_PROVIDERS = OPENAI_COMPATIBLE | {"echo"}


def normalise_provider_name(name: Optional[str]) -> str:
    normalized = (name or "openai").strip().lower().replace("-", "_")
    return _PROVIDER_SYNONYMS.get(normalized, normalized)


def build_provider(config: ProviderConfig, *, client: Any = None) -> TranslationProvider:
    """Factory to create providers from an explicit configuration."""

    normalized = normalise_provider_name(config.provider)
    if normalized in OPENAI_COMPATIBLE:
        return OpenAITranslationProvider(config, client=client)
    if normalized == "echo":
        return EchoTranslationProvider()
    raise TranslationProviderConfigurationError(
        f"Unknown translation provider '{config.provider}'."
    )
