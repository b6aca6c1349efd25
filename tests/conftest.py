from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

import pytest

from palimpsest.cancellation import CancelToken
from palimpsest.configuration import reset_config_cache
from palimpsest.policy import RetryPolicy
from palimpsest.providers import ChunkSink, TranslationProvider
from palimpsest.structures import EngineConfig, ProviderConfig, TokenUsage, TranslationResult


class ScriptedProvider(TranslationProvider):
    """Deterministic provider that records every call it receives."""

    name = "scripted"

    def __init__(
        self,
        *,
        transform: Optional[Callable[[str, str], str]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, List[BaseException]]] = None,
        language: str = "en",
        usage: TokenUsage = TokenUsage(prompt=10, completion=5, total=15),
    ) -> None:
        self.transform = transform or (lambda text, lang: f"[{lang}] {text}")
        self.delays = delays or {}
        self.failures = {key: list(value) for key, value in (failures or {}).items()}
        self.language = language
        self.usage = usage
        self.calls: List[str] = []
        self.targets: List[str] = []
        self.detections: List[str] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def translate(
        self,
        text: str,
        *,
        target_language: str,
        system_instructions: str,
        cancel_token: Optional[CancelToken] = None,
        on_chunk: Optional[ChunkSink] = None,
    ) -> TranslationResult:
        with self._lock:
            self.calls.append(text)
            self.targets.append(target_language)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            pending = self.failures.get(text)
            failure = pending.pop(0) if pending else None
        try:
            delay = self.delays.get(text)
            if delay:
                time.sleep(delay)
            if failure is not None:
                raise failure
            translated = self.transform(text, target_language)
            if on_chunk is not None:
                on_chunk(translated)
            return TranslationResult(text=translated, usage=self.usage)
        finally:
            with self._lock:
                self._in_flight -= 1

    def detect_language(self, sample: str) -> str:
        self.detections.append(sample)
        return self.language


class RecordingSleeper:
    """Stands in for the retry sleep; never actually waits."""

    def __init__(self, cancel_after: Optional[int] = None) -> None:
        self.delays: List[float] = []
        self.cancel_after = cancel_after

    def __call__(self, seconds: float, cancel_token: Optional[CancelToken]) -> bool:
        self.delays.append(seconds)
        return self.cancel_after is not None and len(self.delays) >= self.cancel_after


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def make_provider() -> Callable[..., ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def make_sleeper() -> Callable[..., RecordingSleeper]:
    return RecordingSleeper


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_policy(sleeper: RecordingSleeper) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, sleep=sleeper)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        provider=ProviderConfig(provider="echo"),
        target_language="fr",
        max_concurrency=3,
    )


@pytest.fixture(autouse=True)
def _clear_config_cache():
    reset_config_cache()
    yield
    reset_config_cache()
