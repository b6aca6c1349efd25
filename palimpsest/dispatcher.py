"""Bounded concurrent execution of translation units."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

from .cancellation import CancelToken
from .policy import RetryPolicy
from .structures import TranslationResult, TranslationUnit

logger = logging.getLogger(__name__)

TranslateOne = Callable[[str, CancelToken], TranslationResult]
ProgressCallback = Callable[[int, int], None]

DEFAULT_CONCURRENCY = 3


def _batched(units: Sequence[TranslationUnit], size: int) -> List[Sequence[TranslationUnit]]:
    return [units[start:start + size] for start in range(0, len(units), size)]


def dispatch(
    units: Sequence[TranslationUnit],
    translate_one: TranslateOne,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    cancel_token: Optional[CancelToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> List[TranslationResult]:
    """Translate ``units`` in batches of ``concurrency`` and keep input order.

    Each batch is awaited completely before the next one starts, so at most
    ``concurrency`` calls are ever in flight. Cancellation is checked before
    every batch. The first failure aborts the dispatch; the rest of its batch
    is allowed to finish but those results are dropped.
    """

    if not units:
        return []

    width = max(1, concurrency)
    token = cancel_token or CancelToken()
    policy = retry_policy or RetryPolicy()
    total = len(units)
    results: List[Optional[TranslationResult]] = [None] * total
    completed = 0

    def _run(unit: TranslationUnit) -> TranslationResult:
        return policy.run(lambda: translate_one(unit.text, token), token)

    with ThreadPoolExecutor(max_workers=width, thread_name_prefix="palimpsest") as executor:
        offset = 0
        for batch_number, batch in enumerate(_batched(units, width), start=1):
            token.raise_if_cancelled()
            logger.debug(
                "Dispatching batch %s (%s units, %s/%s done).",
                batch_number,
                len(batch),
                completed,
                total,
            )

            futures: Dict[Future, int] = {
                executor.submit(_run, unit): offset + position
                for position, unit in enumerate(batch)
            }
            for future in as_completed(futures):
                slot = futures[future]
                # Raises the unit's error; the executor still drains the batch.
                results[slot] = future.result()
                completed += 1
                if on_progress is not None:
                    on_progress(completed, total)
            offset += len(batch)

    return [result for result in results if result is not None]
