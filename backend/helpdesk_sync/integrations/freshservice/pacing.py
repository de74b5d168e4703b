"""Client-side throttling knobs for talking to the Freshservice API.

Freshservice enforces a fixed request budget per rolling hour and answers 429
once it is spent. There is no server-side token bucket to lean on, so every
delay the sync engine uses lives here and is injected into the client and the
activity enricher as one value.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class PacingPolicy:
    page_size: int = 100
    page_delay: float = 1.0
    retry_base_delay: float = 5.0
    retry_max_delay: float = 60.0
    retry_attempts: int = 3
    enrich_concurrency: int = 5
    enrich_stagger: float = 0.2
    enrich_chunk_pause: float = 1.1
    requester_delay: float = 1.1
    csat_delay: float = 0.1
    progress_every_pages: int = 10
    progress_every_items: int = 5

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.enrich_concurrency < 1:
            raise ValueError("enrich_concurrency must be at least 1")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base, 2x base, 4x base, ..."""
        delay = self.retry_base_delay * (2 ** max(0, attempt - 1))
        return min(delay, self.retry_max_delay)

    def with_concurrency(self, concurrency: int | None) -> PacingPolicy:
        if not concurrency:
            return self
        return replace(self, enrich_concurrency=max(1, int(concurrency)))


# Scoped resyncs fan out wider but rest longer between chunks.
SCOPED_RANGE_CONCURRENCY = 10
SCOPED_RANGE_CHUNK_PAUSE = 3.0


def scoped_range_policy(base: PacingPolicy, concurrency: int | None = None) -> PacingPolicy:
    return replace(
        base,
        enrich_concurrency=max(1, int(concurrency or SCOPED_RANGE_CONCURRENCY)),
        enrich_chunk_pause=max(base.enrich_chunk_pause, SCOPED_RANGE_CHUNK_PAUSE),
    )

# Pickup-time backfill keeps the sync stagger but only pauses briefly between chunks.
BACKFILL_CHUNK_PAUSE = 0.3


def backfill_policy(base: PacingPolicy, concurrency: int | None = None) -> PacingPolicy:
    return replace(base.with_concurrency(concurrency), enrich_chunk_pause=BACKFILL_CHUNK_PAUSE)
