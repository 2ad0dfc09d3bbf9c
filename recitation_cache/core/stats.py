"""
Cache statistics aggregation.

Keeps verse/audio counts, total size and per-surah verse counts in lockstep
with content store mutations, and periodically checks them against a full
recount.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from typing import Dict, Iterable, Mapping

from ..models.records import CacheStats, RecordKind, StoreChange
from ..utils.logger import get_logger
from .content_store import ContentStore
from .exceptions import InvalidArgumentError, StatsDriftError

logger = get_logger(__name__)


class CacheStatsAggregator:
    """
    Derive CacheStats from a ContentStore.

    Counters are updated incrementally through apply(); every
    ``verify_every`` applied changes they are compared with a full recount.
    Drift raises StatsDriftError and is left for the caller to handle
    (typically by calling resync()).
    """

    def __init__(self, store: ContentStore, verify_every: int = 500):
        """
        Initialize aggregator from the store's current contents.

        Args:
            store: Content store to observe
            verify_every: Number of applied changes between full recounts (0 disables)
        """
        if verify_every < 0:
            raise InvalidArgumentError(f"verify_every cannot be negative: {verify_every}")

        self.store = store
        self.verify_every = verify_every
        self._since_verify = 0
        self._stats = CacheStats()
        self._surah_counts: Dict[int, int] = {}
        self.resync()

    def stats(self) -> CacheStats:
        """Current aggregate statistics."""
        return self._stats

    def surah_counts(self) -> Mapping[int, int]:
        """Verse record counts per surah (copy)."""
        return dict(self._surah_counts)

    def apply(self, change: StoreChange) -> CacheStats:
        """
        Fold one store change into the counters.

        Args:
            change: Change returned by a store mutation

        Returns:
            Updated statistics
        """
        return self.apply_many([change])

    def apply_many(self, changes: Iterable[StoreChange]) -> CacheStats:
        """Fold several store changes into the counters."""
        verses, audio, size = self._stats.verses, self._stats.audio, self._stats.size
        surah_counts = dict(self._surah_counts)
        applied = 0

        for change in changes:
            if change.is_noop:
                continue
            applied += 1
            size += change.size_delta
            if change.kind is RecordKind.VERSE:
                verses += change.count_delta
                remaining = surah_counts.get(change.surah, 0) + change.count_delta
                if remaining > 0:
                    surah_counts[change.surah] = remaining
                else:
                    surah_counts.pop(change.surah, None)
            else:
                audio += change.count_delta

        if min(verses, audio, size) < 0:
            logger.error(f"Negative cache totals after update: verses={verses}, audio={audio}, size={size}")
            raise StatsDriftError(
                "Cache statistics went negative",
                expected=CacheStats(),
                actual=(verses, audio, size),
            )

        self._stats = CacheStats(verses=verses, audio=audio, size=size)
        self._surah_counts = surah_counts
        self._since_verify += applied
        return self._stats

    def reset(self) -> CacheStats:
        """Zero every counter, used after the store has been cleared."""
        self._stats = CacheStats()
        self._surah_counts = {}
        self._since_verify = 0
        return self._stats

    @property
    def verification_due(self) -> bool:
        return bool(self.verify_every) and self._since_verify >= self.verify_every

    def verify(self) -> CacheStats:
        """
        Compare the counters with a full recount of the store.

        Returns:
            The verified statistics

        Raises:
            StatsDriftError: If the counters disagree with the stored content
        """
        recounted = self.store.recount().as_stats()
        surah_counts = self.store.surah_counts()
        self._since_verify = 0

        if recounted != self._stats or surah_counts != self._surah_counts:
            logger.error(f"Cache statistics drifted: tracked={self._stats}, recount={recounted}")
            raise StatsDriftError(
                f"Tracked statistics {self._stats} do not match stored content {recounted}",
                expected=self._stats,
                actual=recounted,
            )

        logger.debug(f"Cache statistics verified: {recounted}")
        return recounted

    def resync(self) -> CacheStats:
        """Discard the counters and recompute them from the store."""
        self._stats = self.store.recount().as_stats()
        self._surah_counts = self.store.surah_counts()
        self._since_verify = 0
        logger.debug(f"Cache statistics recomputed: {self._stats}")
        return self._stats
