"""
Offline readiness tracking.

Decides when the cached content is complete enough to call the application
usable offline. The decision itself is delegated to a completeness policy so
the threshold stays configurable.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Mapping, Optional

from ..models.records import CacheStats, ReadinessState
from ..utils.logger import get_logger
from ..utils.observers import Subscribers, Unsubscribe
from .exceptions import CacheError, InvalidArgumentError

logger = get_logger(__name__)


class CompletenessPolicy(ABC):
    """Rule deciding whether cached content is sufficient for offline use."""

    @abstractmethod
    def is_satisfied(self, stats: CacheStats, surah_counts: Mapping[int, int]) -> bool:
        """
        Check the policy against committed cache statistics.

        Args:
            stats: Aggregate cache statistics
            surah_counts: Cached verse records per surah

        Returns:
            True if the cache counts as ready
        """

    def describe(self) -> str:
        return type(self).__name__


class MinimumVersesPolicy(CompletenessPolicy):
    """Ready once at least ``min_verses`` verse records are cached."""

    def __init__(self, min_verses: int = 1):
        if min_verses < 1:
            raise InvalidArgumentError(f"min_verses must be at least 1, got {min_verses}")
        self.min_verses = min_verses

    def is_satisfied(self, stats: CacheStats, surah_counts: Mapping[int, int]) -> bool:
        return stats.verses >= self.min_verses

    def describe(self) -> str:
        return f"at least {self.min_verses} verse(s) cached"


class SurahCoveragePolicy(CompletenessPolicy):
    """
    Ready once each listed surah has all of its verses cached.

    Example:
        >>> policy = SurahCoveragePolicy({1: 7, 112: 4})
    """

    def __init__(self, required: Mapping[int, int]):
        if not required:
            raise InvalidArgumentError("SurahCoveragePolicy needs at least one surah")
        for surah, total in required.items():
            if surah < 1 or total < 1:
                raise InvalidArgumentError(f"Invalid surah requirement {surah}: {total}")
        self.required: Dict[int, int] = dict(required)

    def is_satisfied(self, stats: CacheStats, surah_counts: Mapping[int, int]) -> bool:
        return all(surah_counts.get(surah, 0) >= total for surah, total in self.required.items())

    def describe(self) -> str:
        surahs = ", ".join(str(s) for s in sorted(self.required))
        return f"surah(s) {surahs} fully cached"


class OfflineReadinessTracker:
    """
    State machine behind the ``is_offline_ready`` flag.

    States:
        NOT_READY: nothing cached yet and no caching started
        SYNCING_INITIAL: caching in progress, or content below the threshold
        READY: the completeness policy holds and no write is in flight

    Transitions are synchronous; handlers registered with subscribe() are
    told about every change of is_ready() exactly once.
    """

    def __init__(
        self,
        policy: Optional[CompletenessPolicy] = None,
        stats: Optional[CacheStats] = None,
        surah_counts: Optional[Mapping[int, int]] = None,
    ):
        """
        Initialize tracker, starting READY if persisted content already satisfies the policy.

        Args:
            policy: Completeness policy (defaults to one cached verse)
            stats: Statistics of content already in the store
            surah_counts: Per-surah verse counts of content already in the store
        """
        self.policy = policy or MinimumVersesPolicy()
        self._lock = threading.Lock()
        self._writes_in_flight = 0
        self._pre_write_state: Optional[ReadinessState] = None
        self._subscribers: Subscribers[bool] = Subscribers("readiness")

        stats = stats or CacheStats()
        if self.policy.is_satisfied(stats, surah_counts or {}):
            self._state = ReadinessState.READY
        else:
            self._state = ReadinessState.NOT_READY

    @property
    def state(self) -> ReadinessState:
        with self._lock:
            return self._state

    @property
    def writes_in_flight(self) -> int:
        with self._lock:
            return self._writes_in_flight

    def is_ready(self) -> bool:
        """True iff the tracker is in the READY state."""
        with self._lock:
            return self._state is ReadinessState.READY

    def subscribe(self, handler: Callable[[bool], None]) -> Unsubscribe:
        """Register a handler called with the new readiness on each change."""
        return self._subscribers.subscribe(handler)

    def unsubscribe(self, handler: Callable[[bool], None]) -> None:
        self._subscribers.unsubscribe(handler)

    def _move_to(self, new_state: ReadinessState) -> Optional[bool]:
        """Switch state under the lock; return the new readiness if it flipped."""
        old_state = self._state
        if new_state is old_state:
            return None
        self._state = new_state
        logger.debug(f"Readiness {old_state.value} -> {new_state.value}")
        was_ready = old_state is ReadinessState.READY
        now_ready = new_state is ReadinessState.READY
        return now_ready if was_ready != now_ready else None

    def _publish(self, flipped: Optional[bool]) -> None:
        if flipped is not None:
            logger.info(f"Offline readiness changed: {'ready' if flipped else 'not ready'}")
            self._subscribers.notify(flipped)

    def begin_write(self) -> None:
        """
        Record that a cache write has started.

        Readiness is withheld until the write completes, so partially
        written content is never advertised.
        """
        with self._lock:
            self._writes_in_flight += 1
            if self._writes_in_flight == 1:
                self._pre_write_state = self._state
            flipped = self._move_to(ReadinessState.SYNCING_INITIAL)
        self._publish(flipped)

    def complete_write(self, stats: CacheStats, surah_counts: Mapping[int, int]) -> bool:
        """
        Record a committed write and re-evaluate the policy.

        Args:
            stats: Statistics after the write
            surah_counts: Per-surah counts after the write

        Returns:
            Readiness after the write
        """
        with self._lock:
            self._finish_write()
            flipped = None
            if self._writes_in_flight == 0:
                if self.policy.is_satisfied(stats, surah_counts):
                    flipped = self._move_to(ReadinessState.READY)
                else:
                    flipped = self._move_to(ReadinessState.SYNCING_INITIAL)
            ready = self._state is ReadinessState.READY
        self._publish(flipped)
        return ready

    def abort_write(self) -> None:
        """Record a failed write, restoring the state held before it began."""
        with self._lock:
            self._finish_write()
            flipped = None
            if self._writes_in_flight == 0 and self._pre_write_state is not None:
                flipped = self._move_to(self._pre_write_state)
                self._pre_write_state = None
        self._publish(flipped)

    def _finish_write(self) -> None:
        if self._writes_in_flight == 0:
            raise CacheError("No cache write in flight")
        self._writes_in_flight -= 1

    def evaluate(self, stats: CacheStats, surah_counts: Mapping[int, int]) -> bool:
        """
        Re-check the policy after content was removed or the policy changed.

        A READY cache that drops below the threshold falls back to
        SYNCING_INITIAL.

        Returns:
            Current readiness
        """
        with self._lock:
            flipped = None
            if self._writes_in_flight == 0:
                if self.policy.is_satisfied(stats, surah_counts):
                    flipped = self._move_to(ReadinessState.READY)
                elif self._state is ReadinessState.READY:
                    flipped = self._move_to(ReadinessState.SYNCING_INITIAL)
            ready = self._state is ReadinessState.READY
        self._publish(flipped)
        return ready

    def set_policy(
        self,
        policy: CompletenessPolicy,
        stats: CacheStats,
        surah_counts: Mapping[int, int],
    ) -> bool:
        """Swap the completeness policy and re-evaluate immediately."""
        self.policy = policy
        logger.info(f"Readiness policy set to: {policy.describe()}")
        return self.evaluate(stats, surah_counts)
