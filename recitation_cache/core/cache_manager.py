"""
Offline cache manager.

Single entry point used by the UI layer: it owns the content store, keeps
statistics and readiness in step with every write, merges connectivity
updates and publishes immutable snapshots.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from ..config.settings import Settings
from ..models.records import (
    AudioKey,
    AudioRecord,
    CacheKey,
    CacheRecord,
    CacheSnapshot,
    CacheStats,
    ConnectivityState,
    RecordKind,
    StoreChange,
    VerseKey,
    VerseRecord,
)
from ..utils.formatting import format_cache_size
from ..utils.logger import get_logger
from ..utils.observers import Subscribers, Unsubscribe
from .connectivity import ConnectivityMonitor, HttpConnectivityProbe, init_monitor
from .content_store import ContentStore, KeyListing
from .exceptions import CacheError, InvalidArgumentError, StatsDriftError
from .readiness import CompletenessPolicy, MinimumVersesPolicy, OfflineReadinessTracker
from .stats import CacheStatsAggregator

logger = get_logger(__name__)


class OfflineCacheManager:
    """
    Facade over the offline cache components.

    Mutations (cache_verse, cache_audio, cache_surah, evict, clear) are
    serialized and always update the store, then the statistics, then the
    readiness state. Readers get CacheSnapshot objects that reflect either
    the state before or after a mutation, never a mix.

    Example:
        >>> monitor = ConnectivityMonitor()
        >>> store = ContentStore(tmp_path / "cache.db")
        >>> with OfflineCacheManager(store, monitor) as manager:
        ...     manager.cache_verse(VerseRecord(surah=1, ayah=1, translation_id="quran-uthmani", text="..."))
        ...     manager.snapshot().to_dict()
    """

    def __init__(
        self,
        store: ContentStore,
        monitor: ConnectivityMonitor,
        policy: Optional[CompletenessPolicy] = None,
        verify_every: int = 500,
    ):
        """
        Initialize cache manager.

        Args:
            store: Content store, owned by the manager from now on
            monitor: Connectivity monitor to observe
            policy: Completeness policy for readiness (defaults to one verse)
            verify_every: Mutations between full statistics recounts (0 disables)
        """
        self._store = store
        self._monitor = monitor
        self._stats = CacheStatsAggregator(store, verify_every=verify_every)
        self._readiness = OfflineReadinessTracker(
            policy=policy,
            stats=self._stats.stats(),
            surah_counts=self._stats.surah_counts(),
        )

        # One mutation at a time; the state lock only guards in-memory state
        self._mutation_lock = threading.Lock()
        self._state_lock = threading.RLock()

        # Held while handlers run so snapshots are delivered in publication order
        self._delivery_lock = threading.RLock()

        self._subscribers: Subscribers[CacheSnapshot] = Subscribers("snapshot")
        self._is_online = monitor.is_online
        self._snapshot = self._build_snapshot()
        self._delivered: Optional[CacheSnapshot] = self._snapshot
        self._closed = False
        self.integrity_error: Optional[StatsDriftError] = None

        self._unsubscribe_monitor = monitor.on_change(self._on_connectivity_change)

        logger.info(
            f"Offline cache manager ready "
            f"(policy: {self._readiness.policy.describe()}, online: {self._is_online})"
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        monitor: Optional[ConnectivityMonitor] = None,
        policy: Optional[CompletenessPolicy] = None,
    ) -> OfflineCacheManager:
        """
        Build a manager from application settings.

        Args:
            settings: Settings (defaults to environment/config file)
            monitor: Connectivity monitor (defaults to the process-wide one)
            policy: Completeness policy (defaults to settings.readiness_min_verses)

        Returns:
            Configured cache manager
        """
        settings = settings or Settings()
        store = ContentStore(
            db_path=settings.database_path,
            audio_dir=settings.audio_directory,
            capacity_bytes=settings.capacity_bytes,
        )
        if monitor is None:
            monitor = init_monitor(
                probe=HttpConnectivityProbe(
                    url=settings.connectivity_probe_url,
                    timeout=settings.connectivity_timeout_seconds,
                ),
                interval=settings.connectivity_interval_seconds,
            )
        return cls(
            store=store,
            monitor=monitor,
            policy=policy or MinimumVersesPolicy(settings.readiness_min_verses),
            verify_every=settings.verify_every,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def store(self) -> ContentStore:
        return self._store

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def readiness(self) -> OfflineReadinessTracker:
        return self._readiness

    @property
    def stats_aggregator(self) -> CacheStatsAggregator:
        return self._stats

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _build_snapshot(self) -> CacheSnapshot:
        stats = self._stats.stats()
        return CacheSnapshot(
            is_online=self._is_online,
            is_offline_ready=self._readiness.is_ready() and stats.verses > 0,
            cache_stats=stats,
        )

    def _refresh_snapshot(self) -> Optional[CacheSnapshot]:
        """Rebuild the published snapshot; return it only if it changed."""
        snapshot = self._build_snapshot()
        if snapshot == self._snapshot:
            return None
        self._snapshot = snapshot
        return snapshot

    def _publish(self, snapshot: Optional[CacheSnapshot]) -> None:
        """Deliver the latest snapshot, skipping it if a racing publisher already did."""
        if snapshot is None:
            return
        with self._delivery_lock:
            with self._state_lock:
                latest = self._snapshot
            if latest is self._delivered:
                return
            self._delivered = latest
            self._subscribers.notify(latest)

    def snapshot(self) -> CacheSnapshot:
        """
        Current state for the UI.

        Returns:
            Immutable snapshot of connectivity, readiness and statistics
        """
        with self._state_lock:
            return self._snapshot

    def stats(self) -> CacheStats:
        return self.snapshot().cache_stats

    @property
    def is_online(self) -> bool:
        return self.snapshot().is_online

    @property
    def is_offline_ready(self) -> bool:
        return self.snapshot().is_offline_ready

    def subscribe(self, handler: Callable[[CacheSnapshot], None]) -> Unsubscribe:
        """
        Register a handler called with every new snapshot.

        Snapshots are delivered one at a time in publication order; a
        snapshot superseded before delivery is skipped. Handlers must not
        mutate the cache.

        Returns:
            Callable that removes the handler again
        """
        return self._subscribers.subscribe(handler)

    def unsubscribe(self, handler: Callable[[CacheSnapshot], None]) -> None:
        self._subscribers.unsubscribe(handler)

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        # Notifications from racing reports can arrive out of order; the monitor's state is authoritative
        with self._state_lock:
            self._is_online = self._monitor.is_online
            snapshot = self._refresh_snapshot()
        self._publish(snapshot)

    @staticmethod
    def format_cache_size(num_bytes: int) -> str:
        """Human-readable size, e.g. "5.5 KB"."""
        return format_cache_size(num_bytes)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise CacheError("Cache manager is closed")

    def _write(self, records: List[CacheRecord]) -> List[StoreChange]:
        """Store records, then fold the changes into stats and readiness."""
        with self._mutation_lock:
            self._ensure_open()

            with self._state_lock:
                self._readiness.begin_write()
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)

            try:
                changes = self._store.put_many(records)
            except Exception:
                with self._state_lock:
                    self._readiness.abort_write()
                    snapshot = self._refresh_snapshot()
                self._publish(snapshot)
                raise

            drift: Optional[StatsDriftError] = None
            with self._state_lock:
                try:
                    stats = self._stats.apply_many(changes)
                except StatsDriftError as e:
                    drift = e
                    self._readiness.abort_write()
                else:
                    self._readiness.complete_write(stats, self._stats.surah_counts())
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)

            if drift is not None:
                self.integrity_error = drift
                raise drift

            self._maybe_verify()
            return changes

    def _maybe_verify(self) -> None:
        """Run the periodic recount; drift is recorded and logged, not corrected."""
        if not self._stats.verification_due:
            return
        try:
            self._stats.verify()
        except StatsDriftError as e:
            self.integrity_error = e

    def cache_verse(self, record: VerseRecord) -> StoreChange:
        """
        Cache one verse.

        Args:
            record: Verse record to store

        Returns:
            Effect of the write on counts and size (zero if already cached)

        Raises:
            InvalidArgumentError: If record is not a VerseRecord
            StorageFullError: If the verse does not fit; nothing changes
        """
        if not isinstance(record, VerseRecord):
            raise InvalidArgumentError(f"Expected VerseRecord, got {type(record).__name__}")
        change = self._write([record])[0]
        logger.debug(f"Cached verse {record.key.storage_key} ({record.size_bytes} bytes)")
        return change

    def cache_audio(self, record: AudioRecord) -> StoreChange:
        """
        Cache one recitation clip.

        Raises:
            InvalidArgumentError: If record is not an AudioRecord
            StorageFullError: If the clip does not fit; nothing changes
        """
        if not isinstance(record, AudioRecord):
            raise InvalidArgumentError(f"Expected AudioRecord, got {type(record).__name__}")
        change = self._write([record])[0]
        logger.debug(f"Cached audio {record.key.storage_key} ({record.size_bytes} bytes)")
        return change

    def cache_surah(
        self,
        surah: int,
        verses: Iterable[Mapping[str, Any]],
        translation_id: str = "quran-uthmani",
    ) -> List[StoreChange]:
        """
        Cache every verse of a surah as one atomic write.

        Args:
            surah: Surah number
            verses: Items with "ayah", "text" and optional "translation"
            translation_id: Edition the texts belong to

        Returns:
            One change per distinct verse

        Raises:
            InvalidArgumentError: If any verse is malformed; nothing is written
            StorageFullError: If the surah does not fit; nothing is written
        """
        try:
            records = [
                VerseRecord(
                    surah=surah,
                    ayah=verse["ayah"],
                    translation_id=translation_id,
                    text=verse["text"],
                    translation=verse.get("translation"),
                )
                for verse in verses
            ]
        except (KeyError, TypeError, ValidationError) as e:
            raise InvalidArgumentError(f"Malformed verse data for surah {surah}: {e}") from e

        if not records:
            return []

        changes = self._write(records)
        logger.info(f"Cached surah {surah}: {len(records)} verses ({translation_id})")
        return changes

    def evict(self, key: CacheKey) -> StoreChange:
        """
        Remove one record; absent keys are a no-op.

        Args:
            key: VerseKey or AudioKey

        Returns:
            Effect on counts and size (zero when nothing was cached)
        """
        if not isinstance(key, (VerseKey, AudioKey)):
            raise InvalidArgumentError(f"Unsupported cache key: {key!r}")

        with self._mutation_lock:
            self._ensure_open()
            change = self._store.delete(key)
            if change.is_noop:
                return change

            with self._state_lock:
                stats = self._stats.apply(change)
                self._readiness.evaluate(stats, self._stats.surah_counts())
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)

            self._maybe_verify()

        logger.debug(f"Evicted {key.storage_key}")
        return change

    def clear(self) -> CacheStats:
        """
        Remove all cached content.

        Returns:
            Statistics of the removed content
        """
        with self._mutation_lock:
            self._ensure_open()
            removed = self._store.clear()

            with self._state_lock:
                stats = self._stats.reset()
                self._readiness.evaluate(stats, {})
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)

        return removed.as_stats()

    def set_policy(self, policy: CompletenessPolicy) -> bool:
        """
        Change the completeness policy.

        Returns:
            Readiness under the new policy
        """
        with self._mutation_lock:
            with self._state_lock:
                ready = self._readiness.set_policy(policy, self._stats.stats(), self._stats.surah_counts())
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)
        return ready

    def verify_integrity(self) -> CacheStats:
        """
        Check running totals and statistics against a full recount.

        Returns:
            Verified statistics

        Raises:
            StatsDriftError: If any total disagrees with stored content
        """
        with self._mutation_lock:
            self._store.verify_totals()
            verified = self._stats.verify()
            self.integrity_error = None
        logger.info(f"Cache integrity verified: {verified}")
        return verified

    def resync(self) -> CacheStats:
        """Rebuild store totals and statistics from stored content, then re-evaluate readiness."""
        with self._mutation_lock:
            self._ensure_open()
            self._store.rebuild_totals()
            stats = self._stats.resync()
            with self._state_lock:
                self._readiness.evaluate(stats, self._stats.surah_counts())
                snapshot = self._refresh_snapshot()
            self._publish(snapshot)
            self.integrity_error = None
        return stats

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: CacheKey) -> Optional[CacheRecord]:
        """Cached record for a key, or None if absent or corrupt."""
        return self._store.get(key)

    def get_cached_verse(
        self,
        surah: int,
        ayah: int,
        translation_id: str = "quran-uthmani",
    ) -> Optional[VerseRecord]:
        return self._store.get(VerseKey.build(surah=surah, ayah=ayah, translation_id=translation_id))

    def get_cached_audio(self, surah: int, ayah: int, reciter_id: str) -> Optional[AudioRecord]:
        return self._store.get(AudioKey.build(surah=surah, ayah=ayah, reciter_id=reciter_id))

    def get_audio_payload(self, key: AudioKey) -> bytes:
        """
        Audio bytes for playback.

        Raises:
            RecordNotFoundError: If no intact audio is cached for the key
        """
        return self._store.read_payload(key)

    def is_surah_cached(self, surah: int, total_verses: int) -> bool:
        """
        Check whether a surah has at least ``total_verses`` cached verse records.

        Args:
            surah: Surah number
            total_verses: Number of verses in the surah
        """
        if total_verses < 1:
            raise InvalidArgumentError(f"total_verses must be positive, got {total_verses}")
        with self._state_lock:
            return self._stats.surah_counts().get(surah, 0) >= total_verses

    def list_keys(self, kind: RecordKind) -> KeyListing:
        return self._store.list_keys(kind)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Detach from the connectivity monitor and close the store."""
        with self._mutation_lock:
            if self._closed:
                return
            self._closed = True
            self._unsubscribe_monitor()
            self._subscribers.clear()
            self._store.close()
        logger.info("Offline cache manager closed")

    def __enter__(self) -> OfflineCacheManager:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
