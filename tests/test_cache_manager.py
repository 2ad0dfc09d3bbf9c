"""
Integration tests for the offline cache manager.

Tests the facade end to end: ordering of store, statistics and readiness
updates, snapshot isolation under concurrency, connectivity merging and
failure rollback.
"""

import threading
import pytest
from unittest.mock import patch

from sqlalchemy import text

from recitation_cache.core.cache_manager import OfflineCacheManager
from recitation_cache.core.connectivity import ConnectivityMonitor
from recitation_cache.core.content_store import ContentStore
from recitation_cache.core.exceptions import (
    CacheError,
    InvalidArgumentError,
    RecordNotFoundError,
    StatsDriftError,
    StorageFullError,
)
from recitation_cache.core.readiness import MinimumVersesPolicy, SurahCoveragePolicy
from recitation_cache.models.records import (
    AudioKey,
    CacheStats,
    ConnectivityState,
    ReadinessState,
    RecordKind,
    VerseKey,
)

ONLINE = ConnectivityState.ONLINE
OFFLINE = ConnectivityState.OFFLINE


class TestSnapshot:
    """Tests for snapshot contents."""

    def test_initial_snapshot(self, manager):
        snapshot = manager.snapshot()

        assert snapshot.is_online is False
        assert snapshot.is_offline_ready is False
        assert snapshot.cache_stats == CacheStats()

    def test_offline_reading_scenario(self, manager, monitor, make_verse, make_audio):
        """Test three verses and one clip cached while online."""
        monitor.report(ONLINE)

        manager.cache_verse(make_verse(ayah=1, size=100))
        manager.cache_verse(make_verse(ayah=2, size=200))
        manager.cache_verse(make_verse(ayah=3, size=300))
        manager.cache_audio(make_audio(ayah=1, size=5000))

        assert manager.snapshot().to_dict() == {
            "isOnline": True,
            "isOfflineReady": True,
            "cacheStats": {"verses": 3, "audio": 1, "size": 5600},
        }
        assert manager.format_cache_size(manager.stats().size) == "5.5 KB"

    def test_audio_alone_is_not_offline_ready(self, manager, make_audio):
        """Test readiness requires cached verses."""
        manager.cache_audio(make_audio(size=100))

        assert not manager.is_offline_ready
        assert manager.readiness.state is ReadinessState.SYNCING_INITIAL

    def test_connectivity_changes_reflected(self, manager, monitor):
        monitor.report(ONLINE)
        assert manager.is_online

        monitor.report(OFFLINE)
        assert not manager.is_online

    def test_subscribers_receive_snapshots(self, manager, monitor, make_verse):
        received = []
        manager.subscribe(received.append)

        monitor.report(ONLINE)
        manager.cache_verse(make_verse(size=10))

        assert received[0].is_online
        assert received[-1].is_offline_ready
        assert received[-1].cache_stats.verses == 1


class TestSnapshotDelivery:
    """Tests for the order and content of delivered snapshots."""

    def test_racing_connectivity_reports_settle_on_monitor_state(self, data_dir, monitor):
        """Test a reversed notification order cannot leave the snapshot online."""
        def drop_on_other_thread(state):
            if state is ONLINE:
                worker = threading.Thread(target=monitor.report, args=(OFFLINE,))
                worker.start()
                worker.join()

        # Registered first, so the OFFLINE notification overtakes the ONLINE one
        monitor.on_change(drop_on_other_thread)
        manager = OfflineCacheManager(ContentStore(db_path=data_dir / "race.db"), monitor)
        received = []
        manager.subscribe(received.append)

        monitor.report(ONLINE)

        assert monitor.is_online is False
        assert manager.snapshot().is_online is False
        assert all(not snapshot.is_online for snapshot in received)
        manager.close()

    def test_last_delivered_snapshot_is_current(self, manager, monitor):
        """Test subscribers end on the latest state after back-to-back transitions."""
        received = []
        manager.subscribe(received.append)

        def drop_on_other_thread(state):
            if state is ONLINE:
                worker = threading.Thread(target=monitor.report, args=(OFFLINE,))
                worker.start()
                worker.join()

        monitor.on_change(drop_on_other_thread)
        monitor.report(ONLINE)

        assert [snapshot.is_online for snapshot in received] == [True, False]
        assert received[-1] == manager.snapshot()

    def test_recaching_on_ready_cache_flips_readiness_once(self, manager, make_verse):
        """Test an identical write still withholds readiness while in flight."""
        manager.cache_verse(make_verse(size=10))
        received = []
        manager.subscribe(received.append)

        change = manager.cache_verse(make_verse(size=10))

        assert change.is_noop
        assert [snapshot.is_offline_ready for snapshot in received] == [False, True]
        assert all(snapshot.cache_stats == CacheStats(verses=1, size=10) for snapshot in received)

    def test_failed_write_on_ready_cache_flips_readiness_once(self, manager, make_verse):
        manager.cache_verse(make_verse(ayah=1, size=10))
        received = []
        manager.subscribe(received.append)

        with patch.object(manager.store, "put_many", side_effect=StorageFullError(requested=10)):
            with pytest.raises(StorageFullError):
                manager.cache_verse(make_verse(ayah=2, size=10))

        assert [snapshot.is_offline_ready for snapshot in received] == [False, True]
        assert manager.readiness.state is ReadinessState.READY


class TestMutations:
    """Tests for cache_verse, cache_audio, evict and clear."""

    def test_cache_verse_twice_is_idempotent(self, manager, make_verse):
        manager.cache_verse(make_verse(size=100))
        before = manager.snapshot()

        change = manager.cache_verse(make_verse(size=100))

        assert change.is_noop
        assert manager.snapshot() == before

    def test_evict_missing_key_is_noop(self, manager, make_verse):
        manager.cache_verse(make_verse(size=100))
        before = manager.stats()

        change = manager.evict(VerseKey(surah=114, ayah=1, translation_id="quran-uthmani"))

        assert change.is_noop
        assert manager.stats() == before

    def test_evict_last_verse_drops_readiness(self, manager, make_verse):
        record = make_verse(size=100)
        manager.cache_verse(record)
        assert manager.is_offline_ready

        manager.evict(record.key)

        assert manager.stats() == CacheStats()
        assert not manager.is_offline_ready
        assert manager.readiness.state is ReadinessState.SYNCING_INITIAL

    def test_evict_audio(self, manager, make_audio):
        record = make_audio(size=400)
        manager.cache_audio(record)

        manager.evict(record.key)

        assert manager.get(record.key) is None
        assert manager.stats().audio == 0

    def test_clear(self, manager, make_verse, make_audio):
        manager.cache_verse(make_verse(size=100))
        manager.cache_audio(make_audio(size=200))

        removed = manager.clear()

        assert removed == CacheStats(verses=1, audio=1, size=300)
        assert manager.stats() == CacheStats()
        assert not manager.is_offline_ready
        assert manager.readiness.state is ReadinessState.SYNCING_INITIAL

    def test_clear_survives_payload_cleanup_failure(self, manager, make_verse, make_audio):
        """Test statistics and readiness are reset even when payload files cannot be removed."""
        manager.cache_verse(make_verse(size=100))
        manager.cache_audio(make_audio(size=200))

        with patch.object(manager.store.blobs, "clear", side_effect=OSError("directory busy")):
            removed = manager.clear()

        assert removed == CacheStats(verses=1, audio=1, size=300)
        assert manager.stats() == CacheStats()
        assert not manager.is_offline_ready
        manager.verify_integrity()

    def test_wrong_record_types_rejected(self, manager, make_verse, make_audio):
        with pytest.raises(InvalidArgumentError):
            manager.cache_verse(make_audio())

        with pytest.raises(InvalidArgumentError):
            manager.cache_audio(make_verse())

        with pytest.raises(InvalidArgumentError):
            manager.evict("verse:1:1:quran-uthmani")

    def test_reads(self, manager, sample_verse, make_audio):
        audio = make_audio(surah=2, ayah=255, size=32)
        manager.cache_verse(sample_verse)
        manager.cache_audio(audio)

        assert manager.get_cached_verse(2, 255, "fr.hamidullah").text == sample_verse.text
        assert manager.get_cached_verse(2, 255, "en.sahih") is None
        assert manager.get_cached_audio(2, 255, "ar.alafasy").payload == audio.payload
        assert manager.get_audio_payload(audio.key) == audio.payload
        assert [k.storage_key for k in manager.list_keys(RecordKind.AUDIO)] == ["audio:2:255:ar.alafasy"]

    def test_missing_audio_payload_raises(self, manager):
        with pytest.raises(RecordNotFoundError):
            manager.get_audio_payload(AudioKey(surah=1, ayah=1, reciter_id="ar.husary"))


class TestSurahCaching:
    """Tests for whole-surah caching."""

    AL_FATIHA = [{"ayah": n, "text": f"verse {n}", "translation": f"translation {n}"} for n in range(1, 8)]

    def test_cache_surah(self, manager):
        changes = manager.cache_surah(1, self.AL_FATIHA, translation_id="fr.hamidullah")

        assert len(changes) == 7
        assert manager.stats().verses == 7
        assert manager.is_surah_cached(1, 7)
        assert not manager.is_surah_cached(1, 8)
        assert not manager.is_surah_cached(2, 286)

    def test_malformed_surah_writes_nothing(self, manager):
        verses = self.AL_FATIHA[:3] + [{"ayah": 4}]

        with pytest.raises(InvalidArgumentError):
            manager.cache_surah(1, verses)

        assert manager.stats() == CacheStats()
        assert manager.readiness.state is ReadinessState.NOT_READY

    def test_surah_coverage_policy(self, manager):
        manager.set_policy(SurahCoveragePolicy({1: 7}))

        manager.cache_surah(1, self.AL_FATIHA[:6])
        assert not manager.is_offline_ready

        manager.cache_surah(1, self.AL_FATIHA[6:])
        assert manager.is_offline_ready

    def test_empty_surah_is_noop(self, manager):
        assert manager.cache_surah(1, []) == []
        assert manager.readiness.state is ReadinessState.NOT_READY


class TestFailureRollback:
    """Tests that failed mutations leave state untouched."""

    @pytest.fixture
    def small_manager(self, data_dir, monitor):
        store = ContentStore(db_path=data_dir / "small.db", capacity_bytes=1000)
        manager = OfflineCacheManager(store=store, monitor=monitor)
        yield manager
        manager.close()

    def test_storage_full_leaves_snapshot_unchanged(self, small_manager, make_verse, make_audio):
        small_manager.cache_verse(make_verse(size=600))
        before = small_manager.snapshot()
        state_before = small_manager.readiness.state

        with pytest.raises(StorageFullError):
            small_manager.cache_audio(make_audio(size=500))

        assert small_manager.snapshot() == before
        assert small_manager.readiness.state is state_before
        assert small_manager.readiness.writes_in_flight == 0

    def test_first_write_failure_returns_to_not_ready(self, small_manager, make_verse):
        with pytest.raises(StorageFullError):
            small_manager.cache_verse(make_verse(size=2000))

        assert small_manager.readiness.state is ReadinessState.NOT_READY
        assert small_manager.stats() == CacheStats()

    def test_not_ready_while_write_in_flight(self, manager, make_verse):
        manager.cache_verse(make_verse(ayah=1, size=10))
        assert manager.is_offline_ready

        original_put_many = manager.store.put_many
        observed = []

        def observing_put_many(records):
            observed.append(manager.snapshot())
            return original_put_many(records)

        with patch.object(manager.store, "put_many", side_effect=observing_put_many):
            manager.cache_verse(make_verse(ayah=2, size=10))

        assert observed[0].is_offline_ready is False
        assert observed[0].cache_stats == CacheStats(verses=1, size=10)
        assert manager.is_offline_ready

    def test_connectivity_drop_during_completed_write(self, manager, monitor, make_verse):
        monitor.report(ONLINE)
        original_put_many = manager.store.put_many

        def dropping_put_many(records):
            monitor.report(OFFLINE)
            return original_put_many(records)

        with patch.object(manager.store, "put_many", side_effect=dropping_put_many):
            manager.cache_verse(make_verse(size=250))

        snapshot = manager.snapshot()
        assert snapshot.is_online is False
        assert snapshot.cache_stats == CacheStats(verses=1, size=250)
        assert snapshot.is_offline_ready
        manager.verify_integrity()

    def test_connectivity_drop_during_failed_write(self, manager, monitor, make_verse):
        monitor.report(ONLINE)
        manager.cache_verse(make_verse(ayah=1, size=100))

        def failing_put_many(records):
            monitor.report(OFFLINE)
            raise StorageFullError(requested=100)

        with patch.object(manager.store, "put_many", side_effect=failing_put_many):
            with pytest.raises(StorageFullError):
                manager.cache_verse(make_verse(ayah=2, size=100))

        snapshot = manager.snapshot()
        assert snapshot.is_online is False
        assert snapshot.cache_stats == CacheStats(verses=1, size=100)
        assert snapshot.is_offline_ready
        manager.verify_integrity()

    def test_closed_manager_rejects_mutations(self, data_dir, monitor, make_verse):
        manager = OfflineCacheManager(ContentStore(db_path=data_dir / "closed.db"), monitor)
        manager.close()

        with pytest.raises(CacheError):
            manager.cache_verse(make_verse())


class TestConcurrency:
    """Tests for serialized mutations and snapshot isolation."""

    def test_concurrent_writers(self, manager, make_verse):
        errors = []

        def writer(surah):
            try:
                for ayah in range(1, 26):
                    manager.cache_verse(make_verse(surah=surah, ayah=ayah, size=10))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(surah,)) for surah in range(1, 9)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert manager.stats() == CacheStats(verses=200, size=2000)
        assert manager.verify_integrity() == CacheStats(verses=200, size=2000)

    def test_readers_never_see_partial_state(self, manager, make_verse):
        done = threading.Event()
        inconsistent = []

        def reader():
            while not done.is_set():
                snapshot = manager.snapshot()
                stats = snapshot.cache_stats
                if stats.size != stats.verses * 10:
                    inconsistent.append(snapshot)
                if snapshot.is_offline_ready and stats.verses == 0:
                    inconsistent.append(snapshot)

        readers = [threading.Thread(target=reader) for _ in range(3)]
        for thread in readers:
            thread.start()
        try:
            for ayah in range(1, 61):
                manager.cache_verse(make_verse(ayah=ayah, size=10))
            for ayah in range(1, 31):
                manager.evict(make_verse(ayah=ayah).key)
        finally:
            done.set()
            for thread in readers:
                thread.join(timeout=10)

        assert inconsistent == []
        assert manager.stats() == CacheStats(verses=30, size=300)


class TestIntegrityAndLifecycle:
    """Tests for verification, persistence and construction."""

    def test_periodic_verification_records_drift(self, data_dir, monitor, make_verse):
        store = ContentStore(db_path=data_dir / "drift.db")
        manager = OfflineCacheManager(store, monitor, verify_every=1)
        manager.cache_verse(make_verse(ayah=1, size=10))
        assert manager.integrity_error is None

        with store.engine.begin() as conn:
            conn.execute(text("DELETE FROM cached_verses"))
        manager.cache_verse(make_verse(ayah=2, size=10))

        assert isinstance(manager.integrity_error, StatsDriftError)
        assert manager.stats() == CacheStats(verses=2, size=20)

        with pytest.raises(StatsDriftError):
            manager.verify_integrity()

        manager.close()

    def test_drift_while_applying_write_is_published_and_recorded(self, manager, make_verse):
        manager.cache_verse(make_verse(ayah=1, size=10))
        received = []
        manager.subscribe(received.append)
        drift = StatsDriftError("verse count would go negative", expected=0, actual=-1)

        with patch.object(manager.stats_aggregator, "apply_many", side_effect=drift):
            with pytest.raises(StatsDriftError):
                manager.cache_verse(make_verse(ayah=2, size=10))

        assert manager.integrity_error is drift
        assert [snapshot.is_offline_ready for snapshot in received] == [False, True]
        assert received[-1] == manager.snapshot()
        assert manager.readiness.writes_in_flight == 0

    def test_resync_repairs_drift(self, manager, make_verse):
        manager.cache_verse(make_verse(ayah=1, size=10))
        manager.cache_verse(make_verse(ayah=2, size=10))

        with manager.store.engine.begin() as conn:
            conn.execute(text("DELETE FROM cached_verses WHERE ayah = 2"))

        assert manager.resync() == CacheStats(verses=1, size=10)
        assert manager.stats() == CacheStats(verses=1, size=10)
        assert manager.is_offline_ready
        assert manager.integrity_error is None
        assert manager.verify_integrity() == CacheStats(verses=1, size=10)

    def test_state_survives_restart(self, data_dir, make_verse, make_audio):
        store = ContentStore(db_path=data_dir / "persist.db")
        with OfflineCacheManager(store, ConnectivityMonitor()) as manager:
            manager.cache_verse(make_verse(size=100))
            manager.cache_audio(make_audio(size=900))

        reopened = OfflineCacheManager(ContentStore(db_path=data_dir / "persist.db"), ConnectivityMonitor())

        assert reopened.stats() == CacheStats(verses=1, audio=1, size=1000)
        assert reopened.is_offline_ready
        assert reopened.get_cached_audio(1, 1, "ar.alafasy").size_bytes == 900
        reopened.close()

    def test_close_detaches_from_monitor(self, data_dir, monitor):
        manager = OfflineCacheManager(ContentStore(db_path=data_dir / "detach.db"), monitor)
        manager.close()

        monitor.report(ONLINE)

        assert manager.snapshot().is_online is False

    def test_from_settings(self, settings, monitor, make_verse):
        settings.readiness_min_verses = 2
        settings.capacity_bytes = 5000

        with OfflineCacheManager.from_settings(settings, monitor=monitor) as manager:
            assert manager.store.db_path == settings.database_path
            assert manager.store.capacity_bytes == 5000
            assert isinstance(manager.readiness.policy, MinimumVersesPolicy)

            manager.cache_verse(make_verse(ayah=1, size=10))
            assert not manager.is_offline_ready
            manager.cache_verse(make_verse(ayah=2, size=10))
            assert manager.is_offline_ready
