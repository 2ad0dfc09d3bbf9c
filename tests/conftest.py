"""
Pytest configuration and shared fixtures for RecitationCache tests.

Provides temporary cache directories, record factories and a connectivity
monitor driven by report() instead of a network probe.
"""

import pytest
from pathlib import Path
from typing import Callable, Generator

from recitation_cache.config.settings import Settings
from recitation_cache.core.cache_manager import OfflineCacheManager
from recitation_cache.core.connectivity import ConnectivityMonitor
from recitation_cache.core.content_store import ContentStore
from recitation_cache.models.records import AudioRecord, VerseRecord


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch) -> None:
    """Keep settings and logs out of the real home directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RECITATION_CACHE_DATA_DIRECTORY", str(tmp_path / "env_data"))
    monkeypatch.setenv("RECITATION_CACHE_LOG_DIRECTORY", str(tmp_path / "logs"))


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Provide a clean cache data directory."""
    path = tmp_path / "cache_data"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def make_verse() -> Callable[..., VerseRecord]:
    """Factory for verse records whose payload is exactly ``size`` bytes."""

    def _make(
        surah: int = 1,
        ayah: int = 1,
        size: int = 100,
        translation_id: str = "quran-uthmani",
        fill: str = "a",
    ) -> VerseRecord:
        return VerseRecord(
            surah=surah,
            ayah=ayah,
            translation_id=translation_id,
            text=fill * size,
        )

    return _make


@pytest.fixture
def make_audio() -> Callable[..., AudioRecord]:
    """Factory for audio records whose payload is exactly ``size`` bytes."""

    def _make(
        surah: int = 1,
        ayah: int = 1,
        size: int = 5000,
        reciter_id: str = "ar.alafasy",
        fill: bytes = b"\x01",
    ) -> AudioRecord:
        return AudioRecord(
            surah=surah,
            ayah=ayah,
            reciter_id=reciter_id,
            payload=fill * size,
        )

    return _make


@pytest.fixture
def sample_verse() -> VerseRecord:
    """Ayat al-Kursi opening with a French translation."""
    return VerseRecord(
        surah=2,
        ayah=255,
        translation_id="fr.hamidullah",
        text="ٱللَّهُ لَآ إِلَٰهَ إِلَّا هُوَ ٱلْحَىُّ ٱلْقَيُّومُ",
        translation="Allah! Point de divinité à part Lui, le Vivant, Celui qui subsiste par lui-même.",
    )


@pytest.fixture
def store(data_dir: Path) -> Generator[ContentStore, None, None]:
    """Create a content store in the temporary data directory."""
    content_store = ContentStore(db_path=data_dir / "cache.db", audio_dir=data_dir / "audio")
    yield content_store
    content_store.close()


@pytest.fixture
def monitor() -> ConnectivityMonitor:
    """Connectivity monitor without a probe; tests drive it with report()."""
    return ConnectivityMonitor()


@pytest.fixture
def manager(store: ContentStore, monitor: ConnectivityMonitor) -> Generator[OfflineCacheManager, None, None]:
    """Cache manager with the default one-verse readiness policy."""
    cache_manager = OfflineCacheManager(store=store, monitor=monitor)
    yield cache_manager
    cache_manager.close()


@pytest.fixture
def settings(data_dir: Path, tmp_path: Path) -> Settings:
    """Settings pointing at the temporary directories."""
    return Settings(data_directory=data_dir, log_directory=tmp_path / "logs")
