"""
Durable content store for offline verses and recitation audio.

Verse text and audio metadata live in SQLite through the SQLAlchemy ORM;
audio payloads live in a diskcache directory addressed by each row's handle.
Running totals (record counts and byte size) are kept in memory and persisted
in the same transaction as every mutation, so they survive a restart without
a rescan.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import errno
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

import diskcache
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..models.records import (
    AudioKey,
    AudioRecord,
    CacheKey,
    CacheRecord,
    RecordKind,
    StoreChange,
    StoreTotals,
    VerseKey,
    VerseRecord,
    payload_checksum,
    verse_checksum,
)
from ..utils.logger import get_logger
from .exceptions import InvalidArgumentError, RecordNotFoundError, StatsDriftError, StorageFullError

logger = get_logger(__name__)

# SQLAlchemy Base
Base = declarative_base()

META_ROW_ID = 1


class VerseRow(Base):
    """Cached verse database model."""

    __tablename__ = "cached_verses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    surah = Column(Integer, nullable=False)
    ayah = Column(Integer, nullable=False)
    translation_id = Column(String(64), nullable=False)
    text = Column(Text, nullable=False)
    translation = Column(Text, nullable=True)
    size_bytes = Column(Integer, nullable=False)
    checksum = Column(String(64), nullable=False)
    cached_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("surah", "ayah", "translation_id", name="uq_verse_key"),
        Index("idx_verses_surah", "surah"),
    )


class AudioRow(Base):
    """Cached audio metadata; the payload itself is stored under ``handle``."""

    __tablename__ = "cached_audio"

    id = Column(Integer, primary_key=True, autoincrement=True)
    surah = Column(Integer, nullable=False)
    ayah = Column(Integer, nullable=False)
    reciter_id = Column(String(64), nullable=False)
    mime_type = Column(String(64), nullable=False)
    handle = Column(String(160), nullable=False, unique=True)
    size_bytes = Column(Integer, nullable=False)
    checksum = Column(String(64), nullable=False)
    cached_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("surah", "ayah", "reciter_id", name="uq_audio_key"),
        Index("idx_audio_surah", "surah"),
    )


class StoreMeta(Base):
    """Single-row table holding the persisted running totals."""

    __tablename__ = "store_meta"

    id = Column(Integer, primary_key=True)
    verse_count = Column(Integer, nullable=False, default=0)
    audio_count = Column(Integer, nullable=False, default=0)
    total_size = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


def _enable_wal(dbapi_connection, connection_record) -> None:
    # Readers keep seeing the last committed state while a write is open
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _is_storage_full(exc: BaseException) -> bool:
    """Recognise "medium exhausted" failures from the OS or SQLite."""
    if isinstance(exc, OSError) and exc.errno == errno.ENOSPC:
        return True
    return "disk is full" in str(exc).lower()


class KeyListing:
    """
    Lazy, restartable sequence of cache keys of one kind.

    Each iteration runs a fresh query and streams rows in batches, so the
    listing reflects the store at the time iteration starts.
    """

    BATCH_SIZE = 500

    def __init__(self, store: ContentStore, kind: RecordKind):
        self._store = store
        self.kind = kind

    def __iter__(self) -> Iterator[CacheKey]:
        session: Session = self._store.SessionLocal()
        try:
            if self.kind is RecordKind.VERSE:
                query = session.query(VerseRow.surah, VerseRow.ayah, VerseRow.translation_id).order_by(
                    VerseRow.surah, VerseRow.ayah, VerseRow.translation_id
                )
                for surah, ayah, translation_id in query.yield_per(self.BATCH_SIZE):
                    yield VerseKey(surah=surah, ayah=ayah, translation_id=translation_id)
            else:
                query = session.query(AudioRow.surah, AudioRow.ayah, AudioRow.reciter_id).order_by(
                    AudioRow.surah, AudioRow.ayah, AudioRow.reciter_id
                )
                for surah, ayah, reciter_id in query.yield_per(self.BATCH_SIZE):
                    yield AudioKey(surah=surah, ayah=ayah, reciter_id=reciter_id)
        finally:
            session.close()

    def __len__(self) -> int:
        return self._store.count(self.kind)


class ContentStore:
    """
    Persistent key-value storage for verse records and audio blobs.

    Features:
    - Composite-key addressing for verses and audio
    - Idempotent writes (identical content is never rewritten)
    - O(1) size and count queries from persisted running totals
    - SHA-256 integrity checks on every read
    - Optional capacity limit with all-or-nothing rejection
    """

    def __init__(
        self,
        db_path: Path,
        audio_dir: Optional[Path] = None,
        capacity_bytes: int = 0,
    ):
        """
        Initialize content store.

        Args:
            db_path: Path to the SQLite database file
            audio_dir: Directory for audio payloads (defaults next to the database)
            capacity_bytes: Maximum total payload size, 0 for unlimited
        """
        if capacity_bytes < 0:
            raise InvalidArgumentError(f"capacity_bytes cannot be negative: {capacity_bytes}")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.audio_dir = Path(audio_dir) if audio_dir else self.db_path.parent / "audio"
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        self.capacity_bytes = capacity_bytes

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        event.listen(self.engine, "connect", _enable_wal)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

        # Audio payloads must never be evicted behind our back
        self.blobs = diskcache.Cache(str(self.audio_dir), eviction_policy="none")

        self._write_lock = threading.RLock()
        self._totals_lock = threading.Lock()
        self.corrupt_keys: List[str] = []
        self._totals = self._load_totals()

        logger.info(
            f"Content store opened at {self.db_path} "
            f"({self._totals.verses} verses, {self._totals.audio} audio, {self._totals.size} bytes)"
        )

    # ------------------------------------------------------------------
    # Running totals
    # ------------------------------------------------------------------

    def _load_totals(self) -> StoreTotals:
        """Load persisted totals, scanning once if none were recorded yet."""
        session: Session = self.SessionLocal()
        try:
            meta = session.get(StoreMeta, META_ROW_ID)
            if meta:
                return StoreTotals(
                    verses=meta.verse_count,
                    audio=meta.audio_count,
                    size=meta.total_size,
                )

            totals = self._recount(session)
            session.add(StoreMeta(
                id=META_ROW_ID,
                verse_count=totals.verses,
                audio_count=totals.audio,
                total_size=totals.size,
            ))
            session.commit()
            logger.debug("Running totals initialised by full scan")
            return totals

        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _recount(session: Session) -> StoreTotals:
        verse_count, verse_size = session.query(
            func.count(VerseRow.id), func.coalesce(func.sum(VerseRow.size_bytes), 0)
        ).one()
        audio_count, audio_size = session.query(
            func.count(AudioRow.id), func.coalesce(func.sum(AudioRow.size_bytes), 0)
        ).one()
        return StoreTotals(
            verses=int(verse_count),
            audio=int(audio_count),
            size=int(verse_size) + int(audio_size),
        )

    @staticmethod
    def _apply_to_meta(session: Session, changes: Iterable[StoreChange]) -> None:
        meta = session.get(StoreMeta, META_ROW_ID)
        for change in changes:
            if change.kind is RecordKind.VERSE:
                meta.verse_count += change.count_delta
            else:
                meta.audio_count += change.count_delta
            meta.total_size += change.size_delta
        meta.updated_at = datetime.now(timezone.utc)

    def _apply_to_totals(self, changes: Iterable[StoreChange]) -> None:
        with self._totals_lock:
            totals = self._totals
            for change in changes:
                if change.kind is RecordKind.VERSE:
                    totals = replace(totals, verses=totals.verses + change.count_delta)
                else:
                    totals = replace(totals, audio=totals.audio + change.count_delta)
                totals = replace(totals, size=totals.size + change.size_delta)
            self._totals = totals

    def totals(self) -> StoreTotals:
        """Current running totals."""
        with self._totals_lock:
            return self._totals

    def total_size(self) -> int:
        """Total payload bytes held by the store (O(1))."""
        return self.totals().size

    def count(self, kind: RecordKind) -> int:
        """Number of records of the given kind (O(1))."""
        totals = self.totals()
        return totals.verses if kind is RecordKind.VERSE else totals.audio

    def recount(self) -> StoreTotals:
        """
        Recompute totals by a full scan of the database.

        Returns:
            Totals derived from the stored rows
        """
        session: Session = self.SessionLocal()
        try:
            return self._recount(session)
        finally:
            session.close()

    def verify_totals(self) -> StoreTotals:
        """
        Check the running totals against a full recount.

        Returns:
            The recounted totals

        Raises:
            StatsDriftError: If running totals and recount disagree
        """
        with self._write_lock:
            actual = self.recount()
            expected = self.totals()
        if actual != expected:
            logger.error(f"Content store totals drifted: running={expected}, recount={actual}")
            raise StatsDriftError(
                f"Running totals {expected} do not match stored content {actual}",
                expected=expected,
                actual=actual,
            )
        return actual

    def rebuild_totals(self) -> StoreTotals:
        """Replace the running totals with a full recount."""
        with self._write_lock:
            session: Session = self.SessionLocal()
            try:
                totals = self._recount(session)
                meta = session.get(StoreMeta, META_ROW_ID)
                meta.verse_count = totals.verses
                meta.audio_count = totals.audio
                meta.total_size = totals.size
                meta.updated_at = datetime.now(timezone.utc)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

            with self._totals_lock:
                self._totals = totals

        logger.info(f"Running totals rebuilt: {totals}")
        return totals

    def surah_counts(self) -> Dict[int, int]:
        """
        Count cached verse records per surah.

        Returns:
            Mapping of surah number to number of verse records
        """
        session: Session = self.SessionLocal()
        try:
            rows = session.query(VerseRow.surah, func.count(VerseRow.id)).group_by(VerseRow.surah).all()
            return {int(surah): int(count) for surah, count in rows}
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _check_record(record: CacheRecord) -> None:
        if not isinstance(record, (VerseRecord, AudioRecord)):
            raise InvalidArgumentError(f"Unsupported record type: {type(record).__name__}")

    @staticmethod
    def _check_key(key: CacheKey) -> None:
        if not isinstance(key, (VerseKey, AudioKey)):
            raise InvalidArgumentError(f"Unsupported cache key: {key!r}")

    @staticmethod
    def _find_row(session: Session, key: CacheKey):
        if isinstance(key, VerseKey):
            return session.query(VerseRow).filter_by(
                surah=key.surah, ayah=key.ayah, translation_id=key.translation_id
            ).first()
        return session.query(AudioRow).filter_by(
            surah=key.surah, ayah=key.ayah, reciter_id=key.reciter_id
        ).first()

    def _write_blob(self, handle: str, payload: bytes) -> None:
        try:
            self.blobs.set(handle, payload)
        except Exception as e:
            if _is_storage_full(e):
                raise StorageFullError(
                    f"No space left to store audio {handle}",
                    requested=len(payload),
                ) from e
            raise

    def _discard_blobs(self, handles: Iterable[str]) -> None:
        for handle in handles:
            try:
                self.blobs.delete(handle)
            except Exception as e:
                logger.warning(f"Failed to remove audio payload {handle}: {e}")

    def _stage(
        self,
        session: Session,
        record: CacheRecord,
        written: List[str],
        obsolete: List[str],
    ) -> StoreChange:
        """Add or update one record inside an open session."""
        key = record.key
        checksum = record.checksum
        size = record.size_bytes
        existing = self._find_row(session, key)

        if existing is not None and existing.checksum == checksum and existing.size_bytes == size:
            if isinstance(record, AudioRecord) and existing.handle not in self.blobs:
                self._write_blob(existing.handle, record.payload)
                logger.info(f"Restored missing audio payload for {key.storage_key}")
            return StoreChange(kind=record.kind, storage_key=key.storage_key, surah=record.surah)

        change = StoreChange(
            kind=record.kind,
            storage_key=key.storage_key,
            surah=record.surah,
            count_delta=0 if existing is not None else 1,
            size_delta=size - (existing.size_bytes if existing is not None else 0),
        )

        if isinstance(record, VerseRecord):
            if existing is None:
                session.add(VerseRow(
                    surah=record.surah,
                    ayah=record.ayah,
                    translation_id=record.translation_id,
                    text=record.text,
                    translation=record.translation,
                    size_bytes=size,
                    checksum=checksum,
                    cached_at=record.cached_at,
                ))
            else:
                existing.text = record.text
                existing.translation = record.translation
                existing.size_bytes = size
                existing.checksum = checksum
                existing.cached_at = record.cached_at
            return change

        handle = f"{key.storage_key}:{checksum[:16]}"
        self._write_blob(handle, record.payload)
        written.append(handle)

        if existing is None:
            session.add(AudioRow(
                surah=record.surah,
                ayah=record.ayah,
                reciter_id=record.reciter_id,
                mime_type=record.mime_type,
                handle=handle,
                size_bytes=size,
                checksum=checksum,
                cached_at=record.cached_at,
            ))
        else:
            if existing.handle != handle:
                obsolete.append(existing.handle)
            existing.mime_type = record.mime_type
            existing.handle = handle
            existing.size_bytes = size
            existing.checksum = checksum
            existing.cached_at = record.cached_at
        return change

    def _check_capacity(self, changes: List[StoreChange]) -> None:
        if not self.capacity_bytes:
            return
        growth = sum(change.size_delta for change in changes)
        current = self.total_size()
        if growth > 0 and current + growth > self.capacity_bytes:
            available = max(self.capacity_bytes - current, 0)
            raise StorageFullError(
                f"Write of {growth} bytes exceeds cache capacity "
                f"({available} of {self.capacity_bytes} bytes available)",
                requested=growth,
                available=available,
            )

    def put_many(self, records: Iterable[CacheRecord]) -> List[StoreChange]:
        """
        Store several records in a single transaction.

        Either every record is stored or none is. Later records replace
        earlier ones with the same key.

        Args:
            records: Verse and/or audio records

        Returns:
            One change per distinct key, in first-seen order

        Raises:
            InvalidArgumentError: If a record has an unsupported type
            StorageFullError: If the batch does not fit; nothing is written
        """
        batch: Dict[str, CacheRecord] = {}
        for record in records:
            self._check_record(record)
            batch[record.key.storage_key] = record

        if not batch:
            return []

        with self._write_lock:
            session: Session = self.SessionLocal()
            written: List[str] = []
            obsolete: List[str] = []
            try:
                changes = [self._stage(session, record, written, obsolete) for record in batch.values()]
                self._check_capacity(changes)
                effective = [change for change in changes if not change.is_noop]
                if effective:
                    self._apply_to_meta(session, effective)
                session.commit()

            except OperationalError as e:
                session.rollback()
                self._discard_blobs(written)
                if _is_storage_full(e):
                    raise StorageFullError("Cache database is full") from e
                raise
            except Exception:
                session.rollback()
                self._discard_blobs(written)
                raise
            finally:
                session.close()

            self._apply_to_totals(effective)
            self._discard_blobs(obsolete)

        logger.debug(f"Stored {len(effective)} of {len(changes)} records")
        return changes

    def put(self, record: CacheRecord) -> StoreChange:
        """
        Insert or overwrite a record by its key.

        Storing an identical record again is a no-op.

        Args:
            record: Verse or audio record

        Returns:
            Change in counts and bytes relative to the previous content

        Raises:
            InvalidArgumentError: If the record has an unsupported type
            StorageFullError: If the write does not fit; prior state is kept
        """
        return self.put_many([record])[0]

    def delete(self, key: CacheKey) -> StoreChange:
        """
        Remove a record if present.

        Args:
            key: Verse or audio key

        Returns:
            Change in counts and bytes (zero when the key was absent)
        """
        self._check_key(key)
        with self._write_lock:
            session: Session = self.SessionLocal()
            try:
                row = self._find_row(session, key)
                if row is None:
                    return StoreChange(kind=key.kind, storage_key=key.storage_key, surah=key.surah)

                change = StoreChange(
                    kind=key.kind,
                    storage_key=key.storage_key,
                    surah=key.surah,
                    count_delta=-1,
                    size_delta=-row.size_bytes,
                )
                handle = getattr(row, "handle", None)
                session.delete(row)
                self._apply_to_meta(session, [change])
                session.commit()

            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

            self._apply_to_totals([change])
            if handle:
                self._discard_blobs([handle])

        logger.debug(f"Deleted {key.storage_key}")
        return change

    def clear(self) -> StoreTotals:
        """
        Remove every record (keep schema).

        Returns:
            Totals of the removed content
        """
        with self._write_lock:
            session: Session = self.SessionLocal()
            try:
                removed = self._recount(session)
                session.query(VerseRow).delete()
                session.query(AudioRow).delete()
                meta = session.get(StoreMeta, META_ROW_ID)
                meta.verse_count = 0
                meta.audio_count = 0
                meta.total_size = 0
                meta.updated_at = datetime.now(timezone.utc)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

            with self._totals_lock:
                self._totals = StoreTotals()
            self.corrupt_keys.clear()
            try:
                self.blobs.clear()
            except Exception as e:
                # Rows are gone, so leftover payloads are unreachable and overwritten by later writes
                logger.warning(f"Failed to remove audio payloads from {self.audio_dir}: {e}")

        logger.info(f"Content store cleared ({removed.verses} verses, {removed.audio} audio)")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _report_corrupt(self, key: CacheKey, reason: str) -> None:
        logger.warning(f"Corrupt cache entry {key.storage_key}: {reason}; treating as missing")
        if key.storage_key not in self.corrupt_keys:
            self.corrupt_keys.append(key.storage_key)

    def get(self, key: CacheKey) -> Optional[CacheRecord]:
        """
        Get a record by key.

        Records failing their integrity check are reported as a warning
        and treated as missing.

        Args:
            key: Verse or audio key

        Returns:
            The stored record, or None if absent or corrupt
        """
        self._check_key(key)
        session: Session = self.SessionLocal()
        try:
            row = self._find_row(session, key)
        finally:
            session.close()

        if row is None:
            return None

        if isinstance(key, VerseKey):
            if verse_checksum(row.text, row.translation) != row.checksum:
                self._report_corrupt(key, "checksum mismatch")
                return None
            return VerseRecord(
                surah=row.surah,
                ayah=row.ayah,
                translation_id=row.translation_id,
                text=row.text,
                translation=row.translation,
                cached_at=row.cached_at,
            )

        payload = self.blobs.get(row.handle)
        if payload is None:
            self._report_corrupt(key, "audio payload missing")
            return None
        if len(payload) != row.size_bytes or payload_checksum(payload) != row.checksum:
            self._report_corrupt(key, "checksum mismatch")
            return None
        return AudioRecord(
            surah=row.surah,
            ayah=row.ayah,
            reciter_id=row.reciter_id,
            payload=payload,
            mime_type=row.mime_type,
            handle=row.handle,
            cached_at=row.cached_at,
        )

    def read_payload(self, key: AudioKey) -> bytes:
        """
        Read the audio bytes for a key.

        Raises:
            RecordNotFoundError: If no intact audio is cached for the key
        """
        record = self.get(key)
        if record is None:
            raise RecordNotFoundError(key.storage_key)
        return record.payload

    def contains(self, key: CacheKey) -> bool:
        """Check whether a row exists for the key (no integrity check)."""
        self._check_key(key)
        session: Session = self.SessionLocal()
        try:
            return self._find_row(session, key) is not None
        finally:
            session.close()

    def list_keys(self, kind: RecordKind) -> KeyListing:
        """
        List keys of one kind.

        Args:
            kind: RecordKind.VERSE or RecordKind.AUDIO

        Returns:
            Lazy listing that can be iterated any number of times
        """
        try:
            kind = RecordKind(kind)
        except ValueError as e:
            raise InvalidArgumentError(f"Unknown record kind: {kind!r}") from e
        return KeyListing(self, kind)

    def close(self) -> None:
        """Close database connections and the audio directory."""
        if hasattr(self, 'engine') and self.engine:
            self.engine.dispose()
        if hasattr(self, 'blobs') and self.blobs is not None:
            self.blobs.close()
