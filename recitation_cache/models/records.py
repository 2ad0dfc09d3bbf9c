"""
Data models for cached verse and recitation audio records.

This module provides immutable, type-safe models for the content kept in the
offline cache (verse text and recitation audio), the keys that address it and
the derived state reported to the UI, using Pydantic for validation and
serialization.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional, Union

from pydantic import BaseModel, Field, ValidationError, computed_field
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

from ..core.exceptions import InvalidArgumentError

SURAH_COUNT = 114
MAX_AYAH = 286


class RecordKind(str, Enum):
    """Kind of content held in the cache."""

    VERSE = "verse"
    AUDIO = "audio"


class ConnectivityState(str, Enum):
    """Network reachability as reported by the connectivity monitor."""

    ONLINE = "online"
    OFFLINE = "offline"


class ReadinessState(str, Enum):
    """States of the offline readiness machine."""

    NOT_READY = "not_ready"
    SYNCING_INITIAL = "syncing_initial"
    READY = "ready"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CacheKey(BaseModel):
    """Shared behaviour for composite cache keys."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    KIND: ClassVar[RecordKind]
    KEY_PATTERN: ClassVar[re.Pattern] = re.compile(r"^\s*(\d+):(\d+):(\S+)\s*$")

    surah: int = Field(..., ge=1, le=SURAH_COUNT)
    ayah: int = Field(..., ge=1, le=MAX_AYAH)

    @property
    def kind(self) -> RecordKind:
        return self.KIND

    @classmethod
    def build(cls, **fields):
        """
        Construct a key, turning validation failures into InvalidArgumentError.

        Raises:
            InvalidArgumentError: If any component is out of range or empty
        """
        try:
            return cls(**fields)
        except ValidationError as e:
            raise InvalidArgumentError(f"Malformed {cls.KIND.value} key {fields}: {e}") from e

    @classmethod
    def _split(cls, value: str):
        match = cls.KEY_PATTERN.match(value or "")
        if not match:
            raise InvalidArgumentError(
                f"Invalid {cls.KIND.value} key format: '{value}'. "
                f"Expected format: 'surah:ayah:identifier'"
            )
        surah, ayah, ident = match.groups()
        return int(surah), int(ayah), ident


class VerseKey(_CacheKey):
    """
    Composite key of a cached verse.

    Examples:
        >>> VerseKey(surah=2, ayah=255, translation_id="quran-uthmani").storage_key
        'verse:2:255:quran-uthmani'
    """

    KIND: ClassVar[RecordKind] = RecordKind.VERSE

    translation_id: str = Field(..., min_length=1, max_length=64)

    @property
    def storage_key(self) -> str:
        return f"verse:{self.surah}:{self.ayah}:{self.translation_id}"

    @classmethod
    def parse(cls, value: str) -> VerseKey:
        """
        Parse a "surah:ayah:translation" string.

        Raises:
            InvalidArgumentError: If the string is malformed
        """
        surah, ayah, translation_id = cls._split(value)
        return cls.build(surah=surah, ayah=ayah, translation_id=translation_id)

    def __str__(self) -> str:
        return self.storage_key


class AudioKey(_CacheKey):
    """Composite key of a cached recitation clip."""

    KIND: ClassVar[RecordKind] = RecordKind.AUDIO

    reciter_id: str = Field(..., min_length=1, max_length=64)

    @property
    def storage_key(self) -> str:
        return f"audio:{self.surah}:{self.ayah}:{self.reciter_id}"

    @classmethod
    def parse(cls, value: str) -> AudioKey:
        """
        Parse a "surah:ayah:reciter" string.

        Raises:
            InvalidArgumentError: If the string is malformed
        """
        surah, ayah, reciter_id = cls._split(value)
        return cls.build(surah=surah, ayah=ayah, reciter_id=reciter_id)

    def __str__(self) -> str:
        return self.storage_key


CacheKey = Union[VerseKey, AudioKey]


class VerseRecord(BaseModel):
    """
    Cached text of one verse in one edition.

    Attributes:
        surah: Surah number (1-114)
        ayah: Verse number within the surah
        translation_id: Edition identifier (e.g., "quran-uthmani", "fr.hamidullah")
        text: Verse text
        translation: Optional translated text stored alongside
        cached_at: When the record was created
    """

    model_config = ConfigDict(frozen=True)

    surah: int = Field(..., ge=1, le=SURAH_COUNT)
    ayah: int = Field(..., ge=1, le=MAX_AYAH)
    translation_id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(..., min_length=1)
    translation: Optional[str] = None
    cached_at: datetime = Field(default_factory=_utcnow)

    @property
    def kind(self) -> RecordKind:
        return RecordKind.VERSE

    @property
    def key(self) -> VerseKey:
        return VerseKey(surah=self.surah, ayah=self.ayah, translation_id=self.translation_id)

    @property
    def payload(self) -> bytes:
        """Bytes persisted for this verse."""
        data = self.text.encode("utf-8")
        if self.translation:
            data += self.translation.encode("utf-8")
        return data

    @computed_field
    @property
    def size_bytes(self) -> int:
        """Byte size of the stored payload."""
        return len(self.payload)

    @property
    def checksum(self) -> str:
        return verse_checksum(self.text, self.translation)


class AudioRecord(BaseModel):
    """
    Cached recitation audio for one verse and reciter.

    Attributes:
        surah: Surah number (1-114)
        ayah: Verse number within the surah
        reciter_id: Reciter identifier (e.g., "ar.alafasy")
        payload: Raw audio bytes
        mime_type: Audio content type
        handle: Storage location assigned by the content store
        cached_at: When the record was created
    """

    model_config = ConfigDict(frozen=True)

    surah: int = Field(..., ge=1, le=SURAH_COUNT)
    ayah: int = Field(..., ge=1, le=MAX_AYAH)
    reciter_id: str = Field(..., min_length=1, max_length=64)
    payload: bytes = Field(..., repr=False)
    mime_type: str = Field(default="audio/mpeg")
    handle: Optional[str] = None
    cached_at: datetime = Field(default_factory=_utcnow)

    @property
    def kind(self) -> RecordKind:
        return RecordKind.AUDIO

    @property
    def key(self) -> AudioKey:
        return AudioKey(surah=self.surah, ayah=self.ayah, reciter_id=self.reciter_id)

    @computed_field
    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    @property
    def checksum(self) -> str:
        return payload_checksum(self.payload)


CacheRecord = Union[VerseRecord, AudioRecord]


def payload_checksum(payload: bytes) -> str:
    """SHA-256 hex digest used for integrity checks."""
    return hashlib.sha256(payload).hexdigest()


def verse_checksum(text: str, translation: Optional[str]) -> str:
    # Separator keeps ("ab", "c") and ("a", "bc") distinct
    digest = hashlib.sha256(text.encode("utf-8"))
    digest.update(b"\x00")
    digest.update((translation or "").encode("utf-8"))
    return digest.hexdigest()


class CacheStats(BaseModel):
    """Aggregate cache statistics derived from the content store."""

    model_config = ConfigDict(frozen=True)

    verses: int = Field(default=0, ge=0)
    audio: int = Field(default=0, ge=0)
    size: int = Field(default=0, ge=0)


class CacheSnapshot(BaseModel):
    """
    Immutable view of the cache state handed to the UI layer.

    Serializes to the camelCase shape the front end expects:
    ``{"isOnline", "isOfflineReady", "cacheStats": {"verses", "audio", "size"}}``.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    is_online: bool
    is_offline_ready: bool
    cache_stats: CacheStats

    def to_dict(self) -> dict:
        """Convert snapshot to the UI wire shape."""
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class StoreChange:
    """Effect of a single content store mutation on the running totals."""

    kind: RecordKind
    storage_key: str
    surah: int
    count_delta: int = 0
    size_delta: int = 0

    @property
    def is_noop(self) -> bool:
        return self.count_delta == 0 and self.size_delta == 0


@dataclass(frozen=True)
class StoreTotals:
    """Totals of the store contents, either running or recounted."""

    verses: int = 0
    audio: int = 0
    size: int = 0

    def as_stats(self) -> CacheStats:
        return CacheStats(verses=self.verses, audio=self.audio, size=self.size)
