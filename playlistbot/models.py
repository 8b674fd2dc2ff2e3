from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import PLAYLIST_URL_TEMPLATE

MAX_COVER_BYTES = 256 * 1024
MIN_COVER_QUALITY = 10
MAX_COVER_QUALITY = 100


@dataclass(frozen=True)
class TrackRequest:
    artist: str
    title: str

    def label(self) -> str:
        return f"{self.artist} – {self.title}"


@dataclass(frozen=True)
class PlaylistPlan:
    name: str
    description: str
    cover_prompt: str
    tracks: Sequence[TrackRequest] = ()


@dataclass(frozen=True)
class ResolvedTrack:
    request: TrackRequest
    uri: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.uri is not None


@dataclass(frozen=True)
class TasteProfile:
    genres: Sequence[str] = ()

    def __bool__(self) -> bool:
        return bool(self.genres)

    def __len__(self) -> int:
        return len(self.genres)


@dataclass(frozen=True)
class PlaylistHandle:
    id: str

    @property
    def url(self) -> str:
        return PLAYLIST_URL_TEMPLATE.format(playlist_id=self.id)


@dataclass
class CoverAsset:
    """Raw generated image plus the encoding state mutated by the quality loop."""

    raw: bytes
    max_bytes: int = MAX_COVER_BYTES
    quality: int = 80
    encoded: Optional[bytes] = None
    attempts: List[int] = field(default_factory=list)

    def set_quality(self, quality: int) -> None:
        self.quality = max(MIN_COVER_QUALITY, min(quality, MAX_COVER_QUALITY))
