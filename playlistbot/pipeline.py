from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .auth import TokenProvider
from .catalog import CatalogClient
from .concurrency import Mapper, bounded_mapper
from .config import Settings
from .cover import encode_asset
from .creative import CreativeClient
from .errors import AuthError, CatalogError, CreativeError
from .logs import log, run_context
from .models import (
    CoverAsset,
    PlaylistHandle,
    PlaylistPlan,
    ResolvedTrack,
    TasteProfile,
    TrackRequest,
)
from .retry import Deadline, RetryPolicy, sleep_for

GENERATION_FAILED_MESSAGE = "Oops, failed to generate a playlist. Please try again!"


class PipelineState(str, Enum):
    IDLE = "idle"
    TOKEN_ACQUIRED = "token_acquired"
    PROFILE_GATHERED = "profile_gathered"
    PLAN_RECEIVED = "plan_received"
    PLAYLIST_CREATED = "playlist_created"
    TRACKS_RESOLVED = "tracks_resolved"
    TRACKS_APPENDED = "tracks_appended"
    COVER_GENERATED = "cover_generated"
    COVER_ENCODED = "cover_encoded"
    COVER_UPLOADED = "cover_uploaded"
    COVER_SKIPPED = "cover_skipped"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PipelineResult:
    state: PipelineState = PipelineState.IDLE
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    playlist: Optional[PlaylistHandle] = None
    name: Optional[str] = None
    description: Optional[str] = None
    matched: int = 0
    unmatched: List[str] = field(default_factory=list)
    cover: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.DONE

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, message: str) -> "PipelineResult":
        self.error = message
        self.advance(PipelineState.FAILED)
        log("critical", "pipeline_failed", error=message, reached=self.history[-2].value)
        return self

    def warn(self, message: str, **details: Any) -> None:
        self.warnings.append(message)
        log("warning", message, **details)

    def to_body(self) -> Dict[str, Any]:
        return {
            "status": self.state.value,
            "playlist_id": self.playlist.id if self.playlist else None,
            "playlist_url": self.playlist.url if self.playlist else None,
            "playlist_name": self.name,
            "description": self.description,
            "matched": self.matched,
            "unmatched": list(self.unmatched),
            "cover": self.cover,
            "warnings": list(self.warnings),
            "error": self.error,
            "run_id": self.run_id,
        }


class PlaylistPipeline:
    def __init__(
        self,
        token_provider: TokenProvider,
        catalog_factory: Callable[[str], CatalogClient],
        creative: CreativeClient,
        mapper: Optional[Mapper] = None,
        upload_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = sleep_for,
        genres_limit: int = 10,
        time_range: str = "long_term",
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.token_provider = token_provider
        self.catalog_factory = catalog_factory
        self.creative = creative
        self.mapper = mapper or bounded_mapper(5)
        self.upload_policy = upload_policy or RetryPolicy()
        self.sleep = sleep
        self.genres_limit = genres_limit
        self.time_range = time_range
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, session: Optional[requests.Session] = None
    ) -> "PlaylistPipeline":
        session = session or requests.Session()
        token_provider = TokenProvider(settings, session=session)

        def catalog_factory(access_token: str) -> CatalogClient:
            return CatalogClient(
                access_token,
                session=session,
                token_provider=token_provider,
                market=settings.default_market,
                public=settings.playlist_public,
            )

        return cls(
            token_provider=token_provider,
            catalog_factory=catalog_factory,
            creative=CreativeClient(
                settings.openai_api_key,
                session=session,
                chat_model=settings.chat_model,
                image_model=settings.image_model,
            ),
            mapper=bounded_mapper(settings.search_concurrency),
            upload_policy=RetryPolicy(
                max_attempts=settings.cover_upload_max_attempts,
                base_delay=settings.cover_upload_base_delay_s,
            ),
            genres_limit=settings.top_genres_limit,
            time_range=settings.top_genres_time_range,
            timeout_seconds=settings.run_timeout_seconds,
        )

    def run(self, prompt: str) -> PipelineResult:
        with run_context() as run_id:
            result = PipelineResult(run_id=run_id)
            log("info", "pipeline_start", prompt_length_chars=len(prompt))
            self._run(prompt, result, Deadline(self.timeout_seconds))
            log(
                "info",
                "pipeline_finished",
                state=result.state.value,
                playlist_id=result.playlist.id if result.playlist else None,
                matched=result.matched,
                unmatched=len(result.unmatched),
                cover=result.cover,
                warnings=len(result.warnings),
            )
            return result

    def _run(self, prompt: str, result: PipelineResult, deadline: Deadline) -> None:
        try:
            access_token = self.token_provider.refresh()
            catalog = self.catalog_factory(access_token)
            catalog.identity()
        except AuthError as exc:
            result.fail(f"Spotify authentication failed: {exc.message}")
            return
        result.advance(PipelineState.TOKEN_ACQUIRED)

        profile = self._gather_profile(catalog)
        result.advance(PipelineState.PROFILE_GATHERED)

        plan = self.creative.plan_playlist(prompt, profile)
        if plan is None:
            result.fail(GENERATION_FAILED_MESSAGE)
            return
        result.name = plan.name
        result.description = plan.description
        result.advance(PipelineState.PLAN_RECEIVED)

        if deadline.expired():
            result.fail("deadline exceeded before playlist creation")
            return

        try:
            result.playlist = catalog.create_playlist(plan.name, plan.description)
        except (CatalogError, AuthError) as exc:
            result.fail(f"unable to create playlist: {exc.message}")
            return
        result.advance(PipelineState.PLAYLIST_CREATED)
        log(
            "info",
            "playlist_created",
            name=plan.name,
            playlist_id=result.playlist.id,
            playlist_url=result.playlist.url,
        )

        resolved = self.resolve_tracks(catalog, plan.tracks)
        uris = [track.uri for track in resolved if track.uri]
        result.matched = len(uris)
        result.unmatched = [track.request.label() for track in resolved if not track.resolved]
        result.advance(PipelineState.TRACKS_RESOLVED)
        if result.unmatched:
            result.warn(
                f"{len(result.unmatched)} track(s) could not be found and were skipped",
                unmatched_tracks=result.unmatched,
            )

        try:
            if uris:
                catalog.append_tracks(result.playlist, uris)
        except (CatalogError, AuthError) as exc:
            result.warn(
                "Playlist was created but its tracks could not be added",
                playlist_id=result.playlist.id,
                error=exc.message,
            )
            result.fail(f"unable to add tracks: {exc.message}")
            return
        result.advance(PipelineState.TRACKS_APPENDED)

        self._apply_cover(catalog, result.playlist, plan, result, deadline)
        result.advance(PipelineState.DONE)

    def _gather_profile(self, catalog: CatalogClient) -> TasteProfile:
        profile = catalog.top_genres(limit=self.genres_limit, time_range=self.time_range)
        log("info", "taste_profile", genres=list(profile.genres))
        return profile

    def resolve_tracks(
        self, catalog: CatalogClient, tracks: Sequence[TrackRequest]
    ) -> List[ResolvedTrack]:
        def _resolve(track: TrackRequest) -> ResolvedTrack:
            return ResolvedTrack(track, catalog.search_track(track.title, track.artist))

        resolved = self.mapper(_resolve, tracks)
        log(
            "info",
            "spotify_track_resolution",
            requested=len(tracks),
            matched=sum(1 for track in resolved if track.resolved),
        )
        return resolved

    def _apply_cover(
        self,
        catalog: CatalogClient,
        handle: PlaylistHandle,
        plan: PlaylistPlan,
        result: PipelineResult,
        deadline: Deadline,
    ) -> None:
        def skip(message: str, **details: Any) -> None:
            result.cover = "skipped"
            result.advance(PipelineState.COVER_SKIPPED)
            result.warn(message, **details)

        if deadline.expired():
            skip("Skipped playlist cover: run deadline exceeded")
            return

        log("info", "Generating a cover for your playlist", cover_prompt=plan.cover_prompt)
        raw = self.creative.generate_cover_image(plan.cover_prompt) if plan.cover_prompt else None
        if raw is None:
            skip("Sorry! I couldn't generate a playlist cover image.")
            return
        result.advance(PipelineState.COVER_GENERATED)

        asset = CoverAsset(raw=raw)
        try:
            jpeg = encode_asset(asset)
        except CreativeError as exc:
            skip("Sorry! I couldn't generate a playlist cover image.", error=exc.message)
            return
        result.advance(PipelineState.COVER_ENCODED)
        log("info", "cover_encoded", size=len(jpeg), quality=asset.quality)

        uploaded = catalog.set_cover(
            handle, jpeg, policy=self.upload_policy, sleep=self.sleep, deadline=deadline
        )
        if not uploaded:
            skip("Sorry! I couldn't save the playlist cover image.", playlist_id=handle.id)
            return
        result.cover = "uploaded"
        result.advance(PipelineState.COVER_UPLOADED)
        log("info", "Playlist cover image saved.", playlist_id=handle.id)
