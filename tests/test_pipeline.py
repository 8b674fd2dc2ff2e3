import base64
import json

from conftest import FakeResponse, FakeSession, chat_response, png_bytes
from playlistbot.concurrency import sequential_map
from playlistbot.pipeline import GENERATION_FAILED_MESSAGE, PipelineState, PlaylistPipeline


def make_plan(count, name="Power Hour '95"):
    return {
        "name": name,
        "description": "High-energy 90s anthems to keep you moving.",
        "cover_prompt": "retro neon gym with cassette tapes",
        "tracks": [{"artist": f"Artist {i}", "track": f"Track {i}"} for i in range(1, count + 1)],
    }


class FakeServices:
    """Answers every Spotify and OpenAI endpoint the pipeline calls."""

    def __init__(self, plan, unresolved=(), cover_statuses=None):
        self.plan = plan
        self.unresolved = set(unresolved)
        self.cover_statuses = list(cover_statuses or [202])
        self.token_status = 200
        self.append_status = 201
        self.chat = None
        self.image = None

    def __call__(self, method, path, **kw):
        if path == "/api/token":
            if self.token_status >= 400:
                return FakeResponse(self.token_status, {"error": "invalid_client"})
            return FakeResponse(200, {"access_token": "token", "token_type": "Bearer"})
        if path == "/v1/me":
            return FakeResponse(200, {"id": "user123"})
        if path == "/v1/me/top/artists":
            return FakeResponse(
                200, {"items": [{"genres": ["rock", "pop"]}, {"genres": ["pop", "eurodance"]}]}
            )
        if path == "/v1/users/user123/playlists":
            return FakeResponse(201, {"id": "pl1"})
        if path == "/v1/search":
            title = kw["params"]["q"].split(" artist:")[0]
            if title in self.unresolved:
                return FakeResponse(200, {"tracks": {"items": []}})
            item = {"uri": f"spotify:track:{title}", "name": title, "artists": [{"name": "X"}]}
            return FakeResponse(200, {"tracks": {"items": [item]}})
        if path == "/v1/playlists/pl1/tracks":
            return FakeResponse(self.append_status, {"snapshot_id": "snap"})
        if path == "/v1/playlists/pl1/images":
            return FakeResponse(self.cover_statuses.pop(0) if self.cover_statuses else 500)
        if path == "/v1/chat/completions":
            return self.chat or chat_response(self.plan)
        if path == "/v1/images/generations":
            if self.image is not None:
                return self.image
            b64 = base64.b64encode(png_bytes(size=(256, 256))).decode("ascii")
            return FakeResponse(200, {"data": [{"b64_json": b64}]})
        raise AssertionError(f"unexpected call {method} {path}")


def build(settings, services, **overrides):
    session = FakeSession(services)
    pipeline = PlaylistPipeline.from_settings(settings, session=session)
    sleeps = []
    pipeline.sleep = sleeps.append
    for key, value in overrides.items():
        setattr(pipeline, key, value)
    return pipeline, session, sleeps


def appended_uris(session):
    calls = [c for c in session.calls if c["path"] == "/v1/playlists/pl1/tracks"]
    return [uri for c in calls for uri in json.loads(c["data"])["uris"]]


def test_end_to_end_with_unresolved_tracks(settings):
    services = FakeServices(make_plan(32), unresolved={"Track 7", "Track 19"})
    pipeline, session, sleeps = build(settings, services)

    result = pipeline.run("upbeat 90s workout mix")

    assert result.state == PipelineState.DONE
    assert result.name == "Power Hour '95"
    assert result.playlist.url == "https://open.spotify.com/playlist/pl1"
    assert result.matched == 30
    assert result.unmatched == ["Artist 7 – Track 7", "Artist 19 – Track 19"]
    assert result.cover == "uploaded"
    assert len(result.warnings) == 1
    assert sleeps == []
    expected = [f"spotify:track:Track {i}" for i in range(1, 33) if i not in (7, 19)]
    assert appended_uris(session) == expected
    assert result.history == [
        PipelineState.IDLE,
        PipelineState.TOKEN_ACQUIRED,
        PipelineState.PROFILE_GATHERED,
        PipelineState.PLAN_RECEIVED,
        PipelineState.PLAYLIST_CREATED,
        PipelineState.TRACKS_RESOLVED,
        PipelineState.TRACKS_APPENDED,
        PipelineState.COVER_GENERATED,
        PipelineState.COVER_ENCODED,
        PipelineState.COVER_UPLOADED,
        PipelineState.DONE,
    ]


def test_taste_profile_biases_chat_request(settings):
    services = FakeServices(make_plan(3))
    pipeline, session, _ = build(settings, services)
    pipeline.run("rainy day")

    chat = next(c for c in session.calls if c["path"] == "/v1/chat/completions")
    messages = json.loads(chat["data"])["messages"]
    assert "rock, pop, eurodance" in messages[1]["content"]


def test_resolution_preserves_order_and_drops_misses(settings):
    plan = {
        "name": "ABC",
        "description": "",
        "cover_prompt": "letters",
        "tracks": [
            {"artist": "a", "track": "A"},
            {"artist": "b", "track": "B"},
            {"artist": "c", "track": "C"},
        ],
    }
    pipeline, session, _ = build(settings, FakeServices(plan, unresolved={"B"}))

    result = pipeline.run("alphabet")

    assert appended_uris(session) == ["spotify:track:A", "spotify:track:C"]
    assert result.unmatched == ["b – B"]


def test_malformed_plan_aborts_before_catalog_mutation(settings):
    services = FakeServices(make_plan(30))
    services.chat = FakeResponse(200, {"choices": [{"message": {"content": "{not json"}}]})
    pipeline, session, _ = build(settings, services)

    result = pipeline.run("anything")

    assert result.state == PipelineState.FAILED
    assert result.error == GENERATION_FAILED_MESSAGE
    assert result.playlist is None
    assert session.paths("POST").count("/v1/users/user123/playlists") == 0
    assert session.paths("PUT") == []


def test_cover_upload_exhausted_still_done(settings):
    services = FakeServices(make_plan(5), cover_statuses=[500] * 5)
    pipeline, session, sleeps = build(settings, services)

    result = pipeline.run("focus")

    assert result.state == PipelineState.DONE
    assert PipelineState.COVER_SKIPPED in result.history
    assert PipelineState.COVER_UPLOADED not in result.history
    assert result.cover == "skipped"
    assert result.matched == 5
    assert sleeps == [1, 2, 4, 8]
    assert session.paths("PUT").count("/v1/playlists/pl1/images") == 5
    assert len(result.warnings) == 1


def test_cover_upload_succeeds_on_fifth_attempt(settings):
    services = FakeServices(make_plan(5), cover_statuses=[500, 500, 503, 500, 202])
    pipeline, _, sleeps = build(settings, services)

    result = pipeline.run("focus")

    assert result.cover == "uploaded"
    assert sleeps == [1, 2, 4, 8]
    assert result.warnings == []


def test_cover_generation_failure_skips_upload(settings):
    services = FakeServices(make_plan(5))
    services.image = FakeResponse(400, {"error": {"code": "content_policy_violation"}})
    pipeline, session, _ = build(settings, services)

    result = pipeline.run("focus")

    assert result.state == PipelineState.DONE
    assert result.cover == "skipped"
    assert PipelineState.COVER_GENERATED not in result.history
    assert session.paths("PUT") == []


def test_unreadable_cover_skips_upload(settings):
    services = FakeServices(make_plan(5))
    b64 = base64.b64encode(b"not an image").decode("ascii")
    services.image = FakeResponse(200, {"data": [{"b64_json": b64}]})
    pipeline, session, _ = build(settings, services)

    result = pipeline.run("focus")

    assert result.state == PipelineState.DONE
    assert PipelineState.COVER_GENERATED in result.history
    assert PipelineState.COVER_ENCODED not in result.history
    assert session.paths("PUT") == []


def test_token_failure_is_fatal(settings):
    services = FakeServices(make_plan(5))
    services.token_status = 400
    pipeline, session, _ = build(settings, services)

    result = pipeline.run("focus")

    assert result.state == PipelineState.FAILED
    assert result.history == [PipelineState.IDLE, PipelineState.FAILED]
    assert session.paths() == ["/api/token"]


def test_append_failure_keeps_playlist_and_warns(settings):
    services = FakeServices(make_plan(5))
    services.append_status = 500
    pipeline, session, _ = build(settings, services)

    result = pipeline.run("focus")

    assert result.state == PipelineState.FAILED
    assert result.playlist is not None and result.playlist.id == "pl1"
    assert len(result.warnings) == 1
    assert "/v1/images/generations" not in session.paths()


def test_sequential_mapper_is_interchangeable(settings):
    services = FakeServices(make_plan(4), unresolved={"Track 2"})
    pipeline, session, _ = build(settings, services, mapper=sequential_map)

    result = pipeline.run("focus")

    assert result.ok
    assert appended_uris(session) == [
        "spotify:track:Track 1",
        "spotify:track:Track 3",
        "spotify:track:Track 4",
    ]


def test_empty_plan_creates_empty_playlist(settings):
    pipeline, session, _ = build(settings, FakeServices(make_plan(0)))

    result = pipeline.run("silence")

    assert result.state == PipelineState.DONE
    assert result.matched == 0
    assert appended_uris(session) == []


def test_track_search_log_lines_carry_run_id(settings, capsys):
    services = FakeServices(make_plan(4), unresolved={"Track 3"})
    pipeline, _, _ = build(settings, services)

    result = pipeline.run("focus")

    lines = capsys.readouterr().out.splitlines()
    search_lines = [line for line in lines if "X – Track" in line or "Track not found" in line]
    assert len(search_lines) == 4
    assert all(f'"run_id": "{result.run_id}"' in line for line in search_lines)
