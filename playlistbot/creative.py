import base64
import binascii
import hashlib
import json
from typing import Any, Dict, List, Optional

import requests

from .config import OPENAI_API_URL, REQUEST_TIMEOUT
from .errors import CreativeError, MalformedPlanError
from .logs import log
from .models import PlaylistPlan, TasteProfile, TrackRequest

SYSTEM_PROMPT = """You are a helpful DJ assistant tasked with creating a thoughtful, cohesive playlist for your user. The user will be asked "What kind of playlist would you like me to generate?". Using their answer as a prompt, your task is the following:

- Interpret the user's prompt creatively to generate a playlist that fits the theme or mood requested.
- If the prompt requests specific songs, artists, albums or genres, use that information to select the appropriate tracks.
- If the prompt is ambiguous or abstract, use your best judgment and creativity to interpret the user's likely intent or desired mood for the playlist when choosing the songs.
- Unless the user specifies otherwise, the resulting playlist must contain at least 30 tracks.
- The playlist must be cohesive and have a consistent theme or genre, unless the user requests something more eclectic.
- Creatively name and describe the playlist based on the theme or mood suggested by the prompt. The description must not be longer than 300 characters.
- Generate a prompt to create, using Dall-E, a playlist cover image that visually represents the playlist's theme or mood in a creative way, but avoid anything that may cause content policy violations in Dall-E or get flagged by OpenAI's safety systems.

You must return your response in JSON format using this exact structure:

{
  "name": "Your creatively named playlist",
  "description": "A creative description based on the user's prompt.",
  "cover_prompt": "A prompt to generate a playlist cover image.",
  "tracks": [
    {"artist": "Artist Name 1", "track": "Track Name 1"},
    {"artist": "Artist Name 2", "track": "Track Name 2"}
  ]
}"""


def sha256_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def taste_message(profile: TasteProfile) -> Optional[str]:
    if not profile:
        return None
    return (
        f"The user's favorite genres are {', '.join(profile.genres)}. "
        "You can use this information to guide your choices, but do not feel limited by it."
    )


def build_messages(prompt: str, profile: TasteProfile) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    bias = taste_message(profile)
    if bias:
        messages.append({"role": "system", "content": bias})
    messages.append({"role": "user", "content": prompt})
    return messages


def parse_plan(payload: Any) -> PlaylistPlan:
    if not isinstance(payload, dict):
        raise MalformedPlanError("OpenAI did not return an object")

    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MalformedPlanError("OpenAI name missing")

    description = payload.get("description")
    if not isinstance(description, str):
        raise MalformedPlanError("OpenAI description missing")

    cover_prompt = payload.get("cover_prompt")
    if not isinstance(cover_prompt, str):
        raise MalformedPlanError("OpenAI cover_prompt missing")

    tracks = payload.get("tracks")
    if not isinstance(tracks, list):
        raise MalformedPlanError("OpenAI tracks missing")

    track_requests: List[TrackRequest] = []
    for track in tracks:
        if not isinstance(track, dict):
            raise MalformedPlanError("OpenAI track malformed", {"track": track})
        artist = track.get("artist")
        title = track.get("track")
        if not isinstance(artist, str) or not isinstance(title, str):
            raise MalformedPlanError("OpenAI track missing fields", {"track": track})
        track_requests.append(TrackRequest(artist=artist.strip(), title=title.strip()))

    return PlaylistPlan(
        name=name.strip(),
        description=description.strip(),
        cover_prompt=cover_prompt.strip(),
        tracks=tuple(track_requests),
    )


class CreativeClient:
    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        chat_model: str = "gpt-4-turbo-preview",
        image_model: str = "dall-e-3",
        api_url: str = OPENAI_API_URL,
    ) -> None:
        self._api_key = api_key
        self._session = session or requests.Session()
        self._chat_model = chat_model
        self._image_model = image_model
        self._api_url = api_url.rstrip("/")

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return self._session.post(
            f"{self._api_url}{path}",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            data=json.dumps(payload),
            timeout=REQUEST_TIMEOUT,
        )

    def request_plan(self, prompt: str, profile: TasteProfile) -> PlaylistPlan:
        payload = {
            "model": self._chat_model,
            "response_format": {"type": "json_object"},
            "messages": build_messages(prompt, profile),
        }
        log(
            "info",
            "openai_api_call",
            call_type="chat",
            prompt_hash=sha256_hash(prompt),
            prompt_length_chars=len(prompt),
            genres=len(profile),
        )
        try:
            resp = self._post("/chat/completions", payload)
        except requests.RequestException as exc:
            raise CreativeError("openai_unavailable", {"error": str(exc)}) from exc

        if resp.status_code >= 400:
            log("warning", "OpenAI request failed", status=resp.status_code, body=resp.text)
            raise CreativeError("failed to generate playlist plan", {"status": resp.status_code})

        try:
            content = resp.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            log("critical", "Unexpected OpenAI response", response=resp.text)
            raise MalformedPlanError("invalid response from OpenAI") from exc

        plan = parse_plan(parsed)
        log(
            "info",
            "openai_playlist_plan",
            name=plan.name,
            track_count=len(plan.tracks),
        )
        return plan

    def plan_playlist(self, prompt: str, profile: Optional[TasteProfile] = None) -> Optional[PlaylistPlan]:
        try:
            return self.request_plan(prompt, profile or TasteProfile())
        except CreativeError as exc:
            log("warning", "Playlist plan unavailable", error=exc.message, details=exc.details)
            return None

    def generate_cover_image(self, prompt: str) -> Optional[bytes]:
        payload = {
            "model": self._image_model,
            "prompt": prompt,
            "n": 1,
            "size": "1024x1024",
            "response_format": "b64_json",
            "quality": "hd",
        }
        try:
            resp = self._post("/images/generations", payload)
        except requests.RequestException as exc:
            log("warning", "OpenAI image request failed", error=str(exc))
            return None
        if resp.status_code >= 400:
            log("warning", "OpenAI image request failed", status=resp.status_code, body=resp.text)
            return None
        try:
            data = resp.json()["data"][0]["b64_json"]
        except (KeyError, IndexError, TypeError, ValueError):
            log("warning", "OpenAI image response missing data")
            return None
        if not isinstance(data, str) or not data:
            log("warning", "OpenAI image response missing data")
            return None
        try:
            return base64.b64decode(data)
        except (binascii.Error, ValueError):
            log("warning", "OpenAI image payload is not valid base64")
            return None
