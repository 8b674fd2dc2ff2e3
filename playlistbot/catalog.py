import base64
import json
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from .auth import TokenProvider
from .config import REQUEST_TIMEOUT, SPOTIFY_API_URL
from .errors import AuthError, CatalogError, DeadlineExceeded, UploadFailure
from .logs import log
from .models import PlaylistHandle, TasteProfile
from .retry import Deadline, RetryPolicy, sleep_for

TOP_ARTISTS_FETCH_LIMIT = 50
APPEND_CHUNK_SIZE = 100


def flatten_genres(artists: List[Dict[str, Any]], limit: int) -> List[str]:
    seen = set()
    genres: List[str] = []
    for artist in artists:
        if not isinstance(artist, dict):
            continue
        for genre in artist.get("genres") or []:
            if isinstance(genre, str) and genre not in seen:
                seen.add(genre)
                genres.append(genre)
    return genres[: max(limit, 0)]


class CatalogClient:
    """Bearer-authenticated wrapper over the Spotify Web API surface the pipeline uses."""

    def __init__(
        self,
        access_token: str,
        session: Optional[requests.Session] = None,
        token_provider: Optional[TokenProvider] = None,
        market: Optional[str] = None,
        public: bool = True,
        api_url: str = SPOTIFY_API_URL,
    ) -> None:
        self._access_token = access_token
        self._session = session or requests.Session()
        self._token_provider = token_provider
        self._market = market
        self._public = public
        self._api_url = api_url.rstrip("/")
        self.user_id: Optional[str] = None
        self._reauth_lock = threading.Lock()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> requests.Response:
        url = f"{self._api_url}{path}"
        if json_body is not None:
            data = json.dumps(json_body)
            content_type = "application/json"

        def _send(token: str) -> requests.Response:
            headers = {"Authorization": f"Bearer {token}"}
            if content_type:
                headers["Content-Type"] = content_type
            return self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                data=data,
                timeout=REQUEST_TIMEOUT,
            )

        sent_token = self._access_token
        resp = _send(sent_token)
        if resp.status_code == 401 and self._token_provider is not None:
            with self._reauth_lock:
                # another worker may have refreshed while this request was in flight
                if self._access_token == sent_token:
                    log("warning", "Spotify token rejected, refreshing", path=path)
                    self._access_token = self._token_provider.refresh()
                token = self._access_token
            resp = _send(token)
        if resp.status_code >= 400:
            log(
                "warning",
                f"Spotify {method} failed",
                url=url,
                status=resp.status_code,
                body=resp.text,
            )
        return resp

    def identity(self) -> str:
        try:
            resp = self._request("GET", "/me")
        except requests.RequestException as exc:
            raise AuthError("unable to fetch Spotify user", str(exc)) from exc
        if resp.status_code >= 400:
            raise AuthError("unable to fetch Spotify user", {"status": resp.status_code})
        try:
            user_id = resp.json().get("id")
        except ValueError:
            user_id = None
        if not user_id:
            raise AuthError("Spotify user payload missing id")
        self.user_id = user_id
        return user_id

    def top_genres(self, limit: int = 10, time_range: str = "long_term") -> TasteProfile:
        try:
            resp = self._request(
                "GET",
                "/me/top/artists",
                params={"limit": TOP_ARTISTS_FETCH_LIMIT, "time_range": time_range},
            )
            if resp.status_code >= 400:
                return TasteProfile()
            artists = resp.json().get("items") or []
        except (requests.RequestException, AuthError, ValueError, AttributeError) as exc:
            log("warning", "Top artists unavailable", error=str(exc))
            return TasteProfile()
        return TasteProfile(tuple(flatten_genres(artists, limit)))

    def create_playlist(
        self, name: str, description: str = "", user_id: Optional[str] = None
    ) -> PlaylistHandle:
        owner = user_id or self.user_id or self.identity()
        payload = {"name": name, "description": description or "", "public": self._public}
        try:
            resp = self._request("POST", f"/users/{owner}/playlists", json_body=payload)
            playlist_id = resp.json().get("id") if resp.status_code < 400 else None
        except (requests.RequestException, ValueError, AttributeError) as exc:
            raise CatalogError("create_failed", "unable to create playlist", str(exc)) from exc
        if not playlist_id:
            raise CatalogError(
                "create_failed", "playlist response missing id", {"status": resp.status_code}
            )
        return PlaylistHandle(playlist_id)

    def search_track(self, title: Optional[str], artist: Optional[str]) -> Optional[str]:
        if not title or not artist:
            return None
        params: Dict[str, Any] = {
            "q": f"{title} artist:{artist}",
            "type": "track",
            "limit": 1,
        }
        if self._market:
            params["market"] = self._market
        try:
            resp = self._request("GET", "/search", params=params)
            if resp.status_code >= 400:
                return None
            items = (resp.json().get("tracks") or {}).get("items") or []
            if not items:
                log("info", "Track not found", title=title, artist=artist)
                return None
            best = items[0]
            artists = ", ".join(a.get("name", "") for a in best.get("artists") or [])
            name = best.get("name", "")
            uri = best.get("uri")
        except (
            requests.RequestException,
            AuthError,
            ValueError,
            AttributeError,
            KeyError,
            TypeError,
        ) as exc:
            log("warning", "Track search failed", title=title, artist=artist, error=str(exc))
            return None
        log("info", f"{artists} – {name}")
        return uri if isinstance(uri, str) else None

    def append_tracks(self, handle: PlaylistHandle, uris: List[str]) -> None:
        path = f"/playlists/{handle.id}/tracks"
        for i in range(0, len(uris), APPEND_CHUNK_SIZE):
            chunk = uris[i : i + APPEND_CHUNK_SIZE]
            try:
                resp = self._request("POST", path, json_body={"uris": chunk})
            except requests.RequestException as exc:
                raise CatalogError("append_failed", "unable to add tracks", str(exc)) from exc
            if resp.status_code >= 400:
                raise CatalogError(
                    "append_failed",
                    "unable to add tracks",
                    {"status": resp.status_code, "offset": i},
                )

    def upload_cover_once(self, handle: PlaylistHandle, b64_image: str) -> None:
        try:
            resp = self._request(
                "PUT",
                f"/playlists/{handle.id}/images",
                data=b64_image,
                content_type="image/jpeg",
            )
        except (requests.RequestException, AuthError) as exc:
            raise UploadFailure("cover upload request failed", str(exc)) from exc
        if resp.status_code >= 400:
            raise UploadFailure("cover upload rejected", {"status": resp.status_code})

    def set_cover(
        self,
        handle: PlaylistHandle,
        jpeg_bytes: bytes,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = sleep_for,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        policy = policy or RetryPolicy()
        b64_image = base64.b64encode(jpeg_bytes).decode("ascii")

        def attempt_upload(attempt: int) -> bool:
            try:
                self.upload_cover_once(handle, b64_image)
            except UploadFailure as exc:
                log(
                    "warning",
                    "Cover upload failed",
                    attempt=attempt,
                    error=exc.message,
                    details=exc.details,
                )
                return False
            return True

        try:
            return policy.run(attempt_upload, sleep=sleep, deadline=deadline, phase="cover_upload")
        except DeadlineExceeded:
            return False
