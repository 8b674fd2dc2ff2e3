import threading
from typing import Any, Dict, Optional, Tuple

import requests

from .config import REQUEST_TIMEOUT, SPOTIFY_TOKEN_URL, Settings, ssm_put_parameter
from .errors import AuthError
from .logs import log


def parse_spotify_error(
    payload: Optional[Dict[str, Any]]
) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(payload, dict):
        return None, None
    error_value = payload.get("error")
    error_description = payload.get("error_description")
    if isinstance(error_value, dict):
        error_value = error_value.get("message")
    if isinstance(error_description, dict):
        error_description = error_description.get("message")
    if isinstance(error_value, str):
        error_value = error_value.strip()
    if isinstance(error_description, str):
        error_description = error_description.strip()
    return error_value, error_description


class TokenProvider:
    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        token_url: str = SPOTIFY_TOKEN_URL,
    ) -> None:
        self._client_id = settings.spotify_client_id
        self._client_secret = settings.spotify_client_secret
        self._refresh_token = settings.spotify_refresh_token
        self._refresh_token_param = settings.refresh_token_param
        self._ssm_ttl = settings.ssm_cache_ttl_seconds
        self._session = session or requests.Session()
        self._token_url = token_url
        self._lock = threading.Lock()

    def refresh(self) -> str:
        with self._lock:
            return self._exchange_refresh_token()

    def _exchange_refresh_token(self) -> str:
        try:
            resp = self._session.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
                auth=(self._client_id, self._client_secret),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            log("warning", "Spotify token refresh failed", error=str(exc))
            raise AuthError("unable to reach Spotify token endpoint", str(exc)) from exc

        payload: Dict[str, Any] = {}
        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code >= 400:
            error_code, description = parse_spotify_error(payload)
            log(
                "warning",
                "Spotify token refresh failed",
                status=resp.status_code,
                error=error_code,
                description=description,
            )
            raise AuthError(
                "unable to refresh Spotify token",
                {"status": resp.status_code, "error": error_code},
            )

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            log("critical", "Spotify response missing access_token")
            raise AuthError("Spotify token missing")

        rotated = payload.get("refresh_token")
        if rotated and rotated != self._refresh_token:
            self._refresh_token = rotated
            self._persist_refresh_token(rotated)
        return token

    def _persist_refresh_token(self, value: str) -> None:
        if not self._refresh_token_param:
            return
        try:
            ssm_put_parameter(self._refresh_token_param, value, ttl_seconds=self._ssm_ttl)
        except Exception as exc:  # pylint: disable=broad-except
            log(
                "warning",
                "Failed to persist rotated Spotify refresh token",
                error=str(exc),
            )
