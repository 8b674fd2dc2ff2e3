import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigError

REQUEST_TIMEOUT = (10, 30)
SPOTIFY_API_URL = "https://api.spotify.com/v1"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
OPENAI_API_URL = "https://api.openai.com/v1"
PLAYLIST_URL_TEMPLATE = "https://open.spotify.com/playlist/{playlist_id}"

SSM_CACHE: Dict[str, Tuple[str, float]] = {}
_SSM_CLIENT: Optional[Any] = None

SECRET_KEYS = {
    "spotify_client_id": "SPOTIFY_CLIENT_ID",
    "spotify_client_secret": "SPOTIFY_CLIENT_SECRET",
    "spotify_refresh_token": "SPOTIFY_REFRESH_TOKEN",
    "openai_api_key": "OPENAI_API_KEY",
}


@dataclass(frozen=True)
class Settings:
    spotify_client_id: str
    spotify_client_secret: str
    spotify_refresh_token: str
    openai_api_key: str
    refresh_token_param: Optional[str] = None
    chat_model: str = "gpt-4-turbo-preview"
    image_model: str = "dall-e-3"
    top_genres_limit: int = 10
    top_genres_time_range: str = "long_term"
    search_concurrency: int = 5
    default_market: Optional[str] = None
    playlist_public: bool = True
    cover_upload_max_attempts: int = 5
    cover_upload_base_delay_s: float = 1.0
    run_timeout_seconds: Optional[float] = None
    ssm_cache_ttl_seconds: int = 300


def get_ssm_client() -> Any:
    global _SSM_CLIENT
    if _SSM_CLIENT is None:
        _SSM_CLIENT = boto3.client("ssm")
    return _SSM_CLIENT


def ssm_get_parameter(name: str, ttl_seconds: int = 300, force_refresh: bool = False) -> str:
    now = time.time()
    if not force_refresh:
        cached = SSM_CACHE.get(name)
        if cached and cached[1] > now:
            return cached[0]

    try:
        client = get_ssm_client()
    except BotoCoreError as exc:
        raise ConfigError("unable to create ssm client", str(exc)) from exc
    try:
        response = client.get_parameter(Name=name, WithDecryption=True)
    except client.exceptions.ParameterNotFound as exc:
        raise ConfigError(f"ssm parameter {name} not found") from exc
    except (BotoCoreError, ClientError) as exc:
        raise ConfigError(f"unable to read ssm parameter {name}", str(exc)) from exc

    value = response["Parameter"]["Value"]
    SSM_CACHE[name] = (value, now + ttl_seconds)
    return value


def ssm_put_parameter(name: str, value: str, ttl_seconds: int = 300, secure: bool = True) -> None:
    SSM_CACHE[name] = (value, time.time() + ttl_seconds)
    get_ssm_client().put_parameter(
        Name=name,
        Value=value,
        Overwrite=True,
        Type="SecureString" if secure else "String",
    )


def _to_int(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"expected an integer, got {value!r}") from exc


def _to_float(value: Optional[str], default: Optional[float]) -> Optional[float]:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"expected a number, got {value!r}") from exc


def _resolve_secret(env: Mapping[str, str], env_name: str, ttl_seconds: int) -> str:
    direct = (env.get(env_name) or "").strip()
    if direct:
        return direct
    param_name = (env.get(f"PARAM_{env_name}") or "").strip()
    if param_name:
        return ssm_get_parameter(param_name, ttl_seconds=ttl_seconds)
    raise ConfigError(
        f"missing configuration for {env_name}",
        {"env": env_name, "param_env": f"PARAM_{env_name}"},
    )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    ttl_seconds = _to_int(env.get("SSM_CACHE_TTL_SECONDS"), 300)

    secrets = {
        field: _resolve_secret(env, env_name, ttl_seconds)
        for field, env_name in SECRET_KEYS.items()
    }
    # Only a parameter-backed refresh token can be written back after rotation.
    refresh_token_param = None
    if not (env.get("SPOTIFY_REFRESH_TOKEN") or "").strip():
        refresh_token_param = (env.get("PARAM_SPOTIFY_REFRESH_TOKEN") or "").strip() or None

    concurrency = _to_int(env.get("SEARCH_CONCURRENCY"), 5)
    market = (env.get("DEFAULT_MARKET") or "").strip() or None

    return Settings(
        refresh_token_param=refresh_token_param,
        chat_model=env.get("OPENAI_CHAT_MODEL") or "gpt-4-turbo-preview",
        image_model=env.get("OPENAI_IMAGE_MODEL") or "dall-e-3",
        top_genres_limit=_to_int(env.get("TOP_GENRES_LIMIT"), 10),
        top_genres_time_range=env.get("TOP_GENRES_TIME_RANGE") or "long_term",
        search_concurrency=max(1, min(concurrency, 10)),
        default_market=market,
        playlist_public=env.get("DEFAULT_PLAYLIST_PUBLIC", "true").lower() == "true",
        cover_upload_max_attempts=_to_int(env.get("COVER_UPLOAD_MAX_ATTEMPTS"), 5),
        cover_upload_base_delay_s=_to_float(env.get("COVER_UPLOAD_BASE_DELAY_S"), 1.0),
        run_timeout_seconds=_to_float(env.get("RUN_TIMEOUT_SECONDS"), None),
        ssm_cache_ttl_seconds=ttl_seconds,
        **secrets,
    )
