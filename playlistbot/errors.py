from typing import Any, Dict, Optional


class PlaylistBotError(Exception):
    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> Dict[str, Any]:
        payload = {"status": "error", "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ConfigError(PlaylistBotError):
    pass


class AuthError(PlaylistBotError):
    """Token exchange or identity lookup failed. Never retried."""


class CatalogError(PlaylistBotError):
    def __init__(
        self, reason: str, message: Optional[str] = None, details: Optional[Any] = None
    ) -> None:
        super().__init__(message or reason, details)
        self.reason = reason


class CreativeError(PlaylistBotError):
    pass


class MalformedPlanError(CreativeError):
    """The chat completion returned content that is not a usable plan."""


class UploadFailure(PlaylistBotError):
    pass


class DeadlineExceeded(PlaylistBotError):
    pass
