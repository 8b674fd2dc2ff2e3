from .auth import TokenProvider
from .catalog import CatalogClient
from .config import Settings, load_settings
from .cover import encode_cover
from .creative import CreativeClient
from .pipeline import PipelineResult, PipelineState, PlaylistPipeline

__version__ = "0.1.0"

__all__ = [
    "CatalogClient",
    "CreativeClient",
    "PipelineResult",
    "PipelineState",
    "PlaylistPipeline",
    "Settings",
    "TokenProvider",
    "encode_cover",
    "load_settings",
]
