from io import BytesIO
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import CreativeError
from .logs import log
from .models import MAX_COVER_BYTES, MIN_COVER_QUALITY, CoverAsset

COVER_SIZE = (512, 512)
INITIAL_QUALITY = 80
QUALITY_STEP = 5


def _to_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def load_cover_image(raw: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise CreativeError("cover_unreadable", {"error": str(exc)}) from exc
    return img.convert("RGB").resize(COVER_SIZE, Image.Resampling.LANCZOS)


def encode_asset(asset: CoverAsset, min_quality: int = MIN_COVER_QUALITY) -> bytes:
    """Encode ``asset.raw`` as a 512x512 JPEG no larger than ``asset.max_bytes``.

    Quality starts at ``asset.quality`` and drops by 5 while the output is too
    large and quality is still above ``min_quality``. If the ceiling cannot be
    met, the smallest attempt is returned; the upload is the final gate.
    """
    min_quality = max(min_quality, MIN_COVER_QUALITY)
    img = load_cover_image(asset.raw)
    data = _to_jpeg(img, asset.quality)
    asset.attempts.append(asset.quality)

    while len(data) > asset.max_bytes and asset.quality > min_quality:
        asset.set_quality(max(asset.quality - QUALITY_STEP, min_quality))
        data = _to_jpeg(img, asset.quality)
        asset.attempts.append(asset.quality)

    if len(data) > asset.max_bytes:
        log(
            "warning",
            "Cover still exceeds size limit at minimum quality",
            size=len(data),
            max_bytes=asset.max_bytes,
            quality=asset.quality,
        )
    asset.encoded = data
    return data


def encode_cover(
    raw: bytes,
    max_bytes: int = MAX_COVER_BYTES,
    min_quality: int = MIN_COVER_QUALITY,
    initial_quality: Optional[int] = None,
) -> bytes:
    asset = CoverAsset(raw=raw, max_bytes=max_bytes)
    if initial_quality is not None:
        asset.set_quality(initial_quality)
    return encode_asset(asset, min_quality=min_quality)
