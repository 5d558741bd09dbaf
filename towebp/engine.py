from __future__ import annotations

import io
import logging
import threading
from pathlib import Path

from PIL import Image, ImageCms, ImageOps, UnidentifiedImageError

from .errors import CodecError, SourceUnreadable
from .settings import DEFAULT_MAX_INPUT_PIXELS


logger = logging.getLogger(__name__)

# Lower-cased fragments of ICC profile descriptions we pull back into sRGB.
WIDE_GAMUT_MARKERS = (
    "linear",
    "display p3",
    "p3",
    "adobe rgb",
    "prophoto",
    "rec2020",
    "rec. 2020",
    "bt.2020",
)

WEBP_METHOD = 6  # 0-6, fixed at the slowest / smallest setting
WEBP_ALPHA_QUALITY = 100

_OPEN_LOCK = threading.Lock()


class PillowWebPCodec:
    """
    Decode anything Pillow can read and encode it as lossy WebP.

    The converter only ever calls encode(); anything with the same
    signature can be dropped in instead (tests use fakes).
    """

    def __init__(self, max_input_pixels: int = DEFAULT_MAX_INPUT_PIXELS) -> None:
        self.max_input_pixels = max_input_pixels

    def encode(self, source: Path, destination: Path, quality: int) -> None:
        try:
            im = _open_unbounded(source)
        except (FileNotFoundError, PermissionError, IsADirectoryError) as e:
            raise SourceUnreadable(f"Cannot read {source.name}: {e}") from e
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise CodecError(f"Cannot decode {source.name}: {e}") from e

        with im:
            w, h = im.size
            if w * h > self.max_input_pixels:
                raise CodecError(
                    f"Image too large: {w}x{h} exceeds {self.max_input_pixels} pixels"
                )

            try:
                # First frame only for animated GIF/WebP/TIFF.
                im.load()
                out = ImageOps.exif_transpose(im)
                out = _to_srgb(out)
                out = _webp_mode(out)
                out.save(destination, format="WEBP", **build_save_kwargs(quality))
            except (OSError, ValueError, SyntaxError, ImageCms.PyCMSError, Image.DecompressionBombError) as e:
                raise CodecError(f"Cannot convert {source.name}: {e}") from e


def _open_unbounded(source: Path) -> Image.Image:
    # Pillow's global decompression-bomb limit is lower than ours;
    # max_input_pixels is checked by the caller instead.
    with _OPEN_LOCK:
        saved = Image.MAX_IMAGE_PIXELS
        Image.MAX_IMAGE_PIXELS = None
        try:
            return Image.open(source)
        finally:
            Image.MAX_IMAGE_PIXELS = saved


def build_save_kwargs(quality: int) -> dict:
    return {
        "quality": int(quality),
        "method": WEBP_METHOD,
        "alpha_quality": WEBP_ALPHA_QUALITY,
        "lossless": False,
    }


def is_wide_gamut(description: str) -> bool:
    d = description.lower()
    return any(m in d for m in WIDE_GAMUT_MARKERS)


def _to_srgb(im: Image.Image) -> Image.Image:
    icc = im.info.get("icc_profile")
    if not icc:
        return im

    try:
        src_profile = ImageCms.ImageCmsProfile(io.BytesIO(icc))
        description = ImageCms.getProfileDescription(src_profile).strip()
    except (ImageCms.PyCMSError, OSError, ValueError):
        logger.debug("Ignoring unreadable ICC profile")
        return im

    if not is_wide_gamut(description):
        return im

    if im.mode not in ("RGB", "RGBA"):
        im = im.convert("RGBA" if _has_alpha(im) else "RGB")

    srgb = ImageCms.createProfile("sRGB")
    converted = ImageCms.profileToProfile(im, src_profile, srgb, outputMode=im.mode)
    logger.debug("Converted %r to sRGB", description)
    # The old profile no longer describes the pixels.
    converted.info.pop("icc_profile", None)
    return converted


def _webp_mode(im: Image.Image) -> Image.Image:
    if im.mode in ("RGB", "RGBA"):
        return im
    return im.convert("RGBA" if _has_alpha(im) else "RGB")


def _has_alpha(im: Image.Image) -> bool:
    if im.mode in ("RGBA", "LA", "PA"):
        return True
    if im.mode == "P" and "transparency" in im.info:
        return True
    return False
