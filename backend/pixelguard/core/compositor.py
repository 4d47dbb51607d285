import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image, ImageFilter

from pixelguard.core.errors import CompositingError, InvalidRequestError

THRESHOLD = 128
TRANSITION = 30  # +/- around THRESHOLD where original and candidate are blended
FEATHER_RADIUS = 1.5

# Fixed sharpening for generator-side softening.
SHARPEN_RADIUS = 0.8
SHARPEN_PERCENT = 120
SHARPEN_THRESHOLD = 2

SUPPORTED_FORMATS = ("JPEG", "PNG", "WEBP")


@dataclass(frozen=True)
class CompositeStats:
    edited_pixels: int = 0
    preserved_pixels: int = 0
    blended_pixels: int = 0

    @property
    def total(self) -> int:
        return self.edited_pixels + self.preserved_pixels + self.blended_pixels

    def __add__(self, other: "CompositeStats") -> "CompositeStats":
        return CompositeStats(
            self.edited_pixels + other.edited_pixels,
            self.preserved_pixels + other.preserved_pixels,
            self.blended_pixels + other.blended_pixels,
        )


@dataclass(frozen=True)
class CompositeResult:
    data: bytes
    image: Image.Image
    stats: CompositeStats
    format: str
    mask_applied: bool


def normalize_format(fmt: str) -> str:
    fmt = (fmt or "").upper()
    if fmt == "JPG":
        fmt = "JPEG"
    if fmt not in SUPPORTED_FORMATS:
        raise InvalidRequestError(f"Unsupported output format: {fmt or '<empty>'}")
    return fmt


def encode_image(image: Image.Image, fmt: str, exif: Optional[bytes] = None) -> bytes:
    """Encode losslessly, or at maximum quality for JPEG."""
    fmt = normalize_format(fmt)
    params = {}
    if exif:
        params["exif"] = exif
    if fmt == "JPEG":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        params.update(quality=100, subsampling=0)
    elif fmt == "WEBP":
        params["lossless"] = True
    buf = BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


def blend_rows(
    original: np.ndarray,
    candidate: np.ndarray,
    mask: np.ndarray,
    out: np.ndarray,
    threshold: int = THRESHOLD,
    transition: int = TRANSITION,
) -> CompositeStats:
    """
    Threshold blend of one band of rows, written into ``out``.

    mask > T+D  -> candidate pixel
    mask < T-D  -> original pixel, untouched
    otherwise   -> alpha = (mask - (T-D)) / 2D, rounded half up
    """
    low = threshold - transition
    high = threshold + transition
    m = mask.astype(np.int32)
    edited = m > high
    preserved = m < low
    band = ~(edited | preserved)

    out[preserved] = original[preserved]
    out[edited] = candidate[edited]

    blended = int(np.count_nonzero(band))
    if blended:
        alpha = ((m[band] - low) / float(high - low))[:, None]
        mixed = original[band].astype(np.float64) * (1.0 - alpha) + candidate[band].astype(np.float64) * alpha
        out[band] = np.floor(mixed + 0.5).astype(np.uint8)

    return CompositeStats(
        edited_pixels=int(np.count_nonzero(edited)),
        preserved_pixels=int(np.count_nonzero(preserved)),
        blended_pixels=blended,
    )


HIGH_BIT_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I")


def to_eight_bit(image: Image.Image) -> Image.Image:
    """
    Scale 16-bit grayscale images down to 8-bit L.

    Pillow's own conversion clips these to 255 instead of scaling.
    """
    if image.mode not in HIGH_BIT_MODES:
        return image
    values = np.asarray(image).astype(np.int64)
    return Image.fromarray((np.clip(values, 0, 65535) >> 8).astype(np.uint8))


def _has_alpha(image: Image.Image) -> bool:
    return "A" in image.getbands() or "transparency" in image.info


class Compositor:
    """
    Fuses the generator's candidate back onto the original.

    Pixels outside the edit mask come from the original bit-for-bit.
    """

    def __init__(
        self,
        threshold: int = THRESHOLD,
        transition: int = TRANSITION,
        feather_radius: float = FEATHER_RADIUS,
        max_workers: int = 1,
        tile_rows: int = 256,
        logger: Optional[logging.Logger] = None,
    ):
        self.threshold = threshold
        self.transition = transition
        self.feather_radius = feather_radius
        self.max_workers = max(1, max_workers)
        self.tile_rows = max(1, tile_rows)
        self.log = logger or logging.getLogger(__name__)

    def prepare_candidate(self, candidate: Image.Image, size: Tuple[int, int], mode: str) -> Image.Image:
        """Resize to the original's dimensions and apply the fixed sharpening."""
        resized = candidate.convert(mode)
        if resized.size != size:
            resized = resized.resize(size, Image.LANCZOS)
        sharpen = ImageFilter.UnsharpMask(
            radius=SHARPEN_RADIUS, percent=SHARPEN_PERCENT, threshold=SHARPEN_THRESHOLD
        )
        if mode == "RGBA":
            alpha = resized.getchannel("A")
            sharpened = resized.convert("RGB").filter(sharpen)
            sharpened.putalpha(alpha)
            return sharpened
        return resized.filter(sharpen)

    def prepare_mask(self, mask: Image.Image, size: Tuple[int, int]) -> np.ndarray:
        """
        Resize, convert to grayscale and feather the mask.

        The feather only softens the editable side: a pixel never ends up
        more editable than the combined mask says.
        """
        gray = mask.convert("L") if mask.mode != "L" else mask
        if gray.size != size:
            gray = gray.resize(size, Image.BILINEAR)
        feathered = gray.filter(ImageFilter.GaussianBlur(self.feather_radius))
        return np.minimum(np.asarray(feathered), np.asarray(gray))

    def _row_bands(self, height: int) -> List[Tuple[int, int]]:
        return [(start, min(start + self.tile_rows, height)) for start in range(0, height, self.tile_rows)]

    def blend(self, original: np.ndarray, candidate: np.ndarray, mask: np.ndarray) -> Tuple[np.ndarray, CompositeStats]:
        out = np.empty_like(original)

        def run(rows: Tuple[int, int]) -> CompositeStats:
            start, stop = rows
            return blend_rows(
                original[start:stop],
                candidate[start:stop],
                mask[start:stop],
                out[start:stop],
                self.threshold,
                self.transition,
            )

        bands = self._row_bands(original.shape[0])
        if self.max_workers > 1 and len(bands) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(run, bands))
        else:
            results = [run(rows) for rows in bands]

        stats = CompositeStats()
        for partial in results:
            stats = stats + partial
        return out, stats

    def composite(
        self,
        original: Image.Image,
        candidate: Image.Image,
        mask: Optional[Image.Image],
        output_format: str = "PNG",
        exif: Optional[bytes] = None,
    ) -> CompositeResult:
        """
        Blend ``candidate`` onto ``original`` through ``mask``.

        With no mask the candidate is trusted as-is. Any failure raises
        CompositingError; there is no silent fallback to the candidate.
        """
        output_format = normalize_format(output_format)

        if mask is None:
            width, height = candidate.size
            self.log.info("No mask, returning candidate unchanged")
            try:
                data = encode_image(candidate, output_format, exif)
            except (OSError, ValueError) as exc:
                self.log.error("Encoding candidate failed", exc_info=True)
                raise CompositingError(f"Encoding candidate failed: {exc}") from exc
            return CompositeResult(
                data=data,
                image=candidate,
                stats=CompositeStats(edited_pixels=width * height),
                format=output_format,
                mask_applied=False,
            )

        try:
            original = to_eight_bit(original)
            mode = "RGBA" if _has_alpha(original) else "RGB"
            base = original.convert(mode)
            size = base.size

            edited = self.prepare_candidate(to_eight_bit(candidate), size, mode)
            feathered = self.prepare_mask(mask, size)

            out, stats = self.blend(np.asarray(base), np.asarray(edited), feathered)
            image = Image.fromarray(out)
            data = encode_image(image, output_format, exif)
        except CompositingError:
            raise
        except Exception as exc:
            self.log.error("Compositing failed", exc_info=True)
            raise CompositingError(f"Compositing failed: {exc}") from exc

        total = stats.total or 1
        self.log.info(
            "Composited %d edited (%.1f%%), %d preserved (%.1f%%), %d blended",
            stats.edited_pixels,
            100.0 * stats.edited_pixels / total,
            stats.preserved_pixels,
            100.0 * stats.preserved_pixels / total,
            stats.blended_pixels,
        )
        return CompositeResult(
            data=data,
            image=image,
            stats=stats,
            format=output_format,
            mask_applied=True,
        )
