import base64
import binascii
import logging
import re
from dataclasses import asdict, dataclass
from io import BytesIO
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageOps

from pixelguard.core.errors import MaskResolutionError

PROTECT_THRESHOLD = 128

_DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")

Size = Tuple[int, int]


def to_grayscale(mask: Image.Image) -> Image.Image:
    """Return an L-mode view of the mask (luminance for colour masks)."""
    if mask.mode == "L":
        return mask
    return mask.convert("L")


def decode_mask(value: Union[str, bytes]) -> Image.Image:
    """
    Decode a mask from a PNG data URL, bare base64 text, or raw bytes.
    Returns an L-mode image.
    """
    try:
        if isinstance(value, str):
            raw = base64.b64decode(_DATA_URL_PREFIX.sub("", value.strip()), validate=True)
        else:
            raw = bytes(value)
        mask = Image.open(BytesIO(raw))
        mask.load()
    except (binascii.Error, ValueError, OSError) as exc:
        raise MaskResolutionError(f"Mask could not be decoded: {exc}") from exc
    return to_grayscale(mask)


def encode_mask_png(mask: Image.Image) -> bytes:
    buf = BytesIO()
    to_grayscale(mask).save(buf, format="PNG")
    return buf.getvalue()


def mask_to_data_url(mask: Image.Image) -> str:
    return "data:image/png;base64," + base64.b64encode(encode_mask_png(mask)).decode("ascii")


def resample_mask(mask: Image.Image, size: Size) -> Image.Image:
    """Nearest-neighbour resize; never truncates."""
    if mask.size == size:
        return mask
    try:
        return mask.resize(size, Image.NEAREST)
    except (OSError, ValueError) as exc:
        raise MaskResolutionError(f"Mask could not be resampled to {size}: {exc}") from exc


@dataclass(frozen=True)
class MaskStats:
    protected_pixels: int
    editable_pixels: int
    total_pixels: int


class MaskCombiner:
    """
    Merges an edit mask and a protect mask into the single authoritative
    edit mask. Protection always wins.
    """

    def __init__(self, threshold: int = PROTECT_THRESHOLD, logger: Optional[logging.Logger] = None):
        self.threshold = threshold
        self.log = logger or logging.getLogger(__name__)

    def _align(
        self,
        edit: Optional[Image.Image],
        protect: Optional[Image.Image],
        target_size: Optional[Size],
    ) -> Tuple[Optional[Image.Image], Optional[Image.Image]]:
        if target_size is not None:
            if edit is not None:
                edit = resample_mask(edit, target_size)
            if protect is not None:
                protect = resample_mask(protect, target_size)
            return edit, protect

        if edit is not None and protect is not None and edit.size != protect.size:
            edit_area = edit.size[0] * edit.size[1]
            protect_area = protect.size[0] * protect.size[1]
            if edit_area >= protect_area:
                protect = resample_mask(protect, edit.size)
            else:
                edit = resample_mask(edit, protect.size)
        return edit, protect

    def combine_with_stats(
        self,
        edit_mask: Optional[Image.Image],
        protect_mask: Optional[Image.Image],
        target_size: Optional[Size] = None,
    ) -> Tuple[Optional[Image.Image], MaskStats]:
        if edit_mask is None and protect_mask is None:
            self.log.info("No masks provided, whole image is editable")
            return None, MaskStats(0, 0, 0)

        try:
            edit = to_grayscale(edit_mask) if edit_mask is not None else None
            protect = to_grayscale(protect_mask) if protect_mask is not None else None
        except (OSError, ValueError) as exc:
            raise MaskResolutionError(f"Mask could not be converted to grayscale: {exc}") from exc
        edit, protect = self._align(edit, protect, target_size)

        if protect is None:
            values = np.asarray(edit)
            stats = MaskStats(0, int(np.count_nonzero(values > self.threshold)), int(values.size))
            self.log.info("Using edit mask only", extra={"mask_stats": asdict(stats)})
            return edit, stats

        protect_values = np.asarray(protect)
        forced = protect_values > self.threshold

        if edit is None:
            combined = ImageOps.invert(protect)
            values = np.asarray(combined)
            stats = MaskStats(
                int(np.count_nonzero(forced)),
                int(np.count_nonzero(values > self.threshold)),
                int(values.size),
            )
            self.log.info("Inverted protect mask", extra={"mask_stats": asdict(stats)})
            return combined, stats

        values = np.array(edit, dtype=np.uint8)
        values[forced] = 0
        stats = MaskStats(
            int(np.count_nonzero(forced)),
            int(np.count_nonzero(values > self.threshold)),
            int(values.size),
        )
        self.log.info(
            "Combined edit and protect masks",
            extra={
                "mask_stats": asdict(stats),
                "protected_percent": round(100.0 * stats.protected_pixels / stats.total_pixels, 2),
                "editable_percent": round(100.0 * stats.editable_pixels / stats.total_pixels, 2),
            },
        )
        return Image.fromarray(values), stats

    def combine(
        self,
        edit_mask: Optional[Image.Image],
        protect_mask: Optional[Image.Image],
        target_size: Optional[Size] = None,
    ) -> Optional[Image.Image]:
        mask, _ = self.combine_with_stats(edit_mask, protect_mask, target_size)
        return mask
