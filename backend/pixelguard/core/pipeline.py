import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image

from pixelguard.core.compositor import CompositeResult, Compositor
from pixelguard.core.errors import CompositingError, GenerationTimeoutError, MaskResolutionError
from pixelguard.core.masks import MaskCombiner
from pixelguard.core.normalizer import FormatNormalizer
from pixelguard.services.gemini_image import GeneratedEdit


@dataclass(frozen=True)
class EditRequest:
    image_bytes: bytes
    mime_type: str
    prompt: str
    model: Optional[str] = None
    mask: Optional[Image.Image] = None  # combined mask, original-image space
    preserve_exif: bool = False
    allow_unmasked_fallback: bool = False


@dataclass(frozen=True)
class EditOutcome:
    result: CompositeResult
    generator_text: Optional[str]
    processing_ms: int


class EditPipeline:
    """
    Orchestrates one edit request:
    normalize original -> generate candidate -> composite -> carry EXIF.
    """

    def __init__(
        self,
        generator,
        normalizer: Optional[FormatNormalizer] = None,
        combiner: Optional[MaskCombiner] = None,
        compositor: Optional[Compositor] = None,
        output_format: str = "PNG",
        logger: Optional[logging.Logger] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.generator = generator
        self.normalizer = normalizer or FormatNormalizer(logger=self.log)
        self.combiner = combiner or MaskCombiner(logger=self.log)
        self.compositor = compositor or Compositor(logger=self.log)
        self.output_format = output_format

    def prepare_mask(
        self,
        edit_mask: Optional[Image.Image],
        protect_mask: Optional[Image.Image],
        size: Tuple[int, int],
    ) -> Optional[Image.Image]:
        """Combine both channels, reprojected to the original image size."""
        return self.combiner.combine(edit_mask, protect_mask, target_size=size)

    async def generate(self, request: EditRequest, timeout: Optional[float] = None) -> GeneratedEdit:
        call = asyncio.to_thread(
            self.generator.generate,
            request.image_bytes,
            request.mime_type,
            request.prompt,
            request.mask,
            request.model,
        )
        if not timeout:
            return await call
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(f"Image generator did not respond within {timeout:g}s") from exc

    def composite(
        self,
        request: EditRequest,
        original: Image.Image,
        candidate: Image.Image,
    ) -> CompositeResult:
        exif = original.info.get("exif") if request.preserve_exif else None
        try:
            return self.compositor.composite(original, candidate, request.mask, self.output_format, exif)
        except CompositingError:
            if not request.allow_unmasked_fallback:
                raise
            self.log.warning(
                "Compositing failed; returning unmasked candidate as requested by caller",
                exc_info=True,
            )
            return self.compositor.composite(original, candidate, None, self.output_format, exif)

    async def run(
        self,
        request: EditRequest,
        original: Optional[Image.Image] = None,
        timeout: Optional[float] = None,
    ) -> EditOutcome:
        start = time.monotonic()
        if original is None:
            original = await asyncio.to_thread(self.normalizer.open, request.image_bytes)

        if request.mask is not None and request.mask.size != original.size:
            raise MaskResolutionError(
                f"Mask size {request.mask.size} does not match original size {original.size}"
            )

        # Cancellation or timeout here means the compositor never runs.
        generated = await self.generate(request, timeout)

        result = await asyncio.to_thread(self.composite, request, original, generated.image)
        elapsed = int((time.monotonic() - start) * 1000)
        self.log.info(
            "Edit finished",
            extra={"processing_ms": elapsed, "mask_applied": result.mask_applied},
        )
        return EditOutcome(result=result, generator_text=generated.text, processing_ms=elapsed)
