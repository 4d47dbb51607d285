import unittest
import asyncio
import os
import sys
import time
from io import BytesIO
from unittest.mock import MagicMock, patch

import numpy as np
from PIL import Image

# Add backend to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from pixelguard.core.compositor import Compositor
from pixelguard.core.errors import (
    CompositingError,
    GenerationTimeoutError,
    GeneratorError,
    MaskResolutionError,
)
from pixelguard.core.normalizer import FormatNormalizer, PillowDecoder
from pixelguard.core.pipeline import EditPipeline, EditRequest
from pixelguard.services.gemini_image import GeneratedEdit


def noise(width, height, seed):
    rng = np.random.default_rng(seed)
    return Image.fromarray(rng.integers(0, 256, (height, width, 3), dtype=np.uint8))


def encode(image, fmt="PNG", **params):
    buf = BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


class FakeGenerator:
    def __init__(self, image, delay=0.0, error=None):
        self.image = image
        self.delay = delay
        self.error = error
        self.calls = []

    def generate(self, image_bytes, mime_type, prompt, mask=None, model=None):
        self.calls.append((mime_type, prompt, mask, model))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return GeneratedEdit(image=self.image, text="done")


class TestEditPipeline(unittest.TestCase):

    def setUp(self):
        self.original = noise(120, 80, seed=1)
        self.candidate = noise(120, 80, seed=2)
        self.original_bytes = encode(self.original)
        self.normalizer = FormatNormalizer(decoders=[PillowDecoder()])
        self.mask = Image.new("L", (120, 80), 0)
        self.mask.paste(255, (40, 20, 80, 60))

    def make_pipeline(self, generator, compositor=None, output_format="PNG"):
        return EditPipeline(
            generator,
            normalizer=self.normalizer,
            compositor=compositor,
            output_format=output_format,
        )

    def request(self, **overrides):
        fields = dict(
            image_bytes=self.original_bytes,
            mime_type="image/png",
            prompt="replace the sign",
            mask=self.mask,
        )
        fields.update(overrides)
        return EditRequest(**fields)

    def test_masked_edit(self):
        generator = FakeGenerator(self.candidate)
        outcome = asyncio.run(self.make_pipeline(generator).run(self.request(model="m1")))

        self.assertTrue(outcome.result.mask_applied)
        self.assertEqual(outcome.generator_text, "done")
        self.assertEqual(generator.calls[0][3], "m1")
        self.assertIs(generator.calls[0][2], self.mask)

        out = np.asarray(Image.open(BytesIO(outcome.result.data)).convert("RGB"))
        original = np.asarray(self.original)
        np.testing.assert_array_equal(out[:, :40], original[:, :40])
        np.testing.assert_array_equal(out[:20], original[:20])

    def test_default_output_keeps_preserved_bytes_exact(self):
        pipeline = EditPipeline(FakeGenerator(self.candidate), normalizer=self.normalizer)
        outcome = asyncio.run(pipeline.run(self.request()))

        self.assertEqual(outcome.result.format, "PNG")
        decoded = np.asarray(Image.open(BytesIO(outcome.result.data)).convert("RGB"))
        original = np.asarray(self.original)
        keep = np.asarray(self.mask) < 98
        np.testing.assert_array_equal(decoded[keep], original[keep])

    def test_no_mask_returns_candidate(self):
        generator = FakeGenerator(self.candidate)
        outcome = asyncio.run(self.make_pipeline(generator).run(self.request(mask=None)))
        self.assertFalse(outcome.result.mask_applied)
        self.assertIs(outcome.result.image, self.candidate)

    def test_mask_size_mismatch(self):
        generator = FakeGenerator(self.candidate)
        request = self.request(mask=Image.new("L", (60, 40), 255))
        with self.assertRaises(MaskResolutionError):
            asyncio.run(self.make_pipeline(generator).run(request))
        self.assertEqual(generator.calls, [])

    def test_prepare_mask_reprojects_to_original(self):
        pipeline = self.make_pipeline(FakeGenerator(self.candidate))
        combined = pipeline.prepare_mask(Image.new("L", (60, 40), 255), None, (120, 80))
        self.assertEqual(combined.size, (120, 80))
        self.assertIsNone(pipeline.prepare_mask(None, None, (120, 80)))

    def test_timeout_skips_compositing(self):
        compositor = MagicMock(spec=Compositor)
        generator = FakeGenerator(self.candidate, delay=0.5)
        pipeline = self.make_pipeline(generator, compositor=compositor)

        with self.assertRaises(GenerationTimeoutError):
            asyncio.run(pipeline.run(self.request(), timeout=0.05))
        compositor.composite.assert_not_called()

    def test_generator_error_propagates(self):
        generator = FakeGenerator(self.candidate, error=GeneratorError("no image"))
        with self.assertRaises(GeneratorError):
            asyncio.run(self.make_pipeline(generator).run(self.request()))

    def test_compositing_failure_is_not_silent(self):
        generator = FakeGenerator(self.candidate)
        with patch.object(Compositor, "prepare_candidate", side_effect=ValueError("boom")):
            with self.assertRaises(CompositingError):
                asyncio.run(self.make_pipeline(generator).run(self.request()))

    def test_unmasked_fallback_when_requested(self):
        generator = FakeGenerator(self.candidate)
        pipeline = self.make_pipeline(generator)
        with patch.object(Compositor, "prepare_candidate", side_effect=ValueError("boom")):
            with self.assertLogs("pixelguard.core.pipeline", level="WARNING"):
                outcome = asyncio.run(pipeline.run(self.request(allow_unmasked_fallback=True)))
        self.assertFalse(outcome.result.mask_applied)
        self.assertIs(outcome.result.image, self.candidate)

    def test_exif_preserved_on_request(self):
        exif = Image.Exif()
        exif[0x010F] = "TestCam"
        jpeg = encode(self.original, "JPEG", quality=95, exif=exif.tobytes())
        generator = FakeGenerator(self.candidate)
        pipeline = self.make_pipeline(generator, output_format="JPEG")

        kept = asyncio.run(pipeline.run(self.request(image_bytes=jpeg, mime_type="image/jpeg", preserve_exif=True)))
        dropped = asyncio.run(pipeline.run(self.request(image_bytes=jpeg, mime_type="image/jpeg")))

        self.assertEqual(Image.open(BytesIO(kept.result.data)).getexif().get(0x010F), "TestCam")
        self.assertIsNone(Image.open(BytesIO(dropped.result.data)).getexif().get(0x010F))


if __name__ == '__main__':
    unittest.main()
