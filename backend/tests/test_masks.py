import unittest
import base64
import os
import sys
from io import BytesIO

import numpy as np
from PIL import Image

# Add backend to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from pixelguard.core.errors import MaskResolutionError
from pixelguard.core.masks import MaskCombiner, decode_mask, mask_to_data_url


def gradient(width, height):
    row = np.linspace(0, 255, width).astype(np.uint8)
    return Image.fromarray(np.tile(row, (height, 1)))


def solid(width, height, value):
    return Image.new("L", (width, height), value)


class TestMaskCombiner(unittest.TestCase):

    def setUp(self):
        self.combiner = MaskCombiner()

    def test_no_masks(self):
        mask, stats = self.combiner.combine_with_stats(None, None)
        self.assertIsNone(mask)
        self.assertEqual(stats.total_pixels, 0)

    def test_edit_only_is_returned_unchanged(self):
        edit = gradient(64, 32)
        self.assertIs(self.combiner.combine(edit, None), edit)

    def test_protect_only_is_inverted(self):
        protect = gradient(64, 32)
        combined = self.combiner.combine(None, protect)
        expected = 255 - np.asarray(protect).astype(np.int32)
        np.testing.assert_array_equal(np.asarray(combined), expected)

    def test_protection_wins(self):
        edit = solid(40, 40, 255)
        protect = Image.new("L", (40, 40), 0)
        protect.paste(200, (10, 10, 30, 30))
        combined = np.asarray(self.combiner.combine(edit, protect))

        self.assertTrue((combined[10:30, 10:30] == 0).all())
        self.assertEqual(combined[0, 0], 255)
        self.assertEqual(combined[35, 35], 255)

    def test_protect_threshold_is_strict(self):
        edit = solid(4, 1, 255)
        protect = Image.fromarray(np.array([[127, 128, 129, 255]], dtype=np.uint8))
        combined = np.asarray(self.combiner.combine(edit, protect))
        np.testing.assert_array_equal(combined, [[255, 255, 0, 0]])

    def test_only_protected_pixels_change(self):
        edit = gradient(50, 20)
        protect = solid(50, 20, 0)
        protect.paste(255, (0, 0, 10, 20))
        combined = np.asarray(self.combiner.combine(edit, protect))
        original = np.asarray(edit)
        np.testing.assert_array_equal(combined[:, 10:], original[:, 10:])
        self.assertTrue((combined[:, :10] == 0).all())

    def test_smaller_mask_resampled_to_larger(self):
        edit = solid(100, 100, 255)
        protect = solid(50, 50, 0)
        protect.paste(255, (0, 0, 25, 25))
        combined = self.combiner.combine(edit, protect)
        self.assertEqual(combined.size, (100, 100))
        values = np.asarray(combined)
        self.assertTrue((values[:50, :50] == 0).all())
        self.assertTrue((values[50:, 50:] == 255).all())

    def test_target_size(self):
        edit = solid(20, 10, 255)
        protect = solid(10, 5, 0)
        combined = self.combiner.combine(edit, protect, target_size=(400, 200))
        self.assertEqual(combined.size, (400, 200))

    def test_stats(self):
        edit = solid(10, 10, 255)
        protect = solid(10, 10, 0)
        protect.paste(255, (0, 0, 10, 3))
        _, stats = self.combiner.combine_with_stats(edit, protect)
        self.assertEqual(stats.total_pixels, 100)
        self.assertEqual(stats.protected_pixels, 30)
        self.assertEqual(stats.editable_pixels, 70)

    def test_colour_masks_are_converted(self):
        edit = Image.new("RGB", (8, 8), (255, 255, 255))
        combined = self.combiner.combine(edit, None)
        self.assertEqual(combined.mode, "L")
        self.assertEqual(np.asarray(combined).min(), 255)


class TestDecodeMask(unittest.TestCase):

    def test_data_url_round_trip(self):
        mask = gradient(30, 10)
        decoded = decode_mask(mask_to_data_url(mask))
        np.testing.assert_array_equal(np.asarray(decoded), np.asarray(mask))

    def test_bare_base64_and_bytes(self):
        buf = BytesIO()
        Image.new("RGBA", (5, 5), (255, 255, 255, 255)).save(buf, format="PNG")
        from_text = decode_mask(base64.b64encode(buf.getvalue()).decode("ascii"))
        from_bytes = decode_mask(buf.getvalue())
        self.assertEqual(from_text.mode, "L")
        self.assertEqual(from_bytes.size, (5, 5))

    def test_invalid_base64(self):
        with self.assertRaises(MaskResolutionError):
            decode_mask("data:image/png;base64,not*base64")

    def test_not_an_image(self):
        with self.assertRaises(MaskResolutionError):
            decode_mask(base64.b64encode(b"hello world").decode("ascii"))


if __name__ == '__main__':
    unittest.main()
