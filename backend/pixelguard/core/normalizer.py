import logging
import shutil
import subprocess
import tempfile
import uuid
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Sequence

from PIL import Image

from pixelguard.core.errors import DecodeError


class Decoder:
    """Capability: turn arbitrary image bytes into bytes Pillow can decode."""

    name = "decoder"

    def available(self) -> bool:
        return True

    def decode(self, data: bytes) -> bytes:
        raise NotImplementedError


class PillowDecoder(Decoder):
    """Accepts the bytes as-is if Pillow can fully decode the pixels."""

    name = "pillow"

    def decode(self, data: bytes) -> bytes:
        try:
            with Image.open(BytesIO(data)) as img:
                img.load()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Pillow cannot decode image: {exc}") from exc
        return data


class CommandDecoder(Decoder):
    """
    Converts through an external tool (sips, ImageMagick) into PNG.

    The input/output pair lives in a private temporary directory which is
    removed on every exit path.
    """

    def __init__(self, name: str, argv: Sequence[str], timeout: float = 30.0):
        self.name = name
        self.argv = list(argv)
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.argv[0]) is not None

    def decode(self, data: bytes) -> bytes:
        token = uuid.uuid4().hex
        with tempfile.TemporaryDirectory(prefix="pixelguard-convert-") as tmp_dir:
            src = Path(tmp_dir) / f"in-{token}"
            dst = Path(tmp_dir) / f"out-{token}.png"
            src.write_bytes(data)
            argv = [arg.format(src=src, dst=dst) for arg in self.argv]
            try:
                subprocess.run(
                    argv,
                    check=True,
                    capture_output=True,
                    timeout=self.timeout,
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
                raise DecodeError(f"{self.name} conversion failed: {exc}") from exc
            if not dst.exists():
                raise DecodeError(f"{self.name} produced no output")
            converted = dst.read_bytes()

        # The converted bytes must themselves be decodable.
        return PillowDecoder().decode(converted)


def default_decoders(timeout: float = 30.0) -> List[Decoder]:
    return [
        PillowDecoder(),
        CommandDecoder("sips", ["sips", "-s", "format", "png", "{src}", "--out", "{dst}"], timeout),
        CommandDecoder("magick", ["magick", "{src}", "{dst}"], timeout),
    ]


class FormatNormalizer:
    """Guarantees an image buffer is decodable by the raster pipeline."""

    def __init__(
        self,
        decoders: Optional[Sequence[Decoder]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.decoders = list(decoders) if decoders is not None else default_decoders()
        self.log = logger or logging.getLogger(__name__)

    def ensure_decodable(self, data: bytes) -> bytes:
        """
        Try each decoder in order and return the first decodable form.

        Raises DecodeError when none succeeds.
        """
        if not data:
            raise DecodeError("Image data is empty")

        failures = []
        for decoder in self.decoders:
            if not decoder.available():
                failures.append(f"{decoder.name}: not installed")
                continue
            try:
                result = decoder.decode(data)
            except DecodeError as exc:
                failures.append(exc.message)
                self.log.warning("Decoder %s failed: %s", decoder.name, exc.message)
                continue
            if result is not data:
                self.log.info(
                    "Converted image via %s (%d -> %d bytes)", decoder.name, len(data), len(result)
                )
            return result

        raise DecodeError("Image could not be decoded: " + "; ".join(failures))

    def open(self, data: bytes) -> Image.Image:
        """Decode to a fully loaded Pillow image."""
        decodable = self.ensure_decodable(data)
        img = Image.open(BytesIO(decodable))
        img.load()
        return img
