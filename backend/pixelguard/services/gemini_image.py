import base64
import logging
import os
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Tuple

from PIL import Image as PILImage
from google import genai
from google.genai import types

from pixelguard.core.config import DEFAULT_MODEL
from pixelguard.core.errors import GeneratorError, MissingApiKeyError
from pixelguard.core.masks import encode_mask_png

MASKED_INSTRUCTIONS = [
    "INPAINTING MODE: You are receiving TWO images.",
    "1. FIRST IMAGE = Original photograph to edit",
    "2. SECOND IMAGE = Black & white mask (white = edit zone, black = keep)",
    "",
    "INSTRUCTION: {prompt}",
    "",
    "RULES:",
    "- Edit ONLY the white areas of the mask. Black areas must be pixel-identical to the original.",
    "- The edited content must seamlessly blend with the surrounding area.",
    "  Match the exact texture, grain, color temperature, lighting and surface quality",
    "  of the surrounding area, as if the image was always this way.",
    "- Do not add white backgrounds, borders, halos or shapes around the edited content.",
    "- Do not render the mask shape into the output. The mask is invisible guidance.",
    "- If replacing text, use the same ink style, color and printing method as the existing text.",
    "- Same resolution and dimensions as the original. Maximum quality.",
]

UNMASKED_INSTRUCTIONS = [
    "{prompt}",
    "",
    "CRITICAL: Maintain the exact same image quality, sharpness, and detail level as the original image.",
    "Output the result in the same format and quality as the input image.",
]


@dataclass(frozen=True)
class GeneratedEdit:
    image: PILImage.Image
    text: Optional[str] = None


def build_instruction(prompt: str, masked: bool) -> str:
    lines = MASKED_INSTRUCTIONS if masked else UNMASKED_INSTRUCTIONS
    return "\n".join(lines).format(prompt=prompt)


def _decode_inline(data) -> Optional[PILImage.Image]:
    if isinstance(data, str):
        data = base64.b64decode(data)
    if isinstance(data, (bytes, bytearray)) and data:
        img = PILImage.open(BytesIO(data))
        img.load()
        return img
    return None


def _response_parts(response) -> List:
    parts = []
    if getattr(response, "candidates", None):
        for candidate in response.candidates:
            content = getattr(candidate, "content", None)
            if content and getattr(content, "parts", None):
                parts.extend(content.parts)
    elif getattr(response, "parts", None):
        parts.extend(response.parts)
    return parts


def extract_outputs(response) -> Tuple[Optional[PILImage.Image], Optional[str]]:
    """Pull the first inline image and the concatenated text out of a response."""
    image = None
    texts = []
    for part in _response_parts(response):
        inline_data = getattr(part, "inline_data", None)
        if image is None and inline_data is not None and getattr(inline_data, "data", None):
            try:
                image = _decode_inline(inline_data.data)
            except (OSError, PILImage.DecompressionBombError) as exc:
                raise GeneratorError(f"Gemini returned an undecodable image: {exc}") from exc
        text = getattr(part, "text", None)
        if isinstance(text, str) and text:
            texts.append(text)
    return image, ("\n".join(texts) or None)


class GeminiEditGenerator:
    """
    External edit generator backed by Gemini image models.

    Mask semantics sent to the model: white = edit, black = preserve.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        default_model: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not key:
            raise MissingApiKeyError(
                "No Gemini API key provided. Set GEMINI_API_KEY or send the X-Gemini-Api-Key header."
            )
        self.client = genai.Client(api_key=key)
        self.default_model = default_model or os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_MODEL)
        self.log = logger or logging.getLogger(__name__)

    def build_contents(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        mask: Optional[PILImage.Image] = None,
    ) -> List:
        contents = [types.Part.from_bytes(data=image_bytes, mime_type=mime_type)]
        if mask is not None:
            contents.append(types.Part.from_bytes(data=encode_mask_png(mask), mime_type="image/png"))
        contents.append(build_instruction(prompt, masked=mask is not None))
        return contents

    def generate(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: str,
        mask: Optional[PILImage.Image] = None,
        model: Optional[str] = None,
    ) -> GeneratedEdit:
        model_name = model or self.default_model
        self.log.info(
            "Sending edit to Gemini",
            extra={"model": model_name, "mime_type": mime_type, "has_mask": mask is not None},
        )
        contents = self.build_contents(image_bytes, mime_type, prompt, mask)
        try:
            response = self.client.models.generate_content(model=model_name, contents=contents)
        except Exception as exc:
            raise GeneratorError(f"Gemini API failed: {exc}") from exc

        image, text = extract_outputs(response)
        if image is None:
            detail = f" Model text: {text[:200]}" if text else ""
            raise GeneratorError(
                f"Gemini did not return an image. Model '{model_name}' may not support image output.{detail}"
            )
        return GeneratedEdit(image=image, text=text)
