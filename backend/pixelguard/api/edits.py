import time
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Tuple

from fastapi import APIRouter, Depends, File, Header, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, Response
from PIL import Image

from pixelguard.core.compositor import CompositeResult, Compositor
from pixelguard.core.config import Settings, get_settings
from pixelguard.core.errors import NotFoundError
from pixelguard.core.masks import MaskCombiner, decode_mask, mask_to_data_url
from pixelguard.core.normalizer import FormatNormalizer, default_decoders
from pixelguard.core.pipeline import EditPipeline, EditRequest
from pixelguard.core.rasterizer import MaskRasterizer, StrokeTransform
from pixelguard.core.storage import Storage, ext_to_mime, format_to_ext
from pixelguard.models.schemas import (
    CompositeStatsModel,
    EditApiRequest,
    EditApiResponse,
    ErrorResponse,
    ImageAsset,
    RasterizeRequest,
    RasterizeResponse,
    UploadResponse,
)
from pixelguard.services.gemini_image import GeminiEditGenerator


router = APIRouter()

ERROR_RESPONSES = {status: {"model": ErrorResponse} for status in (400, 401, 404, 422, 500, 502, 504)}


@lru_cache(maxsize=1)
def get_storage() -> Storage:
    return Storage(base_path=get_settings().data_dir)


def get_normalizer(settings: Settings = Depends(get_settings)) -> FormatNormalizer:
    return FormatNormalizer(decoders=default_decoders(settings.convert_timeout))


def get_generator_factory(settings: Settings = Depends(get_settings)) -> Callable:
    """Returns a callable building a generator for an optional per-request key."""
    def build(api_key: Optional[str] = None) -> GeminiEditGenerator:
        return GeminiEditGenerator(
            api_key=api_key or settings.gemini_api_key,
            default_model=settings.gemini_model,
        )
    return build


def _image_url(session_id: str, image_id: str) -> str:
    return f"/api/image?session_id={session_id}&id={image_id}"


def _thumbnail_url(session_id: str, image_id: str) -> str:
    return f"/api/thumbnail?session_id={session_id}&id={image_id}"


def _store_upload(
    storage: Storage,
    normalizer: FormatNormalizer,
    session_id: str,
    data: bytes,
    filename: Optional[str],
) -> Tuple[ImageAsset, Image.Image, str]:
    decodable = normalizer.ensure_decodable(data)
    image = Image.open(BytesIO(decodable))
    image.load()

    if decodable is data:
        ext = format_to_ext(image.format)
    else:
        # Only an external converter could read it; keep the uploaded bytes and suffix.
        ext = Path(filename or "").suffix.lower() or ".bin"

    asset = storage.save_image(session_id, data, ext, size=image.size)
    storage.save_thumbnail(session_id, asset.id, image)
    return asset, image, ext


@router.post("/sessions/{session_id}/images", response_model=UploadResponse)
async def upload_image(
    session_id: str,
    file: UploadFile = File(...),
    storage: Storage = Depends(get_storage),
    normalizer: FormatNormalizer = Depends(get_normalizer),
):
    """
    Upload a source image into a session.
    """
    data = await file.read()
    asset, image, ext = await run_in_threadpool(
        _store_upload, storage, normalizer, session_id, data, file.filename
    )

    return UploadResponse(
        session_id=asset.session_id,
        image_id=asset.id,
        width=image.size[0],
        height=image.size[1],
        format=ext.lstrip("."),
    )


@router.get("/image")
async def get_image(
    session_id: str = Query(...),
    id: str = Query(...),
    storage: Storage = Depends(get_storage),
):
    """Serve a stored original or edited version."""
    data, ext = storage.load_image(session_id, id)
    return Response(
        content=data,
        media_type=ext_to_mime(ext),
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.get("/thumbnail")
async def get_thumbnail(
    session_id: str = Query(...),
    id: str = Query(...),
    storage: Storage = Depends(get_storage),
):
    path = storage.thumbnail_path(session_id, id)
    if not path.exists():
        raise NotFoundError(f"Thumbnail not found: {id}")
    return FileResponse(path, media_type="image/jpeg")


@router.delete("/sessions/{session_id}/images/{image_id}")
async def delete_image(
    session_id: str,
    image_id: str,
    storage: Storage = Depends(get_storage),
):
    """
    Delete an image with its thumbnail and edit history.
    """
    removed = storage.delete_image(session_id, image_id)
    if not removed:
        raise NotFoundError(f"Image not found: {image_id}")
    return {"success": True, "deleted": removed}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, storage: Storage = Depends(get_storage)):
    """Delete a session and all its images."""
    if not storage.delete_session(session_id):
        raise NotFoundError(f"Session not found: {session_id}")
    return {"success": True}


@router.post("/masks/rasterize", response_model=RasterizeResponse)
async def rasterize_masks(request: RasterizeRequest):
    """
    Rasterize drawn strokes into edit and protect masks at original-image size.
    """
    rasterizer = MaskRasterizer()
    edit_mask, protect_mask = rasterizer.rasterize_channels(
        request.strokes,
        StrokeTransform.from_spec(request.transform),
        request.width,
        request.height,
    )
    return RasterizeResponse(
        edit_mask=mask_to_data_url(edit_mask) if edit_mask is not None else None,
        protect_mask=mask_to_data_url(protect_mask) if protect_mask is not None else None,
    )


def _load_edit_inputs(
    storage: Storage,
    pipeline: EditPipeline,
    request: EditApiRequest,
) -> Tuple[bytes, str, Image.Image, Optional[Image.Image]]:
    """Read the original, decode it and both masks, and combine them in image space."""
    image_bytes, ext = storage.load_image(request.session_id, request.image_id)
    original = pipeline.normalizer.open(image_bytes)

    edit_mask = decode_mask(request.inpaint_mask_data_url) if request.inpaint_mask_data_url else None
    protect_mask = decode_mask(request.protect_mask_data_url) if request.protect_mask_data_url else None
    combined = pipeline.prepare_mask(edit_mask, protect_mask, original.size)
    return image_bytes, ext, original, combined


def _store_version(
    storage: Storage,
    request: EditApiRequest,
    result: CompositeResult,
) -> Tuple[ImageAsset, Optional[Path]]:
    version = storage.save_version(
        request.session_id,
        request.image_id,
        result.data,
        format_to_ext(result.format),
        size=result.image.size,
    )
    thumb = storage.save_thumbnail(request.session_id, version.id, result.image)
    return version, thumb


@router.post("/gemini/edit", response_model=EditApiResponse, responses=ERROR_RESPONSES)
async def gemini_edit(
    request: EditApiRequest,
    x_gemini_api_key: Optional[str] = Header(None, alias="X-Gemini-Api-Key"),
    settings: Settings = Depends(get_settings),
    storage: Storage = Depends(get_storage),
    normalizer: FormatNormalizer = Depends(get_normalizer),
    generator_factory: Callable = Depends(get_generator_factory),
):
    """
    Edit an image with Gemini, restricted to the combined edit/protect mask.
    """
    start = time.monotonic()

    # Fail on a missing key before any image work.
    generator = generator_factory(x_gemini_api_key)

    pipeline = EditPipeline(
        generator,
        normalizer=normalizer,
        combiner=MaskCombiner(),
        compositor=Compositor(max_workers=settings.composite_workers),
        output_format=settings.output_format,
    )
    image_bytes, ext, original, combined = await run_in_threadpool(
        _load_edit_inputs, storage, pipeline, request
    )

    outcome = await pipeline.run(
        EditRequest(
            image_bytes=image_bytes,
            mime_type=ext_to_mime(ext),
            prompt=request.prompt,
            model=request.model,
            mask=combined,
            preserve_exif=request.preserve_exif,
            allow_unmasked_fallback=request.allow_unmasked_fallback,
        ),
        original=original,
        timeout=settings.generator_timeout,
    )
    result = outcome.result

    version, thumb = await run_in_threadpool(_store_version, storage, request, result)

    return EditApiResponse(
        success=True,
        new_version_id=version.id,
        edited_image_url=_image_url(version.session_id, version.id),
        thumbnail_url=_thumbnail_url(version.session_id, version.id) if thumb else None,
        processing_time_ms=int((time.monotonic() - start) * 1000),
        mask_applied=result.mask_applied,
        stats=CompositeStatsModel(
            edited_pixels=result.stats.edited_pixels,
            preserved_pixels=result.stats.preserved_pixels,
            blended_pixels=result.stats.blended_pixels,
        ),
        generator_text=outcome.generator_text,
    )
