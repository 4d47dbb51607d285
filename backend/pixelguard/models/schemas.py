from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, Field, field_validator, model_validator


class MaskKind(str, Enum):
    INPAINT = "inpaint"
    PROTECT = "protect"
    ERASE = "erase"


class PathCommand(str, Enum):
    MOVE = "M"
    LINE = "L"
    QUAD = "Q"


_COMMAND_ARITY = {
    PathCommand.MOVE: 2,
    PathCommand.LINE: 2,
    PathCommand.QUAD: 4,
}


class StrokeSegment(BaseModel):
    command: PathCommand
    values: List[float]

    @model_validator(mode="after")
    def check_arity(self):
        expected = _COMMAND_ARITY[self.command]
        if len(self.values) != expected:
            raise ValueError(
                f"Command {self.command.value} takes {expected} values, got {len(self.values)}"
            )
        return self


class Stroke(BaseModel):
    """A single drawn path, in drawing-surface coordinates."""
    kind: MaskKind = MaskKind.INPAINT
    width: float = Field(..., gt=0)
    points: List[Tuple[float, float]] = Field(default_factory=list)
    segments: List[StrokeSegment] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_geometry(self):
        if not self.points and not self.segments:
            raise ValueError("Stroke needs points or segments")
        if self.points and self.segments:
            raise ValueError("Stroke takes either points or segments, not both")
        return self


class ImageBoundsSpec(BaseModel):
    left: float = 0.0
    top: float = 0.0
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)


class TransformSpec(BaseModel):
    scale: float = Field(1.0, gt=0)
    offset_x: float = 0.0
    offset_y: float = 0.0
    bounds: Optional[ImageBoundsSpec] = None


class RasterizeRequest(BaseModel):
    strokes: List[Stroke] = Field(default_factory=list)
    transform: TransformSpec = Field(default_factory=TransformSpec)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class RasterizeResponse(BaseModel):
    edit_mask: Optional[str] = None  # PNG data URL
    protect_mask: Optional[str] = None


class UploadResponse(BaseModel):
    session_id: str
    image_id: str
    width: int
    height: int
    format: str


class EditApiRequest(BaseModel):
    session_id: str
    image_id: str
    prompt: str
    inpaint_mask_data_url: Optional[str] = None
    protect_mask_data_url: Optional[str] = None
    preserve_exif: bool = False
    model: Optional[str] = None
    # Opt-in: accept the unmasked candidate if compositing fails.
    allow_unmasked_fallback: bool = False

    @field_validator("session_id", "image_id", "prompt")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class CompositeStatsModel(BaseModel):
    edited_pixels: int = 0
    preserved_pixels: int = 0
    blended_pixels: int = 0


class EditApiResponse(BaseModel):
    success: bool
    new_version_id: str
    edited_image_url: str
    thumbnail_url: Optional[str] = None
    processing_time_ms: int
    mask_applied: bool = False
    stats: Optional[CompositeStatsModel] = None
    generator_text: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    kind: str
    error: str


class ImageAsset(BaseModel):
    id: str
    session_id: str
    path: str
    ext: str
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
