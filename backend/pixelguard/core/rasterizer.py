import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw

from pixelguard.core.errors import InvalidRequestError
from pixelguard.models.schemas import MaskKind, PathCommand, Stroke, TransformSpec

Point = Tuple[float, float]

# Quadratic segments are flattened into this many line pieces.
QUAD_STEPS = 16

FILL_SELECTED = 255
FILL_CLEAR = 0


@dataclass(frozen=True)
class ImageBounds:
    """Placement rectangle of the image on the drawing surface."""
    left: float
    top: float
    width: float
    height: float


@dataclass(frozen=True)
class StrokeTransform:
    """
    Maps drawing-surface coordinates to original-image pixel coordinates.

    surface -> scene:  (p - offset) / scale
    scene -> image:    (scene - bounds.origin) * target_size / bounds.size
    """
    scale: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0
    bounds: Optional[ImageBounds] = None

    @classmethod
    def fit(
        cls,
        surface_width: float,
        surface_height: float,
        image_width: int,
        image_height: int,
        zoom: float = 1.0,
        pan: Tuple[float, float] = (0.0, 0.0),
    ) -> "StrokeTransform":
        """Contain-fit, centered placement of the image on the surface."""
        if image_width <= 0 or image_height <= 0:
            raise InvalidRequestError("Image dimensions must be positive")
        fit_scale = min(surface_width / image_width, surface_height / image_height)
        placed_w = image_width * fit_scale
        placed_h = image_height * fit_scale
        bounds = ImageBounds(
            left=(surface_width - placed_w) / 2,
            top=(surface_height - placed_h) / 2,
            width=placed_w,
            height=placed_h,
        )
        return cls(scale=zoom, offset_x=pan[0], offset_y=pan[1], bounds=bounds)

    @classmethod
    def from_spec(cls, spec: TransformSpec) -> "StrokeTransform":
        bounds = None
        if spec.bounds is not None:
            bounds = ImageBounds(
                left=spec.bounds.left,
                top=spec.bounds.top,
                width=spec.bounds.width,
                height=spec.bounds.height,
            )
        return cls(scale=spec.scale, offset_x=spec.offset_x, offset_y=spec.offset_y, bounds=bounds)

    def factors(self, target_width: int, target_height: int) -> Tuple[float, float]:
        fx = 1.0 / self.scale
        fy = 1.0 / self.scale
        if self.bounds is not None:
            fx *= target_width / self.bounds.width
            fy *= target_height / self.bounds.height
        return fx, fy

    def to_image(self, x: float, y: float, target_width: int, target_height: int) -> Point:
        sx = (x - self.offset_x) / self.scale
        sy = (y - self.offset_y) / self.scale
        if self.bounds is not None:
            sx = (sx - self.bounds.left) * target_width / self.bounds.width
            sy = (sy - self.bounds.top) * target_height / self.bounds.height
        return sx, sy

    def width_to_image(self, width: float, target_width: int, target_height: int) -> float:
        fx, fy = self.factors(target_width, target_height)
        return width * (fx + fy) / 2.0


def _quad_points(start: Point, control: Point, end: Point) -> List[Point]:
    points = []
    for i in range(1, QUAD_STEPS + 1):
        t = i / QUAD_STEPS
        u = 1.0 - t
        points.append((
            u * u * start[0] + 2 * u * t * control[0] + t * t * end[0],
            u * u * start[1] + 2 * u * t * control[1] + t * t * end[1],
        ))
    return points


def flatten_stroke(stroke: Stroke) -> List[List[Point]]:
    """Turn a stroke into polylines (one per move-to subpath)."""
    if stroke.points:
        return [[(float(x), float(y)) for x, y in stroke.points]]

    polylines: List[List[Point]] = []
    current: Optional[List[Point]] = None
    for segment in stroke.segments:
        v = segment.values
        if segment.command == PathCommand.MOVE:
            current = [(v[0], v[1])]
            polylines.append(current)
        elif segment.command == PathCommand.LINE:
            if current is None:
                current = []
                polylines.append(current)
            current.append((v[0], v[1]))
        elif segment.command == PathCommand.QUAD:
            end = (v[2], v[3])
            if current is None:
                current = [end]
                polylines.append(current)
                continue
            current.extend(_quad_points(current[-1], (v[0], v[1]), end))
        else:
            raise InvalidRequestError(f"Unsupported path command: {segment.command}")
    return [p for p in polylines if p]


class MaskRasterizer:
    """Renders drawn strokes into single-channel masks at original-image resolution."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or logging.getLogger(__name__)

    def _draw_stroke(
        self,
        draw: ImageDraw.ImageDraw,
        stroke: Stroke,
        transform: StrokeTransform,
        target_width: int,
        target_height: int,
        fill: int,
    ) -> None:
        width_px = transform.width_to_image(stroke.width, target_width, target_height)
        radius = width_px / 2.0
        line_width = max(1, int(round(width_px)))

        for polyline in flatten_stroke(stroke):
            pts = [transform.to_image(x, y, target_width, target_height) for x, y in polyline]
            if len(pts) > 1:
                draw.line(pts, fill=fill, width=line_width, joint="curve")
            # Round caps and joins
            for x, y in pts:
                draw.ellipse([x - radius, y - radius, x + radius, y + radius], fill=fill)

    def render(
        self,
        positive: Sequence[Stroke],
        erase: Sequence[Stroke],
        transform: StrokeTransform,
        target_width: int,
        target_height: int,
    ) -> Optional[Image.Image]:
        """
        Render positive strokes white, then erase strokes black.

        Returns None when both lists are empty (no restriction).
        """
        if target_width <= 0 or target_height <= 0:
            raise InvalidRequestError(
                f"Mask target size must be positive, got {target_width}x{target_height}"
            )
        if not positive and not erase:
            return None

        mask = Image.new("L", (target_width, target_height), FILL_CLEAR)
        draw = ImageDraw.Draw(mask)
        for stroke in positive:
            self._draw_stroke(draw, stroke, transform, target_width, target_height, FILL_SELECTED)
        for stroke in erase:
            self._draw_stroke(draw, stroke, transform, target_width, target_height, FILL_CLEAR)
        return mask

    def rasterize(
        self,
        strokes: Sequence[Stroke],
        transform: StrokeTransform,
        target_width: int,
        target_height: int,
    ) -> Optional[Image.Image]:
        """Single-channel rasterization: every non-erase stroke is positive."""
        positive = [s for s in strokes if s.kind != MaskKind.ERASE]
        erase = [s for s in strokes if s.kind == MaskKind.ERASE]
        return self.render(positive, erase, transform, target_width, target_height)

    def rasterize_channels(
        self,
        strokes: Sequence[Stroke],
        transform: StrokeTransform,
        target_width: int,
        target_height: int,
    ) -> Tuple[Optional[Image.Image], Optional[Image.Image]]:
        """
        Split strokes by kind and render the edit and protect channels.

        Erase strokes subtract from both channels. Both channels share the
        same transform so they stay aligned.
        """
        by_kind: Dict[MaskKind, List[Stroke]] = {kind: [] for kind in MaskKind}
        for stroke in strokes:
            if stroke.kind not in by_kind:
                raise InvalidRequestError(f"Unknown mask kind: {stroke.kind}")
            by_kind[stroke.kind].append(stroke)

        erase = by_kind[MaskKind.ERASE]
        edit_mask = self.render(by_kind[MaskKind.INPAINT], erase, transform, target_width, target_height)
        protect_mask = self.render(by_kind[MaskKind.PROTECT], erase, transform, target_width, target_height)

        self.log.info(
            "Rasterized mask channels",
            extra={
                "target_size": (target_width, target_height),
                "inpaint_strokes": len(by_kind[MaskKind.INPAINT]),
                "protect_strokes": len(by_kind[MaskKind.PROTECT]),
                "erase_strokes": len(erase),
            },
        )
        return edit_mask, protect_mask
