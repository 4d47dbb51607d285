import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional


DEFAULT_MODEL = "gemini-2.5-flash-image"
DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment."""

    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_MODEL
    data_dir: str = "./data/sessions"
    generator_timeout: float = 120.0
    convert_timeout: float = 30.0
    composite_workers: int = 1
    output_format: str = "PNG"
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("PIXELGUARD_CORS_ORIGINS")
        return cls(
            gemini_api_key=(
                os.getenv("GEMINI_API_KEY")
                or os.getenv("GOOGLE_API_KEY")
                or os.getenv("GOOGLE_GEMINI_API_KEY")
            ),
            gemini_model=os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_MODEL),
            data_dir=os.getenv("PIXELGUARD_DATA_DIR", "./data/sessions"),
            generator_timeout=_float_env("PIXELGUARD_GENERATOR_TIMEOUT", 120.0),
            convert_timeout=_float_env("PIXELGUARD_CONVERT_TIMEOUT", 30.0),
            composite_workers=max(1, _int_env("PIXELGUARD_COMPOSITE_WORKERS", 1)),
            output_format=os.getenv("PIXELGUARD_OUTPUT_FORMAT", "PNG").upper(),
            cors_origins=(
                [o.strip() for o in origins.split(",") if o.strip()]
                if origins
                else list(DEFAULT_CORS_ORIGINS)
            ),
            log_level=os.getenv("PIXELGUARD_LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger."""
    logger = logging.getLogger("pixelguard")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
