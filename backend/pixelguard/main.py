from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from pixelguard.api import edits
from pixelguard.core.config import configure_logging, get_settings
from pixelguard.core.errors import EditError, ErrorKind


ERROR_STATUS = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.MISSING_API_KEY: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.MASK_INVALID: 422,
    ErrorKind.DECODE_FAILURE: 422,
    ErrorKind.GENERATOR_FAILURE: 502,
    ErrorKind.GENERATOR_TIMEOUT: 504,
    ErrorKind.COMPOSITING_FAILURE: 500,
}


async def handle_edit_error(request: Request, exc: EditError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, 500),
        content={"success": False, **exc.to_dict()},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="PixelGuard API",
        description="Mask-restricted AI photo editing with pixel-exact preservation",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EditError, handle_edit_error)
    app.include_router(edits.router, prefix="/api", tags=["edits"])

    @app.get("/")
    async def root():
        """Health check."""
        return {"status": "ok", "service": "PixelGuard API"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
