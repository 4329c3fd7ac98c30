"""
W-2 Refund Estimator - FastAPI Backend
======================================
Thin API behind the refund widget.

Endpoints:
1. POST /api/calculate  - manual Box 2 / Box 17 entry, pure math
2. POST /api/upload-w2  - W-2 image or PDF, boxes read by a vision model
3. GET  /health         - liveness

Refund math is done locally in Python - the model only reads the boxes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from refund_calculator import build_estimate
from refund_constants import (
    ALLOWED_MIME_TYPES,
    INVALID_FILE_TYPE_MESSAGE,
    INVALID_INPUT_MESSAGE,
    UPLOAD_FIELD_NAME,
)
from refund_models import (
    CalculateRequest,
    ConfidenceTag,
    ConfigurationError,
    UpstreamError,
    ValidationError,
)
from refund_settings import Settings, load_settings
from vision_client import W2VisionClient

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("W-2 Refund Estimator starting up...")
    logger.info(f"CORS allowed origins: {app.state.settings.allowed_origins}")
    if not app.state.vision_client.is_configured:
        logger.warning("OPENAI_API_KEY not set - /api/upload-w2 will fail")
    yield
    logger.info("W-2 Refund Estimator shutting down...")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def create_app(
    settings: Optional[Settings] = None,
    vision_client: Optional[W2VisionClient] = None,
) -> FastAPI:
    """Build the API. Tests pass their own settings and a fake vision client."""
    settings = settings or load_settings()
    vision_client = vision_client or W2VisionClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
    )

    app = FastAPI(
        title="W-2 Refund Estimator",
        description="Refund estimates from W-2 Box 2 and Box 17",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.vision_client = vision_client

    # Only the embedding sites may call with credentials
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- ERROR HANDLERS ---

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"Rejected {request.url.path}: {exc.errors()}")
        return _error(400, INVALID_INPUT_MESSAGE)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception in {request.url.path}: {exc}")
        if settings.debug:
            return _error(500, "Internal server error", detail=str(exc))
        return _error(500, "Internal server error")

    # --- INFO ENDPOINTS ---

    @app.get("/")
    async def root():
        """Service status and endpoint catalogue."""
        return {
            "status": "ok",
            "message": "Tax Calculator API is running",
            "endpoints": {
                "uploadW2": {
                    "path": "/api/upload-w2",
                    "method": "POST",
                    "description": "Upload W-2 image to extract Box 2 and Box 17 values using OpenAI Vision",
                    "contentType": "multipart/form-data",
                    "field": UPLOAD_FIELD_NAME,
                },
                "calculate": {
                    "path": "/api/calculate",
                    "method": "POST",
                    "description": "Calculate refund from manually entered Box 2 and Box 17 values",
                    "body": {"box2Federal": "number", "box17State": "number"},
                },
            },
        }

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    # --- MANUAL ENTRY ---

    @app.post("/api/calculate")
    async def calculate(request: CalculateRequest):
        """
        Calculate the refund from manually entered boxes.
        No AI involved, just math.
        """
        try:
            estimate = build_estimate(
                request.federal_withheld,
                request.state_withheld,
                ConfidenceTag.MANUAL,
            )
        except ValidationError as e:
            logger.info(f"Rejected /api/calculate: {e}")
            return _error(400, INVALID_INPUT_MESSAGE)
        return estimate.to_wire()

    # --- W-2 UPLOAD ---

    @app.post("/api/upload-w2")
    async def upload_w2(
        w2_image: Optional[UploadFile] = File(None, alias=UPLOAD_FIELD_NAME),
        authorization: Optional[str] = Header(None),
    ):
        """
        Upload a W-2 and get a refund estimate.

        The document goes through:
        1. Type and size checks
        2. Box 2 / Box 17 extraction by the vision model
        3. Validation of the extracted amounts
        4. The refund formula (conservative variant if the reply was unstructured)
        """
        if settings.api_bearer_token and authorization != f"Bearer {settings.api_bearer_token}":
            raise HTTPException(status_code=401, detail="Unauthorized")

        if w2_image is None or not w2_image.filename:
            raise HTTPException(status_code=400, detail="No image file provided")

        if w2_image.content_type not in ALLOWED_MIME_TYPES:
            raise HTTPException(status_code=400, detail=INVALID_FILE_TYPE_MESSAGE)

        content = await w2_image.read()
        if not content:
            raise HTTPException(status_code=400, detail="No image file provided")
        if len(content) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="File too large")

        try:
            extraction = await run_in_threadpool(
                vision_client.extract, content, w2_image.content_type
            )
        except ConfigurationError as e:
            logger.error(f"Upload rejected: {e}")
            raise HTTPException(status_code=500, detail="Server configuration error")
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except UpstreamError as e:
            logger.error(f"W-2 extraction failed for {w2_image.filename}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        logger.info(
            f"Extracted W-2 {w2_image.filename} with {extraction.model} "
            f"({extraction.tokens_used or 0} tokens)"
        )
        confidence = ConfidenceTag.AI_EXTRACTED if extraction.structured else ConfidenceTag.LOW
        try:
            estimate = build_estimate(
                extraction.federal_withheld,
                extraction.state_withheld,
                confidence,
                fallback=not extraction.structured,
            )
        except ValidationError as e:
            logger.warning(f"Invalid values extracted from W-2: {e}")
            return _error(400, "Invalid values extracted from W-2", extracted=extraction.raw)

        if not extraction.structured:
            logger.warning("Unstructured extraction reply - used fallback formula")

        return estimate.to_wire()

    return app


app = create_app()


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
