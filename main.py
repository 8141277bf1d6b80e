from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse
from starlette.requests import Request
from dotenv import load_dotenv
import logging
import sys

from routes.flashcard_routes import router as flashcard_router
from services.flashcard_service import shutdown_pipeline
from utils.exceptions import FlashcardError
from utils.metrics import render_latest

# Configure logging
logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)

load_dotenv()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    yield
    # In-flight jobs observe cancellation at their next checkpoint
    await shutdown_pipeline()


# FastAPI App
app = FastAPI(title="Flashcard Generation Pipeline", lifespan=_lifespan)


@app.exception_handler(FlashcardError)
async def flashcard_exception_handler(request: Request, exc: FlashcardError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.message,
            "message": exc.message,
            "error_code": exc.error_code,
            "context": jsonable_encoder(exc.context),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    try:
        detail = jsonable_encoder(exc.errors())
    except UnicodeDecodeError:
        # Binary payloads cannot be echoed back
        detail = [
            {
                "loc": ["binary_content"],
                "msg": "Binary data cannot be properly decoded as UTF-8",
                "type": "binary_data_error",
            }
        ]
    first = detail[0] if detail else {}
    message = f"{'.'.join(str(p) for p in first.get('loc', []))}: {first.get('msg', 'invalid request')}"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "message": message, "detail": detail},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flashcard_router)


@app.get("/")
async def root():
    return {"greeting": "Hello!", "message": "Welcome to the flashcard generation pipeline!"}


@app.get("/metrics")
async def metrics():
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
