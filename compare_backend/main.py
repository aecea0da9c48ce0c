import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from compare_backend import __version__
from compare_backend.config import CORS_ORIGINS, LOG_LEVEL
from compare_backend.errors import ErrorCode, PipelineError, SchemaError
from compare_backend.routers import compare, fab, jobs, upload
from compare_backend.schemas import ErrorResponse

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

app = FastAPI(
    title="Two-Video Compare Backend",
    description="Compares two short-form selling videos and returns a structured, UI-ready verdict.",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------------------------------------------------------
# --- Error Handlers ---
# --------------------------------------------------------------------------

@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    body = ErrorResponse(error_code=exc.code, message=exc.message)
    if isinstance(exc, SchemaError):
        fallback = exc.fallback.model_dump(mode="json", by_alias=True) if exc.fallback is not None else None
        body = body.model_copy(update={"violations": exc.violations, "result": fallback})
    if exc.status_code >= 500:
        logging.error(f"❌ {request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{where}: {first.get('msg', 'invalid request')}" if where else "Invalid request."
    body = ErrorResponse(error_code=ErrorCode.INVALID_REQUEST, message=message)
    return JSONResponse(status_code=400, content=body.model_dump(by_alias=True, exclude_none=True))

# --------------------------------------------------------------------------
# --- API Endpoints ---
# --------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"status": "🚀 Compare backend is running!"}


app.include_router(jobs.router)
app.include_router(compare.router)
app.include_router(fab.router)
app.include_router(upload.router)
