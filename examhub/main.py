import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from examhub.core.config import LOG_LEVEL, AUTO_CREATE_TABLES
from examhub.core.database import init_db
from examhub.core.errors import ExamError, NotFoundError, InvalidStateError, PermissionDeniedError, AnswerValidationError
from examhub.api.attempts import router as attempts_router

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

STATUS_BY_KIND = ((NotFoundError, 404), (InvalidStateError, 409), (PermissionDeniedError, 403), (AnswerValidationError, 422))

@asynccontextmanager
async def lifespan(app: FastAPI):
    if AUTO_CREATE_TABLES:
        init_db()
        logger.info("Database schema ensured")
    yield

app = FastAPI(title="ExamHub Attempts API", version="1.0.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.include_router(attempts_router, prefix="/v1/attempts", tags=["attempts"])

@app.exception_handler(ExamError)
async def exam_error_handler(request: Request, exc: ExamError):
    status_code = next((code for kind, code in STATUS_BY_KIND if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})

@app.get("/health")
def health(): return {"status": "ok"}
