"""
Candidate intake API — main entry point.

Starts:
    • Structured JSON logging
    • SQLite DB init (job queue + candidate store)
    • Job worker (background asyncio task)
    • FastAPI HTTP server

Routes:
    POST /api/candidates/upload          queue resume PDFs, one job per file
    GET  /api/candidates/jobs/{job_id}   poll a job's status and result
    POST /api/search                     rank candidates against a query/filters
    POST /api/job_listings/match         rank candidates against a job description
"""

import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

load_dotenv()  # must run before any module-level os.getenv() calls

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from db.database import (
    JobNotFound,
    JobStoreError,
    count_jobs,
    enqueue_jobs,
    get_job,
    init_db,
)
from models.job import ACTIVE, ResumePayload
from services.llm import LLMError, RateLimitedError
from services.ranker import match_job_listing, search_candidates
from workers.job_worker import JobWorker
from workers.processor import ResumeProcessor


# ── Structured JSON logging ────────────────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """One JSON object per log line — machine-readable and grep-friendly."""

    _SKIP = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        out: dict = {
            "ts":     self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        # Bubble up any extra= fields passed by callers
        for k, v in record.__dict__.items():
            if k not in self._SKIP:
                out[k] = v
        return json.dumps(out, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
    logging.getLogger("httpx").setLevel(logging.WARNING)


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")


# ── Lifespan ───────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    await init_db()
    logger.info("Database ready")

    # A worker may be pre-installed on app.state (tests do this)
    if getattr(app.state, "worker", None) is None:
        app.state.worker = JobWorker(ResumeProcessor())
    # Resume whatever was left pending by a previous run
    app.state.worker.start()

    yield

    logger.info("Shutting down")
    await app.state.worker.stop()


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(title="Candidate Intake API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(JobStoreError)
async def storage_error_handler(request: Request, exc: JobStoreError):
    # Detail is already logged by the store; keep it away from clients
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


def _rate_limited(exc: RateLimitedError) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail={"message": "Rate limit reached", "retry_after": exc.retry_after},
        headers={"Retry-After": str(int(exc.retry_after + 0.999))},
    )


@app.get("/health")
async def health():
    return {"status": "ok", "jobs": await count_jobs()}


# ── Candidate upload (queued) ──────────────────────────────────────────────────

def _is_pdf(file: UploadFile) -> bool:
    return file.content_type == "application/pdf"


@app.post("/api/candidates/upload", status_code=202)
async def upload_candidates(
    request: Request,
    files: list[UploadFile] | None = File(default=None),
):
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded.")
    if not all(_is_pdf(f) for f in files):
        raise HTTPException(status_code=400, detail="Only PDF files are allowed.")

    written: list[Path] = []
    try:
        payloads = []
        for f in files:
            original = Path(f.filename or "resume.pdf").name
            dest = UPLOAD_DIR / f"{uuid.uuid4().hex}-{original}"
            data = await f.read()
            await asyncio.to_thread(dest.write_bytes, data)
            written.append(dest)
            payloads.append(ResumePayload(file_path=str(dest), filename=original).to_dict())
        job_ids = await enqueue_jobs(payloads)
    except Exception:
        # Nothing was queued; the files have no job to read them
        for path in written:
            path.unlink(missing_ok=True)
        raise

    request.app.state.worker.start()
    logger.info("Resumes queued", extra={"job_ids": job_ids})
    return {"message": f"{len(job_ids)} file(s) queued for processing.", "job_ids": job_ids}


@app.get("/api/candidates/jobs/{job_id}")
async def job_status(request: Request, job_id: int):
    try:
        job = await get_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    status = job.status
    if request.app.state.worker.active_job_id == job.id:
        status = ACTIVE
    return {
        "id":          job.id,
        "status":      status,
        "result":      job.result,
        "retry_after": job.retry_after,
        "attempts":    job.attempts,
        "created_at":  job.created_at,
        "updated_at":  job.updated_at,
    }


# ── Ranking ────────────────────────────────────────────────────────────────────

class SearchRequest(BaseModel):
    query: str | None = None
    filters: dict | None = None
    limit: int = Field(default=10, ge=1, le=100)


class JobListingRequest(BaseModel):
    title: str | None = None
    location: str | None = None
    description: str | None = None
    limit: int = Field(default=10, ge=1, le=100)


@app.post("/api/search")
async def api_search(req: SearchRequest):
    try:
        candidates = await search_candidates(req.query, req.filters, req.limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RateLimitedError as exc:
        raise _rate_limited(exc)
    except LLMError:
        raise HTTPException(status_code=502, detail="Failed to get a usable LLM response.")
    return {"candidates": candidates}


@app.post("/api/job_listings/match")
async def api_match_job_listing(req: JobListingRequest):
    try:
        candidates = await match_job_listing(
            req.description or "", title=req.title, location=req.location, limit=req.limit
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except RateLimitedError as exc:
        raise _rate_limited(exc)
    except LLMError:
        raise HTTPException(status_code=502, detail="Failed to get a usable LLM response.")
    return {"candidates": candidates}


# ── Entry point ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_config=None,   # let our handler take over
    )
