from dataclasses import dataclass
from typing import Any, Optional

# Job statuses
PENDING = "pending"
ACTIVE = "active"        # in-memory only, never persisted by the worker
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, ACTIVE, COMPLETED, FAILED)

PAYLOAD_SCHEMA_VERSION = 1
RESUME_PDF = "resume_pdf"


@dataclass
class Job:
    id: int
    payload: dict
    status: str = PENDING
    result: Optional[Any] = None        # success output, or {"error": str} when failed
    retry_after: Optional[float] = None # epoch seconds; rate-limited failures only
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == COMPLETED or (
            self.status == FAILED and self.retry_after is None
        )


@dataclass(frozen=True)
class ResumePayload:
    """Input for one resume job: an uploaded PDF already saved to disk."""

    file_path: str
    filename: str
    kind: str = RESUME_PDF
    schema_version: int = PAYLOAD_SCHEMA_VERSION

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "kind":           self.kind,
            "file_path":      self.file_path,
            "filename":       self.filename,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResumePayload":
        version = data.get("schema_version")
        if version != PAYLOAD_SCHEMA_VERSION:
            raise ValueError(f"Unsupported payload schema version: {version!r}")
        kind = data.get("kind")
        if kind != RESUME_PDF:
            raise ValueError(f"Unsupported payload kind: {kind!r}")
        if not data.get("file_path"):
            raise ValueError("Payload is missing file_path")
        return cls(
            file_path=data["file_path"],
            filename=data.get("filename") or data["file_path"],
        )
