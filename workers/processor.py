"""
Resume processor, the job worker's External Processor.

process(payload) runs one uploaded PDF through:
    PDF text → LLM extraction → candidate store
and reports the result as an Outcome. It never raises.
"""

import asyncio
import logging

from db.database import upsert_candidate
from models.candidate import CandidateValidationError
from models.job import ResumePayload
from models.outcome import OtherFailure, Outcome, RateLimited, Success
from services import llm
from services.extractor import extract_candidate
from services.pdf import PDFParseError, extract_text

logger = logging.getLogger(__name__)


class ResumeProcessor:
    def __init__(self, extract=extract_text, complete=None, save=upsert_candidate) -> None:
        self._extract = extract
        self._complete = complete
        self._save = save

    async def process(self, payload: dict) -> Outcome:
        try:
            resume = ResumePayload.from_dict(payload)
            text = await asyncio.to_thread(self._extract, resume.file_path)
            if not text.strip():
                return OtherFailure("PDF appears to be empty or unreadable")

            candidate = await extract_candidate(text, complete=self._complete)
            saved = await self._save(candidate)
            return Success(saved)

        except llm.RateLimitedError as exc:
            if exc.retry_after <= 0:
                return OtherFailure(f"Invalid retry_after: {exc.retry_after}")
            return RateLimited(exc.retry_after)
        except (PDFParseError, CandidateValidationError, llm.LLMError, ValueError) as exc:
            return OtherFailure(str(exc))
        except Exception as exc:
            logger.error(
                "Resume processing crashed",
                extra={"payload": payload, "error": str(exc)},
                exc_info=True,
            )
            return OtherFailure(f"Unexpected error: {exc}")
