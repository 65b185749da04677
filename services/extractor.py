"""
Resume → Candidate extraction through the LLM.
"""

import logging

from models.candidate import Candidate
from services import llm

logger = logging.getLogger(__name__)

_SYSTEM = "You are an intelligent assistant that extracts candidate information."

_PROMPT = """\
Extract the candidate information from the following resume text and provide it \
in JSON format according to the schema below:
- Extract as much data as possible. List all the possible skills, certifications, \
and any other relevant information.
- List all the skills from the resume text. Everything counts as a skill.
- Calculate the total years of experience from all work experiences mentioned.
- If no specific data for a field is mentioned in the resume text, set it to "Not specified".
- Expected output:
{{
  "email": "string",
  "phone": "string",
  "name": "string",
  "summary": "string",
  "experience": "string",
  "totalExperienceYears": float,
  "education": "string",
  "skills": ["string"],
  "certifications": ["string"],
  "linkedin": "string",
  "portfolio": "string"
}}
Return ONLY the JSON object. No explanation.

Resume Text:
{text}
"""


async def extract_candidate(text: str, complete=None) -> Candidate:
    """
    Ask the LLM for structured candidate data and validate it.

    Raises:
        services.llm.RateLimitedError: the LLM throttled the request
        services.llm.LLMError:         the call failed or the reply was not JSON
        CandidateValidationError:      a required field is missing
    """
    complete = complete or llm.complete
    output = await complete(_PROMPT.format(text=text), system=_SYSTEM)
    data = llm.parse_json_reply(output)
    candidate = Candidate.from_llm(data)
    logger.info("Candidate extracted", extra={"email": candidate.email})
    return candidate
