"""
LLM-graded candidate ranking.

    search_candidates()   rank against a free-text query or structured filters
    match_job_listing()   rank against a job description

Both send every stored candidate to the LLM, which scores each 0–100 with a
short explanation. Graded entries are joined back to the stored records by
email (or phone); entries the store does not know are dropped.
"""

import json
import logging

from db.database import get_candidate, list_candidates
from services import llm

logger = logging.getLogger(__name__)

_GRADING_PROMPT = """\
You are an expert AI recruiter. Your task is to evaluate and rank candidates \
based on {target}. Here are the detailed instructions:

1. Carefully review the information for each candidate, including their name, \
email, summary, experience, and skills.
2. Consider the following criteria:
{criteria}
3. Evaluate each candidate based on how well they match. Consider:
   - Relevance of their skills to the required skills
   - Years and quality of experience
   - Overall suitability based on their summary
4. Assign a score from 0 to 100 for each candidate, where 100 is a perfect \
match and 0 is completely irrelevant.
5. Rank the candidates based on their scores.
6. Provide a brief explanation (1-2 sentences) for each candidate's score.
7. Return the top {limit} candidates in JSON format.

Candidate Information:
{candidates}

Output Format:
[
  {{
    "name": "Candidate Name",
    "email": "candidate@example.com",
    "score": 95,
    "explanation": "Brief explanation of the score"
  }}
]

Only return the JSON array, nothing else. If no candidates match the \
criteria, return an empty array.
"""


def _candidate_brief(c: dict) -> dict:
    skills = c.get("skills")
    return {
        "name":       c.get("name"),
        "email":      c.get("email"),
        "summary":    c.get("summary"),
        "experience": c.get("experience"),
        "skills":     ", ".join(skills) if isinstance(skills, list) else skills,
    }


def _score(entry: dict) -> float:
    try:
        return float(entry.get("score", 0))
    except (TypeError, ValueError):
        return 0.0


async def _rank(target: str, criteria: str, limit: int, complete) -> list[dict]:
    candidates = await list_candidates()
    if not candidates:
        return []

    prompt = _GRADING_PROMPT.format(
        target=target,
        criteria=criteria,
        limit=limit,
        candidates=json.dumps([_candidate_brief(c) for c in candidates], indent=2),
    )
    output = await (complete or llm.complete)(prompt)
    graded = llm.parse_json_reply(output)

    if not isinstance(graded, list):
        logger.warning("Grading reply is not a list", extra={"type": type(graded).__name__})
        return []

    graded = [g for g in graded if isinstance(g, dict)]
    graded.sort(key=_score, reverse=True)

    ranked = []
    for entry in graded[:limit]:
        identifier = entry.get("email") or entry.get("phone")
        full = await get_candidate(identifier) if identifier else None
        if full is None:
            logger.info("Graded candidate not in store", extra={"identifier": identifier})
            continue
        ranked.append({**full, "score": _score(entry), "explanation": entry.get("explanation", "")})
    return ranked


async def search_candidates(
    query: str | None = None,
    filters: dict | None = None,
    limit: int = 10,
    complete=None,
) -> list[dict]:
    if not query and not filters:
        raise ValueError("No search parameters provided.")
    if query:
        criteria = f"   Natural language query: {query}"
    else:
        criteria = f"   Filters: {json.dumps(filters)}"
    return await _rank("the given search criteria", criteria, limit, complete)


async def match_job_listing(
    description: str,
    title: str | None = None,
    location: str | None = None,
    limit: int = 10,
    complete=None,
) -> list[dict]:
    if not description or not description.strip():
        raise ValueError("Job description is required.")
    lines = []
    if title:
        lines.append(f"   Job title: {title}")
    if location:
        lines.append(f"   Location: {location}")
    lines.append(f"   Job description:\n{description}")
    return await _rank("the given job description", "\n".join(lines), limit, complete)
