from dataclasses import asdict, dataclass, field
from typing import Optional

NOT_SPECIFIED = "Not specified"

REQUIRED_FIELDS = ("email", "phone", "name", "summary", "experience", "skills")


class CandidateValidationError(ValueError):
    pass


@dataclass
class Candidate:
    email: str
    phone: str
    name: str
    summary: str
    experience: str
    skills: list[str]
    total_experience_years: Optional[float] = None
    education: str = NOT_SPECIFIED
    certifications: list[str] = field(default_factory=list)
    linkedin: str = ""
    portfolio: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_llm(cls, data: dict) -> "Candidate":
        """
        Build a Candidate from the LLM's extraction JSON.

        Accepts both ``totalExperienceYears`` (the prompt's key) and
        ``total_experience_years``. Raises CandidateValidationError when a
        required field is missing or empty.
        """
        if not isinstance(data, dict):
            raise CandidateValidationError("Candidate data must be a JSON object")

        for name in REQUIRED_FIELDS:
            if not data.get(name):
                raise CandidateValidationError(f"Missing field: {name}")

        skills = data["skills"]
        if isinstance(skills, str):
            skills = [s.strip() for s in skills.split(",") if s.strip()]

        years = data.get("totalExperienceYears", data.get("total_experience_years"))
        try:
            years = float(years) if years is not None else None
        except (TypeError, ValueError):
            years = None  # "Not specified" and friends

        return cls(
            email=str(data["email"]).strip(),
            phone=str(data["phone"]).strip(),
            name=str(data["name"]).strip(),
            summary=str(data["summary"]),
            experience=str(data["experience"]),
            skills=[str(s) for s in skills],
            total_experience_years=years,
            education=data.get("education") or NOT_SPECIFIED,
            certifications=list(data.get("certifications") or []),
            linkedin=data.get("linkedin") or "",
            portfolio=data.get("portfolio") or "",
        )
