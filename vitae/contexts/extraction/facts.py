"""
Known facts and confidence scoring for the extraction pipeline.

Everything here is a pure function of stored step data. Known facts are never
stored; they are recomputed whenever a session context is read.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

from vitae.utils.timestamp import today

STEP_BASIC_INFO = "basic_info"
STEP_PROFESSIONAL = "professional"
STEP_ADDITIONAL = "additional"

STEP_ORDER = (STEP_BASIC_INFO, STEP_PROFESSIONAL, STEP_ADDITIONAL)

# Fields owned by the basic-info step; later steps never override them
IDENTITY_FIELDS = ("name", "email", "phone", "location", "current_title", "summary", "linkedin", "github", "website")

# Alternative keys backends use for the same identity field
IDENTITY_ALIASES = {
    "current_title": ("current_title", "title", "currentTitle", "job_title"),
    "linkedin": ("linkedin", "linkedIn", "linkedin_url"),
    "github": ("github", "gitHub", "github_url"),
    "website": ("website", "portfolio", "url"),
}

# Checked in order; first keyword hit wins
PROFESSION_KEYWORDS = [
    ("software_developer", ("software", "developer", "engineer", "programmer")),
    ("healthcare", ("nurse", "medical", "healthcare", "physician", "doctor")),
    ("education", ("teacher", "educator", "professor", "lecturer")),
    ("culinary", ("cook", "chef", "culinary")),
    ("sales_business", ("sales", "account", "business")),
]
DEFAULT_PROFESSION = "general"

# (upper bound in years, level)
EXPERIENCE_LEVELS = [
    (2, "entry_level"),
    (5, "mid_level"),
    (10, "senior_level"),
]
TOP_EXPERIENCE_LEVEL = "executive_level"

CONFIDENCE_BASELINE = 0.5
CONFIDENCE_INCREMENT = 0.1

_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")
_PRESENT = re.compile(r"\b(present|current|now|today|ongoing)\b", re.IGNORECASE)


@dataclass
class KnownFacts:
    """Running summary of what earlier steps established about the candidate."""

    name: Optional[str] = None
    email: Optional[str] = None
    current_title: Optional[str] = None
    profession: str = DEFAULT_PROFESSION
    experience_level: Optional[str] = None
    skills: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def is_populated(value: Any) -> bool:
    """True for non-empty strings/collections and any number or bool."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def score_confidence(data: Mapping[str, Any]) -> float:
    """
    Heuristic confidence for one step's output.

    Baseline 0.5 plus 0.1 per populated top-level field, capped at 1.0.
    Diagnostic only; never used to gate control flow.
    """
    if not data:
        return CONFIDENCE_BASELINE
    populated = sum(1 for value in data.values() if is_populated(value))
    return round(min(1.0, CONFIDENCE_BASELINE + CONFIDENCE_INCREMENT * populated), 2)


def get_identity_field(data: Mapping[str, Any], field_name: str) -> Optional[Any]:
    """Read an identity field, accepting the usual key spellings."""
    for key in IDENTITY_ALIASES.get(field_name, (field_name,)):
        value = data.get(key)
        if is_populated(value):
            return value.strip() if isinstance(value, str) else value
    return None


def detect_profession(title: Optional[str]) -> str:
    """Coarse profession classification from a job title."""
    if not title:
        return DEFAULT_PROFESSION
    lowered = title.lower()
    for profession, keywords in PROFESSION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return profession
    return DEFAULT_PROFESSION


def estimate_entry_years(entry: Any, reference_year: int) -> float:
    """
    Years covered by one experience entry.

    Uses an explicit numeric "years" field when present, otherwise the span of
    4-digit years in the dates ("Present" counts as reference_year), otherwise 1.
    """
    if not isinstance(entry, dict):
        return 1

    years = entry.get("years")
    if isinstance(years, (int, float)) and not isinstance(years, bool):
        return max(float(years), 0.0)
    if isinstance(years, str):
        try:
            return max(float(years), 0.0)
        except ValueError:
            pass

    date_text = " ".join(
        str(entry.get(key) or "") for key in ("start_date", "startDate", "end_date", "endDate", "dates", "duration")
    )
    found = [int(year) for year in _YEAR.findall(date_text)]
    if _PRESENT.search(date_text):
        found.append(reference_year)
    if len(found) >= 2:
        return max(max(found) - min(found), 1)
    return 1


def determine_experience_level(experience: Any, reference_year: Optional[int] = None) -> str:
    """Coarse experience level from the total years across experience entries."""
    if not isinstance(experience, list) or not experience:
        return EXPERIENCE_LEVELS[0][1]

    reference_year = reference_year or today().year
    total = sum(estimate_entry_years(entry, reference_year) for entry in experience)

    for upper_bound, level in EXPERIENCE_LEVELS:
        if total < upper_bound:
            return level
    return TOP_EXPERIENCE_LEVEL


def flatten_skills(skills: Any) -> list[str]:
    """
    Flatten the skill shapes backends return into a list of unique strings.

    Accepts a list of strings, a list of {"name": ...} dicts, or a dict of
    category -> list. Order of first appearance is kept.
    """
    if skills is None:
        return []
    if isinstance(skills, str):
        items = [part.strip() for part in skills.split(",")]
    elif isinstance(skills, dict):
        items = []
        for value in skills.values():
            items.extend(flatten_skills(value))
    elif isinstance(skills, list):
        items = []
        for item in skills:
            if isinstance(item, dict):
                name = item.get("name") or item.get("skill")
                if name:
                    items.append(str(name).strip())
            elif isinstance(item, (list, dict)):
                items.extend(flatten_skills(item))
            elif item is not None:
                items.append(str(item).strip())
    else:
        items = [str(skills)]

    seen = set()
    unique = []
    for item in items:
        if item and item.lower() not in seen:
            seen.add(item.lower())
            unique.append(item)
    return unique


def derive_known_facts(step_data: Mapping[str, Mapping[str, Any]], reference_year: Optional[int] = None) -> KnownFacts:
    """
    Project known facts from stored step data.

    Args:
        step_data: Step name -> step data, in pipeline order
        reference_year: Year used for "Present" in date ranges (default: current year)

    Returns:
        Fresh KnownFacts instance
    """
    basic = step_data.get(STEP_BASIC_INFO) or {}
    professional = step_data.get(STEP_PROFESSIONAL)

    title = get_identity_field(basic, "current_title")
    experience_level = None
    skills = []
    if professional is not None:
        experience_level = determine_experience_level(professional.get("experience"), reference_year)
        skills = flatten_skills(professional.get("skills"))

    return KnownFacts(
        name=get_identity_field(basic, "name"),
        email=get_identity_field(basic, "email"),
        current_title=title,
        profession=detect_profession(title),
        experience_level=experience_level,
        skills=skills,
    )
