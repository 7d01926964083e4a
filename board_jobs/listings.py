"""Normalisation and quality filtering of harvested listings."""

import html
import re
from typing import Any, Dict, List, Optional

from board_jobs.models import ExternalListingRecord

MAX_DESCRIPTION_LENGTH = 5000
MIN_DESCRIPTION_LENGTH = 50
MAX_SKILLS = 10
LISTING_SOURCE = "adzuna"

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

_CONTRACT_TYPES = {
    "full_time": "full_time",
    "fulltime": "full_time",
    "full-time": "full_time",
    "part_time": "part_time",
    "parttime": "part_time",
    "part-time": "part_time",
    "contract": "contract",
    "contractor": "contract",
    "internship": "internship",
    "intern": "internship",
    "temporary": "temporary",
    "temp": "temporary",
    "volunteer": "volunteer",
}

SPAM_KEYWORDS = (
    "make money",
    "easy money",
    "click here",
    "unlimited income",
    "financial freedom",
    "be your own boss",
    "ground floor opportunity",
    "work when you want",
    "act now",
    "limited time",
)

REMOTE_KEYWORDS = (
    "remote",
    "work from home",
    "work-from-home",
    "telecommute",
    "fully remote",
)

SKILL_KEYWORDS = (
    "javascript",
    "python",
    "java",
    "react",
    "sql",
    "excel",
    "customer service",
    "sales",
    "marketing",
    "accounting",
    "communication",
    "leadership",
    "microsoft office",
    "data entry",
    "bilingual",
    "spanish",
    "forklift",
    "warehouse",
    "retail",
    "healthcare",
    "nursing",
    "administrative",
    "cdl",
    "construction",
    "maintenance",
)


def clean_description(description: Optional[str]) -> str:
    """Strip markup, decode entities, collapse whitespace and cap the length."""
    if not description:
        return ""

    cleaned = _TAG_RE.sub("", description)
    cleaned = html.unescape(cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()

    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        cleaned = cleaned[:MAX_DESCRIPTION_LENGTH] + "..."
    return cleaned


def map_contract_type(contract_type: Optional[str]) -> str:
    """Map the upstream contract tag onto the board's job type values."""
    return _CONTRACT_TYPES.get((contract_type or "").strip().lower(), "other")


def extract_skills(description: str) -> List[str]:
    lowered = description.lower()
    return [skill for skill in SKILL_KEYWORDS if skill in lowered][:MAX_SKILLS]


def is_quality_listing(record: ExternalListingRecord, allow_remote: bool = False) -> bool:
    """
    Reject listings that are incomplete or look like spam.

    A listing needs a title, company, location and a description of at least
    50 characters. Spam phrases, more than two exclamation marks or more than
    one question mark in the title, and salary ranges wider than 100k are
    rejected. Remote listings are rejected unless ``allow_remote`` is set.
    """
    if not record.title or not record.company or not record.location:
        return False
    if len(record.description or "") < MIN_DESCRIPTION_LENGTH:
        return False

    title = record.title.lower()
    description = record.description.lower()
    location = record.location.lower()

    if any(keyword in title or keyword in description for keyword in SPAM_KEYWORDS):
        return False

    if not allow_remote and any(
        keyword in title or keyword in location for keyword in REMOTE_KEYWORDS
    ):
        return False

    if record.title.count("!") > 2 or record.title.count("?") > 1:
        return False

    if record.salary_min is not None and record.salary_max is not None:
        if record.salary_max - record.salary_min > 100_000:
            return False

    return True


def normalise_listing(record: ExternalListingRecord) -> Dict[str, Any]:
    """Build the row upserted into the listings table for one record."""
    description = clean_description(record.description)
    return {
        "id": record.id,
        "title": record.title.strip(),
        "company": record.company.strip() or "Unknown Company",
        "description": description,
        "location": record.location.strip(),
        "salary_min": record.salary_min,
        "salary_max": record.salary_max,
        "job_type": map_contract_type(record.contract_type),
        "categories": [record.category] if record.category else [],
        "skills": extract_skills(description),
        "source": LISTING_SOURCE,
        "url": record.url,
        "posted_at": record.posted_at,
    }
