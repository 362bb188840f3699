"""
Field cleaning, cross-field repair and acceptance of candidate rows.

Cleaning happens in three passes over the record:

1. every field is sanitized on its own (character sets, formats) and cut to
   its length cap;
2. the ordered ``CROSS_FIELD_RULES`` repair values that landed in the wrong
   column, cutting each moved value to the cap of its new field;
3. the name is capped and title casing is applied.

Rules only ever see capped values, so a second run finds nothing to repair.

``clean_record`` is pure and idempotent; acceptance is decided separately by
``validate_record`` so the maintenance command can re-run both on stored rows.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from hirextra.db.models import CANDIDATE_FIELDS
from hirextra.domain.ingestion.errors import MISSING_NAME, NO_CONTACT_INFO
from hirextra.utils.phone import clean_phone

logger = logging.getLogger(__name__)

Record = Dict[str, str]

FALLBACK_NAME = "Unnamed Candidate"

NAME_MAX_WORDS = 5
NAME_MAX_CHARS = 60

FIELD_MAX_CHARS = {
    "job_title": 150,
    "company": 150,
    "industry": 150,
    "summary": 2000,
    "skills": 2000,
    "location": 150,
    "locality": 150,
    "country": 100,
}

# Sized to the candidate columns.
EMAIL_MAX_CHARS = 320
URL_MAX_CHARS = 500

NAME_FIELDS = ("full_name",)
FREE_TEXT_FIELDS = ("job_title", "company", "industry", "summary")
LOCATION_FIELDS = ("location", "locality", "country")
TITLE_CASE_FIELDS = ("full_name", "job_title", "company")
CONTACT_FIELDS = ("email", "phone", "linkedin_url")

PROFILE_URL_DOMAINS = {
    "linkedin_url": "linkedin.com",
    "github_url": "github.com",
}

SUMMARY_WORDS = {
    "experience",
    "experienced",
    "professional",
    "passionate",
    "seeking",
    "skilled",
    "years",
    "expertise",
    "responsible",
    "motivated",
    "dedicated",
    "working",
}

ROLE_WORDS = {
    "manager",
    "engineer",
    "developer",
    "director",
    "analyst",
    "consultant",
    "executive",
    "officer",
    "designer",
    "architect",
    "specialist",
    "lead",
    "head",
    "intern",
    "administrator",
    "associate",
}

LOCATION_WORDS = {"city", "state", "country"}

# Skills shorter than this are treated as a real skills list.
SKILLS_AS_TITLE_MIN_CHARS = 30

_WHITESPACE = re.compile(r"\s+")
_NON_NAME = re.compile(r"[^A-Za-z\s]")
_NON_FREE_TEXT = re.compile(r"[^A-Za-z0-9\s.,&()/'+#:;!?%-]")
_NON_LOCATION = re.compile(r"[^A-Za-z\s,.-]")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_WORDS = re.compile(r"[a-z]+")
_TITLE_BOUNDARY = re.compile(r"(^|[\s'\"({])([a-z])")


def _collapse(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _words(value: str) -> set:
    return set(_WORDS.findall(value.lower()))


def title_case(value: str) -> str:
    """Lower-case ``value`` and capitalize each word start."""
    return _TITLE_BOUNDARY.sub(lambda m: m.group(1) + m.group(2).upper(), value.lower())


def clean_name(value: str) -> str:
    return _collapse(_NON_NAME.sub("", value))


def clean_free_text(value: str) -> str:
    return _collapse(_NON_FREE_TEXT.sub("", value))


def clean_location(value: str) -> str:
    return _collapse(_NON_LOCATION.sub("", value))


def clean_experience(value: str) -> str:
    """
    Normalize experience to ``"<n> Years"``.

    URLs (profile links pasted in the wrong column) and values without a number
    are cleared; "fresher" means zero years.
    """
    text = value.strip()
    lowered = text.lower()
    if not text or "http" in lowered or "www." in lowered or ".com" in lowered:
        return ""
    if lowered in ("fresher", "fresh"):
        return "0 Years"
    match = _NUMBER.search(text)
    if not match:
        return ""
    return f"{match.group(0)} Years"


def clean_profile_url(value: str, domain: str) -> str:
    url = value.strip().replace(" ", "")
    if domain not in url.lower():
        return ""
    if not url.lower().startswith("http"):
        url = "https://" + url.lstrip("/")
    # A cut URL points somewhere else; drop it instead.
    return url if len(url) <= URL_MAX_CHARS else ""


def clean_email(value: str) -> str:
    email = value.strip()
    if len(email) > EMAIL_MAX_CHARS:
        return ""
    return email if _EMAIL.match(email) else ""


def _looks_like_contact(token: str) -> bool:
    lowered = token.lower()
    if "@" in token and "." in token:
        return True
    return "http" in lowered or "www." in lowered


def clean_skills(value: str) -> str:
    skills = []
    for token in value.split(","):
        token = _collapse(token)
        if token and not _looks_like_contact(token):
            skills.append(token)
    return ", ".join(skills)


def _sanitize(field_name: str, value: str) -> str:
    if not value:
        return ""
    if field_name in NAME_FIELDS:
        return clean_name(value)
    if field_name in FREE_TEXT_FIELDS:
        return clean_free_text(value)
    if field_name in LOCATION_FIELDS:
        return clean_location(value)
    if field_name in PROFILE_URL_DOMAINS:
        return clean_profile_url(value, PROFILE_URL_DOMAINS[field_name])
    if field_name == "experience":
        return clean_experience(value)
    if field_name == "phone":
        return clean_phone(value)
    if field_name == "email":
        return clean_email(value)
    if field_name == "skills":
        return clean_skills(value)
    return _collapse(value)


def cap_length(field_name: str, value: str) -> str:
    """Cut ``value`` to the length cap of ``field_name``, if it has one."""
    limit = FIELD_MAX_CHARS.get(field_name)
    if limit is None or len(value) <= limit:
        return value
    value = value[:limit].strip()
    if field_name == "skills":
        # Truncation can leave a dangling separator.
        value = value.rstrip(",").strip()
    return value


def is_location_shaped(value: str) -> bool:
    return "," in value or bool(_words(value) & LOCATION_WORDS)


@dataclass(frozen=True)
class CrossFieldRule:
    """A repair applied only when its precondition holds for the record."""
    name: str
    applies: Callable[[Record], bool]
    apply: Callable[[Record], Record]


def _name_is_summary(record: Record) -> bool:
    name = record["full_name"]
    return len(name.split()) > NAME_MAX_WORDS and bool(_words(name) & SUMMARY_WORDS)


def _swap_name_and_summary(record: Record) -> Record:
    name, summary = record["full_name"], record["summary"]
    return {
        **record,
        "full_name": clean_name(summary),
        "summary": cap_length("summary", clean_free_text(name)),
    }


def _job_title_is_location(record: Record) -> bool:
    return (
        bool(record["job_title"])
        and not record["location"]
        and is_location_shaped(record["job_title"])
    )


def _move_job_title_to_location(record: Record) -> Record:
    location = cap_length("location", clean_location(record["job_title"]))
    return {**record, "location": location, "job_title": ""}


def _skills_as_job_title(skills: str) -> str:
    return cap_length("job_title", clean_free_text(skills))


def _skills_are_job_title(record: Record) -> bool:
    skills = record["skills"]
    if record["job_title"] or len(skills) <= SKILLS_AS_TITLE_MIN_CHARS:
        return False
    if not _words(skills) & ROLE_WORDS:
        return False
    # A location-shaped title with an empty location would be moved again
    # on the next pass. The check runs on the title as it would be stored.
    return bool(record["location"]) or not is_location_shaped(_skills_as_job_title(skills))


def _move_skills_to_job_title(record: Record) -> Record:
    return {**record, "job_title": _skills_as_job_title(record["skills"]), "skills": ""}


CROSS_FIELD_RULES: List[CrossFieldRule] = [
    CrossFieldRule("name_is_summary", _name_is_summary, _swap_name_and_summary),
    CrossFieldRule("job_title_is_location", _job_title_is_location, _move_job_title_to_location),
    CrossFieldRule("skills_are_job_title", _skills_are_job_title, _move_skills_to_job_title),
]


def apply_cross_field_rules(record: Record, rules: Optional[List[CrossFieldRule]] = None) -> Record:
    for rule in CROSS_FIELD_RULES if rules is None else rules:
        if rule.applies(record):
            logger.debug(f"Applying cross-field rule '{rule.name}'")
            record = rule.apply(record)
    return record


def _cap_name(value: str) -> str:
    words = value.split()[:NAME_MAX_WORDS]
    return " ".join(words)[:NAME_MAX_CHARS].strip()


def _finish(record: Record) -> Record:
    finished = dict(record)
    finished["full_name"] = _cap_name(finished["full_name"])
    for field_name in TITLE_CASE_FIELDS:
        finished[field_name] = title_case(finished[field_name])
    return finished


def clean_record(record: Mapping[str, Any]) -> Record:
    """
    Return a cleaned copy of ``record`` restricted to the candidate fields.

    Missing fields come back as empty strings. Applying this function to its own
    output returns the same record.
    """
    cleaned = {}
    for field_name in CANDIDATE_FIELDS:
        value = record.get(field_name)
        cleaned[field_name] = cap_length(field_name, _sanitize(field_name, "" if value is None else str(value)))
    cleaned = apply_cross_field_rules(cleaned)
    return _finish(cleaned)


def validate_record(record: Mapping[str, str], require_name: bool = True) -> Optional[str]:
    """Return the rejection reason for a cleaned record, or None if it is acceptable."""
    if require_name and not record.get("full_name"):
        return MISSING_NAME
    if not any(record.get(field_name) for field_name in CONTACT_FIELDS):
        return NO_CONTACT_INFO
    return None


@dataclass
class TransformResult:
    record: Optional[Record] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.record is not None


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_mapping(mapping: Mapping[str, Any]) -> Dict[str, str]:
    """
    Normalize a field mapping to ``{candidate field: source header}``.

    Accepts camelCase field names (``fullName``, ``linkedinUrl``) as sent by
    the browser, drops blank values and fields that are not candidate fields.
    """
    normalized = {}
    for field_name, header in (mapping or {}).items():
        key = _CAMEL_BOUNDARY.sub("_", str(field_name)).lower()
        if key not in CANDIDATE_FIELDS:
            logger.debug(f"Ignoring mapping for unknown field '{field_name}'")
            continue
        if header is None or not str(header).strip():
            continue
        normalized[key] = str(header)
    return normalized


def lookup_value(raw_row: Mapping[str, Any], header: Optional[str]) -> str:
    """Fetch ``header`` from a raw row, falling back to a case-insensitive match."""
    if not header:
        return ""
    value = raw_row.get(header)
    if value is None:
        target = header.strip().lower()
        for key, candidate in raw_row.items():
            if key.strip().lower() == target:
                value = candidate
                break
    return "" if value is None else str(value).strip()


def transform_row(
    raw_row: Mapping[str, Any],
    mapping: Mapping[str, str],
    require_name: bool = True,
) -> TransformResult:
    """
    Map a raw row (source header -> value) into a cleaned candidate record.

    ``mapping`` is a normalized field mapping. When ``require_name`` is False a
    row without a usable name is kept under ``FALLBACK_NAME``.
    """
    mapped = {field_name: lookup_value(raw_row, header) for field_name, header in mapping.items()}
    record = clean_record(mapped)

    reason = validate_record(record, require_name=require_name)
    if reason:
        return TransformResult(reason=reason)

    if not record["full_name"]:
        record["full_name"] = FALLBACK_NAME
    return TransformResult(record=record)
