"""Parsers for portal codes embedded in free text.

Degree codes look like ``PROGRAM_VERSION_SEM``:

    "BS ME_2025_1"          program BS ME, version 2025, semester 1
    "AB EC-H_2024_1"        honors program (suffix -H)
    "BS LfSci_24CT_1"       short year 24 plus track CT
    "AB LIT(ENG)-LCS_24TB_0" specialization LCS, track TB
"""

import re
from dataclasses import dataclass, field

_FULL_YEAR_RE = re.compile(r"^\d{4}$")
_YEAR_TRACK_RE = re.compile(r"^(\d{2,4})([A-Z]+)$")
_SPECIALIZATION_RE = re.compile(r"^(.+)-([A-Z]{2,5})$")
_PREREQ_CODE_RE = re.compile(r"\b([A-Z]{2,5})\s*(\d{2,3}(?:\.\d{1,2})?)\b", re.IGNORECASE)
_CONSENT_RE = re.compile(r"consent|permission|approval", re.IGNORECASE)


@dataclass
class ParsedDegreeCode:
    raw: str
    program_code: str = ""  # "AB EC-H"
    program_base: str = ""  # "AB EC"
    is_honors: bool = False
    track: str | None = None
    specialization: str | None = None
    year: int | None = None
    semester: int | None = None


def parse_degree_code(code: str) -> ParsedDegreeCode:
    """Split a degree code into program, track and version parts.

    Unrecognized version parts leave year and track unset; an empty code
    gives an empty result.
    """
    result = ParsedDegreeCode(raw=code)
    if not code:
        return result

    parts = code.split("_")
    result.program_code = parts[0]
    result.is_honors = "-H" in result.program_code
    result.program_base = re.sub(r"-H$", "", result.program_code)

    spec_match = _SPECIALIZATION_RE.match(result.program_base)
    if spec_match and not result.is_honors:
        result.specialization = spec_match.group(2)

    if len(parts) >= 2:
        version = parts[1]
        if _FULL_YEAR_RE.match(version):
            result.year = int(version)
        else:
            match = _YEAR_TRACK_RE.match(version)
            if match:
                year = int(match.group(1))
                result.year = 2000 + year if year < 100 else year
                result.track = match.group(2)

    if len(parts) >= 3 and re.fullmatch(r"\d", parts[2]):
        result.semester = int(parts[2])

    return result


def build_degree_code(program: str, year: int, semester: int) -> str:
    return f"{program}_{year}_{semester}"


@dataclass
class Prerequisites:
    raw: str
    courses: list[str] = field(default_factory=list)
    has_consent_clause: bool = False


def parse_prerequisites(text: str) -> Prerequisites:
    """Pull course codes out of prerequisite prose.

    >>> parse_prerequisites("MATH 10 or MATH 11").courses
    ['MATH 10', 'MATH 11']
    >>> parse_prerequisites("Consent of instructor").courses
    []
    """
    stripped = (text or "").strip()
    if not stripped or stripped.lower() == "none":
        return Prerequisites(raw=stripped)

    courses: list[str] = []
    for match in _PREREQ_CODE_RE.finditer(stripped):
        code = f"{match.group(1).upper()} {match.group(2)}"
        if code not in courses:
            courses.append(code)

    return Prerequisites(
        raw=stripped,
        courses=courses,
        has_consent_clause=bool(_CONSENT_RE.search(stripped)),
    )
