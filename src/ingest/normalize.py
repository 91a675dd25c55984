"""Course code, instructor name and term code normalization.

The portal shows the same course differently depending on the page:

    "LLAW 113"        class schedule (canonical)
    "LLAW 11312018"   enrolled classes, with a 5-digit term suffix
    "MATH 31.212018"  enrolled classes, variant ".2" plus term suffix
    "LLAW 113.03"     curriculum, variant suffix only

Every function here is pure and total: any input gives a deterministic
string, empty input gives an empty string.
"""

import re

_CODE_RE = re.compile(r"^([A-Z]+)\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_TERM_SUFFIX_RE = re.compile(r"^[A-Z]+\s*\d+(?:\.\d*)?([012])((?:19|20)\d{2})$", re.IGNORECASE)

TERM_SUFFIX_LEN = 5
# Longest catalog part that is never treated as carrying a term suffix
MAX_CATALOG_DIGITS = 4
MAX_VARIANT_DIGITS = 3


def normalize_course_code(raw: str) -> str:
    """Normalize a course code to "SUBJ CATALOG".

    A term suffix is stripped only when what remains is a plausible catalog
    number (at most four digits, or a variant of at most three), so the
    result never looks suffixed again and the function is idempotent.

    >>> normalize_course_code("LLAW 11312018")
    'LLAW 113'
    >>> normalize_course_code("MATH 31.212018")
    'MATH 31.2'
    """
    if not raw:
        return ""

    trimmed = " ".join(raw.split())
    if not trimmed:
        return ""

    # Joint cross-listed courses ("ANTH/SOCIO 141.2") pass through
    if "/" in trimmed:
        return trimmed.upper()

    match = _CODE_RE.match(trimmed)
    if not match:
        return trimmed.upper()

    subject, catalog = match.group(1), match.group(2)

    if "." in catalog:
        whole, fraction = catalog.split(".", 1)
        if (
            len(fraction) > MAX_VARIANT_DIGITS
            and len(fraction) >= TERM_SUFFIX_LEN
            and len(fraction) - TERM_SUFFIX_LEN <= MAX_VARIANT_DIGITS
        ):
            variant = fraction[:-TERM_SUFFIX_LEN]
            catalog = f"{whole}.{variant}" if variant else whole
    elif TERM_SUFFIX_LEN < len(catalog) <= MAX_CATALOG_DIGITS + TERM_SUFFIX_LEN:
        catalog = catalog[:-TERM_SUFFIX_LEN]

    return f"{subject.upper()} {catalog}"


def extract_term_from_code(raw: str) -> str | None:
    """Return the term code embedded in a suffixed course code.

    >>> extract_term_from_code("LLAW 11312018")
    '2018-1'
    >>> extract_term_from_code("LLAW 113") is None
    True
    """
    if not raw:
        return None
    match = _TERM_SUFFIX_RE.match(" ".join(raw.split()))
    if not match:
        return None
    semester, year = match.group(1), match.group(2)
    return f"{year}-{semester}"


def course_prefix(code: str) -> str:
    """Subject part of a course code ("CSCI 21" -> "CSCI")."""
    parts = code.split()
    return parts[0].upper() if parts else "UNKNOWN"


def normalize_instructor_name(raw: str) -> str:
    """Normalize an instructor name to "LAST, Given Middle".

    The portal uses "First LAST", "First Middle LAST" or the already
    formatted "LAST, First". The surname is the last all-uppercase token of
    at least two letters, which skips middle initials like "A.".
    """
    if not raw:
        return ""

    trimmed = " ".join(raw.split())
    if not trimmed:
        return ""

    if "," in trimmed:
        return trimmed

    words = trimmed.split(" ")
    surname_index = -1
    for i in range(len(words) - 1, -1, -1):
        clean = words[i].replace(".", "")
        if len(clean) >= 2 and clean == clean.upper() and any(c.isalpha() for c in clean):
            surname_index = i
            break

    if surname_index == -1:
        if len(words) >= 2:
            return f"{words[-1].upper()}, {' '.join(words[:-1])}"
        return trimmed

    surname = words[surname_index]
    others = words[:surname_index] + words[surname_index + 1 :]
    if others:
        return f"{surname}, {' '.join(others)}"
    return surname
