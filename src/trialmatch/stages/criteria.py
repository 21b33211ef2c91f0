"""Text matching helpers shared by discovery and scoring."""

import re

from trialmatch.models.trial import TrialLocation

NO_MIN_AGE = 0
NO_MAX_AGE = 999

_FIRST_INT = re.compile(r"\d+")


def parse_age_bound(value: str | None, default: int) -> int:
    """First integer in a registry age string ("18 Years" -> 18), else ``default``."""
    if not value:
        return default
    match = _FIRST_INT.search(value)
    return int(match.group()) if match else default


def lines_containing(lines: list[str], terms: list[str]) -> list[tuple[str, str]]:
    """(line, term) pairs where a line contains a term, case-insensitively."""
    hits = []
    for line in lines:
        lowered = line.lower()
        for term in terms:
            if term and term.strip() and term.strip().lower() in lowered:
                hits.append((line, term))
    return hits


def _location_parts(location: str) -> list[str]:
    parts = [location.strip().lower()]
    parts.extend(p.strip().lower() for p in location.split(",") if p.strip())
    return [p for p in dict.fromkeys(parts) if p]


def _contains_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def location_matches(patient_location: str, site: TrialLocation) -> bool:
    """Whole-word, case-insensitive match of the patient location against site city/state.

    "Atlanta, GA" matches a site in Atlanta or in state "GA", but a "CA" site
    never matches "Chicago, IL".
    """
    site_values = [v.strip().lower() for v in (site.city, site.state) if v and v.strip()]
    if not site_values:
        return False
    for part in _location_parts(patient_location):
        for value in site_values:
            if _contains_word(part, value) or _contains_word(value, part):
                return True
    return False


def matching_sites(patient_location: str, sites: list[TrialLocation]) -> list[TrialLocation]:
    return [site for site in sites if location_matches(patient_location, site)]
