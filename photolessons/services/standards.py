"""NGSS standards extraction and filtering."""

from __future__ import annotations

import re
from typing import Mapping

from photolessons.models import GRADE_LEVELS

CATEGORY_TO_DOMAIN = {
    "physical-science": "PS",
    "life-science": "LS",
    "earth-space-science": "ESS",
}

DOMAIN_NAMES = {
    "PS": "Physical Science",
    "LS": "Life Science",
    "ESS": "Earth and Space Science",
}

# Engineering design codes are valid alongside any science domain.
CROSS_DOMAIN = "ETS"

STANDARD_PATTERN = re.compile(r"\b([K1-5]-[A-Z]{2,4}\d?[.-](?:\d+[A-Z]?|[A-Z]))\b")
PE_PATTERN = re.compile(r"^[K1-5]-[A-Z]{2,4}\d?-\d+$")
_DOMAIN_PATTERN = re.compile(r"-([A-Z]+)\d")

# K-5 performance expectations, by code.
PERFORMANCE_EXPECTATIONS: tuple[str, ...] = (
    "K-PS2-1", "K-PS2-2", "K-PS3-1", "K-PS3-2",
    "1-PS4-1", "1-PS4-2", "1-PS4-3", "1-PS4-4",
    "2-PS1-1", "2-PS1-2", "2-PS1-3", "2-PS1-4",
    "3-PS2-1", "3-PS2-2", "3-PS2-3", "3-PS2-4",
    "4-PS3-1", "4-PS3-2", "4-PS3-3", "4-PS3-4", "4-PS4-1", "4-PS4-2", "4-PS4-3",
    "5-PS1-1", "5-PS1-2", "5-PS1-3", "5-PS1-4", "5-PS2-1", "5-PS3-1",
    "K-LS1-1",
    "1-LS1-1", "1-LS1-2", "1-LS3-1",
    "2-LS2-1", "2-LS2-2", "2-LS4-1",
    "3-LS1-1", "3-LS2-1", "3-LS3-1", "3-LS3-2", "3-LS4-1", "3-LS4-2", "3-LS4-3", "3-LS4-4",
    "4-LS1-1", "4-LS1-2",
    "5-LS1-1", "5-LS2-1",
    "K-ESS2-1", "K-ESS2-2", "K-ESS3-1", "K-ESS3-2", "K-ESS3-3",
    "1-ESS1-1", "1-ESS1-2",
    "2-ESS1-1", "2-ESS2-1", "2-ESS2-2", "2-ESS2-3",
    "3-ESS2-1", "3-ESS2-2", "3-ESS3-1",
    "4-ESS1-1", "4-ESS2-1", "4-ESS2-2", "4-ESS3-1", "4-ESS3-2",
    "5-ESS1-1", "5-ESS1-2", "5-ESS2-1", "5-ESS2-2", "5-ESS3-1",
)


def code_domain(code: str) -> str | None:
    """Return the domain letters of a code, e.g. 'ESS' for '2-ESS1-1'."""

    match = _DOMAIN_PATTERN.search(code)
    return match.group(1) if match else None


def standards_for_grade(category: str, ngss_grade: str) -> list[str]:
    """Performance expectations for a category's domain at one grade."""

    domain = CATEGORY_TO_DOMAIN.get(category)
    if not domain:
        return []
    return [
        code
        for code in PERFORMANCE_EXPECTATIONS
        if code_domain(code) == domain and code.split("-", 1)[0] == ngss_grade
    ]


def extract_standards(text: str | None) -> list[str]:
    """Return the sorted, unique NGSS codes mentioned in text."""

    if not text:
        return []
    return sorted({match.group(1) for match in STANDARD_PATTERN.finditer(text)})


def filter_to_domain(codes: list[str], category: str) -> list[str]:
    """Drop codes from other science domains.

    Codes whose domain cannot be read are kept.
    """

    domain = CATEGORY_TO_DOMAIN.get(category)
    if not domain:
        return codes
    kept = []
    for code in codes:
        found = code_domain(code)
        if found is None or found in (domain, CROSS_DOMAIN):
            kept.append(code)
    return kept


def extract_grade_standards(
    educational: Mapping[str, str], category: str
) -> dict[str, list[str]]:
    """Map each grade's standards key to the codes found in its content.

    Grades with no content or no matching codes are omitted.
    """

    standards: dict[str, list[str]] = {}
    for grade in GRADE_LEVELS:
        text = educational.get(grade.standards_key)
        if not text:
            continue
        codes = filter_to_domain(extract_standards(text), category)
        if codes:
            standards[grade.standards_key] = codes
    return standards
