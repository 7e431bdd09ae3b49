from __future__ import annotations

from photolessons.services.standards import (
    code_domain,
    extract_grade_standards,
    extract_standards,
    filter_to_domain,
    standards_for_grade,
)


def test_extract_standards_finds_codes_and_core_ideas():
    text = "Covers 3-LS4-3, 3-LS1-1 and again 3-LS1-1; core idea K-ESS2.D and 5-PS1-1."

    assert extract_standards(text) == ["3-LS1-1", "3-LS4-3", "5-PS1-1", "K-ESS2.D"]


def test_extract_standards_handles_empty_text():
    assert extract_standards(None) == []
    assert extract_standards("no codes here") == []


def test_code_domain():
    assert code_domain("2-ESS1-1") == "ESS"
    assert code_domain("K-PS2-1") == "PS"
    assert code_domain("3-5-ETS1-2") == "ETS"
    assert code_domain("nonsense") is None


def test_filter_to_domain_keeps_engineering_codes():
    codes = ["3-LS1-1", "K-PS2-1", "3-5-ETS1-1", "4-ESS1-1"]

    assert filter_to_domain(codes, "life-science") == ["3-LS1-1", "3-5-ETS1-1"]
    assert filter_to_domain(codes, "earth-space-science") == ["3-5-ETS1-1", "4-ESS1-1"]


def test_filter_to_domain_leaves_unknown_category_alone():
    assert filter_to_domain(["K-PS2-1"], "art") == ["K-PS2-1"]


def test_standards_for_grade_matches_domain_and_grade():
    codes = standards_for_grade("life-science", "3")

    assert "3-LS1-1" in codes
    assert all(code.startswith("3-LS") for code in codes)
    assert standards_for_grade("physical-science", "K") == ["K-PS2-1", "K-PS2-2", "K-PS3-1", "K-PS3-2"]
    assert standards_for_grade("art", "3") == []


def test_extract_grade_standards_omits_grades_without_codes():
    educational = {
        "kindergarten": "Touch the leaf. K-LS1-1",
        "grade1": "Nothing to cite.",
        "grade3": "Pushes and pulls 3-PS2-1, habitats 3-LS4-3",
    }

    assert extract_grade_standards(educational, "life-science") == {
        "kindergarten": ["K-LS1-1"],
        "grade3": ["3-LS4-3"],
    }
