from __future__ import annotations

from visit_reminders.facilities import (
    FacilityDirectory,
    FacilityRecord,
    extract_keywords,
    match_facility,
    normalize_facility_name,
    similarity,
)


def _directory() -> FacilityDirectory:
    return FacilityDirectory(
        [
            FacilityRecord(facility_id="fac-1", name="AUTOSUR Saint-Étienne Centre", network="AUTOSUR"),
            FacilityRecord(facility_id="fac-2", name="Sécuritest Villeurbanne", network="SECURITEST"),
            FacilityRecord(facility_id="fac-3", name="DEKRA Lyon Gerland", network="DEKRA"),
        ]
    )


def test_normalize_strips_accents_separators_and_punctuation() -> None:
    assert normalize_facility_name("  AUTOSUR Saint-Étienne (Centre).  ") == "autosur saint etienne centre"
    assert normalize_facility_name("L'Arbresle_Nord") == "l arbresle nord"
    assert normalize_facility_name(None) == ""


def test_extract_keywords_drops_brands_and_short_words() -> None:
    assert extract_keywords("Contrôle Technique DEKRA de Lyon Gerland") == ["lyon", "gerland"]


def test_similarity_counts_substring_matches_either_way() -> None:
    assert similarity("Lyon Gerland", "DEKRA Lyon Gerland") == 1.0
    assert similarity("Villeurbanne Gratte", "Sécuritest Villeurbanne") == 0.5
    assert similarity("CT", "Lyon") == 0.0


def test_exact_match_after_normalization_is_high_confidence() -> None:
    match = match_facility(_directory(), "autosur saint etienne centre")

    assert match is not None
    assert match.facility.facility_id == "fac-1"
    assert match.score == 1.0
    assert match.confidence == "high"


def test_containment_scores_high() -> None:
    match = match_facility(_directory(), "Lyon Gerland")

    assert match is not None
    assert match.facility.facility_id == "fac-3"
    assert match.score == 0.9
    assert match.confidence == "high"


def test_keyword_overlap_confidence_bands() -> None:
    medium = match_facility(_directory(), "Villeurbanne Gratte")
    low = match_facility(_directory(), "Villeurbanne Grand Clément")

    assert medium is not None
    assert medium.facility.facility_id == "fac-2"
    assert medium.confidence == "medium"
    assert low is not None
    assert low.facility.facility_id == "fac-2"
    assert low.confidence == "low"


def test_no_match_below_threshold() -> None:
    assert match_facility(_directory(), "Marseille Prado") is None
    assert match_facility(_directory(), "") is None


def test_ties_keep_first_facility() -> None:
    directory = FacilityDirectory(
        [
            FacilityRecord(facility_id="first", name="Centre Lyon Nord"),
            FacilityRecord(facility_id="second", name="Centre Lyon Sud"),
        ]
    )

    match = match_facility(directory, "Lyon Est")

    assert match is not None
    assert match.facility.facility_id == "first"


def test_directory_replace_get_and_invalidate() -> None:
    directory = _directory()
    assert directory.get("fac-2") is not None
    assert directory.get(None) is None

    directory.replace([FacilityRecord(facility_id="fac-9", name="Secta Vienne")])
    assert [value.facility_id for value in directory.all()] == ["fac-9"]

    directory.invalidate()
    assert directory.all() == ()
    assert match_facility(directory, "Secta Vienne") is None
