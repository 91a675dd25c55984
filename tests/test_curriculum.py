"""
Tests for Curriculum Extraction.
================================

Tests for:
- Year/semester inference from labels around course tables
- Flat (label-free) curriculum pages
- Degree selector parsing
"""

from src.ingest.models import ExtractionStatus
from src.ingest.pages.curriculum import (
    CurriculumEvent,
    CurriculumState,
    is_curriculum_table,
    parse_curriculum_html,
    parse_degree_options,
    placed_tables,
)
from src.ingest.utils import make_soup


# ─────────────────────────────────────────────────────────────────────────────
# Placement State
# ─────────────────────────────────────────────────────────────────────────────


class TestCurriculumState:
    def test_year_label_resets_semester(self):
        state = CurriculumState()
        state.apply(CurriculumEvent(kind="year", value=1))
        state.apply(CurriculumEvent(kind="semester", value=2))
        state.apply(CurriculumEvent(kind="year", value=2))

        assert (state.year, state.semester) == (2, 1)

    def test_intersession_is_semester_zero(self):
        state = CurriculumState(year=3, semester=2)
        state.apply(CurriculumEvent(kind="semester", value=0))
        assert (state.year, state.semester) == (3, 0)


# ─────────────────────────────────────────────────────────────────────────────
# Curriculum Pages
# ─────────────────────────────────────────────────────────────────────────────


class TestParseCurriculumHtml:
    def test_courses_placed_by_labels(self, fixture_html):
        extraction = parse_curriculum_html(fixture_html("curriculum.html"), "BS CS_2024_1", source="BS CS_2024_1")

        assert extraction.status is ExtractionStatus.FOUND
        placed = {c.course_code: (c.year, c.semester) for c in extraction.records}
        assert placed == {
            "CSCI 21": (1, 1),
            "MATH 10": (1, 1),
            "CSCI 22": (1, 2),
            "PE 1": (1, 0),
            "CSCI 30": (2, 1),
        }

    def test_total_rows_skipped(self, fixture_html):
        codes = [c.course_code for c in parse_curriculum_html(fixture_html("curriculum.html"), "BS CS_2024_1").records]
        assert "Total" not in codes
        assert len(codes) == 5

    def test_labels_inside_tables_are_ignored(self, fixture_html):
        records = parse_curriculum_html(fixture_html("curriculum.html"), "BS CS_2024_1").records
        csci30 = next(c for c in records if c.course_code == "CSCI 30")

        assert csci30.title == "Fifth Year Review of Algorithms"
        assert csci30.year == 2

    def test_course_fields(self, fixture_html):
        records = {c.course_code: c for c in parse_curriculum_html(fixture_html("curriculum.html"), "BS CS_2024_1").records}

        assert records["CSCI 22"].prerequisites == "CSCI 21"
        assert records["CSCI 22"].prerequisite_codes == ["CSCI 21"]
        assert records["CSCI 30"].prerequisite_codes == ["CSCI 22", "MATH 10"]
        assert records["MATH 10"].prerequisite_codes == []
        assert records["PE 1"].units == 2
        assert records["CSCI 21"].category == "M"
        assert records["CSCI 21"].degree_code == "BS CS_2024_1"

    def test_flat_page_places_everything_at_zero(self, fixture_html):
        extraction = parse_curriculum_html(fixture_html("curriculum_flat.html"), "MA ECON_2024_1")

        assert [c.course_code for c in extraction.records] == ["GRAD 201", "GRAD 202"]
        assert {(c.year, c.semester) for c in extraction.records} == {(0, 0)}
        assert extraction.records[0].title == "Research Methods"

    def test_no_table_is_not_found(self):
        extraction = parse_curriculum_html("<html><body>No curriculum</body></html>", "BS X_2024_1")
        assert extraction.status is ExtractionStatus.NOT_FOUND

    def test_outer_layout_table_not_treated_as_course_table(self, fixture_html):
        soup = make_soup(fixture_html("curriculum.html"))
        tables = placed_tables(soup, is_curriculum_table)
        assert len(tables) == 4


class TestParseDegreeOptions:
    def test_options(self, fixture_html):
        programs = parse_degree_options(fixture_html("curriculum_form.html"))

        assert [p.code for p in programs] == ["BS CS_2024_1", "AB EC-H_2024_1", "BS LfSci_24CT_1"]
        cs, econ, lfsci = programs
        assert cs.program == "BS CS"
        assert cs.version_year == 2024
        assert cs.version_semester == 1
        assert econ.is_honors is True
        assert lfsci.track == "CT"
        assert lfsci.name == "BS Life Sciences (2024, CT)"
