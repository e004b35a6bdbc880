from __future__ import annotations

import pytest
from pydantic import ValidationError

from exam_extraction.errors import ExtractionParseError
from exam_extraction.schema import (
    BANDS,
    UNKNOWN_SUBJECT,
    ExamRecord,
    RawExamRecord,
    check_band_total,
    coerce_count,
    coerce_number,
    extraction_json_schema,
    normalize_record,
    normalize_records,
)

from conftest import make_record


class TestCoercion:
    @pytest.mark.parametrize(
        "value, expected",
        [(12, 12.0), (85.5, 85.5), ("85.5", 85.5), (" 1,234 ", 1234.0), (None, 0.0), ("n/a", 0.0), (True, 0.0)],
    )
    def test_coerce_number(self, value, expected):
        assert coerce_number(value) == expected

    def test_negative_and_non_finite_become_zero(self):
        assert coerce_number(-3) == 0.0
        assert coerce_number(float("nan")) == 0.0
        assert coerce_number(float("inf")) == 0.0

    def test_coerce_count_rounds(self):
        assert coerce_count(11.6) == 12
        assert coerce_count("7") == 7
        assert coerce_count([1, 2]) == 0


class TestNormalizeRecord:
    def test_well_formed_record(self):
        record = normalize_record(make_record("국어", average=81.3, totalStudents=40))
        assert record.subject == "국어"
        assert record.average == 81.3
        assert record.total_students == 40
        assert record.score_distribution.as_row() == {
            "90-100": 5,
            "80-89": 6,
            "70-79": 7,
            "60-69": 8,
            "under-60": 4,
        }

    def test_subject_is_kept_verbatim(self):
        record = normalize_record({"subject": "  인공지능일반 (2학년) "})
        assert record.subject == "  인공지능일반 (2학년) "

    @pytest.mark.parametrize("subject", [None, "", "   "])
    def test_missing_subject_gets_placeholder(self, subject):
        assert normalize_record({"subject": subject}).subject == UNKNOWN_SUBJECT

    def test_non_string_subject_is_stringified(self):
        assert normalize_record({"subject": 101}).subject == "101"

    def test_missing_fields_default_to_zero(self):
        record = normalize_record({"subject": "물리학1"})
        assert record.average == 0.0
        assert record.total_students == 0
        assert record.score_distribution.total == 0

    def test_explicit_under_60_wins_over_sub_bands(self):
        raw = {"subject": "화학1", "scoreDistribution": {"under-60": 9, "50-59": 3, "40-49": 1}}
        assert normalize_record(raw).score_distribution.under_60 == 9

    def test_under_60_backfilled_from_sub_bands(self):
        raw = {"subject": "화학1", "scoreDistribution": {"50-59": 3, "40-49": 1}}
        assert normalize_record(raw).score_distribution.under_60 == 4

    def test_null_under_60_is_backfilled(self):
        raw = {"subject": "화학1", "scoreDistribution": {"under-60": None, "0-9": 2, "10-19": "2"}}
        assert normalize_record(raw).score_distribution.under_60 == 4

    def test_legacy_grade_counts_layout(self):
        raw = {
            "subject": "제조화학",
            "average": "66.7",
            "totalStudents": 25,
            "gradeCounts": {
                "score_90_100": 2,
                "score_80_89": 3,
                "score_70_79": 4,
                "score_60_69": 5,
                "score_50_59": 6,
                "score_0_9": 5,
            },
        }
        record = normalize_record(raw)
        assert record.average == 66.7
        assert record.score_distribution.score_90_100 == 2
        assert record.score_distribution.under_60 == 11
        assert record.score_distribution.total == 25

    def test_all_numeric_fields_non_negative(self):
        raw = {
            "subject": "생산관리",
            "average": -1,
            "totalStudents": "-5",
            "scoreDistribution": {band: -2 for band in BANDS},
        }
        record = normalize_record(raw)
        assert record.average == 0
        assert record.total_students == 0
        assert all(value == 0 for value in record.score_distribution.as_row().values())

    def test_non_mapping_raises_parse_error(self):
        with pytest.raises(ExtractionParseError):
            normalize_record(["not", "an", "object"])  # type: ignore[arg-type]

    def test_normalize_records_keeps_order(self):
        records = normalize_records([make_record("A"), make_record("B"), make_record("C")])
        assert [r.subject for r in records] == ["A", "B", "C"]


class TestExamRecord:
    def test_is_immutable(self):
        record = normalize_record(make_record())
        with pytest.raises(ValidationError):
            record.average = 10.0

    def test_serializes_with_json_aliases(self):
        dumped = normalize_record(make_record()).model_dump(by_alias=True)
        assert set(dumped) == {"subject", "average", "totalStudents", "scoreDistribution"}
        assert list(dumped["scoreDistribution"]) == list(BANDS)

    def test_rejects_empty_subject(self):
        with pytest.raises(ValidationError):
            ExamRecord(subject="")


class TestSchemaContract:
    def test_json_schema_is_array_of_records(self):
        schema = extraction_json_schema()
        assert schema["type"] == "array"
        definitions = schema["$defs"]
        record_props = definitions["RawExamRecord"]["properties"]
        assert {"subject", "average", "totalStudents", "scoreDistribution"} <= set(record_props)
        band_props = definitions["RawScoreDistribution"]["properties"]
        assert {"90-100", "80-89", "70-79", "60-69", "under-60", "50-59", "0-9"} <= set(band_props)

    def test_raw_record_accepts_aliases(self):
        raw = RawExamRecord.model_validate(make_record("국어"))
        assert raw.total_students == 30
        assert raw.score_distribution is not None
        assert raw.score_distribution.under_60 == 4

    def test_raw_record_coerces_instead_of_rejecting(self):
        raw = RawExamRecord.model_validate(
            {
                "subject": 101,
                "average": "n/a",
                "totalStudents": "1,200",
                "scoreDistribution": {"90-100": 12.5, "80-89": "x", "50-59": None},
            }
        )
        assert raw.subject == "101"
        assert raw.average == 0
        assert raw.total_students == 1200
        assert raw.score_distribution is not None
        assert raw.score_distribution.score_90_100 == 12
        assert raw.score_distribution.score_80_89 == 0
        assert raw.score_distribution.score_50_59 is None

    def test_raw_record_drops_non_object_distribution(self):
        raw = RawExamRecord.model_validate({"subject": "국어", "scoreDistribution": "none"})
        assert raw.score_distribution is None


class TestBandTotal:
    def test_matching_total(self):
        assert check_band_total(normalize_record(make_record())) is None

    def test_mismatch_is_described(self):
        message = check_band_total(normalize_record(make_record(totalStudents=31)))
        assert message is not None
        assert "sum to 30" in message

    def test_tolerance(self):
        assert check_band_total(normalize_record(make_record(totalStudents=31)), tolerance=1) is None

    def test_zero_total_is_not_checked(self):
        assert check_band_total(normalize_record(make_record(totalStudents=0))) is None
