from __future__ import annotations

import math
import numbers
from typing import Annotated, Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter

from .errors import ExtractionParseError

BANDS = ("90-100", "80-89", "70-79", "60-69", "under-60")
LEGACY_SUB_BANDS = ("50-59", "40-49", "30-39", "20-29", "10-19", "0-9")
UNKNOWN_SUBJECT = "(unknown subject)"

# Keys used by older response layouts ("gradeCounts" with score_* fields).
_KEY_ALIASES: Dict[str, str] = {
    "score_90_100": "90-100",
    "score_80_89": "80-89",
    "score_70_79": "70-79",
    "score_60_69": "60-69",
    "score_under_60": "under-60",
    "under_60": "under-60",
    "0-59": "under-60",
    "score_50_59": "50-59",
    "score_40_49": "40-49",
    "score_30_39": "30-39",
    "score_20_29": "20-29",
    "score_10_19": "10-19",
    "score_0_9": "0-9",
}
_DISTRIBUTION_KEYS = ("scoreDistribution", "score_distribution", "gradeCounts")


class ScoreDistribution(BaseModel):
    """Student counts per score band, highest band first."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    score_90_100: int = Field(0, ge=0, alias="90-100")
    score_80_89: int = Field(0, ge=0, alias="80-89")
    score_70_79: int = Field(0, ge=0, alias="70-79")
    score_60_69: int = Field(0, ge=0, alias="60-69")
    under_60: int = Field(0, ge=0, alias="under-60")

    @property
    def total(self) -> int:
        return self.score_90_100 + self.score_80_89 + self.score_70_79 + self.score_60_69 + self.under_60

    def as_row(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)


class ExamRecord(BaseModel):
    """One subject's result summary as extracted from an exam-analysis report."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subject: str = Field(..., min_length=1)
    average: float = Field(0.0, ge=0)
    total_students: int = Field(0, ge=0, alias="totalStudents")
    score_distribution: ScoreDistribution = Field(default_factory=ScoreDistribution, alias="scoreDistribution")


def _count_or_none(value: Any) -> Optional[int]:
    return None if value is None else coerce_count(value)


def _number_or_none(value: Any) -> Optional[float]:
    return None if value is None else coerce_number(value)


def _text_or_none(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return str(value)


def _object_or_none(value: Any) -> Any:
    return value if isinstance(value, (Mapping, BaseModel)) else None


# The raw models validate structured service output before normalization runs,
# so they coerce instead of rejecting malformed values.
RawCount = Annotated[Optional[int], BeforeValidator(_count_or_none)]
RawNumber = Annotated[Optional[float], BeforeValidator(_number_or_none)]
RawSubject = Annotated[Optional[str], BeforeValidator(_text_or_none)]


class RawScoreDistribution(BaseModel):
    """Band counts as the vision model reports them; every band is optional."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    score_90_100: RawCount = Field(None, alias="90-100", description="Count for 90-100")
    score_80_89: RawCount = Field(None, alias="80-89", description="Count for 80-89")
    score_70_79: RawCount = Field(None, alias="70-79", description="Count for 70-79")
    score_60_69: RawCount = Field(None, alias="60-69", description="Count for 60-69")
    under_60: RawCount = Field(
        None, alias="under-60", description="Explicit count for under 60 (0~59) when the table groups it"
    )
    score_50_59: RawCount = Field(None, alias="50-59", description="Count for 50-59")
    score_40_49: RawCount = Field(None, alias="40-49", description="Count for 40-49")
    score_30_39: RawCount = Field(None, alias="30-39", description="Count for 30-39")
    score_20_29: RawCount = Field(None, alias="20-29", description="Count for 20-29")
    score_10_19: RawCount = Field(None, alias="10-19", description="Count for 10-19")
    score_0_9: RawCount = Field(None, alias="0-9", description="Count for 0-9")


class RawExamRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subject: RawSubject = Field(
        None, description="Subject name (교과목) exactly as printed. Never normalized or translated."
    )
    average: RawNumber = Field(None, description="Average score (평균)")
    total_students: RawCount = Field(
        None, alias="totalStudents", description="Number of students (응시자 or 합계)"
    )
    score_distribution: Annotated[Optional[RawScoreDistribution], BeforeValidator(_object_or_none)] = Field(
        None, alias="scoreDistribution", description="Students per score range; 0 when a range is absent"
    )


class ExamRecordBatch(BaseModel):
    """Object wrapper used when the service enforces a structured output."""

    records: List[RawExamRecord] = Field(
        default_factory=list, description="Every subject row found across all pages, in page order"
    )


def extraction_json_schema() -> Dict[str, Any]:
    """JSON schema of the array the model is asked to return."""
    return TypeAdapter(List[RawExamRecord]).json_schema(by_alias=True)


def coerce_number(value: Any) -> float:
    """Coerce a JSON scalar to a non-negative finite float, 0 otherwise."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", ""))
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def coerce_count(value: Any) -> int:
    return int(round(coerce_number(value)))


def _band_values(raw: Mapping[str, Any]) -> Dict[str, Any]:
    source: Any = None
    for key in _DISTRIBUTION_KEYS:
        if isinstance(raw.get(key), Mapping):
            source = raw[key]
            break
    if source is None:
        return {}
    values: Dict[str, Any] = {}
    for key, value in source.items():
        band = _KEY_ALIASES.get(key, key)
        if band in BANDS or band in LEGACY_SUB_BANDS:
            values[band] = value
    return values


def normalize_distribution(raw: Mapping[str, Any]) -> ScoreDistribution:
    values = _band_values(raw)
    if values.get("under-60") is not None:
        under_60 = coerce_count(values["under-60"])
    else:
        under_60 = sum(coerce_count(values.get(band)) for band in LEGACY_SUB_BANDS)
    return ScoreDistribution(
        score_90_100=coerce_count(values.get("90-100")),
        score_80_89=coerce_count(values.get("80-89")),
        score_70_79=coerce_count(values.get("70-79")),
        score_60_69=coerce_count(values.get("60-69")),
        under_60=under_60,
    )


def normalize_record(raw: Mapping[str, Any]) -> ExamRecord:
    """
    Build an ExamRecord from one loosely-typed response object.

    The subject is kept exactly as returned; only a missing or blank subject
    is replaced with a placeholder.
    """
    if not isinstance(raw, Mapping):
        raise ExtractionParseError(f"Expected an object per record, got {type(raw).__name__}")

    subject = raw.get("subject")
    if subject is None or (isinstance(subject, str) and not subject.strip()):
        subject = UNKNOWN_SUBJECT
    elif not isinstance(subject, str):
        subject = str(subject)

    total = raw.get("totalStudents", raw.get("total_students"))
    return ExamRecord(
        subject=subject,
        average=coerce_number(raw.get("average")),
        total_students=coerce_count(total),
        score_distribution=normalize_distribution(raw),
    )


def normalize_records(rows: Iterable[Mapping[str, Any]]) -> List[ExamRecord]:
    return [normalize_record(row) for row in rows]


def check_band_total(record: ExamRecord, tolerance: int = 0) -> Optional[str]:
    """Describe a mismatch between band counts and total_students, if any."""
    if record.total_students == 0:
        return None
    band_total = record.score_distribution.total
    if abs(band_total - record.total_students) <= tolerance:
        return None
    return (
        f"Score bands for {record.subject!r} sum to {band_total}, "
        f"but totalStudents is {record.total_students}"
    )
