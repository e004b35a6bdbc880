from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List

import pandas as pd

from .schema import BANDS, ExamRecord, normalize_record

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["subject", "average", "total_students", *BANDS]
# BOM so spreadsheet tools detect UTF-8 and render Korean subject names.
CSV_ENCODING = "utf-8-sig"


def records_to_dataframe(records: Iterable[ExamRecord]) -> pd.DataFrame:
    """
    Flatten records into one row per subject.

    Columns: subject, average, total_students, 90-100, 80-89, 70-79, 60-69, under-60
    """
    rows: List[Dict[str, Any]] = []
    for record in records:
        row: Dict[str, Any] = {
            "subject": record.subject,
            "average": record.average,
            "total_students": record.total_students,
        }
        row.update(record.score_distribution.as_row())
        rows.append(row)
    return pd.DataFrame(rows, columns=CSV_COLUMNS)


def write_csv(records: Iterable[ExamRecord], output_path: Path) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = records_to_dataframe(records)
    logger.info("Writing %d record(s) to %s", len(df), output_path)
    df.to_csv(output_path, index=False, encoding=CSV_ENCODING)
    return output_path


def read_csv(path: Path) -> List[ExamRecord]:
    """Load records previously written by ``write_csv``."""
    df = pd.read_csv(
        path,
        encoding=CSV_ENCODING,
        dtype={"subject": str},
        keep_default_na=False,
        float_precision="round_trip",
    )
    missing = [column for column in CSV_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(f"CSV is missing columns: {', '.join(missing)}")

    records: List[ExamRecord] = []
    for row in df.to_dict(orient="records"):
        records.append(
            normalize_record(
                {
                    "subject": row["subject"],
                    "average": row["average"],
                    "totalStudents": row["total_students"],
                    "scoreDistribution": {band: row[band] for band in BANDS},
                }
            )
        )
    return records


def write_excel(records: Iterable[ExamRecord], output_path: Path) -> Path:
    """Write records to an Excel file with sheet 'exam_records'."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = records_to_dataframe(records)
    logger.info("Writing %d record(s) to %s", len(df), output_path)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="exam_records", index=False)
    return output_path
