"""Shared fixtures for the exam extraction test suite.

PDFs are generated on the fly with PyMuPDF; the vision service is replaced by
in-memory fakes so no network access or API key is needed.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, List, Sequence

import fitz
import pytest

from exam_extraction.agents import ExtractionAgent
from exam_extraction.errors import DocumentUnreadable
from exam_extraction.preprocess import RasterImage

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)


def make_pdf(pages: int = 3, text: str = "Math 72.5 30") -> bytes:
    doc = fitz.open()
    for index in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"Page {index + 1}: {text}")
    data = doc.tobytes()
    doc.close()
    return data


def make_record(subject: str = "수학1", **overrides: Any) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "subject": subject,
        "average": 72.5,
        "totalStudents": 30,
        "scoreDistribution": {"90-100": 5, "80-89": 6, "70-79": 7, "60-69": 8, "under-60": 4},
    }
    record.update(overrides)
    return record


def image(page_number: int = 1) -> RasterImage:
    return RasterImage(data=b"\xff\xd8\xff" + bytes([page_number]), page_number=page_number, width=10, height=10)


class FakeVisionService:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses: Any):
        self.responses: List[Any] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt: str, images: Sequence[RasterImage], *, schema: Dict[str, Any]):
        self.calls.append({"prompt": prompt, "images": list(images), "schema": schema})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeRasterizer:
    """Maps document bytes to a page count; unknown bytes are unreadable."""

    def __init__(self, pages_by_data: Dict[bytes, int]):
        self.pages_by_data = pages_by_data
        self.calls: List[bytes] = []

    def rasterize(self, document_bytes: bytes, cancel_event=None) -> List[RasterImage]:
        self.calls.append(document_bytes)
        if document_bytes not in self.pages_by_data:
            raise DocumentUnreadable("PDF processing failed: cannot open broken document")
        return [image(n) for n in range(1, self.pages_by_data[document_bytes] + 1)]


def fast_agent(service: Any, **kwargs: Any) -> ExtractionAgent:
    kwargs.setdefault("retry_wait_min", 0)
    kwargs.setdefault("retry_wait_max", 0)
    return ExtractionAgent(service, **kwargs)


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf(pages=3)


@pytest.fixture
def records_json() -> str:
    return json.dumps([make_record("수학1"), make_record("국어", average=65.25)], ensure_ascii=False)
