"""
exam_extraction: turn scanned exam-analysis PDFs into tabular subject records.

Pages are rendered to images, sent to a vision model in one request per
document, normalized into ExamRecords and accumulated by the orchestrator.
"""

__all__ = [
    "agents",
    "config",
    "errors",
    "export",
    "orchestrator",
    "preprocess",
    "schema",
]
