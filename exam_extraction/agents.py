from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import openai
from pydantic_ai import Agent, BinaryContent, NativeOutput
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import BandCheck, Settings
from .errors import (
    BandTotalMismatch,
    DocumentUnreadable,
    ExtractionParseError,
    ExtractionServiceError,
    ServiceAuthError,
    ServiceUnavailable,
)
from .preprocess import NO_PAGES_MESSAGE, RasterImage
from .schema import ExamRecord, ExamRecordBatch, check_band_total, extraction_json_schema, normalize_records

logger = logging.getLogger(__name__)

ServiceResponse = Union[str, List[Dict[str, Any]]]

SYSTEM_PROMPT = (
    "You are a careful information extraction assistant for school exam-analysis reports. "
    "Use only evidence visible in the page images. Do not invent rows or values."
)

EXTRACTION_PROMPT = """Analyze the provided exam analysis page images as a SINGLE continuous document.
The pages are given in order; a table that continues on the next page is the same table.

TASK:
Extract, for every subject row, the subject name (교과목), the average score (평균),
the total number of students (응시자 or 합계) and the number of students in each score range.

RULES:
1. EXACT SUBJECT NAMES: copy the subject name exactly as printed.
   - Do NOT normalize, correct, abbreviate or translate it.
   - Do NOT guess. If it says "인공지능일반", return "인공지능일반".
2. SCAN ALL PAGES: the table often spans several pages. Read every page.
3. ALL ROWS: return every row from every page, never a subset.
4. COLUMNS: the subject is usually the first column; ranges look like "90~100", "80~89".
5. UNDER 60: if the table has a single column for "0~59", report it as "under-60".
   Otherwise report each 10-point range below 60 ("50-59", "40-49", ... "0-9") separately.
6. Use 0 for a range that is not present in the table."""

_RECORD_SHAPE = (
    '{"subject": str, "average": number, "totalStudents": number, '
    '"scoreDistribution": {"90-100": int, "80-89": int, "70-79": int, "60-69": int, "under-60": int}}'
)
ARRAY_RESPONSE_FORMAT = f"Return only a JSON array with one object per subject:\n[{_RECORD_SHAPE}]"
RECORDS_RESPONSE_FORMAT = (
    f"Return a JSON object whose \"records\" list holds one object per subject:\n{{\"records\": [{_RECORD_SHAPE}]}}"
)

_OPENING_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?")
_CLOSING_FENCE = re.compile(r"\n?[ \t]*```\s*$")

_AUTH_STATUSES = {401, 403}
_TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504, 529}


class VisionService(Protocol):
    """A multimodal model that reads page images and answers with JSON."""

    async def complete(
        self, prompt: str, images: Sequence[RasterImage], *, schema: Dict[str, Any]
    ) -> ServiceResponse: ...


def translate_http_error(status_code: int, detail: str) -> ExtractionServiceError:
    if status_code in _AUTH_STATUSES:
        return ServiceAuthError(
            f"Invalid API key. Please check your settings. (HTTP {status_code})", status_code=status_code
        )
    if status_code in _TRANSIENT_STATUSES:
        return ServiceUnavailable(
            f"Extraction service is temporarily unavailable (HTTP {status_code}): {detail}",
            status_code=status_code,
        )
    return ExtractionServiceError(f"Extraction service error (HTTP {status_code}): {detail}", status_code=status_code)


class PydanticAIVisionService:
    """
    VisionService backed by a pydanticAI agent.

    With ``structured_output`` the agent is bound to ``ExamRecordBatch`` through
    the provider's native structured output; otherwise it answers in plain text
    and the schema is embedded in the prompt.
    """

    def __init__(self, settings: Settings, model: Optional[Model] = None):
        self.settings = settings
        self._model = model
        self._agent: Optional[Agent[Any]] = None

    @property
    def agent(self) -> Agent[Any]:
        if self._agent is None:
            model = self._model
            if model is None:
                provider = OpenAIProvider(api_key=self.settings.require_api_key())
                model = OpenAIChatModel(self.settings.model_name, provider=provider)
            output_type: Any = NativeOutput(ExamRecordBatch) if self.settings.structured_output else str
            self._agent = Agent(model=model, output_type=output_type, system_prompt=SYSTEM_PROMPT)
        return self._agent

    async def complete(
        self, prompt: str, images: Sequence[RasterImage], *, schema: Dict[str, Any]
    ) -> ServiceResponse:
        self.settings.require_api_key()
        if self.settings.structured_output:
            prompt = f"{prompt}\n\n{RECORDS_RESPONSE_FORMAT}"
        else:
            prompt = (
                f"{prompt}\n\n{ARRAY_RESPONSE_FORMAT}\n\nThe array must match this JSON schema:\n"
                f"{json.dumps(schema, ensure_ascii=False)}"
            )

        # Prompt first, then every page in order, as one user message.
        inputs: List[Any] = [prompt]
        inputs.extend(BinaryContent(data=image.data, media_type=image.media_type) for image in images)

        try:
            result = await self.agent.run(inputs)
        except ModelHTTPError as exc:
            raise translate_http_error(exc.status_code, str(exc.body or exc.message)) from exc
        except openai.APIConnectionError as exc:
            raise ServiceUnavailable(f"Extraction service is unreachable: {exc}") from exc
        except UnexpectedModelBehavior as exc:
            raise ExtractionParseError(
                f"Model returned an unusable response: {exc.message}", raw_response=exc.body
            ) from exc

        output = result.output
        if isinstance(output, ExamRecordBatch):
            return [record.model_dump(by_alias=True, exclude_none=True) for record in output.records]
        return output


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence wrapped around a model response."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _OPENING_FENCE.sub("", cleaned, count=1)
        cleaned = _CLOSING_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def parse_response(text: Optional[str]) -> List[Dict[str, Any]]:
    """Parse a model response into a list of record objects."""
    if text is None or not text.strip():
        raise ExtractionParseError("No data returned from the extraction service.", raw_response=text)

    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        logger.error("JSON parse error. Raw text: %s", text)
        raise ExtractionParseError(
            "Failed to parse AI response. The extracted data was not valid JSON.", raw_response=text
        ) from exc

    if isinstance(data, dict) and isinstance(data.get("records"), list):
        data = data["records"]
    if not isinstance(data, list):
        raise ExtractionParseError(
            f"Expected a JSON array of records, got {type(data).__name__}", raw_response=text
        )
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ExtractionParseError(
                f"Record {index} is {type(item).__name__}, expected an object", raw_response=text
            )
    return data


class ExtractionAgent:
    """
    Sends all pages of one document to the vision service in a single call
    and turns the answer into normalized ExamRecords.
    """

    def __init__(
        self,
        service: VisionService,
        *,
        max_attempts: int = 3,
        retry_wait_min: float = 1.0,
        retry_wait_max: float = 20.0,
        band_check: BandCheck = "warn",
        band_tolerance: int = 0,
    ):
        self.service = service
        self.max_attempts = max_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.band_check = band_check
        self.band_tolerance = band_tolerance
        self.schema = extraction_json_schema()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionAgent":
        return cls(
            PydanticAIVisionService(settings),
            max_attempts=settings.max_attempts,
            band_check=settings.band_check,
        )

    async def extract(self, images: Sequence[RasterImage]) -> List[ExamRecord]:
        if not images:
            raise DocumentUnreadable(NO_PAGES_MESSAGE)

        logger.info("Requesting extraction for %d page(s)", len(images))
        response = await self._complete(images)
        rows = response if isinstance(response, list) else parse_response(response)
        records = normalize_records(rows)
        self._check_bands(records)
        logger.info("Extracted %d record(s)", len(records))
        return records

    async def _complete(self, images: Sequence[RasterImage]) -> ServiceResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception_type(ServiceUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.service.complete(EXTRACTION_PROMPT, images, schema=self.schema)
        raise AssertionError("unreachable")  # pragma: no cover

    def _check_bands(self, records: Sequence[ExamRecord]) -> None:
        if self.band_check == "off":
            return
        for record in records:
            problem = check_band_total(record, self.band_tolerance)
            if problem is None:
                continue
            if self.band_check == "error":
                raise BandTotalMismatch(problem)
            logger.warning(problem)
