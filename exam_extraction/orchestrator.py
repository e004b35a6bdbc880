from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, List, Literal, Optional, Protocol, Sequence, Tuple

import pandas as pd

from .agents import ExtractionAgent
from .config import DuplicatePolicy, Settings
from .errors import BatchInProgressError, DocumentTimeout, ExtractionCancelled, ExtractionError
from .export import records_to_dataframe, write_csv, write_excel
from .preprocess import PDFRasterizer, RasterImage
from .schema import ExamRecord

logger = logging.getLogger(__name__)

DocumentState = Literal["pending", "processing", "completed", "error"]
BusyPolicy = Literal["enqueue", "reject"]


class Rasterizer(Protocol):
    def rasterize(
        self, document_bytes: bytes, cancel_event: Optional[threading.Event] = None
    ) -> List[RasterImage]: ...


@dataclass(frozen=True)
class SourceDocument:
    """A submitted file: display name plus its bytes, or a path to read them from."""

    name: str
    data: Optional[bytes] = field(default=None, repr=False)
    path: Optional[Path] = None

    @classmethod
    def from_path(cls, path: Path) -> "SourceDocument":
        path = Path(path)
        return cls(name=path.name, path=path)

    def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ValueError(f"Document {self.name!r} has neither data nor a path")
        return self.path.read_bytes()


@dataclass(frozen=True)
class ProcessingStatus:
    document_name: str
    state: DocumentState = "pending"
    message: Optional[str] = None
    record_count: int = 0


@dataclass(frozen=True)
class BatchSnapshot:
    statuses: Tuple[ProcessingStatus, ...]
    records: Tuple[ExamRecord, ...]


Listener = Callable[[BatchSnapshot], None]


class ExtractionOrchestrator:
    """
    Processes submitted documents one at a time and accumulates their records.

    Owns the status list and the record dataset; both only grow. A failing
    document ends in ``error`` and never stops the rest of its batch.
    """

    def __init__(
        self,
        extraction_agent: ExtractionAgent,
        rasterizer: Rasterizer | None = None,
        *,
        document_timeout: Optional[float] = None,
        busy_policy: BusyPolicy = "enqueue",
        duplicate_policy: DuplicatePolicy = "append",
    ):
        self.extraction_agent = extraction_agent
        self.rasterizer = rasterizer or PDFRasterizer()
        self.document_timeout = document_timeout
        self.busy_policy = busy_policy
        self.duplicate_policy = duplicate_policy

        self._statuses: List[ProcessingStatus] = []
        self._records: List[ExamRecord] = []
        self._listeners: List[Listener] = []
        self._active_batches = 0
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._current_task: Optional[asyncio.Future] = None
        self._current_cancel_event: Optional[threading.Event] = None
        self._current_render: Optional[asyncio.Future] = None
        self._cancelling = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ExtractionOrchestrator":
        return cls(
            extraction_agent=ExtractionAgent.from_settings(settings),
            rasterizer=PDFRasterizer(scale=settings.render_scale, jpeg_quality=settings.jpeg_quality),
            document_timeout=settings.document_timeout,
            duplicate_policy=settings.duplicate_policy,
            **kwargs,
        )

    @property
    def statuses(self) -> Tuple[ProcessingStatus, ...]:
        return tuple(self._statuses)

    @property
    def records(self) -> Tuple[ExamRecord, ...]:
        return tuple(self._records)

    @property
    def is_busy(self) -> bool:
        return self._active_batches > 0

    def snapshot(self) -> BatchSnapshot:
        return BatchSnapshot(statuses=self.statuses, records=self.records)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback that receives a snapshot after every change."""
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Stop the document in flight and fail every document still queued."""
        if not self.is_busy:
            return
        logger.info("Cancellation requested")
        self._cancelling = True
        if self._current_cancel_event is not None:
            self._current_cancel_event.set()
        if self._current_task is not None:
            self._current_task.cancel()

    async def submit(self, documents: Sequence[SourceDocument]) -> List[ProcessingStatus]:
        """
        Queue a batch and process it in submission order.

        Returns the final status of each submitted document. With
        ``busy_policy="reject"`` a batch submitted while another runs raises
        BatchInProgressError and leaves all state untouched.
        """
        if self.is_busy and self.busy_policy == "reject":
            raise BatchInProgressError("A batch is already being processed")

        batch_indices: List[int] = []
        queued: List[Tuple[int, SourceDocument]] = []
        for document in documents:
            if self.duplicate_policy == "reject" and self._is_duplicate(document.name):
                logger.warning("Rejecting duplicate document %s", document.name)
                index = self._append_status(
                    ProcessingStatus(document.name, "error", "Duplicate document: already submitted")
                )
            else:
                index = self._append_status(ProcessingStatus(document.name))
                queued.append((index, document))
            batch_indices.append(index)

        self._active_batches += 1
        try:
            async with self._batch_lock():
                for index, document in queued:
                    if self._cancelling:
                        self._update_status(index, state="error", message="Cancelled")
                        continue
                    await self._process_document(index, document)
        finally:
            self._active_batches -= 1
            if self._active_batches == 0:
                self._cancelling = False

        return [self._statuses[index] for index in batch_indices]

    def process_paths(self, paths: Sequence[Path]) -> List[ProcessingStatus]:
        """Blocking wrapper around ``submit`` for command-line use."""
        return asyncio.run(self.submit([SourceDocument.from_path(path) for path in paths]))

    def to_dataframe(self) -> pd.DataFrame:
        return records_to_dataframe(self._records)

    def to_csv(self, output_path: Path) -> Path:
        return write_csv(self._records, output_path)

    def to_excel(self, output_path: Path) -> Path:
        return write_excel(self._records, output_path)

    async def _process_document(self, index: int, document: SourceDocument) -> None:
        self._update_status(index, state="processing")
        cancel_event = threading.Event()
        task = asyncio.ensure_future(self._run_pipeline(document, cancel_event))
        self._current_task = task
        self._current_cancel_event = cancel_event

        error: Optional[BaseException] = None
        records: List[ExamRecord] = []
        try:
            if self.document_timeout is None:
                records = await task
            else:
                records = await asyncio.wait_for(task, self.document_timeout)
        except asyncio.TimeoutError:
            cancel_event.set()
            error = DocumentTimeout(f"Timed out after {self.document_timeout:g}s")
            logger.warning("Timed out processing %s", document.name)
        except asyncio.CancelledError:
            if not self._cancelling:
                raise
            error = ExtractionCancelled("Cancelled")
            logger.warning("Cancelled processing %s", document.name)
        except ExtractionError as exc:
            error = exc
            logger.warning("Extraction failed for %s: %s", document.name, exc)
        except Exception as exc:
            error = exc
            logger.exception("Extraction failed for %s", document.name)
        finally:
            await self._drain_render(cancel_event)
            self._current_task = None
            self._current_cancel_event = None

        if error is not None:
            self._update_status(index, state="error", message=str(error) or type(error).__name__)
            return

        self._records.extend(records)
        self._update_status(index, state="completed", record_count=len(records))
        logger.info("Completed %s with %d record(s)", document.name, len(records))

    async def _run_pipeline(self, document: SourceDocument, cancel_event: threading.Event) -> List[ExamRecord]:
        logger.info("Rasterizing %s", document.name)
        data = await asyncio.to_thread(document.read)
        # Shielded so a timeout or cancel leaves the thread to be drained, not orphaned.
        self._current_render = asyncio.ensure_future(asyncio.to_thread(self.rasterizer.rasterize, data, cancel_event))
        images = await asyncio.shield(self._current_render)
        logger.info("Extracting records for %s (%d page images)", document.name, len(images))
        return await self.extraction_agent.extract(images)

    async def _drain_render(self, cancel_event: threading.Event) -> None:
        render, self._current_render = self._current_render, None
        if render is None or render.done():
            return
        # The next document must not start rendering while this one still is.
        cancel_event.set()
        logger.debug("Waiting for abandoned rasterization to stop")
        await asyncio.gather(render, return_exceptions=True)

    def _batch_lock(self) -> asyncio.Lock:
        # One lock per event loop; process_paths starts a fresh loop on every call.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _is_duplicate(self, name: str) -> bool:
        return any(status.document_name == name and status.state != "error" for status in self._statuses)

    def _append_status(self, status: ProcessingStatus) -> int:
        self._statuses.append(status)
        self._notify()
        return len(self._statuses) - 1

    def _update_status(self, index: int, **changes) -> None:
        changes.setdefault("message", None)
        self._statuses[index] = replace(self._statuses[index], **changes)
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Status listener failed")
