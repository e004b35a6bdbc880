from __future__ import annotations

import base64
import logging
import threading
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

import fitz  # PyMuPDF
from PIL import Image

from .errors import DocumentUnreadable, ExtractionCancelled

logger = logging.getLogger(__name__)

NO_PAGES_MESSAGE = (
    "No images could be extracted from the PDF. The file might be corrupted or password protected."
)


@dataclass(frozen=True)
class RasterImage:
    """One rendered page, encoded as JPEG."""

    data: bytes
    page_number: int
    width: int
    height: int
    media_type: str = "image/jpeg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class PDFRasterizer:
    """
    Renders every page of a PDF to a JPEG image.

    A page that fails to render is skipped; the document only fails when it
    cannot be opened or no page renders at all.
    """

    scale: float = 2.0
    jpeg_quality: int = 85
    max_pages: int | None = None

    def rasterize(
        self,
        document_bytes: bytes,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RasterImage]:
        try:
            doc = fitz.open(stream=document_bytes, filetype="pdf")
        except Exception as exc:  # fitz raises RuntimeError subclasses and ValueError here
            raise DocumentUnreadable(f"PDF processing failed: {exc}") from exc

        images: List[RasterImage] = []
        with doc:
            if doc.needs_pass:
                raise DocumentUnreadable("PDF processing failed: document is password protected")

            page_count = doc.page_count
            logger.info("Rasterizing %d page(s) at scale %.1f", page_count, self.scale)
            for page_index in range(page_count):
                if self.max_pages is not None and page_index >= self.max_pages:
                    break
                if cancel_event is not None and cancel_event.is_set():
                    raise ExtractionCancelled("Cancelled while rendering pages")
                try:
                    images.append(self._render_page(doc, page_index))
                except Exception:
                    logger.warning("Skipping page %d: render failed", page_index + 1, exc_info=True)

        if not images:
            raise DocumentUnreadable(NO_PAGES_MESSAGE)
        return images

    def _render_page(self, doc: fitz.Document, page_index: int) -> RasterImage:
        page = doc.load_page(page_index)
        pix = page.get_pixmap(matrix=fitz.Matrix(self.scale, self.scale), alpha=False)
        img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)

        buffer = BytesIO()
        img.save(buffer, format="JPEG", quality=self.jpeg_quality)
        return RasterImage(
            data=buffer.getvalue(),
            page_number=page_index + 1,
            width=pix.width,
            height=pix.height,
        )
