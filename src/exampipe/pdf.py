"""Download source PDFs and slice them into page batches."""

from __future__ import annotations

from io import BytesIO
import logging

import httpx
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from .errors import DocumentFetchError
from .models import PageRange, SourceDocument
from .retry import retry_with_backoff

LOGGER = logging.getLogger(__name__)


async def download_document(
    url: str,
    http: httpx.AsyncClient,
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> SourceDocument:
    """Fetch ``url`` and read the size of each page.

    Raises:
        DocumentFetchError: If the download fails after retries or the
            payload is not a readable PDF.
    """

    async def _fetch() -> bytes:
        response = await http.get(url, follow_redirects=True)
        response.raise_for_status()
        return response.content

    try:
        data = await retry_with_backoff(
            _fetch,
            max_attempts=max_attempts,
            base_delay=base_delay,
            retry_on=(httpx.HTTPError,),
            description=f"Download of {url}",
        )
    except httpx.HTTPError as exc:
        raise DocumentFetchError(f"Failed to download PDF from {url}: {exc}") from exc

    try:
        page_sizes = read_page_sizes(data)
    except (PdfReadError, ValueError) as exc:
        raise DocumentFetchError(f"Document at {url} is not a readable PDF: {exc}") from exc

    LOGGER.info("Downloaded %s (%s bytes, %s pages)", url, len(data), len(page_sizes))
    return SourceDocument(url=url, data=data, page_sizes=page_sizes)


def read_page_sizes(data: bytes) -> tuple[tuple[float, float], ...]:
    """Return ``(width, height)`` in points for each page."""

    reader = PdfReader(BytesIO(data))
    return tuple((float(page.mediabox.width), float(page.mediabox.height)) for page in reader.pages)


def slice_pages(document: SourceDocument, page_range: PageRange) -> bytes:
    """Copy the pages of ``page_range`` into a standalone PDF."""

    reader = PdfReader(BytesIO(document.data))
    writer = PdfWriter()
    for index in page_range.indices():
        writer.add_page(reader.pages[index])
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()
