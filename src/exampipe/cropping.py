"""Figure cropping and page rendering backends.

``PdfCoCropper`` calls the pdf.co conversion API; ``LocalCropper`` renders
with pdfplumber in a worker thread. Both take the same padded point
rectangle, so either can back the dispatcher.
"""

from __future__ import annotations

import asyncio
import base64
from io import BytesIO
import logging
from typing import Any, Protocol

import httpx
import pdfplumber

from .config import CropperConfig
from .errors import CroppingError
from .geometry import FigureLocation, PointRect, padded_crop_rect
from .models import SourceDocument

LOGGER = logging.getLogger(__name__)

RENDER_RESOLUTION = 200


class Cropper(Protocol):
    async def crop(self, document: SourceDocument, location: FigureLocation) -> bytes: ...

    async def render_page(self, pdf_url: str, page: int) -> str: ...


class PdfCoCropper:
    """Crop figures through pdf.co's ``pdf/convert/to/png`` endpoint."""

    def __init__(self, config: CropperConfig, http: httpx.AsyncClient) -> None:
        if not config.api_key:
            raise CroppingError("PDF_CO_API_KEY is required for the pdf.co cropper.")
        self._api_key = config.api_key
        self._endpoint = f"{config.base_url}pdf/convert/to/png"
        self._padding = config.padding_points
        self._http = http

    async def crop(self, document: SourceDocument, location: FigureLocation) -> bytes:
        rect = padded_crop_rect(location, self._padding)
        payload = {
            "url": document.url,
            "pages": str(rect.page - 1),
            "rect": rect.as_rect_string(),
            "async": False,
        }
        LOGGER.info("Cropping page %s rect %s via pdf.co", rect.page, payload["rect"])
        body = await self._post(payload)
        image_url = (body.get("urls") or [None])[0] or body.get("url")
        if not image_url:
            raise CroppingError(f"pdf.co returned no image URL for page {rect.page}.")

        try:
            response = await self._http.get(image_url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CroppingError(f"Failed to download cropped image: {exc}") from exc
        return response.content

    async def render_page(self, pdf_url: str, page: int) -> str:
        """Render a 1-indexed page at the default 72 DPI and return base64 PNG."""
        body = await self._post(
            {"url": pdf_url, "pages": str(page - 1), "async": False, "inline": True},
        )
        image = body.get("body")
        if not image:
            raise CroppingError("pdf.co returned no image body.")
        return image

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._endpoint,
                json=payload,
                headers={"x-api-key": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise CroppingError(f"pdf.co request failed: {exc}") from exc
        if response.status_code >= 400:
            LOGGER.error("pdf.co API error %s: %s", response.status_code, response.text)
            raise CroppingError(f"pdf.co API error {response.status_code}: {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise CroppingError("pdf.co returned a non-JSON response.") from exc
        if body.get("error"):
            raise CroppingError(f"pdf.co error: {body.get('message')}")
        return body


class LocalCropper:
    """Render figures from the downloaded PDF with pdfplumber."""

    def __init__(self, config: CropperConfig, http: httpx.AsyncClient) -> None:
        self._padding = config.padding_points
        self._http = http

    async def crop(self, document: SourceDocument, location: FigureLocation) -> bytes:
        rect = padded_crop_rect(location, self._padding)
        return await asyncio.to_thread(_render_rect, document.data, rect)

    async def render_page(self, pdf_url: str, page: int) -> str:
        try:
            response = await self._http.get(pdf_url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CroppingError(f"Failed to download {pdf_url}: {exc}") from exc
        png = await asyncio.to_thread(_render_page, response.content, page)
        return base64.b64encode(png).decode("ascii")


def build_cropper(config: CropperConfig, http: httpx.AsyncClient) -> Cropper:
    if config.backend == "local":
        return LocalCropper(config, http)
    return PdfCoCropper(config, http)


def _render_rect(data: bytes, rect: PointRect) -> bytes:
    """Render a region of a page to PNG bytes."""
    with pdfplumber.open(BytesIO(data)) as pdf:
        if not 1 <= rect.page <= len(pdf.pages):
            raise CroppingError(f"Page {rect.page} is outside the document.")
        page = pdf.pages[rect.page - 1]
        x0, top, x1, bottom = rect.as_bbox()
        clipped = (
            max(0.0, x0),
            max(0.0, top),
            min(float(page.width), x1),
            min(float(page.height), bottom),
        )
        cropped = page.crop(clipped).to_image(resolution=RENDER_RESOLUTION)
        buffer = BytesIO()
        cropped.save(buffer, format="PNG")
        return buffer.getvalue()


def _render_page(data: bytes, page_number: int) -> bytes:
    with pdfplumber.open(BytesIO(data)) as pdf:
        if not 1 <= page_number <= len(pdf.pages):
            raise CroppingError(f"Page {page_number} is outside the document.")
        snapshot = pdf.pages[page_number - 1].to_image(resolution=72)
        buffer = BytesIO()
        snapshot.save(buffer, format="PNG")
        return buffer.getvalue()
