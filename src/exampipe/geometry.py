"""Figure rectangles in percentage and PDF point coordinates.

Percent-of-page is the canonical form. Model variants that answer with the
0..1000 normalised ``box_2d`` convention (``[ymin, xmin, ymax, xmax]``) are
converted on the way in. A rectangle only becomes absolute once it carries
the width and height of the page it was measured on.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence

from .errors import FigureDimensionsError

NORMALIZED_SCALE = 1000.0


@dataclass(frozen=True, slots=True)
class PointRect:
    """An absolute rectangle in PDF default user space (points)."""

    page: int
    x: float
    y: float
    width: float
    height: float

    def as_rect_string(self) -> str:
        return f"{self.x:g},{self.y:g},{self.width:g},{self.height:g}"

    def as_bbox(self) -> tuple[float, float, float, float]:
        """Return ``(x0, top, x1, bottom)`` as used by pdfplumber."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True, slots=True)
class FigureLocation:
    """A figure rectangle on a 1-indexed page, in percent of the page."""

    page: int
    x: float
    y: float
    width: float
    height: float
    page_width: float | None = None
    page_height: float | None = None

    @property
    def has_dimensions(self) -> bool:
        return bool(self.page_width) and bool(self.page_height)

    def with_dimensions(self, page_width: float, page_height: float) -> FigureLocation:
        return replace(self, page_width=float(page_width), page_height=float(page_height))

    def shifted(self, page_offset: int) -> FigureLocation:
        """Move a batch-relative page number onto the full document."""
        if not page_offset:
            return self
        return replace(self, page=self.page + page_offset)

    def to_points(self) -> PointRect:
        self._require_dimensions()
        width = float(self.page_width)  # type: ignore[arg-type]
        height = float(self.page_height)  # type: ignore[arg-type]
        return PointRect(
            page=self.page,
            x=self.x / 100.0 * width,
            y=self.y / 100.0 * height,
            width=self.width / 100.0 * width,
            height=self.height / 100.0 * height,
        )

    @classmethod
    def from_points(cls, rect: PointRect, page_width: float, page_height: float) -> FigureLocation:
        if not page_width or not page_height:
            raise FigureDimensionsError("Page dimensions are required to convert points to percentages.")
        return cls(
            page=rect.page,
            x=rect.x / page_width * 100.0,
            y=rect.y / page_height * 100.0,
            width=rect.width / page_width * 100.0,
            height=rect.height / page_height * 100.0,
            page_width=float(page_width),
            page_height=float(page_height),
        )

    @classmethod
    def from_normalized(cls, box_2d: Sequence[float], page: int) -> FigureLocation:
        """Build from a ``[ymin, xmin, ymax, xmax]`` box on a 0..1000 scale."""
        if len(box_2d) != 4:
            raise ValueError("box_2d must contain exactly four values.")
        ymin, xmin, ymax, xmax = (float(v) for v in box_2d)
        factor = 100.0 / NORMALIZED_SCALE
        return cls(
            page=page,
            x=min(xmin, xmax) * factor,
            y=min(ymin, ymax) * factor,
            width=abs(xmax - xmin) * factor,
            height=abs(ymax - ymin) * factor,
        )

    def to_payload(self) -> dict[str, Any]:
        self._require_dimensions()
        return {
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "page_width": self.page_width,
            "page_height": self.page_height,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> FigureLocation:
        """Read a stored location, including the older ``*_percent`` keys."""
        if "x_percent" in payload:
            return cls(
                page=int(payload["page"]),
                x=float(payload["x_percent"]),
                y=float(payload["y_percent"]),
                width=float(payload["width_percent"]),
                height=float(payload["height_percent"]),
                page_width=_optional_float(payload.get("page_width") or payload.get("source_page_width")),
                page_height=_optional_float(payload.get("page_height") or payload.get("source_page_height")),
            )
        return cls(
            page=int(payload["page"]),
            x=float(payload["x"]),
            y=float(payload["y"]),
            width=float(payload["width"]),
            height=float(payload["height"]),
            page_width=_optional_float(payload.get("page_width")),
            page_height=_optional_float(payload.get("page_height")),
        )

    def _require_dimensions(self) -> None:
        if not self.has_dimensions:
            raise FigureDimensionsError(
                f"Figure on page {self.page} has no reference page dimensions.",
            )


def padded_crop_rect(location: FigureLocation, padding: float = 10.0) -> PointRect:
    """Expand a figure by ``padding`` points on every side, clipped to its page."""

    rect = location.to_points()
    page_width = float(location.page_width)  # type: ignore[arg-type]
    page_height = float(location.page_height)  # type: ignore[arg-type]
    x = max(0.0, rect.x - padding)
    y = max(0.0, rect.y - padding)
    return PointRect(
        page=rect.page,
        x=x,
        y=y,
        width=min(page_width - x, rect.width + padding * 2),
        height=min(page_height - y, rect.height + padding * 2),
    )


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)
