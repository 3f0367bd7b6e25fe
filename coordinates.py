"""
Field coordinates for the overload-violation PDF template.

Coordinate system (same as reportlab and the PDF itself):
- origin at the bottom-left corner of the page
- x grows to the right, y grows upwards
- units are points (1pt = 1/72 inch), A4 is 595 x 842 pt

The baseline tables were measured by hand against the official template.
A partial override table (usually produced by template analysis) can be
layered on top; it wins field by field.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import InputError

logger = logging.getLogger(__name__)

PAGE_SIZE: tuple[float, float] = (595.0, 842.0)
AXLE_COUNT = 8
WITNESS_SLOTS = 3
WITNESS_PARTS = ("office", "position", "name")


class DocumentType(str, Enum):
    REPORT = "report"
    STATEMENT = "statement"

    @property
    def page_index(self) -> int:
        return 0 if self is DocumentType.REPORT else 1

    @property
    def label(self) -> str:
        return DOCUMENT_LABELS[self]


DOCUMENT_LABELS = {
    DocumentType.REPORT: "적발보고서",
    DocumentType.STATEMENT: "진술서",
}


def parse_document_type(value: str | DocumentType) -> DocumentType:
    if isinstance(value, DocumentType):
        return value
    try:
        return DocumentType(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(t.value for t in DocumentType)
        raise InputError(f"Unknown document type '{value}'. Expected one of: {choices}.") from None


class FieldCoordinate(BaseModel):
    """Baseline position of a field's text plus its font size."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    x: float = Field(ge=0)
    y: float = Field(ge=0)
    font_size: float = Field(default=10.0, gt=0, alias="size")

    def within(self, page_w: float, page_h: float) -> bool:
        return self.x <= page_w and self.y <= page_h

    def shifted(self, dx: float, dy: float) -> FieldCoordinate:
        if not dx and not dy:
            return self
        return self.model_copy(update={"x": self.x + dx, "y": self.y + dy})


CoordinateTable = dict[DocumentType, dict[str, FieldCoordinate]]


def axle_field(index: int, side: str) -> str:
    return f"axle{index}_{side}"


def witness_field(slot: int, part: str) -> str:
    return f"witness{slot}_{part}"


def _c(x: float, y: float, size: float) -> FieldCoordinate:
    return FieldCoordinate(x=x, y=y, font_size=size)


def _detection_block() -> dict[str, FieldCoordinate]:
    return {
        "date_year": _c(285, 755, 11),
        "date_month": _c(330, 755, 11),
        "date_day": _c(365, 755, 11),
        "date_hour": _c(400, 755, 11),
        "date_minute": _c(435, 755, 11),
        "location": _c(145, 728, 10),
        "checkpoint": _c(145, 710, 10),
    }


def _dimension_block(measured_y: float, violation_y: float) -> dict[str, FieldCoordinate]:
    block = {}
    for name, x in (("width", 195), ("height", 275), ("length", 355)):
        block[f"{name}_measured"] = _c(x, measured_y, 10)
        block[f"{name}_violation"] = _c(x, violation_y, 10)
    return block


def _weight_block(measured_y: float, violation_y: float) -> dict[str, FieldCoordinate]:
    block = {}
    for side, y in (("measured", measured_y), ("violation", violation_y)):
        for i in range(1, AXLE_COUNT + 1):
            block[axle_field(i, side)] = _c(130 + 40 * i, y, 9)
        block[f"total_weight_{side}"] = _c(515, y, 9)
    return block


def _witness_block() -> dict[str, FieldCoordinate]:
    block = {}
    for slot in range(1, WITNESS_SLOTS + 1):
        office_y = 255 - 37 * (slot - 1)
        block[witness_field(slot, "office")] = _c(190, office_y, 10)
        block[witness_field(slot, "position")] = _c(190, office_y - 17, 10)
        block[witness_field(slot, "name")] = _c(280, office_y - 17, 11)
    return block


BASELINE_COORDINATES: CoordinateTable = {
    DocumentType.REPORT: {
        **_detection_block(),
        "driver_name": _c(145, 680, 11),
        "driver_address": _c(145, 662, 10),
        "phone_fixed": _c(145, 644, 10),
        "phone_mobile": _c(350, 644, 10),
        "vehicle_type": _c(145, 612, 11),
        "vehicle_route": _c(300, 612, 10),
        "plate_number": _c(145, 594, 11),
        "cargo": _c(350, 594, 10),
        **_dimension_block(548, 530),
        **_weight_block(488, 470),
        "author_year": _c(450, 155, 10),
        "author_month": _c(480, 155, 10),
        "author_day": _c(510, 155, 10),
        "author_office": _c(190, 135, 10),
        "author_position": _c(190, 118, 10),
        "author_name": _c(190, 100, 11),
    },
    DocumentType.STATEMENT: {
        **_detection_block(),
        "vehicle_type": _c(145, 680, 11),
        "plate_number": _c(280, 680, 11),
        **_dimension_block(598, 580),
        **_weight_block(538, 520),
        "statement_year": _c(450, 275, 10),
        "statement_month": _c(480, 275, 10),
        "statement_day": _c(510, 275, 10),
        **_witness_block(),
    },
}


# Korean captions as printed on the form; used to tell the vision model what to look for.
_COMMON_LABELS = {
    "date_year": "적발 일시 - 년도",
    "date_month": "적발 일시 - 월",
    "date_day": "적발 일시 - 일",
    "date_hour": "적발 일시 - 시",
    "date_minute": "적발 일시 - 분",
    "location": "적발 위치/장소",
    "checkpoint": "검문소명",
    "vehicle_type": "차종",
    "plate_number": "차량 등록번호",
    "width_measured": "너비 측정결과",
    "height_measured": "높이 측정결과",
    "length_measured": "길이 측정결과",
    "width_violation": "너비 위반내역",
    "height_violation": "높이 위반내역",
    "length_violation": "길이 위반내역",
    "total_weight_measured": "총중량 측정결과",
    "total_weight_violation": "총중량 위반내역",
    **{axle_field(i, "measured"): f"{i}축 측정결과" for i in range(1, AXLE_COUNT + 1)},
    **{axle_field(i, "violation"): f"{i}축 위반내역" for i in range(1, AXLE_COUNT + 1)},
}

FIELD_LABELS: dict[DocumentType, dict[str, str]] = {
    DocumentType.REPORT: {
        **_COMMON_LABELS,
        "driver_name": "운전자 성명",
        "driver_address": "운전자 주소",
        "phone_fixed": "일반전화번호",
        "phone_mobile": "휴대전화번호",
        "vehicle_route": "운행경로",
        "cargo": "적재물",
        "author_year": "작성일 - 년도",
        "author_month": "작성일 - 월",
        "author_day": "작성일 - 일",
        "author_office": "작성자 소속",
        "author_position": "작성자 직급",
        "author_name": "작성자 성명",
    },
    DocumentType.STATEMENT: {
        **_COMMON_LABELS,
        "statement_year": "진술일 - 년도",
        "statement_month": "진술일 - 월",
        "statement_day": "진술일 - 일",
        **{
            witness_field(slot, part): f"진술인{slot} {caption}"
            for slot in range(1, WITNESS_SLOTS + 1)
            for part, caption in zip(WITNESS_PARTS, ("소속", "직급", "성명"))
        },
    },
}


def parse_override_table(
    data: Any,
    page_size: tuple[float, float] | None = PAGE_SIZE,
) -> CoordinateTable | None:
    """Build a partial table from stored JSON or re-check an existing table.

    Returns None for anything that is not a mapping. Entries that are not
    valid coordinates, fall outside the page, or name unknown fields are
    dropped one by one; the rest of the table is kept. With page_size=None
    only the shape is checked; the page bound is applied once the template
    is known.
    """
    if not isinstance(data, Mapping):
        return None

    table: CoordinateTable = {}
    for doc_type in DocumentType:
        section = data.get(doc_type)
        if section is None:
            section = data.get(doc_type.value)
        if not isinstance(section, Mapping):
            continue
        known = BASELINE_COORDINATES[doc_type]
        entries: dict[str, FieldCoordinate] = {}
        for name, raw in section.items():
            if name not in known:
                logger.warning("Ignoring override for unknown field %s.%s", doc_type.value, name)
                continue
            try:
                coord = FieldCoordinate.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Ignoring malformed override %s.%s: %s", doc_type.value, name, exc)
                continue
            if page_size is not None and not coord.within(*page_size):
                logger.warning("Ignoring off-page override %s.%s: %s", doc_type.value, name, coord)
                continue
            entries[name] = coord
        if entries:
            table[doc_type] = entries
    return table


def dump_table(table: CoordinateTable) -> dict[str, dict[str, dict[str, float]]]:
    return {
        doc_type.value: {
            name: {"x": c.x, "y": c.y, "size": c.font_size} for name, c in fields.items()
        }
        for doc_type, fields in table.items()
    }


class CoordinateResolver:
    """Resolves field positions, preferring the override over the baseline per field."""

    def __init__(
        self,
        override: CoordinateTable | None = None,
        baseline: CoordinateTable | None = None,
        dx: float = 0.0,
        dy: float = 0.0,
    ) -> None:
        self.baseline = BASELINE_COORDINATES if baseline is None else baseline
        self.override = override or {}
        self.dx = dx
        self.dy = dy

    def resolve(self, document_type: DocumentType, field_name: str) -> FieldCoordinate | None:
        coord = self.override.get(document_type, {}).get(field_name)
        if coord is None:
            coord = self.baseline.get(document_type, {}).get(field_name)
        if coord is None:
            return None
        return coord.shifted(self.dx, self.dy)

    def merged(self, document_type: DocumentType) -> dict[str, FieldCoordinate]:
        names = list(self.baseline.get(document_type, {}))
        names += [n for n in self.override.get(document_type, {}) if n not in names]
        merged = {}
        for name in names:
            coord = self.resolve(document_type, name)
            if coord is not None:
                merged[name] = coord
        return merged
