"""
Form checks and the weight-limit rule used to flag violations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Sequence

from calculator import parse_number
from coordinates import DocumentType

MESSAGES = {
    "required": "{label}을(를) 입력해주세요.",
    "invalid_plate_number": "올바른 차량번호 형식이 아닙니다. (예: 12가1234, 서울12가1234)",
    "invalid_phone": "올바른 휴대폰 번호 형식이 아닙니다.",
    "invalid_date": "올바른 날짜 형식이 아닙니다.",
    "future_date": "미래 날짜는 입력할 수 없습니다.",
    "min_witnesses": "진술인을 {count}명 이상 입력해주세요.",
}


@dataclass(frozen=True)
class ThresholdRule:
    limit_axle: float = 11.00
    limit_total: float = 44.00


WEIGHT_LIMITS = ThresholdRule()


@dataclass(frozen=True)
class ThresholdResult:
    violates: bool


def evaluate(value: Any, limit: float) -> ThresholdResult:
    """Strict comparison: a value equal to the limit is compliant."""
    number = parse_number(value)
    limit_d = parse_number(limit)
    if number is None or limit_d is None:
        return ThresholdResult(violates=False)
    return ThresholdResult(violates=number > limit_d)


_PLATE_PATTERNS = (
    re.compile(r"^\d{2,3}[가-힣]\d{4}$"),
    re.compile(r"^[가-힣]{2}\d{2}[가-힣]\d{4}$"),
)
_PHONE_PATTERN = re.compile(r"^0\d{9,10}$")


def is_required(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def is_valid_vehicle_number(plate: str | None) -> bool:
    if not plate:
        return False
    compact = re.sub(r"\s", "", plate)
    return any(p.match(compact) for p in _PLATE_PATTERNS)


def is_valid_phone(phone: str | None) -> bool:
    if not phone:
        return False
    return bool(_PHONE_PATTERN.match(re.sub(r"[-\s]", "", phone)))


def parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.strip())
    except (ValueError, AttributeError):
        return None


def is_valid_date(value: str | None) -> bool:
    return bool(value) and parse_iso(value) is not None


def is_future_date(value: str, today: date | None = None) -> bool:
    parsed = parse_iso(value)
    if parsed is None:
        return False
    return parsed.date() > (today or date.today())


def is_number(value: Any) -> bool:
    return parse_number(value) is not None


@dataclass(frozen=True)
class RequiredField:
    field: str
    label: str


@dataclass(frozen=True)
class FormRules:
    required: tuple[RequiredField, ...]
    min_witnesses: int = 0
    no_future: tuple[str, ...] = ()


VALIDATION_RULES: dict[DocumentType, FormRules] = {
    DocumentType.REPORT: FormRules(
        required=(
            RequiredField("datetime", "적발 일시"),
            RequiredField("location", "적발 위치"),
            RequiredField("driver_name", "운전자 성명"),
            RequiredField("plate_number", "차량 등록번호"),
            RequiredField("author_name", "작성자 성명"),
        ),
        no_future=("datetime",),
    ),
    DocumentType.STATEMENT: FormRules(
        required=(
            RequiredField("datetime", "적발 일시"),
            RequiredField("location", "적발 위치"),
        ),
        min_witnesses=1,
        no_future=("datetime",),
    ),
}


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_form(
    document_type: DocumentType,
    data: Mapping[str, Any],
    witnesses: Sequence[Any] = (),
    today: date | None = None,
) -> ValidationResult:
    rules = VALIDATION_RULES[document_type]
    result = ValidationResult()

    for rule in rules.required:
        if not is_required(data.get(rule.field)):
            result.errors.append(MESSAGES["required"].format(label=rule.label))
            result.missing_fields.append(rule.field)

    for name in rules.no_future:
        value = data.get(name)
        if not is_required(value) or name in result.missing_fields:
            continue
        if not is_valid_date(str(value)):
            result.errors.append(MESSAGES["invalid_date"])
        elif is_future_date(str(value), today):
            result.errors.append(MESSAGES["future_date"])

    if rules.min_witnesses and len(witnesses) < rules.min_witnesses:
        result.errors.append(MESSAGES["min_witnesses"].format(count=rules.min_witnesses))
        result.missing_fields.append("witnesses")

    plate = data.get("plate_number")
    if plate and not is_valid_vehicle_number(str(plate)):
        result.errors.append(MESSAGES["invalid_plate_number"])

    mobile = data.get("phone_mobile")
    if mobile and not is_valid_phone(str(mobile)):
        result.errors.append(MESSAGES["invalid_phone"])

    return result
