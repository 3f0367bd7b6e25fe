"""
Locate form fields on a template page with a vision model.

The page is rendered to PNG with PyMuPDF and sent to the Gemini
generateContent endpoint together with the list of fields to find. The
reply is expected to hold one JSON object of {field: {x, y, size}} in PDF
points. Only known fields with in-page coordinates are kept, so the result
is a partial override table.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

import fitz
import requests

from config import Settings
from coordinates import FIELD_LABELS, CoordinateTable, DocumentType, dump_table, parse_override_table
from errors import AnalysisError

logger = logging.getLogger(__name__)

RENDER_SCALE = 2.0

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def _open_pdf(pdf_bytes: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise AnalysisError(f"Template could not be opened: {exc}") from exc


def render_page_png(pdf_bytes: bytes, page_index: int, scale: float = RENDER_SCALE) -> tuple[bytes, float, float]:
    """Render one page; returns (png, page width pt, page height pt)."""
    doc = _open_pdf(pdf_bytes)
    try:
        if page_index < 0 or page_index >= len(doc):
            raise AnalysisError(f"Page {page_index} out of range. PDF has {len(doc)} page(s).")
        page = doc[page_index]
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
        return pix.tobytes("png"), float(page.rect.width), float(page.rect.height)
    finally:
        doc.close()


def page_count(pdf_bytes: bytes) -> int:
    doc = _open_pdf(pdf_bytes)
    try:
        return len(doc)
    finally:
        doc.close()


def build_prompt(document_type: DocumentType, page_w: float, page_h: float, scale: float = RENDER_SCALE) -> str:
    field_list = "\n".join(
        f'- "{name}": {label}' for name, label in FIELD_LABELS[document_type].items()
    )
    return f"""당신은 PDF 양식 분석 전문가입니다. 이 이미지는 한국의 운행제한 위반 적발 보고서/진술서 양식입니다.

각 필드가 텍스트를 입력해야 하는 위치의 정확한 좌표를 찾아주세요.
좌표는 PDF 좌표계를 사용합니다 (좌하단이 원점, 단위는 포인트).

**이미지 크기 정보:**
- 이 이미지는 PDF 페이지를 {scale:g}배 스케일로 렌더링한 것입니다.
- 원본 크기: {page_w:.0f} x {page_h:.0f} 포인트
- 이미지 픽셀 좌표를 {scale:g}로 나누어 PDF 좌표로 변환해주세요.
- Y 좌표는 PDF 좌표계로 변환해주세요 ({page_h:.0f} - y/{scale:g}).

**분석해야 할 필드 목록:**
{field_list}

**응답 형식:**
다음 JSON 형식으로만 응답해주세요. 다른 텍스트는 포함하지 마세요.
{{
  "fieldName1": {{ "x": 100, "y": 700, "size": 11 }},
  "fieldName2": {{ "x": 150, "y": 680, "size": 11 }}
}}

**참고사항:**
- x: 텍스트 시작 x 좌표 (왼쪽에서부터)
- y: 텍스트 기준선 y 좌표 (아래에서부터, PDF 좌표계)
- size: 권장 폰트 크기 (보통 9-12 사이)
- 필드를 찾을 수 없으면 해당 필드는 응답에서 제외해주세요.
- 테이블 셀 내부의 정확한 입력 위치를 찾아주세요."""


def extract_json_object(text: str) -> dict[str, Any]:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise AnalysisError("No JSON object found in the model reply.")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"Model reply is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AnalysisError("Model reply JSON is not an object.")
    return data


def request_coordinates(png: bytes, prompt: str, settings: Settings) -> dict[str, Any]:
    if not settings.gemini_api_key:
        raise AnalysisError("Gemini API key is not configured (DOROFILL_GEMINI_API_KEY).")

    url = f"{settings.gemini_endpoint.rstrip('/')}/{settings.gemini_model}:generateContent"
    payload = {
        "contents": [
            {
                "parts": [
                    {"text": prompt},
                    {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(png).decode("ascii")}},
                ]
            }
        ],
        "generationConfig": {"temperature": 0.1, "maxOutputTokens": 4096},
    }
    try:
        response = requests.post(
            url,
            params={"key": settings.gemini_api_key},
            json=payload,
            timeout=settings.analysis_timeout_sec,
        )
    except requests.RequestException as exc:
        raise AnalysisError(f"Gemini request failed: {exc}") from exc

    if not response.ok:
        try:
            message = response.json().get("error", {}).get("message", "unknown error")
        except ValueError:
            message = response.text[:200] or "unknown error"
        raise AnalysisError(f"Gemini API error ({response.status_code}): {message}")

    try:
        text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise AnalysisError("Gemini reply has no text part.") from exc
    return extract_json_object(text)


def analyze_template(pdf_bytes: bytes, settings: Settings, filename: str = "") -> dict[str, Any]:
    """Analyze the report page and, when present, the statement page.

    Returns a storable document: analysis metadata plus one coordinate
    section per analyzed document type.
    """
    total_pages = page_count(pdf_bytes)
    table: CoordinateTable = {}
    for doc_type in DocumentType:
        if doc_type.page_index >= total_pages:
            logger.info("Template has no page for %s; skipped", doc_type.value)
            continue
        png, page_w, page_h = render_page_png(pdf_bytes, doc_type.page_index)
        raw = request_coordinates(png, build_prompt(doc_type, page_w, page_h), settings)
        parsed = parse_override_table({doc_type.value: raw}, page_size=(page_w, page_h)) or {}
        fields = parsed.get(doc_type, {})
        logger.info("Page %d analyzed: %d field(s)", doc_type.page_index + 1, len(fields))
        if fields:
            table[doc_type] = fields

    if not table:
        raise AnalysisError("The model did not locate any known field.")

    return {
        "analyzed_at": datetime.now(timezone.utc).isoformat(),
        "filename": filename,
        **dump_table(table),
    }
