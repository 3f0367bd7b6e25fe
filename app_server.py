import json
import logging
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from auth import get_current_user
from calculator import (
    DEFAULT_DUE_DAYS,
    due_date,
    fine,
    format_currency,
    format_number,
    overweight,
    overweight_percentage,
    total_weight,
)
from config import Settings, get_settings
from coordinates import CoordinateResolver, DocumentType, dump_table, parse_document_type, parse_override_table
from errors import AnalysisError, InputError, RenderError, StorageError
from report_overlay import (
    CollectingNotifier,
    DocumentAssembler,
    FontProvider,
    TextPlacer,
    WitnessEntry,
    coerce_witnesses,
)
from storage import COORDINATES_KEY, SHARED_REPORT_KEY, JsonStore, autosave_key, build_shared_report
from template_analyzer import analyze_template
from validator import WEIGHT_LIMITS, evaluate, validate_form

ROOT_DIR = Path(__file__).resolve().parent

logging.basicConfig(level=get_settings().log_level, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="DoroFill API")

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api", dependencies=[Depends(get_current_user)])


# ── ERROR HANDLERS ────────────────────────────────────────────────────────────
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "message": "Request validation failed.",
            "detail": exc.errors(),
            "body": exc.body,
        },
    )


@app.exception_handler(InputError)
async def input_error_handler(request: Request, exc: InputError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RenderError)
async def render_error_handler(request: Request, exc: RenderError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AnalysisError)
async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    logger.warning("Template analysis failed: %s", exc)
    return JSONResponse(
        status_code=502,
        content={"detail": f"Template analysis failed: {exc}. Baseline coordinates stay in use."},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("%s", exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ── DEPENDENCIES ──────────────────────────────────────────────────────────────
def get_store(settings: Settings = Depends(get_settings)) -> JsonStore:
    return JsonStore(settings.data_dir)


@lru_cache(maxsize=8)
def _font_provider(font_path: Path | None, bold_font_path: Path | None, fonts_dir: Path) -> FontProvider:
    return FontProvider(
        font_path=font_path,
        bold_font_path=bold_font_path,
        fonts_dirs=[fonts_dir, ROOT_DIR / "fonts"],
    )


def get_text_placer(settings: Settings = Depends(get_settings)) -> TextPlacer:
    fonts = _font_provider(settings.font_path, settings.bold_font_path, settings.fonts_dir)
    return TextPlacer(fonts, glyph_policy=settings.glyph_policy)


def content_disposition(filename: str, ascii_fallback: str) -> str:
    return f"attachment; filename=\"{ascii_fallback}\"; filename*=UTF-8''{quote(filename)}"


def _parse_json_form(raw: str | None, name: str, default: Any) -> Any:
    if raw is None or not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON in {name}: {exc}") from exc


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ── FILL ──────────────────────────────────────────────────────────────────────
@api.post("/fill/{document_type}")
def fill_document(
    document_type: str,
    template: UploadFile = File(...),
    form_json: str = Form("{}"),
    witnesses_json: str | None = Form(None),
    validate_input: bool = Form(True, alias="validate"),
    dx: float = Form(0.0),
    dy: float = Form(0.0),
    debug: bool = Form(False),
    grid_step: float = Form(0.0),
    store: JsonStore = Depends(get_store),
    placer: TextPlacer = Depends(get_text_placer),
) -> Response:
    doc_type = parse_document_type(document_type)
    form = _parse_json_form(form_json, "form_json", {})
    if not isinstance(form, dict):
        raise HTTPException(status_code=400, detail="form_json must be a JSON object.")
    raw_witnesses = _parse_json_form(witnesses_json, "witnesses_json", form.pop("witnesses", []))
    if not isinstance(raw_witnesses, list):
        raise HTTPException(status_code=400, detail="witnesses_json must be a JSON list.")
    witnesses = [w for w in coerce_witnesses(raw_witnesses) if w.name.strip()]

    if validate_input:
        result = validate_form(doc_type, form, witnesses)
        if not result.valid:
            raise HTTPException(
                status_code=400,
                detail={
                    "message": "Form validation failed.",
                    "errors": result.errors,
                    "missing_fields": result.missing_fields,
                },
            )

    notifier = CollectingNotifier()
    assembler = DocumentAssembler(placer=placer, notifier=notifier, dx=dx, dy=dy)
    document = assembler.assemble(
        template=template.file.read(),
        document_type=doc_type,
        field_values=form,
        witnesses=witnesses,
        coordinate_override=store.read(COORDINATES_KEY),
        debug=debug,
        grid_step=grid_step,
    )

    if doc_type is DocumentType.REPORT:
        shared_form = {
            **form,
            "total_weight_measured": format_number(document.total_measured),
            "total_weight_violation": format_number(document.total_violation),
        }
        store.write(SHARED_REPORT_KEY, build_shared_report(shared_form))

    today = date.today()
    filename = document.suggested_filename(today)
    return Response(
        content=document.to_bytes(),
        media_type="application/pdf",
        headers={
            "Content-Disposition": content_disposition(filename, f"{doc_type.value}_{today:%Y%m%d}.pdf"),
            "X-DoroFill-Placed": str(len(document.placements)),
            "X-DoroFill-Warnings": str(len(notifier.messages)),
        },
    )


class CalculateRequest(BaseModel):
    violation_count: int = Field(default=1, ge=1)
    overweight_kg: float = Field(default=0.0, ge=0)
    actual_weight: float | None = None
    allowed_weight: float | None = None
    detection_date: date | None = None
    due_days: int = DEFAULT_DUE_DAYS
    axle_weights: list[str | float] = Field(default_factory=list)


@api.post("/calculate")
def calculate(request: CalculateRequest) -> dict[str, Any]:
    amount = fine(request.violation_count, request.overweight_kg)
    result: dict[str, Any] = {
        "fine": amount,
        "fine_display": format_currency(amount),
    }
    if request.actual_weight is not None and request.allowed_weight is not None:
        result["overweight"] = overweight(request.actual_weight, request.allowed_weight)
        result["overweight_percentage"] = overweight_percentage(request.actual_weight, request.allowed_weight)
    if request.detection_date is not None:
        result["due_date"] = due_date(request.detection_date, request.due_days).isoformat()
    if request.axle_weights:
        total = total_weight(request.axle_weights, positive_only=True)
        result["total_weight"] = format_number(total)
        result["axle_violations"] = [
            evaluate(w, WEIGHT_LIMITS.limit_axle).violates for w in request.axle_weights
        ]
        result["total_violates"] = evaluate(total, WEIGHT_LIMITS.limit_total).violates
    return result


class ValidateRequest(BaseModel):
    form: dict[str, Any] = Field(default_factory=dict)
    witnesses: list[WitnessEntry] = Field(default_factory=list)


@api.post("/validate/{document_type}")
def validate_document(document_type: str, request: ValidateRequest) -> dict[str, Any]:
    doc_type = parse_document_type(document_type)
    result = validate_form(doc_type, request.form, request.witnesses)
    return {"valid": result.valid, "errors": result.errors, "missing_fields": result.missing_fields}


# ── COORDINATES ───────────────────────────────────────────────────────────────
@api.get("/coordinates")
def get_coordinates(store: JsonStore = Depends(get_store)) -> Any:
    data = store.read(COORDINATES_KEY)
    if data is None:
        raise HTTPException(status_code=404, detail="No override coordinates saved.")
    return data


@api.put("/coordinates")
def save_coordinates(payload: dict[str, Any], store: JsonStore = Depends(get_store)) -> dict[str, Any]:
    table = parse_override_table(payload, page_size=None) or {}
    if not table:
        raise HTTPException(status_code=400, detail="Payload holds no valid coordinates.")
    document = {
        key: value for key, value in payload.items() if key not in {t.value for t in DocumentType}
    }
    document.update(dump_table(table))
    store.write(COORDINATES_KEY, document)
    return {
        "message": "Saved override coordinates.",
        "fields": {doc_type.value: len(fields) for doc_type, fields in table.items()},
    }


@api.delete("/coordinates")
def delete_coordinates(store: JsonStore = Depends(get_store)) -> dict[str, str]:
    if not store.delete(COORDINATES_KEY):
        raise HTTPException(status_code=404, detail="No override coordinates saved.")
    return {"message": "Override coordinates deleted. Baseline coordinates are in use."}


@api.get("/coordinates/{document_type}")
def get_resolved_coordinates(document_type: str, store: JsonStore = Depends(get_store)) -> dict[str, Any]:
    doc_type = parse_document_type(document_type)
    override = parse_override_table(store.read(COORDINATES_KEY), page_size=None) or {}
    resolver = CoordinateResolver(override=override)
    overridden = override.get(doc_type, {})
    return {
        "document_type": doc_type.value,
        "page_index": doc_type.page_index,
        "fields": {
            name: {
                "x": coord.x,
                "y": coord.y,
                "size": coord.font_size,
                "source": "override" if name in overridden else "baseline",
            }
            for name, coord in resolver.merged(doc_type).items()
        },
    }


@api.post("/analyze-template")
def analyze_template_upload(
    template: UploadFile = File(...),
    settings: Settings = Depends(get_settings),
    store: JsonStore = Depends(get_store),
) -> dict[str, Any]:
    result = analyze_template(template.file.read(), settings, filename=template.filename or "")
    store.write(COORDINATES_KEY, result)
    return {
        "message": "Template analyzed.",
        "analyzed_at": result["analyzed_at"],
        "fields": {t.value: len(result.get(t.value, {})) for t in DocumentType},
    }


# ── SAVED FORMS ───────────────────────────────────────────────────────────────
@api.get("/forms/{document_type}/autosave")
def get_autosave(document_type: str, store: JsonStore = Depends(get_store)) -> Any:
    doc_type = parse_document_type(document_type)
    data = store.read(autosave_key(doc_type))
    if data is None:
        raise HTTPException(status_code=404, detail=f"No saved {doc_type.value} form.")
    return data


@api.put("/forms/{document_type}/autosave")
def put_autosave(
    document_type: str,
    payload: dict[str, Any],
    store: JsonStore = Depends(get_store),
) -> dict[str, str]:
    doc_type = parse_document_type(document_type)
    store.write(autosave_key(doc_type), payload)
    return {"message": f"Saved {doc_type.value} form."}


@api.delete("/forms/{document_type}/autosave")
def delete_autosave(document_type: str, store: JsonStore = Depends(get_store)) -> dict[str, str]:
    doc_type = parse_document_type(document_type)
    if not store.delete(autosave_key(doc_type)):
        raise HTTPException(status_code=404, detail=f"No saved {doc_type.value} form.")
    return {"message": f"Deleted saved {doc_type.value} form."}


@api.get("/shared-report")
def get_shared_report(store: JsonStore = Depends(get_store)) -> Any:
    data = store.read(SHARED_REPORT_KEY)
    if data is None:
        raise HTTPException(status_code=404, detail="No report has been filled yet.")
    return data


@api.delete("/shared-report")
def delete_shared_report(store: JsonStore = Depends(get_store)) -> dict[str, str]:
    if not store.delete(SHARED_REPORT_KEY):
        raise HTTPException(status_code=404, detail="No report has been filled yet.")
    return {"message": "Shared report data deleted."}


app.include_router(api)
