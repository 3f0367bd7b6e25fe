import argparse
import io
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.colors import Color
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from calculator import format_number, parse_number, round_half_up
from config import GLYPH_POLICIES, get_settings
from coordinates import (
    AXLE_COUNT,
    WITNESS_PARTS,
    WITNESS_SLOTS,
    CoordinateResolver,
    CoordinateTable,
    DocumentType,
    FieldCoordinate,
    axle_field,
    parse_document_type,
    parse_override_table,
    witness_field,
)
from errors import InputError, PageNotFoundError, RenderError
from validator import WEIGHT_LIMITS, ThresholdRule, evaluate

logger = logging.getLogger(__name__)

_BASE14_FONTS = {
    "Courier",
    "Courier-Bold",
    "Courier-Oblique",
    "Courier-BoldOblique",
    "Helvetica",
    "Helvetica-Bold",
    "Helvetica-Oblique",
    "Helvetica-BoldOblique",
    "Times-Roman",
    "Times-Bold",
    "Times-Italic",
    "Times-BoldItalic",
    "Symbol",
    "ZapfDingbats",
}

PLACEHOLDER_CHAR = "?"
DEFAULT_COLOR = (0.0, 0.0, 0.0)
ALERT_COLOR = (0.86, 0.08, 0.08)

DATE_PARTS = ("year", "month", "day")
DATETIME_PARTS = ("year", "month", "day", "hour", "minute")
DIMENSION_FIELDS = (
    "width_measured",
    "height_measured",
    "length_measured",
    "width_violation",
    "height_violation",
    "length_violation",
)

SCALAR_FIELDS: dict[DocumentType, tuple[str, ...]] = {
    DocumentType.REPORT: (
        *(f"date_{p}" for p in DATETIME_PARTS),
        "location",
        "checkpoint",
        "driver_name",
        "driver_address",
        "phone_fixed",
        "phone_mobile",
        "vehicle_type",
        "vehicle_route",
        "plate_number",
        "cargo",
        *DIMENSION_FIELDS,
        *(f"author_{p}" for p in DATE_PARTS),
        "author_office",
        "author_position",
        "author_name",
    ),
    DocumentType.STATEMENT: (
        *(f"date_{p}" for p in DATETIME_PARTS),
        "location",
        "checkpoint",
        "vehicle_type",
        "plate_number",
        *DIMENSION_FIELDS,
        *(f"statement_{p}" for p in DATE_PARTS),
    ),
}


# ---------------------------------------------------------------------------
# Fonts and text placement
# ---------------------------------------------------------------------------


def find_font_files(fonts_dirs: Iterable[Path]) -> tuple[Path | None, Path | None]:
    """Pick a regular and a bold TTF from the first directories that have them."""
    regular: Path | None = None
    bold: Path | None = None
    for fonts_dir in fonts_dirs:
        if not fonts_dir.exists():
            continue
        candidates = sorted(fonts_dir.glob("*.ttf")) + sorted(fonts_dir.glob("*.otf"))
        for font_file in candidates:
            if "bold" in font_file.stem.lower():
                bold = bold or font_file
            else:
                regular = regular or font_file
    return regular, bold


def _register(font_path: Path) -> str | None:
    font_name = font_path.stem
    try:
        pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
    except Exception as exc:
        logger.warning("Failed to register font %s: %s", font_path.name, exc)
        return None
    logger.info("Registered font: %s", font_name)
    return font_name


class FontProvider:
    """Fonts used for field text.

    TTF files are registered on first use only, then shared read-only by every
    placement. Without a usable TTF the standard Helvetica pair is used, which
    has no Hangul glyphs.
    """

    def __init__(
        self,
        font_path: Path | None = None,
        bold_font_path: Path | None = None,
        fonts_dirs: Sequence[Path] = (),
    ) -> None:
        self._font_path = font_path
        self._bold_font_path = bold_font_path
        self._fonts_dirs = tuple(fonts_dirs)
        self._lock = threading.Lock()
        self._loaded = False
        self._regular = "Helvetica"
        self._bold = "Helvetica-Bold"
        self.synthetic_bold = False

    def _load(self) -> None:
        with self._lock:
            if self._loaded:
                return
            regular_path, bold_path = self._font_path, self._bold_font_path
            if regular_path is None:
                found_regular, found_bold = find_font_files(self._fonts_dirs)
                regular_path = found_regular
                bold_path = bold_path or found_bold

            regular = _register(regular_path) if regular_path and regular_path.exists() else None
            if regular is None:
                if regular_path:
                    logger.warning("Font '%s' is unavailable. Falling back to 'Helvetica'.", regular_path)
                else:
                    logger.warning("No TTF font configured. Non-Latin text will be substituted.")
            else:
                self._regular = regular
                bold = _register(bold_path) if bold_path and bold_path.exists() else None
                if bold is None:
                    self._bold = regular
                    self.synthetic_bold = True
                else:
                    self._bold = bold
            self._loaded = True

    def font_for(self, bold: bool) -> str:
        self._load()
        return self._bold if bold else self._regular

    def supports(self, font_name: str, ch: str) -> bool:
        if font_name in _BASE14_FONTS:
            try:
                ch.encode("cp1252")
            except UnicodeEncodeError:
                return False
            return True
        face = getattr(pdfmetrics.getFont(font_name), "face", None)
        char_map = getattr(face, "charToGlyph", None)
        if char_map is None:
            return True
        return ord(ch) in char_map


@dataclass(frozen=True)
class TextStyle:
    font_size: float
    bold: bool = False
    color: tuple[float, float, float] = DEFAULT_COLOR


EMPHASIS = {"bold": True, "color": ALERT_COLOR}


@dataclass(frozen=True)
class Placement:
    field: str
    text: str
    x: float
    y: float
    font_name: str
    font_size: float
    bold: bool = False
    color: tuple[float, float, float] = DEFAULT_COLOR


class TextPlacer:
    """Writes one string at one coordinate.

    glyph_policy "substitute" replaces every character the font cannot show
    with '?', "fail" raises RenderError for the whole string instead.
    Drawing twice at the same spot overlays; nothing is erased.
    """

    def __init__(self, fonts: FontProvider | None = None, glyph_policy: str = "substitute") -> None:
        if glyph_policy not in GLYPH_POLICIES:
            raise ValueError(f"Unknown glyph policy '{glyph_policy}'.")
        self.fonts = fonts or FontProvider()
        self.glyph_policy = glyph_policy

    @property
    def degrades(self) -> bool:
        return self.glyph_policy == "substitute"

    def _renderable(self, font_name: str, text: str, field_name: str) -> str:
        missing = [ch for ch in text if not self.fonts.supports(font_name, ch)]
        if not missing:
            return text
        if not self.degrades:
            raise RenderError(
                f"Font '{font_name}' cannot render {''.join(sorted(set(missing)))!r} in field '{field_name}'."
            )
        return "".join(PLACEHOLDER_CHAR if ch in missing else ch for ch in text)

    def place(
        self,
        c: canvas.Canvas,
        text: Any,
        coordinate: FieldCoordinate,
        style: TextStyle,
        field_name: str = "",
    ) -> Placement | None:
        text = "" if text is None else str(text).strip()
        if not text:
            return None

        font_name = self.fonts.font_for(style.bold)
        drawn = self._renderable(font_name, text, field_name)
        fake_bold = style.bold and self.fonts.synthetic_bold
        try:
            c.saveState()
            c.setFillColor(Color(*style.color))
            if fake_bold:
                c.setStrokeColor(Color(*style.color))
                c.setLineWidth(style.font_size * 0.04)
                t = c.beginText(coordinate.x, coordinate.y)
                t.setFont(font_name, style.font_size)
                t.setTextRenderMode(2)
                t.textOut(drawn)
                c.drawText(t)
            else:
                c.setFont(font_name, style.font_size)
                c.drawString(coordinate.x, coordinate.y, drawn)
            c.restoreState()
        except Exception as exc:
            raise RenderError(f"Failed to draw field '{field_name}': {exc}") from exc

        return Placement(
            field=field_name,
            text=drawn,
            x=coordinate.x,
            y=coordinate.y,
            font_name=font_name,
            font_size=style.font_size,
            bold=style.bold,
            color=style.color,
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    def notify(self, level: str, message: str) -> None: ...


class NullNotifier:
    def notify(self, level: str, message: str) -> None:
        return None


class CollectingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def notify(self, level: str, message: str) -> None:
        self.messages.append((level, message))


# ---------------------------------------------------------------------------
# Form value helpers
# ---------------------------------------------------------------------------


class WitnessEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    office: str = ""
    position: str = ""
    name: str = ""


def coerce_witnesses(entries: Any) -> list[WitnessEntry]:
    """Witness entries from decoded JSON; InputError when they do not fit the shape."""
    if entries is None:
        return []
    if not isinstance(entries, (list, tuple)):
        raise InputError("Witnesses must be a list of {office, position, name} objects.")
    witnesses = []
    for index, entry in enumerate(entries, start=1):
        if isinstance(entry, WitnessEntry):
            witnesses.append(entry)
            continue
        try:
            witnesses.append(WitnessEntry.model_validate(entry))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'entry'}: {err['msg']}" for err in exc.errors()
            )
            raise InputError(f"Witness {index} is malformed: {problems}") from exc
    return witnesses


def parse_datetime(value: str | None) -> dict[str, str]:
    """Split '2026-01-13T23:30' into year/month/day/hour/minute strings."""
    parts = dict.fromkeys(DATETIME_PARTS, "")
    if not value or not str(value).strip():
        return parts
    text = str(value).strip().replace(" ", "T", 1)
    date_part, _, time_part = text.partition("T")
    parts.update(parse_date(date_part))
    hour, _, minute = (time_part or "00:00").partition(":")
    parts["hour"] = hour
    parts["minute"] = minute[:2]
    return parts


def parse_date(value: str | None) -> dict[str, str]:
    parts = dict.fromkeys(DATE_PARTS, "")
    if not value or not str(value).strip():
        return parts
    pieces = str(value).strip()[:10].split("-")
    for key, piece in zip(DATE_PARTS, pieces):
        parts[key] = piece
    return parts


def expand_field_values(
    document_type: DocumentType,
    form: Mapping[str, Any],
    today: date | None = None,
) -> dict[str, str]:
    """Flatten form input into values keyed by coordinate field name."""
    values = {
        key: str(value).strip()
        for key, value in form.items()
        if value is not None and not isinstance(value, (list, dict))
    }
    if not values.get("vehicle_route") and values.get("route"):
        values["vehicle_route"] = values["route"]

    for key, part in parse_datetime(values.get("datetime")).items():
        values[f"date_{key}"] = part

    if document_type is DocumentType.REPORT:
        for key, part in parse_date(values.get("author_date")).items():
            values[f"author_{key}"] = part
    else:
        statement_date = values.get("statement_date") or (today or date.today()).isoformat()
        for key, part in parse_date(statement_date).items():
            values[f"statement_{key}"] = part
    return values


def suggested_filename(label: str, on_date: date | None = None) -> str:
    on_date = on_date or date.today()
    return f"{label}_{on_date:%Y%m%d}.pdf"


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


@dataclass
class CompletedDocument:
    document_type: DocumentType
    page_index: int
    writer: PdfWriter
    placements: list[Placement] = field(default_factory=list)
    total_measured: Decimal = Decimal("0.00")
    total_violation: Decimal = Decimal("0.00")

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.writer.write(buffer)
        return buffer.getvalue()

    def placed(self, field_name: str) -> Placement | None:
        for placement in self.placements:
            if placement.field == field_name:
                return placement
        return None

    def suggested_filename(self, on_date: date | None = None) -> str:
        return suggested_filename(self.document_type.label, on_date)


def open_template(source: bytes | Path | str | None) -> PdfReader:
    if source is None or source == b"":
        raise InputError("No PDF template supplied.")
    try:
        if isinstance(source, bytes):
            return PdfReader(io.BytesIO(source))
        path = Path(source)
        if not path.exists():
            raise InputError(f"Template not found: {path}")
        return PdfReader(str(path))
    except PdfReadError as exc:
        raise InputError(f"Template is not a readable PDF: {exc}") from exc


def _ticks(length: float, step: float) -> list[float]:
    return [i * step for i in range(int(length // step) + 1)]


def draw_grid(c: canvas.Canvas, page_w: float, page_h: float, step: float) -> None:
    """Calibration grid in page points, labelled along the left and bottom edges."""
    if step <= 0:
        return
    xs, ys = _ticks(page_w, step), _ticks(page_h, step)
    c.saveState()
    c.setStrokeColor(Color(0.2, 0.4, 0.8, alpha=0.25))
    c.setLineWidth(0.3)
    c.grid(xs, ys)
    c.setFillColor(Color(0.2, 0.4, 0.8, alpha=0.7))
    c.setFont("Helvetica", 5)
    for x in xs[1:]:
        c.drawString(x + 1, 2, f"{x:g}")
    for y in ys[1:]:
        c.drawString(2, y + 1, f"{y:g}")
    c.restoreState()


def draw_anchor(c: canvas.Canvas, x: float, y: float, label: str = "") -> None:
    """Mark a field's text origin with a dot on a short baseline tick, labelled with the field name."""
    c.saveState()
    c.setStrokeColor(Color(0.9, 0.1, 0.1, alpha=0.8))
    c.setFillColor(Color(0.9, 0.1, 0.1, alpha=0.8))
    c.setLineWidth(0.5)
    c.line(x, y, x + 20, y)
    c.circle(x, y, 1.2, stroke=0, fill=1)
    if label:
        c.setFont("Helvetica", 4)
        c.drawString(x + 1, y + 1.5, label)
    c.restoreState()


class DocumentAssembler:
    """Fills one page of the template for a report or a statement.

    Tables are only read here, so independent assemblies can run side by side.
    """

    def __init__(
        self,
        placer: TextPlacer | None = None,
        notifier: Notifier | None = None,
        thresholds: ThresholdRule = WEIGHT_LIMITS,
        dx: float = 0.0,
        dy: float = 0.0,
    ) -> None:
        self.placer = placer or TextPlacer()
        self.notifier = notifier or NullNotifier()
        self.thresholds = thresholds
        self.dx = dx
        self.dy = dy

    def assemble(
        self,
        template: bytes | Path | str | None,
        document_type: DocumentType | str,
        field_values: Mapping[str, Any],
        witnesses: Sequence[WitnessEntry | Mapping[str, Any]] = (),
        coordinate_override: CoordinateTable | Mapping[str, Any] | None = None,
        today: date | None = None,
        debug: bool = False,
        grid_step: float = 0.0,
    ) -> CompletedDocument:
        """Fill the page of `document_type`.

        `coordinate_override` may be a parsed table or the stored JSON
        document; either way its entries are checked against this
        template's page size.
        """
        doc_type = parse_document_type(document_type)
        witness_entries = coerce_witnesses(witnesses)
        reader = open_template(template)
        page_index = doc_type.page_index
        if len(reader.pages) <= page_index:
            raise PageNotFoundError(page_index, len(reader.pages))

        page = reader.pages[page_index]
        page_w = float(page.mediabox.width)
        page_h = float(page.mediabox.height)
        override = parse_override_table(coordinate_override, page_size=(page_w, page_h))
        resolver = CoordinateResolver(override=override, dx=self.dx, dy=self.dy)

        packet = io.BytesIO()
        c = canvas.Canvas(packet, pagesize=(page_w, page_h))
        draw_grid(c, page_w, page_h, grid_step)

        run = _AssemblyRun(self, c, resolver, doc_type)
        values = expand_field_values(doc_type, field_values, today)

        for name in SCALAR_FIELDS[doc_type]:
            text = values.get(name, "")
            if name in DIMENSION_FIELDS:
                text = format_number(text)
            run.place(name, text)

        total_measured = run.place_axles("measured", field_values, self.thresholds.limit_axle)
        total_violation = run.place_axles("violation", field_values, None)

        if total_measured > 0:
            run.place(
                "total_weight_measured",
                format_number(total_measured),
                emphasize=evaluate(total_measured, self.thresholds.limit_total).violates,
            )
        if total_violation > 0:
            run.place("total_weight_violation", format_number(total_violation))

        if doc_type is DocumentType.STATEMENT:
            run.place_witnesses(witness_entries)

        if debug:
            for name, coord in resolver.merged(doc_type).items():
                draw_anchor(c, coord.x, coord.y, label=name)

        c.showPage()
        c.save()
        packet.seek(0)
        page.merge_page(PdfReader(packet).pages[0])

        writer = PdfWriter()
        for template_page in reader.pages:
            writer.add_page(template_page)

        logger.info(
            "Assembled %s on page %d: %d field(s) placed",
            doc_type.value,
            page_index,
            len(run.placements),
        )
        return CompletedDocument(
            document_type=doc_type,
            page_index=page_index,
            writer=writer,
            placements=run.placements,
            total_measured=total_measured,
            total_violation=total_violation,
        )


class _AssemblyRun:
    def __init__(
        self,
        assembler: DocumentAssembler,
        c: canvas.Canvas,
        resolver: CoordinateResolver,
        document_type: DocumentType,
    ) -> None:
        self.assembler = assembler
        self.c = c
        self.resolver = resolver
        self.document_type = document_type
        self.placements: list[Placement] = []

    def place(self, field_name: str, text: str, emphasize: bool = False) -> None:
        if not text or not str(text).strip():
            return
        coord = self.resolver.resolve(self.document_type, field_name)
        if coord is None:
            logger.debug("No coordinate for %s.%s; skipped", self.document_type.value, field_name)
            return
        style = TextStyle(font_size=coord.font_size, **(EMPHASIS if emphasize else {}))
        placer = self.assembler.placer
        try:
            placement = placer.place(self.c, text, coord, style, field_name=field_name)
        except RenderError as exc:
            if not placer.degrades:
                raise
            logger.warning("%s", exc)
            self.assembler.notifier.notify("warning", str(exc))
            return
        if placement is not None:
            self.placements.append(placement)

    def place_axles(self, side: str, form: Mapping[str, Any], limit: float | None) -> Decimal:
        total = Decimal(0)
        for i in range(1, AXLE_COUNT + 1):
            name = axle_field(i, side)
            number = parse_number(form.get(name))
            if number is None or number <= 0:
                continue
            total += number
            emphasize = limit is not None and evaluate(number, limit).violates
            self.place(name, format_number(number), emphasize=emphasize)
        return round_half_up(total)

    def place_witnesses(self, witnesses: Sequence[WitnessEntry]) -> None:
        if len(witnesses) > WITNESS_SLOTS:
            logger.info("Only %d of %d witnesses fit on the statement", WITNESS_SLOTS, len(witnesses))
        for slot, witness in enumerate(witnesses[:WITNESS_SLOTS], start=1):
            for part in WITNESS_PARTS:
                self.place(witness_field(slot, part), getattr(witness, part))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fill the overload-violation report or statement page of a PDF template."
    )
    parser.add_argument("--template", help="Path to the template PDF.")
    parser.add_argument(
        "--type",
        dest="document_type",
        default="report",
        choices=[t.value for t in DocumentType],
        help="Which document to fill (report -> page 1, statement -> page 2).",
    )
    parser.add_argument(
        "--data-json",
        help="Path to JSON with form values. A 'witnesses' list is used for statements.",
    )
    parser.add_argument("--coords", help="Path to JSON with override coordinates.")
    parser.add_argument(
        "--output",
        help="Output PDF path. Defaults to <label>_<YYYYMMDD>.pdf in the current directory.",
    )
    parser.add_argument("--dx", type=float, default=0.0, help="Global X offset in points.")
    parser.add_argument("--dy", type=float, default=0.0, help="Global Y offset in points.")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Draw an anchor cross at every field coordinate for calibration.",
    )
    parser.add_argument(
        "--grid-step",
        type=float,
        default=0.0,
        help="Draw a light calibration grid with this spacing (points). 0 disables grid.",
    )
    parser.add_argument("--font-path", help="TTF font used for field text.")
    parser.add_argument("--bold-font-path", help="TTF font used for emphasized values.")
    parser.add_argument(
        "--glyph-policy",
        choices=list(GLYPH_POLICIES),
        help="What to do with characters the font cannot show.",
    )
    parser.add_argument(
        "--print-coords",
        action="store_true",
        help="Print the resolved coordinate table for --type and exit.",
    )
    return parser.parse_args()


def load_override_file(path: Path) -> Any:
    """Stored override document as JSON; entries are checked once the page size is known."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring override file %s: %s", path, exc)
        return None


def main() -> None:
    args = parse_args()
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    doc_type = parse_document_type(args.document_type)
    override = load_override_file(Path(args.coords)) if args.coords else None

    if args.print_coords:
        table = parse_override_table(override, page_size=None)
        resolver = CoordinateResolver(override=table, dx=args.dx, dy=args.dy)
        print(f"=== {doc_type.value} ===")
        for name, coord in resolver.merged(doc_type).items():
            print(f"{name}: x={coord.x:.2f}, y={coord.y:.2f}, size={coord.font_size:g}")
        return

    if not args.template:
        raise ValueError("Provide --template.")
    if not args.data_json:
        raise ValueError("Provide --data-json.")

    data = json.loads(Path(args.data_json).read_text(encoding="utf-8"))
    witnesses = data.pop("witnesses", []) if isinstance(data, dict) else []

    script_dir = Path(__file__).parent
    fonts = FontProvider(
        font_path=Path(args.font_path) if args.font_path else settings.font_path,
        bold_font_path=Path(args.bold_font_path) if args.bold_font_path else settings.bold_font_path,
        fonts_dirs=[settings.fonts_dir, script_dir / "fonts"],
    )
    assembler = DocumentAssembler(
        placer=TextPlacer(fonts, glyph_policy=args.glyph_policy or settings.glyph_policy),
        dx=args.dx,
        dy=args.dy,
    )
    document = assembler.assemble(
        template=Path(args.template),
        document_type=doc_type,
        field_values=data,
        witnesses=witnesses,
        coordinate_override=override,
        debug=args.debug,
        grid_step=args.grid_step,
    )

    output_path = Path(args.output) if args.output else Path(document.suggested_filename())
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(document.to_bytes())
    print(f"Placed {len(document.placements)} field(s).")
    print(f"Wrote: {output_path}")


if __name__ == "__main__":
    main()
