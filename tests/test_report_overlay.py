import io
from datetime import date
from decimal import Decimal

import pytest
from pypdf import PdfReader

from coordinates import DocumentType, FieldCoordinate
from errors import InputError, PageNotFoundError, RenderError
from report_overlay import (
    ALERT_COLOR,
    CollectingNotifier,
    DocumentAssembler,
    FontProvider,
    TextPlacer,
    WitnessEntry,
    expand_field_values,
    open_template,
    parse_datetime,
    suggested_filename,
)

TODAY = date(2026, 1, 14)


@pytest.fixture
def assembler() -> DocumentAssembler:
    return DocumentAssembler(placer=TextPlacer(FontProvider()))


def test_parse_datetime():
    assert parse_datetime("2026-01-13T23:30") == {
        "year": "2026",
        "month": "01",
        "day": "13",
        "hour": "23",
        "minute": "30",
    }
    assert parse_datetime("2026-01-13")["hour"] == "00"
    assert parse_datetime("") == dict.fromkeys(("year", "month", "day", "hour", "minute"), "")


def test_expand_field_values_statement_defaults_to_today():
    values = expand_field_values(DocumentType.STATEMENT, {"datetime": "2026-01-13T08:05"}, TODAY)
    assert values["date_minute"] == "05"
    assert (values["statement_year"], values["statement_month"], values["statement_day"]) == ("2026", "01", "14")


def test_expand_field_values_route_alias():
    values = expand_field_values(DocumentType.REPORT, {"route": "Seoul-Busan", "author_date": "2026-02-01"})
    assert values["vehicle_route"] == "Seoul-Busan"
    assert values["author_month"] == "02"


def test_report_totals_and_placements(assembler, template_pdf, report_form):
    document = assembler.assemble(template_pdf, "report", report_form, today=TODAY)

    assert document.page_index == 0
    assert document.total_measured == Decimal("15.51")
    assert document.total_violation == Decimal("0.00")
    assert document.placed("total_weight_measured").text == "15.51"
    assert document.placed("total_weight_violation") is None
    assert document.placed("axle2_measured").text == "5.01"
    assert document.placed("date_year").text == "2026"
    assert document.placed("vehicle_type") is None

    output = PdfReader(io.BytesIO(document.to_bytes()))
    assert len(output.pages) == 2
    assert "15.51" in output.pages[0].extract_text()
    assert output.pages[1].extract_text().strip() == ""


def test_axle_and_total_emphasis(assembler, template_pdf):
    form = {
        "axle1_measured": "11.00",
        "axle2_measured": "11.01",
        "axle3_measured": "23",
        "axle1_violation": "12",
    }
    document = assembler.assemble(template_pdf, DocumentType.REPORT, form, today=TODAY)

    assert not document.placed("axle1_measured").bold
    emphasized = document.placed("axle2_measured")
    assert emphasized.bold and emphasized.color == ALERT_COLOR
    assert document.placed("total_weight_measured").text == "45.01"
    assert document.placed("total_weight_measured").bold
    assert not document.placed("axle1_violation").bold
    assert not document.placed("total_weight_violation").bold


def test_non_positive_and_unparseable_axles_are_skipped(assembler, template_pdf):
    form = {"axle1_measured": "7", "axle2_measured": "-2", "axle3_measured": "abc", "axle4_measured": "0"}
    document = assembler.assemble(template_pdf, "report", form, today=TODAY)
    assert document.total_measured == Decimal("7.00")
    assert [p.field for p in document.placements if p.field.startswith("axle")] == ["axle1_measured"]


def test_violation_row_sum(assembler, template_pdf):
    values = ["10.5", "", "abc", "0", "-3", "5.005"]
    form = {f"axle{i}_violation": v for i, v in enumerate(values, start=1)}
    document = assembler.assemble(template_pdf, "report", form, today=TODAY)
    assert document.total_violation == Decimal("15.51")
    assert document.placed("total_weight_violation").text == "15.51"
    assert document.placed("total_weight_measured") is None


def test_statement_caps_witnesses(assembler, template_pdf):
    witnesses = [WitnessEntry(office="Office", position="Chief", name=f"W{i}") for i in range(1, 6)]
    document = assembler.assemble(
        template_pdf,
        "statement",
        {"datetime": "2026-01-13T10:00", "location": "Gate 3"},
        witnesses=witnesses,
        today=TODAY,
    )
    assert document.page_index == 1
    names = [p.text for p in document.placements if p.field.endswith("_name")]
    assert names == ["W1", "W2", "W3"]
    assert document.placed("statement_day").text == "14"
    assert "Gate 3" in PdfReader(io.BytesIO(document.to_bytes())).pages[1].extract_text()


def test_statement_needs_second_page(assembler, single_page_pdf):
    with pytest.raises(PageNotFoundError) as excinfo:
        assembler.assemble(single_page_pdf, "statement", {}, today=TODAY)
    assert excinfo.value.page_count == 1
    assert "out of range" in str(excinfo.value)


@pytest.mark.parametrize("template", [None, b"", b"not a pdf"])
def test_bad_template(assembler, template):
    with pytest.raises(InputError):
        assembler.assemble(template, "report", {}, today=TODAY)


def test_missing_template_file(tmp_path):
    with pytest.raises(InputError):
        open_template(tmp_path / "missing.pdf")


def test_unknown_document_type(assembler, template_pdf):
    with pytest.raises(InputError):
        assembler.assemble(template_pdf, "invoice", {}, today=TODAY)


def test_substitutes_unsupported_glyphs(assembler, template_pdf):
    document = assembler.assemble(template_pdf, "report", {"driver_name": "홍길동 A"}, today=TODAY)
    placement = document.placed("driver_name")
    assert placement.font_name == "Helvetica"
    assert placement.text == "??? A"


def test_fail_policy_raises(template_pdf):
    strict = DocumentAssembler(placer=TextPlacer(FontProvider(), glyph_policy="fail"))
    with pytest.raises(RenderError):
        strict.assemble(template_pdf, "report", {"driver_name": "홍길동"}, today=TODAY)


def test_unknown_glyph_policy():
    with pytest.raises(ValueError):
        TextPlacer(glyph_policy="ignore")


def test_override_and_offset(template_pdf):
    override = {DocumentType.REPORT: {"driver_name": FieldCoordinate(x=50, y=60, size=8)}}
    shifted = DocumentAssembler(placer=TextPlacer(FontProvider()), dx=3, dy=-4)
    document = shifted.assemble(
        template_pdf,
        "report",
        {"driver_name": "Park", "cargo": "Steel"},
        coordinate_override=override,
        today=TODAY,
    )
    driver = document.placed("driver_name")
    assert (driver.x, driver.y, driver.font_size) == (53, 56, 8)
    cargo = document.placed("cargo")
    assert (cargo.x, cargo.y) == (353, 590)


def test_render_error_is_reported_when_degrading(template_pdf):
    class BrokenPlacer(TextPlacer):
        def place(self, c, text, coordinate, style, field_name=""):
            if field_name == "location":
                raise RenderError("boom")
            return super().place(c, text, coordinate, style, field_name)

    notifier = CollectingNotifier()
    assembler = DocumentAssembler(placer=BrokenPlacer(FontProvider()), notifier=notifier)
    document = assembler.assemble(
        template_pdf, "report", {"location": "X", "cargo": "Sand"}, today=TODAY
    )
    assert document.placed("location") is None
    assert document.placed("cargo") is not None
    assert notifier.messages == [("warning", "boom")]


def test_debug_grid_still_produces_pdf(assembler, template_pdf):
    document = assembler.assemble(template_pdf, "report", {}, today=TODAY, debug=True, grid_step=50)
    assert document.placements == []
    assert document.to_bytes().startswith(b"%PDF")
    page_text = PdfReader(io.BytesIO(document.to_bytes())).pages[0].extract_text()
    assert "total_weight_measured" in page_text
    assert "800" in page_text


def test_suggested_filename(assembler, template_pdf):
    assert suggested_filename("진술서", date(2026, 3, 9)) == "진술서_20260309.pdf"
    document = assembler.assemble(template_pdf, "report", {}, today=TODAY)
    assert document.suggested_filename(TODAY) == "적발보고서_20260114.pdf"


def test_values_beyond_default_decimal_precision(assembler, template_pdf):
    form = {"axle1_measured": "1e30", "axle2_measured": "2", "width_measured": "123456789012345678901234567890"}
    document = assembler.assemble(template_pdf, "report", form, today=TODAY)
    assert document.placed("axle1_measured").text == "1" + "0" * 30 + ".00"
    assert document.placed("axle1_measured").bold
    assert document.total_measured > Decimal("1e29")
    assert document.placed("width_measured").text == "123456789012345678901234567890.00"


@pytest.mark.parametrize("witnesses", [[{"name": 5}], [{"office": ["HQ"]}], ["Lee"], "Lee"])
def test_malformed_witnesses_are_input_errors(assembler, template_pdf, witnesses):
    with pytest.raises(InputError, match="[Ww]itness"):
        assembler.assemble(template_pdf, "statement", {}, witnesses=witnesses, today=TODAY)


def test_witness_mappings_are_accepted(assembler, template_pdf):
    document = assembler.assemble(
        template_pdf, "statement", {}, witnesses=[{"office": "HQ", "name": "Lee"}], today=TODAY
    )
    assert document.placed("witness1_name").text == "Lee"
    assert document.placed("witness1_position") is None


def test_stored_override_checked_against_template_page(assembler, letter_pdf):
    stored = {
        "analyzed_at": "2026-01-14T09:00:00+00:00",
        "report": {
            "cargo": {"x": 600, "y": 100, "size": 9},
            "driver_name": {"x": 100, "y": 800, "size": 9},
        },
    }
    document = assembler.assemble(
        letter_pdf,
        "report",
        {"cargo": "Steel", "driver_name": "Park"},
        coordinate_override=stored,
        today=TODAY,
    )
    cargo = document.placed("cargo")
    assert (cargo.x, cargo.y) == (600, 100)
    driver = document.placed("driver_name")
    assert (driver.x, driver.y) == (145, 680)


def test_parsed_override_off_page_is_dropped(assembler, letter_pdf):
    override = {DocumentType.REPORT: {"driver_name": FieldCoordinate(x=100, y=800, size=9)}}
    document = assembler.assemble(
        letter_pdf, "report", {"driver_name": "Park"}, coordinate_override=override, today=TODAY
    )
    assert document.placed("driver_name").y == 680
