import io

import pytest
from pypdf import PdfWriter

from config import Settings


def blank_pdf(pages: int = 2, width: float = 595, height: float = 842) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=width, height=height)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def template_pdf() -> bytes:
    return blank_pdf(pages=2)


@pytest.fixture
def single_page_pdf() -> bytes:
    return blank_pdf(pages=1)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        fonts_dir=tmp_path / "no-fonts",
        cors_origins=["http://testserver"],
    )


@pytest.fixture
def report_form() -> dict:
    return {
        "datetime": "2026-01-13T23:30",
        "location": "경부고속도로 서울TG",
        "checkpoint": "Seoul-1",
        "driver_name": "Hong Gildong",
        "plate_number": "12가3456",
        "phone_mobile": "010-1234-5678",
        "author_name": "Kim",
        "author_date": "2026-01-14",
        "axle1_measured": "10.5",
        "axle2_measured": "5.005",
    }


@pytest.fixture
def letter_pdf() -> bytes:
    return blank_pdf(pages=2, width=612, height=792)
