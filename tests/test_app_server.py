import json
import time
from urllib.parse import quote

import jwt
import pytest
from fastapi.testclient import TestClient

import app_server
from config import get_settings
from errors import AnalysisError


@pytest.fixture
def client(settings):
    app_server.app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app_server.app) as test_client:
        yield test_client
    app_server.app.dependency_overrides.clear()


def upload(pdf: bytes) -> dict:
    return {"template": ("template.pdf", pdf, "application/pdf")}


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_fill_report_and_share(client, template_pdf, report_form):
    response = client.post(
        "/api/fill/report",
        files=upload(template_pdf),
        data={"form_json": json.dumps(report_form)},
    )
    assert response.status_code == 200, response.text
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")
    assert f"filename*=UTF-8''{quote('적발보고서_')}" in response.headers["content-disposition"]

    shared = client.get("/api/shared-report").json()
    assert shared["plate_number"] == "12가3456"
    assert shared["total_weight_measured"] == "15.51"
    assert "driver_name" not in shared

    assert client.delete("/api/shared-report").status_code == 200
    assert client.get("/api/shared-report").status_code == 404


def test_fill_rejects_invalid_form(client, template_pdf):
    response = client.post(
        "/api/fill/report",
        files=upload(template_pdf),
        data={"form_json": json.dumps({"location": "Seoul"})},
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert "driver_name" in detail["missing_fields"]
    assert detail["errors"]


def test_fill_without_validation(client, template_pdf):
    response = client.post(
        "/api/fill/report",
        files=upload(template_pdf),
        data={"form_json": "{}", "validate": "false"},
    )
    assert response.status_code == 200
    assert response.headers["x-dorofill-placed"] == "0"


def test_fill_statement_needs_second_page(client, single_page_pdf):
    response = client.post(
        "/api/fill/statement",
        files=upload(single_page_pdf),
        data={
            "form_json": json.dumps({"datetime": "2026-01-13T10:00", "location": "Gate"}),
            "witnesses_json": json.dumps([{"office": "HQ", "position": "Chief", "name": "Lee"}]),
        },
    )
    assert response.status_code == 400
    assert "out of range" in response.json()["detail"]


def test_fill_bad_inputs(client, template_pdf):
    assert client.post("/api/fill/invoice", files=upload(template_pdf)).status_code == 400
    response = client.post("/api/fill/report", files=upload(template_pdf), data={"form_json": "{oops"})
    assert response.status_code == 400
    response = client.post(
        "/api/fill/report",
        files=upload(b"not a pdf"),
        data={"validate": "false"},
    )
    assert response.status_code == 400


def test_calculate(client):
    response = client.post(
        "/api/calculate",
        json={
            "violation_count": 2,
            "overweight_kg": 2500,
            "actual_weight": 50,
            "allowed_weight": 40,
            "detection_date": "2026-01-13",
            "axle_weights": ["11.5", "20", "13.6", "-1"],
        },
    )
    body = response.json()
    assert body["fine"] == 700_000
    assert body["fine_display"] == "700,000원"
    assert body["overweight"] == 10
    assert body["overweight_percentage"] == "25.0%"
    assert body["due_date"] == "2026-02-12"
    assert body["total_weight"] == "45.10"
    assert body["axle_violations"] == [True, True, True, False]
    assert body["total_violates"] is True


def test_request_validation_shape(client):
    response = client.post("/api/calculate", json={"violation_count": 0})
    assert response.status_code == 422
    assert response.json()["message"] == "Request validation failed."


def test_validate_endpoint(client):
    response = client.post(
        "/api/validate/statement",
        json={"form": {"datetime": "2026-01-13T10:00", "location": "Gate"}, "witnesses": []},
    )
    body = response.json()
    assert body["valid"] is False
    assert body["missing_fields"] == ["witnesses"]


def test_coordinates_crud(client):
    assert client.get("/api/coordinates").status_code == 404

    response = client.put(
        "/api/coordinates",
        json={"report": {"driver_name": {"x": 100, "y": 700, "size": 12}, "bogus": {"x": 1, "y": 1}}},
    )
    assert response.status_code == 200
    assert response.json()["fields"] == {"report": 1}
    assert client.get("/api/coordinates").json()["report"] == {"driver_name": {"x": 100.0, "y": 700.0, "size": 12.0}}

    resolved = client.get("/api/coordinates/report").json()
    assert resolved["fields"]["driver_name"] == {"x": 100.0, "y": 700.0, "size": 12.0, "source": "override"}
    assert resolved["fields"]["cargo"]["source"] == "baseline"

    assert client.delete("/api/coordinates").status_code == 200
    assert client.delete("/api/coordinates").status_code == 404


def test_coordinates_reject_empty(client):
    assert client.put("/api/coordinates", json={"report": {"x": 1}}).status_code == 400


def test_autosave(client):
    assert client.get("/api/forms/report/autosave").status_code == 404
    assert client.put("/api/forms/report/autosave", json={"driver_name": "Hong"}).status_code == 200
    assert client.get("/api/forms/report/autosave").json() == {"driver_name": "Hong"}
    assert client.get("/api/forms/statement/autosave").status_code == 404
    assert client.delete("/api/forms/report/autosave").status_code == 200


def test_analyze_template_failure_keeps_coordinates(client, monkeypatch, template_pdf):
    def fail(pdf_bytes, settings, filename=""):
        raise AnalysisError("model unavailable")

    monkeypatch.setattr(app_server, "analyze_template", fail)
    response = client.post("/api/analyze-template", files=upload(template_pdf))
    assert response.status_code == 502
    assert "model unavailable" in response.json()["detail"]
    assert client.get("/api/coordinates").status_code == 404


def test_analyze_template_stores_result(client, monkeypatch, template_pdf):
    result = {
        "analyzed_at": "2026-01-14T09:00:00+00:00",
        "filename": "template.pdf",
        "report": {"cargo": {"x": 300.0, "y": 600.0, "size": 10.0}},
    }
    monkeypatch.setattr(app_server, "analyze_template", lambda pdf_bytes, settings, filename="": result)
    response = client.post("/api/analyze-template", files=upload(template_pdf))
    assert response.status_code == 200
    assert response.json()["fields"] == {"report": 1, "statement": 0}
    assert client.get("/api/coordinates").json() == result


def test_bearer_auth_when_secret_set(settings):
    secret = "a-test-secret-that-is-long-enough-for-hs256"
    secured = settings.model_copy(update={"jwt_secret": secret})
    app_server.app.dependency_overrides[get_settings] = lambda: secured
    try:
        with TestClient(app_server.app) as client:
            assert client.get("/api/health").status_code == 200
            assert client.post("/api/calculate", json={}).status_code == 401

            token = jwt.encode({"sub": "officer", "exp": int(time.time()) + 60}, secret, algorithm="HS256")
            response = client.post("/api/calculate", json={}, headers={"Authorization": f"Bearer {token}"})
            assert response.status_code == 200
            assert response.json()["fine"] == 300_000
    finally:
        app_server.app.dependency_overrides.clear()


def test_fill_rejects_malformed_witnesses(client, template_pdf):
    response = client.post(
        "/api/fill/statement",
        files=upload(template_pdf),
        data={"witnesses_json": json.dumps([{"name": 5}]), "validate": "false"},
    )
    assert response.status_code == 400
    assert "Witness 1" in response.json()["detail"]


def test_stored_coordinates_follow_template_page_size(client, letter_pdf):
    response = client.put(
        "/api/coordinates",
        json={"report": {"cargo": {"x": 600, "y": 100, "size": 9}, "driver_name": {"x": 100, "y": 800}}},
    )
    assert response.json()["fields"] == {"report": 2}

    response = client.post(
        "/api/fill/report",
        files=upload(letter_pdf),
        data={"form_json": json.dumps({"cargo": "Steel", "driver_name": "Park"}), "validate": "false"},
    )
    assert response.status_code == 200, response.text
    assert response.headers["x-dorofill-placed"] == "2"
