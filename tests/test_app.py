from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from pypdf import PdfReader

import mail_service
from app import create_app


@pytest.fixture
def app(tmp_path: Path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{(tmp_path / 'app.db').as_posix()}",
        "UPLOADS_DIR": str(tmp_path / "uploads"),
        "LOGO_PATH": str(tmp_path / "missing-logo.png"),
    })
    return app


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def client_id(http) -> int:
    resp = http.post("/api/clients", json={
        "name": "Jane Smith",
        "email": "jane@example.com",
        "company": "Smith Renovations",
        "address": {"street": "12 Main St", "city": "Vancouver", "state": "BC", "zipCode": "V5K 0A1"},
    })
    assert resp.status_code == 201
    return resp.get_json()["id"]


def _invoice_payload(client_id: int, **kw) -> dict:
    payload = {
        "client": client_id,
        "issueDate": "2025-03-14",
        "dueDate": "2025-03-28",
        "jobType": ["Overtime", "Contract"],
        "jobStart": "2025-03-13T08:00:00Z",
        "labour": [{"notes": "Panel", "type": "FIRST HOUR", "hrs": 1, "rate": 100, "amount": 100}],
        "materials": [{"qty": 2, "material": "Wire", "amount": 500}],
        "pst": 5,
        "gst": 7,
        "otherCharges": 0,
    }
    payload.update(kw)
    return payload


@pytest.fixture
def invoice(http, client_id) -> dict:
    resp = http.post("/api/invoices", json=_invoice_payload(client_id))
    assert resp.status_code == 201
    return resp.get_json()


# -----------------------------
# Clients
# -----------------------------
def test_client_crud(http, client_id) -> None:
    got = http.get(f"/api/clients/{client_id}").get_json()
    assert got["address"]["city"] == "Vancouver"

    resp = http.put(f"/api/clients/{client_id}", json={"name": "Jane Doe", "address": {"country": "Canada"}})
    assert resp.status_code == 200
    assert resp.get_json()["name"] == "Jane Doe"
    assert resp.get_json()["address"]["country"] == "Canada"

    assert len(http.get("/api/clients").get_json()) == 1


def test_client_requires_name(http) -> None:
    resp = http.post("/api/clients", json={"email": "x@example.com"})

    assert resp.status_code == 400
    assert resp.get_json()["errors"][0]["field"] == "name"


def test_client_with_invoices_cannot_be_deleted(http, client_id, invoice) -> None:
    assert http.delete(f"/api/clients/{client_id}").status_code == 409


# -----------------------------
# Invoices
# -----------------------------
def test_create_invoice_computes_totals(http, client_id) -> None:
    payload = _invoice_payload(client_id, subtotal=1, taxTotal=1, total=1)

    resp = http.post("/api/invoices", json=payload)

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["invoiceNumber"] == "INV-000001"
    assert body["status"] == "draft"
    assert body["subtotal"] == pytest.approx(600)
    assert body["taxTotal"] == pytest.approx(12)
    assert body["total"] == pytest.approx(612)
    assert body["jobType"] == ["Contract", "Overtime"]
    assert body["client"]["name"] == "Jane Smith"
    assert body["footerNote"] == "THANK YOU FOR THE BUSINESS"


def test_create_invoice_prefills_dates(app, http, client_id) -> None:
    resp = http.post("/api/invoices", json={"client": client_id, "labour": [], "materials": []})

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["issueDate"] and body["dueDate"]
    assert body["total"] == 0


def test_second_invoice_number(http, client_id, invoice) -> None:
    resp = http.post("/api/invoices", json=_invoice_payload(client_id))

    assert resp.get_json()["invoiceNumber"] == "INV-000002"


@pytest.mark.parametrize("override,field", [
    ({"client": 9999}, "client"),
    ({"issueDate": "not-a-date"}, "issueDate"),
    ({"labour": [{"type": "FIRST HOUR", "hrs": 1, "rate": 1, "amount": -5}]}, "labour[0].amount"),
    ({"labour": [{"type": "NIGHT SHIFT", "hrs": 1, "rate": 1, "amount": 1}]}, "labour[0].type"),
    ({"materials": [{"qty": 1, "material": "", "amount": 1}]}, "materials[0].material"),
    ({"jobType": ["Weekend"]}, "jobType"),
    ({"pst": -1}, "pst"),
])
def test_invoice_validation(http, client_id, override, field) -> None:
    resp = http.post("/api/invoices", json=_invoice_payload(client_id, **override))

    assert resp.status_code == 400
    assert field in [e["field"] for e in resp.get_json()["errors"]]


@pytest.mark.parametrize("method,path", [
    ("post", "/api/clients"),
    ("post", "/api/invoices"),
    ("put", "/api/settings"),
])
def test_non_object_body_is_rejected(http, method, path) -> None:
    resp = getattr(http, method)(path, json=[{"name": "Jane"}])

    assert resp.status_code == 400
    assert resp.get_json()["errors"][0]["field"] == "body"


def test_non_object_body_on_existing_invoice(http, invoice) -> None:
    assert http.put(f"/api/invoices/{invoice['id']}", json=["x"]).status_code == 400
    assert http.patch(f"/api/invoices/{invoice['id']}/status", json="paid").status_code == 400


def test_non_object_line_entry_is_rejected(http, client_id) -> None:
    resp = http.post("/api/invoices", json=_invoice_payload(client_id, labour=[42]))

    assert resp.status_code == 400
    assert "labour[0]" in [e["field"] for e in resp.get_json()["errors"]]


def test_update_invoice_recomputes(http, client_id, invoice) -> None:
    payload = _invoice_payload(client_id, pst=0, gst=0, otherCharges=25, total=0)

    resp = http.put(f"/api/invoices/{invoice['id']}", json=payload)

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["taxTotal"] == 0
    assert body["total"] == pytest.approx(625)
    assert body["invoiceNumber"] == invoice["invoiceNumber"]


def test_legacy_line_item_invoice(http, client_id) -> None:
    resp = http.post("/api/invoices", json={
        "client": client_id,
        "kind": "line_items",
        "issueDate": "2024-01-02",
        "dueDate": "2024-01-16",
        "lineItems": [{"description": "Consulting", "quantity": 2, "unitPrice": 50, "taxRate": 10}],
    })

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["kind"] == "line_items"
    assert body["total"] == pytest.approx(110)

    pdf = http.get(f"/api/invoices/{body['id']}/download")
    assert pdf.status_code == 200
    assert "Consulting" in (PdfReader(io.BytesIO(pdf.data)).pages[0].extract_text() or "")


def test_status_any_to_any(http, invoice) -> None:
    for status in ("paid", "draft", "cancel", "overdue", "sent"):
        resp = http.patch(f"/api/invoices/{invoice['id']}/status", json={"status": status})
        assert resp.status_code == 200
        assert resp.get_json()["status"] == status

    assert http.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "lost"}).status_code == 400


def test_list_filters(http, client_id, invoice) -> None:
    http.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "paid"})
    http.post("/api/invoices", json=_invoice_payload(client_id))

    assert len(http.get("/api/invoices").get_json()) == 2
    assert len(http.get("/api/invoices?status=paid").get_json()) == 1
    assert len(http.get("/api/invoices?q=Jane").get_json()) == 2
    assert len(http.get("/api/invoices?q=INV-000002").get_json()) == 1


def test_missing_invoice_is_404(http) -> None:
    resp = http.get("/api/invoices/12345")

    assert resp.status_code == 404
    assert resp.get_json()["message"] == "Invoice not found"


# -----------------------------
# PDF download / send
# -----------------------------
def test_download_renders_and_stores(app, http, invoice) -> None:
    resp = http.get(f"/api/invoices/{invoice['id']}/download")

    assert resp.status_code == 200
    assert resp.mimetype == "application/pdf"
    assert "invoice-INV-000001.pdf" in resp.headers["Content-Disposition"]
    assert resp.data.startswith(b"%PDF")
    assert (Path(app.config["UPLOADS_DIR"]) / "invoice-INV-000001.pdf").exists()

    body = http.get(f"/api/invoices/{invoice['id']}").get_json()
    assert body["pdfUrl"] == "/uploads/invoice-INV-000001.pdf"
    assert body["status"] == "draft"

    served = http.get(body["pdfUrl"])
    assert served.status_code == 200
    assert served.data.startswith(b"%PDF")


def test_send_marks_sent(http, invoice, monkeypatch) -> None:
    sent = []

    def fake_send(client, inv, pdf_bytes, *, cfg=None):
        sent.append((client.email, inv.invoice_number, pdf_bytes[:4]))

    monkeypatch.setattr(mail_service, "send_invoice_email", fake_send)

    resp = http.post(f"/api/invoices/{invoice['id']}/send")

    assert resp.status_code == 200
    assert resp.get_json()["pdfUrl"] == "/uploads/invoice-INV-000001.pdf"
    assert sent == [("jane@example.com", "INV-000001", b"%PDF")]
    assert http.get(f"/api/invoices/{invoice['id']}").get_json()["status"] == "sent"


def test_send_failure_leaves_invoice_untouched(http, invoice, monkeypatch) -> None:
    def failing_send(client, inv, pdf_bytes, *, cfg=None):
        raise mail_service.MailError("SMTP down")

    monkeypatch.setattr(mail_service, "send_invoice_email", failing_send)

    resp = http.post(f"/api/invoices/{invoice['id']}/send")

    assert resp.status_code == 502
    body = http.get(f"/api/invoices/{invoice['id']}").get_json()
    assert body["status"] == "draft"
    assert body["pdfUrl"] is None


def test_delete_removes_pdf(app, http, invoice) -> None:
    http.get(f"/api/invoices/{invoice['id']}/download")
    stored = Path(app.config["UPLOADS_DIR"]) / "invoice-INV-000001.pdf"
    assert stored.exists()

    resp = http.delete(f"/api/invoices/{invoice['id']}")

    assert resp.status_code == 200
    assert not stored.exists()
    assert http.get(f"/api/invoices/{invoice['id']}").status_code == 404


def test_download_all_zip(http, invoice) -> None:
    http.get(f"/api/invoices/{invoice['id']}/download")

    resp = http.get("/api/pdfs/download_all")

    with zipfile.ZipFile(io.BytesIO(resp.data)) as z:
        assert z.namelist() == ["invoice-INV-000001.pdf"]


# -----------------------------
# Settings / dashboard
# -----------------------------
def test_settings_roundtrip_keeps_signature(http) -> None:
    assert http.get("/api/settings").get_json()["companyName"] == ""

    http.put("/api/settings", json={"companyName": "Bright Spark", "address": "1 Way, Burnaby",
                                    "termsAndConditions": "Net 14", "signature": "data:image/png;base64,AAAA"})
    resp = http.put("/api/settings", json={"companyName": "Bright Spark Electric", "address": "1 Way, Burnaby",
                                           "termsAndConditions": "Net 14"})

    body = resp.get_json()
    assert body["companyName"] == "Bright Spark Electric"
    assert body["signature"] == "data:image/png;base64,AAAA"


def test_settings_terms_reach_pdf(http, invoice) -> None:
    http.put("/api/settings", json={"companyName": "Bright Spark", "address": "",
                                    "termsAndConditions": "All work guaranteed for one year."})

    resp = http.get(f"/api/invoices/{invoice['id']}/download")

    reader = PdfReader(io.BytesIO(resp.data))
    assert len(reader.pages) == 2
    assert "All work guaranteed for one year." in (reader.pages[1].extract_text() or "")


def test_dashboard(http, client_id, invoice) -> None:
    http.patch(f"/api/invoices/{invoice['id']}/status", json={"status": "paid"})
    http.post("/api/invoices", json=_invoice_payload(client_id))

    body = http.get("/api/dashboard").get_json()

    assert body["totalInvoices"] == 2
    assert body["totalClients"] == 1
    assert body["paidAmount"] == pytest.approx(612)
    assert body["draftAmount"] == pytest.approx(612)
    assert body["totalAmount"] == pytest.approx(1224)
    assert len(body["recentInvoices"]) == 2
