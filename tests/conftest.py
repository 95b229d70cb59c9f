from __future__ import annotations

import io
from datetime import date, datetime
from pathlib import Path

import pytest
from PIL import Image

from models import Client, Invoice, InvoiceLabour, InvoiceMaterial, Setting


@pytest.fixture
def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 16), (20, 20, 20)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def client_record() -> Client:
    return Client(
        name="Jane Smith",
        email="jane@example.com",
        phone="604-555-0101",
        company="Smith Renovations",
        street="12 Main St",
        city="Vancouver",
        state="BC",
        zip_code="V5K 0A1",
        country="Canada",
    )


@pytest.fixture
def make_invoice():
    def _make(labour=None, materials=None, **kw) -> Invoice:
        fields = dict(
            invoice_number="INV-000001",
            issue_date=date(2025, 3, 14),
            due_date=date(2025, 3, 28),
            status="draft",
            job_location="12 Main St",
            job_date=date(2025, 3, 13),
            job_start=datetime(2025, 3, 13, 8, 0),
            job_finish=datetime(2025, 3, 13, 16, 30),
            job_type=["Contract"],
            description_of_work="Replace panel and run two new circuits.",
            work_ordered_by="J. Smith",
            pst=0.0,
            gst=0.0,
            other_charges=0.0,
            terms="",
        )
        fields.update(kw)
        inv = Invoice(**fields)
        for i, row in enumerate(labour or []):
            inv.labour.append(InvoiceLabour(position=i, **row))
        for i, row in enumerate(materials or []):
            inv.materials.append(InvoiceMaterial(position=i, **row))
        return inv

    return _make


@pytest.fixture
def settings_record() -> Setting:
    return Setting(
        company_name="Bright Spark Electric",
        address="400 Industrial Way, Burnaby BC, V5C 1A1",
        terms_and_conditions="",
        signature=None,
    )


@pytest.fixture
def missing_logo(tmp_path: Path) -> str:
    return str(tmp_path / "no-logo.png")
