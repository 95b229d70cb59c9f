from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from models import (
    Base,
    Client,
    Invoice,
    InvoiceLabour,
    InvoiceMaterial,
    get_or_create_settings,
    get_settings,
    make_engine,
    make_session_factory,
    next_invoice_number,
)


@pytest.fixture
def session(tmp_path: Path):
    engine = make_engine(f"sqlite:///{(tmp_path / 'models.db').as_posix()}")
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)
    with SessionLocal() as s:
        yield s
    engine.dispose()


def _new_invoice(s, client: Client, **kw) -> Invoice:
    inv = Invoice(
        invoice_number=next_invoice_number(s),
        client=client,
        issue_date=date(2025, 1, 10),
        due_date=date(2025, 1, 24),
        **kw,
    )
    s.add(inv)
    s.commit()
    return inv


def test_invoice_numbers_are_sequential(session) -> None:
    c = Client(name="A")
    session.add(c)
    session.commit()

    assert next_invoice_number(session) == "INV-000001"
    _new_invoice(session, c)
    assert next_invoice_number(session) == "INV-000002"
    assert next_invoice_number(session, prefix="WO-", seq_width=4) == "WO-0002"


def test_invoice_number_skips_taken_after_delete(session) -> None:
    c = Client(name="A")
    session.add(c)
    session.commit()
    first = _new_invoice(session, c)
    _new_invoice(session, c)

    session.delete(first)
    session.commit()

    # count is back to 1 but INV-000002 is still in use
    assert next_invoice_number(session) == "INV-000003"


def test_totals_recomputed_on_flush(session) -> None:
    c = Client(name="A")
    inv = Invoice(
        invoice_number="INV-000001",
        client=c,
        issue_date=date(2025, 1, 10),
        due_date=date(2025, 1, 24),
        pst=5,
        gst=7,
        other_charges=10,
        subtotal=999,
        tax_total=999,
        total=999,
    )
    inv.labour.append(InvoiceLabour(type="FIRST HOUR", hrs=1, rate=100, amount=100))
    inv.materials.append(InvoiceMaterial(qty=1, material="Wire", amount=500))
    session.add(inv)
    session.commit()

    session.refresh(inv)
    assert inv.subtotal == pytest.approx(600)
    assert inv.tax_total == pytest.approx(12)
    assert inv.total == pytest.approx(622)


def test_child_edit_recomputes_parent(session) -> None:
    c = Client(name="A")
    session.add(c)
    session.commit()
    inv = _new_invoice(session, c, pst=10)
    inv.labour.append(InvoiceLabour(type="FIRST HOUR", hrs=1, rate=50, amount=50))
    session.commit()
    assert inv.total == pytest.approx(55)

    inv.labour[0].amount = 80
    session.commit()

    session.refresh(inv)
    assert inv.subtotal == pytest.approx(80)
    assert inv.total == pytest.approx(88)


def test_settings_singleton(session) -> None:
    assert get_settings(session) is None

    first = get_or_create_settings(session)
    session.commit()
    second = get_or_create_settings(session)

    assert first.id == second.id
    assert get_settings(session).id == first.id


def test_client_address_shape() -> None:
    c = Client(name="A", street="1 Road", city="Victoria", state="BC", zip_code="V8V", country="Canada")

    assert c.address == {
        "street": "1 Road", "city": "Victoria", "state": "BC", "zipCode": "V8V", "country": "Canada",
    }


def test_deleting_line_row_recomputes_parent(session) -> None:
    c = Client(name="A")
    session.add(c)
    session.commit()
    inv = _new_invoice(session, c, gst=10)
    inv.labour.extend([
        InvoiceLabour(position=0, type="FIRST HOUR", hrs=1, rate=50, amount=50),
        InvoiceLabour(position=1, type="ADDITIONAL HOUR", hrs=1, rate=30, amount=30),
    ])
    inv.materials.append(InvoiceMaterial(position=0, qty=1, material="Breaker", amount=20))
    session.commit()
    assert inv.total == pytest.approx(108)

    session.delete(inv.labour[1])
    session.commit()
    session.refresh(inv)

    assert [row.amount for row in inv.labour] == [50]
    assert inv.subtotal == pytest.approx(70)
    assert inv.tax_total == pytest.approx(5)
    assert inv.total == pytest.approx(75)

    session.delete(inv.materials[0])
    session.commit()
    session.refresh(inv)

    assert inv.subtotal == pytest.approx(50)
    assert inv.total == pytest.approx(55)
