# models.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    create_engine,
    event,
    func,
    String,
    Integer,
    Float,
    Date,
    DateTime,
    ForeignKey,
    JSON,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    relationship,
    sessionmaker,
)

from totals import KIND_LABOUR_MATERIALS, KIND_LINE_ITEMS, apply_totals

INVOICE_STATUSES = ("draft", "sent", "paid", "overdue", "cancel")
INVOICE_KINDS = (KIND_LABOUR_MATERIALS, KIND_LINE_ITEMS)
JOB_TYPES = ("Day Work", "Contract", "Extra", "Overtime", "Other", "Emergency Call")
LABOUR_TYPES = ("FIRST HOUR", "ADDITIONAL HOUR", "SECOND LABOUR")

DEFAULT_FOOTER_NOTE = "THANK YOU FOR THE BUSINESS"


# -----------------------------
# SQLAlchemy base
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Tables
# -----------------------------
class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    company: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    tax_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    street: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    city: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    state: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    zip_code: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    country: Mapped[str] = mapped_column(String(120), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    invoices: Mapped[list["Invoice"]] = relationship(back_populates="client")

    @property
    def address(self) -> dict:
        return {
            "street": self.street or "",
            "city": self.city or "",
            "state": self.state or "",
            "zipCode": self.zip_code or "",
            "country": self.country or "",
        }


class Setting(Base):
    """
    Singleton: company letterhead, default terms and the signature image
    (stored as a data URI).
    """
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    address: Mapped[str] = mapped_column(String, nullable=False, default="")
    terms_and_conditions: Mapped[str] = mapped_column(String, nullable=False, default="")
    signature: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Human-friendly invoice number: INV-###### (immutable once assigned)
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default=KIND_LABOUR_MATERIALS)

    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft", index=True)

    # Job metadata
    job_location: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    job_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    job_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    job_finish: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    job_type: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    description_of_work: Mapped[str] = mapped_column(String, nullable=False, default="")
    work_ordered_by: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    footer_note: Mapped[str] = mapped_column(String(300), nullable=False, default=DEFAULT_FOOTER_NOTE)
    notes: Mapped[str] = mapped_column(String, nullable=False, default="")
    terms: Mapped[str] = mapped_column(String, nullable=False, default="")

    # Rates (percent, applied to the labour subtotal) and flat extras
    pst: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    gst: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    other_charges: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Derived; rewritten on every flush (see _recompute_invoice_totals)
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    pdf_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    client: Mapped["Client"] = relationship(back_populates="invoices")
    labour: Mapped[list["InvoiceLabour"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLabour.position",
    )
    materials: Mapped[list["InvoiceMaterial"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceMaterial.position",
    )
    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position",
    )


class InvoiceLabour(Base):
    __tablename__ = "invoice_labour"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    notes: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    hrs: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    invoice: Mapped["Invoice"] = relationship(back_populates="labour")


class InvoiceMaterial(Base):
    __tablename__ = "invoice_materials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    qty: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    material: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    invoice: Mapped["Invoice"] = relationship(back_populates="materials")


class InvoiceLineItem(Base):
    """Legacy generic line (per-line tax rate)."""
    __tablename__ = "invoice_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    invoice: Mapped["Invoice"] = relationship(back_populates="line_items")


LINE_ROW_TYPES = (InvoiceLabour, InvoiceMaterial, InvoiceLineItem)


# -----------------------------
# Totals are never trusted from input
# -----------------------------
@event.listens_for(Session, "before_flush")
def _recompute_invoice_totals(session, flush_context, instances):
    touched = {}
    removed = {obj for obj in session.deleted if isinstance(obj, LINE_ROW_TYPES)}
    for obj in list(session.new) + list(session.dirty) + list(removed):
        if isinstance(obj, Invoice):
            inv = obj
        elif isinstance(obj, LINE_ROW_TYPES):
            inv = obj.invoice
        else:
            continue
        if inv is not None and inv not in session.deleted:
            touched[id(inv)] = inv

    for inv in touched.values():
        apply_totals(inv, skip=removed)


# -----------------------------
# Engine / Session factory
# -----------------------------
def make_engine(db_url: str, echo: bool = False):
    """
    Create SQLAlchemy engine.
    Note: SQLite path must exist (instance/ folder). db_init / create_app create it.
    """
    return create_engine(db_url, echo=echo, future=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


# -----------------------------
# Settings singleton
# -----------------------------
def get_settings(session) -> Optional[Setting]:
    return session.execute(select(Setting).order_by(Setting.id.asc())).scalars().first()


def get_or_create_settings(session) -> Setting:
    settings = get_settings(session)
    if settings is None:
        settings = Setting()
        session.add(settings)
        session.flush()
    return settings


# -----------------------------
# Invoice number generator
# -----------------------------
def next_invoice_number(session, prefix: str = "INV-", seq_width: int = 6) -> str:
    """
    Returns the next invoice number like INV-000001, based on the number of
    invoices already stored. Skips forward if that number was already taken
    (e.g. after a delete lowered the count).
    """
    count = session.execute(select(func.count(Invoice.id))).scalar_one()
    seq = count + 1
    while True:
        candidate = f"{prefix}{seq:0{seq_width}d}"
        taken = session.execute(
            select(Invoice.id).where(Invoice.invoice_number == candidate)
        ).first()
        if taken is None:
            return candidate
        seq += 1
