# totals.py
"""
Invoice totals.

Two rules exist, selected by the invoice kind:

- labour_materials (canonical): PST and GST are charged on the labour
  subtotal only. Materials are never taxed.
- line_items (legacy): each line carries its own tax rate.

Derived fields on an Invoice are always rebuilt from these functions before
the row is written; values sent by a caller are never kept.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

KIND_LABOUR_MATERIALS = "labour_materials"
KIND_LINE_ITEMS = "line_items"


@dataclass(frozen=True)
class Totals:
    subtotal: float = 0.0
    tax_total: float = 0.0
    total: float = 0.0

    # Breakdown used by the totals table on the PDF
    labour_subtotal: float = 0.0
    materials_subtotal: float = 0.0
    pst_amount: float = 0.0
    gst_amount: float = 0.0
    other_charges: float = 0.0


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


def _num(value: Any) -> float:
    # None / missing counts as zero; anything else is summed as given
    if value is None:
        return 0.0
    return float(value)


def _sum_amounts(entries: Optional[Iterable[Any]]) -> float:
    return sum((_num(_field(e, "amount")) for e in (entries or [])), 0.0)


def compute_totals(
    labour: Optional[Iterable[Any]] = None,
    materials: Optional[Iterable[Any]] = None,
    pst: Optional[float] = None,
    gst: Optional[float] = None,
    other_charges: Optional[float] = None,
) -> Totals:
    labour_subtotal = _sum_amounts(labour)
    materials_subtotal = _sum_amounts(materials)
    subtotal = labour_subtotal + materials_subtotal

    pst_amount = labour_subtotal * _num(pst) / 100
    gst_amount = labour_subtotal * _num(gst) / 100
    tax_total = pst_amount + gst_amount

    other = _num(other_charges)
    return Totals(
        subtotal=subtotal,
        tax_total=tax_total,
        total=subtotal + tax_total + other,
        labour_subtotal=labour_subtotal,
        materials_subtotal=materials_subtotal,
        pst_amount=pst_amount,
        gst_amount=gst_amount,
        other_charges=other,
    )


def line_item_amount(item: Any) -> float:
    return _num(_field(item, "quantity")) * _num(_field(item, "unit_price"))


def compute_line_item_totals(line_items: Optional[Iterable[Any]] = None) -> Totals:
    """Legacy rule: per-line tax rate, no other charges."""
    subtotal = 0.0
    tax_total = 0.0
    for item in line_items or []:
        amount = line_item_amount(item)
        subtotal += amount
        tax_total += amount * _num(_field(item, "tax_rate")) / 100
    return Totals(subtotal=subtotal, tax_total=tax_total, total=subtotal + tax_total)


def _rows(invoice: Any, name: str, skip) -> list:
    return [row for row in (getattr(invoice, name, None) or []) if row not in skip]


def invoice_totals(invoice: Any, skip=()) -> Totals:
    """`skip` holds rows that are still attached but about to be deleted."""
    kind = getattr(invoice, "kind", None) or KIND_LABOUR_MATERIALS
    if kind == KIND_LINE_ITEMS:
        return compute_line_item_totals(_rows(invoice, "line_items", skip))
    return compute_totals(
        _rows(invoice, "labour", skip),
        _rows(invoice, "materials", skip),
        getattr(invoice, "pst", None),
        getattr(invoice, "gst", None),
        getattr(invoice, "other_charges", None),
    )


def apply_totals(invoice: Any, skip=()) -> Totals:
    totals = invoice_totals(invoice, skip)
    invoice.subtotal = totals.subtotal
    invoice.tax_total = totals.tax_total
    invoice.total = totals.total
    return totals
