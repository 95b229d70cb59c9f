# bulk_generate_pdfs.py
import argparse
from pathlib import Path

from sqlalchemy import select

from config import Config
from models import Base, make_engine, make_session_factory, Invoice, INVOICE_KINDS, INVOICE_STATUSES
from pdf_service import InvoiceRenderError, generate_and_store_pdf, pdf_exists, pdf_url


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Re-render stored work order / invoice PDFs.")
    parser.add_argument("--status", default="", help=f"Only invoices in this status ({', '.join(INVOICE_STATUSES)}).")
    parser.add_argument("--kind", default="", help=f"Only invoices of this kind ({', '.join(INVOICE_KINDS)}).")
    parser.add_argument("--invoice", action="append", default=[], metavar="NUMBER",
                        help="Only this invoice number (repeatable).")
    parser.add_argument("--all", action="store_true", help="Overwrite PDFs that are already on disk.")
    parser.add_argument("--uploads-dir", default=Config.UPLOADS_DIR)
    parser.add_argument("--logo", default=Config.LOGO_PATH)
    return parser.parse_args(argv)


def _select_invoices(args):
    status = args.status.strip().lower()
    if status and status not in INVOICE_STATUSES:
        raise SystemExit(f"--status must be one of: {', '.join(INVOICE_STATUSES)}")
    kind = args.kind.strip().lower()
    if kind and kind not in INVOICE_KINDS:
        raise SystemExit(f"--kind must be one of: {', '.join(INVOICE_KINDS)}")

    stmt = select(Invoice).order_by(Invoice.invoice_number.asc())
    if status:
        stmt = stmt.where(Invoice.status == status)
    if kind:
        stmt = stmt.where(Invoice.kind == kind)
    if args.invoice:
        stmt = stmt.where(Invoice.invoice_number.in_([n.strip() for n in args.invoice]))
    return stmt


def _render_one(s, inv, args) -> str:
    """Returns the written path. The stored pdfUrl is only filled in, never changed."""
    path, _data = generate_and_store_pdf(s, inv.id, uploads_dir=args.uploads_dir, logo_path=args.logo)
    if not inv.pdf_url:
        inv.pdf_url = pdf_url(inv.invoice_number)
    s.commit()
    return path


def main(argv=None):
    args = _parse_args(argv)
    stmt = _select_invoices(args)

    Path(args.uploads_dir).mkdir(parents=True, exist_ok=True)
    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    counts = {"DONE": 0, "SKIP": 0, "FAIL": 0}
    with SessionLocal() as s:
        invoices = s.execute(stmt).scalars().all()
        if not invoices:
            print("Nothing to render.")
            return

        n = len(invoices)
        for i, inv in enumerate(invoices, start=1):
            number = inv.invoice_number
            if pdf_exists(number, args.uploads_dir) and not args.all:
                counts["SKIP"] += 1
                print(f"[{i}/{n}] SKIP  {number} (PDF on disk, use --all to overwrite)")
                continue
            try:
                path = _render_one(s, inv, args)
            except (InvoiceRenderError, OSError) as e:
                s.rollback()
                counts["FAIL"] += 1
                print(f"[{i}/{n}] FAIL  {number}  ({e})")
                continue
            counts["DONE"] += 1
            print(f"[{i}/{n}] DONE  {number} -> {path}")

    print()
    print(f"Rendered {counts['DONE']}, skipped {counts['SKIP']}, failed {counts['FAIL']} (of {n}).")
    print(f"Uploads: {args.uploads_dir}")
    if counts["FAIL"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
