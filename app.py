# app.py
import io
import logging
import re
import zipfile
from datetime import date, datetime, timedelta
from pathlib import Path

from flask import Flask, jsonify, request, send_file, send_from_directory, abort
from sqlalchemy import or_, select
from sqlalchemy.orm import selectinload
from werkzeug.exceptions import HTTPException

import mail_service
import pdf_service
from config import Config
from models import (
    Base, make_engine, make_session_factory,
    Client, Invoice, InvoiceLabour, InvoiceMaterial, InvoiceLineItem,
    INVOICE_KINDS, INVOICE_STATUSES, JOB_TYPES, LABOUR_TYPES,
    get_or_create_settings, next_invoice_number,
)
from totals import KIND_LABOUR_MATERIALS

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# camelCase payload key -> Invoice column (free text)
INVOICE_TEXT_FIELDS = {
    "jobLocation": "job_location",
    "customerEmail": "customer_email",
    "customerNumber": "customer_number",
    "descriptionOfWork": "description_of_work",
    "workOrderedBy": "work_ordered_by",
    "footerNote": "footer_note",
    "notes": "notes",
    "terms": "terms",
}
INVOICE_RATE_FIELDS = {"pst": "pst", "gst": "gst", "otherCharges": "other_charges"}

CLIENT_TEXT_FIELDS = {"name": "name", "email": "email", "phone": "phone", "company": "company", "taxId": "tax_id"}
CLIENT_ADDRESS_FIELDS = {"street": "street", "city": "city", "state": "state", "zipCode": "zip_code", "country": "country"}


# -----------------------------
# Helpers
# -----------------------------
def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def _looks_like_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))


def _iso(value):
    return value.isoformat() if value else None


def _parse_date(value) -> date:
    s = _text(value)
    if not s:
        raise ValueError("empty date")
    return date.fromisoformat(s[:10])


def _parse_datetime(value) -> datetime:
    s = _text(value)
    if not s:
        raise ValueError("empty datetime")
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return dt.replace(tzinfo=None)


def _number(value, field: str, errors: list, *, required=True, maximum=None):
    """Non-negative number or None; appends to errors on bad input."""
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            errors.append({"field": field, "message": f"{field} is required"})
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        errors.append({"field": field, "message": f"{field} must be a number"})
        return None
    if num < 0:
        errors.append({"field": field, "message": f"{field} must be positive"})
        return None
    if maximum is not None and num > maximum:
        errors.append({"field": field, "message": f"{field} cannot exceed {maximum:g}"})
        return None
    return num


def _error(message: str, status: int):
    return jsonify({"message": message}), status


def _json_body():
    """The request JSON as a dict; None when the body is JSON but not an object."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


def _bad_body():
    return jsonify({"errors": [{"field": "body", "message": "Request body must be a JSON object"}]}), 400


# -----------------------------
# Serialisation
# -----------------------------
def _client_json(c: Client) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "company": c.company,
        "taxId": c.tax_id,
        "address": c.address,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
    }


def _invoice_json(inv: Invoice, with_client: bool = True) -> dict:
    out = {
        "id": inv.id,
        "invoiceNumber": inv.invoice_number,
        "kind": inv.kind,
        "client": _client_json(inv.client) if (with_client and inv.client) else inv.client_id,
        "issueDate": _iso(inv.issue_date),
        "dueDate": _iso(inv.due_date),
        "status": inv.status,
        "jobDate": _iso(inv.job_date),
        "jobStart": _iso(inv.job_start),
        "jobFinish": _iso(inv.job_finish),
        "jobType": list(inv.job_type or []),
        "labour": [
            {"notes": l.notes, "type": l.type, "hrs": l.hrs, "rate": l.rate, "amount": l.amount}
            for l in inv.labour
        ],
        "materials": [
            {"qty": m.qty, "material": m.material, "amount": m.amount}
            for m in inv.materials
        ],
        "lineItems": [
            {"description": li.description, "quantity": li.quantity,
             "unitPrice": li.unit_price, "taxRate": li.tax_rate}
            for li in inv.line_items
        ],
        "subtotal": inv.subtotal,
        "taxTotal": inv.tax_total,
        "total": inv.total,
        "pdfUrl": inv.pdf_url,
        "createdAt": _iso(inv.created_at),
        "updatedAt": _iso(inv.updated_at),
    }
    for key, attr in INVOICE_TEXT_FIELDS.items():
        out[key] = getattr(inv, attr)
    for key, attr in INVOICE_RATE_FIELDS.items():
        out[key] = getattr(inv, attr)
    return out


# -----------------------------
# Boundary validation
# -----------------------------
def _validate_client(data: dict) -> list:
    errors = []
    if not _text(data.get("name")):
        errors.append({"field": "name", "message": "Name is required"})
    email = _text(data.get("email"))
    if email and not _looks_like_email(email):
        errors.append({"field": "email", "message": "Valid email is required"})
    return errors


def _validate_invoice(session, data: dict) -> tuple[list, dict]:
    """Returns (errors, cleaned values)."""
    errors = []
    clean = {}

    if "kind" in data:
        kind = _text(data.get("kind")) or KIND_LABOUR_MATERIALS
        if kind not in INVOICE_KINDS:
            errors.append({"field": "kind", "message": "Invalid invoice kind"})
        clean["kind"] = kind

    try:
        client_id = int(data.get("client"))
    except (TypeError, ValueError):
        client_id = None
    if client_id is None or session.get(Client, client_id) is None:
        errors.append({"field": "client", "message": "Valid client ID is required"})
    clean["client_id"] = client_id

    for key, attr in (("issueDate", "issue_date"), ("dueDate", "due_date"), ("jobDate", "job_date")):
        if key not in data:
            continue
        if data.get(key) in (None, ""):
            if attr == "job_date":
                clean[attr] = None
            continue
        try:
            clean[attr] = _parse_date(data[key])
        except ValueError:
            errors.append({"field": key, "message": f"Valid {key} is required"})

    for key, attr in (("jobStart", "job_start"), ("jobFinish", "job_finish")):
        if key not in data:
            continue
        if data.get(key) in (None, ""):
            clean[attr] = None
            continue
        try:
            clean[attr] = _parse_datetime(data[key])
        except ValueError:
            errors.append({"field": key, "message": f"Valid {key} is required"})

    if "status" in data:
        status = _text(data.get("status"))
        if status not in INVOICE_STATUSES:
            errors.append({"field": "status", "message": "Invalid status"})
        clean["status"] = status

    if "jobType" in data:
        job_type = data.get("jobType") or []
        if not isinstance(job_type, list) or any(t not in JOB_TYPES for t in job_type):
            errors.append({"field": "jobType", "message": "Invalid job type"})
        else:
            # keep vocabulary order, drop duplicates
            clean["job_type"] = [t for t in JOB_TYPES if t in job_type]

    for key, attr in INVOICE_RATE_FIELDS.items():
        if key in data:
            num = _number(data.get(key), key, errors, required=False)
            clean[attr] = num or 0.0

    if "labour" in data:
        labour = data.get("labour")
        if not isinstance(labour, list):
            errors.append({"field": "labour", "message": "Labour must be an array"})
        else:
            rows = []
            for i, row in enumerate(labour):
                if not isinstance(row, dict):
                    errors.append({"field": f"labour[{i}]", "message": "Entry must be an object"})
                    continue
                ltype = _text(row.get("type"))
                if ltype not in LABOUR_TYPES:
                    errors.append({"field": f"labour[{i}].type", "message": "Labour type is required"})
                rows.append(InvoiceLabour(
                    position=i,
                    notes=_text(row.get("notes")),
                    type=ltype,
                    hrs=_number(row.get("hrs"), f"labour[{i}].hrs", errors),
                    rate=_number(row.get("rate"), f"labour[{i}].rate", errors),
                    amount=_number(row.get("amount"), f"labour[{i}].amount", errors),
                ))
            clean["labour"] = rows

    if "materials" in data:
        materials = data.get("materials")
        if not isinstance(materials, list):
            errors.append({"field": "materials", "message": "Materials must be an array"})
        else:
            rows = []
            for i, row in enumerate(materials):
                if not isinstance(row, dict):
                    errors.append({"field": f"materials[{i}]", "message": "Entry must be an object"})
                    continue
                name = _text(row.get("material"))
                if not name:
                    errors.append({"field": f"materials[{i}].material", "message": "Material name is required"})
                rows.append(InvoiceMaterial(
                    position=i,
                    material=name,
                    qty=_number(row.get("qty"), f"materials[{i}].qty", errors),
                    amount=_number(row.get("amount"), f"materials[{i}].amount", errors),
                ))
            clean["materials"] = rows

    if "lineItems" in data:
        items = data.get("lineItems")
        if not isinstance(items, list):
            errors.append({"field": "lineItems", "message": "Line items must be an array"})
        else:
            rows = []
            for i, row in enumerate(items):
                if not isinstance(row, dict):
                    errors.append({"field": f"lineItems[{i}]", "message": "Entry must be an object"})
                    continue
                desc = _text(row.get("description"))
                if not desc:
                    errors.append({"field": f"lineItems[{i}].description", "message": "Description is required"})
                rows.append(InvoiceLineItem(
                    position=i,
                    description=desc,
                    quantity=_number(row.get("quantity"), f"lineItems[{i}].quantity", errors) or 0.0,
                    unit_price=_number(row.get("unitPrice"), f"lineItems[{i}].unitPrice", errors) or 0.0,
                    tax_rate=_number(row.get("taxRate"), f"lineItems[{i}].taxRate", errors,
                                     required=False, maximum=100) or 0.0,
                ))
            clean["line_items"] = rows

    for key, attr in INVOICE_TEXT_FIELDS.items():
        if key in data:
            clean[attr] = _text(data.get(key))

    return errors, clean


def _apply_invoice(inv: Invoice, clean: dict) -> None:
    # subtotal / taxTotal / total are never copied from input; the
    # before_flush hook in models.py rebuilds them.
    for attr in ("labour", "materials", "line_items"):
        if attr in clean:
            getattr(inv, attr).clear()
            getattr(inv, attr).extend(clean[attr])
    for attr, value in clean.items():
        if attr in ("labour", "materials", "line_items"):
            continue
        if attr == "footer_note" and not value:
            continue
        setattr(inv, attr, value)


# -----------------------------
# App factory
# -----------------------------
def create_app(test_config: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db_url = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_url.startswith("sqlite:///"):
        Path(db_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    Path(app.config["UPLOADS_DIR"]).mkdir(parents=True, exist_ok=True)

    engine = make_engine(db_url, echo=app.config.get("SQLALCHEMY_ECHO", False))
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    def db_session():
        return SessionLocal()

    def uploads_dir() -> str:
        return app.config["UPLOADS_DIR"]

    def logo_path() -> str:
        return app.config.get("LOGO_PATH") or ""

    def load_invoice(s, invoice_id: int) -> Invoice:
        inv = (
            s.query(Invoice)
            .options(
                selectinload(Invoice.client),
                selectinload(Invoice.labour),
                selectinload(Invoice.materials),
                selectinload(Invoice.line_items),
            )
            .filter(Invoice.id == invoice_id)
            .first()
        )
        if not inv:
            abort(404, description="Invoice not found")
        return inv

    # -----------------------------
    # Errors
    # -----------------------------
    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        body = {"status": "error", "message": "Something went wrong!"}
        if app.debug:
            body["error"] = str(exc)
        return jsonify(body), 500

    # -----------------------------
    # Clients
    # -----------------------------
    @app.route("/api/clients", methods=["GET"])
    def clients_list():
        with db_session() as s:
            rows = s.query(Client).order_by(Client.name.asc()).all()
            return jsonify([_client_json(c) for c in rows])

    @app.route("/api/clients/<int:client_id>", methods=["GET"])
    def client_get(client_id: int):
        with db_session() as s:
            c = s.get(Client, client_id)
            if not c:
                return _error("Client not found", 404)
            return jsonify(_client_json(c))

    def _apply_client(c: Client, data: dict) -> None:
        for key, attr in CLIENT_TEXT_FIELDS.items():
            if key in data:
                setattr(c, attr, _text(data.get(key)))
        address = data.get("address") or {}
        if isinstance(address, dict):
            for key, attr in CLIENT_ADDRESS_FIELDS.items():
                if key in address:
                    setattr(c, attr, _text(address.get(key)))

    @app.route("/api/clients", methods=["POST"])
    def client_create():
        data = _json_body()
        if data is None:
            return _bad_body()
        errors = _validate_client(data)
        if errors:
            return jsonify({"errors": errors}), 400
        with db_session() as s:
            c = Client(name="")
            _apply_client(c, data)
            s.add(c)
            s.commit()
            return jsonify(_client_json(c)), 201

    @app.route("/api/clients/<int:client_id>", methods=["PUT"])
    def client_update(client_id: int):
        data = _json_body()
        if data is None:
            return _bad_body()
        errors = _validate_client(data)
        if errors:
            return jsonify({"errors": errors}), 400
        with db_session() as s:
            c = s.get(Client, client_id)
            if not c:
                return _error("Client not found", 404)
            _apply_client(c, data)
            s.commit()
            return jsonify(_client_json(c))

    @app.route("/api/clients/<int:client_id>", methods=["DELETE"])
    def client_delete(client_id: int):
        with db_session() as s:
            c = s.get(Client, client_id)
            if not c:
                return _error("Client not found", 404)
            in_use = s.query(Invoice.id).filter(Invoice.client_id == client_id).first()
            if in_use:
                return _error("Client has invoices and cannot be deleted", 409)
            s.delete(c)
            s.commit()
        return jsonify({"message": "Client deleted successfully"})

    # -----------------------------
    # Invoices
    # -----------------------------
    @app.route("/api/invoices", methods=["GET"])
    def invoices_list():
        q = _text(request.args.get("q"))
        status = _text(request.args.get("status"))

        with db_session() as s:
            invoices_q = (
                s.query(Invoice)
                .join(Client, Invoice.client_id == Client.id)
                .options(
                    selectinload(Invoice.client),
                    selectinload(Invoice.labour),
                    selectinload(Invoice.materials),
                    selectinload(Invoice.line_items),
                )
                .order_by(Invoice.created_at.desc(), Invoice.id.desc())
            )
            if q:
                like = f"%{q}%"
                invoices_q = invoices_q.filter(or_(Invoice.invoice_number.ilike(like), Client.name.ilike(like)))
            if status in INVOICE_STATUSES:
                invoices_q = invoices_q.filter(Invoice.status == status)

            return jsonify([_invoice_json(inv) for inv in invoices_q.all()])

    @app.route("/api/invoices/<int:invoice_id>", methods=["GET"])
    def invoice_get(invoice_id: int):
        with db_session() as s:
            return jsonify(_invoice_json(load_invoice(s, invoice_id)))

    @app.route("/api/invoices", methods=["POST"])
    def invoice_create():
        data = _json_body()
        if data is None:
            return _bad_body()
        with db_session() as s:
            errors, clean = _validate_invoice(s, data)
            if errors:
                return jsonify({"errors": errors}), 400

            clean.setdefault("kind", KIND_LABOUR_MATERIALS)
            # Pre-fill dates the form leaves empty
            clean.setdefault("issue_date", date.today())
            clean.setdefault("due_date", clean["issue_date"] + timedelta(days=app.config["DEFAULT_DUE_DAYS"]))

            inv = Invoice(
                invoice_number=next_invoice_number(
                    s, app.config["INVOICE_PREFIX"], app.config["INVOICE_SEQ_WIDTH"]
                ),
            )
            _apply_invoice(inv, clean)
            s.add(inv)
            s.commit()
            logger.info("Created invoice %s", inv.invoice_number)
            return jsonify(_invoice_json(load_invoice(s, inv.id))), 201

    @app.route("/api/invoices/<int:invoice_id>", methods=["PUT"])
    def invoice_update(invoice_id: int):
        data = _json_body()
        if data is None:
            return _bad_body()
        with db_session() as s:
            inv = load_invoice(s, invoice_id)
            errors, clean = _validate_invoice(s, data)
            for key, attr in (("issueDate", "issue_date"), ("dueDate", "due_date")):
                if attr not in clean and not any(e["field"] == key for e in errors):
                    errors.append({"field": key, "message": f"Valid {key} is required"})
            if errors:
                return jsonify({"errors": errors}), 400

            _apply_invoice(inv, clean)
            s.commit()
            return jsonify(_invoice_json(load_invoice(s, invoice_id)))

    @app.route("/api/invoices/<int:invoice_id>", methods=["DELETE"])
    def invoice_delete(invoice_id: int):
        with db_session() as s:
            inv = load_invoice(s, invoice_id)
            invoice_number = inv.invoice_number
            had_pdf = bool(inv.pdf_url)
            s.delete(inv)
            s.commit()

        if had_pdf:
            pdf_service.delete_pdf(invoice_number, uploads_dir())
        return jsonify({"message": "Invoice deleted successfully"})

    @app.route("/api/invoices/<int:invoice_id>/status", methods=["PATCH"])
    def invoice_status(invoice_id: int):
        data = _json_body()
        if data is None:
            return _bad_body()
        status = _text(data.get("status"))
        if status not in INVOICE_STATUSES:
            return _error("Invalid status", 400)
        with db_session() as s:
            inv = load_invoice(s, invoice_id)
            inv.status = status
            s.commit()
            return jsonify(_invoice_json(load_invoice(s, invoice_id)))

    # -----------------------------
    # PDF + email
    # -----------------------------
    @app.route("/api/invoices/<int:invoice_id>/send", methods=["POST"])
    def invoice_send(invoice_id: int):
        with db_session() as s:
            inv = load_invoice(s, invoice_id)
            try:
                _path, data = pdf_service.generate_and_store_pdf(
                    s, invoice_id, uploads_dir=uploads_dir(), logo_path=logo_path()
                )
            except pdf_service.InvoiceRenderError as exc:
                return _error(str(exc), 422)

            try:
                mail_service.send_invoice_email(inv.client, inv, data, cfg=app.config)
            except mail_service.MailError as exc:
                s.rollback()
                return _error(str(exc), 502)

            inv.pdf_url = pdf_service.pdf_url(inv.invoice_number)
            inv.status = "sent"
            s.commit()
            return jsonify({"message": "Invoice sent successfully", "pdfUrl": inv.pdf_url})

    @app.route("/api/invoices/<int:invoice_id>/download", methods=["GET"])
    def invoice_download(invoice_id: int):
        with db_session() as s:
            inv = load_invoice(s, invoice_id)
            try:
                _path, data = pdf_service.generate_and_store_pdf(
                    s, invoice_id, uploads_dir=uploads_dir(), logo_path=logo_path()
                )
            except pdf_service.InvoiceRenderError as exc:
                return _error(str(exc), 422)

            if not inv.pdf_url:
                inv.pdf_url = pdf_service.pdf_url(inv.invoice_number)
                s.commit()

            return send_file(
                io.BytesIO(data),
                as_attachment=True,
                download_name=pdf_service.pdf_filename(inv.invoice_number),
                mimetype="application/pdf",
            )

    @app.route("/uploads/<path:filename>")
    def uploaded_pdf(filename: str):
        return send_from_directory(uploads_dir(), filename, mimetype="application/pdf")

    @app.route("/api/pdfs/download_all")
    def pdfs_download_all():
        with db_session() as s:
            numbers = s.execute(
                select(Invoice.invoice_number).where(Invoice.pdf_url.isnot(None))
            ).scalars().all()

        mem = io.BytesIO()
        with zipfile.ZipFile(mem, "w", zipfile.ZIP_DEFLATED) as z:
            for number in numbers:
                if pdf_service.pdf_exists(number, uploads_dir()):
                    z.write(pdf_service.pdf_path(number, uploads_dir()), arcname=pdf_service.pdf_filename(number))

        mem.seek(0)
        return send_file(mem, as_attachment=True, download_name="invoices_pdfs.zip", mimetype="application/zip")

    # -----------------------------
    # Settings (singleton)
    # -----------------------------
    def _settings_json(st) -> dict:
        return {
            "id": st.id,
            "companyName": st.company_name,
            "address": st.address,
            "termsAndConditions": st.terms_and_conditions,
            "signature": st.signature,
            "updatedAt": _iso(st.updated_at),
        }

    @app.route("/api/settings", methods=["GET"])
    def settings_get():
        with db_session() as s:
            st = get_or_create_settings(s)
            s.commit()
            return jsonify(_settings_json(st))

    @app.route("/api/settings", methods=["PUT"])
    def settings_update():
        data = _json_body()
        if data is None:
            return _bad_body()
        with db_session() as s:
            st = get_or_create_settings(s)
            st.company_name = _text(data.get("companyName"))
            st.address = _text(data.get("address"))
            st.terms_and_conditions = _text(data.get("termsAndConditions"))
            if "signature" in data:
                st.signature = data.get("signature") or None
            s.commit()
            return jsonify(_settings_json(st))

    # -----------------------------
    # Dashboard
    # -----------------------------
    @app.route("/api/dashboard")
    def dashboard():
        with db_session() as s:
            invoices = (
                s.query(Invoice)
                .options(selectinload(Invoice.client))
                .order_by(Invoice.created_at.desc(), Invoice.id.desc())
                .all()
            )
            client_count = s.query(Client).count()

            draft_amount = sum(inv.total for inv in invoices if inv.status == "draft")
            sent_amount = sum(inv.total for inv in invoices if inv.status in ("sent", "overdue"))
            paid_amount = sum(inv.total for inv in invoices if inv.status == "paid")

            return jsonify({
                "totalInvoices": len(invoices),
                "totalClients": client_count,
                "draftAmount": draft_amount,
                "sentAmount": sent_amount,
                "paidAmount": paid_amount,
                "totalAmount": draft_amount + sent_amount + paid_amount,
                "recentInvoices": [
                    {
                        "id": inv.id,
                        "invoiceNumber": inv.invoice_number,
                        "client": inv.client.name if inv.client else "",
                        "status": inv.status,
                        "total": inv.total,
                        "issueDate": _iso(inv.issue_date),
                    }
                    for inv in invoices[:5]
                ],
            })

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
