# mail_service.py
import logging
import smtplib
from email.message import EmailMessage

from config import Config
from pdf_service import pdf_filename

logger = logging.getLogger(__name__)


class MailError(RuntimeError):
    """The invoice email could not be handed to the SMTP server."""


def _cfg_value(cfg, key: str):
    if cfg is not None and key in cfg:
        return cfg[key]
    return getattr(Config, key)


def build_invoice_message(client, invoice, pdf_bytes: bytes, *, cfg=None) -> EmailMessage:
    to_email = (getattr(client, "email", None) or "").strip()
    if not to_email:
        raise MailError(f"Client has no email address for invoice {invoice.invoice_number}")

    company = _cfg_value(cfg, "MAIL_COMPANY_NAME")
    msg = EmailMessage()
    msg["From"] = _cfg_value(cfg, "SMTP_FROM") or _cfg_value(cfg, "SMTP_USER")
    msg["To"] = to_email
    msg["Subject"] = f"Invoice {invoice.invoice_number} from {company}"
    msg.set_content(
        f"Dear {client.name},\n\n"
        f"Please find attached invoice {invoice.invoice_number}.\n\n"
        f"Best regards,\n{company}"
    )
    msg.add_attachment(
        pdf_bytes,
        maintype="application",
        subtype="pdf",
        filename=pdf_filename(invoice.invoice_number),
    )
    return msg


def send_invoice_email(client, invoice, pdf_bytes: bytes, *, cfg=None) -> None:
    """
    Send one email with the invoice PDF attached. Failures are raised as
    MailError; there is no retry.
    """
    msg = build_invoice_message(client, invoice, pdf_bytes, cfg=cfg)

    host = _cfg_value(cfg, "SMTP_HOST")
    port = int(_cfg_value(cfg, "SMTP_PORT"))
    user = _cfg_value(cfg, "SMTP_USER")
    password = _cfg_value(cfg, "SMTP_PASS")

    try:
        with smtplib.SMTP(host, port, timeout=30) as smtp:
            if _cfg_value(cfg, "SMTP_USE_TLS"):
                smtp.starttls()
            if user and password:
                smtp.login(user, password)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Sending %s to %s failed: %r", invoice.invoice_number, msg["To"], exc)
        raise MailError(f"Could not send invoice {invoice.invoice_number}: {exc}") from exc

    logger.info("Sent %s to %s", invoice.invoice_number, msg["To"])
