from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
from app.schemas.events import TransactionEmailData

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

TRANSACTION_TYPE_LABELS = {
    "deposit": "Deposit",
    "withdraw": "Withdrawal",
    "mint": "Mint",
    "burn": "Burn",
}

TRANSACTION_STATUS_LABELS = {
    "pending": "Pending Approval",
    "confirmed": "Confirmed",
    "rejected": "Rejected",
}

_STATUS_STYLE = {
    "pending": ("PENDING", "#ff9800"),
    "confirmed": ("CONFIRMED", "#28a745"),
    "rejected": ("REJECTED", "#dc3545"),
}


def format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return str(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")


env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)
env.filters["format_timestamp"] = format_timestamp


def get_transaction_email_subject(transaction_type: str, status: str) -> str:
    type_label = TRANSACTION_TYPE_LABELS.get(transaction_type, transaction_type)
    status_label = TRANSACTION_STATUS_LABELS.get(status, status)
    return f"{type_label} Transaction {status_label}"


def _render_transaction_email(status: str, data: TransactionEmailData) -> str:
    status_label, status_color = _STATUS_STYLE[status]
    template = env.get_template(f"email/transaction_{status}.html")
    return template.render(
        data=data,
        status_label=status_label,
        status_color=status_color,
        year=datetime.now(timezone.utc).year,
    )


def generate_transaction_pending_email(data: TransactionEmailData) -> str:
    return _render_transaction_email("pending", data)


def generate_transaction_confirmed_email(data: TransactionEmailData) -> str:
    return _render_transaction_email("confirmed", data)


def generate_transaction_rejected_email(data: TransactionEmailData) -> str:
    return _render_transaction_email("rejected", data)


# template name stored on delivery records -> (lifecycle status, body generator)
TRANSACTION_TEMPLATES = {
    "transaction-pending": ("pending", generate_transaction_pending_email),
    "transaction-confirmed": ("confirmed", generate_transaction_confirmed_email),
    "transaction-rejected": ("rejected", generate_transaction_rejected_email),
}


def render_transaction_template(template_name: str, variables: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Rebuild subject and body of a stored transaction email, or None for other templates."""
    entry = TRANSACTION_TEMPLATES.get(template_name)
    if entry is None:
        return None
    status, generator = entry
    data = TransactionEmailData.model_validate(variables)
    return {
        "subject": get_transaction_email_subject(data.transaction_type, status),
        "html": generator(data),
    }


FALLBACK_TEMPLATES = ("transaction-confirmed", "transaction-pending", "transaction-rejected")


def render_fallback_email(template: str, data: Dict[str, Any]) -> str:
    """Plain snippets for ad-hoc requests on the generic email queue."""
    name = template if template in FALLBACK_TEMPLATES else "generic"
    snippet = env.get_template(f"email/fallback/{name}.html")
    return snippet.render(data=data or {})
