from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from erp_console.domain.models import FieldValue

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 10

UNIT_OF_MEASURE_CHOICES: tuple[tuple[str, str], ...] = (
    ("un", "Unit (un)"),
    ("pc", "Piece (pc)"),
    ("cx", "Box (cx)"),
    ("kg", "Kilogram (kg)"),
    ("g", "Gram (g)"),
    ("l", "Liter (l)"),
    ("ml", "Milliliter (ml)"),
    ("m", "Meter (m)"),
    ("m2", "Square meter (m2)"),
)

PRODUCT_STATUS_CHOICES = ("active", "inactive")
CUSTOMER_STATUS_CHOICES = ("ativo", "inativo")
DOCUMENT_TYPE_CHOICES = ("PF", "PJ")

_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
_NON_DIGIT_RE = re.compile(r"\D")

INVALID_PAYLOAD_MESSAGE = "Some fields have invalid values. Review the form and try again."


class PayloadError(ValueError):
    def __init__(self, message: str = INVALID_PAYLOAD_MESSAGE) -> None:
        super().__init__(message)
        self.message = message


class ProductPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    sku: str = ""
    category: str = ""
    unit_of_measure: str = "un"
    price_cents: int = 0
    cost_price_cents: int = 0
    stock_quantity: int = 0
    status: str = "active"
    description: str = ""


class CustomerPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    email: str = ""
    phone: str = ""
    document_type: str = "PF"
    document_number: str = ""
    birth_date: str = ""
    status: str = "ativo"
    address_zip_code: str = ""
    address_street: str = ""
    address_number: str = ""
    address_complement: str = ""
    address_neighborhood: str = ""
    address_city: str = ""
    address_state: str = ""
    notes: str = ""


PRODUCT_TEMPLATE: dict[str, FieldValue] = ProductPayload().model_dump()
CUSTOMER_TEMPLATE: dict[str, FieldValue] = CustomerPayload().model_dump()
REGISTRATION_TEMPLATE: dict[str, FieldValue] = {
    "tenant_name": "",
    "email": "",
    "password": "",
}


def build_payload(model: type[BaseModel], fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate form fields against a payload model, hiding pydantic's report from the user."""
    try:
        return model.model_validate(dict(fields)).model_dump()
    except ValidationError as exc:
        logger.warning("payload rejected by %s: %s", model.__name__, exc.errors(include_url=False))
        raise PayloadError() from exc


def digits_only(value: str | None) -> str:
    return _NON_DIGIT_RE.sub("", value or "")


def coerce_int(value: FieldValue) -> FieldValue:
    """Turn numeric form input into an int; leave anything else for the validator to reject."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if re.fullmatch(r"-?\d+", stripped):
            return int(stripped)
    return value


def parse_currency_cents(raw: str | None) -> int:
    digits = digits_only(raw)
    return int(digits) if digits else 0


def format_cents(cents: int | None) -> str:
    if cents is None:
        return ""
    return f"{cents / 100:.2f}".replace(".", ",")


def format_phone(value: str = "") -> str:
    digits = digits_only(value)
    if len(digits) <= 10:
        area, prefix, line = digits[:2], digits[2:6], digits[6:10]
        if line:
            return f"({area}) {prefix}-{line}"
        if prefix:
            return f"({area}) {prefix}"
        return f"({area}" if area else ""
    return f"({digits[:2]}) {digits[2:7]}-{digits[7:11]}"


def format_cpf(value: str = "") -> str:
    digits = digits_only(value)[:11]
    if len(digits) < 9:
        return digits
    head = f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}"
    return f"{head}-{digits[9:]}" if digits[9:] else head


def format_cnpj(value: str = "") -> str:
    digits = digits_only(value)[:14]
    if len(digits) < 12:
        return digits
    head = f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}"
    return f"{head}-{digits[12:]}" if digits[12:] else head


def _is_non_negative_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, int) and value >= 0


def validate_product(fields: Mapping[str, FieldValue]) -> dict[str, str]:
    errors: dict[str, str] = {}
    name = fields.get("name")
    if not isinstance(name, str) or len(name.strip()) < 3:
        errors["name"] = "Name is required (at least 3 characters)."
    if not _is_non_negative_int(fields.get("price_cents")):
        errors["price_cents"] = "Sale price must be a non-negative whole number of cents."
    if not _is_non_negative_int(fields.get("cost_price_cents")):
        errors["cost_price_cents"] = "Cost price must be a non-negative whole number of cents."
    if not _is_non_negative_int(coerce_int(fields.get("stock_quantity"))):
        errors["stock_quantity"] = "Stock must be a non-negative whole number."
    if not fields.get("unit_of_measure"):
        errors["unit_of_measure"] = "Unit of measure is recommended."
    return errors


def validate_customer(fields: Mapping[str, FieldValue]) -> dict[str, str]:
    errors: dict[str, str] = {}
    name = fields.get("name")
    if not isinstance(name, str) or len(name.strip()) < 3:
        errors["name"] = "Name is required (at least 3 characters)."
    email = fields.get("email")
    if email and not (isinstance(email, str) and _EMAIL_RE.match(email)):
        errors["email"] = "Invalid email."
    document_number = fields.get("document_number")
    if document_number:
        digit_count = len(digits_only(str(document_number)))
        document_type = fields.get("document_type")
        if document_type == "PF" and digit_count != 11:
            errors["document_number"] = "Invalid CPF."
        elif document_type == "PJ" and digit_count != 14:
            errors["document_number"] = "Invalid CNPJ."
    return errors


def validate_registration(fields: Mapping[str, FieldValue]) -> dict[str, str]:
    errors: dict[str, str] = {}
    tenant_name = fields.get("tenant_name")
    if not isinstance(tenant_name, str) or not tenant_name.strip():
        errors["tenant_name"] = "Company name is required."
    email = fields.get("email")
    if not isinstance(email, str) or not _EMAIL_RE.match(email):
        errors["email"] = "A valid email is required."
    if not fields.get("password"):
        errors["password"] = "Password is required."
    return errors


def normalize_customer(fields: dict[str, FieldValue]) -> dict[str, FieldValue]:
    birth_date = fields.get("birth_date")
    if isinstance(birth_date, str) and birth_date:
        fields["birth_date"] = birth_date.split("T")[0]
    else:
        fields["birth_date"] = ""
    return fields
