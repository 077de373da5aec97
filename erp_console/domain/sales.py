from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField

from erp_console.domain.forms import build_payload, coerce_int
from erp_console.domain.models import FieldValue

PAYMENT_METHOD_CHOICES: tuple[tuple[str, str], ...] = (
    ("avista_dinheiro", "Cash"),
    ("avista_pix", "PIX"),
    ("avista_cartao", "Card"),
    ("crediario", "Store credit (installments)"),
)
INSTALLMENT_PAYMENT_METHOD = "crediario"

SEARCH_MIN_CHARS = 2
SEARCH_LIMIT = 5

# Fields of the product being staged for the next item line.
SALE_STAGING_TEMPLATE: dict[str, FieldValue] = {
    "product_id": None,
    "product_name": "",
    "product_sku": "",
    "quantity": 1,
    "unit_price_cents": 0,
}

SALE_TEMPLATE: dict[str, Any] = {
    "customer_id": None,
    "customer_name": "",
    "items": [],
    "payment_method": "avista_dinheiro",
    "installments": 1,
    "notes": "",
    **SALE_STAGING_TEMPLATE,
}


class SaleItemError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SaleItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: int | str
    quantity: int = PydanticField(ge=1)
    unit_price_cents: int = PydanticField(ge=0)


class SalePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_id: int | str
    items: list[SaleItem] = PydanticField(min_length=1)
    payment_method: str
    notes: str = ""
    number_of_installments: int | None = None


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def sale_line(
    product_id: Any,
    name: str,
    sku: str,
    quantity: Any,
    unit_price_cents: Any,
) -> dict[str, Any]:
    quantity = coerce_int(quantity)
    unit_price_cents = coerce_int(unit_price_cents)
    total = quantity * unit_price_cents if _positive_int(quantity) and _non_negative_int(unit_price_cents) else 0
    return {
        "product_id": coerce_int(product_id),
        "name": name,
        "sku": sku,
        "quantity": quantity,
        "unit_price_cents": unit_price_cents,
        "total_price_cents": total,
    }


def add_sale_item(items: Sequence[Mapping[str, Any]], fields: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Append the staged product as a new line; a product appears at most once per sale."""
    product_id = fields.get("product_id")
    line = sale_line(
        product_id,
        str(fields.get("product_name") or ""),
        str(fields.get("product_sku") or ""),
        fields.get("quantity"),
        fields.get("unit_price_cents"),
    )
    if product_id in (None, "") or not _positive_int(line["quantity"]) or not _non_negative_int(line["unit_price_cents"]):
        raise SaleItemError("Select a product and enter a valid quantity and price.")
    if any(str(item.get("product_id")) == str(line["product_id"]) for item in items):
        raise SaleItemError("Product already added. Remove it to change the quantity.")
    return [*(dict(item) for item in items), line]


def remove_sale_item(items: Sequence[Mapping[str, Any]], product_id: Any) -> list[dict[str, Any]]:
    return [dict(item) for item in items if str(item.get("product_id")) != str(product_id)]


def sale_total_cents(items: Sequence[Mapping[str, Any]]) -> int:
    return sum(int(item.get("total_price_cents") or 0) for item in items)


def validate_sale(fields: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if fields.get("customer_id") in (None, ""):
        errors["customer_id"] = "Select a customer."
    items = fields.get("items")
    if not isinstance(items, list) or not items:
        errors["items"] = "Add at least one product."
    if fields.get("payment_method") == INSTALLMENT_PAYMENT_METHOD and not _positive_int(
        coerce_int(fields.get("installments"))
    ):
        errors["installments"] = "Enter a valid number of installments."
    return errors


def build_sale_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    payment_method = str(fields.get("payment_method") or "")
    installments = coerce_int(fields.get("installments"))
    return build_payload(
        SalePayload,
        {
            "customer_id": fields.get("customer_id"),
            "items": list(fields.get("items") or []),
            "payment_method": payment_method,
            "notes": str(fields.get("notes") or ""),
            "number_of_installments": installments if payment_method == INSTALLMENT_PAYMENT_METHOD else None,
        },
    )
