from __future__ import annotations

import logging
import os

import httpx

from erp_console.domain.forms import digits_only

logger = logging.getLogger(__name__)

VIACEP_URL = os.getenv("VIACEP_URL", "https://viacep.com.br/ws")

_FIELD_MAP = {
    "logradouro": "address_street",
    "bairro": "address_neighborhood",
    "localidade": "address_city",
    "uf": "address_state",
}


class AddressLookupError(Exception):
    pass


async def lookup_zip_code(
    zip_code: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[str, str] | None:
    """Resolve a Brazilian CEP to customer address fields.

    Returns ``None`` when the code does not have 8 digits, so partial input is
    simply ignored.
    """
    digits = digits_only(zip_code)
    if len(digits) != 8:
        return None

    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        response = await http.get(f"{VIACEP_URL.rstrip('/')}/{digits}/json/")
        response.raise_for_status()
        body = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("zip code lookup failed for %s: %s", digits, exc)
        raise AddressLookupError("Unable to look up the zip code.") from exc
    finally:
        if owns_client:
            await http.aclose()

    if not isinstance(body, dict) or body.get("erro"):
        raise AddressLookupError("Zip code not found.")
    return {field: str(body.get(source) or "") for source, field in _FIELD_MAP.items()}
