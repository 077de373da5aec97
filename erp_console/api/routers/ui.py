from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.datastructures import FormData

from erp_console.api.deps import get_backend, get_session_gate
from erp_console.api.guards import HOME_PATH, LOGIN_PATH, login_location, require_role, require_session
from erp_console.domain.forms import (
    CUSTOMER_STATUS_CHOICES,
    CUSTOMER_TEMPLATE,
    DOCUMENT_TYPE_CHOICES,
    LOW_STOCK_THRESHOLD,
    PRODUCT_STATUS_CHOICES,
    PRODUCT_TEMPLATE,
    REGISTRATION_TEMPLATE,
    UNIT_OF_MEASURE_CHOICES,
    CustomerPayload,
    PayloadError,
    ProductPayload,
    build_payload,
    coerce_int,
    format_cents,
    format_cnpj,
    format_cpf,
    format_phone,
    normalize_customer,
    parse_currency_cents,
    validate_customer,
    validate_product,
    validate_registration,
)
from erp_console.domain.models import FieldValue, ListPage, ListQuery, RegisterRequest, SortOrder
from erp_console.domain.permissions import ROLE_ADMIN
from erp_console.domain.sales import (
    PAYMENT_METHOD_CHOICES,
    SALE_STAGING_TEMPLATE,
    SALE_TEMPLATE,
    SEARCH_LIMIT,
    SEARCH_MIN_CHARS,
    SaleItemError,
    add_sale_item,
    build_sale_payload,
    remove_sale_item,
    sale_line,
    sale_total_cents,
    validate_sale,
)
from erp_console.infra.audit import set_audit_context
from erp_console.infra.backend import BackendClient, BackendError, UnauthorizedError
from erp_console.services.address_service import AddressLookupError, lookup_zip_code
from erp_console.services.form_service import FormController, Normalizer, Validator
from erp_console.services.session_service import AuthError, SessionGate

logger = logging.getLogger(__name__)

router = APIRouter()
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[2] / "web" / "templates"))
templates.env.filters["cents"] = format_cents

CSRF_COOKIE_NAME = "erp_ui_csrf"
CSRF_MAX_AGE_SECONDS = 60 * 60 * 8

Gate = Annotated[SessionGate, Depends(get_session_gate)]
Backend = Annotated[BackendClient, Depends(get_backend)]
AuthedGate = Annotated[SessionGate, Depends(require_session)]
AdminGate = Annotated[SessionGate, Depends(require_role(ROLE_ADMIN))]


@dataclass(frozen=True)
class ConsoleNavItem:
    key: str
    label: str
    href: str
    required_role: str | None = None


NAV_ITEMS: tuple[ConsoleNavItem, ...] = (
    ConsoleNavItem(key="dashboard", label="Dashboard", href="/ui/dashboard"),
    ConsoleNavItem(key="products", label="Products", href="/ui/products"),
    ConsoleNavItem(key="customers", label="Customers", href="/ui/customers"),
    ConsoleNavItem(key="sales", label="New sale", href="/ui/sales/new"),
    ConsoleNavItem(key="admin", label="Admin", href="/ui/admin", required_role=ROLE_ADMIN),
)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    kind: str = "text"
    choices: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ResourceSpec:
    key: str
    label: str
    singular: str
    template: Mapping[str, FieldValue]
    validate: Validator
    payload_model: type[BaseModel]
    fields: tuple[FieldSpec, ...]
    columns: tuple[tuple[str, str], ...]
    coerce: Callable[[str, str, Mapping[str, str]], FieldValue]
    normalize: Normalizer | None = None
    default_sort: str = "name"
    extra_context: dict[str, Any] = field(default_factory=dict)


def _pairs(values: tuple[str, ...]) -> tuple[tuple[str, str], ...]:
    return tuple((item, item) for item in values)


def _coerce_product(name: str, raw: str, _form: Mapping[str, str]) -> FieldValue:
    if name in {"price_cents", "cost_price_cents"}:
        return parse_currency_cents(raw)
    if name == "stock_quantity":
        return coerce_int(raw)
    return raw.strip() if name in {"name", "sku"} else raw


def _coerce_customer(name: str, raw: str, form: Mapping[str, str]) -> FieldValue:
    if name == "phone":
        return format_phone(raw)
    if name == "document_number":
        return format_cnpj(raw) if form.get("document_type") == "PJ" else format_cpf(raw)
    if name == "email":
        return raw.strip()
    return raw


RESOURCES: dict[str, ResourceSpec] = {
    "products": ResourceSpec(
        key="products",
        label="Products",
        singular="product",
        template=PRODUCT_TEMPLATE,
        validate=validate_product,
        payload_model=ProductPayload,
        fields=(
            FieldSpec("name", "Name"),
            FieldSpec("sku", "SKU"),
            FieldSpec("category", "Category"),
            FieldSpec("unit_of_measure", "Unit of measure", "select", UNIT_OF_MEASURE_CHOICES),
            FieldSpec("status", "Status", "select", _pairs(PRODUCT_STATUS_CHOICES)),
            FieldSpec("cost_price_cents", "Cost price", "currency"),
            FieldSpec("price_cents", "Sale price", "currency"),
            FieldSpec("stock_quantity", "Stock", "number"),
            FieldSpec("description", "Description", "textarea"),
        ),
        columns=(("name", "Name"), ("sku", "SKU"), ("price_cents", "Price"), ("stock_quantity", "Stock")),
        coerce=_coerce_product,
        extra_context={"low_stock_threshold": LOW_STOCK_THRESHOLD},
    ),
    "customers": ResourceSpec(
        key="customers",
        label="Customers",
        singular="customer",
        template=CUSTOMER_TEMPLATE,
        validate=validate_customer,
        payload_model=CustomerPayload,
        fields=(
            FieldSpec("name", "Name"),
            FieldSpec("email", "Email", "email"),
            FieldSpec("phone", "Phone"),
            FieldSpec("document_type", "Document type", "select", _pairs(DOCUMENT_TYPE_CHOICES)),
            FieldSpec("document_number", "Document number"),
            FieldSpec("birth_date", "Birth date", "date"),
            FieldSpec("status", "Status", "select", _pairs(CUSTOMER_STATUS_CHOICES)),
            FieldSpec("address_zip_code", "Zip code", "zip"),
            FieldSpec("address_street", "Street"),
            FieldSpec("address_number", "Number"),
            FieldSpec("address_complement", "Complement"),
            FieldSpec("address_neighborhood", "Neighborhood"),
            FieldSpec("address_city", "City"),
            FieldSpec("address_state", "State"),
            FieldSpec("notes", "Notes", "textarea"),
        ),
        columns=(("name", "Name"), ("email", "Email"), ("phone", "Phone")),
        coerce=_coerce_customer,
        normalize=normalize_customer,
    ),
}


def get_resource(resource: str) -> ResourceSpec:
    spec = RESOURCES.get(resource)
    if spec is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="resource not found")
    return spec


Resource = Annotated[ResourceSpec, Depends(get_resource)]


def _new_csrf_token() -> str:
    return secrets.token_urlsafe(24)


def _set_csrf_cookie(response: Response, csrf_token: str) -> None:
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=csrf_token,
        httponly=False,
        samesite="strict",
        max_age=CSRF_MAX_AGE_SECONDS,
        path="/",
    )


def _verify_csrf(request: Request, csrf_token: str | None) -> None:
    csrf_cookie = request.cookies.get(CSRF_COOKIE_NAME)
    if not csrf_cookie or not csrf_token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid csrf token")
    if not secrets.compare_digest(csrf_cookie, csrf_token):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid csrf token")


def _sanitize_next_path(next_path: str | None) -> str:
    if not next_path:
        return HOME_PATH
    parsed = urlparse(next_path)
    if parsed.scheme or parsed.netloc or not parsed.path.startswith("/ui"):
        return HOME_PATH
    if parsed.path.startswith(LOGIN_PATH):
        return HOME_PATH
    return f"{parsed.path}?{parsed.query}" if parsed.query else parsed.path


def _render(
    request: Request,
    name: str,
    context: dict[str, Any],
    *,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    csrf_token = request.cookies.get(CSRF_COOKIE_NAME) or _new_csrf_token()
    response = templates.TemplateResponse(
        request=request,
        name=name,
        context={**context, "csrf_token": csrf_token},
        status_code=status_code,
    )
    if not request.cookies.get(CSRF_COOKIE_NAME):
        _set_csrf_cookie(response, csrf_token)
    return response


def _visible_nav_items(gate: SessionGate, active_key: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for item in NAV_ITEMS:
        if item.required_role is not None and not gate.has_role(item.required_role):
            continue
        rows.append({"key": item.key, "label": item.label, "href": item.href, "active": item.key == active_key})
    return rows


def _render_console(
    request: Request,
    gate: SessionGate,
    *,
    template_name: str,
    active_nav: str,
    title: str,
    status_code: int = status.HTTP_200_OK,
    **extra: Any,
) -> Response:
    context: dict[str, Any] = {
        "page_title": title,
        "profile": gate.profile,
        "nav_items": _visible_nav_items(gate, active_nav),
    }
    context.update(extra)
    return _render(request, template_name, context, status_code=status_code)


def _login_redirect(request: Request, return_to: str | None = None) -> RedirectResponse:
    return RedirectResponse(url=login_location(request, return_to), status_code=status.HTTP_303_SEE_OTHER)


def _session_expired(request: Request, gate: SessionGate, return_to: str | None = None) -> RedirectResponse:
    """Sign out after a 401. Write routes pass the page to come back to, since their own URL only accepts POST."""
    logger.info("backend rejected the session token; signing out")
    gate.logout()
    return _login_redirect(request, return_to)


def _render_login(
    request: Request,
    *,
    next_path: str,
    email: str = "",
    error_message: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    return _render(
        request,
        "login.html",
        {"next_path": next_path, "email": email, "error_message": error_message},
        status_code=status_code,
    )


def _render_register(
    request: Request,
    controller: FormController,
    *,
    message: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    return _render(
        request,
        "register.html",
        {"form": controller, "message": message},
        status_code=status_code,
    )


def _new_controller(spec: ResourceSpec) -> FormController:
    return FormController(spec.template, validate=spec.validate, normalize=spec.normalize)


async def _form_values(request: Request) -> dict[str, str]:
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _apply_form(controller: FormController, spec: ResourceSpec, form: Mapping[str, str]) -> None:
    for name in spec.template:
        if name in form:
            controller.set_field_value(name, spec.coerce(name, form[name], form))


def _render_panel(
    request: Request,
    gate: SessionGate,
    spec: ResourceSpec,
    controller: FormController,
    *,
    entity_id: str | None,
    panel_error: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    action = f"/ui/{spec.key}/{entity_id}" if entity_id else f"/ui/{spec.key}"
    verb = "Edit" if controller.is_editing else "New"
    return _render_console(
        request,
        gate,
        template_name="resource_panel.html",
        active_nav=spec.key,
        title=f"{verb} {spec.singular}",
        status_code=status_code,
        spec=spec,
        form=controller,
        form_action=action,
        entity_id=entity_id,
        panel_error=panel_error,
        **spec.extra_context,
    )


@router.get("/ui")
def ui_root(gate: Gate) -> RedirectResponse:
    target = HOME_PATH if gate.is_authenticated() else LOGIN_PATH
    return RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)


@router.get("/ui/login")
def ui_login(
    request: Request,
    gate: Gate,
    next_path: str | None = Query(default=None, alias="next"),
) -> Response:
    safe_next = _sanitize_next_path(next_path)
    if gate.is_authenticated():
        return RedirectResponse(url=safe_next, status_code=status.HTTP_303_SEE_OTHER)
    return _render_login(request, next_path=safe_next)


@router.post("/ui/login")
async def ui_login_submit(
    request: Request,
    gate: Gate,
    email: str = Form(...),
    password: str = Form(...),
    csrf_token: str = Form(...),
    next_path: str = Form(HOME_PATH, alias="next"),
) -> Response:
    safe_next = _sanitize_next_path(next_path)
    try:
        _verify_csrf(request, csrf_token)
    except HTTPException as exc:
        return _render_login(
            request,
            next_path=safe_next,
            email=email,
            error_message=str(exc.detail),
            status_code=exc.status_code,
        )

    set_audit_context(request, action="session.login", resource="session", detail={"email": email})
    try:
        await gate.login(email, password)
    except AuthError as exc:
        return _render_login(
            request,
            next_path=safe_next,
            email=email,
            error_message=exc.message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    response = RedirectResponse(url=safe_next, status_code=status.HTTP_303_SEE_OTHER)
    _set_csrf_cookie(response, _new_csrf_token())
    return response


@router.post("/ui/logout")
async def ui_logout(request: Request, gate: Gate, csrf_token: str = Form(...)) -> RedirectResponse:
    _verify_csrf(request, csrf_token)
    set_audit_context(request, action="session.logout", resource="session")
    gate.logout()
    response = RedirectResponse(url=LOGIN_PATH, status_code=status.HTTP_303_SEE_OTHER)
    _set_csrf_cookie(response, _new_csrf_token())
    return response


@router.get("/ui/register")
def ui_register(request: Request) -> Response:
    controller = FormController(REGISTRATION_TEMPLATE, validate=validate_registration)
    return _render_register(request, controller)


@router.post("/ui/register")
async def ui_register_submit(request: Request, backend: Backend) -> Response:
    form = await _form_values(request)
    _verify_csrf(request, form.get("csrf_token"))
    controller = FormController(REGISTRATION_TEMPLATE, validate=validate_registration)
    for name in REGISTRATION_TEMPLATE:
        if name in form:
            controller.set_field_value(name, form[name].strip() if name != "password" else form[name])

    outcome: dict[str, str] = {}

    async def _persist(fields: dict[str, FieldValue]) -> None:
        payload = RegisterRequest.model_validate(fields)
        outcome["message"] = await backend.register(payload)

    try:
        saved = await controller.submit(_persist)()
    except BackendError:
        return _render_register(request, controller, status_code=status.HTTP_400_BAD_REQUEST)
    if not saved:
        return _render_register(request, controller, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)
    return _render_register(
        request,
        FormController(REGISTRATION_TEMPLATE, validate=validate_registration),
        message=outcome.get("message"),
    )


@router.get("/ui/dashboard")
async def ui_dashboard(request: Request, gate: AuthedGate, backend: Backend) -> Response:
    query = ListQuery(limit=5)
    error_message: str | None = None
    page = ListPage(limit=query.limit)
    try:
        page = await backend.fetch_page("products", query, token=gate.token)
    except UnauthorizedError:
        return _session_expired(request, gate)
    except BackendError as exc:
        error_message = exc.message
    return _render_console(
        request,
        gate,
        template_name="dashboard.html",
        active_nav="dashboard",
        title="Dashboard",
        products=page.data,
        error_message=error_message,
        low_stock_threshold=LOW_STOCK_THRESHOLD,
    )


def _rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


@router.get("/ui/admin")
async def ui_admin(request: Request, gate: AdminGate, backend: Backend) -> Response:
    errors: list[str] = []
    tenants: list[dict[str, Any]] = []
    sessions: list[dict[str, Any]] = []
    try:
        tenants = _rows(await backend.get_json("/admin/tenants", token=gate.token))
    except UnauthorizedError:
        return _session_expired(request, gate)
    except BackendError as exc:
        errors.append(exc.message)
    try:
        sessions = _rows(await backend.get_json("/admin/sessions/active", token=gate.token))
    except UnauthorizedError:
        return _session_expired(request, gate)
    except BackendError as exc:
        errors.append(exc.message)
    return _render_console(
        request,
        gate,
        template_name="admin.html",
        active_nav="admin",
        title="Admin",
        tenants=tenants,
        sessions=sessions,
        errors=errors,
    )


def _form_str(form: FormData, name: str) -> str:
    value = form.get(name)
    return value if isinstance(value, str) else ""


def _optional_id(raw: str) -> FieldValue:
    stripped = raw.strip()
    return coerce_int(stripped) if stripped else None


def _picked(form: FormData, name: str) -> dict[str, Any]:
    try:
        picked = json.loads(_form_str(form, name))
    except ValueError:
        return {}
    return picked if isinstance(picked, dict) else {}


def _sale_items(form: FormData) -> list[dict[str, Any]]:
    columns = [
        [value if isinstance(value, str) else "" for value in form.getlist(name)]
        for name in ("item_product_id", "item_name", "item_sku", "item_quantity", "item_unit_price_cents")
    ]
    return [sale_line(*row) for row in zip(*columns)]


def _restore_sale_form(controller: FormController, form: FormData) -> None:
    # the sale panel is stateless between posts; every round trip carries the whole draft
    controller.reset_form(
        {
            **SALE_TEMPLATE,
            "customer_id": _optional_id(_form_str(form, "customer_id")),
            "customer_name": _form_str(form, "customer_name"),
            "items": _sale_items(form),
            "payment_method": _form_str(form, "payment_method") or SALE_TEMPLATE["payment_method"],
            "installments": coerce_int(_form_str(form, "installments") or "1"),
            "notes": _form_str(form, "notes"),
            "product_id": _optional_id(_form_str(form, "product_id")),
            "product_name": _form_str(form, "product_name"),
            "product_sku": _form_str(form, "product_sku"),
            "quantity": coerce_int(_form_str(form, "quantity") or "1"),
            "unit_price_cents": parse_currency_cents(_form_str(form, "unit_price")),
        }
    )


def _render_sale(
    request: Request,
    gate: SessionGate,
    controller: FormController,
    *,
    customers: list[dict[str, Any]] | None = None,
    products: list[dict[str, Any]] | None = None,
    customer_q: str = "",
    product_q: str = "",
    panel_error: str | None = None,
    message: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    items = controller.fields["items"]
    return _render_console(
        request,
        gate,
        template_name="sale_panel.html",
        active_nav="sales",
        title="New sale",
        status_code=status_code,
        form=controller,
        items=items,
        total_cents=sale_total_cents(items),
        customers=customers or [],
        products=products or [],
        customer_q=customer_q,
        product_q=product_q,
        payment_methods=PAYMENT_METHOD_CHOICES,
        panel_error=panel_error,
        message=message,
    )


async def _search(backend: BackendClient, gate: SessionGate, resource: str, term: str) -> list[dict[str, Any]]:
    if len(term) < SEARCH_MIN_CHARS:
        return []
    page = await backend.fetch_page(resource, ListQuery(q=term, limit=SEARCH_LIMIT), token=gate.token)
    return page.data


async def _save_sale(
    request: Request,
    gate: SessionGate,
    backend: BackendClient,
    controller: FormController,
) -> Response:
    outcome: dict[str, Any] = {}

    async def _persist(fields: dict[str, FieldValue]) -> None:
        body = await backend.create("sales", build_sale_payload(fields), token=gate.token)
        if isinstance(body, dict):
            outcome["order_id"] = body.get("orderId", body.get("id"))

    set_audit_context(request, action="sales.create", resource="sales")
    try:
        saved = await controller.submit(_persist)()
    except UnauthorizedError:
        return _session_expired(request, gate, "/ui/sales/new")
    except (BackendError, PayloadError):
        return _render_sale(request, gate, controller, status_code=status.HTTP_400_BAD_REQUEST)
    if not saved:
        return _render_sale(request, gate, controller, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)
    params = {"saved": "created"}
    if outcome.get("order_id") is not None:
        params["order"] = str(outcome["order_id"])
    return RedirectResponse(url=f"/ui/sales/new?{urlencode(params)}", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/ui/sales/new")
def ui_sale_new(
    request: Request,
    gate: AuthedGate,
    saved: str | None = Query(default=None),
    order: str | None = Query(default=None),
) -> Response:
    message: str | None = None
    if saved == "created":
        message = f"Sale {order} recorded." if order else "Sale recorded."
    return _render_sale(request, gate, FormController(SALE_TEMPLATE, validate=validate_sale), message=message)


@router.post("/ui/sales/new")
async def ui_sale_submit(request: Request, gate: AuthedGate, backend: Backend) -> Response:
    form = await request.form()
    _verify_csrf(request, _form_str(form, "csrf_token"))
    controller = FormController(SALE_TEMPLATE, validate=validate_sale)
    _restore_sale_form(controller, form)

    action = _form_str(form, "action")
    customer_q = _form_str(form, "customer_q").strip()
    product_q = _form_str(form, "product_q").strip()
    customers: list[dict[str, Any]] = []
    products: list[dict[str, Any]] = []
    panel_error: str | None = None
    try:
        if "pick_customer" in form:
            picked = _picked(form, "pick_customer")
            controller.set_field_values(
                {"customer_id": picked.get("id"), "customer_name": str(picked.get("name") or "")}
            )
            customer_q = ""
        elif "pick_product" in form:
            picked = _picked(form, "pick_product")
            controller.set_field_values(
                {
                    "product_id": picked.get("id"),
                    "product_name": str(picked.get("name") or ""),
                    "product_sku": str(picked.get("sku") or ""),
                    "quantity": 1,
                    "unit_price_cents": coerce_int(picked.get("price_cents") or 0),
                }
            )
            product_q = ""
        elif "remove_item" in form:
            items = remove_sale_item(controller.fields["items"], _form_str(form, "remove_item"))
            controller.set_field_value("items", items)
        elif action == "add_item":
            try:
                items = add_sale_item(controller.fields["items"], controller.fields)
            except SaleItemError as exc:
                panel_error = exc.message
            else:
                controller.set_field_values({"items": items, **SALE_STAGING_TEMPLATE})
        elif action == "search_customers":
            customers = await _search(backend, gate, "customers", customer_q)
        elif action == "search_products":
            products = await _search(backend, gate, "products", product_q)
        elif action == "save":
            return await _save_sale(request, gate, backend, controller)
    except UnauthorizedError:
        return _session_expired(request, gate, "/ui/sales/new")
    except BackendError as exc:
        panel_error = exc.message
    return _render_sale(
        request,
        gate,
        controller,
        customers=customers,
        products=products,
        customer_q=customer_q,
        product_q=product_q,
        panel_error=panel_error,
    )


@router.get("/ui/{resource}")
async def ui_resource_list(
    request: Request,
    spec: Resource,
    gate: AuthedGate,
    backend: Backend,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    q: str = Query(default=""),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    order: SortOrder = Query(default=SortOrder.ASC),
    saved: str | None = Query(default=None),
) -> Response:
    query = ListQuery(page=page, limit=limit, q=q.strip(), sort_by=sort_by or spec.default_sort, order=order)
    return await _render_list(request, gate, backend, spec, query, saved=saved)


async def _render_list(
    request: Request,
    gate: SessionGate,
    backend: BackendClient,
    spec: ResourceSpec,
    query: ListQuery,
    *,
    saved: str | None = None,
    error_message: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    result = ListPage(page=query.page, limit=query.limit)
    try:
        result = await backend.fetch_page(spec.key, query, token=gate.token)
    except UnauthorizedError:
        return _session_expired(request, gate)
    except BackendError as exc:
        error_message = error_message or exc.message
    success_message = f"{spec.singular.capitalize()} {saved}." if saved in {"created", "updated", "deleted"} else None
    return _render_console(
        request,
        gate,
        template_name="resource_list.html",
        active_nav=spec.key,
        title=spec.label,
        status_code=status_code,
        spec=spec,
        result=result,
        query=query,
        error_message=error_message,
        success_message=success_message,
        **spec.extra_context,
    )


@router.get("/ui/{resource}/new")
def ui_resource_new(request: Request, spec: Resource, gate: AuthedGate) -> Response:
    return _render_panel(request, gate, spec, _new_controller(spec), entity_id=None)


@router.get("/ui/{resource}/{entity_id}/edit")
async def ui_resource_edit(
    request: Request,
    spec: Resource,
    entity_id: str,
    gate: AuthedGate,
    backend: Backend,
) -> Response:
    try:
        entity = await backend.get(spec.key, entity_id, token=gate.token)
    except UnauthorizedError:
        return _session_expired(request, gate)
    except BackendError as exc:
        return await _render_list(
            request,
            gate,
            backend,
            spec,
            ListQuery(sort_by=spec.default_sort),
            error_message=exc.message,
            status_code=exc.status_code if exc.status_code == status.HTTP_404_NOT_FOUND else status.HTTP_502_BAD_GATEWAY,
        )
    controller = _new_controller(spec)
    controller.load_entity(entity)
    return _render_panel(request, gate, spec, controller, entity_id=entity_id)


async def _save(
    request: Request,
    gate: SessionGate,
    backend: BackendClient,
    spec: ResourceSpec,
    entity_id: str | None,
) -> Response:
    form = await _form_values(request)
    _verify_csrf(request, form.get("csrf_token"))
    controller = _new_controller(spec)
    if entity_id is not None:
        # the posted form carries the whole record, only edit mode is needed here
        controller.load_entity({})
    _apply_form(controller, spec, form)

    if form.get("action") == "lookup_zip":
        return await _lookup_address(request, gate, spec, controller, entity_id)

    async def _persist(fields: dict[str, FieldValue]) -> None:
        payload = build_payload(spec.payload_model, fields)
        if entity_id is not None:
            await backend.update(spec.key, entity_id, payload, token=gate.token)
        else:
            await backend.create(spec.key, payload, token=gate.token)

    set_audit_context(
        request,
        action=f"{spec.key}.{'update' if entity_id else 'create'}",
        resource=spec.key,
        detail={"entity_id": entity_id},
    )
    try:
        saved = await controller.submit(_persist)()
    except UnauthorizedError:
        return _session_expired(request, gate, f"/ui/{spec.key}")
    except (BackendError, PayloadError):
        return _render_panel(
            request,
            gate,
            spec,
            controller,
            entity_id=entity_id,
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    if not saved:
        return _render_panel(
            request,
            gate,
            spec,
            controller,
            entity_id=entity_id,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    outcome = "updated" if entity_id is not None else "created"
    return RedirectResponse(url=f"/ui/{spec.key}?saved={outcome}", status_code=status.HTTP_303_SEE_OTHER)


async def _lookup_address(
    request: Request,
    gate: SessionGate,
    spec: ResourceSpec,
    controller: FormController,
    entity_id: str | None,
) -> Response:
    panel_error: str | None = None
    zip_code = controller.fields.get("address_zip_code")
    try:
        address = await lookup_zip_code(str(zip_code or ""))
    except AddressLookupError as exc:
        address = None
        panel_error = str(exc)
    if address:
        controller.set_field_values(address)
    return _render_panel(request, gate, spec, controller, entity_id=entity_id, panel_error=panel_error)


@router.post("/ui/{resource}")
async def ui_resource_create(request: Request, spec: Resource, gate: AuthedGate, backend: Backend) -> Response:
    return await _save(request, gate, backend, spec, None)


@router.post("/ui/{resource}/{entity_id}")
async def ui_resource_update(
    request: Request,
    spec: Resource,
    entity_id: str,
    gate: AuthedGate,
    backend: Backend,
) -> Response:
    return await _save(request, gate, backend, spec, entity_id)


@router.post("/ui/{resource}/{entity_id}/delete")
async def ui_resource_delete(
    request: Request,
    spec: Resource,
    entity_id: str,
    gate: AuthedGate,
    backend: Backend,
    csrf_token: str = Form(...),
) -> Response:
    _verify_csrf(request, csrf_token)
    set_audit_context(request, action=f"{spec.key}.delete", resource=spec.key, detail={"entity_id": entity_id})
    try:
        await backend.delete(spec.key, entity_id, token=gate.token)
    except UnauthorizedError:
        return _session_expired(request, gate, f"/ui/{spec.key}")
    except BackendError as exc:
        return await _render_list(
            request,
            gate,
            backend,
            spec,
            ListQuery(sort_by=spec.default_sort),
            error_message=exc.message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    return RedirectResponse(url=f"/ui/{spec.key}?saved=deleted", status_code=status.HTTP_303_SEE_OTHER)
