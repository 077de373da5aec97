from __future__ import annotations

import asyncio
from collections.abc import Mapping

import pytest

from erp_console.domain.models import FieldValue
from erp_console.services.form_service import INVALID_FORM_MESSAGE, FormController

TEMPLATE: dict[str, FieldValue] = {"name": "", "price_cents": 0}


def _validate(fields: Mapping[str, FieldValue]) -> dict[str, str]:
    errors: dict[str, str] = {}
    name = fields.get("name")
    if not isinstance(name, str) or len(name) < 3:
        errors["name"] = "name too short"
    price = fields.get("price_cents")
    if not isinstance(price, int) or price < 0:
        errors["price_cents"] = "price must be >= 0"
    return errors


class _Boom(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def test_change_field_sets_and_clears_field_error() -> None:
    form = FormController(TEMPLATE, validate=_validate)

    form.change_field("name", "Al")
    assert form.validation_errors == {"name": "name too short"}

    form.change_field("name", "Alice")
    assert form.validation_errors == {}
    assert form.fields == {"name": "Alice", "price_cents": 0}


def test_change_field_only_touches_the_changed_field() -> None:
    form = FormController(TEMPLATE, validate=_validate)

    form.change_field("price_cents", -5)
    assert form.validation_errors == {"price_cents": "price must be >= 0"}
    # "name" is still invalid but was not touched by this call
    assert "name" not in form.validation_errors


def test_settled_errors_match_validate_on_final_fields() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    changes: list[tuple[str, FieldValue]] = [
        ("name", "A"),
        ("price_cents", -1),
        ("name", "Alpha"),
        ("price_cents", 250),
        ("name", "Be"),
    ]
    for name, value in changes:
        form.change_field(name, value)

    assert form.validation_errors == _validate(form.fields)


def test_set_field_value_follows_change_field_contract() -> None:
    form = FormController(TEMPLATE, validate=_validate)

    form.set_field_value("price_cents", -10)
    assert form.validation_errors == {"price_cents": "price must be >= 0"}
    form.set_field_value("price_cents", 1999)
    assert form.validation_errors == {}
    assert form.fields["price_cents"] == 1999


def test_reset_form_is_idempotent_and_clears_errors() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "x")

    form.reset_form(TEMPLATE)
    first = (form.fields, form.validation_errors)
    form.reset_form(TEMPLATE)
    second = (form.fields, form.validation_errors)

    assert first == second == (TEMPLATE, {})


def test_reset_then_submit_yields_validate_of_data() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    data: dict[str, FieldValue] = {"name": "Jo", "price_cents": -3}
    calls: list[dict[str, FieldValue]] = []

    async def _persist(fields: dict[str, FieldValue]) -> None:
        calls.append(fields)

    form.reset_form(data)
    saved = asyncio.run(form.submit(_persist)())

    assert saved is False
    assert form.validation_errors == _validate(data)
    assert form.submit_error == INVALID_FORM_MESSAGE
    assert calls == []


def test_load_entity_merges_over_template_and_drops_unknown_keys() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    assert form.is_editing is False

    form.load_entity({"id": "p-1", "name": "Widget", "created_at": "2024-01-01"})

    assert form.fields == {"name": "Widget", "price_cents": 0}
    assert form.initial_fields == {"name": "Widget", "price_cents": 0}
    assert form.is_editing is True

    form.reset_form()
    assert form.is_editing is False
    assert form.fields == TEMPLATE


def test_entity_normalizer_runs_on_load() -> None:
    def _trim_date(fields: dict[str, FieldValue]) -> dict[str, FieldValue]:
        value = fields.get("birth_date")
        if isinstance(value, str):
            fields["birth_date"] = value.split("T")[0]
        return fields

    form = FormController(
        {"name": "", "birth_date": ""},
        entity={"name": "Ana", "birth_date": "1990-05-01T00:00:00.000Z"},
        normalize=_trim_date,
    )

    assert form.fields["birth_date"] == "1990-05-01"
    assert form.is_editing is True


def test_submit_success_scenario_tracks_submitting_flag() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "Al")
    assert "name" in form.validation_errors
    form.change_field("name", "Alice")
    assert form.validation_errors == {}

    observed: list[bool] = []
    calls: list[dict[str, FieldValue]] = []

    async def _persist_ok(fields: dict[str, FieldValue]) -> None:
        observed.append(form.is_submitting)
        calls.append(fields)
        await asyncio.sleep(0)
        observed.append(form.is_submitting)

    assert form.is_submitting is False
    saved = asyncio.run(form.submit(_persist_ok)())

    assert saved is True
    assert calls == [{"name": "Alice", "price_cents": 0}]
    assert observed == [True, True]
    assert form.is_submitting is False
    assert form.submit_error is None


def test_submit_failure_sets_error_reraises_and_resets_flag() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "Alice")
    observed: list[bool] = []

    async def _persist_fail(_fields: dict[str, FieldValue]) -> None:
        observed.append(form.is_submitting)
        raise _Boom("SKU already exists")

    with pytest.raises(_Boom):
        asyncio.run(form.submit(_persist_fail)())

    assert observed == [True]
    assert form.is_submitting is False
    assert form.submit_error == "SKU already exists"


def test_submit_failure_without_message_uses_str_then_fallback() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "Alice")

    async def _persist_plain(_fields: dict[str, FieldValue]) -> None:
        raise RuntimeError("connection reset")

    async def _persist_blank(_fields: dict[str, FieldValue]) -> None:
        raise RuntimeError()

    with pytest.raises(RuntimeError):
        asyncio.run(form.submit(_persist_plain)())
    assert form.submit_error == "connection reset"

    with pytest.raises(RuntimeError):
        asyncio.run(form.submit(_persist_blank)())
    assert form.submit_error == "Unable to process the request."


def test_new_submission_clears_previous_submit_error() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "Alice")

    async def _persist_fail(_fields: dict[str, FieldValue]) -> None:
        raise _Boom("backend down")

    seen_errors: list[str | None] = []

    async def _persist_ok(_fields: dict[str, FieldValue]) -> None:
        seen_errors.append(form.submit_error)

    with pytest.raises(_Boom):
        asyncio.run(form.submit(_persist_fail)())
    assert asyncio.run(form.submit(_persist_ok)()) is True
    assert seen_errors == [None]
    assert form.submit_error is None


def test_reentrant_submit_is_ignored_and_snapshot_is_stable() -> None:
    form = FormController(TEMPLATE, validate=_validate)
    form.change_field("name", "Alice")
    calls: list[dict[str, FieldValue]] = []

    async def _run() -> tuple[bool, bool]:
        release = asyncio.Event()

        async def _persist(fields: dict[str, FieldValue]) -> None:
            calls.append(fields)
            await release.wait()

        handler = form.submit(_persist)
        first = asyncio.create_task(handler())
        await asyncio.sleep(0)
        assert form.is_submitting is True

        form.change_field("name", "Changed while saving")
        second = await handler()
        release.set()
        return await first, second

    first_result, second_result = asyncio.run(_run())

    assert first_result is True
    assert second_result is False
    assert calls == [{"name": "Alice", "price_cents": 0}]
    assert form.fields["name"] == "Changed while saving"
    assert form.is_submitting is False
