from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from erp_console.domain.models import FieldValue

logger = logging.getLogger(__name__)

Validator = Callable[[Mapping[str, FieldValue]], dict[str, str]]
Normalizer = Callable[[dict[str, FieldValue]], dict[str, FieldValue]]
Persist = Callable[[dict[str, FieldValue]], Awaitable[Any]]
SubmitHandler = Callable[[], Awaitable[bool]]

INVALID_FORM_MESSAGE = "Please fix the highlighted fields."
DEFAULT_SUBMIT_ERROR = "Unable to process the request."


def _no_errors(_fields: Mapping[str, FieldValue]) -> dict[str, str]:
    return {}


def error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or DEFAULT_SUBMIT_ERROR


class FormController:
    """State of one create/edit panel: field values, validation and submission.

    The controller never performs I/O. Persistence is delegated to the
    ``persist`` callback handed to :meth:`submit`, and validation to the
    ``validate`` function, which must always return a mapping of field name to
    message (an empty mapping meaning valid).
    """

    def __init__(
        self,
        template: Mapping[str, FieldValue],
        *,
        validate: Validator | None = None,
        entity: Mapping[str, Any] | None = None,
        normalize: Normalizer | None = None,
    ) -> None:
        self._template: dict[str, FieldValue] = dict(template)
        self._validate: Validator = validate or _no_errors
        self._normalize = normalize
        self._fields: dict[str, FieldValue] = dict(self._template)
        self._initial_fields: dict[str, FieldValue] = dict(self._template)
        self._validation_errors: dict[str, str] = {}
        self._submit_error: str | None = None
        self._is_submitting = False
        self._is_editing = False
        if entity is not None:
            self.load_entity(entity)

    @property
    def fields(self) -> dict[str, FieldValue]:
        return dict(self._fields)

    @property
    def initial_fields(self) -> dict[str, FieldValue]:
        return dict(self._initial_fields)

    @property
    def validation_errors(self) -> dict[str, str]:
        return dict(self._validation_errors)

    @property
    def submit_error(self) -> str | None:
        return self._submit_error

    @property
    def is_submitting(self) -> bool:
        return self._is_submitting

    @property
    def is_editing(self) -> bool:
        return self._is_editing

    @property
    def is_valid(self) -> bool:
        return not self._validate(self._fields)

    def change_field(self, name: str, value: FieldValue) -> None:
        self._fields = {**self._fields, name: value}
        errors = self._validate(self._fields)
        message = errors.get(name)
        if message:
            self._validation_errors = {**self._validation_errors, name: message}
        else:
            self._validation_errors = {
                key: item for key, item in self._validation_errors.items() if key != name
            }

    def set_field_value(self, name: str, value: FieldValue) -> None:
        self.change_field(name, value)

    def set_field_values(self, values: Mapping[str, FieldValue]) -> None:
        for name, value in values.items():
            self.set_field_value(name, value)

    def reset_form(self, data: Mapping[str, FieldValue] | None = None) -> None:
        source = self._template if data is None else data
        if data is None:
            self._is_editing = False
        self._fields = dict(source)
        self._initial_fields = dict(source)
        self._validation_errors = {}

    def load_entity(self, entity: Mapping[str, Any]) -> None:
        merged: dict[str, FieldValue] = dict(self._template)
        ignored: list[str] = []
        for key, value in entity.items():
            if key in self._template:
                merged[key] = value
            else:
                ignored.append(key)
        if ignored:
            logger.debug("form entity keys outside template ignored: %s", sorted(ignored))
        if self._normalize is not None:
            merged = self._normalize(merged)
        self.reset_form(merged)
        self._is_editing = True

    def submit(self, persist: Persist) -> SubmitHandler:
        async def _handler() -> bool:
            if self._is_submitting:
                logger.warning("form submit ignored: a submission is already in flight")
                return False

            errors = self._validate(self._fields)
            self._validation_errors = dict(errors)
            if errors:
                self._submit_error = INVALID_FORM_MESSAGE
                return False

            snapshot = dict(self._fields)
            self._is_submitting = True
            self._submit_error = None
            try:
                await persist(snapshot)
            except Exception as exc:
                self._submit_error = error_message(exc)
                raise
            finally:
                self._is_submitting = False
            return True

        return _handler
