"""Reads stack configuration from ``pulumi.Config`` or a plain mapping."""

from __future__ import annotations

import json
import types
import typing
from typing import Any, Mapping, TypeVar

import pulumi
from pydantic import BaseModel, ValidationError

from ..core.values import Secret
from ..errors import ConfigMissingError, ConfigTypeMismatchError

ModelT = TypeVar("ModelT", bound=BaseModel)

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def is_secret_field(field) -> bool:
    extra = field.json_schema_extra
    return isinstance(extra, dict) and bool(extra.get("secret"))


def _is_structured(annotation) -> bool:
    """Whether a field holds an object/list rather than a scalar."""
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        return any(_is_structured(arg) for arg in typing.get_args(annotation) if arg is not type(None))
    if origin in (list, dict, tuple, set, frozenset):
        return True
    if annotation in (list, dict):
        return True
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _nested_model(annotation) -> type[BaseModel] | None:
    if typing.get_origin(annotation) in (typing.Union, types.UnionType):
        for arg in typing.get_args(annotation):
            model = _nested_model(arg)
            if model is not None:
                return model
        return None
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    return None


def seal_secret_fields(model: type[BaseModel], value: Any) -> Any:
    """Wrap the secret fields of a nested object in ``Secret``."""
    if not isinstance(value, Mapping):
        return value
    sealed = dict(value)
    for name, field in model.model_fields.items():
        for key in {field.alias or name, name}:
            if key not in sealed or sealed[key] is None:
                continue
            nested = _nested_model(field.annotation)
            if is_secret_field(field) and not isinstance(sealed[key], Secret):
                sealed[key] = Secret(sealed[key])
            elif nested is not None:
                sealed[key] = seal_secret_fields(nested, sealed[key])
    return sealed


class ConfigLoader:
    """Typed accessors over Pulumi stack config, or over a mapping in tests.

    Secrets come back wrapped in ``Secret`` so that the taint follows them
    into every resource input and output derived from them.
    """

    def __init__(self, source: pulumi.Config | Mapping[str, Any] | None = None):
        self._config = source if isinstance(source, pulumi.Config) else None
        self._values = dict(source or {}) if self._config is None else {}

    @classmethod
    def from_pulumi(cls, name: str | None = None) -> "ConfigLoader":
        return cls(pulumi.Config(name))

    def _raw(self, key: str) -> Any:
        if self._config is not None:
            return self._config.get(key)
        value = self._values.get(key)
        return value.inner if isinstance(value, Secret) else value

    def _lookup(self, key: str) -> Any:
        value = self._raw(key)
        return None if value == "" else value

    def get(self, key: str, default: Any = "") -> Any:
        """Value of ``key``, or ``default`` (an empty string) when it is unset."""
        value = self._lookup(key)
        return default if value is None else value

    def require(self, key: str) -> Any:
        value = self._lookup(key)
        if value is None:
            raise ConfigMissingError(key)
        return value

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        value = self._lookup(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigTypeMismatchError(f"Configuration key '{key}' is not a boolean: {value!r}")

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self._lookup(key)
        if value is None:
            return default
        if isinstance(value, bool):
            raise ConfigTypeMismatchError(f"Configuration key '{key}' is not an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigTypeMismatchError(
                f"Configuration key '{key}' is not an integer: {value!r}"
            ) from exc

    def get_secret(self, key: str) -> Secret | None:
        if self._config is not None:
            value = self._config.get_secret(key)
            return None if value is None else Secret(value)
        value = self._lookup(key)
        return None if value is None else Secret(value)

    def require_secret(self, key: str) -> Secret:
        value = self.get_secret(key)
        if value is None:
            raise ConfigMissingError(key)
        return value

    def get_object(self, key: str, shape: type | None = None) -> Any:
        value = self._lookup(key)
        if value is None:
            return None
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ConfigTypeMismatchError(
                    f"Configuration key '{key}' is not valid JSON"
                ) from exc
        if shape is not None:
            value = self._validate(key, shape, value)
        return value

    def require_object(self, key: str, shape: type | None = None) -> Any:
        value = self.get_object(key, shape)
        if value is None:
            raise ConfigMissingError(key)
        return value

    @staticmethod
    def _validate(key: str, shape: type, value: Any) -> Any:
        if issubclass(shape, BaseModel):
            try:
                return shape.model_validate(value)
            except ValidationError as exc:
                raise ConfigTypeMismatchError(f"Configuration key '{key}': {exc}") from exc
        if not isinstance(value, shape):
            raise ConfigTypeMismatchError(
                f"Configuration key '{key}' expected {shape.__name__}, got {type(value).__name__}"
            )
        return value

    def load(self, model: type[ModelT]) -> ModelT:
        """Build ``model`` from the configuration keys named by its aliases."""
        data: dict[str, Any] = {}
        for name, field in model.model_fields.items():
            key = field.alias or name
            if is_secret_field(field):
                value = self.get_secret(key)
            elif _is_structured(field.annotation):
                value = self.get_object(key)
                nested = _nested_model(field.annotation)
                if nested is not None:
                    value = seal_secret_fields(nested, value)
            else:
                value = self._lookup(key)
            if value is None:
                if field.is_required():
                    raise ConfigMissingError(key)
                continue
            data[key] = value
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise ConfigTypeMismatchError(f"Invalid {model.__name__} configuration: {exc}") from exc
