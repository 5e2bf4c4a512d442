"""Strict, consumed-key-enforcing namespace helper for definition documents."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable

_MISSING = object()


def _join_path(parent: str, key: str) -> str:
    if not parent:
        return key
    return f"{parent}.{key}"


def _check_range(
    value: float,
    *,
    path: str,
    min_value: float | None,
    max_value: float | None,
) -> None:
    if min_value is not None and value < min_value:
        raise ValueError(f"{path} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{path} must be <= {max_value} (got {value})")


@dataclass
class ConfigNamespace:
    """View over one mapping of a definition document.

    Every key read through the namespace is marked consumed; `assert_consumed`
    then rejects whatever the reader did not understand, so typos in a
    pipeline document fail loudly instead of being ignored.
    """

    data: Mapping[str, Any]
    path: str
    _consumed: set[str] = field(default_factory=set, init=False, repr=False)
    _children: dict[str, "ConfigNamespace"] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def empty(cls, *, path: str) -> "ConfigNamespace":
        return cls({}, path=path)

    def keys(self) -> tuple[str, ...]:
        return tuple(str(key) for key in self.data.keys())

    def has(self, key: str) -> bool:
        return key in self.data

    def consumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumed))

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(str(k) for k in self.data.keys() if k not in self._consumed))

    def assert_consumed(self) -> None:
        unknown = list(self.unconsumed_keys())
        if unknown:
            path = self.path or "<root>"
            consumed = ", ".join(self.consumed_keys()) or "<none>"
            raise ValueError(
                f"Unknown keys under {path}: {', '.join(unknown)} (consumed: {consumed})"
            )
        for child in self._children.values():
            child.assert_consumed()

    def _get_raw(self, key: str, *, default: Any) -> Any:
        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        normalized = key.strip()
        if normalized in self._children:
            raise ValueError(
                f"{_join_path(self.path, normalized)} already accessed as a nested namespace"
            )

        self._consumed.add(normalized)
        if normalized not in self.data:
            if default is _MISSING:
                raise ValueError(f"Missing required key: {_join_path(self.path, normalized)}")
            return default
        return self.data.get(normalized)

    def get_raw(self, key: str, *, default: Any = _MISSING) -> Any:
        return self._get_raw(key, default=default)

    def namespace(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | None | object = _MISSING,
    ) -> "ConfigNamespace":
        normalized = (key or "").strip()
        if not normalized:
            raise TypeError("ConfigNamespace key must be a non-empty string")
        if normalized in self._children:
            return self._children[normalized]

        child_path = _join_path(self.path, normalized)
        raw = self.data.get(normalized) if normalized in self.data else None
        self._consumed.add(normalized)

        if raw is None:
            if default is _MISSING:
                raise ValueError(f"Missing required mapping: {child_path}")
            if default is not None and not isinstance(default, Mapping):
                raise TypeError(f"default for {child_path} must be a mapping or None")
            raw = dict(default or {})

        if not isinstance(raw, Mapping):
            raise TypeError(f"{child_path} must be a mapping (type={type(raw).__name__})")

        child = ConfigNamespace(dict(raw), path=child_path)
        self._children[normalized] = child
        return child

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        if default is not _MISSING and not isinstance(default, bool):
            raise TypeError(f"{_join_path(self.path, key.strip())} default must be a boolean")

        value = self._get_raw(key, default=default)
        if not isinstance(value, bool):
            raise TypeError(
                f"{_join_path(self.path, key.strip())} must be a boolean (type={type(value).__name__})"
            )
        return value

    def get_int(
        self,
        key: str,
        *,
        default: int | object = _MISSING,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int:
        path = _join_path(self.path, key.strip())
        if default is not _MISSING and (isinstance(default, bool) or not isinstance(default, int)):
            raise TypeError(f"{path} default must be an int")

        raw = self._get_raw(key, default=default)
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise TypeError(f"{path} must be an int (type={type(raw).__name__})")
        _check_range(raw, path=path, min_value=min_value, max_value=max_value)
        return int(raw)

    def get_optional_number(
        self,
        key: str,
        *,
        default: float | None = None,
        min_value: float | None = None,
    ) -> float | None:
        """Parse an optional positive duration or quantity (int, float or null)."""

        path = _join_path(self.path, key.strip())
        raw = self._get_raw(key, default=default)
        if raw is None:
            return None
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise TypeError(f"{path} must be a number or null (type={type(raw).__name__})")
        value = float(raw)
        _check_range(value, path=path, min_value=min_value, max_value=None)
        return value

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
        choices: Iterable[str] | None = None,
    ) -> str | None:
        path = _join_path(self.path, key.strip())
        if default is not _MISSING and default is not None and not isinstance(default, str):
            raise TypeError(f"{path} default must be a string or None")

        raw = self._get_raw(key, default=default)
        if raw is None:
            return None
        if not isinstance(raw, str):
            raise TypeError(f"{path} must be a string (type={type(raw).__name__})")
        value = raw.strip()
        if not value and not allow_empty:
            raise ValueError(f"{path} cannot be empty")
        if choices is not None:
            choice_set = {str(item).strip() for item in choices if str(item).strip()}
            if value not in choice_set:
                allowed = ", ".join(sorted(choice_set)) or "<none>"
                raise ValueError(f"{path} must be one of: {allowed} (got {value!r})")
        return value

    def get_list_str(
        self,
        key: str,
        *,
        default: list[str] | tuple[str, ...] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        path = _join_path(self.path, key.strip())
        raw = self._get_raw(key, default=default)
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, (list, tuple)):
            raise TypeError(f"{path} must be a list[str] (type={type(raw).__name__})")

        items: list[str] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, str):
                raise TypeError(f"{path}[{idx}] must be a string (type={type(item).__name__})")
            trimmed = item.strip()
            if not trimmed:
                raise ValueError(f"{path}[{idx}] cannot be empty")
            items.append(trimmed)

        if not items and not allow_empty:
            raise ValueError(f"{path} cannot be empty")
        return items

    def get_list_mapping(
        self,
        key: str,
        *,
        default: list[Mapping[str, Any]] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[dict[str, Any]]:
        path = _join_path(self.path, key.strip())
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, (list, tuple)):
            raise TypeError(f"{path} must be a list of mappings (type={type(raw).__name__})")

        items: list[dict[str, Any]] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, Mapping):
                raise TypeError(f"{path}[{idx}] must be a mapping (type={type(item).__name__})")
            items.append(dict(item))

        if not items and not allow_empty:
            raise ValueError(f"{path} cannot be empty")
        return items

    def get_str_mapping(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | object = _MISSING,
    ) -> dict[str, str]:
        """Parse a flat name -> scalar mapping (environment blocks); values become strings."""

        path = _join_path(self.path, key.strip())
        raw = self._get_raw(key, default=default)
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise TypeError(f"{path} must be a mapping (type={type(raw).__name__})")

        out: dict[str, str] = {}
        for name, value in raw.items():
            if not isinstance(name, str) or not name.strip():
                raise TypeError(f"{path} keys must be non-empty strings")
            if isinstance(value, (Mapping, list, tuple)) or value is None:
                raise TypeError(f"{path}.{name} must be a scalar (type={type(value).__name__})")
            if isinstance(value, bool):
                value = "true" if value else "false"
            out[name.strip()] = str(value)
        return out
