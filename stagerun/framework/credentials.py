"""Credential broker: resolves secret references into stage-scoped bindings.

A `SecretScope` is owned by one stage frame. Its values are injected only into
the environment of steps running inside that frame and are destroyed when the
frame exits, on every path.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

from stagekit.engine.nodes import CredentialBinding, StageSpec
from stagerun.foundation.config_io import load_yaml_mapping
from stagerun.foundation.errors import CredentialResolutionError

MASK = "****"


class CredentialStore(Protocol):
    def lookup(self, credential_id: str) -> str | tuple[str, str] | None:
        ...


class MappingCredentialStore:
    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values = dict(values or {})

    def lookup(self, credential_id: str) -> str | tuple[str, str] | None:
        value = self._values.get(credential_id)
        if isinstance(value, Mapping):
            return (str(value.get("username", "")), str(value.get("password", "")))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return (str(value[0]), str(value[1]))
        return None if value is None else str(value)


class EnvironmentCredentialStore:
    """Looks up `<prefix><ID>` (ids upper-cased, '-' and '.' as '_').

    Username/password pairs use `<prefix><ID>_USR` and `<prefix><ID>_PSW`.
    """

    def __init__(self, prefix: str = "STAGERUN_CRED_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def _key(self, credential_id: str) -> str:
        return self._prefix + credential_id.upper().replace("-", "_").replace(".", "_")

    def lookup(self, credential_id: str) -> str | tuple[str, str] | None:
        key = self._key(credential_id)
        if key in self._environ:
            return self._environ[key]
        user, password = self._environ.get(f"{key}_USR"), self._environ.get(f"{key}_PSW")
        if user is not None and password is not None:
            return (user, password)
        return None


class FileCredentialStore(MappingCredentialStore):
    def __init__(self, path: str) -> None:
        super().__init__(load_yaml_mapping(path))


class Redactor:
    """Masks every known secret value in text or bytes."""

    def __init__(self, values: tuple[str, ...] = ()) -> None:
        # longest first so a secret containing another is masked whole
        self._values = tuple(sorted({v for v in values if v}, key=len, reverse=True))

    @property
    def active(self) -> bool:
        return bool(self._values)

    def extend(self, values: tuple[str, ...]) -> "Redactor":
        return Redactor(self._values + tuple(values))

    def redact(self, text: str | None) -> str | None:
        if text is None or not self._values:
            return text
        for value in self._values:
            text = text.replace(value, MASK)
        return text

    def redact_bytes(self, data: bytes) -> tuple[bytes, bool]:
        changed = False
        for value in self._values:
            needle = value.encode("utf-8")
            if needle in data:
                data = data.replace(needle, MASK.encode("utf-8"))
                changed = True
        return data, changed

    def contains_secret(self, text: str) -> bool:
        return any(value in text for value in self._values)


class RunRedactor(Redactor):
    """Run-wide redactor that accumulates every value resolved during a run.

    Stages share one instance, so a secret written to the workspace by one
    stage is still masked when a later stage without that credential reads or
    archives it. Values live in memory only and are dropped by `clear()`.
    """

    def __init__(self, values: tuple[str, ...] = ()) -> None:
        super().__init__(values)
        self._lock = threading.Lock()

    def add(self, values: tuple[str, ...]) -> None:
        fresh = {v for v in values if v}
        if not fresh:
            return
        with self._lock:
            merged = set(self._values) | fresh
            self._values = tuple(sorted(merged, key=len, reverse=True))

    def extend(self, values: tuple[str, ...]) -> "Redactor":
        self.add(tuple(values))
        return self

    def clear(self) -> None:
        with self._lock:
            self._values = ()


@dataclass
class ScopedSecret:
    credential_id: str
    bindings: dict[str, str]
    placeholder: bool = False
    _destroyed: bool = field(default=False, repr=False)

    def __repr__(self) -> str:
        return f"ScopedSecret(credential_id={self.credential_id!r}, variables={sorted(self.bindings)})"

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def values(self) -> tuple[str, ...]:
        return tuple(self.bindings.values())

    def destroy(self) -> None:
        for key in list(self.bindings):
            self.bindings[key] = ""
        self.bindings.clear()
        self._destroyed = True


@dataclass
class SecretScope:
    secrets: list[ScopedSecret] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def environment(self) -> dict[str, str]:
        env: dict[str, str] = {}
        for secret in self.secrets:
            env.update(secret.bindings)
        return env

    def values(self) -> tuple[str, ...]:
        out: list[str] = []
        for secret in self.secrets:
            if not secret.placeholder:
                out.extend(secret.values())
        return tuple(out)

    @property
    def used_placeholder(self) -> bool:
        return any(secret.placeholder for secret in self.secrets)

    def destroy(self) -> None:
        for secret in self.secrets:
            secret.destroy()


class CredentialBroker:
    def __init__(
        self,
        store: CredentialStore | None = None,
        *,
        placeholder_value: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store or MappingCredentialStore()
        self._placeholder_value = placeholder_value
        self._logger = logger or logging.getLogger(__name__)
        self._live = 0
        self._lock = threading.Lock()

    @property
    def live_secrets(self) -> int:
        """Number of resolved secrets not yet destroyed."""
        return self._live

    def resolve(self, binding: CredentialBinding) -> ScopedSecret:
        value = self._store.lookup(binding.credential_id)
        if value is None or value == "":
            raise CredentialResolutionError(binding.credential_id)

        if binding.kind == "secret_text":
            if isinstance(value, tuple):
                raise CredentialResolutionError(
                    binding.credential_id,
                    f"Credential {binding.credential_id} is a username/password pair, expected secret text",
                )
            bindings = {str(binding.variable): value}
        else:
            if not isinstance(value, tuple):
                raise CredentialResolutionError(
                    binding.credential_id,
                    f"Credential {binding.credential_id} is secret text, expected username/password",
                )
            bindings = {
                str(binding.username_variable): value[0],
                str(binding.password_variable): value[1],
            }
        return ScopedSecret(credential_id=binding.credential_id, bindings=bindings)

    def placeholder(self, binding: CredentialBinding) -> ScopedSecret:
        return ScopedSecret(
            credential_id=binding.credential_id,
            bindings={name: self._placeholder_value for name in binding.variables()},
            placeholder=True,
        )

    @contextmanager
    def scope(self, stage: StageSpec, *, stage_path: str) -> Iterator[SecretScope]:
        """Resolve every binding of `stage` for the duration of the block.

        With `on_missing_credential` set to `fail`, a missing credential raises
        `CredentialResolutionError` after releasing whatever was already resolved.
        Otherwise missing ids are listed on the scope (and bound to the
        placeholder value under the `placeholder` policy).
        """

        scope = SecretScope()
        try:
            for binding in stage.credentials:
                try:
                    secret = self.resolve(binding)
                except CredentialResolutionError:
                    if stage.on_missing_credential == "fail":
                        raise
                    scope.missing.append(binding.credential_id)
                    self._logger.warning(
                        "Credential %s unavailable for %s (policy=%s)",
                        binding.credential_id,
                        stage_path,
                        stage.on_missing_credential,
                    )
                    if stage.on_missing_credential == "placeholder":
                        secret = self.placeholder(binding)
                    else:
                        continue
                scope.secrets.append(secret)
                with self._lock:
                    self._live += 1
            yield scope
        finally:
            released = len(scope.secrets)
            scope.destroy()
            with self._lock:
                self._live -= released
            if released:
                self._logger.debug("Released %d credential binding(s) for %s", released, stage_path)


def build_credential_store(source: str, *, env_prefix: str, file_path: str | None) -> CredentialStore:
    if source == "env":
        return EnvironmentCredentialStore(prefix=env_prefix)
    if source == "file":
        if not file_path:
            raise ValueError("credentials.file is required for the file credential source")
        return FileCredentialStore(file_path)
    return MappingCredentialStore()
