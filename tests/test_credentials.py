import pytest

from stagekit.engine.nodes import CredentialBinding, StageSpec
from stagerun.foundation.errors import CredentialResolutionError
from stagerun.framework.credentials import (
    CredentialBroker,
    EnvironmentCredentialStore,
    FileCredentialStore,
    MappingCredentialStore,
    Redactor,
    RunRedactor,
    build_credential_store,
)


def _stage(policy="fail", *bindings):
    return StageSpec(name="Deploy", credentials=bindings, on_missing_credential=policy)


def test_scope_binds_and_destroys_secrets():
    broker = CredentialBroker(
        MappingCredentialStore(
            {"token": "abc123", "registry": {"username": "bot", "password": "hunter2"}}
        )
    )
    stage = _stage(
        "fail",
        CredentialBinding("token", variable="API_TOKEN"),
        CredentialBinding(
            "registry",
            kind="username_password",
            username_variable="REG_USER",
            password_variable="REG_PASS",
        ),
    )

    with broker.scope(stage, stage_path="pipeline/Deploy") as scope:
        assert scope.environment() == {
            "API_TOKEN": "abc123",
            "REG_USER": "bot",
            "REG_PASS": "hunter2",
        }
        assert broker.live_secrets == 2
        held = list(scope.secrets)

    assert broker.live_secrets == 0
    assert all(secret.destroyed for secret in held)
    assert scope.environment() == {}
    assert "hunter2" not in repr(held)


def test_scope_releases_secrets_when_body_raises():
    broker = CredentialBroker(MappingCredentialStore({"token": "abc123"}))
    stage = _stage("fail", CredentialBinding("token", variable="API_TOKEN"))

    with pytest.raises(RuntimeError):
        with broker.scope(stage, stage_path="pipeline/Deploy") as scope:
            raise RuntimeError("step crashed")

    assert broker.live_secrets == 0
    assert scope.secrets[0].destroyed


def test_fail_policy_raises_after_releasing_resolved_secrets():
    broker = CredentialBroker(MappingCredentialStore({"token": "abc123"}))
    stage = _stage(
        "fail",
        CredentialBinding("token", variable="API_TOKEN"),
        CredentialBinding("missing", variable="OTHER"),
    )

    with pytest.raises(CredentialResolutionError, match=r"Credential not found: missing") as excinfo:
        with broker.scope(stage, stage_path="pipeline/Deploy"):
            pass

    assert excinfo.value.reason == "missing-credential"
    assert broker.live_secrets == 0


def test_skip_and_placeholder_policies_record_missing_ids():
    broker = CredentialBroker(MappingCredentialStore(), placeholder_value="dummy")

    with broker.scope(_stage("skip", CredentialBinding("gone", variable="X")), stage_path="p/S") as scope:
        assert scope.missing == ["gone"]
        assert scope.environment() == {}

    with broker.scope(
        _stage("placeholder", CredentialBinding("gone", variable="X")), stage_path="p/S"
    ) as scope:
        assert scope.missing == ["gone"]
        assert scope.environment() == {"X": "dummy"}
        assert scope.used_placeholder
        assert scope.values() == ()


def test_kind_mismatch_is_a_resolution_error():
    broker = CredentialBroker(MappingCredentialStore({"token": "abc123"}))
    binding = CredentialBinding(
        "token", kind="username_password", username_variable="U", password_variable="P"
    )
    with pytest.raises(CredentialResolutionError, match=r"expected username/password"):
        broker.resolve(binding)


def test_environment_store_lookup():
    store = EnvironmentCredentialStore(
        prefix="CRED_",
        environ={"CRED_API_TOKEN": "t0k", "CRED_DOCKER_HUB_USR": "me", "CRED_DOCKER_HUB_PSW": "pw"},
    )

    assert store.lookup("api-token") == "t0k"
    assert store.lookup("docker.hub") == ("me", "pw")
    assert store.lookup("nope") is None


def test_file_store_reads_yaml(tmp_path):
    path = tmp_path / "creds.yaml"
    path.write_text("token: abc\nregistry:\n  username: bot\n  password: pw\n", encoding="utf-8")

    store = build_credential_store("file", env_prefix="X_", file_path=str(path))

    assert isinstance(store, FileCredentialStore)
    assert store.lookup("token") == "abc"
    assert store.lookup("registry") == ("bot", "pw")


def test_redactor_masks_longest_value_first():
    redactor = Redactor(("abc", "abcdef"))

    assert redactor.redact("key=abcdef other=abc") == "key=**** other=****"
    assert redactor.redact_bytes(b"abcdef") == (b"****", True)
    assert redactor.redact(None) is None
    assert Redactor().redact("plain") == "plain"
    assert redactor.extend(("zzz",)).contains_secret("zzz")


def test_run_redactor_accumulates_values_until_cleared():
    redactor = RunRedactor()
    assert not redactor.active

    assert redactor.extend(("short",)) is redactor
    redactor.add(("short-and-longer", ""))

    assert redactor.redact("a=short-and-longer b=short") == "a=**** b=****"
    assert redactor.redact_bytes(b"short") == (b"****", True)

    redactor.clear()
    assert not redactor.active
    assert redactor.redact("short") == "short"
