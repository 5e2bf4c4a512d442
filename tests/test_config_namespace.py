import pytest

from stagekit.config_namespace import ConfigNamespace


def test_assert_consumed_rejects_unread_keys():
    ns = ConfigNamespace({"name": "Build", "stpes": []}, path="pipeline/Build")
    assert ns.get_str("name") == "Build"

    with pytest.raises(ValueError, match=r"Unknown keys under pipeline/Build: stpes"):
        ns.assert_consumed()


def test_assert_consumed_recurses_into_nested_namespaces():
    ns = ConfigNamespace({"gate": {"message": "ok?", "aprovers": ["me"]}}, path="s")
    gate = ns.namespace("gate")
    assert gate.get_str("message") == "ok?"

    with pytest.raises(ValueError, match=r"Unknown keys under s\.gate: aprovers"):
        ns.assert_consumed()


def test_get_bool_is_strict():
    ns = ConfigNamespace({"flag": "true"}, path="x")
    with pytest.raises(TypeError, match=r"x\.flag must be a boolean"):
        ns.get_bool("flag")


def test_get_int_bounds_and_bool_rejection():
    ns = ConfigNamespace({"a": 0, "b": True}, path="x")
    with pytest.raises(ValueError, match=r"x\.a must be >= 1"):
        ns.get_int("a", min_value=1)
    with pytest.raises(TypeError, match=r"x\.b must be an int"):
        ns.get_int("b")


def test_get_str_choices_and_missing_key():
    ns = ConfigNamespace({"kind": "bogus"}, path="cred")
    with pytest.raises(ValueError, match=r"cred\.kind must be one of: secret_text, username_password"):
        ns.get_str("kind", choices=("secret_text", "username_password"))
    with pytest.raises(ValueError, match=r"Missing required key: cred\.id"):
        ns.get_str("id")


def test_get_str_mapping_stringifies_scalars():
    ns = ConfigNamespace({"env": {"DEBUG": True, "RETRIES": 3, "NAME": "x"}}, path="s")
    assert ns.get_str_mapping("env") == {"DEBUG": "true", "RETRIES": "3", "NAME": "x"}

    bad = ConfigNamespace({"env": {"NESTED": {"a": 1}}}, path="s")
    with pytest.raises(TypeError, match=r"s\.env\.NESTED must be a scalar"):
        bad.get_str_mapping("env")


def test_get_optional_number_accepts_null():
    ns = ConfigNamespace({"timeout": None, "other": 2}, path="s")
    assert ns.get_optional_number("timeout") is None
    assert ns.get_optional_number("other") == 2.0
    assert ns.get_optional_number("missing") is None


def test_get_list_str_accepts_single_string():
    ns = ConfigNamespace({"approvers": "alice"}, path="gate")
    assert ns.get_list_str("approvers") == ["alice"]
