import pytest

from hami.validation import MissingEnvironmentError, validate_env_vars


def test_required_variable_present():
    assert validate_env_vars({"HOOK_PATH": "/usr/local/vgpu"}) == {
        "HOOK_PATH": "/usr/local/vgpu"
    }


def test_optional_variable_may_be_missing():
    result = validate_env_vars({"HOOK_PATH": "/hook"})
    assert "OTHER_ENV_VAR" not in result


def test_missing_required_variable():
    with pytest.raises(MissingEnvironmentError) as info:
        validate_env_vars({"OTHER_ENV_VAR": "1"})
    assert info.value.name == "HOOK_PATH"
    assert str(info.value) == "required environment variable HOOK_PATH not set"


def test_reads_process_environment(monkeypatch):
    monkeypatch.setenv("HOOK_PATH", "/from/env")
    assert validate_env_vars()["HOOK_PATH"] == "/from/env"


def test_process_environment_missing(monkeypatch):
    monkeypatch.delenv("HOOK_PATH", raising=False)
    with pytest.raises(MissingEnvironmentError):
        validate_env_vars()