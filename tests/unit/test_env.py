import pytest

from packages.shared.env import parse_bool_env, parse_csv_env, parse_float_env, parse_int_env


def test_parse_bool_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("RHYTHM_FLAG", raising=False)
    assert parse_bool_env("RHYTHM_FLAG", True) is True
    for raw in ("1", "true", "YES", " on "):
        monkeypatch.setenv("RHYTHM_FLAG", raw)
        assert parse_bool_env("RHYTHM_FLAG", False) is True
    monkeypatch.setenv("RHYTHM_FLAG", "off")
    assert parse_bool_env("RHYTHM_FLAG", True) is False


def test_parse_int_and_float_env_fall_back_on_garbage(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RHYTHM_NUM", "12")
    assert parse_int_env("RHYTHM_NUM", 3) == 12
    assert parse_float_env("RHYTHM_NUM", 3.0) == 12.0
    monkeypatch.setenv("RHYTHM_NUM", "twelve")
    assert parse_int_env("RHYTHM_NUM", 3) == 3
    assert parse_float_env("RHYTHM_NUM", 3.5) == 3.5
    monkeypatch.setenv("RHYTHM_NUM", "")
    assert parse_int_env("RHYTHM_NUM", 7) == 7


def test_parse_csv_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RHYTHM_HOSTS", "a.example, b.example,,")
    assert parse_csv_env("RHYTHM_HOSTS", ["*"]) == ["a.example", "b.example"]
    monkeypatch.delenv("RHYTHM_HOSTS")
    assert parse_csv_env("RHYTHM_HOSTS", ["*"]) == ["*"]
