import pytest

from env_validation import (
    EnvironmentError,
    get_env_bool,
    get_env_float,
    get_env_int,
    validate_environment,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "MINI_TRAINING_XP_SHARE",
        "XP_PER_LEVEL",
        "DB_MAX_CONNECTIONS",
        "GAMIFICATION_RANKS_PATH",
        "LRS_URL",
        "APP_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_typed_readers(monkeypatch):
    monkeypatch.setenv("FLAG", "yes")
    monkeypatch.setenv("SHARE", "0.3")
    monkeypatch.setenv("COUNT", "7")
    assert get_env_bool("FLAG") is True
    assert get_env_bool("MISSING_FLAG", default=True) is True
    assert get_env_float("SHARE", 0.2) == 0.3
    assert get_env_int("COUNT", 1) == 7
    assert get_env_int("MISSING_COUNT", 4) == 4

    monkeypatch.setenv("COUNT", "seven")
    with pytest.raises(EnvironmentError):
        get_env_int("COUNT", 1)


def test_defaults_pass(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "x.db"))
    validate_environment()


@pytest.mark.parametrize(
    "name,value",
    [
        ("MINI_TRAINING_XP_SHARE", "0"),
        ("MINI_TRAINING_XP_SHARE", "1.5"),
        ("MINI_TRAINING_XP_SHARE", "lots"),
        ("XP_PER_LEVEL", "0"),
        ("DB_MAX_CONNECTIONS", "-1"),
        ("LRS_URL", "ftp://lrs"),
        ("GAMIFICATION_RANKS_PATH", "/does/not/exist.json"),
    ],
)
def test_invalid_values_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(EnvironmentError):
        validate_environment()
