import hashlib

import pytest
from pydantic import ValidationError as PydanticValidationError

from auth import bearer_token, check_admin_token, generate_api_key, hash_api_key, resolve_user_id
from config import AppConfig, ProjectMetadataPolicy
from errors import Unauthorized


def test_generated_keys_are_random_hex():
    first, second = generate_api_key(), generate_api_key()
    assert first != second
    assert len(first) == 64
    int(first, 16)


def test_hash_is_sha256_hex():
    assert hash_api_key("secret") == hashlib.sha256(b"secret").hexdigest()


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc", "abc"),
        ("Bearer   abc  ", "abc"),
        ("Bearer ", None),
        ("Basic abc", None),
        (None, None),
    ],
)
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


def test_resolve_user_id(database, key_factory):
    raw = key_factory("user-5")
    assert resolve_user_id(database, raw) == "user-5"
    with pytest.raises(Unauthorized):
        resolve_user_id(database, "other")
    with pytest.raises(Unauthorized):
        resolve_user_id(database, None)


def test_admin_token_check():
    assert check_admin_token("s3cret", "s3cret")
    assert not check_admin_token("s3cret", "nope")
    assert not check_admin_token(None, "anything")


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_NAME", "tracker")
    monkeypatch.setenv("PROJECT_METADATA_UPDATE", "if_changed")
    monkeypatch.setenv("WORKDAY_START_HOUR", "9")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CORS_ORIGINS", "http://localhost:3000, http://dial.local")
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.delenv("ADMIN_TOKEN", raising=False)

    config = AppConfig.from_env()
    assert config.database_name == "tracker"
    assert config.project_metadata_update is ProjectMetadataPolicy.IF_CHANGED
    assert config.workday_start_hour == 9
    assert config.log_level == "DEBUG"
    assert config.cors_origins == ["http://localhost:3000", "http://dial.local"]
    assert config.is_production
    assert config.admin_token is None


def test_config_rejects_bad_values(monkeypatch):
    monkeypatch.setenv("PROJECT_METADATA_UPDATE", "sometimes")
    with pytest.raises(PydanticValidationError):
        AppConfig.from_env()
