import pytest

from config import Config, ConfigError, normalize_base_path, validate_config
from csrf import is_exempt


@pytest.mark.parametrize("raw,expected", [
    (None, "/"),
    ("", "/"),
    ("/", "/"),
    ("files", "/files"),
    ("/files/", "/files"),
    ("/a/b//", "/a/b"),
])
def test_normalize_base_path(raw, expected):
    assert normalize_base_path(raw) == expected


def _cfg(**overrides):
    values = dict(root_dir="/srv", data_dir="/tmp", database_url="sqlite://")
    values.update(overrides)
    return Config(**values)


def test_routes_under_base_path():
    assert _cfg().route("/api/list") == "/api/list"
    cfg = _cfg(base_path="/files")
    assert cfg.route("/api/list") == "/files/api/list"
    # share routes stay exempt from CSRF under a base path
    assert is_exempt("POST", "/files/s/abc/upload", cfg)
    assert not is_exempt("POST", "/s/abc/upload", cfg)


def test_auth_flag():
    assert _cfg().auth_enabled
    assert not _cfg(auth="off").auth_enabled


@pytest.mark.parametrize("overrides", [
    {"port": 0},
    {"port": 70000},
    {"auth": "maybe"},
    {"guest_mode": "everyone"},
    {"https": True},
])
def test_invalid_config(overrides):
    with pytest.raises(ConfigError):
        validate_config(_cfg(**overrides))


def test_valid_config():
    validate_config(_cfg(https=True, cert_file="c.pem", key_file="k.pem", guest_mode="read"))
