"""
Tests for environment-driven settings.
"""

import pytest

import config
from auth import security


@pytest.mark.parametrize("raw,expected", [
    (None, 1440),
    ("30", 30),
    ("10080", 10080),
    ("0", 1440),
    ("10081", 1440),
    ("soon", 1440),
])
def test_token_lifetime_setting(monkeypatch, raw, expected):
    if raw is None:
        monkeypatch.delenv("ACCESS_TOKEN_EXPIRE_MINUTES", raising=False)
    else:
        monkeypatch.setenv("ACCESS_TOKEN_EXPIRE_MINUTES", raw)
    assert config._int_setting("ACCESS_TOKEN_EXPIRE_MINUTES", 1440, 1, 10080) == expected


def test_token_lifetime_is_read_from_config():
    assert security.ACCESS_TOKEN_EXPIRE_MINUTES == config.ACCESS_TOKEN_EXPIRE_MINUTES
