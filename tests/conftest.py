"""Root-level pytest fixtures for all tests.

Provides:
- A fixed master key exported as TOKEN_MASTER_KEY
- TokenCipher / SiteCredentialStore fixtures backed by tmp_path
- Environment isolation for CONTAO_CONSOLE_* overrides
"""

import os

import pytest

from contao_console.services.site_store import SiteCredentialStore
from contao_console.services.token_cipher import MASTER_KEY_ENV, TokenCipher
from tests.helpers.keys import MASTER_KEY_HEX


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the real data dir and from the caller's env."""
    for key in list(os.environ):
        if key.startswith("CONTAO_CONSOLE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONTAO_CONSOLE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv(MASTER_KEY_ENV, MASTER_KEY_HEX)


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher.from_hex(MASTER_KEY_HEX)


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config.json"


@pytest.fixture
def store(cipher, config_path) -> SiteCredentialStore:
    return SiteCredentialStore(cipher, config_path)
