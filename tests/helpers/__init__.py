"""Test helper utilities."""

from tests.helpers.fake_manager import FakeContaoManager, ManagerCall

__all__ = [
    "FakeContaoManager",
    "ManagerCall",
]
