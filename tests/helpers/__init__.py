"""Test helpers for the scalp monitor test suite"""

from tests.helpers.stubs import (
    FakeClock,
    FakeOracle,
    FakeStore,
    make_position,
    mock_response,
)

__all__ = [
    "FakeClock",
    "FakeOracle",
    "FakeStore",
    "make_position",
    "mock_response",
]
