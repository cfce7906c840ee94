"""Pytest configuration helpers.

This conftest ensures ``backend/`` is on `sys.path` so tests can import
the `genrelay` package regardless of how pytest is invoked, and provides
small fakes shared by the service tests.
"""
import os
import sys

import pytest

BACKEND = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend"))
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)


UPLOAD_TOKEN = {
    "access_key_id": "AKTPTESTKEY",
    "secret_access_key": "test-secret",
    "session_token": "STS2TESTTOKEN",
    "service_id": "svc123",
    "space_name": "dreamina",
}


class FakeTokenProvider:
    """Records requested scenes and hands out a fixed credential set."""

    def __init__(self, token=None, error=None):
        self.token = dict(UPLOAD_TOKEN) if token is None else token
        self.error = error
        self.scenes = []

    async def get_upload_token(self, scene):
        self.scenes.append(scene)
        if self.error is not None:
            raise self.error
        return self.token


@pytest.fixture
def token_provider():
    return FakeTokenProvider()


@pytest.fixture
def make_token_provider():
    return FakeTokenProvider
