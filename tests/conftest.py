"""Shared fixtures for the test suite."""
import json

import pytest


class InMemoryStore:
    """Session store keeping JSON documents in a dict, like DynamoDBSessionStore."""

    def __init__(self):
        self.data = {}
        self.saves = 0

    def load(self, key, default=None):
        if key not in self.data:
            return default
        return json.loads(self.data[key])

    def save(self, key, value):
        self.saves += 1
        self.data[key] = json.dumps(value)


@pytest.fixture
def memory_store():
    """Empty in-memory session store."""
    return InMemoryStore()
