from typing import Any, Dict, List, Optional

import pytest


class FakeCursor:
    """Iterates like a pymongo Cursor; ``cursor_id`` is set on the first fetch."""

    def __init__(self, documents: List[Dict[str, Any]], cursor_id: int):
        self._documents = iter(documents)
        self._server_cursor_id = cursor_id
        self.cursor_id: Optional[int] = None

    def __iter__(self):
        return self

    def __next__(self):
        self.cursor_id = self._server_cursor_id
        return next(self._documents)


class FakeCollection:
    def __init__(self, client: "FakeClient", database: str, name: str):
        self._client = client
        self.full_name = f"{database}.{name}"

    def find(self, filter: Dict[str, Any], **kwargs: Any) -> FakeCursor:
        self._client.calls.append(("find", self.full_name, filter, kwargs))
        return FakeCursor(self._client.documents, self._client.cursor_id)


class FakeDatabase:
    def __init__(self, client: "FakeClient", name: str):
        self._client = client
        self.name = name

    def __getitem__(self, name: str) -> FakeCollection:
        return FakeCollection(self._client, self.name, name)

    def command(self, command: Dict[str, Any]) -> Dict[str, Any]:
        self._client.calls.append(("command", self.name, command))
        if self._client.error is not None:
            raise self._client.error
        return dict(self._client.command_result)


class FakeClient:
    """Just enough of pymongo.MongoClient for ops to execute against."""

    def __init__(self) -> None:
        self.calls: List[Any] = []
        self.documents: List[Dict[str, Any]] = []
        self.cursor_id = 0
        self.command_result: Dict[str, Any] = {"ok": 1.0}
        self.error: Optional[Exception] = None

    def __getitem__(self, name: str) -> FakeDatabase:
        return FakeDatabase(self, name)


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()
