import json
from os import path
from typing import Any

_TESTS_FOLDER = path.dirname(path.abspath(__file__))
_FIXTURES_PATH = path.join(_TESTS_FOLDER, "fixtures")


def load_fixture(fixture_name: str) -> list[dict[str, Any]] | dict[str, Any]:
    """Load fixture and return it as python objects

    Args:
        fixture_name: the name of the fixture file name

    Returns:
        the fixture as python objects
    """
    file_path = path.join(_FIXTURES_PATH, fixture_name)
    with open(file_path, "rb") as file:
        return json.load(file)


class FakeCursor:
    """Stands in for the motor cursor, returning preset documents"""

    def __init__(self, documents: list[dict[str, Any]]):
        self._documents = documents

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        return list(self._documents)


class FakeCollection:
    """Stands in for the motor collection, recording the calls made to it"""

    def __init__(self, name: str):
        self.name = name
        self.documents: list[dict[str, Any]] = []
        self.aggregated: list[dict[str, Any]] | None = None
        self.calls: list[tuple[str, Any, dict[str, Any]]] = []

    def find(self, selector: dict[str, Any], **kwargs) -> FakeCursor:
        self.calls.append(("find", selector, kwargs))
        return FakeCursor(self.documents)

    def aggregate(self, pipeline: list[dict[str, Any]], **kwargs) -> FakeCursor:
        self.calls.append(("aggregate", pipeline, kwargs))
        documents = self.documents if self.aggregated is None else self.aggregated
        return FakeCursor(documents)

    async def count_documents(self, selector: dict[str, Any], **kwargs) -> int:
        self.calls.append(("count_documents", selector, kwargs))
        return len(self.documents)


class FakeDatabase:
    """Stands in for the motor database"""

    def __init__(self):
        self.collections: dict[str, FakeCollection] = {}
        self.commands: list[dict[str, Any]] = []

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection(name))

    async def command(self, command: dict[str, Any], **kwargs) -> dict[str, Any]:
        self.commands.append(command)
        return {"ok": 1, "queryPlanner": {"winningPlan": {"stage": "COLLSCAN"}}}
