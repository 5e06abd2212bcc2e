from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any

import pytest
from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from filterflow import (
    FilterCompiler,
    FilterIgnore,
    MongoStore,
    VirtualField,
    VirtualObject,
)
from filterflow.query.handlers import OperatorRegistry, register_default_handlers

from tests.utils import FakeDatabase


class Status(Enum):
    ACTIVE = "active"
    CLOSED = "closed"

    @property
    def label(self) -> str:
        return self.value.title()


class Address(BaseModel):
    city: str
    street: str = ""
    zip_code: int | None = None


class Book(BaseModel):
    title: str
    pages: int = 0
    published: date | None = None
    library_id: str | None = None

    class Settings:
        name = "books"


class Librarian(BaseModel):
    name: str
    age: int = 0

    class Settings:
        name = "librarians"


class Library(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    address: str = ""
    rating: float = 0
    established: date | None = None
    opened_at: datetime | None = None
    is_public: bool = True
    status: Status = Status.ACTIVE
    tags: list[str] = []
    attributes: dict[str, str] = {}
    location: Address | None = None
    books: list[Book] = []
    owner_id: ObjectId | None = None
    extra: Any = None
    secret: Annotated[str, FilterIgnore()] = ""
    cache_key: str = Field("", exclude=True)
    legacy_code: str = Field("", deprecated="use name instead")
    book_count: Annotated[
        int,
        VirtualField(from_model=Book, foreign_field="library_id", count=True),
    ] = Field(0, exclude=True)
    head: Annotated[
        Librarian | None,
        VirtualObject(
            local_field="head_id", from_model=Librarian, project_fields=("name",)
        ),
    ] = Field(None, exclude=True)

    class Settings:
        name = "libraries"


class Person(BaseModel):
    name: str
    age: int
    city: str = ""
    created: date | None = None
    tags: list[str] = []
    status: Status = Status.ACTIVE


@pytest.fixture
def compiler():
    """The default filter compiler"""
    yield FilterCompiler()


@pytest.fixture
def registry():
    """A fresh registry with only the default handlers"""
    registry = OperatorRegistry()
    register_default_handlers(registry)
    yield registry


@pytest.fixture
def fake_db():
    """The in-memory stand-in for the motor database"""
    yield FakeDatabase()


@pytest.fixture
def mongo_store(fake_db):
    """The mongodb store whose database is replaced by an in-memory fake"""
    store = MongoStore(uri="mongodb://localhost:27017", database="testing")
    store._db = fake_db
    yield store
