"""The module with the abstract classes for this package"""

import abc
from typing import Any, TypeVar

from pydantic import BaseModel

from ._options import FilterOptions
from .query.compiler import FilterCompiler, Query

_T = TypeVar("_T", bound=BaseModel)


class BaseStore(abc.ABC):
    """Abstract class for document stores that run compiled filters"""

    def __init__(self, uri: str, compiler: FilterCompiler | None = None, **kwargs):
        """
        Args:
            uri: the URI to the underlying store
            compiler: the compiler turning filters into native queries
            kwargs: extra key-word args to pass to the initializer
        """
        if compiler is None:
            compiler = FilterCompiler()

        self._compiler = compiler
        self._uri = uri

    @abc.abstractmethod
    async def find(
        self,
        model: type[_T],
        query: Query = None,
        skip: int = 0,
        limit: int = 0,
        sort: Any = None,
        options: FilterOptions | None = None,
        **kwargs,
    ) -> list[_T]:
        """Find the items that fulfill the given filter

        Args:
            model: the model whose instances are being queried
            query: the filter as a tree, a textual expression or its JSON form
            skip: number of records to ignore at the top of the returned results; default is 0
            limit: maximum number of records to return; default is 0 i.e. no limit.
            sort: fields to sort by; default = None
            options: the options for compiling the filter
            kwargs: extra key-word args to pass to the underlying find method

        Returns:
            the matched items
        """

    @abc.abstractmethod
    async def count(
        self,
        model: type[_T],
        query: Query = None,
        options: FilterOptions | None = None,
        **kwargs,
    ) -> int:
        """Counts the items that fulfill the given filter

        Args:
            model: the model whose instances are being counted
            query: the filter as a tree, a textual expression or its JSON form
            options: the options for compiling the filter
            kwargs: extra key-word args to pass to the underlying count method

        Returns:
            the number of matched items
        """

    @abc.abstractmethod
    async def suggest(
        self,
        model: type[_T],
        field: str,
        query: Query = None,
        skip: int = 0,
        limit: int = 0,
        sort: Any = None,
        options: FilterOptions | None = None,
        **kwargs,
    ) -> list[Any]:
        """Gets the distinct values of a field among the items that fulfill the given filter

        Items of collection fields are suggested one by one. Missing and null values are left out.

        Args:
            model: the model whose instances are being queried
            field: the possibly dotted path of the field e.g. ``location.city``
            query: the filter as a tree, a textual expression or its JSON form
            skip: number of values to ignore at the top of the returned values; default is 0
            limit: maximum number of values to return; default is 0 i.e. no limit.
            sort: how to sort the values, which are under the name ``value``; default is ascending
            options: the options for compiling the filter
            kwargs: extra key-word args to pass to the underlying aggregate method

        Returns:
            the distinct values

        Raises:
            FieldResolutionError: the field is not on the model
        """

    async def find_page(
        self,
        model: type[_T],
        query: Query = None,
        skip: int = 0,
        limit: int = 0,
        sort: Any = None,
        options: FilterOptions | None = None,
        **kwargs,
    ) -> tuple[list[_T], int | None]:
        """Finds a page of the items that fulfill the given filter, and their total

        The options may come from CONTROL requests inside the query itself, so the
        query is compiled once here to read them.

        Returns:
            tuple of (the matched items, the total number of matches or None if skip_count is set)
        """
        group, options = self._compiler.prepare(query, options)
        items = await self.find(
            model, group, skip=skip, limit=limit, sort=sort, options=options, **kwargs
        )
        if options.skip_count:
            return items, None

        total = await self.count(model, group, options=options, **kwargs)
        return items, total
