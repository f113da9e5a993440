from typing import Generic, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class ListResponse(BaseModel, Generic[ItemT]):
    """One page of a billing listing; ``total`` counts every matching row."""

    items: list[ItemT]
    count: int = Field(ge=0)
    limit: int = Field(ge=1)
    offset: int = Field(ge=0)
    total: int = Field(ge=0)
