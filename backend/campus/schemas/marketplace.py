from decimal import Decimal
from typing import Literal

from pydantic import Field

from campus.schemas.base import CamelModel


class InterestIn(CamelModel):
    message: str | None = Field(default=None, max_length=2000)


class ListingUpdateIn(CamelModel):
    title: str | None = Field(default=None, min_length=5, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    price: Decimal | None = Field(default=None, ge=0)
    category: str | None = Field(default=None, min_length=1)
    location: str | None = Field(default=None, min_length=1)
    status: Literal["available", "pending", "sold"] | None = None
