from datetime import date
from typing import Literal

from pydantic import Field

from campus.schemas.base import CamelModel


class LostFoundIn(CamelModel):
    type: Literal["lost", "found"]
    title: str = Field(min_length=5, max_length=200)
    description: str = Field(min_length=1)
    location: str = Field(min_length=1)
    date_lost_or_found: date


class NewsIn(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    publisher_name: str | None = None
    is_urgent: bool = False
    status: Literal["draft", "published"] = "published"


class ReactionIn(CamelModel):
    reaction_type: Literal["like", "dislike"]


class CommentIn(CamelModel):
    comment: str = Field(min_length=1)
    parent_id: int | None = None
