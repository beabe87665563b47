import math
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm import Query

T = TypeVar("T")


def paginate_query(
    query: Query,
    *,
    page: int = 1,
    limit: int = 20,
    max_limit: int = 100,
) -> tuple[list[T], dict]:
    safe_page = max(1, page)
    safe_limit = max(1, min(limit, max_limit))
    total = query.order_by(None).count()
    items = query.offset((safe_page - 1) * safe_limit).limit(safe_limit).all()
    return items, build_pagination(total=total, page=safe_page, limit=safe_limit)


def build_pagination(*, total: int, page: int, limit: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def serialize_items(items: list[T], serializer: Callable[[T], dict]) -> list[dict]:
    return [serializer(item) for item in items]
