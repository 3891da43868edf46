import math

from sqlmodel import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.core.errors import ValidationError


def validate_page(page: int, limit: int, max_limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1:
        raise ValidationError("limit must be >= 1")
    if limit > max_limit:
        raise ValidationError(f"limit must be <= {max_limit}")


def normalize_search(search: str | None) -> str | None:
    if search is None:
        return None
    return search.strip().lower() or None


async def fetch_page(db: AsyncSession, query, order_by, page: int, limit: int, schema) -> dict:
    """Run ``query`` for one page and return a JSON-ready ``{data, meta}`` dict."""
    total = (await db.exec(select(func.count()).select_from(query.subquery()))).one()
    rows = (
        await db.exec(query.order_by(*order_by).offset((page - 1) * limit).limit(limit))
    ).all()
    return {
        "data": [schema.model_validate(row).model_dump(mode="json") for row in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        },
    }
