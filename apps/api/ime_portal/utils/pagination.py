"""Pagination utilities for list endpoints."""

from dataclasses import dataclass

from fastapi import Query
from sqlalchemy.orm import Query as SQLAlchemyQuery


# Pagination limits
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


@dataclass
class PaginationParams:
    """Pagination parameters from query string."""
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def get_pagination(
    page: int = Query(DEFAULT_PAGE, ge=1, description="Page number (1-indexed)"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description=f"Items per page (max {MAX_LIMIT})"),
) -> PaginationParams:
    """
    Pagination dependency.

    Usage:
        @router.get("/items")
        def list_items(pagination: PaginationParams = Depends(get_pagination)):
            ...
    """
    return PaginationParams(page=page, limit=limit)


@dataclass
class PageInfo:
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def create(cls, total: int, pagination: PaginationParams) -> "PageInfo":
        pages = (total + pagination.limit - 1) // pagination.limit if pagination.limit > 0 else 0
        return cls(page=pagination.page, limit=pagination.limit, total=total, total_pages=pages)


def paginate_query(query: SQLAlchemyQuery, pagination: PaginationParams, total: int | None = None) -> tuple[list, int]:
    """
    Apply pagination to a SQLAlchemy query.

    Pass total when it was counted on a lighter query (without eager loads).

    Returns:
        (items, total_count)
    """
    if total is None:
        total = query.count()
    items = query.offset(pagination.offset).limit(pagination.limit).all()
    return items, total
