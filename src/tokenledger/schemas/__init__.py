"""Pydantic schemas for API request/response models."""

from tokenledger.schemas.pagination import PaginationMeta

__all__ = [
    "PaginationMeta",
]
