"""Infrastructure service helpers."""

from .postgres import PostgresPoolManager

__all__ = ["PostgresPoolManager"]
