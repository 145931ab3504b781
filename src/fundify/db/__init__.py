"""PostgreSQL access: pool lifecycle, table names and migrations."""

from fundify.db.pool import close_pool, create_pool

__all__ = ["close_pool", "create_pool"]
