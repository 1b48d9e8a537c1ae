from supabase import AsyncClient
from typing import Optional
from .logger import logger


async def insert_data(
    supabase: AsyncClient,
    table_name: str,
    data: dict | list[dict],
    error_message: str = "An unexpected error occurred",
):
    try:
        return await supabase.table(table_name).insert(data).execute()
    except Exception as e:
        # supabase errors are badly structured and must cast to string and parsed
        if "duplicate" in str(e).lower():
            return "duplicate"
        logger.error(f"{error_message} ({table_name}): {e}")
        raise


async def query_many(
    supabase: AsyncClient,
    table_name: str,
    order_by: tuple | None = None,
    select_fields: str = "*",
    limit: Optional[int] = None,
) -> list[dict]:
    """Rows of ``table_name``, optionally ordered by ``(column, desc)`` and capped at ``limit``."""
    query = supabase.table(table_name).select(select_fields)
    if order_by:
        column, desc = order_by
        query = query.order(column, desc=desc)
    if limit:
        query = query.limit(limit)
    resp = await query.execute()
    return getattr(resp, "data", None) or []
