def list_response(
    items: list, limit: int, offset: int, *, total: int | None = None
) -> dict:
    return {
        "items": items,
        "count": len(items),
        "limit": limit,
        "offset": offset,
        "total": total if total is not None else len(items),
    }


class ListResponseMixin:
    """Adds ``list_response`` to services whose ``list`` returns ``(items, total)``."""

    def list_response(self, db, *args, limit: int, offset: int, **kwargs) -> dict:
        items, total = self.list(db, *args, limit=limit, offset=offset, **kwargs)  # type: ignore[attr-defined]
        return list_response(items, limit, offset, total=total)
