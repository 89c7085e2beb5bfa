from pydantic import BaseModel


class AdminPaginationMeta(BaseModel):
    total_items: int
    total_pages: int
    page: int
    limit: int

    @classmethod
    def build(cls, *, total_items: int, page: int, limit: int) -> "AdminPaginationMeta":
        total_pages = max(1, (total_items + limit - 1) // limit) if total_items else 1
        return cls(total_items=total_items, total_pages=total_pages, page=page, limit=limit)
