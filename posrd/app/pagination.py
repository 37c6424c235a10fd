import math


def page_offset(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": int(total or 0),
        "total_pages": math.ceil(int(total or 0) / limit) if limit else 0,
    }
