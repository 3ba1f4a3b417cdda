from __future__ import annotations

import math
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class Pagination:
    current_page: int
    page_size: int
    total_items: int
    total_pages: int

    def to_dict(self) -> dict:
        return asdict(self)


def clamp_page(raw_page) -> int:
    try:
        page = int(raw_page)
    except (TypeError, ValueError):
        return 1
    return page if page >= 1 else 1


def clamp_page_size(raw_size, *, default: int, maximum: int) -> int:
    try:
        size = int(raw_size)
    except (TypeError, ValueError):
        size = int(default)
    if size < 1:
        size = int(default)
    return max(1, min(size, int(maximum)))


def page_offset(page: int, page_size: int) -> int:
    return (int(page) - 1) * int(page_size)


def build_pagination(total_items: int, page: int, page_size: int) -> Pagination:
    total = max(0, int(total_items or 0))
    return Pagination(
        current_page=int(page),
        page_size=int(page_size),
        total_items=total,
        total_pages=int(math.ceil(total / float(page_size))) if page_size else 0,
    )
