from dataclasses import dataclass, field
from typing import Generic, TypeVar

from access_engine.core import config
from access_engine.core.exceptions import ValidationError


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = config.DEFAULT_PAGE_SIZE

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size > 0 else 0

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def check_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1", {"page": page})
    if page_size < 1 or page_size > config.MAX_PAGE_SIZE:
        raise ValidationError(
            f"page_size must be between 1 and {config.MAX_PAGE_SIZE}", {"page_size": page_size}
        )
