"""
Pagination Cursor

Opaque position in a remote paginated collection. The cursor only moves
after a page has been accepted; a page that gets rejected as soft-throttled
leaves it where it was so the same position is re-requested.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class PageResult:
    """One page as returned by a strategy's network operation"""
    items: List[str] = field(default_factory=list)
    has_more: bool = False
    end_cursor: Optional[str] = None
    claimed_total: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        """Empty cursor with has_more=false: provisionally end-of-stream"""
        return not self.has_more or not self.end_cursor


@dataclass
class PaginationCursor:
    token: Optional[str] = None
    batch: int = 0
    retrieved: int = 0
    claimed_total: Optional[int] = None

    def advance(self, page: PageResult, accepted_items: int):
        """Move past an accepted page"""
        self.token = page.end_cursor
        self.batch += 1
        self.retrieved += accepted_items
        if page.claimed_total is not None and self.claimed_total is None:
            self.claimed_total = page.claimed_total

    @property
    def remaining(self) -> Optional[int]:
        if self.claimed_total is None:
            return None
        return max(0, self.claimed_total - self.retrieved)
