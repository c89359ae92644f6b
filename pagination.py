import math
from typing import Any, Dict, List, Tuple


def paginate(items: List[Any], page: int, limit: int) -> Tuple[List[Any], Dict[str, int]]:
    """Slice an already ordered list in memory and describe the page."""
    total = len(items)
    start = (page - 1) * limit
    return items[start:start + limit], {
        "page": page,
        "limit": limit,
        "totalItems": total,
        "totalPages": math.ceil(total / limit) if limit > 0 else 1,
    }
