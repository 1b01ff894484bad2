"""
Success envelope shared by every REST endpoint:

    {"success": true, "data": ..., "meta": {"timestamp", "pagination"?}}

Errors use the matching failure envelope built in errors.py.
"""

import math
from typing import Any, Dict, Optional

from time_utils import iso_now


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def envelope(
    data: Any = None,
    pagination_meta: Optional[Dict[str, int]] = None,
    success: bool = True,
) -> Dict[str, Any]:
    """
    Wrap a payload in the envelope.

    success=False is for idempotent operations that had nothing to do
    (mark-as-read, delete): the request is fine, so no error object is sent.
    """
    meta: Dict[str, Any] = {"timestamp": iso_now()}
    if pagination_meta is not None:
        meta["pagination"] = pagination_meta
    return {"success": success, "data": data, "meta": meta}
