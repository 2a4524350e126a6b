"""HTTP blueprints and shared request helpers."""

from flask import request

from buildtrack.services.helpers.stores import WorkItemStore


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a work-item select.

    Query params:
        limit  — max items (default 200, clamped to 0..max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    try:
        limit = max(min(int(request.args.get("limit", default_limit)), max_limit), 0)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return WorkItemStore.page(query, limit=limit, offset=offset)
