"""
Read-only queries against the torrent cache.

These back the dashboard list views, statistics and sidebar filters. All of
them read only the local cache; nothing here talks to a remote instance.
"""

from collections import Counter
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from peewee import fn

from .models import Instance, Torrent
from .states import FAMILIES, ACTIVE, states_for_filter


SORT_FIELDS = {
    "name": Torrent.name,
    "size": Torrent.size,
    "progress": Torrent.progress,
    "dl_rate": Torrent.dl_rate,
    "up_rate": Torrent.up_rate,
    "eta": Torrent.eta,
    "added_on": Torrent.added_on,
    "completion_on": Torrent.completion_on,
    # qBittorrent names for the rate columns
    "dlspeed": Torrent.dl_rate,
    "upspeed": Torrent.up_rate,
}
DEFAULT_SORT = "added_on"

MAX_PAGE_SIZE = 1000


def _torrent_columns():
    return [
        Torrent.hash,
        Torrent.instance.alias("instance_id"),
        Torrent.name,
        Torrent.size,
        Torrent.progress,
        Torrent.dl_rate,
        Torrent.up_rate,
        Torrent.downloaded,
        Torrent.uploaded,
        Torrent.state,
        Torrent.eta,
        Torrent.category,
        Torrent.tags,
        Torrent.tracker,
        Torrent.save_path,
        Torrent.added_on,
        Torrent.completion_on,
        Torrent.last_activity,
    ]


def _ordering(sort: Optional[str], order: Optional[str]):
    field = SORT_FIELDS.get(sort or DEFAULT_SORT, SORT_FIELDS[DEFAULT_SORT])
    return field.asc() if (order or "").lower() == "asc" else field.desc()


def _status_condition(status: Optional[str]):
    states = states_for_filter(status)
    if states is None:
        return None
    return Torrent.state.in_(sorted(states))


def list_torrents_page(
    page: int = 1,
    limit: int = 50,
    sort: str = DEFAULT_SORT,
    order: str = "desc",
    search: Optional[str] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    tracker: Optional[str] = None,
    save_path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Page through cached torrents of every instance.

    Args:
        page: 1-based page number
        limit: Page size
        sort: One of SORT_FIELDS; unknown names fall back to added_on
        order: "asc" or "desc"
        search: Substring of the name or hash
        status: Status filter name (see states.STATUS_FILTERS)
        category: Exact category
        tag: Substring of the comma separated tag list
        tracker: Exact tracker URL
        save_path: Save path prefix

    Returns:
        {"data": [...], "total": n, "page": page, "limit": limit}; every row
        carries instance_id and instance_name
    """
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)

    conditions = []
    if search:
        conditions.append(Torrent.name.contains(search) | Torrent.hash.contains(search))
    status_condition = _status_condition(status)
    if status_condition is not None:
        conditions.append(status_condition)
    if category:
        conditions.append(Torrent.category == category)
    if tag:
        conditions.append(Torrent.tags.contains(tag))
    if tracker:
        conditions.append(Torrent.tracker == tracker)
    if save_path:
        conditions.append(Torrent.save_path.startswith(save_path))

    query = (Torrent
             .select(*_torrent_columns(), Instance.name.alias("instance_name"))
             .join(Instance))
    count_query = Torrent.select()
    for condition in conditions:
        query = query.where(condition)
        count_query = count_query.where(condition)

    rows = list(query.order_by(_ordering(sort, order)).paginate(page, limit).dicts())

    return {
        "data": rows,
        "total": count_query.count(),
        "page": page,
        "limit": limit,
    }


def list_instance_torrents(
    instance_id: int,
    status: Optional[str] = None,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    tracker: Optional[str] = None,
    save_path: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = DEFAULT_SORT,
    sort_order: str = "desc",
) -> Dict[str, Any]:
    """Return every cached torrent of one instance, filtered and sorted."""
    query = Torrent.select(*_torrent_columns()).where(Torrent.instance == instance_id)

    status_condition = _status_condition(status)
    if status_condition is not None:
        query = query.where(status_condition)
    if category:
        query = query.where(Torrent.category == category)
    if tag:
        query = query.where(Torrent.tags.contains(tag))
    if tracker:
        query = query.where(Torrent.tracker.contains(tracker))
    if save_path:
        query = query.where(Torrent.save_path == save_path)
    if search:
        query = query.where(Torrent.name.contains(search))

    torrents = list(query.order_by(_ordering(sort_by, sort_order)).dicts())
    return {"torrents": torrents, "total": len(torrents)}


def instance_stats(instance_id: int) -> Dict[str, Any]:
    """Aggregate counters and transfer totals for one instance."""
    base = Torrent.select().where(Torrent.instance == instance_id)

    total, dl_rate, up_rate, downloaded, uploaded = (Torrent
        .select(
            fn.COUNT(Torrent.hash),
            fn.COALESCE(fn.SUM(Torrent.dl_rate), 0),
            fn.COALESCE(fn.SUM(Torrent.up_rate), 0),
            fn.COALESCE(fn.SUM(Torrent.downloaded), 0),
            fn.COALESCE(fn.SUM(Torrent.uploaded), 0),
        )
        .where(Torrent.instance == instance_id)
        .tuples()
        .get())

    stats = {
        "total": total,
        "total_dl_rate": dl_rate,
        "total_up_rate": up_rate,
        "total_downloaded": downloaded,
        "total_uploaded": uploaded,
    }
    for family, states in FAMILIES.items():
        stats[family] = base.where(Torrent.state.in_(sorted(states))).count()
    stats["active"] = base.where(Torrent.state.in_(sorted(ACTIVE))).count()
    stats["completed"] = base.where(Torrent.progress >= 1).count()
    return stats


def tracker_label(tracker: str) -> str:
    """Host name of a tracker URL, or the raw string when it is not a URL."""
    try:
        host = urlparse(tracker).hostname
    except ValueError:
        host = None
    return host or tracker


def _labelled(counter: Counter) -> List[Dict[str, Any]]:
    return [{"label": label, "count": count} for label, count in sorted(counter.items())]


def filter_facets(instance_id: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
    """
    Values the sidebar can filter on, with the number of torrents for each.

    Args:
        instance_id: Restrict to one instance, or None for all instances
    """
    def scoped(query):
        if instance_id is not None:
            query = query.where(Torrent.instance == instance_id)
        return query

    categories = scoped(Torrent
        .select(Torrent.category, fn.COUNT(Torrent.hash).alias("count"))
        .where(Torrent.category.is_null(False) & (Torrent.category != ""))
        .group_by(Torrent.category)
        .order_by(Torrent.category)
        .dicts())

    save_paths = scoped(Torrent
        .select(Torrent.save_path, fn.COUNT(Torrent.hash).alias("count"))
        .where(Torrent.save_path.is_null(False))
        .group_by(Torrent.save_path)
        .order_by(Torrent.save_path)
        .dicts())

    trackers = Counter()
    for (tracker,) in scoped(Torrent.select(Torrent.tracker)
                             .where(Torrent.tracker.is_null(False) & (Torrent.tracker != ""))).tuples():
        trackers[tracker_label(tracker)] += 1

    tags = Counter()
    for (tag_list,) in scoped(Torrent.select(Torrent.tags)
                              .where(Torrent.tags.is_null(False) & (Torrent.tags != ""))).tuples():
        for tag in tag_list.split(","):
            tag = tag.strip()
            if tag:
                tags[tag] += 1

    return {
        "categories": [{"label": row["category"], "count": row["count"]} for row in categories],
        "trackers": _labelled(trackers),
        "save_paths": [{"label": row["save_path"], "count": row["count"]} for row in save_paths],
        "tags": _labelled(tags),
    }
