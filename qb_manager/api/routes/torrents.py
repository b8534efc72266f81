from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Form, File, UploadFile
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from qb_manager import queries
from qb_manager.cache import CacheStore
from qb_manager.client_factory import ClientRegistry
from qb_manager.config import Config
from qb_manager.logger import logger
from qb_manager.models import Instance
from qb_manager.notifier import ChangeNotifier
from qb_manager.sync import SyncEngine
from qb_manager.utils import split_hashes
from ..schemas import (
    TorrentActionRequest, SetCategoryRequest, SetTagsRequest, FilePriorityRequest,
    CategoryRequest, DeleteCategoryRequest,
)
from ..dependencies import get_store, get_clients, get_notifier, get_engine, get_instance_or_404

router = APIRouter(tags=["torrents"])


async def refresh_soon(
    engine: SyncEngine, notifier: ChangeNotifier, instance: Instance, mirrored: bool = False
) -> None:
    """
    Reconcile an instance right after an action instead of waiting for the next tick.

    When the action was already mirrored into the cache the reconciliation
    finds nothing new, so live clients are told about the change directly.
    """
    if mirrored:
        await engine.announce(instance.id)
    if notifier.client_count == 0:
        return
    engine.schedule_sync(instance)


def require_hashes(hashes) -> List[str]:
    hash_list = split_hashes(hashes)
    if not hash_list:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields"
        )
    return hash_list


async def call_remote(description: str, func, *args, **kwargs):
    """Run a blocking client call in the threadpool, mapping failures to 500."""
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except Exception as e:
        logger.error(f"Failed to {description}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


# -----------------------------------------------------------------------------
# Cached views
# -----------------------------------------------------------------------------

@router.get("/api/torrents")
async def list_torrents(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    sort: str = Query("added_on"),
    order: str = Query("desc"),
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = None,
    tag: Optional[str] = None,
    tracker: Optional[str] = None,
    save_path: Optional[str] = None,
):
    """
    Page through cached torrents across all instances.

    Reads only the local cache, which the sync engine keeps up to date.
    """
    return queries.list_torrents_page(
        page=page,
        limit=limit,
        sort=sort,
        order=order,
        search=search,
        status=status_filter,
        category=category,
        tag=tag,
        tracker=tracker,
        save_path=save_path,
    )


@router.get("/api/torrents/list")
async def list_instance_torrents(
    container_id: int = Query(..., alias="containerId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    category: Optional[str] = None,
    tag: Optional[str] = None,
    tracker: Optional[str] = None,
    save_path: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = Query("added_on", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
):
    """List the cached torrents of one instance, filtered and sorted."""
    try:
        return queries.list_instance_torrents(
            container_id,
            status=status_filter,
            category=category,
            tag=tag,
            tracker=tracker,
            save_path=save_path,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except Exception as e:
        logger.error(f"Failed to fetch torrent list: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch torrent list"
        )


@router.get("/api/torrents/stats")
async def torrent_stats(
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """
    Aggregated counters for one instance.

    Speed limits come live from the instance; they are reported as 0 when it
    cannot be reached.
    """
    stats = queries.instance_stats(container_id)

    stats["dl_limit"] = 0
    stats["up_limit"] = 0
    instance = store.get_instance(container_id)
    if instance is not None:
        try:
            client = clients.get(instance)
            info = await run_in_threadpool(client.get_transfer_info)
            stats["dl_limit"] = info.get("dl_rate_limit") or 0
            stats["up_limit"] = info.get("up_rate_limit") or 0
        except Exception as e:
            logger.warning(f"Failed to get transfer info for instance {container_id}: {e}")

    return stats


@router.get("/api/torrents/filters")
async def torrent_filters(container_id: Optional[int] = Query(None, alias="containerId")):
    """Sidebar facets (categories, trackers, save paths, tags) with counts."""
    return queries.filter_facets(container_id)


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

async def run_action(
    action: str,
    request: TorrentActionRequest,
    store: CacheStore,
    clients: ClientRegistry,
    notifier: ChangeNotifier,
    engine: SyncEngine
):
    hash_list = require_hashes(request.hashes)
    instance = get_instance_or_404(store, request.container_id)

    try:
        client = clients.get(instance)
        if action == "resume":
            await run_in_threadpool(client.start, hash_list)
        elif action == "pause":
            await run_in_threadpool(client.stop, hash_list)
        elif action == "delete":
            await run_in_threadpool(client.delete_torrents, hash_list, request.delete_files)
        else:
            await run_in_threadpool(client.perform_action, action, hash_list)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Action {action} failed on instance {instance.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    # Only mirrored once the remote confirmed the action
    if action == "delete":
        store.remove_torrents(instance.id, hash_list)

    await refresh_soon(engine, notifier, instance, mirrored=action == "delete")
    return {"success": True}


@router.post("/api/torrents/resume")
async def resume_torrents(
    request: TorrentActionRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    return await run_action("resume", request, store, clients, notifier, engine)


@router.post("/api/torrents/pause")
async def pause_torrents(
    request: TorrentActionRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    return await run_action("pause", request, store, clients, notifier, engine)


@router.post("/api/torrents/reannounce")
async def reannounce_torrents(
    request: TorrentActionRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    return await run_action("reannounce", request, store, clients, notifier, engine)


@router.post("/api/torrents/recheck")
async def recheck_torrents(
    request: TorrentActionRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    return await run_action("recheck", request, store, clients, notifier, engine)


@router.post("/api/torrents/delete")
async def delete_torrents(
    request: TorrentActionRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    """Delete torrents, optionally with their data, and drop them from the cache."""
    return await run_action("delete", request, store, clients, notifier, engine)


@router.post("/api/torrents/setCategory")
async def set_category(
    request: SetCategoryRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    """Assign a category (empty string clears it) and mirror it into the cache."""
    hash_list = require_hashes(request.hashes)
    instance = get_instance_or_404(store, request.container_id)

    client = clients.get(instance)
    await call_remote(
        "set category", client.perform_action, "setCategory", hash_list, {"category": request.category}
    )

    store.apply_category(instance.id, hash_list, request.category)
    await refresh_soon(engine, notifier, instance, mirrored=True)
    return {"success": True}


@router.post("/api/torrents/setTags")
async def set_tags(
    request: SetTagsRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    """
    Add tags to torrents.

    qBittorrent only supports adding and removing tags, so existing tags are
    kept. The cache is not touched; the next sync picks the tags up.
    """
    hash_list = require_hashes(request.hashes)
    instance = get_instance_or_404(store, request.container_id)

    client = clients.get(instance)
    await call_remote("add tags", client.perform_action, "addTags", hash_list, {"tags": request.tags})

    await refresh_soon(engine, notifier, instance)
    return {"success": True}


@router.get("/api/torrents/export")
async def export_torrent(
    info_hash: str = Query(..., alias="hash"),
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """Download the .torrent file of a torrent."""
    instance = get_instance_or_404(store, container_id)
    client = clients.get(instance)
    content = await call_remote("export torrent", client.export_torrent, info_hash)

    return Response(
        content=content,
        media_type="application/x-bittorrent",
        headers={"Content-Disposition": f'attachment; filename="{info_hash}.torrent"'}
    )


@router.post("/api/torrents/add")
async def add_torrents(
    container_id: int = Form(..., alias="containerId"),
    urls: Optional[str] = Form(None),
    savepath: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    paused: bool = Form(False),
    content_layout: Optional[str] = Form(None, alias="contentLayout"),
    ratio_limit: Optional[float] = Form(None, alias="ratioLimit"),
    seeding_time_limit: Optional[int] = Form(None, alias="seedingTimeLimit"),
    up_limit: Optional[int] = Form(None, alias="upLimit"),
    dl_limit: Optional[int] = Form(None, alias="dlLimit"),
    torrents: Optional[List[UploadFile]] = File(None),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients),
    notifier: ChangeNotifier = Depends(get_notifier),
    engine: SyncEngine = Depends(get_engine)
):
    """
    Add torrents from URLs/magnet links and/or uploaded .torrent files.

    The form is adapted to the remote's version (tags, content layout and the
    paused flag changed across qBittorrent releases).
    """
    instance = get_instance_or_404(store, container_id)

    files = []
    for upload in torrents or []:
        content = await upload.read()
        if len(content) > Config.MAX_UPLOAD_SIZE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File {upload.filename} exceeds maximum size"
            )
        files.append((upload.filename or "upload.torrent", content))

    if not files and not urls:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide at least one URL or .torrent file"
        )

    client = clients.get(instance)
    await call_remote(
        "add torrent",
        client.add_torrent,
        files,
        urls=urls,
        savepath=savepath,
        category=category,
        tags=tags,
        paused=paused,
        content_layout=content_layout,
        ratio_limit=ratio_limit,
        seeding_time_limit=seeding_time_limit,
        up_limit=up_limit,
        dl_limit=dl_limit,
    )

    logger.info(f"Added {len(files)} file(s) and urls={bool(urls)} to instance {instance.id}")
    await refresh_soon(engine, notifier, instance)
    return {"success": True}


# -----------------------------------------------------------------------------
# Live details (not cached)
# -----------------------------------------------------------------------------

@router.get("/api/torrents/categories")
async def list_categories(
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get categories", clients.get(instance).get_categories)


@router.post("/api/torrents/createCategory")
async def create_category(
    request: CategoryRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, request.container_id)
    await call_remote(
        "create category", clients.get(instance).create_category, request.category, request.save_path
    )
    return {"success": True}


@router.post("/api/torrents/editCategory")
async def edit_category(
    request: CategoryRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, request.container_id)
    await call_remote(
        "edit category", clients.get(instance).edit_category, request.category, request.save_path
    )
    return {"success": True}


@router.post("/api/torrents/deleteCategory")
async def delete_category(
    request: DeleteCategoryRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    if not request.categories:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields"
        )
    instance = get_instance_or_404(store, request.container_id)
    await call_remote("delete category", clients.get(instance).remove_categories, request.categories)
    return {"success": True}


@router.post("/api/torrents/filePrio")
async def set_file_priority(
    request: FilePriorityRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """Set the download priority of one or more files of a torrent."""
    instance = get_instance_or_404(store, request.container_id)
    await call_remote(
        "set file priority",
        clients.get(instance).set_file_priority,
        request.hash,
        request.id,
        request.priority,
    )
    return {"success": True}


@router.get("/api/torrents/{info_hash}/properties")
async def torrent_properties(
    info_hash: str,
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get properties", clients.get(instance).get_torrent_properties, info_hash)


@router.get("/api/torrents/{info_hash}/trackers")
async def torrent_trackers(
    info_hash: str,
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get trackers", clients.get(instance).get_torrent_trackers, info_hash)


@router.get("/api/torrents/{info_hash}/peers")
async def torrent_peers(
    info_hash: str,
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get peers", clients.get(instance).get_torrent_peers, info_hash)


@router.get("/api/torrents/{info_hash}/files")
async def torrent_files(
    info_hash: str,
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get files", clients.get(instance).get_torrent_files, info_hash)


@router.get("/api/logs")
async def instance_log(
    container_id: int = Query(..., alias="containerId"),
    last_known_id: int = Query(-1, alias="lastKnownId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """Main log of an instance, newer than last_known_id."""
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get log", clients.get(instance).get_log, last_known_id)


@router.get("/api/preferences")
async def instance_preferences(
    container_id: int = Query(..., alias="containerId"),
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    instance = get_instance_or_404(store, container_id)
    return await call_remote("get preferences", clients.get(instance).get_preferences)


@router.get("/api/status")
async def sync_overview(
    store: CacheStore = Depends(get_store),
    notifier: ChangeNotifier = Depends(get_notifier)
):
    """Latest sync outcome per instance and the number of live clients."""
    instances = []
    for instance in store.list_instances():
        sync = store.get_sync_status(instance.id)
        instances.append({
            "containerId": instance.id,
            "name": instance.name,
            "last_sync": sync.last_sync if sync else None,
            "status": sync.status if sync else None,
            "error": sync.error if sync else None,
        })

    return {"instances": instances, "live_clients": notifier.client_count}
