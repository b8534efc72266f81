from fastapi import APIRouter, Depends, HTTPException, status
from qb_manager.cache import CacheStore
from qb_manager.client_factory import ClientRegistry
from qb_manager.logger import logger
from qb_manager.models import Instance
from ..schemas import CreateInstanceRequest, UpdateInstanceRequest
from ..dependencies import get_store, get_clients, get_instance_or_404

router = APIRouter(tags=["instances"])

# Changing any of these invalidates the cached session client
CONNECTION_FIELDS = ("host", "port", "username", "secret")


def instance_to_dict(instance: Instance) -> dict:
    """Public view of an instance; the secret is never included."""
    return {
        "id": instance.id,
        "name": instance.name,
        "host": instance.host,
        "port": instance.port,
        "username": instance.username,
        "created_at": instance.created_at.isoformat() if instance.created_at else None,
    }


@router.get("/api/qb-containers")
async def list_instances(store: CacheStore = Depends(get_store)):
    """List all configured qBittorrent instances."""
    return [instance_to_dict(instance) for instance in store.list_instances()]


@router.post("/api/qb-containers")
async def create_instance(request: CreateInstanceRequest):
    """Register a new qBittorrent instance."""
    for field in ("name", "host", "username", "password"):
        if not getattr(request, field):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing required fields"
            )

    instance = Instance.create(
        name=request.name,
        host=request.host,
        port=request.port,
        username=request.username,
        secret=request.password,
    )
    logger.info(f"Added instance {instance.name} ({instance.host}:{instance.port})")
    return instance_to_dict(instance)


@router.put("/api/qb-containers/{instance_id}")
async def update_instance(
    instance_id: int,
    request: UpdateInstanceRequest,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """Update an instance. Empty fields are left unchanged."""
    instance = get_instance_or_404(store, instance_id)

    updates = {}
    for field, value in request.model_dump(exclude_none=True).items():
        if value == "":
            continue
        updates["secret" if field == "password" else field] = value

    if not updates:
        return {"message": "No changes"}

    for field, value in updates.items():
        setattr(instance, field, value)
    instance.save()

    if any(field in updates for field in CONNECTION_FIELDS):
        clients.discard(instance_id)

    logger.info(f"Updated instance {instance_id}")
    return {"message": "Updated successfully"}


@router.delete("/api/qb-containers/{instance_id}")
async def delete_instance(
    instance_id: int,
    store: CacheStore = Depends(get_store),
    clients: ClientRegistry = Depends(get_clients)
):
    """Delete an instance. Its cached torrents and sync status go with it."""
    instance = get_instance_or_404(store, instance_id)
    instance.delete_instance()
    clients.discard(instance_id)

    logger.info(f"Deleted instance {instance_id}")
    return {"message": "Deleted successfully"}
