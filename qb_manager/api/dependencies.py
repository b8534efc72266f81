from fastapi import Request, HTTPException, status
from qb_manager.cache import CacheStore
from qb_manager.client_factory import ClientRegistry
from qb_manager.models import Instance
from qb_manager.notifier import ChangeNotifier
from qb_manager.sync import SyncEngine


def get_store(request: Request) -> CacheStore:
    return request.app.state.store


def get_clients(request: Request) -> ClientRegistry:
    return request.app.state.clients


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.notifier


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def get_instance_or_404(store: CacheStore, instance_id: int) -> Instance:
    """Look up a configured instance, raising 404 when it does not exist."""
    instance = store.get_instance(instance_id)
    if instance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Container not found"
        )
    return instance
