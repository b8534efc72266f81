"""
Local cache of remote torrent state.

CacheStore is the write side of the cache. The sync engine calls reconcile()
once per instance per tick; the API layer calls the mirroring methods after a
remote action succeeded. Reads live in queries.py.

reconcile() compares every live torrent with its cached row before writing, so
an unchanged remote list produces no writes and reports no change. Within one
call the upsert pass runs before the stale-row delete, which runs before the
sync status upsert, all inside one transaction.
"""

from typing import Any, Dict, Iterable, List, Optional

from peewee import IntegrityError, chunked

from .errors import InstanceGone
from .logger import logger
from .models import Instance, SyncStatus, Torrent
from .utils import epoch_ms


# Columns mirrored from the remote, besides the (hash, instance) key
SNAPSHOT_FIELDS = [
    "name", "size", "progress", "dl_rate", "up_rate", "downloaded", "uploaded",
    "state", "eta", "category", "tags", "tracker", "save_path",
    "added_on", "completion_on", "last_activity",
]

# Web API field names that differ from ours
REMOTE_FIELD_NAMES = {
    "dl_rate": "dlspeed",
    "up_rate": "upspeed",
}

# SQLite limits the number of bound variables per statement
DELETE_BATCH_SIZE = 500


def snapshot_from_remote(torrent: Dict[str, Any]) -> Dict[str, Any]:
    """Map one /torrents/info entry to the cached column values (without the key)."""
    snapshot = {}
    for field in SNAPSHOT_FIELDS:
        snapshot[field] = torrent.get(REMOTE_FIELD_NAMES.get(field, field))
    snapshot["downloaded"] = snapshot["downloaded"] or 0
    snapshot["uploaded"] = snapshot["uploaded"] or 0
    return snapshot


def is_foreign_key_violation(error: IntegrityError) -> bool:
    return "FOREIGN KEY" in str(error).upper()


class CacheStore:
    def __init__(self, database=None):
        # Default to whatever database the models are bound to at call time
        self._database = database

    @property
    def database(self):
        return self._database or Torrent._meta.database

    def list_instances(self) -> List[Instance]:
        return list(Instance.select().order_by(Instance.id))

    def get_instance(self, instance_id: int) -> Optional[Instance]:
        return Instance.get_or_none(Instance.id == instance_id)

    def cached_snapshots(self, instance_id: int) -> Dict[str, Dict[str, Any]]:
        """Return {hash: snapshot} for every cached torrent of an instance."""
        columns = [Torrent.hash] + [getattr(Torrent, field) for field in SNAPSHOT_FIELDS]
        query = Torrent.select(*columns).where(Torrent.instance == instance_id).dicts()
        snapshots = {}
        for row in query:
            info_hash = row.pop("hash")
            snapshots[info_hash] = row
        return snapshots

    def reconcile(self, instance_id: int, torrents: Iterable[Dict[str, Any]]) -> bool:
        """
        Make the cached torrents of an instance match its live list.

        Args:
            instance_id: Instance the list was fetched from
            torrents: Entries from /torrents/info

        Returns:
            True if any row was inserted, overwritten or deleted

        Raises:
            InstanceGone: If the instance was deleted concurrently
        """
        live = {t["hash"]: snapshot_from_remote(t) for t in torrents}
        changed = False

        try:
            with self.database.atomic():
                cached = self.cached_snapshots(instance_id)

                for info_hash, snapshot in live.items():
                    if cached.get(info_hash) == snapshot:
                        continue
                    Torrent.replace(hash=info_hash, instance=instance_id, **snapshot).execute()
                    changed = True

                if not live:
                    if cached:
                        Torrent.delete().where(Torrent.instance == instance_id).execute()
                        changed = True
                else:
                    stale = [h for h in cached if h not in live]
                    for batch in chunked(stale, DELETE_BATCH_SIZE):
                        Torrent.delete().where(
                            (Torrent.instance == instance_id) & (Torrent.hash.in_(batch))
                        ).execute()
                        changed = True

                self._write_sync_status(instance_id, "success", None)
        except IntegrityError as e:
            if is_foreign_key_violation(e):
                raise InstanceGone(instance_id) from e
            raise

        return changed

    def _write_sync_status(self, instance_id: int, status: str, error: Optional[str]) -> None:
        SyncStatus.replace(
            instance=instance_id,
            last_sync=epoch_ms(),
            status=status,
            error=error,
        ).execute()

    def record_sync_error(self, instance_id: int, message: str) -> None:
        """Upsert an error outcome for the instance's latest sync attempt."""
        try:
            self._write_sync_status(instance_id, "error", message)
        except IntegrityError as e:
            if is_foreign_key_violation(e):
                raise InstanceGone(instance_id) from e
            raise

    def get_sync_status(self, instance_id: int) -> Optional[SyncStatus]:
        return SyncStatus.get_or_none(SyncStatus.instance == instance_id)

    # -------------------------------------------------------------------------
    # Mirroring of confirmed remote actions
    # -------------------------------------------------------------------------

    def remove_torrents(self, instance_id: int, hashes: List[str]) -> int:
        removed = 0
        with self.database.atomic():
            for batch in chunked(hashes, DELETE_BATCH_SIZE):
                removed += Torrent.delete().where(
                    (Torrent.instance == instance_id) & (Torrent.hash.in_(batch))
                ).execute()
        logger.debug(f"Removed {removed} cached torrents from instance {instance_id}")
        return removed

    def apply_category(self, instance_id: int, hashes: List[str], category: str) -> int:
        updated = 0
        with self.database.atomic():
            for batch in chunked(hashes, DELETE_BATCH_SIZE):
                updated += Torrent.update(category=category).where(
                    (Torrent.instance == instance_id) & (Torrent.hash.in_(batch))
                ).execute()
        return updated
