"""
Database models for the qBittorrent manager.

Instance holds the connection details of one remote qBittorrent Web API.
Torrent is the last-known snapshot of one torrent on one instance, keyed by
(hash, instance). SyncStatus records the outcome of the latest sync attempt
per instance. Torrent and SyncStatus rows cascade when their instance is
deleted.
"""

import datetime
from peewee import (
    Model, AutoField, CharField, TextField, DateTimeField, IntegerField, BigIntegerField,
    FloatField, ForeignKeyField, CompositeKey,
)
from .dbs import sdb as db, ensure_db_dir


class BaseModel(Model):
    class Meta:
        database = db


class Instance(BaseModel):
    """A configured remote qBittorrent endpoint."""
    id = AutoField()
    name = CharField()
    host = CharField()
    port = IntegerField()
    username = CharField()
    secret = CharField()
    created_at = DateTimeField(default=datetime.datetime.now)

    class Meta:
        table_name = "instances"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class Torrent(BaseModel):
    hash = CharField()
    instance = ForeignKeyField(Instance, column_name="instance_id", backref="torrents", on_delete="CASCADE")
    name = TextField()
    size = BigIntegerField()
    progress = FloatField()
    dl_rate = BigIntegerField()
    up_rate = BigIntegerField()
    downloaded = BigIntegerField(default=0)
    uploaded = BigIntegerField(default=0)
    state = CharField()
    eta = BigIntegerField(null=True)
    category = TextField(null=True)
    tags = TextField(null=True)
    tracker = TextField(null=True)
    save_path = TextField(null=True)
    added_on = BigIntegerField(null=True)
    completion_on = BigIntegerField(null=True)
    last_activity = BigIntegerField(null=True)

    class Meta:
        table_name = "torrents"
        primary_key = CompositeKey("hash", "instance")


class SyncStatus(BaseModel):
    instance = ForeignKeyField(Instance, column_name="instance_id", primary_key=True, on_delete="CASCADE")
    last_sync = BigIntegerField(null=True)  # epoch milliseconds
    status = CharField(null=True)  # "success" or "error"
    error = TextField(null=True)

    class Meta:
        table_name = "sync_status"


MODELS = [Instance, Torrent, SyncStatus]


def init_db() -> None:
    """Open the cache database and create any missing tables."""
    if db.database not in (None, ":memory:"):
        ensure_db_dir(db.database)
    if db.is_closed():
        db.connect()
    db.create_tables(MODELS)
