import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from peewee import SqliteDatabase

from qb_manager import models as model_module
from qb_manager.api.main import create_app
from qb_manager.cache import CacheStore
from qb_manager.models import MODELS, Instance
from qb_manager.notifier import ChangeNotifier, LiveConnection
from qb_manager.sync import SyncEngine


@pytest.fixture(autouse=True)
def setup_test_db():
    """Bind the models to a fresh in-memory database for each test."""
    test_db = SqliteDatabase(':memory:', pragmas={"foreign_keys": 1})
    test_db.bind(MODELS, bind_refs=False, bind_backrefs=False)

    old_db = model_module.db
    for model in MODELS:
        model._meta.database = test_db

    test_db.connect()
    test_db.create_tables(MODELS)

    yield test_db

    test_db.drop_tables(MODELS)
    test_db.close()

    for model in MODELS:
        model._meta.database = old_db


class FakeClient:
    """Stands in for QBittorrentClient; records every call."""

    def __init__(self, torrents=None):
        self.torrents = list(torrents or [])
        self.error = None
        self.calls = []
        self.transfer_info = {"dl_rate_limit": 1024, "up_rate_limit": 2048}

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.error is not None:
            raise self.error
        return True

    def list_torrents(self):
        self._call("list_torrents")
        return [dict(t) for t in self.torrents]

    def get_transfer_info(self):
        self._call("get_transfer_info")
        return dict(self.transfer_info)

    def start(self, hashes):
        return self._call("start", list(hashes))

    def stop(self, hashes):
        return self._call("stop", list(hashes))

    def perform_action(self, action, hashes, extra_params=None):
        return self._call(action, list(hashes), extra_params)

    def delete_torrents(self, hashes, delete_files=False):
        return self._call("delete", list(hashes), delete_files)

    def add_torrent(self, torrents=None, **options):
        return self._call("add", list(torrents or []), options)

    def export_torrent(self, info_hash):
        self._call("export", info_hash)
        return b"d8:announce0:e"

    def get_torrent_properties(self, info_hash):
        self._call("properties", info_hash)
        return {"save_path": "/downloads"}

    def get_log(self, last_known_id=-1):
        self._call("log", last_known_id)
        return [{"id": 1, "message": "started"}]

    def close(self):
        pass


class FakeRegistry:
    """Stands in for ClientRegistry with one FakeClient per instance id."""

    def __init__(self):
        self.clients = {}
        self.discarded = []

    def get(self, instance):
        return self.clients.setdefault(instance.id, FakeClient())

    def discard(self, instance_id):
        self.discarded.append(instance_id)
        self.clients.pop(instance_id, None)

    def clear(self):
        self.clients.clear()


class FakeConnection(LiveConnection):
    """A live connection that keeps every message it is sent."""

    def __init__(self, open=True, fail_send=False):
        super().__init__()
        self.open = open
        self.fail_send = fail_send
        self.sent = []
        self.terminated = False

    @property
    def is_open(self):
        return self.open

    async def send_json(self, payload):
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def terminate(self):
        self.open = False
        self.terminated = True

    def of_type(self, msg_type):
        return [m for m in self.sent if m.get("type") == msg_type]


def make_torrent(info_hash, state="downloading", **fields):
    """A /torrents/info entry with sensible defaults."""
    torrent = {
        "hash": info_hash,
        "name": f"torrent-{info_hash}",
        "size": 1000,
        "progress": 0.5,
        "dlspeed": 100,
        "upspeed": 10,
        "downloaded": 500,
        "uploaded": 50,
        "state": state,
        "eta": 60,
        "category": "",
        "tags": "",
        "tracker": "http://tracker.example.org:8080/announce",
        "save_path": "/downloads",
        "added_on": 1700000000,
        "completion_on": -1,
        "last_activity": 1700000100,
    }
    torrent.update(fields)
    return torrent


@pytest.fixture
def store():
    return CacheStore()


@pytest.fixture
def clients():
    return FakeRegistry()


@pytest.fixture
def notifier():
    return ChangeNotifier(heartbeat_interval=30)


@pytest.fixture
def engine(store, clients, notifier):
    engine = SyncEngine(store, clients, notifier, interval_ms=50, max_workers=2)
    yield engine
    engine.shutdown()


@pytest.fixture
def instance():
    return Instance.create(name="seedbox", host="10.0.0.5", port=8080, username="admin", secret="hunter2")


@pytest.fixture
def other_instance():
    return Instance.create(name="nas", host="10.0.0.6", port=8080, username="admin", secret="s3cret")


@pytest.fixture
def app(store, clients, notifier, engine):
    # Startup events are not run: no sync loop, no heartbeat
    return create_app(store=store, clients=clients, notifier=notifier, engine=engine)


@pytest_asyncio.fixture
async def async_client(app):
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
