"""
Tests for the HTTP API.

Services are built by conftest with fake session clients; startup events do
not run, so no sync loop is active while these tests run.
"""

import pytest
import requests

from qb_manager.errors import ActionFailure
from qb_manager.models import Instance, SyncStatus, Torrent

from conftest import FakeClient, FakeConnection, make_torrent


def first_instance_torrents(ccc_category=""):
    return [
        make_torrent("aaa", state="downloading", category="linux", tags="iso, x64", dlspeed=300),
        make_torrent("bbb", state="uploading", progress=1.0, category="linux", added_on=1700000500),
        make_torrent("ccc", state="pausedDL", tracker="udp://open.tracker.example:1337", save_path="/data/tv",
                     category=ccc_category),
    ]


@pytest.fixture
def seeded(store, clients, instance, other_instance):
    """Two instances with cached torrents and a fake client each."""
    store.reconcile(instance.id, first_instance_torrents())
    store.reconcile(other_instance.id, [
        make_torrent("ddd", state="stalledUP", progress=1.0, name="debian.iso", tags="iso"),
    ])
    clients.clients[instance.id] = FakeClient()
    clients.clients[other_instance.id] = FakeClient()
    return instance, other_instance


class TestInstanceEndpoints:
    @pytest.mark.asyncio
    async def test_create_and_list(self, async_client):
        response = await async_client.post("/api/qb-containers", json={
            "name": "seedbox",
            "host": "10.0.0.9",
            "port": 8080,
            "username": "admin",
            "password": "hunter2",
        })

        assert response.status_code == 200
        created = response.json()
        assert created["name"] == "seedbox"
        assert "password" not in created and "secret" not in created
        assert Instance.get_by_id(created["id"]).secret == "hunter2"

        listed = (await async_client.get("/api/qb-containers")).json()
        assert [i["id"] for i in listed] == [created["id"]]
        assert "secret" not in listed[0]

    @pytest.mark.asyncio
    async def test_create_missing_fields(self, async_client):
        response = await async_client.post("/api/qb-containers", json={"name": "x", "host": "h"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_drops_cached_client(self, async_client, instance, clients):
        response = await async_client.put(f"/api/qb-containers/{instance.id}", json={"password": "new"})

        assert response.status_code == 200
        assert Instance.get_by_id(instance.id).secret == "new"
        assert clients.discarded == [instance.id]

    @pytest.mark.asyncio
    async def test_rename_keeps_client(self, async_client, instance, clients):
        await async_client.put(f"/api/qb-containers/{instance.id}", json={"name": "renamed"})

        assert Instance.get_by_id(instance.id).name == "renamed"
        assert clients.discarded == []

    @pytest.mark.asyncio
    async def test_update_without_changes(self, async_client, instance):
        response = await async_client.put(f"/api/qb-containers/{instance.id}", json={"name": ""})
        assert response.json() == {"message": "No changes"}

    @pytest.mark.asyncio
    async def test_update_missing(self, async_client):
        response = await async_client.put("/api/qb-containers/999", json={"name": "x"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_cascades(self, async_client, seeded, clients):
        instance, other = seeded

        response = await async_client.delete(f"/api/qb-containers/{instance.id}")

        assert response.status_code == 200
        assert Instance.get_or_none(Instance.id == instance.id) is None
        assert Torrent.select().where(Torrent.instance == instance.id).count() == 0
        assert SyncStatus.get_or_none(SyncStatus.instance == instance.id) is None
        assert Torrent.select().where(Torrent.instance == other.id).count() == 1
        assert instance.id in clients.discarded

    @pytest.mark.asyncio
    async def test_delete_missing(self, async_client):
        response = await async_client.delete("/api/qb-containers/999")
        assert response.status_code == 404


class TestCachedViews:
    @pytest.mark.asyncio
    async def test_paginated_list(self, async_client, seeded):
        instance, other = seeded

        body = (await async_client.get("/api/torrents", params={"limit": 2})).json()

        assert body["total"] == 4
        assert body["page"] == 1
        assert body["limit"] == 2
        assert len(body["data"]) == 2
        # Newest first
        assert body["data"][0]["hash"] == "bbb"
        assert body["data"][0]["instance_name"] == instance.name
        assert body["data"][0]["instance_id"] == instance.id

    @pytest.mark.asyncio
    async def test_paginated_list_filters(self, async_client, seeded):
        by_status = (await async_client.get("/api/torrents", params={"status": "completed"})).json()
        assert sorted(t["hash"] for t in by_status["data"]) == ["bbb", "ddd"]
        assert by_status["total"] == 2

        by_search = (await async_client.get("/api/torrents", params={"search": "debian"})).json()
        assert [t["hash"] for t in by_search["data"]] == ["ddd"]

        by_path = (await async_client.get("/api/torrents", params={"save_path": "/data"})).json()
        assert [t["hash"] for t in by_path["data"]] == ["ccc"]

    @pytest.mark.asyncio
    async def test_unknown_sort_falls_back(self, async_client, seeded):
        response = await async_client.get("/api/torrents", params={"sort": "hash; DROP TABLE torrents"})

        assert response.status_code == 200
        assert response.json()["total"] == 4

    @pytest.mark.asyncio
    async def test_instance_list(self, async_client, seeded):
        instance, _ = seeded

        body = (await async_client.get("/api/torrents/list", params={
            "containerId": instance.id, "sortBy": "name", "sortOrder": "asc",
        })).json()

        assert body["total"] == 3
        assert [t["hash"] for t in body["torrents"]] == ["aaa", "bbb", "ccc"]

        paused = (await async_client.get("/api/torrents/list", params={
            "containerId": instance.id, "status": "paused",
        })).json()
        assert [t["hash"] for t in paused["torrents"]] == ["ccc"]

    @pytest.mark.asyncio
    async def test_instance_list_by_save_path(self, async_client, seeded):
        instance, _ = seeded

        body = (await async_client.get("/api/torrents/list", params={
            "containerId": instance.id, "save_path": "/data/tv",
        })).json()

        assert [t["hash"] for t in body["torrents"]] == ["ccc"]
        assert body["total"] == 1

    @pytest.mark.asyncio
    async def test_sort_by_qbittorrent_rate_names(self, async_client, seeded):
        instance, _ = seeded

        by_instance = (await async_client.get("/api/torrents/list", params={
            "containerId": instance.id, "sortBy": "dlspeed", "sortOrder": "desc",
        })).json()
        assert by_instance["torrents"][0]["hash"] == "aaa"

        by_page = (await async_client.get("/api/torrents", params={"sort": "dlspeed", "order": "desc"})).json()
        assert by_page["data"][0]["hash"] == "aaa"

        ascending = (await async_client.get("/api/torrents/list", params={
            "containerId": instance.id, "sortBy": "dlspeed", "sortOrder": "asc",
        })).json()
        assert ascending["torrents"][-1]["hash"] == "aaa"

    @pytest.mark.asyncio
    async def test_instance_list_requires_instance(self, async_client):
        response = await async_client.get("/api/torrents/list")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stats(self, async_client, seeded):
        instance, _ = seeded

        stats = (await async_client.get("/api/torrents/stats", params={"containerId": instance.id})).json()

        assert stats["total"] == 3
        assert stats["downloading"] == 1
        assert stats["seeding"] == 1
        assert stats["paused"] == 1
        assert stats["active"] == 2
        assert stats["completed"] == 1
        assert stats["total_dl_rate"] == 500
        assert stats["dl_limit"] == 1024
        assert stats["up_limit"] == 2048

    @pytest.mark.asyncio
    async def test_stats_when_remote_down(self, async_client, seeded, clients):
        instance, _ = seeded
        clients.clients[instance.id].error = requests.ConnectionError("refused")

        stats = (await async_client.get("/api/torrents/stats", params={"containerId": instance.id})).json()

        assert stats["total"] == 3
        assert stats["dl_limit"] == 0
        assert stats["up_limit"] == 0

    @pytest.mark.asyncio
    async def test_filters(self, async_client, seeded):
        facets = (await async_client.get("/api/torrents/filters")).json()

        assert facets["categories"] == [{"label": "linux", "count": 2}]
        assert facets["trackers"] == [
            {"label": "open.tracker.example", "count": 1},
            {"label": "tracker.example.org", "count": 3},
        ]
        assert {"label": "/data/tv", "count": 1} in facets["save_paths"]
        assert facets["tags"] == [{"label": "iso", "count": 2}, {"label": "x64", "count": 1}]

    @pytest.mark.asyncio
    async def test_filters_per_instance(self, async_client, seeded):
        _, other = seeded

        facets = (await async_client.get("/api/torrents/filters", params={"containerId": other.id})).json()

        assert facets["categories"] == []
        assert facets["tags"] == [{"label": "iso", "count": 1}]


class TestActions:
    @pytest.mark.asyncio
    async def test_resume(self, async_client, seeded, clients):
        instance, _ = seeded

        response = await async_client.post("/api/torrents/resume", json={
            "hashes": "aaa|ccc", "containerId": instance.id,
        })

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert clients.clients[instance.id].calls == [("start", ["aaa", "ccc"])]

    @pytest.mark.asyncio
    async def test_pause_with_list(self, async_client, seeded, clients):
        instance, _ = seeded

        await async_client.post("/api/torrents/pause", json={"hashes": ["aaa"], "containerId": instance.id})

        assert clients.clients[instance.id].calls == [("stop", ["aaa"])]

    @pytest.mark.asyncio
    async def test_recheck(self, async_client, seeded, clients):
        instance, _ = seeded

        await async_client.post("/api/torrents/recheck", json={"hashes": "aaa", "containerId": instance.id})

        assert clients.clients[instance.id].calls == [("recheck", ["aaa"], None)]

    @pytest.mark.asyncio
    async def test_delete_mirrors_cache(self, async_client, seeded, clients):
        instance, other = seeded

        response = await async_client.post("/api/torrents/delete", json={
            "hashes": "aaa|bbb", "containerId": instance.id, "deleteFiles": True,
        })

        assert response.status_code == 200
        assert clients.clients[instance.id].calls == [("delete", ["aaa", "bbb"], True)]
        assert [t.hash for t in Torrent.select().where(Torrent.instance == instance.id)] == ["ccc"]
        assert Torrent.select().where(Torrent.instance == other.id).count() == 1

    @pytest.mark.asyncio
    async def test_failed_delete_leaves_cache(self, async_client, seeded, clients):
        instance, _ = seeded
        clients.clients[instance.id].error = requests.HTTPError("HTTP 500")

        response = await async_client.post("/api/torrents/delete", json={
            "hashes": "aaa", "containerId": instance.id,
        })

        assert response.status_code == 500
        assert "HTTP 500" in response.json()["detail"]
        assert Torrent.select().where(Torrent.instance == instance.id).count() == 3

    @pytest.mark.asyncio
    async def test_missing_fields(self, async_client, seeded):
        instance, _ = seeded

        no_hashes = await async_client.post("/api/torrents/pause", json={"containerId": instance.id})
        empty_hashes = await async_client.post("/api/torrents/pause", json={"hashes": "", "containerId": instance.id})
        no_instance = await async_client.post("/api/torrents/pause", json={"hashes": "aaa"})

        assert no_hashes.status_code == 400
        assert empty_hashes.status_code == 400
        assert no_instance.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_instance(self, async_client):
        response = await async_client.post("/api/torrents/pause", json={"hashes": "aaa", "containerId": 999})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_set_category_mirrors_cache(self, async_client, seeded, clients):
        instance, _ = seeded

        response = await async_client.post("/api/torrents/setCategory", json={
            "hashes": "ccc", "category": "tv", "containerId": instance.id,
        })

        assert response.status_code == 200
        assert clients.clients[instance.id].calls == [("setCategory", ["ccc"], {"category": "tv"})]
        row = Torrent.get((Torrent.hash == "ccc") & (Torrent.instance == instance.id))
        assert row.category == "tv"

    @pytest.mark.asyncio
    async def test_failed_set_category_leaves_cache(self, async_client, seeded, clients):
        instance, _ = seeded
        clients.clients[instance.id].error = ActionFailure("refused")

        response = await async_client.post("/api/torrents/setCategory", json={
            "hashes": "ccc", "category": "tv", "containerId": instance.id,
        })

        assert response.status_code == 500
        row = Torrent.get((Torrent.hash == "ccc") & (Torrent.instance == instance.id))
        assert row.category == ""

    @pytest.mark.asyncio
    async def test_set_tags_uses_add_tags(self, async_client, seeded, clients):
        instance, _ = seeded

        await async_client.post("/api/torrents/setTags", json={
            "hashes": "aaa", "tags": "new", "containerId": instance.id,
        })

        assert clients.clients[instance.id].calls == [("addTags", ["aaa"], {"tags": "new"})]
        # Not mirrored; the next sync brings the tags in
        row = Torrent.get((Torrent.hash == "aaa") & (Torrent.instance == instance.id))
        assert row.tags == "iso, x64"


class TestLiveRefresh:
    @pytest.mark.asyncio
    async def test_delete_is_announced(self, async_client, seeded, clients, notifier, engine):
        instance, _ = seeded
        watcher = FakeConnection()
        await notifier.register(watcher)
        client = clients.clients[instance.id]
        client.torrents = first_instance_torrents()[2:]

        response = await async_client.post("/api/torrents/delete", json={
            "hashes": "aaa|bbb", "containerId": instance.id,
        })
        await engine.join()

        assert response.status_code == 200
        # Announced once; the follow-up sync finds the cache already current
        [message] = watcher.of_type("torrents_updated")
        assert message["containerId"] == instance.id
        assert ("list_torrents",) in client.calls

    @pytest.mark.asyncio
    async def test_set_category_is_announced(self, async_client, seeded, clients, notifier, engine):
        instance, _ = seeded
        watcher = FakeConnection()
        await notifier.register(watcher)
        clients.clients[instance.id].torrents = first_instance_torrents(ccc_category="tv")

        await async_client.post("/api/torrents/setCategory", json={
            "hashes": "ccc", "category": "tv", "containerId": instance.id,
        })
        await engine.join()

        assert len(watcher.of_type("torrents_updated")) == 1

    @pytest.mark.asyncio
    async def test_no_announcement_for_unmirrored_action(self, async_client, seeded, clients, notifier, engine):
        instance, _ = seeded
        watcher = FakeConnection()
        await notifier.register(watcher)
        clients.clients[instance.id].torrents = first_instance_torrents()

        await async_client.post("/api/torrents/recheck", json={"hashes": "aaa", "containerId": instance.id})
        await engine.join()

        assert watcher.of_type("torrents_updated") == []


class TestRemoteEndpoints:
    @pytest.mark.asyncio
    async def test_export(self, async_client, seeded):
        instance, _ = seeded

        response = await async_client.get("/api/torrents/export", params={"hash": "aaa", "containerId": instance.id})

        assert response.status_code == 200
        assert response.content == b"d8:announce0:e"
        assert response.headers["content-type"] == "application/x-bittorrent"
        assert 'filename="aaa.torrent"' in response.headers["content-disposition"]

    @pytest.mark.asyncio
    async def test_add_torrent_upload(self, async_client, seeded, clients):
        instance, _ = seeded

        response = await async_client.post(
            "/api/torrents/add",
            data={"containerId": str(instance.id), "category": "linux", "paused": "true"},
            files=[("torrents", ("a.torrent", b"d4:infoe", "application/x-bittorrent"))],
        )

        assert response.status_code == 200
        [(name, files, options)] = clients.clients[instance.id].calls
        assert name == "add"
        assert files == [("a.torrent", b"d4:infoe")]
        assert options["category"] == "linux"
        assert options["paused"] is True

    @pytest.mark.asyncio
    async def test_add_torrent_url(self, async_client, seeded, clients):
        instance, _ = seeded

        response = await async_client.post(
            "/api/torrents/add",
            data={"containerId": str(instance.id), "urls": "magnet:?xt=urn:btih:abc"},
        )

        assert response.status_code == 200
        [(_, files, options)] = clients.clients[instance.id].calls
        assert files == []
        assert options["urls"] == "magnet:?xt=urn:btih:abc"

    @pytest.mark.asyncio
    async def test_add_torrent_needs_input(self, async_client, seeded):
        instance, _ = seeded

        response = await async_client.post("/api/torrents/add", data={"containerId": str(instance.id)})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_properties(self, async_client, seeded):
        instance, _ = seeded

        response = await async_client.get("/api/torrents/aaa/properties", params={"containerId": instance.id})

        assert response.json() == {"save_path": "/downloads"}

    @pytest.mark.asyncio
    async def test_logs(self, async_client, seeded, clients):
        instance, _ = seeded

        response = await async_client.get("/api/logs", params={"containerId": instance.id, "lastKnownId": 5})

        assert response.status_code == 200
        assert clients.clients[instance.id].calls == [("log", 5)]

    @pytest.mark.asyncio
    async def test_remote_failure_is_500(self, async_client, seeded, clients):
        instance, _ = seeded
        clients.clients[instance.id].error = requests.ConnectionError("refused")

        response = await async_client.get("/api/torrents/aaa/properties", params={"containerId": instance.id})

        assert response.status_code == 500
        assert response.json()["detail"] == "refused"

    @pytest.mark.asyncio
    async def test_status(self, async_client, seeded, store):
        instance, other = seeded
        store.record_sync_error(other.id, "timed out")

        body = (await async_client.get("/api/status")).json()

        by_id = {i["containerId"]: i for i in body["instances"]}
        assert by_id[instance.id]["status"] == "success"
        assert by_id[other.id]["status"] == "error"
        assert by_id[other.id]["error"] == "timed out"
        assert body["live_clients"] == 0
