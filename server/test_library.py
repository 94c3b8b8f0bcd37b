"""Tests for bookmarks, tags and collections."""

import pytest

from conftest import bearer


@pytest.fixture
def radar(seed_repository):
    return seed_repository("octo/radar")


class TestBookmarks:

    def test_add_list_delete(self, client, headers, radar):
        created = client.post("/api/bookmarks", json={"repository_id": radar.id, "notes": "look later"},
                              headers=headers)
        assert created.status_code == 201
        assert created.json()["repository"]["full_name"] == "octo/radar"

        listed = client.get("/api/bookmarks", headers=headers).json()
        assert [b["notes"] for b in listed] == ["look later"]

        assert client.delete(f"/api/bookmarks/{radar.id}", headers=headers).json() == {"success": True}
        assert client.get("/api/bookmarks", headers=headers).json() == []

    def test_duplicate_bookmark(self, client, headers, radar):
        client.post("/api/bookmarks", json={"repository_id": radar.id}, headers=headers)
        response = client.post("/api/bookmarks", json={"repository_id": radar.id}, headers=headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_unknown_repository(self, client, headers):
        assert client.post("/api/bookmarks", json={"repository_id": 31337}, headers=headers).status_code == 404

    def test_delete_missing(self, client, headers, radar):
        assert client.delete(f"/api/bookmarks/{radar.id}", headers=headers).status_code == 404

    def test_requires_auth(self, client):
        assert client.get("/api/bookmarks").status_code == 401


class TestTags:

    def test_tag_lifecycle(self, client, headers, radar):
        tag = client.post("/api/tags", json={"name": "cli", "color": "#123ABC"}, headers=headers).json()

        assigned = client.post(f"/api/repositories/{radar.id}/tags", json={"tag_id": tag["id"]}, headers=headers)
        assert assigned.status_code == 201

        tags = client.get(f"/api/repositories/{radar.id}/tags", headers=headers).json()
        assert [t["name"] for t in tags] == ["cli"]

        client.delete(f"/api/repositories/{radar.id}/tags/{tag['id']}", headers=headers)
        assert client.get(f"/api/repositories/{radar.id}/tags", headers=headers).json() == []

    def test_duplicate_name(self, client, headers):
        client.post("/api/tags", json={"name": "cli"}, headers=headers)
        assert client.post("/api/tags", json={"name": "cli"}, headers=headers).status_code == 409

    def test_bad_color(self, client, headers):
        assert client.post("/api/tags", json={"name": "cli", "color": "orange"}, headers=headers).status_code == 422

    def test_tags_are_private(self, client, headers, make_user, radar):
        tag = client.post("/api/tags", json={"name": "cli"}, headers=headers).json()
        other = bearer(make_user("other@example.com"))

        response = client.post(f"/api/repositories/{radar.id}/tags", json={"tag_id": tag["id"]}, headers=other)

        assert response.status_code == 404
        assert client.get("/api/tags", headers=other).json() == []

    def test_deleting_tag_removes_assignments(self, client, headers, radar):
        tag = client.post("/api/tags", json={"name": "cli"}, headers=headers).json()
        client.post(f"/api/repositories/{radar.id}/tags", json={"tag_id": tag["id"]}, headers=headers)

        client.delete(f"/api/tags/{tag['id']}", headers=headers)

        assert client.get(f"/api/repositories/{radar.id}/tags", headers=headers).json() == []


class TestCollections:

    def create(self, client, headers, **fields):
        body = {"name": "Favourites", **fields}
        return client.post("/api/collections", json=body, headers=headers).json()

    def test_items_keep_insertion_order(self, client, headers, seed_repository):
        first = seed_repository("octo/radar")
        second = seed_repository("octo/sonar")
        collection = self.create(client, headers)

        client.post(f"/api/collections/{collection['id']}/items", json={"repository_id": second.id}, headers=headers)
        detail = client.post(f"/api/collections/{collection['id']}/items", json={"repository_id": first.id},
                             headers=headers).json()

        assert [item["repository"]["full_name"] for item in detail["items"]] == ["octo/sonar", "octo/radar"]
        assert [item["position"] for item in detail["items"]] == [0, 1]
        assert detail["item_count"] == 2

    def test_duplicate_item(self, client, headers, radar):
        collection = self.create(client, headers)
        url = f"/api/collections/{collection['id']}/items"
        client.post(url, json={"repository_id": radar.id}, headers=headers)

        assert client.post(url, json={"repository_id": radar.id}, headers=headers).status_code == 409

    def test_remove_item(self, client, headers, radar):
        collection = self.create(client, headers)
        client.post(f"/api/collections/{collection['id']}/items", json={"repository_id": radar.id}, headers=headers)

        client.delete(f"/api/collections/{collection['id']}/items/{radar.id}", headers=headers)

        detail = client.get(f"/api/collections/{collection['id']}", headers=headers).json()
        assert detail["items"] == []

    def test_private_collection_hidden_from_others(self, client, headers):
        collection = self.create(client, headers)

        assert client.get(f"/api/collections/{collection['id']}").status_code == 404
        assert client.get(f"/api/collections/{collection['id']}", headers=headers).status_code == 200

    def test_public_collection_is_readable(self, client, headers):
        collection = self.create(client, headers, is_public=True)

        response = client.get(f"/api/collections/{collection['id']}")

        assert response.status_code == 200
        assert response.json()["is_public"] is True

    def test_update_and_delete(self, client, headers):
        collection = self.create(client, headers)

        updated = client.put(f"/api/collections/{collection['id']}", json={"name": "Renamed", "is_public": True},
                             headers=headers).json()
        assert updated["name"] == "Renamed"
        assert updated["is_public"] is True

        client.delete(f"/api/collections/{collection['id']}", headers=headers)
        assert client.get("/api/collections", headers=headers).json() == []

    def test_only_owner_can_modify(self, client, headers, make_user):
        collection = self.create(client, headers, is_public=True)
        other = bearer(make_user("other@example.com"))

        response = client.put(f"/api/collections/{collection['id']}", json={"name": "Mine"}, headers=other)
        assert response.status_code == 404
