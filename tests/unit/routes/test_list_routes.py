import pytest

from ranksync.core.identity import identity_of

X = {"artist": "Artist X", "title": "Album X", "release_date": "2023-01-01"}
Y = {"artist": "Artist Y", "title": "Album Y", "release_date": "2023-02-01"}
Z = {"artist": "Artist Z", "title": "Album Z", "release_date": "2023-03-01"}


def _create(client, name="Best of 2023", year=2023, items=None):
    resp = client.post("/api/lists", json={"name": name, "year": year, "items": items or [X, Y]})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["list"]["id"]


def _identities(body):
    return [item["identity"] for item in body["items"]]


@pytest.mark.unit
def test_list_routes_require_login(client):
    resp = client.get("/api/lists")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "authentication_required"}
    assert client.patch("/api/lists/abc/items", json={}).status_code == 401


@pytest.mark.unit
def test_create_fetch_and_index(auth_client):
    list_id = _create(auth_client)

    body = auth_client.get(f"/api/lists/{list_id}").get_json()
    assert body["name"] == "Best of 2023"
    assert _identities(body) == [identity_of(X), identity_of(Y)]

    index = auth_client.get("/api/lists").get_json()["lists"]
    assert [entry["id"] for entry in index] == [list_id]
    assert index[0]["count"] == 2


@pytest.mark.unit
def test_other_users_cannot_see_or_write_list(auth_client, other_client):
    list_id = _create(auth_client)

    assert other_client.get(f"/api/lists/{list_id}").status_code == 404
    resp = other_client.patch(f"/api/lists/{list_id}/items", json={"added": [Z]})
    assert resp.status_code == 404
    assert resp.get_json()["kind"] == "not_found"


@pytest.mark.unit
def test_error_statuses(auth_client):
    list_id = _create(auth_client)

    assert auth_client.post("/api/lists", json={"name": ""}).status_code == 400
    dup = auth_client.post("/api/lists", json={"name": "Best of 2023", "year": 2023})
    assert dup.status_code == 409
    assert dup.get_json()["error"] == "duplicate_name"

    bad_order = auth_client.put(f"/api/lists/{list_id}/reorder", json={"order": ["nope::nope::"]})
    assert bad_order.status_code == 400
    assert bad_order.get_json()["error"] == "unknown_entries"

    assert auth_client.put(f"/api/lists/{list_id}/items", json={}).status_code == 400
    assert auth_client.post(f"/api/lists/{list_id}/main", json={"is_main": "yes"}).status_code == 400
    not_object = auth_client.patch(f"/api/lists/{list_id}/items", json=[1, 2])
    assert not_object.status_code == 400


@pytest.mark.unit
def test_incremental_add_of_duplicate_reports_it(auth_client):
    list_id = _create(auth_client)

    resp = auth_client.patch(f"/api/lists/{list_id}/items", json={"added": [X]})

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["duplicates"] == [identity_of(X)]
    assert body["change_count"] == 0
    assert _identities(body["list"]) == [identity_of(X), identity_of(Y)]


@pytest.mark.unit
def test_write_is_pushed_to_other_subscribers_only(app, auth_client):
    list_id = _create(auth_client)
    broadcaster = app.extensions["list_broadcaster"]
    a = broadcaster.register(auth_client.user_id, list_id)
    b = broadcaster.register(auth_client.user_id, list_id)

    resp = auth_client.put(
        f"/api/lists/{list_id}/reorder",
        json={"order": [identity_of(Y), identity_of(X)]},
        headers={"X-Socket-ID": a.socket_id},
    )

    assert resp.status_code == 200
    assert a.queue.empty()
    event = b.queue.get_nowait()
    assert event["kind"] == "reordered"
    assert event["list_id"] == list_id
    assert [item["identity"] for item in event["items"]] == [identity_of(Y), identity_of(X)]
    assert event["list"]["name"] == "Best of 2023"
    assert "items" not in event["list"]


@pytest.mark.unit
def test_noop_writes_are_not_broadcast(app, auth_client):
    list_id = _create(auth_client)
    sub = app.extensions["list_broadcaster"].register(auth_client.user_id, list_id)

    auth_client.patch(f"/api/lists/{list_id}/items", json={"added": [X]})
    auth_client.put(f"/api/lists/{list_id}/reorder", json={"order": [identity_of(X)]})

    assert sub.queue.empty()


@pytest.mark.unit
def test_failed_broadcast_does_not_fail_write(app, auth_client):
    list_id = _create(auth_client)

    class Exploding:
        def broadcast(self, *args, **kwargs):
            raise RuntimeError("queue gone")

    app.extensions["list_broadcaster"] = Exploding()
    resp = auth_client.patch(f"/api/lists/{list_id}/items", json={"added": [Z]})
    assert resp.status_code == 200
    assert resp.get_json()["added"] == [identity_of(Z)]


@pytest.mark.unit
def test_full_replace_and_metadata_patch(app, auth_client):
    list_id = _create(auth_client)
    sub = app.extensions["list_broadcaster"].register(auth_client.user_id, list_id)

    resp = auth_client.put(f"/api/lists/{list_id}/items", json={"items": [Z, Z, X]})
    assert resp.status_code == 200
    assert resp.get_json()["duplicates"] == [identity_of(Z)]
    assert sub.queue.get_nowait()["kind"] == "replaced"

    resp = auth_client.patch(f"/api/lists/{list_id}", json={"name": "Renamed", "ignored": 1})
    assert resp.status_code == 200
    assert resp.get_json()["list"]["name"] == "Renamed"
    event = sub.queue.get_nowait()
    assert event["kind"] == "metadata"
    assert event["list"]["name"] == "Renamed"


@pytest.mark.unit
def test_set_main_notifies_list_that_lost_main(app, auth_client):
    first = _create(auth_client, name="First")
    second = _create(auth_client, name="Second")
    assert auth_client.post(f"/api/lists/{first}/main", json={"is_main": True}).status_code == 200
    watcher = app.extensions["list_broadcaster"].register(auth_client.user_id, first)

    resp = auth_client.post(f"/api/lists/{second}/main", json={"is_main": True})

    body = resp.get_json()
    assert resp.status_code == 200
    assert body["previous_main_ids"] == [first]
    assert body["list"]["is_main"] is True
    event = watcher.queue.get_nowait()
    assert event["kind"] == "metadata"
    assert event["list"]["is_main"] is False


@pytest.mark.unit
def test_locked_year_returns_403_for_main_list(auth_client):
    list_id = _create(auth_client)
    auth_client.post(f"/api/lists/{list_id}/main", json={"is_main": True})
    assert auth_client.post("/api/years/2023/lock").status_code == 200

    resp = auth_client.patch(f"/api/lists/{list_id}/items", json={"added": [Z]})
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "year_locked"
    assert resp.get_json()["details"]["year_locked"] is True


@pytest.mark.unit
def test_delete_list_broadcasts_deleted(app, auth_client):
    list_id = _create(auth_client)
    sub = app.extensions["list_broadcaster"].register(auth_client.user_id, list_id)

    resp = auth_client.delete(f"/api/lists/{list_id}")

    assert resp.status_code == 200
    assert resp.get_json()["list"]["id"] == list_id
    assert sub.queue.get_nowait()["kind"] == "deleted"
    assert auth_client.get(f"/api/lists/{list_id}").status_code == 404


@pytest.mark.unit
def test_single_user_mode_attributes_lists_to_system_user(database_url):
    import app as app_module
    from ranksync.database.db_manager import User

    application = app_module.create_app(
        {"TESTING": True, "SQLALCHEMY_DATABASE_URI": database_url, "LOGIN_DISABLED": True}
    )
    try:
        c = application.test_client()
        list_id = _create(c, name="Mine")
        with application.app_context():
            system = User.query.filter_by(is_system=True).one()
            owner_id = application.extensions["list_service"].get_list(list_id, system.id)["user_id"]
        assert owner_id == system.id
    finally:
        application.extensions["aggregate_recomputer"].shutdown()
