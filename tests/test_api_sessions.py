from waworker.session_manager import StartResult


def test_start_session_returns_initialization_status(waworker_client):
    client, stub = waworker_client

    response = client.post(
        "/api/whatsapp/sessions", json={"clientId": "acme", "webhook": "http://hooks.test/wa"}
    )

    assert response.status_code == 200
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.json() == {
        "success": True,
        "status": "connecting",
        "message": "Session initialization started",
    }
    assert stub.start_calls == [("acme", "http://hooks.test/wa")]


def test_start_session_reports_failure_in_body(waworker_client):
    client, stub = waworker_client
    stub.start_result = StartResult(False, "connecting", "already initializing")

    response = client.post("/api/whatsapp/sessions", json={"clientId": "acme"})

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["message"] == "already initializing"


def test_start_session_connected_short_circuit_omits_message(waworker_client):
    client, stub = waworker_client
    stub.start_result = StartResult(True, "connected")

    response = client.post("/api/whatsapp/sessions", json={"clientId": "acme"})

    assert response.json() == {"success": True, "status": "connected"}


def test_start_session_rejects_bad_client_id(waworker_client):
    client, stub = waworker_client

    response = client.post("/api/whatsapp/sessions", json={"clientId": "../etc"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"].startswith("clientId")
    assert stub.start_calls == []


def test_status_for_unknown_session_is_disconnected(waworker_client):
    client, _ = waworker_client

    response = client.get("/api/whatsapp/sessions/acme")

    assert response.status_code == 200
    body = response.json()
    assert body["clientId"] == "acme"
    assert body["status"] == "disconnected"
    assert body["connected"] is False
    assert body["qrCode"] is None
    assert body["clientState"] == "unknown"


def test_list_sessions(waworker_client, snapshot_factory):
    client, stub = waworker_client
    stub.snapshots["acme"] = snapshot_factory(
        "acme", "connected", phone_number="15550001", has_client_info=True
    )
    stub.snapshots["beta"] = snapshot_factory("beta", "qr_required", qr_code="data:image/png;base64,AAA")

    response = client.get("/api/whatsapp/sessions")

    assert response.status_code == 200
    body = {item["clientId"]: item for item in response.json()}
    assert body["acme"]["phoneNumber"] == "15550001"
    assert body["acme"]["connected"] is True
    assert body["beta"]["qrCode"].startswith("data:image/png")


def test_path_client_id_is_validated(waworker_client):
    client, _ = waworker_client

    response = client.get("/api/whatsapp/sessions/-bad")

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_restart_check_ready_and_delete(waworker_client):
    client, stub = waworker_client

    restart = client.post("/api/whatsapp/sessions/acme/restart")
    assert restart.json() == {"success": True, "message": "Session restart initiated"}

    stub.ready = {"success": False, "message": "Client state: OPENING, has info: False"}
    ready = client.post("/api/whatsapp/sessions/acme/check-ready")
    assert ready.status_code == 200
    assert ready.json()["success"] is False

    deleted = client.delete("/api/whatsapp/sessions/acme")
    assert deleted.json() == {"success": True, "message": "Session deleted successfully"}


def test_restart_legacy_path(make_client):
    client, stub = make_client(ADMIN_TOKEN="s3cret")

    assert client.post("/api/whatsapp/acme/restart").status_code == 401
    response = client.post("/api/whatsapp/acme/restart", headers={"X-Admin-Token": "s3cret"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Session restart initiated"}
    assert stub.restart_calls == ["acme"]
    assert client.post(
        "/api/whatsapp/-bad/restart", headers={"X-Admin-Token": "s3cret"}
    ).status_code == 400
