def test_health_counts(waworker_client):
    client, stub = waworker_client
    stub.stats = {"live": 3, "initializing": 1, "with_presence": 2}

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "live": 3, "initializing": 1, "connected": 2}


def test_health_handles_stats_failure(waworker_client):
    client, stub = waworker_client
    stub.raise_stats = True

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "live": 0, "initializing": 0, "connected": 0}


def test_metrics_exposition(waworker_client):
    client, _ = waworker_client

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
