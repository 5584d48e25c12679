import json


def read_events(response):
    return [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]


def test_list_images(client):
    response = client.get("/api/images")
    assert response.status_code == 200
    assert response.json() == {"images": ["web-shell-backend:default"]}


def test_check_image(client):
    response = client.get("/api/images/check/default")
    assert response.json() == {
        "environment": "default",
        "image": "web-shell-backend:default",
        "exists": True,
        "outdated": False,
    }
    assert client.get("/api/images/check/minimal").json()["exists"] is False


def test_check_unknown_environment(client):
    response = client.get("/api/images/check/gentoo")
    assert response.status_code == 400
    assert response.json()["detail"] == "Environment must be one of: minimal, default"


def test_build_streams_progress(client, runtime):
    response = client.post("/api/images/build/minimal")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = read_events(response)
    assert [e["status"] for e in events] == ["starting", "building", "building", "completed"]
    assert events[1]["stream"] == "Step 1/3 : FROM debian"
    assert events[-1]["environment"] == "minimal"
    assert "web-shell-backend:minimal" in runtime.images


def test_build_failure_is_streamed(client, runtime):
    runtime.build_error = "The command '/bin/sh -c apt-get install' returned a non-zero code: 100"

    events = read_events(client.post("/api/images/build/default"))

    assert [e["status"] for e in events] == ["starting", "building", "building", "error"]
    assert events[-1]["error"] == runtime.build_error


def test_build_unknown_environment(client):
    assert client.post("/api/images/build/gentoo").status_code == 400


def test_build_requires_admin(secure_client):
    response = secure_client.post(
        "/api/images/build/default", headers={"Authorization": "Bearer alice-token"}
    )
    assert response.status_code == 403
