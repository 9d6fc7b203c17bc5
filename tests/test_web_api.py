from __future__ import annotations

from typing import Any, Dict, Iterator

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from app.services.scheduler import build_scheduler
from app.services.settings import SettingsStore
from app.web import create_app
from app.web.server import RangeNotSatisfiable, parse_range_header

from conftest import ARTIFACT_BYTES, FakeBackend, FakeLoadMonitor, write_audio


def _client(temp_config, library, backend: FakeBackend) -> TestClient:
    store = SettingsStore(temp_config)
    scheduler = build_scheduler(
        temp_config,
        backend=backend,
        load_monitor=FakeLoadMonitor(cores=4),
        settings_store=store,
    )
    app = create_app(library, config=temp_config, scheduler=scheduler, settings_store=store)
    return TestClient(app)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def client(temp_config, sample_library, backend) -> Iterator[TestClient]:
    with _client(temp_config, sample_library, backend) as test_client:
        yield test_client


def _book(client: TestClient, name: str) -> Dict[str, Any]:
    books = client.get("/api/books").json()["data"]
    summary = next(book for book in books if book["name"] == name)
    return client.get(f"/api/books/{summary['id']}").json()["data"]


def _episode_url(book: Dict[str, Any], season: int, episode: int, prefix: str = "/api/audio") -> str:
    season_payload = book["seasons"][season]
    episode_payload = season_payload["episodes"][episode]
    return f"{prefix}/{book['id']}/{season_payload['id']}/{episode_payload['id']}"


def test_parse_range_header_forms() -> None:
    assert parse_range_header("bytes=0-9", 100) == (0, 9)
    assert parse_range_header("bytes=90-", 100) == (90, 99)
    assert parse_range_header("bytes=50-500", 100) == (50, 99)
    assert parse_range_header("bytes=-10", 100) == (90, 99)
    for bad in ("bytes=100-", "bytes=9-3", "items=0-1", "bytes=-", "bytes=0-1,5-6"):
        with pytest.raises(RangeNotSatisfiable):
            parse_range_header(bad, 100)


def test_list_books_and_detail(client: TestClient) -> None:
    response = client.get("/api/books")

    assert response.status_code == 200
    names = [book["name"] for book in response.json()["data"]]
    assert names == ["Short Stories", "The Long Voyage"]

    voyage = _book(client, "The Long Voyage")
    first = voyage["seasons"][0]["episodes"][0]
    assert first["needsTranscode"] is True
    assert first["transcoded"] is False
    assert client.get("/api/books/unknown").status_code == 404


def test_stream_supports_byte_ranges(client: TestClient) -> None:
    url = _episode_url(_book(client, "Short Stories"), 0, 0)

    full = client.get(url)
    assert full.status_code == 200
    assert full.headers["accept-ranges"] == "bytes"
    assert full.headers["content-type"] == "audio/mpeg"
    assert len(full.content) == 4096

    partial = client.get(url, headers={"Range": "bytes=0-9"})
    assert partial.status_code == 206
    assert partial.headers["content-range"] == "bytes 0-9/4096"
    assert len(partial.content) == 10

    suffix = client.get(url, headers={"Range": "bytes=-96"})
    assert suffix.status_code == 206
    assert suffix.headers["content-range"] == "bytes 4000-4095/4096"

    invalid = client.get(url, headers={"Range": "bytes=5000-"})
    assert invalid.status_code == 416
    assert invalid.headers["content-range"] == "bytes */4096"


def test_stream_transcodes_on_demand(client: TestClient, backend: FakeBackend) -> None:
    url = _episode_url(_book(client, "The Long Voyage"), 0, 0)

    response = client.get(url)

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert len(response.content) == ARTIFACT_BYTES
    assert len(backend.calls) == 1

    client.get(url, headers={"Range": "bytes=0-99"})
    assert len(backend.calls) == 1
    voyage = _book(client, "The Long Voyage")
    assert voyage["seasons"][0]["episodes"][0]["transcoded"] is True


def test_failed_transcode_returns_server_error(temp_config, sample_library) -> None:
    backend = FakeBackend(failing={"01 Departure.wma"})
    with _client(temp_config, sample_library, backend) as client:
        url = _episode_url(_book(client, "The Long Voyage"), 0, 0)
        response = client.get(url)

    assert response.status_code == 500


def test_missing_episode_returns_not_found(client: TestClient) -> None:
    voyage = _book(client, "The Long Voyage")

    response = client.get(f"/api/audio/{voyage['id']}/nope/nope")

    assert response.status_code == 404


def test_download_renames_transcoded_file(client: TestClient) -> None:
    url = _episode_url(_book(client, "The Long Voyage"), 0, 0, prefix="/api/audio/download")

    response = client.get(url)

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment")
    assert "Departure.mp3" in disposition.replace("%20", " ")


def test_pretranscode_validation(client: TestClient) -> None:
    assert client.post("/api/audio/pretranscode", json={}).status_code == 400
    assert (
        client.post(
            "/api/audio/pretranscode",
            json={"bookId": "unknown", "seasonIndex": 0, "episodeIndex": 0},
        ).status_code
        == 404
    )


def test_pretranscode_queues_following_episodes(client: TestClient, backend: FakeBackend) -> None:
    voyage = _book(client, "The Long Voyage")

    response = client.post(
        "/api/audio/pretranscode",
        json={"bookId": voyage["id"], "seasonIndex": 0, "episodeIndex": 0},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"queued": 3}}


def test_status_and_cancel(client: TestClient) -> None:
    status = client.get("/api/audio/transcode-status").json()
    assert status["success"] is True
    assert status["data"]["queueLength"] == 0
    assert status["data"]["ceiling"] == 2
    assert status["data"]["autoTranscode"] is True

    cancel = client.post("/api/audio/transcode-cancel").json()
    assert cancel == {
        "success": True,
        "data": {"cancelled": False, "dropped": 0, "inFlight": 0},
    }


def test_config_values_are_clamped(client: TestClient, temp_config) -> None:
    assert client.get("/api/config").json()["data"] == {
        "autoTranscode": True,
        "autoTranscodeCount": 5,
    }

    response = client.put("/api/config", json={"autoTranscodeCount": 50, "autoTranscode": "off"})

    assert response.json()["data"] == {"autoTranscode": False, "autoTranscodeCount": 20}
    assert SettingsStore(temp_config).load().auto_transcode_count == 20


def test_rescan_pre_transcodes_new_books(client: TestClient, sample_library) -> None:
    write_audio(sample_library.root / "Fresh Arrival" / "Part 1.wma")
    write_audio(sample_library.root / "Fresh Arrival" / "Part 2.mp3")

    response = client.post("/api/library/rescan")

    data = response.json()["data"]
    assert [book["name"] for book in data["added"]] == ["Fresh Arrival"]
    assert data["queued"] == 1
    assert data["books"] == 3


def test_user_data_routes(client: TestClient) -> None:
    assert client.put("/api/user/favorites/book-1", json={"name": "Voyage"}).status_code == 200
    favorites = client.get("/api/user/favorites").json()["data"]
    assert [item["bookId"] for item in favorites] == ["book-1"]
    assert client.delete("/api/user/favorites/book-1").json() == {"success": True}
    assert client.get("/api/user/favorites").json()["data"] == []

    assert client.get("/api/user/progress/book-1").status_code == 404
    client.put("/api/user/progress/book-1", json={"seasonIndex": 0, "episodeIndex": 2, "updatedAt": 7})
    assert client.get("/api/user/progress/book-1").json()["data"]["episodeIndex"] == 2
    assert len(client.get("/api/user/progress").json()["data"]) == 1

    client.put("/api/user/settings", json={"resumeRewindSeconds": 10})
    assert client.get("/api/user/settings").json()["data"] == {"resumeRewindSeconds": 10}
    assert client.put("/api/user/settings", json=[1, 2]).status_code == 400
