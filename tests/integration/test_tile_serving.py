"""Integration tests for tile serving through the full application."""
import time

from fastapi.testclient import TestClient

from density_tiles.config import Settings
from density_tiles.main import create_app
from density_tiles.tile_store import TileCoordinate
from fixtures.gateways import StubRenderGateway

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


class TestTileServing:
    """Reference scenarios for GET /{zoom}/{x}/{y}.png"""

    def test_miss_renders_and_persists(self, client, gateway, cache_dir, tile_png):
        response = client.get("/13/4091/2740.png")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["x-cache"] == "MISS"
        assert response.content == tile_png
        assert response.content[:8] == PNG_MAGIC

        assert (cache_dir / "13" / "4091" / "2740.png").read_bytes() == tile_png
        assert len(gateway.calls) == 1

    def test_repeat_served_from_cache(self, client, gateway, tile_png):
        client.get("/13/4091/2740.png")
        response = client.get("/13/4091/2740.png")

        assert response.status_code == 200
        assert response.headers["x-cache"] == "HIT"
        assert response.content == tile_png
        assert len(gateway.calls) == 1

    def test_cache_survives_restart(self, settings, gateway, tile_png):
        """Entries persist across process restarts."""
        with TestClient(create_app(settings, gateway=gateway)) as first:
            first.get("/13/4091/2740.png")

        fresh_gateway = StubRenderGateway()
        with TestClient(create_app(settings, gateway=fresh_gateway)) as second:
            response = second.get("/13/4091/2740.png")

        assert response.status_code == 200
        assert response.content == tile_png
        assert fresh_gateway.calls == []

    def test_no_data_returns_404_without_entry(self, client, cache_dir):
        response = client.get("/13/0/0.png")

        assert response.status_code == 404
        assert response.headers["cache-control"] == "no-store"
        assert response.json()["error"] == "TILE_NOT_FOUND"
        assert not (cache_dir / "13" / "0" / "0.png").exists()

    def test_invalid_zoom_is_client_error(self, client, gateway, cache_dir):
        response = client.get("/abc/1/1.png")

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_TILE_COORDINATES"
        assert gateway.calls == []
        assert not cache_dir.exists() or not any(cache_dir.rglob("*.png"))

    def test_render_failure_is_server_error(self, settings, cache_dir):
        coord = TileCoordinate(13, 1, 1)
        gateway = StubRenderGateway(failures={coord})

        with TestClient(create_app(settings, gateway=gateway)) as client:
            response = client.get("/13/1/1.png")

        assert response.status_code == 502
        assert response.json()["error"] == "RENDER_FAILED"
        assert not (cache_dir / "13" / "1" / "1.png").exists()

    def test_write_failure_still_serves(self, tmp_path, gateway, tile_png):
        """An unwritable cache never costs the caller the tile."""
        blocker = tmp_path / "cache"
        blocker.write_text("not a directory")
        settings = Settings(cache_dir=blocker)

        with TestClient(create_app(settings, gateway=gateway)) as client:
            first = client.get("/13/4091/2740.png")
            second = client.get("/13/4091/2740.png")

        assert first.status_code == 200
        assert first.content == tile_png
        assert first.headers["x-cache"] == "UNCACHED"
        assert second.status_code == 200
        assert len(gateway.calls) == 2

    def test_cache_control_on_success(self, client):
        response = client.get("/13/4091/2740.png")
        assert "max-age" in response.headers["cache-control"]

    def test_security_headers(self, client):
        response = client.get("/13/4091/2740.png")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["cross-origin-resource-policy"] == "cross-origin"


class TestRequestDeadline:
    def test_render_past_deadline_returns_504(self, cache_dir, tile_png):
        coord = TileCoordinate(13, 4091, 2740)
        gateway = StubRenderGateway(tiles={coord: tile_png}, delay=0.5)
        settings = Settings(cache_dir=cache_dir, request_timeout=0.1)

        with TestClient(create_app(settings, gateway=gateway)) as client:
            response = client.get("/13/4091/2740.png")
            assert response.status_code == 504
            assert response.json()["error"] == "REQUEST_TIMEOUT"

            # The shared render finishes in the background and is cached
            path = cache_dir / "13" / "4091" / "2740.png"
            for _ in range(100):
                if path.exists():
                    break
                time.sleep(0.02)
            assert path.read_bytes() == tile_png


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health/")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_health_has_no_side_effects(self, client, gateway, cache_dir):
        client.get("/api/health/")
        assert gateway.calls == []
        assert not any(cache_dir.rglob("*.png"))

    def test_metrics(self, client):
        client.get("/13/4091/2740.png")
        client.get("/13/4091/2740.png")
        client.get("/13/0/0.png")

        stats = client.get("/api/metrics").json()
        assert stats["tile_requests"] == 3
        assert stats["cache_hits"] == 1
        assert stats["renders"] == 2
        assert stats["not_found"] == 1
        assert stats["cache"]["write_count"] == 1
        assert stats["renders_in_flight"] == 0


class TestLifecycle:
    def test_gateway_closed_on_shutdown(self, settings, gateway):
        with TestClient(create_app(settings, gateway=gateway)):
            assert gateway.closed is False
        assert gateway.closed is True

    def test_cache_dir_created_on_startup(self, client, cache_dir):
        assert cache_dir.is_dir()
