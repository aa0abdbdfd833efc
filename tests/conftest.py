"""
Global pytest configuration and fixtures for density tile server tests.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Make the package importable without installation
SRC_PATH = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(SRC_PATH))

from density_tiles.config import Settings  # noqa: E402
from density_tiles.main import create_app  # noqa: E402
from density_tiles.tile_store import TileCoordinate, TileStore  # noqa: E402
from fixtures.gateways import StubRenderGateway, make_png  # noqa: E402


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    """Empty cache root for one test."""
    return tmp_path / "cache"


@pytest.fixture
def settings(cache_dir: Path) -> Settings:
    """Settings pointing at a temporary cache."""
    return Settings(cache_dir=cache_dir, environment="production")


@pytest.fixture
def store(cache_dir: Path) -> TileStore:
    return TileStore(cache_dir)


@pytest.fixture
def tile_png() -> bytes:
    """A valid rendered tile."""
    return make_png()


@pytest.fixture
def sample_coord() -> TileCoordinate:
    """Tile used in the reference scenarios."""
    return TileCoordinate(13, 4091, 2740)


@pytest.fixture
def gateway(sample_coord, tile_png) -> StubRenderGateway:
    """Gateway that can render only the sample tile."""
    return StubRenderGateway(tiles={sample_coord: tile_png})


@pytest.fixture
def app(settings, gateway):
    return create_app(settings, gateway=gateway)


@pytest.fixture
def client(app):
    """HTTP client for the in-process app (runs lifespan)."""
    with TestClient(app) as test_client:
        yield test_client


# Markers for different test types
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: fast unit tests (< 1s each)")
    config.addinivalue_line(
        "markers", "integration: tests that exercise the full application"
    )
    config.addinivalue_line("markers", "security: security-related tests")
    config.addinivalue_line(
        "markers", "slow: slow tests that can be skipped in development"
    )


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on location."""
    for item in items:
        path = str(item.fspath)
        if "unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "security/" in path:
            item.add_marker(pytest.mark.security)

        if "slow" in item.name.lower() or "stress" in item.name.lower():
            item.add_marker(pytest.mark.slow)


def pytest_runtest_setup(item):
    """Skip tests based on markers and conditions."""
    if "slow" in item.keywords and not item.config.getoption("--runslow", default=False):
        pytest.skip("slow test (use --runslow to run)")


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run slow tests"
    )
