"""
Integration Fixtures

Session-scoped fixtures for tests against a running stack (API, Postgres
with pgvector, Ollama). Collected only with RUN_INTEGRATION=1.
"""

import os
import time
from collections.abc import Generator

import httpx
import pytest

BASE_URL = os.getenv("LATTICE_API_URL", "http://localhost:8001")


@pytest.fixture(scope="session")
def wait_for_api():
    """
    Block until the API is ready or timeout expires.

    Polls /health endpoint with 1s intervals for up to 30s.
    Fails the test session if API is unreachable (Docker likely not running).
    """
    url = f"{BASE_URL}/health"
    timeout = 30
    start = time.time()

    print("\n[Test] Waiting for API...")
    while time.time() - start < timeout:
        try:
            res = httpx.get(url, timeout=1.0)
            if res.status_code == 200:
                print("API Ready")
                return
        except httpx.RequestError:
            time.sleep(1)

    pytest.fail("API unreachable. Docker is likely down.")


@pytest.fixture(scope="session")
def api_client(wait_for_api) -> Generator[httpx.Client, None, None]:
    """
    Pre-configured HTTP client rooted at /api/v1.

    Ingestion runs call Ollama, hence the generous timeout.
    """
    with httpx.Client(base_url=f"{BASE_URL}/api/v1", timeout=300.0) as client:
        yield client
