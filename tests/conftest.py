"""Shared fixtures for the device client tests."""

import json
import time
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import jwt
import pytest

from dcr_device_client.config import DeviceClientConfig
from dcr_device_client.credential_store import CredentialStore, StoreBackend
from dcr_device_client.key_custody import KeyCustody
from dcr_device_client.models import DeviceRegistration
from dcr_device_client.transport import TransportClient

SERVER_URL = "https://dhis2.example.org"
IAT_SECRET = "enrollment-signing-secret-for-tests-only"

Route = Union[httpx.Response, Callable[[httpx.Request], Any]]


class FakeClock:
    """Controllable time source in epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuthServer:
    """Records requests and answers them from a route table."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], List[Route]] = {}

    def add(self, method: str, path: str, *responses: Route) -> None:
        """Queue responses; the last one is repeated once the queue drains."""
        self.routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not found"})
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(route):
            return route(request)
        return route

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path == path
        ]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_iat(exp_offset: float = 60, now: float = None, **claims: Any) -> str:
    """Create an Initial Access Token expiring ``exp_offset`` seconds from ``now``."""
    if now is None:
        now = time.time()
    payload = {"sub": "enrollment", "exp": int(now + exp_offset), **claims}
    return jwt.encode(payload, IAT_SECRET, algorithm="HS256")


def form_data(request: httpx.Request) -> Dict[str, str]:
    from urllib.parse import parse_qsl

    return dict(parse_qsl(request.content.decode()))


def json_body(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return DeviceClientConfig(
        device_id="test-device",
        device_version="14",
        device_attestation="python_3.12",
        storage_dir=tmp_path / "store",
    )


@pytest.fixture
def key_custody():
    return KeyCustody()


@pytest.fixture
def credential_store():
    return CredentialStore(backend=StoreBackend.MEMORY)


@pytest.fixture
def server():
    return FakeAuthServer()


@pytest.fixture
def transport(server):
    return TransportClient(transport=server.transport)


@pytest.fixture
def registration(key_custody, credential_store, clock):
    """Store a registration whose key is held by custody."""
    key_id = key_custody.generate_key_pair()
    registration = DeviceRegistration(
        server_url=SERVER_URL,
        client_id="client_abc",
        key_id=key_id,
        registered_at_epoch_ms=int(clock() * 1000),
    )
    credential_store.save_registration(registration)
    return registration
