import json

import pytest
import requests
from fastapi.testclient import TestClient

from conftest import OBFUSCATION
from secureconnect.main import create_app
from secureconnect.tunnel.api_client import ControlPlaneClient
from secureconnect.tunnel.commands import CommandError
from secureconnect.tunnel.exceptions import ControlPlaneError
from secureconnect.tunnel.models import TunnelParameters

CONNECT_RESPONSE = {
    "success": True,
    "config": {
        "privateKey": "cHJpdmF0ZQ==",
        "address": "10.8.0.2/32",
        "dns": "10.8.0.1, 1.1.1.1",
        "publicKey": "Pk==",
        "endpoint": "203.0.113.5:51820",
        "allowedIPs": ["0.0.0.0/0", "::/0"],
        "obfuscation": {
            "Jc": 4, "Jmin": 40, "Jmax": 70, "S1": 15, "S2": 30,
            "H1": 1106457265, "H2": 249455488, "H3": 1209847463, "H4": 1646644382,
        },
    },
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses[(method, url.split("127.0.0.1:3000", 1)[-1])]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(responses, token="tok"):
    client = ControlPlaneClient("https://127.0.0.1:3000/", session=FakeSession(responses))
    client.token = token
    return client


class TestControlPlaneClient:
    def test_login_stores_token(self):
        client = make_client({
            ("POST", "/api/auth/login"): FakeResponse({"success": True, "token": "abc", "user": {"username": "ann"}}),
        }, token=None)

        client.login("ann", "pw")

        method, url, kwargs = client.session.requests[0]
        assert url == "https://127.0.0.1:3000/api/auth/login"
        assert kwargs["json"] == {"username": "ann", "password": "pw"}
        assert "Authorization" not in kwargs["headers"]
        assert client.token == "abc"

    def test_login_rejected(self):
        client = make_client({
            ("POST", "/api/auth/login"): FakeResponse({"success": False, "error": "Invalid credentials"}, 401),
        }, token=None)

        with pytest.raises(ControlPlaneError, match="Invalid credentials"):
            client.login("ann", "bad")
        assert not client.authenticated

    def test_connect_maps_config_payload(self):
        client = make_client({("POST", "/api/vpn/connect"): FakeResponse(CONNECT_RESPONSE)})

        params = client.connect_tunnel()

        assert params == TunnelParameters(
            private_key="cHJpdmF0ZQ==",
            address="10.8.0.2/32",
            dns_servers=("10.8.0.1", "1.1.1.1"),
            peer_public_key="Pk==",
            peer_endpoint="203.0.113.5:51820",
            allowed_ips=("0.0.0.0/0", "::/0"),
            obfuscation=OBFUSCATION,
        )
        assert client.session.requests[0][2]["headers"] == {"Authorization": "Bearer tok"}

    def test_connect_without_obfuscation(self):
        body = {"success": True, "config": dict(CONNECT_RESPONSE["config"], obfuscation=None)}
        client = make_client({("POST", "/api/vpn/connect"): FakeResponse(body)})

        assert client.connect_tunnel().obfuscation is None

    def test_connect_accepts_jitter_field_names(self):
        obfuscation = {
            "jitterCount": 4, "jitterMin": 40, "jitterMax": 70, "s1": 15, "s2": 30,
            "h1": 1106457265, "h2": 249455488, "h3": 1209847463, "h4": 1646644382,
        }
        body = {"success": True, "config": dict(CONNECT_RESPONSE["config"], obfuscation=obfuscation)}
        client = make_client({("POST", "/api/vpn/connect"): FakeResponse(body)})

        assert client.connect_tunnel().obfuscation == OBFUSCATION

    def test_connect_with_malformed_config(self):
        body = {"success": True, "config": {"address": "10.8.0.2/32"}}
        client = make_client({("POST", "/api/vpn/connect"): FakeResponse(body)})

        with pytest.raises(ControlPlaneError, match="Malformed tunnel configuration"):
            client.connect_tunnel()

    def test_application_error_is_surfaced(self):
        client = make_client({
            ("POST", "/api/vpn/connect"): FakeResponse({"success": False, "error": "No active subscription"}, 403),
        })

        with pytest.raises(ControlPlaneError, match="No active subscription"):
            client.connect_tunnel()

    def test_transport_error(self):
        client = make_client({("GET", "/api/vpn/status"): requests.ConnectionError("refused")})

        with pytest.raises(ControlPlaneError, match="unreachable"):
            client.get_status()

    def test_non_json_body(self):
        client = make_client({("GET", "/api/vpn/status"): FakeResponse(ValueError("no json"), 502)})

        with pytest.raises(ControlPlaneError, match="HTTP 502"):
            client.get_status()

    def test_requires_login(self):
        client = make_client({}, token=None)

        with pytest.raises(ControlPlaneError, match="Not authenticated"):
            client.disconnect_tunnel()
        assert client.session.requests == []

    def test_session_round_trip(self, tmp_path):
        path = tmp_path / "state" / "session.json"
        client = make_client({})
        client.user = {"username": "ann"}
        client.save_session(path)

        restored = make_client({}, token=None)

        assert restored.load_session(path)
        assert restored.token == "tok"
        assert json.loads(path.read_text())["user"] == {"username": "ann"}
        assert not make_client({}, token=None).load_session(tmp_path / "missing.json")


@pytest.fixture
def service(controller):
    return TestClient(create_app(controller))


class TestService:
    def test_connect_and_disconnect(self, service, call_log):
        response = service.post("/connect")

        assert response.status_code == 200
        assert response.json()["connection"]["state"] == "connected"

        response = service.get("/connection")
        assert response.json()["last_event"]["connected"] is True

        response = service.post("/disconnect")
        assert response.json() == {"success": True, "message": "Disconnected successfully", "errors": []}

    def test_negotiation_failure_is_bad_gateway(self, service, client):
        client.connect_error = ControlPlaneError("subscription expired")

        response = service.post("/connect")

        assert response.status_code == 502
        assert "subscription expired" in response.json()["detail"]

    def test_bring_up_failure_is_server_error(self, service, platform):
        platform.up_error = CommandError("wg-quick up failed", stderr="Operation not permitted")

        response = service.post("/connect")

        assert response.status_code == 500
        assert "Operation not permitted" in response.json()["detail"]

    def test_disconnect_reports_absorbed_errors(self, service, platform):
        service.post("/connect")
        platform.down_error = CommandError("wg-quick down failed", stderr="device busy")

        body = service.post("/disconnect").json()

        assert body["success"] is False
        assert body["errors"][0].startswith("Interface down failed")

    def test_stats_and_status(self, service):
        service.post("/connect")

        assert service.get("/stats").json()["address"] == "10.8.0.2/32"
        assert service.get("/status").json()["tunnel_address"] == "10.8.0.2"

    def test_portal_selection(self, service, client):
        response = service.post("/portal", json={"endpoint": "https://portal-2.example:3000"})

        assert response.status_code == 200
        assert client.base_url == "https://portal-2.example:3000"

    def test_login(self, service, call_log, settings):
        assert service.post("/login", json={"username": "ann", "password": "secret"}).status_code == 200
        assert ("save_session", settings.session_token_path) in call_log
        assert service.post("/login", json={"username": "ann", "password": "wrong"}).status_code == 401

    def test_status_page(self, service):
        response = service.get("/")

        assert response.status_code == 200
        assert "disconnected" in response.text

    def test_shutdown_disconnects(self, controller):
        with TestClient(create_app(controller)) as service:
            service.post("/connect")
        assert not controller.snapshot().connected
