import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

os.environ.setdefault("SECURECONNECT_LOG_DIR", tempfile.mkdtemp(prefix="secureconnect-logs-"))

import pytest

from secureconnect.settings import Settings
from secureconnect.tunnel.controller import ConnectionController
from secureconnect.tunnel.exceptions import ControlPlaneError
from secureconnect.tunnel.models import (
    DNSSnapshot,
    InterfaceCounters,
    ObfuscationParameters,
    TunnelParameters,
)
from secureconnect.tunnel.platforms import PlatformAdapter

PRIVILEGED = {"restore_dns", "up", "down", "force_remove"}


def make_params(obfuscation: Optional[ObfuscationParameters] = None) -> TunnelParameters:
    return TunnelParameters(
        private_key="cHJpdmF0ZQ==",
        address="10.8.0.2/32",
        dns_servers=("10.8.0.1",),
        peer_public_key="Pk==",
        peer_endpoint="203.0.113.5:51820",
        allowed_ips=("0.0.0.0/0",),
        obfuscation=obfuscation,
    )


OBFUSCATION = ObfuscationParameters(
    jc=4, jmin=40, jmax=70, s1=15, s2=30, h1=1106457265, h2=249455488, h3=1209847463, h4=1646644382,
)


class RecordingPlatform(PlatformAdapter):
    """Platform double that records every call into a shared log."""

    name = "recording"

    def __init__(self, log):
        super().__init__("wg-quick", runner=None)
        self.log = log
        self.snapshot = DNSSnapshot("eth0", ("192.168.1.1",))
        self.snapshot_error: Optional[Exception] = None
        self.up_error: Optional[Exception] = None
        self.down_error: Optional[Exception] = None
        self.restore_error: Optional[Exception] = None
        self.lingers = False
        self.counters = InterfaceCounters(1000, 2000)
        self.written_config: Optional[str] = None

    def calls(self, *names):
        return [c for c in self.log if c[0] in names]

    def privileged_calls(self):
        return [c for c in self.log if c[0] in PRIVILEGED]

    def _detect_active_interface(self):
        self.log.append(("detect",))
        return "eth0"

    def snapshot_dns(self, interface):
        self.log.append(("snapshot_dns", interface))
        if self.snapshot_error:
            raise self.snapshot_error
        return self.snapshot

    def restore_dns(self, snapshot):
        self.log.append(("restore_dns", snapshot))
        if self.restore_error:
            raise self.restore_error

    def bring_interface_up(self, config_path, engine_override=None):
        self.written_config = Path(config_path).read_text()
        self.log.append(("up", config_path, engine_override))
        if self.up_error:
            raise self.up_error

    def bring_interface_down(self, config_path, engine_override=None):
        self.log.append(("down", config_path, engine_override))
        if self.down_error:
            raise self.down_error

    def interface_lingers(self, interface):
        return self.lingers

    def force_remove_interface(self, interface, session_name):
        self.log.append(("force_remove", interface, session_name))

    def read_interface_counters(self, interface):
        self.log.append(("counters", interface))
        return self.counters


class FakeClient:
    def __init__(self, log):
        self.log = log
        self.params = make_params()
        self.connect_error: Optional[Exception] = None
        self.disconnect_error: Optional[Exception] = None
        self.status = {"success": True, "connected": True, "tunnelIP": "10.8.0.2", "connectedAt": "2026-10-18T10:00:00"}
        self.status_error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.disconnect_gate: Optional[threading.Event] = None
        self.disconnect_entered = threading.Event()
        self.base_url = "https://portal.example"
        self.token = "token"
        self.user = None

    def set_base_url(self, base_url):
        self.base_url = base_url

    def login(self, username, password):
        if password != "secret":
            raise ControlPlaneError("Invalid credentials")
        self.user = {"username": username}
        return {"success": True, "token": self.token, "user": self.user}

    def save_session(self, path):
        self.log.append(("save_session", path))

    def connect_tunnel(self):
        self.log.append(("api_connect",))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.connect_error:
            raise self.connect_error
        return self.params

    def disconnect_tunnel(self):
        self.log.append(("api_disconnect",))
        self.disconnect_entered.set()
        if self.disconnect_gate is not None:
            self.disconnect_gate.wait(5)
        if self.disconnect_error:
            raise self.disconnect_error
        return {"success": True}

    def get_status(self):
        if self.status_error:
            raise self.status_error
        return self.status


class FakeProxy:
    def __init__(self, log):
        self.log = log
        self.on_exit = None
        self.start_error: Optional[Exception] = None
        self.running = False

    def start(self, remote_host, remote_port, key):
        self.log.append(("proxy_start", remote_host, remote_port, key))
        if self.start_error:
            raise self.start_error
        self.running = True
        return "127.0.0.1:51821"

    def stop(self):
        self.log.append(("proxy_stop",))
        self.running = False


@pytest.fixture
def call_log():
    return []


@pytest.fixture
def settings(tmp_path):
    s = Settings()
    s.config_dir = tmp_path / "state"
    s.obfuscation_engine_path = "/usr/local/bin/amneziawg-go"
    return s


@pytest.fixture
def platform(call_log):
    return RecordingPlatform(call_log)


@pytest.fixture
def client(call_log):
    return FakeClient(call_log)


@pytest.fixture
def proxy(call_log):
    return FakeProxy(call_log)


@pytest.fixture
def controller(settings, client, platform, proxy):
    return ConnectionController(settings, client, platform, proxy)


@pytest.fixture
def transitions(controller):
    """States visited by the controller, starting from its current one."""
    visited = [controller.state]
    original = controller._transition

    def recording(state, reason=None):
        visited.append(state)
        original(state, reason)

    controller._transition = recording
    return visited

