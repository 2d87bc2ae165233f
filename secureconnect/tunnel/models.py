"""Data models for tunnel management."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union


class ConnectionState(Enum):
    """Tunnel connection state"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


class _WasEmpty:
    """Marker for a resolver list that had no servers configured."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "WAS_EMPTY"


WAS_EMPTY = _WasEmpty()


@dataclass(frozen=True)
class ObfuscationParameters:
    """Junk-packet and header parameters for an obfuscation-capable engine"""
    jc: int
    jmin: int
    jmax: int
    s1: int
    s2: int
    h1: int
    h2: int
    h3: int
    h4: int
    key: Optional[str] = None


@dataclass(frozen=True)
class TunnelParameters:
    """Per-session parameters issued by the control plane"""
    private_key: str
    address: str
    dns_servers: Tuple[str, ...]
    peer_public_key: str
    peer_endpoint: str
    allowed_ips: Tuple[str, ...]
    obfuscation: Optional[ObfuscationParameters] = None


@dataclass(frozen=True)
class DNSSnapshot:
    """Resolver configuration captured before the tunnel came up"""
    interface_name: str
    servers: Union[Tuple[str, ...], _WasEmpty]

    @property
    def was_empty(self) -> bool:
        return self.servers is WAS_EMPTY


@dataclass(frozen=True)
class ProxyHandle:
    """Live obfuscation relay child"""
    process_id: int
    listen_address: str
    remote_address: str


@dataclass(frozen=True)
class SessionEndpoint:
    """Address the tunnel engine actually dials for one session"""
    host: str
    port: int
    via_proxy: bool = False

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class Session:
    """Resources acquired by a successful connect, released by disconnect"""
    parameters: TunnelParameters
    endpoint: SessionEndpoint
    config_path: Path
    dns_snapshot: Optional[DNSSnapshot] = None
    proxy_active: bool = False
    engine_override: Optional[str] = None
    connected_at: Optional[datetime] = None
    relay_lost: bool = False

    def take_dns_snapshot(self) -> Optional[DNSSnapshot]:
        snapshot, self.dns_snapshot = self.dns_snapshot, None
        return snapshot


@dataclass(frozen=True)
class ConnectionStatus:
    """Read-only view of the controller state"""
    state: ConnectionState
    reason: Optional[str] = None
    connected_at: Optional[datetime] = None
    tunnel_address: Optional[str] = None
    endpoint: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "connected": self.connected,
            "reason": self.reason,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "tunnel_address": self.tunnel_address,
            "endpoint": self.endpoint,
        }


@dataclass(frozen=True)
class ConnectionEvent:
    """Payload of the connection-changed notification"""
    connected: bool
    state: ConnectionState
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "state": self.state.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class InterfaceCounters:
    bytes_in: int = 0
    bytes_out: int = 0


@dataclass(frozen=True)
class ConnectionStats:
    uptime: str
    address: Optional[str]
    bytes_in: int
    bytes_out: int
    protocol: str

    def to_dict(self) -> dict:
        return {
            "uptime": self.uptime,
            "address": self.address,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "protocol": self.protocol,
        }


@dataclass
class DisconnectResult:
    success: bool
    message: str
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "errors": list(self.errors)}
