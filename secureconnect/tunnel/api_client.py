"""HTTP client for the remote control plane."""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ControlPlaneError
from .models import ObfuscationParameters, TunnelParameters
from .utils import write_private_file
from ..logging_utility import logger


def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value]


class ObfuscationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    jc: int = Field(validation_alias=AliasChoices("jc", "Jc", "jitterCount"))
    jmin: int = Field(validation_alias=AliasChoices("jmin", "Jmin", "jitterMin"))
    jmax: int = Field(validation_alias=AliasChoices("jmax", "Jmax", "jitterMax"))
    s1: int = Field(validation_alias=AliasChoices("s1", "S1"))
    s2: int = Field(validation_alias=AliasChoices("s2", "S2"))
    h1: int = Field(validation_alias=AliasChoices("h1", "H1"))
    h2: int = Field(validation_alias=AliasChoices("h2", "H2"))
    h3: int = Field(validation_alias=AliasChoices("h3", "H3"))
    h4: int = Field(validation_alias=AliasChoices("h4", "H4"))
    key: Optional[str] = None


class TunnelConfigPayload(BaseModel):
    """The `config` object returned by the connect call."""

    private_key: str = Field(validation_alias=AliasChoices("privateKey", "private_key"))
    address: str
    dns: List[str] = Field(default_factory=list)
    peer_public_key: str = Field(
        validation_alias=AliasChoices("peerPublicKey", "publicKey", "peer_public_key")
    )
    endpoint: str
    allowed_ips: List[str] = Field(validation_alias=AliasChoices("allowedIPs", "allowed_ips"))
    obfuscation: Optional[ObfuscationPayload] = None

    @field_validator("dns", "allowed_ips", mode="before")
    @classmethod
    def _split_lists(cls, value: Any) -> List[str]:
        return _as_list(value)

    def to_parameters(self) -> TunnelParameters:
        obfs = None
        if self.obfuscation is not None:
            obfs = ObfuscationParameters(**self.obfuscation.model_dump())
        return TunnelParameters(
            private_key=self.private_key,
            address=self.address,
            dns_servers=tuple(self.dns),
            peer_public_key=self.peer_public_key,
            peer_endpoint=self.endpoint,
            allowed_ips=tuple(self.allowed_ips),
            obfuscation=obfs,
        )


class ControlPlaneClient:
    """Bearer-token client for login, connect, disconnect and status."""

    def __init__(self, base_url: str, timeout: float = 15.0, verify_tls: bool = True,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    def set_base_url(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    @property
    def authenticated(self) -> bool:
        return self.token is not None

    def _request(self, method: str, path: str, authenticated: bool = True, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if authenticated:
            if not self.token:
                raise ControlPlaneError("Not authenticated")
            headers["Authorization"] = f"Bearer {self.token}"
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=self.timeout, verify=self.verify_tls, **kwargs
            )
        except requests.RequestException as e:
            raise ControlPlaneError(f"Control plane unreachable: {str(e)}") from e

        try:
            data = response.json()
        except ValueError:
            raise ControlPlaneError(f"HTTP {response.status_code}: invalid response from {path}")
        if not isinstance(data, dict):
            raise ControlPlaneError(f"Unexpected response from {path}")
        if not data.get("success"):
            raise ControlPlaneError(data.get("error") or f"HTTP {response.status_code} from {path}")
        return data

    def login(self, username: str, password: str) -> Dict[str, Any]:
        data = self._request(
            "POST", "/api/auth/login", authenticated=False,
            json={"username": username, "password": password},
        )
        self.token = data.get("token")
        self.user = data.get("user")
        if not self.token:
            raise ControlPlaneError("Login response did not include a token")
        logger.info(f"Logged in to {self.base_url} as {(self.user or {}).get('username', username)}")
        return data

    def save_session(self, path: Path) -> None:
        write_private_file(path, json.dumps({"token": self.token, "user": self.user}))

    def load_session(self, path: Path) -> bool:
        """Reuse a token saved by an earlier login; returns True when one was found."""
        if not os.path.exists(path):
            return False
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read saved session {path}: {str(e)}")
            return False
        self.token = data.get("token")
        self.user = data.get("user")
        return self.token is not None

    def connect_tunnel(self) -> TunnelParameters:
        data = self._request("POST", "/api/vpn/connect")
        try:
            return TunnelConfigPayload.model_validate(data.get("config") or {}).to_parameters()
        except ValidationError as e:
            raise ControlPlaneError(f"Malformed tunnel configuration: {e.error_count()} invalid field(s)") from e

    def disconnect_tunnel(self) -> Dict[str, Any]:
        return self._request("POST", "/api/vpn/disconnect")

    def get_status(self) -> Dict[str, Any]:
        return self._request("GET", "/api/vpn/status")
