"""Per-OS network, resolver and tunnel-interface operations."""

import ipaddress
import re
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import dns.resolver
import psutil

from .command_factory import DARWIN_RUNTIME_DIR, TunnelCommandFactory
from .commands import CommandError
from .exceptions import InterfaceError
from .models import WAS_EMPTY, DNSSnapshot, InterfaceCounters
from .utils import run_command
from ..logging_utility import logger

Runner = Callable[..., Tuple[str, str]]

# Messages printed by the engines when the interface is already gone
_MISSING_INTERFACE_MARKERS = (
    "is not a wireguard interface",
    "does not exist",
    "no such device",
    "not found",
    "is not installed",
)


def _is_missing_interface(error: CommandError) -> bool:
    text = f"{error} {error.stderr}".lower()
    return any(marker in text for marker in _MISSING_INTERFACE_MARKERS)


def _extract_addresses(text: str) -> List[str]:
    """Collect IP addresses in the order they appear."""
    servers = []
    for token in re.split(r"[\s,]+", text):
        try:
            address = str(ipaddress.ip_address(token.strip()))
        except ValueError:
            continue
        if address not in servers:
            servers.append(address)
    return servers


class PlatformAdapter(ABC):
    """Capability set the connection controller needs from the host OS."""

    name = "generic"
    default_interface = "eth0"

    def __init__(self, engine_path: str, runner: Runner = run_command):
        self.engine_path = engine_path
        self.run = runner

    def detect_active_interface(self) -> str:
        """Best-effort guess of the uplink interface; never raises."""
        try:
            detected = self._detect_active_interface()
        except Exception as e:
            logger.warning(f"Failed to detect network interface: {str(e)}")
            detected = None
        return detected or self.default_interface

    @abstractmethod
    def _detect_active_interface(self) -> Optional[str]:
        ...

    @abstractmethod
    def snapshot_dns(self, interface: str) -> DNSSnapshot:
        ...

    @abstractmethod
    def restore_dns(self, snapshot: Optional[DNSSnapshot]) -> None:
        ...

    @abstractmethod
    def bring_interface_up(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def bring_interface_down(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        ...

    def resolve_interface_name(self, session_name: str) -> str:
        return session_name

    def interface_lingers(self, interface: str) -> bool:
        return False

    def force_remove_interface(self, interface: str, session_name: str) -> None:
        return None

    def read_interface_counters(self, interface: str) -> InterfaceCounters:
        counters = psutil.net_io_counters(pernic=True).get(interface)
        if counters is None:
            raise InterfaceError(f"No counters for interface {interface}")
        return InterfaceCounters(bytes_in=counters.bytes_recv, bytes_out=counters.bytes_sent)

    def _quick_down(self, config_path: Path, engine_override: Optional[str]) -> None:
        try:
            self.run(TunnelCommandFactory.quick_down(self.engine_path, config_path, engine_override))
        except CommandError as e:
            if not _is_missing_interface(e):
                raise
            logger.info(f"Interface for {config_path.name} already down")


class LinuxAdapter(PlatformAdapter):
    name = "linux"
    default_interface = "eth0"
    resolv_conf = "/etc/resolv.conf"

    def _detect_active_interface(self) -> Optional[str]:
        stdout, _ = self.run(TunnelCommandFactory.show_default_route())
        match = re.search(r"\bdev\s+(\S+)", stdout)
        return match.group(1) if match else None

    def snapshot_dns(self, interface: str) -> DNSSnapshot:
        try:
            stdout, _ = self.run(TunnelCommandFactory.show_link_dns(interface))
            servers = _extract_addresses(stdout.split("):", 1)[-1])
        except CommandError as e:
            logger.info(f"resolvectl unavailable ({str(e).splitlines()[0]}), reading {self.resolv_conf}")
            try:
                resolver = dns.resolver.Resolver(filename=self.resolv_conf)
                servers = [str(s) for s in resolver.nameservers]
            except dns.resolver.NoResolverConfiguration:
                servers = []
        return DNSSnapshot(interface, tuple(servers) if servers else WAS_EMPTY)

    def restore_dns(self, snapshot: Optional[DNSSnapshot]) -> None:
        # wg-quick down hands the resolver back through resolvconf
        if snapshot is not None:
            logger.info(f"DNS restoration for {snapshot.interface_name} handled by wg-quick")

    def bring_interface_up(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        self.run(TunnelCommandFactory.quick_up(self.engine_path, config_path, engine_override))

    def bring_interface_down(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        self._quick_down(config_path, engine_override)


class DarwinAdapter(PlatformAdapter):
    name = "darwin"
    default_interface = "Wi-Fi"
    runtime_dir = DARWIN_RUNTIME_DIR

    def _detect_active_interface(self) -> Optional[str]:
        stdout, _ = self.run(TunnelCommandFactory.list_network_services())
        for line in stdout.splitlines():
            if "Wi-Fi" in line:
                return "Wi-Fi"
            if "Ethernet" in line:
                return "Ethernet"
        return None

    def snapshot_dns(self, interface: str) -> DNSSnapshot:
        stdout, _ = self.run(TunnelCommandFactory.get_dns_servers(interface))
        if "There aren't any DNS Servers" in stdout:
            return DNSSnapshot(interface, WAS_EMPTY)
        servers = _extract_addresses(stdout)
        return DNSSnapshot(interface, tuple(servers) if servers else WAS_EMPTY)

    def restore_dns(self, snapshot: Optional[DNSSnapshot]) -> None:
        if snapshot is None:
            logger.info("No DNS settings to restore")
            return
        servers = [] if snapshot.was_empty else list(snapshot.servers)
        self.run(TunnelCommandFactory.set_dns_servers(snapshot.interface_name, servers))
        logger.info(f"Restored DNS settings for {snapshot.interface_name}")

    def bring_interface_up(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        self.run(TunnelCommandFactory.quick_up(self.engine_path, config_path, engine_override))

    def bring_interface_down(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        self._quick_down(config_path, engine_override)

    def resolve_interface_name(self, session_name: str) -> str:
        """Map the session to the utun device wg-quick allocated for it."""
        name_file = Path(self.runtime_dir) / f"{session_name}.name"
        try:
            return name_file.read_text().strip() or session_name
        except OSError:
            return session_name

    def interface_lingers(self, interface: str) -> bool:
        if not interface.startswith("utun"):
            return False
        try:
            self.run(TunnelCommandFactory.check_interface(interface))
        except CommandError:
            return False
        return True

    def force_remove_interface(self, interface: str, session_name: str) -> None:
        logger.warning(f"Interface {interface} still present after tear-down, removing it")
        try:
            self.run(TunnelCommandFactory.kill_userspace_engine(interface))
        except CommandError as e:
            if e.returncode != 1:  # pkill: no process matched
                raise
        self.run(TunnelCommandFactory.remove_runtime_files(session_name))


class WindowsAdapter(PlatformAdapter):
    name = "windows"
    default_interface = "Ethernet"

    def _detect_active_interface(self) -> Optional[str]:
        stdout, _ = self.run(TunnelCommandFactory.show_interfaces())
        for line in stdout.splitlines():
            columns = line.split(None, 3)
            if len(columns) < 4 or columns[1] != "Connected":
                continue
            if "Wi-Fi" in columns[3] or "Ethernet" in columns[3]:
                return columns[3].strip()
        return None

    def snapshot_dns(self, interface: str) -> DNSSnapshot:
        """DHCP-provided resolvers are recorded as empty so restore goes back to DHCP."""
        stdout, _ = self.run(TunnelCommandFactory.show_dns(interface))
        if "DHCP" in stdout:
            return DNSSnapshot(interface, WAS_EMPTY)
        servers = _extract_addresses(stdout)
        return DNSSnapshot(interface, tuple(servers) if servers else WAS_EMPTY)

    def restore_dns(self, snapshot: Optional[DNSSnapshot]) -> None:
        if snapshot is None:
            logger.info("No DNS settings to restore")
            return
        name = snapshot.interface_name
        if snapshot.was_empty:
            self.run(TunnelCommandFactory.set_dns_dhcp(name))
        else:
            primary, *rest = snapshot.servers
            self.run(TunnelCommandFactory.set_dns_static(name, primary))
            for index, server in enumerate(rest, start=2):
                self.run(TunnelCommandFactory.add_dns(name, server, index))
        logger.info(f"Restored DNS settings for {name}")

    def bring_interface_up(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        self.run(TunnelCommandFactory.install_tunnel_service(engine_override or self.engine_path, config_path))

    def bring_interface_down(self, config_path: Path, engine_override: Optional[str] = None) -> None:
        try:
            self.run(TunnelCommandFactory.uninstall_tunnel_service(
                engine_override or self.engine_path, config_path.stem))
        except CommandError as e:
            if not _is_missing_interface(e):
                raise
            logger.info(f"Tunnel service {config_path.stem} already removed")


_ADAPTERS = {
    "linux": LinuxAdapter,
    "darwin": DarwinAdapter,
    "win32": WindowsAdapter,
}


def get_platform_adapter(engine_path: str, platform_name: str = sys.platform,
                         runner: Runner = run_command) -> PlatformAdapter:
    for prefix, adapter_cls in _ADAPTERS.items():
        if platform_name.startswith(prefix):
            return adapter_cls(engine_path, runner)
    logger.warning(f"Unknown platform {platform_name}, using Linux commands")
    return LinuxAdapter(engine_path, runner)
