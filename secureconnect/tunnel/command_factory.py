"""Factory for creating tunnel-related commands."""

from pathlib import Path
from typing import Optional, Sequence
from .commands import (
    Command,
    IP_ROUTE_DEFAULT,
    RESOLVECTL_DNS,
    NETWORKSETUP,
    IFCONFIG,
    PKILL,
    RM,
    NETSH_SHOW_INTERFACE,
    NETSH_IP,
)

USERSPACE_ENV = "WG_QUICK_USERSPACE_IMPLEMENTATION"
DARWIN_RUNTIME_DIR = Path("/var/run/wireguard")


class TunnelCommandFactory:
    """Factory for creating tunnel management commands."""

    # wg-quick (Linux, macOS)

    @staticmethod
    def quick_up(
            engine_path: str,
            config_path: Path,
            userspace_impl: Optional[str] = None,
    ) -> list[str]:
        """Create tunnel bring-up command."""
        return (
            Command.from_path(engine_path)
            .with_env(**{USERSPACE_ENV: userspace_impl})
            .with_args("up", str(config_path))
            .as_sudo()
            .build()
        )

    @staticmethod
    def quick_down(
            engine_path: str,
            config_path: Path,
            userspace_impl: Optional[str] = None,
    ) -> list[str]:
        """Create tunnel tear-down command."""
        return (
            Command.from_path(engine_path)
            .with_env(**{USERSPACE_ENV: userspace_impl})
            .with_args("down", str(config_path))
            .as_sudo()
            .build()
        )

    # Linux

    @staticmethod
    def show_default_route() -> list[str]:
        """Create default route show command."""
        return IP_ROUTE_DEFAULT.build()

    @staticmethod
    def show_link_dns(interface: str) -> list[str]:
        """Create per-link resolver query command."""
        return RESOLVECTL_DNS.with_arg(interface).build()

    # macOS

    @staticmethod
    def list_network_services() -> list[str]:
        return NETWORKSETUP.with_option("listnetworkserviceorder").build()

    @staticmethod
    def get_dns_servers(service: str) -> list[str]:
        return NETWORKSETUP.with_option("getdnsservers", service).build()

    @staticmethod
    def set_dns_servers(service: str, servers: Sequence[str]) -> list[str]:
        """Create resolver restore command; no servers means 'Empty'."""
        return (
            NETWORKSETUP
            .with_option("setdnsservers", service)
            .with_args(*(servers or ["Empty"]))
            .as_sudo()
            .build()
        )

    @staticmethod
    def check_interface(interface: str) -> list[str]:
        return IFCONFIG.with_arg(interface).build()

    @staticmethod
    def kill_userspace_engine(interface: str) -> list[str]:
        return PKILL.with_args("-f", interface).as_sudo().build()

    @staticmethod
    def remove_runtime_files(session_name: str) -> list[str]:
        return RM.with_args(
            str(DARWIN_RUNTIME_DIR / f"{session_name}.name"),
            str(DARWIN_RUNTIME_DIR / f"{session_name}.sock"),
        ).as_sudo().build()

    # Windows

    @staticmethod
    def install_tunnel_service(engine_path: str, config_path: Path) -> list[str]:
        return Command.from_path(engine_path).with_args("/installtunnelservice", str(config_path)).build()

    @staticmethod
    def uninstall_tunnel_service(engine_path: str, session_name: str) -> list[str]:
        return Command.from_path(engine_path).with_args("/uninstalltunnelservice", session_name).build()

    @staticmethod
    def show_interfaces() -> list[str]:
        return NETSH_SHOW_INTERFACE.build()

    @staticmethod
    def show_dns(interface: str) -> list[str]:
        return NETSH_IP.with_args("show", "dns", f"name={interface}").build()

    @staticmethod
    def set_dns_dhcp(interface: str) -> list[str]:
        return NETSH_IP.with_args("set", "dns", f"name={interface}", "source=dhcp").build()

    @staticmethod
    def set_dns_static(interface: str, server: str) -> list[str]:
        return NETSH_IP.with_args(
            "set", "dns", f"name={interface}", "source=static", f"address={server}", "register=primary"
        ).build()

    @staticmethod
    def add_dns(interface: str, server: str, index: int) -> list[str]:
        return NETSH_IP.with_args("add", "dns", f"name={interface}", f"address={server}", f"index={index}").build()
