"""Client settings loaded from an INI file."""

import configparser
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .tunnel.exceptions import ConfigurationError

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "secureconnect.conf"

_DEFAULT_ENGINES = {
    "darwin": "/opt/homebrew/bin/wg-quick",
    "win32": r"C:\Program Files\WireGuard\wireguard.exe",
    "linux": "/usr/bin/wg-quick",
}


@dataclass
class Settings:
    api_endpoint: str = "https://127.0.0.1:3000"
    api_timeout: float = 15.0
    verify_tls: bool = True

    config_dir: Path = Path.home() / ".secureconnect"
    session_name: str = "sc0"
    engine_path: str = _DEFAULT_ENGINES.get(sys.platform, _DEFAULT_ENGINES["linux"])
    obfuscation_engine_path: Optional[str] = None

    proxy_path: str = "wg-obfuscator"
    proxy_listen_host: str = "127.0.0.1"
    proxy_listen_port: int = 51821
    proxy_start_grace: float = 0.5
    proxy_stop_timeout: float = 2.0
    obfuscation_mandatory: bool = False
    teardown_on_proxy_exit: bool = False

    stats_refresh_interval: float = 30.0

    @property
    def session_config_path(self) -> Path:
        return self.config_dir / f"{self.session_name}.conf"

    @property
    def session_token_path(self) -> Path:
        return self.config_dir / "session.json"

    @classmethod
    def load(cls, config_file: Optional[str] = None) -> "Settings":
        """Read settings, falling back to defaults for anything not set."""
        path = config_file or os.environ.get("SECURECONNECT_CONFIG") or str(DEFAULT_CONFIG_FILE)
        config = configparser.ConfigParser()
        config.read(path)
        return cls.from_parser(config)

    @classmethod
    def from_parser(cls, config: configparser.ConfigParser) -> "Settings":
        settings = cls()
        try:
            if config.has_section("api"):
                api = config["api"]
                settings.api_endpoint = api.get("endpoint", settings.api_endpoint)
                settings.api_timeout = api.getfloat("timeout", settings.api_timeout)
                settings.verify_tls = api.getboolean("verify_tls", settings.verify_tls)

            if config.has_section("tunnel"):
                tunnel = config["tunnel"]
                settings.config_dir = Path(tunnel.get("config_dir", str(settings.config_dir))).expanduser()
                settings.session_name = tunnel.get("session_name", settings.session_name)
                settings.engine_path = tunnel.get("engine_path", settings.engine_path) or settings.engine_path
                settings.obfuscation_engine_path = tunnel.get("obfuscation_engine_path") or None

            if config.has_section("obfuscation"):
                obfs = config["obfuscation"]
                settings.proxy_path = obfs.get("proxy_path", settings.proxy_path)
                settings.proxy_listen_host = obfs.get("listen_host", settings.proxy_listen_host)
                settings.proxy_listen_port = obfs.getint("listen_port", settings.proxy_listen_port)
                settings.proxy_start_grace = obfs.getfloat("start_grace", settings.proxy_start_grace)
                settings.proxy_stop_timeout = obfs.getfloat("stop_timeout", settings.proxy_stop_timeout)
                settings.obfuscation_mandatory = obfs.getboolean("mandatory", settings.obfuscation_mandatory)
                settings.teardown_on_proxy_exit = obfs.getboolean(
                    "teardown_on_exit", settings.teardown_on_proxy_exit
                )

            if config.has_section("stats"):
                settings.stats_refresh_interval = config["stats"].getfloat(
                    "refresh_interval", settings.stats_refresh_interval
                )
        except ValueError as e:
            raise ConfigurationError(f"Invalid client configuration: {str(e)}")

        if not re.fullmatch(r"[a-zA-Z0-9_=+.-]{1,15}", settings.session_name):
            raise ConfigurationError(f"Invalid session name '{settings.session_name}'")
        return settings
