"""Utility functions for tunnel management."""

import hashlib
import os
from pathlib import Path
import subprocess
from typing import Optional, Tuple

from .commands import CommandError
from .exceptions import ConfigurationError


def run_command(cmd: list[str], check: bool = True, timeout: Optional[float] = 60) -> Tuple[str, str]:
    """
    Run command and return output.

    Args:
        cmd: Command as list of strings
        check: Whether to raise exception on error
        timeout: Seconds before the command is abandoned

    Returns:
        Tuple of (stdout, stderr)
    """
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=check, timeout=timeout)
        return result.stdout, result.stderr
    except subprocess.CalledProcessError as e:
        raise CommandError(
            f"Command failed: {' '.join(cmd)}\n{e.stderr}",
            stderr=(e.stderr or e.stdout or "").strip(),
            returncode=e.returncode,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"Command timed out after {e.timeout}s: {' '.join(cmd)}")
    except OSError as e:
        raise CommandError(f"Command could not be started: {' '.join(cmd)}: {e}", stderr=str(e))


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    """
    Split a host:port endpoint.

    Args:
        endpoint: "host:port" or "[v6addr]:port"

    Returns:
        Tuple of (host, port)
    """
    value = endpoint.strip()
    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
    else:
        host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigurationError(f"Invalid endpoint '{endpoint}', expected host:port")
    port_number = int(port)
    if not 0 < port_number < 65536:
        raise ConfigurationError(f"Invalid port in endpoint '{endpoint}'")
    return host, port_number


def format_uptime(seconds: float) -> str:
    """Format a duration as HH:MM:SS; hours are not wrapped at 24."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def derive_obfuscation_key(peer_public_key: str) -> str:
    return hashlib.sha256(peer_public_key.encode("utf-8")).hexdigest()[:32]


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    if os.name != "nt":
        os.chmod(path, 0o700)


def write_private_file(path: Path, content: str) -> None:
    """
    Write a file readable only by the owning user, replacing any previous one.

    Args:
        path: Destination file
        content: Text to write
    """
    ensure_private_dir(path.parent)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    if os.name != "nt":
        # O_CREAT mode is ignored for a pre-existing file
        os.chmod(path, 0o600)
