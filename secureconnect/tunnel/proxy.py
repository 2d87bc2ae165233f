"""Supervision of the local obfuscation relay child process."""

import subprocess
import sys
import threading
import time
from typing import Callable, List, Optional

from .exceptions import ProxyStartError
from .models import ProxyHandle
from ..logging_utility import logger

_ERROR_KEYWORDS = ("error", "failed", "invalid", "cannot", "panic", "fatal")


class ObfuscationProxySupervisor:
    """Owns at most one relay child bound to a fixed loopback port."""

    def __init__(
            self,
            proxy_path: str,
            listen_host: str = "127.0.0.1",
            listen_port: int = 51821,
            start_grace: float = 0.5,
            stop_timeout: float = 2.0,
            on_exit: Optional[Callable[[int], None]] = None,
    ):
        self.proxy_path = proxy_path
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.start_grace = start_grace
        self.stop_timeout = stop_timeout
        self.on_exit = on_exit
        self._process: Optional[subprocess.Popen] = None
        self._handle: Optional[ProxyHandle] = None
        self._stopping = False
        self._output: List[str] = []
        self._lock = threading.RLock()

    @property
    def listen_address(self) -> str:
        return f"{self.listen_host}:{self.listen_port}"

    @property
    def handle(self) -> Optional[ProxyHandle]:
        return self._handle

    @property
    def recent_output(self) -> List[str]:
        """Last lines the relay printed, oldest first."""
        return list(self._output)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    @staticmethod
    def remote_address(remote_host: str, remote_port: int) -> str:
        return f"[{remote_host}]:{remote_port}" if ":" in remote_host else f"{remote_host}:{remote_port}"

    def build_command(self, remote_host: str, remote_port: int, key: str) -> List[str]:
        return [
            self.proxy_path,
            "--listen", self.listen_address,
            "--remote", self.remote_address(remote_host, remote_port),
            "--key", key,
        ]

    def start(self, remote_host: str, remote_port: int, key: str) -> str:
        """
        Spawn the relay and confirm it survives the start-up grace period.

        Args:
            remote_host: Gateway host the relay forwards to
            remote_port: Gateway UDP port
            key: Shared obfuscation key

        Returns:
            Loopback address the tunnel engine should dial
        """
        with self._lock:
            if self.is_running:
                logger.info(f"Obfuscation proxy already running on {self.listen_address}")
                return self._handle.listen_address

            cmd = self.build_command(remote_host, remote_port, key)
            remote = self.remote_address(remote_host, remote_port)
            logger.info(f"Starting obfuscation proxy {self.proxy_path} -> {remote}")
            self._output = []
            self._stopping = False
            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    creationflags=subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0,
                )
            except OSError as e:
                raise ProxyStartError(f"Failed to launch obfuscation proxy: {str(e)}")

            self._process = process
            threading.Thread(target=self._read_loop, args=(process,), daemon=True).start()

        time.sleep(self.start_grace)

        with self._lock:
            if process.poll() is not None:
                self._process = None
                output = "\n".join(self._output[-20:])
                raise ProxyStartError(
                    f"Obfuscation proxy exited with code {process.returncode} during start-up"
                    + (f":\n{output}" if output else "")
                )
            self._handle = ProxyHandle(
                process_id=process.pid,
                listen_address=self.listen_address,
                remote_address=remote,
            )
            threading.Thread(target=self._watch, args=(process,), daemon=True).start()
            logger.info(f"Obfuscation proxy running (pid {process.pid}) on {self.listen_address}")
            return self.listen_address

    def stop(self) -> None:
        """Terminate the relay, escalating to kill after the stop timeout."""
        with self._lock:
            process, self._process, self._handle = self._process, None, None
            if process is None:
                return
            self._stopping = True

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Obfuscation proxy (pid {process.pid}) ignored SIGTERM, killing it")
                process.kill()
                process.wait(timeout=self.stop_timeout)
        logger.info("Obfuscation proxy stopped")

    def _read_loop(self, process: subprocess.Popen) -> None:
        for raw in iter(process.stdout.readline, ""):
            line = raw.rstrip()
            if not line:
                continue
            self._output.append(line)
            del self._output[:-200]
            if any(kw in line.lower() for kw in _ERROR_KEYWORDS):
                logger.error(f"[obfs-proxy] {line}")
            else:
                logger.info(f"[obfs-proxy] {line}")
        process.stdout.close()

    def _watch(self, process: subprocess.Popen) -> None:
        returncode = process.wait()
        with self._lock:
            expected = self._stopping or self._process is not process
            if not expected:
                self._process = None
                self._handle = None
        if expected:
            return
        logger.warning(f"Obfuscation proxy exited unexpectedly with code {returncode}")
        if self.on_exit is not None:
            try:
                self.on_exit(returncode)
            except Exception as e:
                logger.error(f"Proxy exit handler failed: {str(e)}")
