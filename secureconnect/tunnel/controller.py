"""Connection lifecycle controller."""

import atexit
import signal
import sys
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from .api_client import ControlPlaneClient
from .commands import CommandError
from .config_generator import render
from .exceptions import (
    BusyError,
    ControlPlaneError,
    NegotiationError,
    ProxyStartError,
    TunnelError,
    TunnelUpError,
)
from .models import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStats,
    ConnectionStatus,
    DisconnectResult,
    DNSSnapshot,
    InterfaceCounters,
    Session,
    SessionEndpoint,
    TunnelParameters,
)
from .platforms import PlatformAdapter, get_platform_adapter
from .proxy import ObfuscationProxySupervisor
from .utils import derive_obfuscation_key, format_uptime, parse_endpoint, write_private_file
from ..logging_utility import logger
from ..settings import Settings

Listener = Callable[[ConnectionEvent], None]


class CounterCache:
    """Interface byte counters refreshed at most once per interval."""

    def __init__(self, reader: Callable[[str], InterfaceCounters], interval: float = 30.0,
                 clock: Callable[[], float] = time.monotonic):
        self.reader = reader
        self.interval = interval
        self.clock = clock
        self._interface: Optional[str] = None
        self._value = InterfaceCounters()
        self._read_at: Optional[float] = None
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def _clear(self) -> None:
        self._interface = None
        self._value = InterfaceCounters()
        self._read_at = None

    def get(self, interface: str) -> InterfaceCounters:
        with self._lock:
            now = self.clock()
            if interface != self._interface:
                self._clear()
                self._interface = interface
            if self._read_at is not None and now - self._read_at < self.interval:
                return self._value
            self._read_at = now
            try:
                self._value = self.reader(interface)
            except Exception as e:
                logger.debug(f"Counter read for {interface} failed, keeping last values: {str(e)}")
            return self._value


class ConnectionController:
    def __init__(
            self,
            settings: Settings,
            client: ControlPlaneClient,
            platform: PlatformAdapter,
            proxy: ObfuscationProxySupervisor,
    ):
        self.settings = settings
        self.client = client
        self.platform = platform
        self.proxy = proxy
        self.proxy.on_exit = self._on_proxy_exit

        self._state = ConnectionState.DISCONNECTED
        self._reason: Optional[str] = None
        self._session: Optional[Session] = None
        self._state_lock = threading.Lock()
        self._op_lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._counters = CounterCache(platform.read_interface_counters, settings.stats_refresh_interval)

    # State

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def snapshot(self) -> ConnectionStatus:
        """Read-only view of the current connection."""
        with self._state_lock:
            session = self._session
            return ConnectionStatus(
                state=self._state,
                reason=self._reason,
                connected_at=session.connected_at if session else None,
                tunnel_address=session.parameters.address if session else None,
                endpoint=str(session.endpoint) if session else None,
            )

    def add_listener(self, listener: Listener) -> None:
        """Subscribe to connection-changed notifications."""
        self._listeners.append(listener)

    def _transition(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        with self._state_lock:
            previous, self._state, self._reason = self._state, state, reason
        logger.info(f"Connection state {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""))
        if ConnectionState.CONNECTED in (previous, state) and previous is not state:
            self._emit(ConnectionEvent(connected=state is ConnectionState.CONNECTED, state=state, reason=reason))

    def _emit(self, event: ConnectionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"connection-changed listener failed: {str(e)}")

    def _acquire(self, operation: str) -> None:
        if not self._op_lock.acquire(blocking=False):
            raise BusyError(f"Cannot {operation}: {self.state.value} in progress")

    # Operations

    def set_endpoint(self, endpoint: str) -> None:
        """Point the control-plane client at the selected portal."""
        self.client.set_base_url(endpoint)
        logger.info(f"Control plane endpoint set to {endpoint}")

    def connect(self) -> ConnectionStatus:
        """
        Negotiate parameters and bring the tunnel up.

        Returns:
            Status snapshot once connected

        Raises:
            BusyError: another connect or disconnect is in flight
            NegotiationError: the control plane did not issue parameters
            TunnelUpError: the interface could not be brought up
            ProxyStartError: the relay failed and obfuscation is mandatory
        """
        self._acquire("connect")
        try:
            if self.state is ConnectionState.CONNECTED:
                logger.info("Connect requested while already connected")
                return self.snapshot()
            self._transition(ConnectionState.CONNECTING)
            try:
                return self._connect()
            except TunnelError:
                raise
            except BaseException as e:
                self._fail(f"Connect aborted: {type(e).__name__} {str(e)}".rstrip())
                raise
        finally:
            self._op_lock.release()

    def _connect(self) -> ConnectionStatus:
        dns_snapshot = self._snapshot_dns()

        try:
            params = self.client.connect_tunnel()
        except ControlPlaneError as e:
            # Nothing was changed on the host, so the snapshot is discarded unused
            self._fail(f"Negotiation failed: {str(e)}")
            raise NegotiationError(str(e)) from e

        try:
            peer_host, peer_port = parse_endpoint(params.peer_endpoint)
        except TunnelError as e:
            self._fail(str(e))
            raise NegotiationError(str(e)) from e

        proxy_active = False
        if params.obfuscation is not None:
            try:
                proxy_active = self._start_proxy(params, peer_host, peer_port)
            except ProxyStartError as e:
                self._fail(str(e))
                raise
            except BaseException:
                # start may have spawned the child before being interrupted
                self._stop_proxy()
                self._release_dns(dns_snapshot)
                raise

        if proxy_active:
            endpoint = SessionEndpoint(self.settings.proxy_listen_host, self.settings.proxy_listen_port, True)
        else:
            endpoint = SessionEndpoint(peer_host, peer_port)

        session = Session(
            parameters=params,
            endpoint=endpoint,
            config_path=self.settings.session_config_path,
            dns_snapshot=dns_snapshot,
            proxy_active=proxy_active,
            engine_override=self.settings.obfuscation_engine_path if params.obfuscation else None,
        )

        try:
            self._bring_up(session)
        except Exception as e:
            diagnostic = getattr(e, "stderr", "") or str(e)
            if session.proxy_active:
                self._stop_proxy()
            self._release_dns(session.take_dns_snapshot())
            self._fail(f"Tunnel bring-up failed: {diagnostic}")
            raise TunnelUpError(f"Tunnel connection failed: {diagnostic}", diagnostic) from e
        except BaseException:
            if session.proxy_active:
                self._stop_proxy()
            self._release_dns(session.take_dns_snapshot())
            raise

        session.connected_at = datetime.now()
        with self._state_lock:
            self._session = session
        self._counters.reset()
        self._transition(ConnectionState.CONNECTED)
        logger.info(f"Connected via {endpoint}" + (" (obfuscated)" if proxy_active else ""))
        return self.snapshot()

    def _snapshot_dns(self) -> Optional[DNSSnapshot]:
        try:
            interface = self.platform.detect_active_interface()
            snapshot = self.platform.snapshot_dns(interface)
            logger.info(f"Saved DNS settings for {interface}")
            return snapshot
        except Exception as e:
            logger.error(f"Failed to save DNS settings: {str(e)}")
            return None

    def _release_dns(self, snapshot: Optional[DNSSnapshot]) -> Optional[str]:
        if snapshot is None:
            return None
        try:
            self.platform.restore_dns(snapshot)
        except Exception as e:
            logger.error(f"Failed to restore DNS settings: {str(e)}")
            return f"DNS restore failed: {str(e)}"
        return None

    def _start_proxy(self, params: TunnelParameters, host: str, port: int) -> bool:
        key = params.obfuscation.key or derive_obfuscation_key(params.peer_public_key)
        try:
            self.proxy.start(host, port, key)
            return True
        except ProxyStartError as e:
            if self.settings.obfuscation_mandatory:
                raise
            logger.error(f"{str(e)}; continuing with a direct connection")
            return False

    def _stop_proxy(self) -> Optional[str]:
        try:
            self.proxy.stop()
        except Exception as e:
            logger.error(f"Failed to stop obfuscation proxy: {str(e)}")
            return f"Proxy stop failed: {str(e)}"
        return None

    def _bring_up(self, session: Session) -> None:
        config_path = session.config_path
        write_private_file(config_path, render(session.parameters, session.endpoint))
        logger.info(f"Wrote session config {config_path}")

        try:
            self.platform.bring_interface_down(config_path, session.engine_override)
        except CommandError as e:
            logger.warning(f"Stale interface tear-down failed: {str(e)}")

        self.platform.bring_interface_up(config_path, session.engine_override)

    def _fail(self, reason: str) -> None:
        logger.error(reason)
        self._transition(ConnectionState.FAILED, reason)
        self._transition(ConnectionState.DISCONNECTED, reason)

    def disconnect(self) -> DisconnectResult:
        """
        Tear the tunnel down; every cleanup step runs even if an earlier one fails.

        Returns:
            DisconnectResult listing absorbed cleanup errors, first error first
        """
        self._acquire("disconnect")
        try:
            if self.state is ConnectionState.DISCONNECTED:
                return DisconnectResult(True, "Not connected")
            self._transition(ConnectionState.DISCONNECTING)
            return self._disconnect()
        finally:
            self._op_lock.release()

    def _disconnect(self) -> DisconnectResult:
        with self._state_lock:
            session, self._session = self._session, None
        errors: List[str] = []

        if session is not None:
            interface = self.platform.resolve_interface_name(self.settings.session_name)
            try:
                self.platform.bring_interface_down(session.config_path, session.engine_override)
            except Exception as e:
                logger.error(f"Failed to bring interface down: {str(e)}")
                errors.append(f"Interface down failed: {str(e)}")

            try:
                if self.platform.interface_lingers(interface):
                    self.platform.force_remove_interface(interface, self.settings.session_name)
            except Exception as e:
                logger.error(f"Failed to remove interface {interface}: {str(e)}")
                errors.append(f"Interface removal failed: {str(e)}")

            if session.proxy_active:
                error = self._stop_proxy()
                if error:
                    errors.append(error)

        try:
            self.client.disconnect_tunnel()
        except Exception as e:
            logger.warning(f"Control plane disconnect failed: {str(e)}")

        if session is not None:
            error = self._release_dns(session.take_dns_snapshot())
            if error:
                errors.append(error)

        self._counters.reset()
        self._transition(ConnectionState.DISCONNECTED, errors[0] if errors else None)
        if errors:
            return DisconnectResult(False, f"Disconnected with errors: {errors[0]}", errors)
        return DisconnectResult(True, "Disconnected successfully")

    def get_status(self) -> dict:
        """Control-plane view of the connection; transport failures become a synthetic status."""
        try:
            data = self.client.get_status()
        except Exception as e:
            return {"connected": False, "error": str(e)}
        return {
            "connected": bool(data.get("connected")),
            "tunnel_address": data.get("tunnelIP"),
            "connected_at": data.get("connectedAt"),
        }

    def get_connection_stats(self) -> ConnectionStats:
        with self._state_lock:
            session = self._session if self._state is ConnectionState.CONNECTED else None
        if session is None:
            return ConnectionStats("00:00:00", None, 0, 0, "WireGuard")

        interface = self.platform.resolve_interface_name(self.settings.session_name)
        counters = self._counters.get(interface)
        uptime = (datetime.now() - session.connected_at).total_seconds()
        return ConnectionStats(
            uptime=format_uptime(uptime),
            address=session.parameters.address,
            bytes_in=counters.bytes_in,
            bytes_out=counters.bytes_out,
            protocol=self._protocol_label(session),
        )

    @staticmethod
    def _protocol_label(session: Session) -> str:
        if session.relay_lost:
            return "WireGuard (obfuscation relay down)"
        return "WireGuard (obfuscated)" if session.proxy_active else "WireGuard"

    def _on_proxy_exit(self, returncode: int) -> None:
        with self._state_lock:
            session = self._session if self._state is ConnectionState.CONNECTED else None
            if session is None:
                return
            session.relay_lost = True
            self._reason = f"Obfuscation proxy exited with code {returncode}"
        logger.warning(f"Obfuscation proxy died while connected (code {returncode}); tunnel traffic is not relayed")
        if self.settings.teardown_on_proxy_exit:
            threading.Thread(target=self._teardown_after_proxy_exit, daemon=True).start()

    def _teardown_after_proxy_exit(self) -> None:
        try:
            self.disconnect()
        except BusyError:
            logger.info("Skipping proxy-exit teardown, another operation is in flight")

    def shutdown(self, wait: float = 30.0) -> DisconnectResult:
        """Run the full disconnect before the process exits."""
        # An in-flight connect or disconnect is allowed to settle first
        if self._op_lock.acquire(timeout=wait):
            self._op_lock.release()
        try:
            return self.disconnect()
        except BusyError:
            logger.warning("Shutdown raced with another operation")
            return DisconnectResult(False, "Shutdown raced with another operation")


def build_controller(settings: Settings, client: Optional[ControlPlaneClient] = None) -> ConnectionController:
    client = client or ControlPlaneClient(settings.api_endpoint, settings.api_timeout, settings.verify_tls)
    platform = get_platform_adapter(settings.engine_path)
    proxy = ObfuscationProxySupervisor(
        settings.proxy_path,
        listen_host=settings.proxy_listen_host,
        listen_port=settings.proxy_listen_port,
        start_grace=settings.proxy_start_grace,
        stop_timeout=settings.proxy_stop_timeout,
    )
    return ConnectionController(settings, client, platform, proxy)


def install_shutdown_hooks(controller: ConnectionController) -> None:
    """Disconnect on interpreter exit and on the common termination signals."""
    atexit.register(controller.shutdown)

    def _handler(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, disconnecting")
        controller.shutdown()
        sys.exit(0)

    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGHUP"):
        signals.append(signal.SIGHUP)
    for sig in signals:
        signal.signal(sig, _handler)
