import sys
import threading
import time

import pytest

from secureconnect.tunnel.exceptions import ProxyStartError
from secureconnect.tunnel.proxy import ObfuscationProxySupervisor

SLEEPER = "import time\nprint('listening on 127.0.0.1:51821', flush=True)\ntime.sleep(30)"
CRASHER = "import sys\nprint('error: bind failed', flush=True)\nsys.exit(3)"
EXITS_LATER = "import time\ntime.sleep(1.0)\nraise SystemExit(5)"
NON_UTF8_OUTPUT = (
    "import sys, time\n"
    "sys.stdout.buffer.write(b'\\xff\\xfe bad\\n')\n"
    "sys.stdout.buffer.flush()\n"
    "print('after-bad-line', flush=True)\n"
    "time.sleep(30)"
)
IGNORES_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)"
)


class ScriptedProxy(ObfuscationProxySupervisor):
    """Supervisor whose relay is a short Python script."""

    def __init__(self, script, **kwargs):
        kwargs.setdefault("start_grace", 0.5)
        super().__init__("wg-obfuscator", **kwargs)
        self.script = script

    def build_command(self, remote_host, remote_port, key):
        return [sys.executable, "-c", self.script]


@pytest.fixture
def supervisors():
    started = []
    yield started
    for supervisor in started:
        supervisor.stop()


def test_relay_command_line():
    supervisor = ObfuscationProxySupervisor("/usr/local/bin/wg-obfuscator")

    assert supervisor.build_command("203.0.113.5", 51820, "abc") == [
        "/usr/local/bin/wg-obfuscator",
        "--listen", "127.0.0.1:51821",
        "--remote", "203.0.113.5:51820",
        "--key", "abc",
    ]
    assert supervisor.build_command("2001:db8::1", 51820, "abc")[4] == "[2001:db8::1]:51820"


def test_start_and_stop(supervisors):
    supervisor = ScriptedProxy(SLEEPER)
    supervisors.append(supervisor)

    assert supervisor.start("203.0.113.5", 51820, "k") == "127.0.0.1:51821"
    assert supervisor.is_running
    assert supervisor.handle.remote_address == "203.0.113.5:51820"

    supervisor.stop()

    assert not supervisor.is_running
    assert supervisor.handle is None


def test_start_is_idempotent(supervisors):
    supervisor = ScriptedProxy(SLEEPER)
    supervisors.append(supervisor)

    supervisor.start("203.0.113.5", 51820, "k")
    pid = supervisor.handle.process_id
    supervisor.start("203.0.113.5", 51820, "k")

    assert supervisor.handle.process_id == pid


def test_early_exit_is_a_start_failure():
    supervisor = ScriptedProxy(CRASHER)

    with pytest.raises(ProxyStartError, match="exited with code 3"):
        supervisor.start("203.0.113.5", 51820, "k")
    assert not supervisor.is_running
    assert supervisor.handle is None


def test_missing_executable_is_a_start_failure():
    supervisor = ObfuscationProxySupervisor("/nonexistent/wg-obfuscator", start_grace=0)

    with pytest.raises(ProxyStartError, match="Failed to launch"):
        supervisor.start("203.0.113.5", 51820, "k")


def test_stop_without_start_is_a_no_op():
    ObfuscationProxySupervisor("wg-obfuscator").stop()


def test_unexpected_exit_notifies_owner(supervisors):
    exited = threading.Event()
    codes = []

    def on_exit(returncode):
        codes.append(returncode)
        exited.set()

    supervisor = ScriptedProxy(EXITS_LATER, start_grace=0.2, on_exit=on_exit)
    supervisors.append(supervisor)
    supervisor.start("203.0.113.5", 51820, "k")

    assert exited.wait(10)
    assert codes == [5]
    assert not supervisor.is_running


def test_requested_stop_does_not_notify_owner(supervisors):
    codes = []
    supervisor = ScriptedProxy(SLEEPER, on_exit=codes.append)
    supervisors.append(supervisor)

    supervisor.start("203.0.113.5", 51820, "k")
    supervisor.stop()

    assert codes == []


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be ignored on Windows")
def test_stop_kills_relay_that_ignores_terminate(supervisors):
    supervisor = ScriptedProxy(IGNORES_SIGTERM, stop_timeout=0.5)
    supervisors.append(supervisor)

    supervisor.start("203.0.113.5", 51820, "k")
    supervisor.stop()

    assert not supervisor.is_running


def test_undecodable_output_does_not_stop_the_reader(supervisors):
    supervisor = ScriptedProxy(NON_UTF8_OUTPUT)
    supervisors.append(supervisor)

    supervisor.start("203.0.113.5", 51820, "k")

    deadline = time.time() + 5
    while "after-bad-line" not in supervisor.recent_output and time.time() < deadline:
        time.sleep(0.05)
    assert "after-bad-line" in supervisor.recent_output
    assert any("\ufffd" in line for line in supervisor.recent_output)
