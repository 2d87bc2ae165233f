"""Command templates and builders for tunnel management."""

from typing import Dict, List, Optional
from dataclasses import dataclass, field


class CommandError(Exception):
    """Base exception for command-related errors."""

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ValidationError(CommandError):
    """Raised when command validation fails."""
    pass


@dataclass(frozen=True)
class Command:
    """Immutable command builder with validation."""
    base_cmd: List[str]
    use_sudo: bool = False
    _valid_options: Optional[Dict[str, type]] = None
    option_prefix: str = "--"
    env: Dict[str, str] = field(default_factory=dict)

    def _replace(self, **changes) -> 'Command':
        values = {
            "base_cmd": self.base_cmd,
            "use_sudo": self.use_sudo,
            "_valid_options": self._valid_options,
            "option_prefix": self.option_prefix,
            "env": self.env,
        }
        values.update(changes)
        return Command(**values)

    def _validate_option(self, opt: str, value: Optional[str]) -> None:
        """Validate option and its value if validation rules exist."""
        if self._valid_options is None:
            return

        opt_name = opt.lstrip('-').replace('-', '_')
        if opt_name not in self._valid_options:
            valid_opts = ", ".join(f"{self.option_prefix}{name.replace('_', '-')}"
                                   for name in self._valid_options)
            raise ValidationError(
                f"Invalid option '{opt}' for command {self.base_cmd[0]}. "
                f"Valid options are: {valid_opts}"
            )

        if value is not None:
            expected_type = self._valid_options[opt_name]
            try:
                expected_type(value)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Invalid value '{value}' for option '{opt}'. Expected {expected_type.__name__}"
                )

    def _validate_executable(self) -> None:
        """Validate that base command exists."""
        if not self.base_cmd or not self.base_cmd[0]:
            raise ValidationError("Command cannot be empty")

    @classmethod
    def from_str(cls, cmd: str, use_sudo: bool = False,
                 valid_options: Optional[Dict[str, type]] = None,
                 option_prefix: str = "--") -> 'Command':
        """Create command from string with optional validation rules."""
        command = cls(cmd.split(), use_sudo, valid_options, option_prefix)
        command._validate_executable()
        return command

    @classmethod
    def from_path(cls, executable: str, use_sudo: bool = False) -> 'Command':
        """Create command from an executable path that may contain spaces."""
        command = cls([str(executable)], use_sudo)
        command._validate_executable()
        return command

    def with_arg(self, arg: str) -> 'Command':
        """Add single argument."""
        return self._replace(base_cmd=self.base_cmd + [str(arg)])

    def with_args(self, *args: str) -> 'Command':
        """Add multiple arguments."""
        return self._replace(base_cmd=self.base_cmd + [str(a) for a in args])

    def with_option(self, opt: str, value: Optional[str] = None) -> 'Command':
        """Add option with validation."""
        opt_clean = opt.lstrip('-')
        self._validate_option(opt_clean, value)
        cmd = self.base_cmd + [f"{self.option_prefix}{opt_clean}"]
        if value is not None:
            cmd.append(str(value))
        return self._replace(base_cmd=cmd)

    def with_options(self, **kwargs: Optional[str]) -> 'Command':
        """Add multiple options with validation."""
        command = self
        for opt, value in kwargs.items():
            command = command.with_option(opt.replace("_", "-"), None if value is None else str(value))
        return command

    def with_env(self, **env: Optional[str]) -> 'Command':
        """Inject environment variables; unset values are skipped."""
        merged = dict(self.env)
        merged.update({k: str(v) for k, v in env.items() if v})
        return self._replace(env=merged)

    def as_sudo(self) -> 'Command':
        """Mark command to be executed with sudo."""
        return self._replace(use_sudo=True)

    def build(self) -> List[str]:
        """Get final command list."""
        self._validate_executable()
        cmd = list(self.base_cmd)
        # sudo resets the environment, so variables travel through env(1)
        if self.env:
            cmd = ["env"] + [f"{k}={v}" for k, v in sorted(self.env.items())] + cmd
        return ["sudo"] + cmd if self.use_sudo else cmd


NETWORKSETUP_OPTIONS = {
    'listnetworkserviceorder': type(None),
    'getdnsservers': str,
    'setdnsservers': str,
}

IP = Command.from_str("ip")
IP_ROUTE_DEFAULT = IP.with_args("route", "show", "default")

RESOLVECTL_DNS = Command.from_str("resolvectl dns")

NETWORKSETUP = Command.from_str(
    "networksetup", valid_options=NETWORKSETUP_OPTIONS, option_prefix="-"
)

IFCONFIG = Command.from_str("ifconfig")
PKILL = Command.from_str("pkill")
RM = Command.from_str("rm -f")

NETSH_INTERFACE = Command.from_str("netsh interface")
NETSH_SHOW_INTERFACE = NETSH_INTERFACE.with_args("show", "interface")
NETSH_IP = NETSH_INTERFACE.with_arg("ip")
