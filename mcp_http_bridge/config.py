"""
Configuration for the MCP HTTP bridge.

All settings come from the environment (optionally seeded from a .env
file by the entry point). The required upstream credentials are passed
through to the MCP server subprocess and are never logged.
"""

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

REQUIRED_VARIABLES = ("BASE_URL", "API_KEY")

LOG_LEVELS = {
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "silent": None,
}

# uvicorn has no "off" level, critical is the quietest it accepts
UVICORN_LOG_LEVELS = {
    "info": "info",
    "debug": "debug",
    "silent": "critical",
}

DEFAULT_PORT = 8000
DEFAULT_COMMAND = "node"
DEFAULT_ARGS = "mcp-openproject/dist/index.js"
DEFAULT_ENV_PREFIX = "OPENPROJECT_"


@dataclass
class MCPServerConfig:
    """Configuration for the MCP server subprocess"""
    command: str
    args: list[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = field(default=None, repr=False)
    cwd: Optional[str] = None
    # values masked out of anything the subprocess writes to stderr
    secrets: Tuple[str, ...] = field(default=(), repr=False)


@dataclass(frozen=True)
class BridgeSettings:
    """Resolved bridge settings"""
    base_url: str
    api_key: str = field(repr=False)
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    log_level: str = "info"
    command: str = DEFAULT_COMMAND
    args: Tuple[str, ...] = (DEFAULT_ARGS,)
    env_prefix: str = DEFAULT_ENV_PREFIX
    call_timeout: float = 60.0
    handshake_timeout: float = 30.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeSettings":
        """Build settings from the environment, raising ValueError on bad input"""
        values, problems = _parse_environment(os.environ if environ is None else environ)
        if problems:
            raise ValueError("; ".join(problems))
        return cls(**values)

    def subprocess_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for the subprocess: the parent's plus the credentials"""
        env = dict(os.environ if base is None else base)
        env["BASE_URL"] = self.base_url
        env["API_KEY"] = self.api_key
        if self.env_prefix:
            env[f"{self.env_prefix}BASE_URL"] = self.base_url
            env[f"{self.env_prefix}API_KEY"] = self.api_key
        return env

    def server_config(self) -> MCPServerConfig:
        return MCPServerConfig(
            command=self.command,
            args=list(self.args),
            env=self.subprocess_env(),
            secrets=(self.api_key,),
        )

    def describe(self) -> Dict[str, Any]:
        """Settings as a dict that is safe to print"""
        return {
            "base_url": self.base_url,
            "api_key": "***",
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level,
            "command": " ".join([self.command, *self.args]),
            "env_prefix": self.env_prefix,
            "call_timeout": self.call_timeout,
            "handshake_timeout": self.handshake_timeout,
        }


def validate_environment(environ: Optional[Mapping[str, str]] = None) -> list[str]:
    """Return a list of configuration problems, empty when startup may proceed"""
    _, problems = _parse_environment(os.environ if environ is None else environ)
    return problems


def _parse_environment(environ: Mapping[str, str]) -> Tuple[Dict[str, Any], list[str]]:
    problems: list[str] = []
    values: Dict[str, Any] = {}

    missing = [name for name in REQUIRED_VARIABLES if not environ.get(name)]
    if missing:
        problems.append(f"Missing required environment variables: {' and '.join(missing)}")
    values["base_url"] = environ.get("BASE_URL", "")
    values["api_key"] = environ.get("API_KEY", "")

    port = environ.get("PORT") or environ.get("MCP_PORT")
    if port:
        try:
            values["port"] = int(port)
        except ValueError:
            problems.append(f"PORT must be an integer, got {port!r}")
        else:
            if not 0 < values["port"] < 65536:
                problems.append(f"PORT out of range: {values['port']}")

    if environ.get("HOST"):
        values["host"] = environ["HOST"]

    log_level = environ.get("LOG_LEVEL", "info").strip().lower()
    if log_level not in LOG_LEVELS:
        problems.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")
    else:
        values["log_level"] = log_level

    if environ.get("MCP_COMMAND"):
        values["command"] = environ["MCP_COMMAND"]
    if "MCP_ARGS" in environ:
        try:
            values["args"] = tuple(shlex.split(environ["MCP_ARGS"]))
        except ValueError as e:
            problems.append(f"MCP_ARGS could not be parsed: {e}")
    if "MCP_ENV_PREFIX" in environ:
        values["env_prefix"] = environ["MCP_ENV_PREFIX"]

    for variable, key in (("MCP_CALL_TIMEOUT", "call_timeout"),
                          ("MCP_HANDSHAKE_TIMEOUT", "handshake_timeout")):
        raw = environ.get(variable)
        if not raw:
            continue
        try:
            seconds = float(raw)
        except ValueError:
            problems.append(f"{variable} must be a number of seconds, got {raw!r}")
            continue
        if seconds <= 0:
            problems.append(f"{variable} must be positive, got {raw!r}")
            continue
        values[key] = seconds

    return values, problems


def configure_logging(level: str = "info") -> None:
    """Send bridge logs to stderr at the requested level"""
    if LOG_LEVELS.get(level) is None:
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    logging.basicConfig(
        level=LOG_LEVELS[level],
        stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        force=True,
    )
