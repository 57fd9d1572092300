"""
Command output for PrefWatch, with optional RFC 5424 remote forwarding.

Reconstruction commands are written to the "prefwatch.commands" logger:
- only-commands mode: annotation lines, then the command, nothing else
- verbose mode: every line prefixed with "Cmd: ", alongside normal logs

When a syslog collector is configured, each command line is also sent via:
- UDP (default, connectionless)
- TCP (reliable, octet-counting framing per RFC 6587)
"""

import logging
import socket
import os
import sys
import threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum, IntEnum

from core.commands import Command, Confidence

logger = logging.getLogger(__name__)

COMMAND_LOGGER_NAME = "prefwatch.commands"


class SyslogFacility(IntEnum):
    """RFC 5424 Facility codes."""
    USER = 1
    DAEMON = 3
    LOCAL0 = 16
    LOCAL1 = 17
    LOCAL2 = 18
    LOCAL3 = 19
    LOCAL4 = 20
    LOCAL5 = 21
    LOCAL6 = 22
    LOCAL7 = 23


class SyslogSeverity(IntEnum):
    """RFC 5424 Severity codes."""
    ERROR = 3
    WARNING = 4
    NOTICE = 5
    INFORMATIONAL = 6
    DEBUG = 7


class SyslogProtocol(str, Enum):
    """Supported syslog transport protocols."""
    UDP = "udp"
    TCP = "tcp"


class SyslogForwarder:
    """
    Sends RFC 5424 messages to a remote collector.
    """

    # IANA Private Enterprise Number for structured data
    ENTERPRISE_ID = "32473"

    def __init__(self, server: str, port: int = 514, protocol: str = "udp", facility: int = SyslogFacility.LOCAL0):
        self.server = server
        self.port = port
        self.protocol = SyslogProtocol(protocol.lower())
        self.facility = SyslogFacility(facility)
        self._hostname = self._get_hostname()

    def _get_hostname(self) -> str:
        """Get the system hostname."""
        try:
            return socket.getfqdn()
        except Exception:
            return socket.gethostname()

    def format_message(
        self,
        msgid: str,
        message: str,
        structured_data: Optional[Dict[str, Any]] = None,
        severity: SyslogSeverity = SyslogSeverity.NOTICE,
    ) -> bytes:
        """
        Format a message according to RFC 5424.

        Format: <PRI>VERSION TIMESTAMP HOSTNAME APP-NAME PROCID MSGID [SD-ID SD-PARAMS] MSG
        """
        pri = self.facility * 8 + severity
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

        sd = "-"
        if structured_data:
            sd_params = []
            for key, value in structured_data.items():
                # Escape special characters in SD-PARAM values
                safe_value = str(value).replace("\\", "\\\\").replace('"', '\\"').replace("]", "\\]")
                sd_params.append(f'{key}="{safe_value}"')
            sd = f"[prefwatch@{self.ENTERPRISE_ID} {' '.join(sd_params)}]"

        syslog_msg = f"<{pri}>1 {timestamp} {self._hostname} prefwatch {os.getpid()} {msgid} {sd} {message}"
        return syslog_msg.encode("utf-8")

    def _send_udp(self, message: bytes) -> bool:
        """Send message via UDP."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.settimeout(5)
                sock.sendto(message, (self.server, self.port))
            return True
        except OSError as e:
            logger.error(f"Failed to send syslog via UDP to {self.server}:{self.port}: {e}")
            return False

    def _send_tcp(self, message: bytes) -> bool:
        """Send message via TCP with octet counting framing (RFC 6587)."""
        try:
            with socket.create_connection((self.server, self.port), timeout=10) as sock:
                sock.sendall(f"{len(message)} ".encode("utf-8") + message)
            return True
        except OSError as e:
            logger.error(f"Failed to send syslog via TCP to {self.server}:{self.port}: {e}")
            return False

    def send(self, msgid: str, message: str, structured_data: Optional[Dict[str, Any]] = None) -> bool:
        payload = self.format_message(msgid, message, structured_data)
        if self.protocol == SyslogProtocol.TCP:
            return self._send_tcp(payload)
        return self._send_udp(payload)


class CommandLogService:
    """
    Writes reconstruction commands to the command logger and, optionally,
    to a remote syslog collector.
    """

    def __init__(self, only_cmds: bool = True, forwarder: Optional[SyslogForwarder] = None):
        self.only_cmds = only_cmds
        self.forwarder = forwarder
        self.output = logging.getLogger(COMMAND_LOGGER_NAME)
        self._stats = {"commands": 0, "low_confidence": 0, "commits": 0, "forward_errors": 0}
        self._lock = threading.Lock()

    def format_lines(self, command: Command) -> list[str]:
        if self.only_cmds:
            return command.lines
        return [f"Cmd: {line}" for line in command.lines]

    def emit(self, command: Command) -> None:
        """Command listener: write one command and its annotation."""
        with self._lock:
            for line in self.format_lines(command):
                self.output.info(line)
            self._stats["commands"] += 1
            if command.confidence == Confidence.LOW:
                self._stats["low_confidence"] += 1

        if self.forwarder:
            sent = self.forwarder.send(
                "COMMAND",
                command.text,
                {"domain": command.target, "kind": command.kind.value, "confidence": command.confidence.value},
            )
            if not sent:
                with self._lock:
                    self._stats["forward_errors"] += 1

    def record_commit(self, target) -> None:
        """Commit listener."""
        with self._lock:
            self._stats["commits"] += 1
        logger.debug(f"Previous state advanced for {target.identity}")

    def get_stats(self) -> dict:
        with self._lock:
            return dict(self._stats)


def configure_command_logger(only_cmds: bool, log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up the command logger.

    In only-commands mode, commands go to stdout as bare lines and do not
    propagate to the root logger.
    """
    output = logging.getLogger(COMMAND_LOGGER_NAME)
    output.setLevel(logging.INFO)
    for handler in list(output.handlers):
        output.removeHandler(handler)

    if only_cmds:
        output.propagate = False
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter("%(message)s"))
        output.addHandler(stream)
        if log_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            output.addHandler(file_handler)
    else:
        output.propagate = True

    return output
