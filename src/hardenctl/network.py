"""Host network observers: listening sockets, DNS answers, public address."""
from __future__ import annotations

import ipaddress
import re
import socket
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

from .errors import AddressUnconfirmed, CommandError, ValidationError
from .executor import CommandExecutor

_USERS_RE = re.compile(r'users:\(\("(?P<name>[^"]+)",pid=(?P<pid>\d+)')


def _local_port(address: str) -> int | None:
    """Return the port of an ``ss`` local address column (``[::]:22``, ``*:80``)."""
    _, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return None
    return int(port)


def is_ipv4(value: str) -> bool:
    """Return ``True`` when *value* is a dotted IPv4 address."""
    try:
        ipaddress.IPv4Address(value.strip())
    except ValueError:
        return False
    return True


@dataclass(slots=True)
class PortScanner:
    """Inspect the local socket table through ``ss``."""

    executor: CommandExecutor
    ss_bin: str = "ss"
    connect_timeout: float = 3.0

    def _table(self, protocol: str, *, processes: bool = False) -> list[list[str]]:
        flag = "-lnu" if protocol == "udp" else "-lnt"
        argv = [self.ss_bin, "-H", flag]
        if processes:
            argv.append("-p")
        result = self.executor.run(argv, timeout=10)
        if not result.ok:
            raise CommandError(result.describe(), argv=result.argv, exit_code=result.exit_code)
        return [line.split() for line in result.stdout.splitlines() if line.strip()]

    def listening(self, port: int, protocol: str = "tcp") -> bool:
        """Return ``True`` when something listens on *port*/*protocol*."""
        for columns in self._table(protocol):
            if len(columns) >= 4 and _local_port(columns[3]) == port:
                return True
        return False

    def owner(self, port: int, protocol: str = "tcp") -> str | None:
        """Return ``"name (pid N)"`` for the process bound to *port*, if any."""
        for columns in self._table(protocol, processes=True):
            if len(columns) < 4 or _local_port(columns[3]) != port:
                continue
            match = _USERS_RE.search(" ".join(columns[5:]))
            if match:
                return f"{match.group('name')} (pid {match.group('pid')})"
            return "unknown process"
        return None

    def reachable(self, host: str, port: int) -> bool:
        """Return ``True`` when a TCP connection to *host*:*port* succeeds."""
        try:
            with socket.create_connection((host, port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False


@dataclass(slots=True)
class DnsResolver:
    """Resolve A records with ``dig`` so answers bypass the local cache."""

    executor: CommandExecutor
    dig_bin: str = "dig"

    def resolve_a(self, name: str) -> tuple[str, ...]:
        """Return the IPv4 answers for *name* (CNAME hops are dropped)."""
        result = self.executor.run([self.dig_bin, "+short", "A", name], timeout=15)
        if not result.ok:
            raise CommandError(result.describe(), argv=result.argv, exit_code=result.exit_code)
        answers = [line.strip() for line in result.stdout.splitlines()]
        return tuple(answer for answer in answers if is_ipv4(answer))


@dataclass(slots=True)
class PublicAddressDiscovery:
    """Discover the host's public IPv4 address from several echo services."""

    executor: CommandExecutor
    sources: Sequence[str]
    quorum: int = 2
    timeout: float = 10.0

    def candidates(self) -> list[str]:
        """Return every IPv4 answer gathered from the configured sources."""
        found: list[str] = []
        for source in self.sources:
            result = self.executor.run(
                ["curl", "-fsS", "--max-time", str(int(self.timeout)), source],
                timeout=self.timeout + 5,
            )
            answer = result.stdout.strip()
            if result.ok and is_ipv4(answer):
                found.append(answer)
        local = self.executor.run(["hostname", "-I"], timeout=5)
        if local.ok:
            for token in local.stdout.split():
                if is_ipv4(token) and ipaddress.IPv4Address(token).is_global:
                    found.append(token)
                    break
        return found

    def discover(self, override: str | None = None) -> str:
        """Return the agreed public address, or *override* when supplied.

        Raises :class:`AddressUnconfirmed` when fewer than ``quorum`` sources
        agree on one address.
        """
        if override:
            if not is_ipv4(override):
                raise ValidationError(f"{override!r} is not a valid IPv4 address.")
            return override.strip()
        found = self.candidates()
        if found:
            address, votes = Counter(found).most_common(1)[0]
            if votes >= self.quorum:
                return address
        raise AddressUnconfirmed(sorted(set(found)))


__all__ = ["DnsResolver", "PortScanner", "PublicAddressDiscovery", "is_ipv4"]
