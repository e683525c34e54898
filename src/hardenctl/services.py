"""Service selection planning.

The planner turns the operator's selection into an :class:`ActivationPlan`:
the services whose readiness conditions hold, in a stable dependency order,
plus a reason for every service that was left out. Port collisions are
reported before anything is evaluated so no partial startup can happen.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import ServicesConfig
from .errors import PlanningError
from .readiness import ReadinessCondition, ReadinessProber

MISSING_CERTIFICATE = "missing certificate"
PORT_IN_USE = "port in use"


@dataclass(frozen=True)
class PortBinding:
    """A port a service listens on."""

    port: int
    protocol: str = "tcp"

    @property
    def label(self) -> str:
        return f"{self.port}/{self.protocol}"


@dataclass(frozen=True)
class ServiceSpec:
    """A selectable service and what must hold before it may start."""

    name: str
    profile: str
    ports: tuple[PortBinding, ...]
    conditions: tuple[ReadinessCondition, ...] = ()
    requires: tuple[str, ...] = ()
    container: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "profile": self.profile,
            "ports": [binding.label for binding in self.ports],
            "requires": list(self.requires),
            "container": self.container,
            "description": self.description,
        }


@dataclass(frozen=True)
class SkippedService:
    """A selected service left out of the plan, and why."""

    name: str
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class ActivationPlan:
    """Services to activate, in order, and the ones skipped."""

    services: tuple[ServiceSpec, ...] = ()
    skipped: tuple[SkippedService, ...] = ()

    @property
    def profiles(self) -> tuple[str, ...]:
        """Return the activation profile tags, in plan order, without repeats."""
        seen: list[str] = []
        for spec in self.services:
            if spec.profile not in seen:
                seen.append(spec.profile)
        return tuple(seen)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.services)

    def skipped_reason(self, name: str) -> str | None:
        for entry in self.skipped:
            if entry.name == name:
                return entry.reason
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "services": [spec.to_dict() for spec in self.services],
            "profiles": list(self.profiles),
            "skipped": [
                {"name": entry.name, "reason": entry.reason, "detail": entry.detail}
                for entry in self.skipped
            ],
        }


@dataclass(slots=True)
class ServiceActivationPlanner:
    """Evaluate readiness of selected services and order them."""

    prober: ReadinessProber

    def check_ports(self, selected: Sequence[ServiceSpec]) -> None:
        """Raise :class:`PlanningError` on duplicate names or shared ports.

        Two services may not use the same port number, whatever the protocol.
        """
        names: set[str] = set()
        owners: dict[int, str] = {}
        for spec in selected:
            if spec.name in names:
                raise PlanningError(f"Service {spec.name} was selected twice.")
            names.add(spec.name)
            for port in {binding.port for binding in spec.ports}:
                holder = owners.get(port)
                if holder is not None:
                    raise PlanningError(
                        f"Port {port} is claimed by both {holder} and {spec.name}.",
                        remediation="Assign distinct ports in the services configuration.",
                    )
                owners[port] = spec.name

    def plan(self, selected: Sequence[ServiceSpec]) -> ActivationPlan:
        """Return the activation plan for *selected*."""
        self.check_ports(selected)
        ordered = self._order(selected)
        planned: list[ServiceSpec] = []
        skipped: list[SkippedService] = []
        skipped_names: set[str] = set()
        for spec in ordered:
            blocked = next((req for req in spec.requires if req in skipped_names), None)
            if blocked is not None:
                skipped.append(SkippedService(spec.name, f"requires {blocked}"))
                skipped_names.add(spec.name)
                continue
            unmet = self._first_unmet(spec)
            if unmet is not None:
                skipped.append(unmet)
                skipped_names.add(spec.name)
                continue
            planned.append(spec)
        return ActivationPlan(tuple(planned), tuple(skipped))

    # ------------------------------------------------------------------
    def _first_unmet(self, spec: ServiceSpec) -> SkippedService | None:
        for condition in spec.conditions:
            outcome = self.prober.wait(condition)
            if not outcome.satisfied:
                detail = outcome.observation.detail or outcome.observation.state.value
                return SkippedService(spec.name, condition.reason, detail)
        return None

    @staticmethod
    def _order(selected: Sequence[ServiceSpec]) -> list[ServiceSpec]:
        """Stable topological sort over ``requires``; selection order breaks ties."""
        by_name = {spec.name: spec for spec in selected}
        for spec in selected:
            for requirement in spec.requires:
                if requirement not in by_name:
                    raise PlanningError(
                        f"{spec.name} requires {requirement}, which was not selected.",
                        remediation=f"Select {requirement} as well or drop {spec.name}.",
                    )
        remaining = list(selected)
        done: set[str] = set()
        ordered: list[ServiceSpec] = []
        while remaining:
            ready = next(
                (spec for spec in remaining if all(req in done for req in spec.requires)),
                None,
            )
            if ready is None:
                cycle = ", ".join(spec.name for spec in remaining)
                raise PlanningError(f"Service requirements form a cycle: {cycle}.")
            ordered.append(ready)
            done.add(ready.name)
            remaining.remove(ready)
        return ordered


def brook_catalog(
    config: ServicesConfig,
    *,
    cert_root: Path,
    domain: str | None = None,
) -> Mapping[str, ServiceSpec]:
    """Return the built-in Brook services keyed by name.

    ``wss`` is only offered when a domain is known, since its certificate
    lives under ``<cert_root>/<domain>``.
    """

    def free(*bindings: PortBinding) -> tuple[ReadinessCondition, ...]:
        return tuple(
            ReadinessCondition.port_free(binding.port, binding.protocol, reason=PORT_IN_USE)
            for binding in bindings
        )

    vpn_ports = (PortBinding(config.vpn_port, "tcp"),)
    socks_ports = (PortBinding(config.socks5_port, "tcp"), PortBinding(config.socks5_port, "udp"))
    catalog: dict[str, ServiceSpec] = {
        "vpn": ServiceSpec(
            name="vpn",
            profile="vpn",
            ports=vpn_ports,
            conditions=free(*vpn_ports),
            container="brook-vpn",
            description="Brook VPN",
        ),
        "socks5": ServiceSpec(
            name="socks5",
            profile="socks5",
            ports=socks_ports,
            conditions=free(*socks_ports),
            container="brook-socks5",
            description="Brook SOCKS5",
        ),
    }
    if domain:
        wss_ports = (PortBinding(config.wss_port, "tcp"),)
        live = cert_root / domain
        catalog["wss"] = ServiceSpec(
            name="wss",
            profile="wss",
            ports=wss_ports,
            conditions=(
                ReadinessCondition.file_exists(
                    live / "fullchain.pem", certificate=True, reason=MISSING_CERTIFICATE
                ),
                ReadinessCondition.file_exists(live / "privkey.pem", reason=MISSING_CERTIFICATE),
                *free(*wss_ports),
            ),
            container="brook-wss",
            description="Brook WSS",
        )
    return catalog


CATALOG_NAMES = ("vpn", "socks5", "wss")
STALE_CONTAINERS = ("brook-vpn", "brook-socks5", "brook-wss")


__all__ = [
    "ActivationPlan",
    "CATALOG_NAMES",
    "MISSING_CERTIFICATE",
    "PORT_IN_USE",
    "PortBinding",
    "STALE_CONTAINERS",
    "ServiceActivationPlanner",
    "ServiceSpec",
    "SkippedService",
    "brook_catalog",
]
