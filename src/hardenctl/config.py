"""Configuration loader for hardenctl.

Values are merged from four layers, later layers winning:

1. Built-in defaults (:data:`DEFAULTS`).
2. ``/etc/hardenctl/config.yml`` (or ``--config-file`` /
   ``HARDENCTL_CONFIG_FILE``).
3. Environment variables prefixed with ``HARDENCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HARDENCTL_SSH__PROBE_HOST=10.0.0.5
    export HARDENCTL_TLS__DNS_PROPAGATION__ATTEMPTS=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load hardenctl configuration. Install with "
        "`pip install hardenctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "HARDENCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetryBudget:
    """Attempt count and interval used by readiness waits."""

    attempts: int
    interval: float

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "interval": self.interval}


@dataclass(frozen=True)
class Fail2banConfig:
    """fail2ban jail settings bound to the SSH port."""

    enabled: bool = True
    jail_path: Path = Path("/etc/fail2ban/jail.local")
    maxretry: int = 4
    findtime: int = 300
    bantime: int = 3600

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "jail_path": str(self.jail_path),
            "maxretry": self.maxretry,
            "findtime": self.findtime,
            "bantime": self.bantime,
        }


@dataclass(frozen=True)
class SSHConfig:
    """SSH daemon integration values."""

    config_path: Path
    service: str
    socket_unit: str
    sshd_bin: str
    probe_host: str
    liveness: RetryBudget
    liveness_timeout: float
    fail2ban: Fail2banConfig

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_path": str(self.config_path),
            "service": self.service,
            "socket_unit": self.socket_unit,
            "sshd_bin": self.sshd_bin,
            "probe_host": self.probe_host,
            "liveness": self.liveness.to_dict(),
            "liveness_timeout": self.liveness_timeout,
            "fail2ban": self.fail2ban.to_dict(),
        }


@dataclass(frozen=True)
class FirewallConfig:
    """ufw integration values."""

    ufw_bin: str = "ufw"
    default_incoming: str = "deny"
    default_outgoing: str = "allow"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ufw_bin": self.ufw_bin,
            "default_incoming": self.default_incoming,
            "default_outgoing": self.default_outgoing,
        }


@dataclass(frozen=True)
class AccountsConfig:
    """Account provisioning defaults."""

    sudoers_dir: Path = Path("/etc/sudoers.d")
    admin_group: str = "sudo"
    admin_shell: str = "/bin/bash"
    restricted_shell: str = "/bin/rbash"
    home_root: Path = Path("/home")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sudoers_dir": str(self.sudoers_dir),
            "admin_group": self.admin_group,
            "admin_shell": self.admin_shell,
            "restricted_shell": self.restricted_shell,
            "home_root": str(self.home_root),
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate issuance and renewal values."""

    live_dir: Path
    certbot_bin: str
    challenge_port: int
    certbot_timeout: float
    renewal_cron_file: Path
    renewal_schedule: str
    renew_before_days: int
    dns_propagation: RetryBudget

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "live_dir": str(self.live_dir),
            "certbot_bin": self.certbot_bin,
            "challenge_port": self.challenge_port,
            "certbot_timeout": self.certbot_timeout,
            "renewal": {
                "cron_file": str(self.renewal_cron_file),
                "schedule": self.renewal_schedule,
                "renew_before_days": self.renew_before_days,
            },
            "dns_propagation": self.dns_propagation.to_dict(),
        }


@dataclass(frozen=True)
class DiscoveryConfig:
    """Public address discovery sources."""

    sources: tuple[str, ...]
    quorum: int
    timeout: float

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"sources": list(self.sources), "quorum": self.quorum, "timeout": self.timeout}


@dataclass(frozen=True)
class ServicesConfig:
    """Container-backed service activation values."""

    project_dir: Path
    docker_bin: str
    image: str
    vpn_port: int
    socks5_port: int
    wss_port: int
    startup: RetryBudget

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "project_dir": str(self.project_dir),
            "docker_bin": self.docker_bin,
            "image": self.image,
            "ports": {
                "vpn": self.vpn_port,
                "socks5": self.socks5_port,
                "wss": self.wss_port,
            },
            "startup": self.startup.to_dict(),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for hardenctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    ssh: SSHConfig
    firewall: FirewallConfig
    accounts: AccountsConfig
    tls: TLSConfig
    discovery: DiscoveryConfig
    services: ServicesConfig

    @property
    def snapshot_dir(self) -> Path:
        """Return the directory holding on-disk copies of live snapshots."""
        return self.state_dir / "snapshots"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "ssh": self.ssh.to_dict(),
            "firewall": self.firewall.to_dict(),
            "accounts": self.accounts.to_dict(),
            "tls": self.tls.to_dict(),
            "discovery": self.discovery.to_dict(),
            "services": self.services.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/hardenctl/config.yml",
    "state_dir": "/var/lib/hardenctl",
    "logs_dir": "/var/log/hardenctl",
    "runtime_dir": "/run/hardenctl",
    "templates_dir": "/etc/hardenctl/templates",
    "lock_timeout": 30.0,
    "command_timeout": 60.0,
    "ssh": {
        "config_path": "/etc/ssh/sshd_config",
        "service": "ssh",
        "socket_unit": "ssh.socket",
        "sshd_bin": "sshd",
        "probe_host": "127.0.0.1",
        "liveness": {"attempts": 5, "interval": 2.0},
        "liveness_timeout": 30.0,
        "fail2ban": {
            "enabled": True,
            "jail_path": "/etc/fail2ban/jail.local",
            "maxretry": 4,
            "findtime": 300,
            "bantime": 3600,
        },
    },
    "firewall": {
        "ufw_bin": "ufw",
        "default_incoming": "deny",
        "default_outgoing": "allow",
    },
    "accounts": {
        "sudoers_dir": "/etc/sudoers.d",
        "admin_group": "sudo",
        "admin_shell": "/bin/bash",
        "restricted_shell": "/bin/rbash",
        "home_root": "/home",
    },
    "tls": {
        "live_dir": "/etc/letsencrypt/live",
        "certbot_bin": "certbot",
        "challenge_port": 80,
        "certbot_timeout": 300.0,
        "renewal": {
            "cron_file": "/etc/cron.d/hardenctl-certbot",
            "schedule": "0 0 * * *",
            "renew_before_days": 30,
        },
        "dns_propagation": {"attempts": 30, "interval": 10.0},
    },
    "discovery": {
        "sources": [
            "https://api.ipify.org",
            "https://ifconfig.me/ip",
            "https://icanhazip.com",
        ],
        "quorum": 2,
        "timeout": 10.0,
    },
    "services": {
        "project_dir": "/opt/hardenctl/services",
        "docker_bin": "docker",
        "image": "txthinking/brook",
        "ports": {"vpn": 7799, "socks5": 1080, "wss": 8899},
        "startup": {"attempts": 5, "interval": 2.0},
    },
}

ALLOWED_FIREWALL_POLICIES = {"allow", "deny", "reject"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged, DEFAULTS, "")

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(
    raw: Mapping[str, object],
    schema: Mapping[str, object],
    prefix: str,
) -> None:
    """Reject keys that do not exist in the defaults tree."""
    unknown = set(raw.keys()) - set(schema.keys())
    if unknown:
        joined = ", ".join(sorted(unknown))
        label = f"{prefix.rstrip('.')} " if prefix else ""
        raise ConfigError(f"Unknown {label}configuration keys: {joined}.")
    for key, default in schema.items():
        if isinstance(default, Mapping) and key in raw:
            _validate_structure(_as_dict(raw[key], f"{prefix}{key}"), default, f"{prefix}{key}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    fail2ban_map = _as_dict(ssh_map.get("fail2ban"), "ssh.fail2ban")
    ssh = SSHConfig(
        config_path=_to_path(ssh_map.get("config_path")),
        service=_expect_name(ssh_map.get("service"), "ssh.service"),
        socket_unit=str(ssh_map.get("socket_unit") or ""),
        sshd_bin=_expect_name(ssh_map.get("sshd_bin"), "ssh.sshd_bin"),
        probe_host=_expect_name(ssh_map.get("probe_host"), "ssh.probe_host"),
        liveness=_build_budget(ssh_map.get("liveness"), "ssh.liveness"),
        liveness_timeout=_expect_positive_float(
            ssh_map.get("liveness_timeout"), "ssh.liveness_timeout", default=30.0
        ),
        fail2ban=Fail2banConfig(
            enabled=bool(fail2ban_map.get("enabled", True)),
            jail_path=_to_path(fail2ban_map.get("jail_path")),
            maxretry=_expect_int(fail2ban_map.get("maxretry"), "ssh.fail2ban.maxretry", default=4),
            findtime=_expect_int(
                fail2ban_map.get("findtime"), "ssh.fail2ban.findtime", default=300
            ),
            bantime=_expect_int(fail2ban_map.get("bantime"), "ssh.fail2ban.bantime", default=3600),
        ),
    )

    firewall_map = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        ufw_bin=_expect_name(firewall_map.get("ufw_bin"), "firewall.ufw_bin"),
        default_incoming=_expect_policy(
            firewall_map.get("default_incoming"), "firewall.default_incoming"
        ),
        default_outgoing=_expect_policy(
            firewall_map.get("default_outgoing"), "firewall.default_outgoing"
        ),
    )

    accounts_map = _as_dict(raw.get("accounts"), "accounts")
    accounts = AccountsConfig(
        sudoers_dir=_to_path(accounts_map.get("sudoers_dir")),
        admin_group=_expect_name(accounts_map.get("admin_group"), "accounts.admin_group"),
        admin_shell=_expect_name(accounts_map.get("admin_shell"), "accounts.admin_shell"),
        restricted_shell=_expect_name(
            accounts_map.get("restricted_shell"), "accounts.restricted_shell"
        ),
        home_root=_to_path(accounts_map.get("home_root")),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    renewal_map = _as_dict(tls_map.get("renewal"), "tls.renewal")
    renew_before = _expect_int(
        renewal_map.get("renew_before_days"), "tls.renewal.renew_before_days", default=30
    )
    if renew_before < 0:
        raise ConfigError("tls.renewal.renew_before_days must be non-negative.")
    tls = TLSConfig(
        live_dir=_to_path(tls_map.get("live_dir")),
        certbot_bin=_expect_name(tls_map.get("certbot_bin"), "tls.certbot_bin"),
        challenge_port=_expect_port(tls_map.get("challenge_port"), "tls.challenge_port"),
        certbot_timeout=_expect_positive_float(
            tls_map.get("certbot_timeout"), "tls.certbot_timeout", default=300.0
        ),
        renewal_cron_file=_to_path(renewal_map.get("cron_file")),
        renewal_schedule=_expect_name(renewal_map.get("schedule"), "tls.renewal.schedule"),
        renew_before_days=renew_before,
        dns_propagation=_build_budget(tls_map.get("dns_propagation"), "tls.dns_propagation"),
    )

    discovery_map = _as_dict(raw.get("discovery"), "discovery")
    sources = tuple(
        str(item).strip()
        for item in _as_sequence(discovery_map.get("sources", ()), "discovery.sources")
        if str(item).strip()
    )
    quorum = _expect_int(discovery_map.get("quorum"), "discovery.quorum", default=2)
    if quorum < 1:
        raise ConfigError("discovery.quorum must be at least 1.")
    discovery = DiscoveryConfig(
        sources=sources,
        quorum=quorum,
        timeout=_expect_positive_float(
            discovery_map.get("timeout"), "discovery.timeout", default=10.0
        ),
    )

    services_map = _as_dict(raw.get("services"), "services")
    ports_map = _as_dict(services_map.get("ports"), "services.ports")
    services = ServicesConfig(
        project_dir=_to_path(services_map.get("project_dir")),
        docker_bin=_expect_name(services_map.get("docker_bin"), "services.docker_bin"),
        image=_expect_name(services_map.get("image"), "services.image"),
        vpn_port=_expect_port(ports_map.get("vpn"), "services.ports.vpn"),
        socks5_port=_expect_port(ports_map.get("socks5"), "services.ports.socks5"),
        wss_port=_expect_port(ports_map.get("wss"), "services.ports.wss"),
        startup=_build_budget(services_map.get("startup"), "services.startup"),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        command_timeout=_expect_positive_float(
            raw.get("command_timeout"), "command_timeout", default=60.0
        ),
        ssh=ssh,
        firewall=firewall,
        accounts=accounts,
        tls=tls,
        discovery=discovery,
        services=services,
    )


def _build_budget(value: object, label: str) -> RetryBudget:
    mapping = _as_dict(value, label)
    attempts = _expect_int(mapping.get("attempts"), f"{label}.attempts", default=1)
    if attempts < 1:
        raise ConfigError(f"{label}.attempts must be at least 1.")
    interval_raw = mapping.get("interval")
    interval = 0.0 if interval_raw in (None, 0) else _expect_positive_float(
        interval_raw, f"{label}.interval", default=1.0
    )
    return RetryBudget(attempts=attempts, interval=interval)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str) -> int:
    port = _expect_int(value, label, default=0)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be a port between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_name(value: object, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_policy(value: object, label: str) -> str:
    policy = _expect_name(value, label).lower()
    if policy not in ALLOWED_FIREWALL_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_FIREWALL_POLICIES))
        raise ConfigError(f"Unsupported {label} '{policy}'. Allowed: {allowed}.")
    return policy


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AccountsConfig",
    "AppConfig",
    "ConfigError",
    "DiscoveryConfig",
    "Fail2banConfig",
    "FirewallConfig",
    "RetryBudget",
    "SSHConfig",
    "ServicesConfig",
    "TLSConfig",
    "load_config",
]
