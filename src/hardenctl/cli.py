"""Typer-powered command line interface for ``hardenctl``.

Every mutating command holds the host lock for its whole run, records one
structured operation in ``operations.jsonl`` and exits with the engine's exit
code: 0 on success, 1 when nothing was (net) changed, 2 when a rollback failed
and console access is needed.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .accounts import AccountManager, generate_password
from .activation import ServiceActivator, ServiceSettings
from .certificates import CertificateProvisioner
from .config import AppConfig, ConfigError, load_config
from .errors import HardenctlError, ValidationError
from .executor import CommandExecutor
from .exit_codes import ExitCode
from .firewall import FirewallManager, FirewallRule, FirewallSubsystem, UfwFirewall
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .network import DnsResolver, PortScanner, PublicAddressDiscovery
from .readiness import ReadinessCondition, ReadinessProber
from .services import CATALOG_NAMES, ActivationPlan, ServiceActivationPlanner
from .snapshots import ConfigTarget, FileTarget, SavedSnapshot, SnapshotError, SnapshotStore
from .ssh import SshAccessManager, SshChangeReport, SshdSubsystem, SshSettings
from .templates import TemplateEngine
from .tls import TLSValidationReport, TLSValidationSeverity
from .transition import TransitionController, TransitionResult
from .workflow import HostSetup, SetupRequest

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to hardenctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Accept the automated liveness probe instead of asking for confirmation.",
)
SERVICE_OPTION = typer.Option(
    None,
    "--service",
    "-s",
    help=f"Service to activate (repeatable): {', '.join(CATALOG_NAMES)}.",
)
SERVICE_PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    envvar="BROOK_PASSWORD",
    help="Shared service password (at least 6 characters).",
)
DOMAIN_OPTION = typer.Option(None, "--domain", help="Domain served by the wss service.")
SOCKS5_USER_OPTION = typer.Option(None, "--socks5-user", help="SOCKS5 username.")
SERVER_IP_OPTION = typer.Option(
    None,
    "--server-ip",
    help="Public IPv4 of this host (discovered when omitted).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Safe host hardening and service activation.

        SSH and firewall changes are snapshotted, validated before they go live,
        verified after they go live and rolled back automatically when the new
        configuration does not come up.
        """
    ).strip(),
)
ssh_app = typer.Typer(help="Reconfigure the SSH daemon.")
users_app = typer.Typer(help="Manage login accounts.")
firewall_app = typer.Typer(help="Inspect and change firewall rules.")
cert_app = typer.Typer(help="Issue, renew and verify certificates.")
services_app = typer.Typer(help="Plan and activate container services.")
snapshots_app = typer.Typer(help="Recover configuration saved by a failed rollback.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(ssh_app, name="ssh")
app.add_typer(users_app, name="users")
app.add_typer(firewall_app, name="firewall")
app.add_typer(cert_app, name="cert")
app.add_typer(services_app, name="services")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    executor: CommandExecutor
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    prober: ReadinessProber
    discovery: PublicAddressDiscovery
    controller: TransitionController
    firewall: FirewallManager
    ssh: SshAccessManager
    accounts: AccountManager
    certificates: CertificateProvisioner
    activator: ServiceActivator
    setup: HostSetup


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    executor = CommandExecutor(default_timeout=config.command_timeout)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    scanner = PortScanner(executor)
    prober = ReadinessProber(executor, scanner, DnsResolver(executor))
    discovery = PublicAddressDiscovery(
        executor,
        config.discovery.sources,
        quorum=config.discovery.quorum,
        timeout=config.discovery.timeout,
    )
    controller = TransitionController(SnapshotStore(config.snapshot_dir), prober)
    sshd = SshdSubsystem(
        subsystem="ssh",
        path=config.ssh.config_path,
        executor=executor,
        sshd_bin=config.ssh.sshd_bin,
        service=config.ssh.service,
        socket_unit=config.ssh.socket_unit,
    )
    ufw = UfwFirewall(
        executor,
        ufw_bin=config.firewall.ufw_bin,
        default_incoming=config.firewall.default_incoming,
        default_outgoing=config.firewall.default_outgoing,
    )
    firewall = FirewallManager(FirewallSubsystem(ufw, protected_ports=sshd.live_ports), controller)
    ssh = SshAccessManager(sshd, firewall, controller, config.ssh, templates)
    accounts = AccountManager(executor, controller, config.accounts)
    certificates = CertificateProvisioner(
        executor=executor,
        prober=prober,
        scanner=scanner,
        discovery=discovery,
        firewall=firewall,
        templates=templates,
        config=config.tls,
        ufw_bin=config.firewall.ufw_bin,
    )
    activator = ServiceActivator(
        executor=executor,
        planner=ServiceActivationPlanner(prober),
        prober=prober,
        firewall=firewall,
        templates=templates,
        config=config.services,
        cert_root=config.tls.live_dir,
    )
    runtime = RuntimeContext(
        config=config,
        executor=executor,
        locks=locks,
        logger=logger,
        templates=templates,
        prober=prober,
        discovery=discovery,
        controller=controller,
        firewall=firewall,
        ssh=ssh,
        accounts=accounts,
        certificates=certificates,
        activator=activator,
        setup=HostSetup(accounts, firewall, ssh, certificates, activator, discovery),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the hardenctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"hardenctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _engine_error(op: OperationScope, exc: HardenctlError) -> NoReturn:
    """Report an engine error with its remediation and exit with its code."""
    if exc.remediation:
        console.print(f"[yellow]Remediation:[/yellow] {exc.remediation}")
    _command_error(
        op,
        exc.message,
        rc=int(exc.exit_code),
        errors=[f"{exc.kind}: {exc.message}"],
        context=exc.to_dict(),
    )


def _emit(payload: Mapping[str, object], *, json_output: bool) -> bool:
    if json_output:
        console.print_json(data=payload)
    return json_output


def _print_transition(result: TransitionResult) -> None:
    style = {"committed": "green", "aborted": "yellow", "rolled-back": "yellow"}
    colour = style.get(result.status.value, "red")
    console.print(f"[{colour}]{result.subsystem}: {result.status.value}[/{colour}]")
    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


def _print_plan(plan: ActivationPlan) -> None:
    table = Table("Service", "Profile", "Ports", "Status")
    for spec in plan.services:
        table.add_row(
            spec.name,
            spec.profile,
            ", ".join(binding.label for binding in spec.ports),
            "[green]ready[/green]",
        )
    for entry in plan.skipped:
        table.add_row(entry.name, "-", "-", f"[yellow]skipped: {entry.reason}[/yellow]")
    console.print(table)
    if plan.profiles:
        console.print(f"Profiles: {','.join(plan.profiles)}")


def _format_tls_status(severity: TLSValidationSeverity) -> str:
    if severity is TLSValidationSeverity.OK:
        return "[green]OK[/green]"
    if severity is TLSValidationSeverity.WARNING:
        return "[yellow]WARN[/yellow]"
    return "[red]ERROR[/red]"


def _render_tls_report(report: TLSValidationReport) -> None:
    table = Table("Scope", "Check", "Status", "Details")
    for finding in report.findings:
        table.add_row(
            finding.scope,
            finding.check,
            _format_tls_status(finding.severity),
            finding.message,
        )
    console.print(table)
    console.print(f"Certificate: {report.material.certificate}\nKey: {report.material.key}")
    if report.not_valid_after is not None:
        console.print(f"Not valid after: {report.not_valid_after.isoformat()}")


def _confirm_new_port(new_port: int, old_ports: Sequence[int]) -> bool:
    old = ", ".join(str(port) for port in old_ports)
    console.print(
        f"[bold]Ports {old} and {new_port} are both open.[/bold] "
        f"Open a NEW terminal and log in with `ssh -p {new_port} <user>@<host>`."
    )
    return typer.confirm(f"Did the login on port {new_port} work?", default=False)


def _print_ssh_report(report: SshChangeReport) -> None:
    for result in report.transitions:
        _print_transition(result)
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if report.ok:
        console.print(f"[green]SSH status: {report.status} (port {report.new_port}).[/green]")


# ----------------------------------------------------------------------
# ssh
# ----------------------------------------------------------------------
@ssh_app.command("apply")
def ssh_apply(
    ctx: typer.Context,
    port: int = typer.Option(..., "--port", "-p", help="Port sshd should listen on."),
    allow_user: list[str] | None = typer.Option(
        None,
        "--allow-user",
        "-u",
        help="User allowed to log in (repeatable); existing AllowUsers kept when omitted.",
    ),
    permit_root_login: bool = typer.Option(
        False, "--permit-root-login/--no-permit-root-login", help="Allow root logins."
    ),
    password_auth: bool = typer.Option(
        True, "--password-auth/--no-password-auth", help="Allow password logins."
    ),
    tunneling: bool = typer.Option(
        True, "--tunneling/--no-tunneling", help="Allow TCP/stream forwarding and tunnels."
    ),
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Move sshd to new settings through a dual-port verification window."""
    runtime = _get_runtime(ctx)
    settings = SshSettings(
        port=port,
        allow_users=tuple(allow_user or ()),
        permit_root_login=permit_root_login,
        password_authentication=password_auth,
        tunneling=tunneling,
    )
    args = {"port": port, "allow_users": list(settings.allow_users), "yes": yes}
    with runtime.logger.operation("ssh apply", args=args, target={"kind": "ssh"}) as op:
        try:
            with runtime.locks.host_lock():
                report = runtime.ssh.reconfigure(
                    settings,
                    confirm=None if yes else _confirm_new_port,
                    op=op,
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)

        if not _emit(report.to_dict(), json_output=json_output):
            _print_ssh_report(report)
        if report.error is not None:
            _engine_error(op, report.error)
        if report.warnings:
            op.warning(
                f"SSH change finished with status {report.status}.",
                warnings=report.warnings,
                context=report.to_dict(),
            )
            return
        op.success("SSH configuration applied.", changed=1, context=report.to_dict())


# ----------------------------------------------------------------------
# users
# ----------------------------------------------------------------------
@users_app.command("add")
def users_add(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Account name (3-32 letters, digits, _)."),
    admin: bool = typer.Option(
        False, "--admin/--tunnel", help="Create a sudo administrator or a tunnel-only user."
    ),
    password: str | None = typer.Option(
        None, "--password", help="Password to set (omit to leave unchanged)."
    ),
    generate: bool = typer.Option(
        False, "--generate-password", help="Generate and print a random password."
    ),
) -> None:
    """Create or update a login account."""
    runtime = _get_runtime(ctx)
    if generate and password is None:
        password = generate_password()
    args = {"username": username, "admin": admin, "password_set": password is not None}
    with runtime.logger.operation("users add", args=args, target={"kind": "user"}) as op:
        try:
            with runtime.locks.host_lock():
                if admin:
                    result = runtime.accounts.ensure_admin(username, password, op=op)
                else:
                    result = runtime.accounts.ensure_tunnel_user(username, password)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        state = "Created" if result.created else "Updated"
        console.print(f"[green]{state} {result.role.value} account {result.username}.[/green]")
        if generate:
            console.print(f"Password: [bold]{password}[/bold]")
        op.success(f"{state} account {result.username}.", changed=1, context=result.to_dict())


# ----------------------------------------------------------------------
# firewall
# ----------------------------------------------------------------------
@firewall_app.command("list")
def firewall_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the firewall state and its port rules."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("firewall list", target={"kind": "firewall"}) as op:
        try:
            state = runtime.firewall.list_rules()
        except HardenctlError as exc:
            _engine_error(op, exc)
        payload = {
            "enabled": state.enabled,
            "rules": [rule.to_dict() for rule in state.rules],
        }
        if not _emit(payload, json_output=json_output):
            console.print(f"Firewall: {'active' if state.enabled else 'inactive'}")
            table = Table("Port", "Protocol", "Comment")
            for rule in state.rules:
                table.add_row(str(rule.port), rule.protocol, rule.comment)
            console.print(table)
        op.success("Listed firewall rules.", changed=0, context=payload)


@firewall_app.command("allow")
def firewall_allow(
    ctx: typer.Context,
    spec: str = typer.Argument(..., help="Port spec such as 443/tcp or 1080."),
    comment: str = typer.Option("", "--comment", help="Rule comment."),
    enable: bool = typer.Option(False, "--enable", help="Also enable the firewall."),
) -> None:
    """Allow inbound traffic on a port."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "firewall allow", args={"spec": spec, "enable": enable}, target={"kind": "firewall"}
    ) as op:
        try:
            rule = FirewallRule.parse(spec, comment)
            with runtime.locks.host_lock():
                result = runtime.firewall.allow([rule], enable=enable, op=op)
            _print_transition(result)
            result.raise_for_status()
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        op.success(f"Allowed {rule.spec}.", changed=int(result.changed))


@firewall_app.command("revoke")
def firewall_revoke(
    ctx: typer.Context,
    spec: str = typer.Argument(..., help="Port spec such as 443/tcp or 1080."),
) -> None:
    """Remove an allow rule; refused when it would block SSH."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "firewall revoke", args={"spec": spec}, target={"kind": "firewall"}
    ) as op:
        try:
            rule = FirewallRule.parse(spec)
            with runtime.locks.host_lock():
                result = runtime.firewall.revoke([rule], op=op)
            _print_transition(result)
            result.raise_for_status()
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        op.success(f"Revoked {rule.spec}.", changed=int(result.changed))


# ----------------------------------------------------------------------
# cert
# ----------------------------------------------------------------------
@cert_app.command("issue")
def cert_issue(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to issue a certificate for."),
    email: str = typer.Option(..., "--email", help="Contact email for the CA account."),
    address: str | None = typer.Option(
        None, "--address", help="Public IPv4 the domain must resolve to (skips discovery)."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Verify DNS, run the HTTP challenge and schedule renewal."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert issue",
        args={"domain": domain, "email": email, "address": address},
        target={"kind": "certificate", "domain": domain},
    ) as op:
        try:
            with runtime.locks.host_lock():
                record = runtime.certificates.issue(domain, email, address=address, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        if not _emit(record.to_dict(), json_output=json_output):
            console.print(
                f"[green]Issued certificate for {record.domain} "
                f"(valid until {record.not_valid_after.isoformat()}).[/green]"
            )
            console.print(f"Renewal scheduled in {record.renewal.cron_file}.")
        op.success("Certificate issued.", changed=1, context=record.to_dict())


@cert_app.command("renew")
def cert_renew(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain whose certificate to renew."),
    force: bool = typer.Option(False, "--force", help="Renew even if not yet due."),
) -> None:
    """Renew a certificate when it is inside the renewal window."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert renew",
        args={"domain": domain, "force": force},
        target={"kind": "certificate", "domain": domain},
    ) as op:
        try:
            with runtime.locks.host_lock():
                result = runtime.certificates.renew(domain, force=force, op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        colour = "green" if result.renewed else "cyan"
        console.print(f"[{colour}]{result.message}[/{colour}]")
        op.success(result.message, changed=int(result.renewed), context=result.to_dict())


@cert_app.command("verify")
def cert_verify(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain whose certificate to check."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that the certificate files exist, parse, match and are not expired."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert verify", args={"domain": domain}, target={"kind": "certificate", "domain": domain}
    ) as op:
        try:
            report = runtime.certificates.inspect(domain)
        except ValidationError as exc:
            _engine_error(op, exc)
        if not _emit(report.to_dict(), json_output=json_output):
            _render_tls_report(report)
        context = {"report": report.to_dict()}
        if report.has_errors:
            op.error(
                "Certificate validation failed.", errors=report.errors(), rc=1, context=context
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if report.has_warnings:
            op.warning("Certificate validation completed with warnings.", context=context)
            return
        op.success("Certificate validation successful.", context=context)


# ----------------------------------------------------------------------
# services
# ----------------------------------------------------------------------
def _service_settings(
    password: str | None,
    server_ip: str | None,
    socks5_user: str | None,
    domain: str | None,
) -> ServiceSettings:
    return ServiceSettings(
        password=password or "",
        server_ip=server_ip,
        socks5_user=socks5_user,
        domain=domain,
    )


@services_app.command("plan")
def services_plan(
    ctx: typer.Context,
    service: list[str] | None = SERVICE_OPTION,
    password: str | None = SERVICE_PASSWORD_OPTION,
    domain: str | None = DOMAIN_OPTION,
    socks5_user: str | None = SOCKS5_USER_OPTION,
    server_ip: str | None = SERVER_IP_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show which selected services would start, without changing anything."""
    runtime = _get_runtime(ctx)
    selected = list(service or CATALOG_NAMES)
    with runtime.logger.operation(
        "services plan", args={"services": selected}, target={"kind": "services"}
    ) as op:
        try:
            plan = runtime.activator.plan(
                selected, _service_settings(password, server_ip, socks5_user, domain)
            )
        except HardenctlError as exc:
            _engine_error(op, exc)
        if not _emit(plan.to_dict(), json_output=json_output):
            _print_plan(plan)
        op.success("Planned services.", changed=0, context=plan.to_dict())


@services_app.command("up")
def services_up(
    ctx: typer.Context,
    service: list[str] | None = SERVICE_OPTION,
    password: str | None = SERVICE_PASSWORD_OPTION,
    domain: str | None = DOMAIN_OPTION,
    socks5_user: str | None = SOCKS5_USER_OPTION,
    server_ip: str | None = SERVER_IP_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start every selected service whose prerequisites hold."""
    runtime = _get_runtime(ctx)
    selected = list(service or CATALOG_NAMES)
    with runtime.logger.operation(
        "services up", args={"services": selected}, target={"kind": "services"}
    ) as op:
        try:
            with runtime.locks.host_lock():
                if "socks5" in selected and server_ip is None:
                    server_ip = runtime.discovery.discover()
                report = runtime.activator.activate(
                    selected,
                    _service_settings(password, server_ip, socks5_user, domain),
                    op=op,
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        if not _emit(report.to_dict(), json_output=json_output):
            _print_plan(report.plan)
            for warning in report.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
        if report.warnings:
            op.warning("Services started with warnings.", warnings=report.warnings)
            return
        op.success("Services started.", changed=len(report.plan.services))


@services_app.command("down")
def services_down(ctx: typer.Context) -> None:
    """Remove the service containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("services down", target={"kind": "services"}) as op:
        try:
            with runtime.locks.host_lock():
                removed = runtime.activator.deactivate(op=op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        console.print(f"Removed containers: {', '.join(removed) or 'none'}")
        op.success("Services stopped.", changed=len(removed))


# ----------------------------------------------------------------------
# wait
# ----------------------------------------------------------------------
WAIT_KINDS = ("port-open", "port-free", "dns", "file", "process")


def _build_condition(
    kind: str,
    target: str,
    *,
    expected: str | None,
    certificate: bool,
    attempts: int,
    interval: float,
) -> ReadinessCondition:
    if kind == "port-open":
        host, _, port = target.rpartition(":")
        if not port.isdigit():
            raise ValidationError("port-open targets look like HOST:PORT.")
        return ReadinessCondition.port_open(
            host or "127.0.0.1", int(port), attempts=attempts, interval=interval
        )
    if kind == "port-free":
        rule = FirewallRule.parse(target)
        protocol = "tcp" if rule.protocol == "any" else rule.protocol
        return ReadinessCondition.port_free(
            rule.port, protocol, attempts=attempts, interval=interval
        )
    if kind == "dns":
        if not expected:
            raise ValidationError("dns waits need --expected <IPv4>.")
        return ReadinessCondition.dns_matches(
            target, expected, attempts=attempts, interval=interval
        )
    if kind == "file":
        return ReadinessCondition.file_exists(
            target, certificate=certificate, attempts=attempts, interval=interval
        )
    if kind == "process":
        return ReadinessCondition.process_running(target, attempts=attempts, interval=interval)
    raise ValidationError(f"Unknown condition kind {kind!r}; use one of {', '.join(WAIT_KINDS)}.")


@app.command("wait")
def wait(
    ctx: typer.Context,
    kind: str = typer.Argument(..., help=f"Condition kind: {', '.join(WAIT_KINDS)}."),
    target: str = typer.Argument(..., help="HOST:PORT, PORT/PROTO, domain, path or unit."),
    expected: str | None = typer.Option(None, "--expected", help="Expected DNS value."),
    certificate: bool = typer.Option(
        False, "--certificate", help="For file waits, also require a parseable certificate."
    ),
    attempts: int = typer.Option(1, "--attempts", min=1, help="Maximum attempts."),
    interval: float = typer.Option(0.0, "--interval", min=0.0, help="Seconds between attempts."),
    timeout: float | None = typer.Option(None, "--timeout", help="Overall deadline in seconds."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Wait for an external condition with a bounded retry budget."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "wait", args={"kind": kind, "target": target}, target={"kind": "readiness"}
    ) as op:
        try:
            condition = _build_condition(
                kind,
                target,
                expected=expected,
                certificate=certificate,
                attempts=attempts,
                interval=interval,
            )
        except HardenctlError as exc:
            _engine_error(op, exc)
        result = runtime.prober.wait(condition, timeout=timeout)
        if not _emit(result.to_dict(), json_output=json_output):
            colour = "green" if result.satisfied else "red"
            console.print(
                f"[{colour}]{condition.describe()}: {result.status.value} "
                f"after {result.attempts} attempt(s)[/{colour}]"
            )
            if not result.satisfied and result.observation.detail:
                console.print(result.observation.detail)
        if not result.satisfied:
            _command_error(
                op,
                f"{condition.describe()} timed out.",
                context=result.to_dict(),
            )
        op.success("Condition satisfied.", changed=0, context=result.to_dict())


# ----------------------------------------------------------------------
# setup
# ----------------------------------------------------------------------
def _parse_tunnel_users(raw: Sequence[str]) -> tuple[tuple[str, str | None], ...]:
    users: list[tuple[str, str | None]] = []
    for item in raw:
        name, sep, password = item.partition(":")
        users.append((name, password if sep else None))
    return tuple(users)


@app.command("setup")
def setup(
    ctx: typer.Context,
    admin: str = typer.Option(..., "--admin", help="Administrator account (sudo)."),
    admin_password: str | None = typer.Option(None, "--admin-password"),
    tunnel_user: list[str] | None = typer.Option(
        None, "--tunnel-user", help="Tunnel-only user as NAME or NAME:PASSWORD (repeatable)."
    ),
    ssh_port: int = typer.Option(22, "--ssh-port", help="Final SSH port."),
    domain: str | None = DOMAIN_OPTION,
    email: str | None = typer.Option(None, "--email", help="Contact email for the CA."),
    address: str | None = typer.Option(None, "--address", help="Public IPv4 override."),
    service: list[str] | None = SERVICE_OPTION,
    password: str | None = SERVICE_PASSWORD_OPTION,
    socks5_user: str | None = SOCKS5_USER_OPTION,
    yes: bool = YES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the whole sequence: accounts, firewall, SSH, certificate, services."""
    runtime = _get_runtime(ctx)
    tunnel_users = _parse_tunnel_users(tunnel_user or ())
    allow_users = (admin, *(name for name, _ in tunnel_users))
    request = SetupRequest(
        ssh=SshSettings(port=ssh_port, allow_users=allow_users),
        admin=admin,
        admin_password=admin_password,
        tunnel_users=tunnel_users,
        domain=domain,
        email=email,
        address=address,
        services=tuple(service or ()),
        service_password=password,
        socks5_user=socks5_user,
    )
    args = {
        "admin": admin,
        "tunnel_users": [name for name, _ in tunnel_users],
        "ssh_port": ssh_port,
        "domain": domain,
        "services": list(request.services),
    }
    with runtime.logger.operation("setup", args=args, target={"kind": "host"}) as op:
        try:
            with runtime.locks.host_lock():
                report = runtime.setup.run(
                    request, confirm=None if yes else _confirm_new_port, op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        if not _emit(report.to_dict(), json_output=json_output):
            for stage in report.stages:
                console.print(f"[green]done:[/green] {stage}")
            for warning in report.warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
        if report.error is not None:
            _engine_error(op, report.error)
        if report.warnings:
            op.warning("Setup finished with warnings.", warnings=report.warnings)
            return
        op.success("Setup finished.", changed=len(report.stages))


# ----------------------------------------------------------------------
# snapshots
# ----------------------------------------------------------------------
def _recovery_target(
    runtime: RuntimeContext, saved: SavedSnapshot
) -> tuple[ConfigTarget, Callable[[], None] | None]:
    """Return where *saved* goes back to and how to make it take effect."""
    sshd = runtime.ssh.subsystem
    if saved.subsystem == sshd.subsystem:
        return sshd, sshd.activate
    if saved.subsystem == runtime.firewall.subsystem.subsystem:
        return runtime.firewall.subsystem, None
    if saved.path is not None:
        return FileTarget(saved.subsystem, saved.path, mode=saved.mode or 0o644), None
    raise ValidationError(
        f"The recovery copy of {saved.subsystem} does not record where it belongs.",
        remediation=(
            f"Copy it back by hand, then run 'hardenctl snapshots clear {saved.subsystem}'."
        ),
    )


@snapshots_app.command("list")
def snapshots_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show recovery copies left behind by failed rollbacks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("snapshots list", target={"kind": "snapshots"}) as op:
        try:
            saved = runtime.controller.store.saved()
        except SnapshotError as exc:
            _command_error(op, str(exc))
        payload = {"snapshots": [item.to_dict() for item in saved]}
        if not _emit(payload, json_output=json_output):
            if not saved:
                console.print("No recovery copies.")
            else:
                table = Table("Subsystem", "Captured", "Path")
                for item in saved:
                    path = str(item.path) if item.path is not None else "-"
                    if not item.snapshot.existed:
                        path += " (absent)"
                    table.add_row(item.subsystem, item.snapshot.captured_at.isoformat(), path)
                console.print(table)
        op.success("Listed recovery copies.", changed=0, context=payload)


@snapshots_app.command("restore")
def snapshots_restore(
    ctx: typer.Context,
    subsystem: str = typer.Argument(..., help="Subsystem to restore, e.g. ssh or firewall."),
) -> None:
    """Put a recovery copy back live, re-activate it and remove the copy."""
    runtime = _get_runtime(ctx)
    store = runtime.controller.store
    with runtime.logger.operation(
        "snapshots restore",
        args={"subsystem": subsystem},
        target={"kind": "snapshots", "subsystem": subsystem},
    ) as op:
        try:
            with runtime.locks.host_lock():
                saved = store.load(subsystem)
                target, activate = _recovery_target(runtime, saved)
                store.recover(subsystem, target)
                op.add_step("snapshots.restore", status="success", detail=saved.to_dict())
                if activate is not None:
                    activate()
                    op.add_step("snapshots.activate", status="success")
        except (LockTimeoutError, SnapshotError, OSError) as exc:
            _command_error(op, str(exc))
        except HardenctlError as exc:
            _engine_error(op, exc)
        console.print(f"[green]Restored {subsystem} from its recovery copy.[/green]")
        op.success(f"Restored {subsystem}.", changed=1, context=saved.to_dict())


@snapshots_app.command("clear")
def snapshots_clear(
    ctx: typer.Context,
    subsystem: str = typer.Argument(..., help="Subsystem whose recovery copy to drop."),
) -> None:
    """Drop a recovery copy and keep the live configuration as it is."""
    runtime = _get_runtime(ctx)
    store = runtime.controller.store
    with runtime.logger.operation(
        "snapshots clear",
        args={"subsystem": subsystem},
        target={"kind": "snapshots", "subsystem": subsystem},
    ) as op:
        try:
            with runtime.locks.host_lock():
                saved = store.load(subsystem)
                store.clear(subsystem)
        except (LockTimeoutError, SnapshotError) as exc:
            _command_error(op, str(exc))
        console.print(f"Cleared the recovery copy of {subsystem}.")
        op.success(f"Cleared {subsystem}.", changed=1, context=saved.to_dict())


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
