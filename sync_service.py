"""Network update: re-sync the allow-list, certificates and reverse proxy to the current IP."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import config_editor
import proxy_template
from config_model import NetSyncConfig
from errors import ConfigEditError, ExternalProcessError, ProbeError
from host_manager import HostManager, NetworkIdentity
from notifier import build_notifier
from pipeline import Orchestrator, RunResult, run_lock
from proxy_template import ProxyTemplate

logger = logging.getLogger(__name__)

STAGE_PROBE = "probe"
STAGE_ALLOWED_HOSTS = "allowed_hosts"
STAGE_CERTGEN = "certgen"
STAGE_PROXY_CONFIG = "proxy_config"
STAGE_VALIDATE = "validate"
STAGE_RESTART = "restart"


@dataclass
class RunContext:
    """State handed from one stage to the next within a single run."""

    config: NetSyncConfig
    identity: Optional[NetworkIdentity] = None
    proxy_config: Optional[str] = None

    def require_identity(self) -> NetworkIdentity:
        if self.identity is None:
            raise ProbeError("Network identity has not been probed")
        return self.identity


def allowed_hosts_line(cfg: NetSyncConfig, identity: NetworkIdentity) -> str:
    hosts = list(cfg.allowed_hosts.hosts) + [identity.ipv4]
    if cfg.allowed_hosts.include_public_domain and cfg.public_domain.name:
        hosts.append(cfg.public_domain.name)
    return config_editor.format_allowed_hosts(cfg.allowed_hosts.key, hosts)


def public_site_enabled(cfg: NetSyncConfig) -> bool:
    """Whether the public domain gets its own site block with the CA-issued pair."""
    if not cfg.public_domain.name:
        return False
    if cfg.public_domain.letsencrypt:
        return True
    return os.path.exists(str(cfg.public_cert_path))


def proxy_templates(cfg: NetSyncConfig, identity: NetworkIdentity, public_site: bool) -> list[ProxyTemplate]:
    """Build the LAN site (self-signed pair) and, if enabled, the public-domain site."""
    ports = frozenset(cfg.nginx.listen_ports)
    lan_names = [identity.ipv4]
    if cfg.public_domain.name and not public_site:
        # No CA-issued pair: the domain is served with the LAN certificate
        lan_names.append(cfg.public_domain.name)

    templates = [
        ProxyTemplate(
            listen_ports=ports,
            server_names=tuple(lan_names),
            tls_cert_path=cfg.self_signed_cert_path,
            tls_key_path=cfg.self_signed_key_path,
            upstream_socket_path=str(cfg.project.socket_path),
            static_root=cfg.project.static_root,
        )
    ]
    if public_site:
        templates.append(
            ProxyTemplate(
                listen_ports=ports,
                server_names=(str(cfg.public_domain.name),),
                tls_cert_path=cfg.public_cert_path,
                tls_key_path=cfg.public_key_path,
                upstream_socket_path=str(cfg.project.socket_path),
                static_root=cfg.project.static_root,
            )
        )
    return templates


def enable_site(available_path: str, enabled_path: str) -> None:
    """Point `enabled_path` at `available_path` (like `ln -sf`), replacing it atomically."""
    if os.path.islink(enabled_path) and os.readlink(enabled_path) == available_path:
        return
    os.makedirs(os.path.dirname(enabled_path), exist_ok=True)
    tmp_link = f"{enabled_path}.netsync-tmp"
    if os.path.lexists(tmp_link):
        os.unlink(tmp_link)
    os.symlink(available_path, tmp_link)
    os.replace(tmp_link, enabled_path)
    logger.info("Enabled site %s -> %s", enabled_path, available_path)


class NetworkSyncService:
    """Builds and runs the network-update pipeline for one configuration."""

    def __init__(self, config: NetSyncConfig) -> None:
        self.config = config

    def build_pipeline(self, ctx: RunContext) -> Orchestrator:
        cfg = self.config
        orch = Orchestrator(command_timeout=cfg.runtime.command_timeout)

        def probe() -> None:
            try:
                ctx.identity = HostManager.probe(cfg.network.interface)
            except OSError as e:
                raise ProbeError(f"Cannot query network configuration: {e}") from e

        def update_allowed_hosts() -> None:
            identity = ctx.require_identity()
            line = allowed_hosts_line(cfg, identity)
            try:
                config_editor.replace_directive(str(cfg.project.settings_file), cfg.allowed_hosts.key, line)
            except ConfigEditError:
                raise
            except OSError as e:
                raise ConfigEditError(f"Cannot update {cfg.project.settings_file}: {e}") from e

        def generate_certificates() -> None:
            identity = ctx.require_identity()
            try:
                os.makedirs(str(cfg.tls.directory), mode=0o755, exist_ok=True)
            except OSError as e:
                raise ExternalProcessError(f"Cannot create {cfg.tls.directory}: {e}") from e
            logger.info("Regenerating self-signed certificate for LAN (%s)", identity.ipv4)
            cmd = HostManager.self_signed_cert_command(
                cert_path=cfg.self_signed_cert_path,
                key_path=cfg.self_signed_key_path,
                subject=f"{cfg.tls.subject}/CN={identity.ipv4}",
                days=cfg.tls.days,
                key_size=cfg.tls.key_size,
            )
            orch.run_stage(STAGE_CERTGEN, cmd).check()

            domain = cfg.public_domain
            if domain.letsencrypt and domain.name:
                logger.info("Requesting public certificate for %s", domain.name)
                orch.run_stage(STAGE_CERTGEN, HostManager.certbot_command(domain.name, domain.email)).check()

        def write_proxy_config() -> None:
            identity = ctx.require_identity()
            templates = proxy_templates(cfg, identity, public_site_enabled(cfg))
            ctx.proxy_config = proxy_template.render_all(templates)
            try:
                config_editor.atomic_write(cfg.site_available_path, ctx.proxy_config)
                enable_site(cfg.site_available_path, cfg.site_enabled_path)
            except OSError as e:
                raise ConfigEditError(f"Cannot write {cfg.site_available_path}: {e}") from e
            logger.info("Generated reverse-proxy config: %s", cfg.site_available_path)

        def validate() -> None:
            orch.run_stage(STAGE_VALIDATE, HostManager.nginx_test_command()).check()

        def restart() -> None:
            for service in (cfg.nginx.service, str(cfg.project.service)):
                orch.run_stage(STAGE_RESTART, HostManager.restart_command(service)).check()
            identity = ctx.require_identity()
            scheme = "https" if 443 in cfg.nginx.listen_ports else "http"
            orch.note(f"LAN URL:    {scheme}://{identity.ipv4}")
            if cfg.public_domain.name:
                orch.note(f"Public URL: {scheme}://{cfg.public_domain.name}")

        orch.add_stage(STAGE_PROBE, probe)
        orch.add_stage(STAGE_ALLOWED_HOSTS, update_allowed_hosts, mutates=True)
        orch.add_stage(STAGE_CERTGEN, generate_certificates, mutates=True)
        orch.add_stage(STAGE_PROXY_CONFIG, write_proxy_config, mutates=True)
        orch.add_stage(STAGE_VALIDATE, validate)
        orch.add_stage(STAGE_RESTART, restart, mutates=True)
        return orch

    def sync_now(self, notify: bool = True) -> RunResult:
        """Run one network update under the run lock and return its result."""
        logger.info("Starting network update for %s...", self.config.project.name)
        ctx = RunContext(config=self.config)
        with run_lock(self.config.runtime.lock_file):
            orch = self.build_pipeline(ctx)
            notifier = build_notifier(self.config) if notify else None
            if notifier is not None:
                orch.add_on_finished(notifier.notify)
            result = orch.run()

        if result.succeeded:
            logger.info("Network update complete")
            for line in result.detail.splitlines():
                logger.info("  %s", line)
        else:
            logger.error("Network update failed at stage %s: %s", result.stage, result.detail)
        return result
