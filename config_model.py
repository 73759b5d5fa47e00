"""Typed configuration for the network synchronizer, loaded from YAML."""

from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from yaml.nodes import Node
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ConfigValidationError

logger = logging.getLogger(__name__)

ENV_CONFIG_FILE = "CONFIG_FILE"
ENV_INITIAL_CONFIG = "INITIAL_CONFIG"

DEFAULT_CONFIG_FILE = "/etc/netsync/config.yaml"

DEFAULT_INITIAL_CONFIG = """\
project:
  name: django_app
  directory: /srv/django_app
allowed_hosts:
  hosts: ["127.0.0.1", "localhost"]
public_domain:
  name: null
  letsencrypt: false
nginx:
  listen_ports: [80, 443]
notify:
  recipients: []
"""

CENSORED_PASSWORD = "PASSWORD_HIDDEN"


class _MultilineStrDumper(yaml.SafeDumper):
    pass


def _str_representer(dumper: yaml.SafeDumper, data: str) -> Node:
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)  # type: ignore


_MultilineStrDumper.add_representer(str, _str_representer)


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectConfig(_Section):
    name: str = Field(pattern=r"^[A-Za-z0-9_.-]+$")
    directory: str
    # Derived from name/directory when omitted
    settings_file: Optional[str] = None
    socket_path: Optional[str] = None
    static_root: Optional[str] = None
    service: Optional[str] = None


class AllowedHostsConfig(_Section):
    key: str = "ALLOWED_HOSTS"
    hosts: list[str] = Field(default_factory=lambda: ["127.0.0.1", "localhost"])
    include_public_domain: bool = True


class NetworkConfig(_Section):
    # Pin the interface instead of asking the routing table
    interface: Optional[str] = None


class TlsConfig(_Section):
    directory: Optional[str] = None
    cert_name: str = "selfsigned"
    days: int = Field(default=825, gt=0)
    key_size: int = Field(default=2048, ge=1024)
    subject: str = "/C=PG/ST=NCD/L=Port Moresby/O=LAN/OU=LocalNetwork"


class PublicDomainConfig(_Section):
    name: Optional[str] = None
    letsencrypt: bool = False
    email: Optional[str] = None
    live_dir: str = "/etc/letsencrypt/live"


class NginxConfig(_Section):
    site_name: Optional[str] = None
    available_dir: str = "/etc/nginx/sites-available"
    enabled_dir: str = "/etc/nginx/sites-enabled"
    listen_ports: list[int] = Field(default_factory=lambda: [80, 443])
    service: str = "nginx"


class SmtpConfig(_Section):
    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str
    starttls: bool = True
    timeout: float = 30


class NotifyConfig(_Section):
    recipients: list[str] = Field(default_factory=list)
    transport: Literal["mail", "smtp"] = "mail"
    mail_command: list[str] = Field(default_factory=lambda: ["mail"])
    smtp: Optional[SmtpConfig] = None


class RuntimeConfig(_Section):
    lock_file: str = "/run/netsync.lock"
    command_timeout: float = Field(default=120, gt=0)
    log_file: Optional[str] = None


class NetSyncConfig(_Section):
    project: ProjectConfig
    allowed_hosts: AllowedHostsConfig = Field(default_factory=AllowedHostsConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    tls: TlsConfig = Field(default_factory=TlsConfig)
    public_domain: PublicDomainConfig = Field(default_factory=PublicDomainConfig)
    nginx: NginxConfig = Field(default_factory=NginxConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="after")
    def _fill_derived_defaults(self) -> "NetSyncConfig":
        p = self.project
        if p.settings_file is None:
            p.settings_file = os.path.join(p.directory, p.name, "settings.py")
        if p.socket_path is None:
            p.socket_path = os.path.join(p.directory, f"{p.name}.sock")
        if p.static_root is None:
            p.static_root = p.directory
        if p.service is None:
            p.service = p.name
        if self.tls.directory is None:
            self.tls.directory = os.path.join("/etc/ssl", p.name)
        if self.nginx.site_name is None:
            self.nginx.site_name = p.name

        if self.public_domain.letsencrypt and not self.public_domain.name:
            raise ValueError("public_domain.letsencrypt requires public_domain.name")
        if self.notify.transport == "smtp" and self.notify.recipients and self.notify.smtp is None:
            raise ValueError("notify.transport 'smtp' requires a notify.smtp section")
        return self

    @property
    def self_signed_cert_path(self) -> str:
        return os.path.join(str(self.tls.directory), f"{self.tls.cert_name}.crt")

    @property
    def self_signed_key_path(self) -> str:
        return os.path.join(str(self.tls.directory), f"{self.tls.cert_name}.key")

    @property
    def public_cert_path(self) -> Optional[str]:
        if not self.public_domain.name:
            return None
        return os.path.join(self.public_domain.live_dir, self.public_domain.name, "fullchain.pem")

    @property
    def public_key_path(self) -> Optional[str]:
        if not self.public_domain.name:
            return None
        return os.path.join(self.public_domain.live_dir, self.public_domain.name, "privkey.pem")

    @property
    def site_available_path(self) -> str:
        return os.path.join(self.nginx.available_dir, str(self.nginx.site_name))

    @property
    def site_enabled_path(self) -> str:
        return os.path.join(self.nginx.enabled_dir, str(self.nginx.site_name))


def parse_config(content: str) -> NetSyncConfig:
    """Validate YAML text into a NetSyncConfig or raise ConfigValidationError."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML: {e}") from e
    if data is None:
        raise ConfigValidationError("Configuration is empty")
    try:
        return NetSyncConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigValidationError(f"Invalid configuration: {e}") from e


def load_config(file_path: str) -> NetSyncConfig:
    file_path = os.path.abspath(file_path)
    try:
        with open(file_path, encoding="utf-8") as f:
            content = f.read()
    except FileNotFoundError:
        raise ConfigValidationError(f"Config file not found: {file_path}") from None
    cfg = parse_config(content)
    logger.info("Loaded config from %s", file_path)
    return cfg


def load_or_create(file_path: str, fallback_config_data: str) -> NetSyncConfig:
    """Load config from file_path, or create it from fallback_config_data if missing.

    The fallback is validated before anything is written; an existing but
    invalid file is an error, never overwritten.
    """
    file_path = os.path.abspath(file_path)

    if os.path.exists(file_path):
        return load_config(file_path)

    cfg = parse_config(fallback_config_data)

    os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
    fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(fallback_config_data)
    logger.info("Created initial config at %s", file_path)
    return cfg


def dump_config(cfg: NetSyncConfig, censor_password: bool = True) -> str:
    """Return the effective configuration (derived defaults included) as YAML."""
    data = cfg.model_dump()
    smtp = data["notify"]["smtp"]
    if censor_password and smtp and smtp["password"]:
        smtp["password"] = CENSORED_PASSWORD
    return yaml.dump(data, Dumper=_MultilineStrDumper, sort_keys=False)
