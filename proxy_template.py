"""Typed reverse-proxy template rendered to an Nginx site file."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from errors import IncompleteTemplateError, UnsafeValueError

TEMPLATE_DIR = os.path.join(os.path.abspath(os.path.dirname(__file__)), "templates")
SITE_TEMPLATE = "nginx_site.conf.j2"

# Anything that could end a directive, open a block or start a comment in nginx syntax
_UNSAFE_RE = re.compile(r"[\s;{}'\"#\\\x00-\x1f\x7f]")


@dataclass(frozen=True)
class ProxyTemplate:
    """Everything needed to render one reverse-proxy site.

    Ports listed in `tls_ports` are served with TLS; any other listen port
    redirects to HTTPS when a TLS port is present, and proxies directly
    otherwise.
    """

    listen_ports: frozenset[int]
    server_names: tuple[str, ...]
    tls_cert_path: Optional[str]
    tls_key_path: Optional[str]
    upstream_socket_path: str
    static_root: Optional[str] = None
    tls_ports: frozenset[int] = field(default_factory=lambda: frozenset({443}))


def _check_safe(name: str, value: str) -> str:
    if _UNSAFE_RE.search(value):
        raise UnsafeValueError(f"Refusing to render {name}={value!r}: contains whitespace, quotes, control or nginx syntax characters")
    return value


def _template_context(template: ProxyTemplate) -> dict[str, Any]:
    """Validate a template and flatten it into the values the Jinja template uses."""
    names = list(dict.fromkeys(n.strip() for n in template.server_names if n and n.strip()))
    if not names:
        raise IncompleteTemplateError("server_names must contain at least one name")
    if not template.listen_ports:
        raise IncompleteTemplateError("listen_ports must not be empty")
    if not template.upstream_socket_path:
        raise IncompleteTemplateError("upstream_socket_path is required")

    for port in template.listen_ports:
        if port < 1 or port > 65535:
            raise IncompleteTemplateError(f"Invalid listen port {port}")

    ports = sorted(template.listen_ports)
    tls_ports = [p for p in ports if p in template.tls_ports]
    plain_ports = [p for p in ports if p not in template.tls_ports]

    if tls_ports and not (template.tls_cert_path and template.tls_key_path):
        raise IncompleteTemplateError("tls_cert_path and tls_key_path are required when a TLS port is listened on")

    return {
        "server_names": [_check_safe("server_name", n) for n in names],
        "plain_ports": plain_ports,
        "tls_ports": tls_ports,
        "tls_cert_path": _check_safe("tls_cert_path", template.tls_cert_path) if tls_ports and template.tls_cert_path else None,
        "tls_key_path": _check_safe("tls_key_path", template.tls_key_path) if tls_ports and template.tls_key_path else None,
        "upstream_socket_path": _check_safe("upstream_socket_path", template.upstream_socket_path),
        "static_root": _check_safe("static_root", template.static_root) if template.static_root else None,
    }


def _get_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        autoescape=select_autoescape([]),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render(template: ProxyTemplate) -> str:
    """Render one site. Pure: identical templates give identical text."""
    context = _template_context(template)
    return _get_env().get_template(SITE_TEMPLATE).render(site=context)


def render_all(templates: Iterable[ProxyTemplate]) -> str:
    """Render several sites into one file, separated by a blank line."""
    rendered = [render(t) for t in templates]
    if not rendered:
        raise IncompleteTemplateError("Nothing to render")
    return "\n".join(rendered)
