"""End-to-end tests for the network update with all external commands faked."""

import os

import aiosmtplib
import pytest

from config_model import SmtpConfig, parse_config
from host_manager import NetworkIdentity
from pipeline import EXIT_ABORTED, EXIT_OK, EXIT_PARTIAL, StageStatus, exit_code_for
from proxy_template import render_all
from sync_service import NetworkSyncService, allowed_hosts_line, enable_site, proxy_templates

EXPECTED_HOSTS = "ALLOWED_HOSTS = ['127.0.0.1', 'localhost', '192.168.1.42', 'example.com']"


def _site_text(cfg):
    with open(cfg.site_available_path) as f:
        return f.read()


def test_full_run_updates_everything(mock_host_manager, netsync_config, settings_file):
    result = NetworkSyncService(netsync_config).sync_now()

    assert result.succeeded, result.detail
    assert exit_code_for(result) == EXIT_OK
    assert settings_file.read_text() == f"DEBUG = False\nSTATIC_URL = '/static/'\n{EXPECTED_HOSTS}\n"

    site = _site_text(netsync_config)
    assert "server_name 192.168.1.42 example.com;" in site
    assert f"ssl_certificate {netsync_config.self_signed_cert_path};" in site
    assert os.readlink(netsync_config.site_enabled_path) == netsync_config.site_available_path

    restarts = [c for c in mock_host_manager.calls if c.startswith("systemctl")]
    assert restarts == ["systemctl restart nginx", "systemctl restart django_app"]
    assert mock_host_manager.calls.index("nginx -t") < mock_host_manager.calls.index("systemctl restart nginx")
    assert "LAN URL:    https://192.168.1.42" in result.detail
    assert "Public URL: https://example.com" in result.detail


def test_self_signed_subject_uses_current_ip(mock_host_manager, netsync_config):
    NetworkSyncService(netsync_config).sync_now()

    openssl = next(c for c in mock_host_manager.calls if c.startswith("openssl req"))
    assert openssl.endswith("/C=PG/ST=NCD/L=Port Moresby/O=LAN/OU=LocalNetwork/CN=192.168.1.42")
    assert "-days 825" in openssl
    assert "rsa:2048" in openssl


def test_rerun_with_same_ip_leaves_files_identical(mock_host_manager, netsync_config, settings_file):
    NetworkSyncService(netsync_config).sync_now()
    settings_once = settings_file.read_bytes()
    site_once = _site_text(netsync_config)

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.succeeded
    assert settings_file.read_bytes() == settings_once
    assert _site_text(netsync_config) == site_once


def test_failed_validation_prevents_restart(mock_host_manager, netsync_config):
    mock_host_manager["nginx -t"] = (1, "", "nginx: [emerg] invalid number of arguments\n")

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.stage == "validate"
    assert not any(c.startswith("systemctl") for c in mock_host_manager.calls)
    assert exit_code_for(result) == EXIT_PARTIAL


def test_probe_failure_touches_nothing(mock_host_manager, netsync_config, settings_file):
    before = settings_file.read_text()
    mock_host_manager["ip -4 route get 1"] = (2, "", "RTNETLINK answers: Network is unreachable\n")

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.stage == "probe"
    assert exit_code_for(result) == EXIT_ABORTED
    assert settings_file.read_text() == before
    assert not os.path.exists(netsync_config.site_available_path)
    assert mock_host_manager.calls == ["ip -4 route get 1"]


def test_missing_settings_file_aborts_before_services(mock_host_manager, netsync_config, settings_file):
    settings_file.unlink()

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.stage == "allowed_hosts"
    assert "not found" in result.detail
    assert exit_code_for(result) == EXIT_ABORTED
    assert not any(c.startswith(("openssl", "nginx", "systemctl")) for c in mock_host_manager.calls)
    stages = {r.name: r.status for r in result.stages}
    assert stages["restart"] == StageStatus.PENDING


def test_letsencrypt_adds_public_site(mock_host_manager, netsync_config):
    netsync_config.public_domain.letsencrypt = True
    netsync_config.public_domain.email = "ops@example.com"
    mock_host_manager["certbot certonly"] = (0, "", "")

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.succeeded, result.detail
    assert any(c.startswith("certbot certonly") and "-d example.com" in c for c in mock_host_manager.calls)
    site = _site_text(netsync_config)
    assert "server_name 192.168.1.42;" in site
    assert "server_name example.com;" in site
    assert f"ssl_certificate {netsync_config.public_cert_path};" in site


def test_certbot_failure_stops_before_proxy_config(mock_host_manager, netsync_config):
    netsync_config.public_domain.letsencrypt = True
    mock_host_manager["certbot certonly"] = (1, "", "Challenge failed for domain example.com\n")

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.stage == "certgen"
    assert "Challenge failed" in result.detail
    assert not os.path.exists(netsync_config.site_available_path)
    assert exit_code_for(result) == EXIT_PARTIAL


def test_notification_failure_keeps_exit_code(mock_host_manager, netsync_config):
    netsync_config.notify.recipients = ["ops@example.com"]
    mock_host_manager["mail -s"] = (1, "", "mail: cannot send message\n")

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.succeeded
    assert exit_code_for(result) == EXIT_OK
    assert any(c.startswith("mail -s") for c in mock_host_manager.calls)


def test_header_injection_in_recipient_keeps_exit_code(mock_host_manager, netsync_config, monkeypatch):
    sent = []

    async def _send(message, **kwargs):
        sent.append(message["To"])

    monkeypatch.setattr(aiosmtplib, "send", _send)
    netsync_config.notify.transport = "smtp"
    netsync_config.notify.smtp = SmtpConfig(host="smtp.example.com", sender="netsync@example.com")
    netsync_config.notify.recipients = ["ops@example.com\nBcc: x@example.net", "admin@example.com"]

    result = NetworkSyncService(netsync_config).sync_now()

    assert result.succeeded
    assert exit_code_for(result) == EXIT_OK
    assert sent == ["admin@example.com"]


def test_failure_report_is_sent(mock_host_manager, netsync_config):
    netsync_config.notify.recipients = ["ops@example.com"]
    mock_host_manager["mail -s"] = (0, "", "")
    mock_host_manager["nginx -t"] = (1, "", "bad config\n")

    NetworkSyncService(netsync_config).sync_now()

    mail = next(c for c in mock_host_manager.calls if c.startswith("mail -s"))
    assert "FAILURE (validate)" in mail


def test_no_notify_skips_report(mock_host_manager, netsync_config):
    netsync_config.notify.recipients = ["ops@example.com"]

    NetworkSyncService(netsync_config).sync_now(notify=False)

    assert not any(c.startswith("mail") for c in mock_host_manager.calls)


def test_allowed_hosts_line_without_domain(netsync_config):
    netsync_config.allowed_hosts.include_public_domain = False
    line = allowed_hosts_line(netsync_config, NetworkIdentity("eth0", "10.0.0.5"))
    assert line == "ALLOWED_HOSTS = ['127.0.0.1', 'localhost', '10.0.0.5']"


def test_domain_falls_back_to_lan_block_without_ca_pair(netsync_config):
    templates = proxy_templates(netsync_config, NetworkIdentity("eth0", "10.0.0.5"), public_site=False)
    assert [t.server_names for t in templates] == [("10.0.0.5", "example.com")]


def test_default_config_serves_static_files():
    cfg = parse_config("project: {name: shop, directory: /srv/shop}\n")

    out = render_all(proxy_templates(cfg, NetworkIdentity("eth0", "10.0.0.5"), public_site=False))

    assert "location /static/ {" in out
    assert "root /srv/shop;" in out


@pytest.mark.parametrize("existing", ["file", "wrong_link", "none"])
def test_enable_site_replaces_existing_entry(tmp_path, existing):
    available = str(tmp_path / "available" / "app")
    enabled = tmp_path / "enabled" / "app"
    enabled.parent.mkdir()
    if existing == "file":
        enabled.write_text("stale")
    elif existing == "wrong_link":
        os.symlink("/nonexistent", enabled)

    enable_site(available, str(enabled))

    assert os.readlink(enabled) == available
