"""Shared pytest fixtures for unit tests."""

from unittest.mock import patch as _patch

import pytest

from config_model import NetSyncConfig

IP_ROUTE_GET = "ip -4 route get 1"
IP_ADDR_SHOW = "ip -4 -o addr show dev wlan0"


@pytest.fixture
def mock_host_manager():
    """Patch only `HostManager._run_command` to return fixed outputs from a dict.

    The fixture yields the `outputs` dict so tests can modify or extend it.
    Each mapping uses the command string as the key and returns a tuple
    `(return_code, stdout, stderr)`. Every executed command string is
    appended to `outputs.calls`.
    """

    class _Outputs(dict):
        calls: list

    outputs = _Outputs(
        {
            IP_ROUTE_GET: (0, "1.0.0.0 via 192.168.1.1 dev wlan0 src 192.168.1.42 uid 1000 \n    cache \n", ""),
            IP_ADDR_SHOW: (0, "3: wlan0    inet 192.168.1.42/24 brd 192.168.1.255 scope global dynamic wlan0\\       valid_lft 86000sec preferred_lft 86000sec\n", ""),
            "nginx -t": (0, "", "nginx: configuration file /etc/nginx/nginx.conf test is successful\n"),
            "systemctl restart nginx": (0, "", ""),
            "systemctl restart django_app": (0, "", ""),
        }
    )
    outputs.calls = []

    def _fake_run_command(cmd, *args, **kwargs):
        key = " ".join(cmd)
        outputs.calls.append(key)
        if key in outputs:
            return outputs[key]
        # Certificate commands embed tmp paths; match on the leading words
        for prefix in ("openssl req", "certbot certonly", "mail -s"):
            if key.startswith(prefix) and prefix in outputs:
                return outputs[prefix]
        raise RuntimeError(f"Unexpected command: {key}")

    outputs["openssl req"] = (0, "", "")

    patcher = _patch("host_manager.HostManager._run_command", new=_fake_run_command)
    patcher.start()
    try:
        yield outputs
    finally:
        patcher.stop()


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "project" / "django_app" / "settings.py"
    path.parent.mkdir(parents=True)
    path.write_text("DEBUG = False\nALLOWED_HOSTS = ['127.0.0.1', 'localhost', '10.0.0.9']\nSTATIC_URL = '/static/'\n")
    return path


@pytest.fixture
def netsync_config(tmp_path, settings_file):
    """Return a config whose every path lives under `tmp_path`."""
    data = {
        "project": {
            "name": "django_app",
            "directory": str(tmp_path / "project"),
            "static_root": str(tmp_path / "project"),
        },
        "tls": {"directory": str(tmp_path / "ssl")},
        "public_domain": {"name": "example.com", "live_dir": str(tmp_path / "letsencrypt")},
        "nginx": {
            "available_dir": str(tmp_path / "nginx" / "sites-available"),
            "enabled_dir": str(tmp_path / "nginx" / "sites-enabled"),
        },
        "runtime": {"lock_file": str(tmp_path / "run" / "netsync.lock"), "command_timeout": 5},
    }
    return NetSyncConfig.model_validate(data)
