"""Host manager for network probing and the external tools a sync run delegates to."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Optional

from errors import NoAddressError, NoRouteError

logger = logging.getLogger(__name__)

# Exit code reported for a command killed by its timeout (same as coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124

# Destination used for the routing-table lookup; any non-local address works
ROUTE_PROBE_DESTINATION = "1"

_INET_RE = re.compile(r"\binet\s+(?P<ip>\d{1,3}(?:\.\d{1,3}){3})(?:/\d+)?")


@dataclass(frozen=True)
class NetworkIdentity:
    interface: str
    ipv4: str


class HostManager:
    @classmethod
    def _run_command(cls, args: list[str], input: Optional[str] = None, check: bool = True, timeout: Optional[float] = None) -> tuple[int, str, str]:
        """Run a subprocess command and return (returncode, stdout, stderr).

        Raises CalledProcessError when `check` is set and the command fails.
        A command exceeding `timeout` is killed and reported with exit code
        TIMEOUT_EXIT_CODE instead of hanging the run.
        """
        try:
            ret = subprocess.run(
                args,
                text=True,
                capture_output=True,
                check=check,
                input=input,
                timeout=timeout,
            )
            return (ret.returncode, ret.stdout, ret.stderr)
        except subprocess.CalledProcessError as e:
            logger.error(f"HostManager subprocess failed: cmd={e.cmd} returncode={e.returncode}")
            for line in e.stdout.splitlines():
                logger.error(f"  stdout: {line}")
            for line in e.stderr.splitlines():
                logger.error(f"  stderr: {line}")
            raise

        except subprocess.TimeoutExpired as e:
            logger.error("HostManager subprocess timed out: cmd=%s timeout=%ss", args, timeout)
            stdout = e.stdout if type(e.stdout) is str else ""
            if check:
                raise subprocess.CalledProcessError(TIMEOUT_EXIT_CODE, args, output=stdout, stderr=f"timed out after {timeout}s") from e
            return (TIMEOUT_EXIT_CODE, stdout, f"timed out after {timeout}s")

        except FileNotFoundError as e:
            logger.error(
                "HostManager subprocess failed: cmd=%s error=%s",
                args,
                e,
            )
            raise

    @classmethod
    def default_route_interface(cls) -> str:
        """Return the interface the kernel routes outbound traffic through.

        Parses `ip -4 route get 1`, e.g. `1.0.0.0 via 192.168.1.1 dev wlan0 src ...`.
        """
        (returncode, stdout, stderr) = cls._run_command(["ip", "-4", "route", "get", ROUTE_PROBE_DESTINATION], check=False)
        if returncode != 0:
            raise NoRouteError(f"No default route: {stderr.strip() or 'ip route get failed'}")

        for line in stdout.splitlines():
            parts = line.split()
            if "dev" in parts:
                idx = parts.index("dev")
                if idx + 1 < len(parts):
                    return parts[idx + 1]
        raise NoRouteError(f"Cannot parse interface from route lookup: {stdout.strip()!r}")

    @classmethod
    def interface_ipv4(cls, interface: str) -> str:
        """Return the first IPv4 address bound to `interface`.

        When several addresses are bound the first one in kernel-reported
        order is used; there is no further tie-break.
        """
        (returncode, stdout, stderr) = cls._run_command(["ip", "-4", "-o", "addr", "show", "dev", interface], check=False)
        if returncode != 0:
            raise NoAddressError(f"Cannot read addresses of {interface}: {stderr.strip()}")

        for line in stdout.splitlines():
            m = _INET_RE.search(line)
            if m:
                return m.group("ip")
        raise NoAddressError(f"Interface {interface} has no IPv4 address")

    @classmethod
    def probe(cls, interface: Optional[str] = None) -> NetworkIdentity:
        """Capture the network identity for this run.

        `interface` pins the lookup to a given device and skips the route query.
        """
        iface = interface or cls.default_route_interface()
        ipv4 = cls.interface_ipv4(iface)
        logger.info("Active IP detected: %s (%s)", ipv4, iface)
        return NetworkIdentity(interface=iface, ipv4=ipv4)

    @staticmethod
    def self_signed_cert_command(cert_path: str, key_path: str, subject: str, days: int, key_size: int) -> list[str]:
        return [
            "openssl",
            "req",
            "-x509",
            "-nodes",
            "-days",
            str(days),
            "-newkey",
            f"rsa:{key_size}",
            "-keyout",
            key_path,
            "-out",
            cert_path,
            "-subj",
            subject,
        ]

    @staticmethod
    def certbot_command(domain: str, email: Optional[str]) -> list[str]:
        """Obtain or renew a CA-issued certificate for `domain` using the nginx plugin.

        `certonly` leaves the site file untouched; it is regenerated by the renderer.
        """
        cmd = ["certbot", "certonly", "--nginx", "--non-interactive", "--agree-tos", "--keep-until-expiring", "-d", domain]
        if email:
            cmd += ["-m", email]
        else:
            cmd.append("--register-unsafely-without-email")
        return cmd

    @staticmethod
    def nginx_test_command() -> list[str]:
        return ["nginx", "-t"]

    @staticmethod
    def restart_command(service: str) -> list[str]:
        return ["systemctl", "restart", service]
