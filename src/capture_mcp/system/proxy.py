"""System HTTP/HTTPS proxy control.

Points the operating system proxy at the capture engine and back. Every
operation is best effort: each target (a macOS network service, the
Windows per-user settings, the GNOME proxy schema) is attempted
independently and reported as a CommandResult.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from capture_mcp.models import CommandResult, CommandSummary, OSCommandFailure
from capture_mcp.system.commands import DEFAULT_COMMAND_TIMEOUT, current_platform, run_command

logger = logging.getLogger(__name__)

WINDOWS_INTERNET_SETTINGS = r"HKCU:\Software\Microsoft\Windows\CurrentVersion\Internet Settings"


def parse_network_services(output: str) -> list[str]:
    """Parse ``networksetup -listallnetworkservices`` output.

    The first line is an explanatory note and disabled services are
    prefixed with an asterisk; both are skipped.
    """
    services = []
    for line in output.splitlines():
        name = line.strip()
        if not name or "*" in name:
            continue
        services.append(name)
    return services


def parse_mac_proxy_output(output: str) -> dict[str, Any]:
    """Parse ``networksetup -getwebproxy`` style output.

    Example output::

        Enabled: Yes
        Server: 127.0.0.1
        Port: 8899
        Authenticated Proxy Enabled: 0
    """
    fields = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip().lower()] = value.strip()
    return {
        "enabled": fields.get("enabled", "").lower() == "yes",
        "server": fields.get("server", ""),
        "port": fields.get("port", ""),
    }


def describe_proxy(label: str, enabled: bool, server: str = "", port: str = "") -> str:
    if not enabled:
        return f"{label} off"
    address = f"{server}:{port}" if server and port and port != "0" else server
    return f"{label} on {address}".rstrip()


class SystemProxyController:
    """Reads and changes the OS-level proxy.

    Attributes:
        platform: Normalized platform name ("darwin", "windows", "linux")
        timeout: Bound on each OS command, in seconds
    """

    def __init__(self, platform: str | None = None, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.platform = platform or current_platform()
        self.timeout = timeout

    async def enable(self, host: str, port: int) -> CommandSummary:
        """Route system HTTP and HTTPS traffic through host:port."""
        summary = CommandSummary(action="enable_proxy")
        if self.platform == "darwin":
            for service in await self._mac_services(summary):
                summary.results.append(
                    await self._run_target(
                        service,
                        [
                            ["networksetup", "-setwebproxy", service, host, str(port)],
                            ["networksetup", "-setsecurewebproxy", service, host, str(port)],
                            ["networksetup", "-setwebproxystate", service, "on"],
                            ["networksetup", "-setsecurewebproxystate", service, "on"],
                        ],
                        f"proxy set to {host}:{port}",
                    )
                )
        elif self.platform == "windows":
            script = (
                f"Set-ItemProperty -Path '{WINDOWS_INTERNET_SETTINGS}' -Name ProxyEnable -Value 1; "
                f"Set-ItemProperty -Path '{WINDOWS_INTERNET_SETTINGS}' -Name ProxyServer -Value '{host}:{port}'"
            )
            summary.results.append(
                await self._run_target(
                    "internet-settings",
                    [["powershell", "-NoProfile", "-Command", script]],
                    f"proxy set to {host}:{port}",
                )
            )
        elif self.platform == "linux":
            summary.results.append(
                await self._run_target(
                    "gnome",
                    [
                        ["gsettings", "set", "org.gnome.system.proxy.http", "host", host],
                        ["gsettings", "set", "org.gnome.system.proxy.http", "port", str(port)],
                        ["gsettings", "set", "org.gnome.system.proxy.https", "host", host],
                        ["gsettings", "set", "org.gnome.system.proxy.https", "port", str(port)],
                        ["gsettings", "set", "org.gnome.system.proxy", "mode", "manual"],
                    ],
                    f"proxy set to {host}:{port}",
                )
            )
        else:
            summary.results.append(CommandResult(target=self.platform, ok=False, detail="unsupported platform"))

        self._log(summary)
        return summary

    async def disable(self) -> CommandSummary:
        """Turn the system proxy off again."""
        summary = CommandSummary(action="disable_proxy")
        if self.platform == "darwin":
            for service in await self._mac_services(summary):
                summary.results.append(
                    await self._run_target(
                        service,
                        [
                            ["networksetup", "-setwebproxystate", service, "off"],
                            ["networksetup", "-setsecurewebproxystate", service, "off"],
                        ],
                        "proxy disabled",
                    )
                )
        elif self.platform == "windows":
            script = f"Set-ItemProperty -Path '{WINDOWS_INTERNET_SETTINGS}' -Name ProxyEnable -Value 0"
            summary.results.append(
                await self._run_target(
                    "internet-settings",
                    [["powershell", "-NoProfile", "-Command", script]],
                    "proxy disabled",
                )
            )
        elif self.platform == "linux":
            summary.results.append(
                await self._run_target(
                    "gnome",
                    [["gsettings", "set", "org.gnome.system.proxy", "mode", "none"]],
                    "proxy disabled",
                )
            )
        else:
            summary.results.append(CommandResult(target=self.platform, ok=False, detail="unsupported platform"))

        self._log(summary)
        return summary

    async def current(self) -> CommandSummary:
        """Read the current system proxy settings.

        Each result is ok when its settings could be read; the detail holds
        the HTTP and HTTPS proxy state.
        """
        summary = CommandSummary(action="proxy_status")
        if self.platform == "darwin":
            for service in await self._mac_services(summary):
                summary.results.append(await self._mac_state(service))
        elif self.platform == "windows":
            summary.results.append(await self._windows_state())
        elif self.platform == "linux":
            summary.results.append(await self._gnome_state())
        else:
            summary.results.append(CommandResult(target=self.platform, ok=False, detail="unsupported platform"))

        logger.debug(summary.message)
        return summary

    async def _mac_state(self, service: str) -> CommandResult:
        states = []
        for label, option in (("http", "-getwebproxy"), ("https", "-getsecurewebproxy")):
            try:
                output = await run_command(["networksetup", option, service], timeout=self.timeout)
            except OSCommandFailure as e:
                return CommandResult(target=service, ok=False, detail=e.message)
            states.append(describe_proxy(label, **parse_mac_proxy_output(output)))
        return CommandResult(target=service, ok=True, detail=", ".join(states))

    async def _windows_state(self) -> CommandResult:
        script = (
            f"Get-ItemProperty -Path '{WINDOWS_INTERNET_SETTINGS}' "
            "| Select-Object ProxyEnable, ProxyServer | ConvertTo-Json"
        )
        try:
            output = await run_command(["powershell", "-NoProfile", "-Command", script], timeout=self.timeout)
            settings = json.loads(output)
            if not isinstance(settings, dict):
                raise ValueError("not an object")
        except OSCommandFailure as e:
            return CommandResult(target="internet-settings", ok=False, detail=e.message)
        except ValueError:
            return CommandResult(target="internet-settings", ok=False, detail=f"unexpected output: {output.strip()}")
        enabled = str(settings.get("ProxyEnable")) == "1"
        server = str(settings.get("ProxyServer") or "")
        return CommandResult(target="internet-settings", ok=True, detail=describe_proxy("proxy", enabled, server))

    async def _gnome_state(self) -> CommandResult:
        values = {}
        queries = {
            "mode": ["org.gnome.system.proxy", "mode"],
            "http_host": ["org.gnome.system.proxy.http", "host"],
            "http_port": ["org.gnome.system.proxy.http", "port"],
            "https_host": ["org.gnome.system.proxy.https", "host"],
            "https_port": ["org.gnome.system.proxy.https", "port"],
        }
        for key, args in queries.items():
            try:
                output = await run_command(["gsettings", "get", *args], timeout=self.timeout)
            except OSCommandFailure as e:
                return CommandResult(target="gnome", ok=False, detail=e.message)
            values[key] = output.strip().strip("'")
        enabled = values["mode"] == "manual"
        states = [
            describe_proxy(label, enabled, values[f"{label}_host"], values[f"{label}_port"])
            for label in ("http", "https")
        ]
        return CommandResult(target="gnome", ok=True, detail=", ".join(states))

    async def _mac_services(self, summary: CommandSummary) -> list[str]:
        try:
            output = await run_command(["networksetup", "-listallnetworkservices"], timeout=self.timeout)
        except OSCommandFailure as e:
            summary.results.append(CommandResult(target="networksetup", ok=False, detail=e.message))
            return []
        services = parse_network_services(output)
        if not services:
            summary.results.append(CommandResult(target="networksetup", ok=False, detail="no network services found"))
        return services

    async def _run_target(self, target: str, commands: list[list[str]], success: str) -> CommandResult:
        """Run a target's commands in order, stopping at the first failure."""
        for args in commands:
            try:
                await run_command(args, timeout=self.timeout)
            except OSCommandFailure as e:
                return CommandResult(target=target, ok=False, detail=e.message)
        return CommandResult(target=target, ok=True, detail=success)

    @staticmethod
    def _log(summary: CommandSummary) -> None:
        if summary.ok:
            logger.info(summary.message)
        else:
            logger.warning(summary.message)
