"""Root certificate trust-store management.

Installs the capture engine's root certificate into the OS trust store so
intercepted HTTPS traffic can be decrypted, and removes it again.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from capture_mcp.models import CommandResult, CommandSummary, OSCommandFailure
from capture_mcp.system.commands import DEFAULT_COMMAND_TIMEOUT, current_platform, run_command

logger = logging.getLogger(__name__)

MAC_KEYCHAIN = "/Library/Keychains/System.keychain"
LINUX_CA_DIR = Path("/usr/local/share/ca-certificates")
LINUX_CA_NAME = "capture-mcp-ca.crt"
# Common name prefix of the capture engine's generated root certificate
DEFAULT_CA_NAME = "whistle"


class CertificateInstaller:
    """Adds and removes a root certificate in the OS trust store.

    Attributes:
        platform: Normalized platform name ("darwin", "windows", "linux")
        timeout: Bound on each OS command, in seconds
        linux_ca_dir: Directory scanned by update-ca-certificates
    """

    def __init__(
        self,
        platform: str | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        linux_ca_dir: Path = LINUX_CA_DIR,
    ) -> None:
        self.platform = platform or current_platform()
        self.timeout = timeout
        self.linux_ca_dir = linux_ca_dir

    async def install(self, cert_path: str | Path) -> CommandSummary:
        """Trust the certificate at cert_path as a root CA.

        Args:
            cert_path: PEM/CRT file of the root certificate

        Returns:
            Summary with one result for the trust store
        """
        path = Path(cert_path).expanduser().resolve()
        summary = CommandSummary(action="install_certificate")
        if not path.is_file():
            summary.results.append(CommandResult(target=str(path), ok=False, detail="certificate file not found"))
            logger.warning(summary.message)
            return summary

        if self.platform == "darwin":
            result = await self._run(
                "System.keychain",
                [["security", "add-trusted-cert", "-d", "-r", "trustRoot", "-k", MAC_KEYCHAIN, str(path)]],
            )
        elif self.platform == "windows":
            result = await self._run("ROOT", [["certutil", "-addstore", "-f", "ROOT", str(path)]])
        elif self.platform == "linux":
            target = self.linux_ca_dir / LINUX_CA_NAME
            try:
                shutil.copyfile(path, target)
            except OSError as e:
                result = CommandResult(target=str(target), ok=False, detail=f"Cannot copy certificate: {e}")
            else:
                result = await self._run(str(target), [["update-ca-certificates"]])
        else:
            result = CommandResult(target=self.platform, ok=False, detail="unsupported platform")

        summary.results.append(result)
        self._log(summary)
        return summary

    async def uninstall(self, common_name: str) -> CommandSummary:
        """Remove a trusted root certificate.

        Args:
            common_name: Certificate common name (macOS, Windows); ignored on
                Linux where the installed file is removed

        Returns:
            Summary with one result for the trust store
        """
        summary = CommandSummary(action="uninstall_certificate")
        if self.platform == "darwin":
            result = await self._run(
                "System.keychain",
                [["security", "delete-certificate", "-c", common_name, MAC_KEYCHAIN]],
            )
        elif self.platform == "windows":
            result = await self._run("ROOT", [["certutil", "-delstore", "ROOT", common_name]])
        elif self.platform == "linux":
            target = self.linux_ca_dir / LINUX_CA_NAME
            try:
                target.unlink(missing_ok=True)
            except OSError as e:
                result = CommandResult(target=str(target), ok=False, detail=f"Cannot remove certificate: {e}")
            else:
                result = await self._run(str(target), [["update-ca-certificates", "--fresh"]])
        else:
            result = CommandResult(target=self.platform, ok=False, detail="unsupported platform")

        summary.results.append(result)
        self._log(summary)
        return summary

    async def status(self, common_name: str = DEFAULT_CA_NAME) -> CommandSummary:
        """Check whether a root certificate is trusted.

        Args:
            common_name: Certificate common name, matched as a substring
                (macOS, Windows); Linux checks for the installed file

        Returns:
            Summary with one result that is ok when the certificate is installed
        """
        summary = CommandSummary(action="certificate_status")
        if self.platform == "darwin":
            try:
                await run_command(
                    ["security", "find-certificate", "-c", common_name, MAC_KEYCHAIN],
                    timeout=self.timeout,
                )
            except OSCommandFailure as e:
                result = CommandResult(target="System.keychain", ok=False, detail=f"not installed ({e.message})")
            else:
                result = CommandResult(target="System.keychain", ok=True, detail="installed")
        elif self.platform == "windows":
            try:
                output = await run_command(["certutil", "-store", "ROOT"], timeout=self.timeout)
            except OSCommandFailure as e:
                result = CommandResult(target="ROOT", ok=False, detail=e.message)
            else:
                installed = common_name.lower() in output.lower()
                result = CommandResult(target="ROOT", ok=installed, detail="installed" if installed else "not installed")
        elif self.platform == "linux":
            target = self.linux_ca_dir / LINUX_CA_NAME
            installed = target.is_file()
            result = CommandResult(target=str(target), ok=installed, detail="installed" if installed else "not installed")
        else:
            result = CommandResult(target=self.platform, ok=False, detail="unsupported platform")

        summary.results.append(result)
        logger.debug(summary.message)
        return summary

    async def _run(self, target: str, commands: list[list[str]]) -> CommandResult:
        for args in commands:
            try:
                await run_command(args, timeout=self.timeout)
            except OSCommandFailure as e:
                return CommandResult(target=target, ok=False, detail=e.message)
        return CommandResult(target=target, ok=True, detail="done")

    @staticmethod
    def _log(summary: CommandSummary) -> None:
        if summary.ok:
            logger.info(summary.message)
        else:
            logger.warning(summary.message)
