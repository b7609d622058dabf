"""Operating system integration: shell commands, system proxy and certificates."""

from capture_mcp.system.certificate import CertificateInstaller
from capture_mcp.system.proxy import SystemProxyController

__all__ = ["CertificateInstaller", "SystemProxyController"]
