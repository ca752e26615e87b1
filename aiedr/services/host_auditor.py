"""
Host Security Auditor.

Thirteen independent posture checks of the machine running the AI client,
run concurrently through a CommandRunner and aggregated into a
HostSecurityReport. A check that fails or times out returns a conservative
default (feature "off", nothing found) and never aborts the audit.

Suspicious-entity detection is heuristic: small denylists of attacker tools,
backdoor ports and hosting ranges plus substring matches on names.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Final, FrozenSet, List, Optional, Tuple

from aiedr.services.base import utc_now
from aiedr.services.command_runner import CommandRunner, SubprocessCommandRunner
from aiedr.services.threat_types import (
    HostSecurityReport,
    KernelExtensionInfo,
    LoginItemInfo,
    NetworkConnectionInfo,
    PortInfo,
    ProcessInfo,
    ThreatLevel,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DENYLISTS
# =============================================================================


SUSPICIOUS_PROCESS_NAMES: Final[FrozenSet[str]] = frozenset({
    "netcat", "nc", "ncat", "socat",            # network tools
    "tcpdump", "wireshark", "tshark",           # packet capture
    "keylogger", "logkeys",                     # keyloggers
    "mimikatz", "lazagne",                      # credential dumping
    "metasploit", "msfconsole", "msfvenom",     # exploitation
    "nmap", "masscan",                          # scanning
    "hydra", "medusa", "hashcat",               # password cracking
    "crontab",                                  # persistence
})

BACKDOOR_PORTS: Final[FrozenSet[int]] = frozenset({4444, 5555, 6666, 31337, 1337})

SUSPICIOUS_REMOTE_PORTS: Final[FrozenSet[int]] = BACKDOOR_PORTS | frozenset({
    8080, 8443,         # proxy / C2
    6667, 6697,         # IRC botnets
    9001, 9050, 9150,   # Tor
})

SUSPICIOUS_IP_PREFIXES: Final[Tuple[str, ...]] = (
    "185.220.",  # Tor exit nodes
    "89.248.",   # malicious hosting
)

SUSPICIOUS_LOGIN_ITEM_PATTERNS: Final[Tuple[str, ...]] = (
    "miner", "cryptominer", "xmrig",
    "backdoor", "trojan", "malware",
    "adload", "shlayer", "bundlore",
)

TRUSTED_KEXT_PREFIXES: Final[Tuple[str, ...]] = ("com.apple.", "com.cisco.", "com.vmware.")

SUSPICIOUS_KEXT_PATTERNS: Final[Tuple[str, ...]] = (
    "keylogger", "rootkit", "backdoor",
    "miner", "coinminer", "inject",
)


# =============================================================================
# COMMANDS
# =============================================================================


@dataclass(frozen=True)
class HostCommand:
    executable: str
    args: Tuple[str, ...]
    timeout: float = 10.0


FIREWALL_CMD = HostCommand("/usr/bin/defaults", ("read", "/Library/Preferences/com.apple.alf", "globalstate"))
FILEVAULT_CMD = HostCommand("/usr/bin/fdesetup", ("status",))
GATEKEEPER_CMD = HostCommand("/usr/sbin/spctl", ("--status",))
SIP_CMD = HostCommand("/usr/bin/csrutil", ("status",))
PROCESSES_CMD = HostCommand("/bin/ps", ("-axo", "pid,user,comm"), timeout=5)
PORTS_CMD = HostCommand("/usr/sbin/lsof", ("-i", "-P", "-n"), timeout=15)
XPROTECT_HISTORY_CMD = HostCommand("/usr/sbin/system_profiler", ("SPInstallHistoryDataType", "-json"), timeout=30)
XPROTECT_PLIST_CMD = HostCommand(
    "/usr/bin/defaults",
    ("read", "/System/Library/CoreServices/XProtect.bundle/Contents/version", "CFBundleShortVersionString"),
    timeout=5,
)
ARCH_CMD = HostCommand("/usr/bin/uname", ("-m",), timeout=5)
BPUTIL_CMD = HostCommand("/usr/sbin/bputil", ("-d",), timeout=10)
REMOTE_LOGIN_CMD = HostCommand("/usr/sbin/systemsetup", ("-getremotelogin",), timeout=10)
SOFTWARE_UPDATE_CMD = HostCommand("/usr/sbin/softwareupdate", ("-l",), timeout=60)
LOGIN_ITEMS_CMD = HostCommand(
    "/usr/bin/osascript",
    ("-e", 'tell application "System Events" to get the name of every login item'),
    timeout=10,
)
CONNECTIONS_CMD = HostCommand("/usr/sbin/netstat", ("-anp", "tcp"), timeout=15)
KEXTS_CMD = HostCommand("/usr/sbin/kextstat", ("-l",), timeout=10)


# =============================================================================
# PARSERS
# =============================================================================


def parse_firewall(output: str) -> bool:
    # globalstate 1 = on for specific services, 2 = block all
    return output.strip() in ("1", "2")


def parse_filevault(output: str) -> bool:
    return "FileVault is On" in output


def parse_gatekeeper(output: str) -> bool:
    return "assessments enabled" in output


def parse_sip(output: str) -> bool:
    return "enabled" in output


def parse_remote_login(output: str) -> bool:
    return re.search(r"\bon\b", output.lower()) is not None


def parse_secure_boot(output: str) -> bool:
    return "full security" in output.lower()


def count_software_updates(output: str) -> int:
    count = 0
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("*") or "Label:" in stripped:
            count += 1
    return count


def parse_processes(output: str) -> List[ProcessInfo]:
    """Denylisted processes from `ps -axo pid,user,comm`."""
    suspicious = []
    for line in output.splitlines()[1:]:
        parts = line.split(None, 2)
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        pid, user, comm = int(parts[0]), parts[1], parts[2].strip()
        name = os.path.basename(comm).lower()
        if name in SUSPICIOUS_PROCESS_NAMES:
            suspicious.append(ProcessInfo(
                pid=pid,
                name=name,
                path=comm,
                user=user,
                reason="Known security tool/potentially malicious",
            ))
    return suspicious


def parse_open_ports(output: str) -> List[PortInfo]:
    """Listening/connected ports from `lsof -i -P -n`, one per (port, process)."""
    ports: List[PortInfo] = []
    seen = set()
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 9 or not parts[1].isdigit():
            continue
        process_name, pid = parts[0], int(parts[1])
        # NAME may be followed by "(LISTEN)"; the address is the first field after NODE
        name_field = parts[8]
        if ":" not in name_field:
            continue
        digits = re.match(r"\d+", name_field.rsplit(":", 1)[1])
        if not digits:
            continue
        port = int(digits.group(0))
        if port > 65535 or (port, process_name) in seen:
            continue
        seen.add((port, process_name))
        ports.append(PortInfo(
            port=port,
            protocol="UDP" if "UDP" in line else "TCP",
            process_name=process_name,
            pid=pid,
            is_suspicious=port in BACKDOOR_PORTS,
        ))
    return ports


def parse_login_items(output: str) -> List[LoginItemInfo]:
    items = []
    for name in (n.strip() for n in output.strip().split(",")):
        if not name:
            continue
        lowered = name.lower()
        is_suspicious = any(p in lowered for p in SUSPICIOUS_LOGIN_ITEM_PATTERNS)
        items.append(LoginItemInfo(
            name=name,
            is_suspicious=is_suspicious,
            reason="Matches known malware pattern" if is_suspicious else None,
        ))
    return items


def parse_connections(output: str) -> List[NetworkConnectionInfo]:
    """ESTABLISHED TCP connections from `netstat -anp tcp` (BSD address.port form)."""
    connections = []
    for line in output.splitlines()[2:]:
        parts = line.split()
        if len(parts) < 6 or parts[5] != "ESTABLISHED":
            continue
        local_address, remote = parts[3], parts[4]
        if "." not in remote:
            continue
        ip, port_text = remote.rsplit(".", 1)
        if not port_text.isdigit() or int(port_text) == 0:
            continue
        port = int(port_text)

        reason = None
        if port in SUSPICIOUS_REMOTE_PORTS:
            reason = f"Connection to suspicious port {port}"
        if ip.startswith(SUSPICIOUS_IP_PREFIXES):
            reason = "Connection to suspicious IP range"

        connections.append(NetworkConnectionInfo(
            process_name="unknown",
            pid=0,
            local_address=local_address,
            remote_address=ip,
            remote_port=port,
            state=parts[5],
            is_suspicious=reason is not None,
            reason=reason,
        ))
    return connections


def parse_kernel_extensions(output: str) -> List[KernelExtensionInfo]:
    """Third-party kexts from `kextstat -l`."""
    extensions = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 6:
            continue
        name = parts[5]
        if name.startswith(TRUSTED_KEXT_PREFIXES):
            continue
        version = parts[6].strip("()") if len(parts) > 6 else ""
        is_suspicious = any(p in name.lower() for p in SUSPICIOUS_KEXT_PATTERNS)
        extensions.append(KernelExtensionInfo(
            name=name,
            version=version,
            is_suspicious=is_suspicious,
            reason="Matches suspicious pattern" if is_suspicious else None,
        ))
    return extensions


def parse_xprotect_history(output: str) -> Optional[str]:
    """Most recent XProtect package version from system_profiler JSON."""
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, ValueError):
        return None
    history = data.get("SPInstallHistoryDataType") if isinstance(data, dict) else None
    if not isinstance(history, list):
        return None
    for item in history:
        if not isinstance(item, dict):
            continue
        name = str(item.get("_name", ""))
        version = item.get("package_version")
        if "xprotect" in name.lower() and version:
            return str(version)
    return None


# =============================================================================
# AGGREGATION
# =============================================================================


def evaluate_posture(report: HostSecurityReport) -> Tuple[ThreatLevel, List[str]]:
    """Overall threat level (max over findings) and recommendations."""
    levels: List[ThreatLevel] = []
    recommendations: List[str] = []

    if not report.firewall_enabled:
        levels.append(ThreatLevel.ELEVATED)
        recommendations.append("Enable macOS Firewall in System Settings > Network > Firewall")

    if not report.disk_encrypted:
        levels.append(ThreatLevel.HIGH)
        recommendations.append("Enable FileVault disk encryption in System Settings > Privacy & Security")

    if not report.gatekeeper_enabled:
        levels.append(ThreatLevel.ELEVATED)
        recommendations.append("Enable Gatekeeper: sudo spctl --master-enable")

    if not report.system_integrity_protection:
        levels.append(ThreatLevel.CRITICAL)
        recommendations.append("System Integrity Protection is disabled - this is a critical security risk")

    if report.secure_boot_enabled is False:
        levels.append(ThreatLevel.ELEVATED)
        recommendations.append("Secure Boot is not at full security - review startup security settings")

    if report.remote_login_enabled:
        levels.append(ThreatLevel.ELEVATED)
        recommendations.append("Remote Login (SSH) is enabled - ensure this is intentional")

    if report.software_updates_pending > 0:
        levels.append(ThreatLevel.ELEVATED)
        recommendations.append(
            f"Install {report.software_updates_pending} pending software update(s) for security patches"
        )

    if report.suspicious_processes:
        levels.append(ThreatLevel.HIGH)
        names = ", ".join(p.name for p in report.suspicious_processes)
        recommendations.append(f"Review suspicious processes: {names}")

    if report.suspicious_ports:
        levels.append(ThreatLevel.HIGH)
        ports = ", ".join(str(p.port) for p in report.suspicious_ports)
        recommendations.append(f"Review suspicious open ports: {ports}")

    if report.suspicious_login_items:
        levels.append(ThreatLevel.HIGH)
        names = ", ".join(i.name for i in report.suspicious_login_items)
        recommendations.append(f"Review suspicious login items: {names}")

    if report.suspicious_connections:
        levels.append(ThreatLevel.HIGH)
        remotes = ", ".join(c.remote_address for c in report.suspicious_connections)
        recommendations.append(f"Review suspicious outbound connections to: {remotes}")

    if report.suspicious_kernel_extensions:
        levels.append(ThreatLevel.CRITICAL)
        names = ", ".join(k.name for k in report.suspicious_kernel_extensions)
        recommendations.append(f"Review suspicious kernel extensions: {names}")

    return ThreatLevel.highest(levels), recommendations


# =============================================================================
# AUDITOR
# =============================================================================


class HostSecurityAuditor:
    """Concurrent host posture audit."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or SubprocessCommandRunner()

    async def _run(self, command: HostCommand) -> Optional[str]:
        return await self.runner.run(command.executable, command.args, command.timeout)

    # =========================================================================
    # Individual checks
    # =========================================================================

    async def check_firewall(self) -> bool:
        output = await self._run(FIREWALL_CMD)
        return parse_firewall(output) if output is not None else False

    async def check_filevault(self) -> bool:
        output = await self._run(FILEVAULT_CMD)
        return parse_filevault(output) if output is not None else False

    async def check_gatekeeper(self) -> bool:
        output = await self._run(GATEKEEPER_CMD)
        return parse_gatekeeper(output) if output is not None else False

    async def check_sip(self) -> bool:
        output = await self._run(SIP_CMD)
        return parse_sip(output) if output is not None else False

    async def check_xprotect_version(self) -> Optional[str]:
        output = await self._run(XPROTECT_HISTORY_CMD)
        if output is not None:
            version = parse_xprotect_history(output)
            if version:
                return version

        plist_output = await self._run(XPROTECT_PLIST_CMD)
        if plist_output is None:
            return None
        return plist_output.strip() or None

    async def check_secure_boot(self) -> Optional[bool]:
        """None on Intel hardware or when bputil is unavailable."""
        arch = await self._run(ARCH_CMD)
        if arch is None or arch.strip() != "arm64":
            return None
        output = await self._run(BPUTIL_CMD)
        return parse_secure_boot(output) if output is not None else None

    async def check_remote_login(self) -> bool:
        output = await self._run(REMOTE_LOGIN_CMD)
        return parse_remote_login(output) if output is not None else False

    async def check_software_updates(self) -> int:
        output = await self._run(SOFTWARE_UPDATE_CMD)
        return count_software_updates(output) if output is not None else 0

    async def find_suspicious_processes(self) -> List[ProcessInfo]:
        output = await self._run(PROCESSES_CMD)
        return parse_processes(output) if output is not None else []

    async def find_open_ports(self) -> List[PortInfo]:
        output = await self._run(PORTS_CMD)
        return parse_open_ports(output) if output is not None else []

    async def find_login_items(self) -> List[LoginItemInfo]:
        output = await self._run(LOGIN_ITEMS_CMD)
        return parse_login_items(output) if output is not None else []

    async def find_active_connections(self) -> List[NetworkConnectionInfo]:
        output = await self._run(CONNECTIONS_CMD)
        return parse_connections(output) if output is not None else []

    async def find_kernel_extensions(self) -> List[KernelExtensionInfo]:
        output = await self._run(KEXTS_CMD)
        return parse_kernel_extensions(output) if output is not None else []

    # =========================================================================
    # Audit
    # =========================================================================

    async def audit_host(self) -> HostSecurityReport:
        """Run every check concurrently and aggregate once all have finished."""
        checks: Dict[str, Tuple[Awaitable[Any], Any]] = {
            "firewall_enabled": (self.check_firewall(), False),
            "disk_encrypted": (self.check_filevault(), False),
            "gatekeeper_enabled": (self.check_gatekeeper(), False),
            "system_integrity_protection": (self.check_sip(), False),
            "xprotect_version": (self.check_xprotect_version(), None),
            "secure_boot_enabled": (self.check_secure_boot(), None),
            "remote_login_enabled": (self.check_remote_login(), False),
            "software_updates_pending": (self.check_software_updates(), 0),
            "suspicious_processes": (self.find_suspicious_processes(), []),
            "open_ports": (self.find_open_ports(), []),
            "login_items": (self.find_login_items(), []),
            "active_connections": (self.find_active_connections(), []),
            "kernel_extensions": (self.find_kernel_extensions(), []),
        }

        results = await asyncio.gather(*(coro for coro, _ in checks.values()), return_exceptions=True)

        values: Dict[str, Any] = {}
        for (name, (_, default)), result in zip(checks.items(), results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(f"Host check {name} failed: {result}", exc_info=result)
                result = default
            values[name] = result

        snapshot = HostSecurityReport(timestamp=utc_now(), **values)
        overall, recommendations = evaluate_posture(snapshot)
        report = HostSecurityReport(
            timestamp=snapshot.timestamp,
            overall_threat_level=overall,
            recommendations=recommendations,
            **values,
        )

        log = logger.error if overall == ThreatLevel.CRITICAL else logger.info
        log(
            f"Host security check complete: {overall.value} ({len(recommendations)} recommendation(s))",
            extra={"threat_level": overall.value},
        )
        return report
