"""
Pytest configuration and shared fixtures
"""
import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from aiedr.services.base import EngineSettings
from aiedr.services.edr_service import ThreatDetectionEngine
from aiedr.services.host_auditor import HostSecurityAuditor
from aiedr.services.persistence import InMemoryPersistence

CLEAN_TEXT = "Can you help me write a birthday card for my grandmother?"

Script = Union[None, str, Exception, Callable[[Sequence[str]], Optional[str]]]


class ScriptedCommandRunner:
    """
    Fake CommandRunner keyed by executable basename.

    A script entry is the stdout to return, None (spawn failure / timeout),
    an exception to raise, or a callable taking the args.
    """

    def __init__(self, scripts: Optional[Dict[str, Script]] = None, delay: float = 0.0):
        self.scripts = dict(scripts or {})
        self.delay = delay
        self.calls: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, executable: str, args: Sequence[str] = (), timeout: float = 10.0) -> Optional[str]:
        self.calls.append((executable, tuple(args), timeout))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self.scripts.get(os.path.basename(executable))
            if isinstance(script, Exception):
                raise script
            if callable(script):
                return script(args)
            return script
        finally:
            self.in_flight -= 1


class ScriptedClassifierClient:
    """Fake ClassifierClient returning canned raw model text."""

    def __init__(self, responses: Optional[List[str]] = None, delay: float = 0.0, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_message": user_message})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.responses:
            return verdict_json(is_threat=False, confidence=0.1, reasoning="benign", action="allow")
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]


def verdict_json(
    is_threat: bool,
    confidence: float,
    threat_type: Optional[str] = None,
    reasoning: str = "",
    action: str = "allow",
    attack_vector: Optional[str] = None,
    risk_factors: Optional[List[str]] = None,
) -> str:
    payload: Dict[str, Any] = {
        "isThreat": is_threat,
        "threatType": threat_type,
        "confidence": confidence,
        "reasoning": reasoning,
        "suggestedAction": action,
        "attackVector": attack_vector,
        "riskFactors": risk_factors,
    }
    return json.dumps(payload)


# =============================================================================
# Host command outputs
# =============================================================================


def _defaults(args: Sequence[str]) -> str:
    if "com.apple.alf" in args[1]:
        return "1\n"
    return "2180\n"


HEALTHY_HOST: Dict[str, Script] = {
    "defaults": _defaults,
    "fdesetup": "FileVault is On.\n",
    "spctl": "assessments enabled\n",
    "csrutil": "System Integrity Protection status: enabled.\n",
    "ps": (
        "  PID USER     COMM\n"
        "    1 root     /sbin/launchd\n"
        "  412 alice    /Applications/Safari.app/Contents/MacOS/Safari\n"
    ),
    "lsof": (
        "COMMAND    PID  USER   FD   TYPE             DEVICE SIZE/OFF NODE NAME\n"
        "rapportd   512 alice    4u  IPv4 0x1234567890abcdef      0t0  TCP *:49152 (LISTEN)\n"
    ),
    "system_profiler": json.dumps({
        "SPInstallHistoryDataType": [
            {"_name": "Safari", "package_version": "17.1"},
            {"_name": "XProtectPlistConfigData", "package_version": "5272"},
        ]
    }),
    "uname": "arm64\n",
    "bputil": "Security Mode: Full Security\n",
    "systemsetup": "Remote Login: Off\n",
    "softwareupdate": "Software Update Tool\n\nFinding available software\nNo new software available.\n",
    "osascript": "Dropbox, Spotify\n",
    "netstat": (
        "Active Internet connections (including servers)\n"
        "Proto Recv-Q Send-Q  Local Address          Foreign Address        (state)\n"
        "tcp4       0      0  192.168.1.10.52144     17.253.144.10.443      ESTABLISHED\n"
        "tcp4       0      0  *.22                   *.*                    LISTEN\n"
    ),
    "kextstat": (
        "Index Refs Address            Size       Wired      Name (Version) UUID <Linked Against>\n"
        "  100    0 0xffffff7f80a00000 0x5000     0x5000     com.apple.driver.AppleHV (1.0) 1A2B <5 4 3>\n"
    ),
}


def host_scripts(**overrides: Script) -> Dict[str, Script]:
    scripts = dict(HEALTHY_HOST)
    scripts.update(overrides)
    return scripts


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings():
    """Settings with AI analysis off"""
    return EngineSettings(classifier_provider="none")


@pytest.fixture
def healthy_runner():
    return ScriptedCommandRunner(HEALTHY_HOST)


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def engine(settings, healthy_runner, persistence):
    """Engine with pattern analysis only and a healthy fake host"""
    return ThreatDetectionEngine(
        settings,
        auditor=HostSecurityAuditor(healthy_runner),
        persistence=persistence,
    )


@pytest.fixture
def classifier_client():
    return ScriptedClassifierClient()


@pytest.fixture
def ai_engine(classifier_client, healthy_runner, persistence):
    """Engine with a scripted AI classifier"""
    return ThreatDetectionEngine(
        EngineSettings(classifier_timeout_seconds=0.5),
        classifier_client=classifier_client,
        auditor=HostSecurityAuditor(healthy_runner),
        persistence=persistence,
    )
