# Copyright (c) 2026 John Earle
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Analyzer: Attachment Sandbox (static triage)

Checks email attachments for dangerous file types, computes file hashes
for threat intelligence lookups, and flags suspicious patterns.

What it checks:
- Executables and scripts (critical, 40)
- Macro-enabled Office documents (warning, 25)
- Archives and disk images that can hide executables (info, 10)
- Double extensions (e.g. "invoice.pdf.exe")
- Right-to-left override characters in the file name
- Password-protected attachments (often used to bypass other scanners)
- Content that is really a Windows executable whatever the name says
- SHA-256 per attachment, matched against known malware hashes
"""
import base64
import binascii
import hashlib
import logging
from typing import Iterable, Optional

from detection.analyzers._base import BaseAnalyzer
from detection.models import (
    LAYER_SANDBOX,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    Attachment,
    EmailEvent,
    LayerResult,
    Signal,
)

logger = logging.getLogger(__name__)

CONFIDENCE = 0.8

# File extensions commonly used in malware delivery
EXECUTABLE_EXTENSIONS = frozenset({
    # Executables
    ".exe", ".scr", ".pif", ".com", ".bat", ".cmd", ".msi", ".msp",
    # Scripts
    ".js", ".jse", ".vbs", ".vbe", ".wsf", ".wsh", ".ps1", ".psm1",
    # Other
    ".dll", ".sys", ".drv", ".cpl", ".inf", ".reg", ".lnk", ".hta", ".jar",
})

MACRO_EXTENSIONS = frozenset({".docm", ".xlsm", ".pptm", ".dotm", ".xltm", ".xlam", ".ppam"})

ARCHIVE_EXTENSIONS = frozenset({
    ".zip", ".rar", ".7z", ".tar", ".gz", ".tgz", ".cab", ".ace",
    ".iso", ".img", ".vhd", ".vhdx",
})

# Extensions that are suspicious when used as a second extension
# (e.g. "document.pdf.exe": the real extension is .exe)
DOUBLE_EXTENSION_TRAP = frozenset({".exe", ".scr", ".bat", ".cmd", ".js", ".vbs", ".ps1", ".hta", ".lnk"})

RTL_OVERRIDE = "\u202e"

# (signal type, severity, score)
_EXECUTABLE = ("dangerous_attachment", SEVERITY_CRITICAL, 40)
_MACRO = ("macro_enabled", SEVERITY_WARNING, 25)
_ARCHIVE = ("archive_attachment", SEVERITY_INFO, 10)
_DOUBLE_EXTENSION = ("double_extension", SEVERITY_CRITICAL, 35)
_RTL = ("rtl_override", SEVERITY_CRITICAL, 35)
_PASSWORD = ("password_protected_archive", SEVERITY_WARNING, 15)
_TYPE_MISMATCH = ("type_mismatch", SEVERITY_CRITICAL, 40)
_KNOWN_MALWARE = ("attachment_malware", SEVERITY_CRITICAL, 50)


def _extension(name: str) -> str:
    if "." not in name:
        return ""
    return "." + name.rsplit(".", 1)[-1]


def _decode(attachment: Attachment) -> Optional[bytes]:
    if not attachment.content_bytes:
        return None
    try:
        return base64.b64decode(attachment.content_bytes, validate=False)
    except (binascii.Error, ValueError) as exc:
        logger.debug("Could not decode attachment %s: %s", attachment.name, exc)
        return None


class SandboxAnalyzer(BaseAnalyzer):
    """Static attachment triage: file types, name tricks and hashes."""

    layer = LAYER_SANDBOX
    description = "Detects dangerous file types, double extensions, macros and archives"

    def __init__(self, known_malware_hashes: Optional[Iterable[str]] = None):
        self.known_malware_hashes = {h.lower() for h in (known_malware_hashes or [])}

    def analyze(self, email: EmailEvent, prior_signals: Optional[list[Signal]] = None) -> LayerResult:
        signals: list[Signal] = []
        hashes: dict[str, str] = {}

        for attachment in email.attachments:
            findings, digest = self._inspect(attachment)
            signals.extend(findings)
            if digest:
                hashes[attachment.name] = digest

        return self.result(
            signals,
            confidence=CONFIDENCE,
            attachments_analyzed=len(email.attachments),
            sha256=hashes,
        )

    def _inspect(self, attachment: Attachment) -> tuple[list[Signal], Optional[str]]:
        findings: list[Signal] = []
        display = attachment.name or "(unnamed)"
        name = (attachment.name or "").lower()
        ext = _extension(name)

        def add(rule: tuple, detail: str, **metadata):
            kind, severity, score = rule
            findings.append(Signal(kind, severity, score, detail, metadata={"filename": display, **metadata}))

        # --- File type ---
        if ext in EXECUTABLE_EXTENSIONS:
            add(_EXECUTABLE, f"Dangerous file type detected: {display} ({ext})", extension=ext)
        elif ext in MACRO_EXTENSIONS or attachment.has_macros:
            add(_MACRO, f"Macro-enabled document: {display}", extension=ext)
        elif ext in ARCHIVE_EXTENSIONS:
            add(_ARCHIVE, f"Archive attachment: {display} ({ext})", extension=ext)

        # --- Double extension ---
        # "invoice.pdf.exe" has two dots; the real extension is .exe
        parts = name.rsplit(".", maxsplit=2)
        if len(parts) >= 3 and f".{parts[-1]}" in DOUBLE_EXTENSION_TRAP:
            add(_DOUBLE_EXTENSION, f"Double extension detected (hiding real type): {display}")

        if RTL_OVERRIDE in (attachment.name or ""):
            add(_RTL, f"Right-to-left override character in file name: {display!r}")

        # --- Password protection ---
        content_type = (attachment.content_type or "").lower()
        if attachment.is_password_protected or "encrypted" in content_type or "password" in content_type:
            add(_PASSWORD, f"Password-protected/encrypted attachment: {display}")

        # --- Content ---
        digest = None
        data = _decode(attachment)
        if data is not None:
            digest = hashlib.sha256(data).hexdigest()
            if data[:2] == b"MZ" and ext not in EXECUTABLE_EXTENSIONS:
                add(_TYPE_MISMATCH, f"{display} is a Windows executable disguised as {ext or 'a file without extension'}")
            if digest in self.known_malware_hashes:
                add(_KNOWN_MALWARE, f"Known malware hash: {display}", sha256=digest)

        return findings, digest
