"""
Human-readable snapshot manifests.

The manifest is written for operators but keeps a stable line format so the
store can rebuild a Snapshot from it.
"""
import re
from datetime import datetime
from pathlib import Path
from typing import List

from .errors import ManifestError
from .models import ManifestRecord, Snapshot, SnapshotKind

HEADER = "homestack - Configuration Snapshot Manifest"
RULE = "=" * 50

_FIELD_RE = re.compile(r"^(?P<key>[A-Za-z ]+):\s*(?P<value>.*)$")
_INCLUDED_RE = re.compile(r"^\s+\+ (?P<service>\S+) \((?P<count>\d+) files?\)$")
_MISSING_RE = re.compile(r"^\s+- (?P<service>\S+) \(not found\)$")
_PATTERN_RE = re.compile(r"^\s+\* (?P<pattern>.+)$")


def serialize_manifest(snapshot: Snapshot) -> str:
    lines = [
        HEADER,
        RULE,
        f"Snapshot ID: {snapshot.id}",
        f"Created: {snapshot.created_at.isoformat()}",
        f"Kind: {snapshot.kind.value}",
        f"Hostname: {snapshot.hostname}",
        f"Size Bytes: {snapshot.size_bytes}",
        "",
        "Services:",
    ]
    for rec in snapshot.manifest:
        if rec.included:
            noun = "file" if rec.file_count == 1 else "files"
            lines.append(f"  + {rec.service} ({rec.file_count} {noun})")
        else:
            lines.append(f"  - {rec.service} (not found)")
    lines.append("")
    lines.append("Excluded Patterns:")
    if snapshot.excluded_patterns:
        lines.extend(f"  * {p}" for p in snapshot.excluded_patterns)
    else:
        lines.append("  (none)")
    lines += [
        "",
        "Snapshot Files:",
        f"  {snapshot.id}.tar.gz",
        f"  {snapshot.id}.sha256",
        f"  {snapshot.id}_manifest.txt",
        "",
        "Restore:",
        f"  homestack restore --id {snapshot.id}",
        RULE,
        "",
    ]
    return "\n".join(lines)

def load_manifest(text: str, archive_path: Path) -> Snapshot:
    """Parse a manifest back into a Snapshot (without digest)."""
    fields = {}
    records: List[ManifestRecord] = []
    patterns: List[str] = []
    section = None
    for line in text.splitlines():
        if not line.strip() or line.startswith("="):
            continue
        if line == "Services:":
            section = "services"
            continue
        if line == "Excluded Patterns:":
            section = "patterns"
            continue
        if not line.startswith(" "):
            section = None
            m = _FIELD_RE.match(line)
            if m:
                fields[m.group("key")] = m.group("value").strip()
            continue
        if section == "services":
            m = _INCLUDED_RE.match(line)
            if m:
                records.append(ManifestRecord(service=m.group("service"), included=True, file_count=int(m.group("count"))))
                continue
            m = _MISSING_RE.match(line)
            if m:
                records.append(ManifestRecord(service=m.group("service"), included=False))
        elif section == "patterns":
            m = _PATTERN_RE.match(line)
            if m:
                patterns.append(m.group("pattern"))

    try:
        return Snapshot(
            id=fields["Snapshot ID"],
            created_at=datetime.fromisoformat(fields["Created"]),
            kind=SnapshotKind(fields["Kind"]),
            hostname=fields.get("Hostname", ""),
            size_bytes=int(fields.get("Size Bytes", "0")),
            manifest=records,
            excluded_patterns=patterns,
            archive_path=archive_path,
        )
    except (KeyError, ValueError) as e:
        raise ManifestError(f"Failed to parse manifest for {archive_path.name}: {e}") from e
