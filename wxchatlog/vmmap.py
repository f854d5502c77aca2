"""Parsing of macOS ``vmmap`` output and SIP status checks."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Iterable, Optional

FILTER_REGION_TYPE = "MALLOC_NANO"
FILTER_REGION_TYPE_2 = "MALLOC_SMALL"
FILTER_SHRMOD = "SM=PRV"
EMPTY_FLAG = "(empty)"

_WRITABLE_HEADER = "==== Writable regions for"
_LINE_RE = re.compile(
    r"^(\S+)\s+([0-9a-f]+)-([0-9a-f]+)\s+\[\s*(\S+)\s+(\S+)(?:\s+\S+){2}\]"
    r"\s+(\S+)\s+(\S+)(?:\s+\S+)?\s+(.*)$"
)
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGB]+)?$")
_MULTIPLIERS = {
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024 * 1024,
    "MB": 1024 * 1024,
    "G": 1024 * 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}


@dataclass(frozen=True)
class MemRegion:
    """One writable memory region reported by vmmap."""

    region_type: str
    start: int
    end: int
    vsize: int
    rsdnt: int
    shrmod: str
    permissions: str
    region_detail: str
    empty: bool


def parse_size(size_str: str) -> int:
    """Convert sizes such as ``5616K`` or ``128.0M`` to bytes; 0 if invalid."""
    match = _SIZE_RE.match(size_str.strip())
    if match is None:
        return 0
    number = float(match.group(1))
    multiplier = _MULTIPLIERS.get(match.group(2) or "", 1)
    return int(number * multiplier + 0.5)


def load_vmmap(output: str) -> list[MemRegion]:
    """Parse the writable-regions section of ``vmmap -wide`` output."""
    lines = iter(output.splitlines())
    for line in lines:
        if line.startswith(_WRITABLE_HEADER):
            next(lines, None)  # column headers
            break
    else:
        return []

    regions = []
    for line in lines:
        if not line:
            continue
        match = _LINE_RE.match(line)
        if match is None:
            continue
        regions.append(
            MemRegion(
                region_type=match.group(1).strip(),
                start=int(match.group(2), 16),
                end=int(match.group(3), 16),
                vsize=parse_size(match.group(4)),
                rsdnt=parse_size(match.group(5)),
                permissions=match.group(6),
                shrmod=match.group(7),
                region_detail=match.group(8).strip(),
                empty=EMPTY_FLAG in line,
            )
        )
    return regions


def get_vmmap(pid: int) -> list[MemRegion]:
    """Run vmmap on ``pid`` and parse its writable regions."""
    try:
        result = subprocess.run(
            ["vmmap", "-wide", str(pid)],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"run command failed: {exc}") from exc
    return load_vmmap(result.stdout)


def darwin_version() -> str:
    """Return the Darwin kernel release, or an empty string if unknown."""
    try:
        result = subprocess.run(
            ["uname", "-r"], capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError):
        return ""
    return result.stdout.strip()


def mem_regions_filter(
    regions: Iterable[MemRegion], version: Optional[str] = None
) -> list[MemRegion]:
    """Keep the non-empty heap regions where keys are searched.

    Darwin 25 keeps them in MALLOC_SMALL, earlier releases in MALLOC_NANO.
    """
    if version is None:
        version = darwin_version()
    target = FILTER_REGION_TYPE_2 if version.startswith("25") else FILTER_REGION_TYPE
    return [r for r in regions if not r.empty and r.region_type == target]


def sip_disabled_from_output(output: str) -> bool:
    """Interpret ``csrutil status`` output."""
    text = output.lower()
    if "system integrity protection status: disabled" in text:
        return True
    return "disabled" in text and "debugging" in text


def is_sip_disabled() -> bool:
    """Tell whether System Integrity Protection is off; False when unknown."""
    try:
        result = subprocess.run(
            ["csrutil", "status"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return False
    return sip_disabled_from_output(result.stdout)