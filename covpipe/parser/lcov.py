"""
LCOV Parser
===========
Parses grcov's LCOV output into per-source records, drops records that
match the exclusion patterns, and renders a normalised report.

Normalisation:
    1. Records sorted by source path
    2. Records matching any exclusion glob removed
    3. Record body lines kept in their original order
    4. Single trailing newline

Contract:
    - DETERMINISTIC: same input → byte-identical output.
    - Strict: a record without ``end_of_record`` or data outside a record
      raises LcovParseError; the caller decides what that means for the run.
"""
import fnmatch
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class LcovParseError(ValueError):
    """The LCOV text is malformed."""


@dataclass
class LcovRecord:
    """One ``SF:`` … ``end_of_record`` block."""
    source_file: str
    lines: list[str] = field(default_factory=list)
    test_name: str = ""

    def _total(self, key: str) -> int:
        for line in self.lines:
            if line.startswith(key + ":"):
                try:
                    return int(line.split(":", 1)[1])
                except ValueError:
                    return 0
        return 0

    @property
    def lines_found(self) -> int:
        return self._total("LF")

    @property
    def lines_hit(self) -> int:
        return self._total("LH")

    @property
    def branches_found(self) -> int:
        return self._total("BRF")

    @property
    def branches_hit(self) -> int:
        return self._total("BRH")


@dataclass(frozen=True)
class CoverageSummary:
    source_count: int = 0
    lines_found: int = 0
    lines_hit: int = 0
    branches_found: int = 0
    branches_hit: int = 0


def parse_lcov(text: str) -> list[LcovRecord]:
    records: list[LcovRecord] = []
    current: LcovRecord | None = None
    test_name = ""

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("TN:"):
            test_name = line[3:]
            continue
        if line.startswith("SF:"):
            if current is not None:
                raise LcovParseError(f"line {lineno}: SF inside an open record")
            current = LcovRecord(source_file=line[3:], test_name=test_name)
            continue
        if line == "end_of_record":
            if current is None:
                raise LcovParseError(f"line {lineno}: end_of_record without SF")
            records.append(current)
            current = None
            continue
        if current is None:
            raise LcovParseError(f"line {lineno}: data outside a record: {line[:40]}")
        current.lines.append(line)

    if current is not None:
        raise LcovParseError(f"record for {current.source_file} is not terminated")

    return records


def is_excluded(source_file: str, patterns: tuple[str, ...] | list[str]) -> bool:
    normalized = source_file.replace("\\", "/")
    return any(fnmatch.fnmatchcase(normalized, p) for p in patterns)


def filter_excluded(records: list[LcovRecord],
                    patterns: tuple[str, ...] | list[str]) -> list[LcovRecord]:
    kept = [r for r in records if not is_excluded(r.source_file, patterns)]
    dropped = len(records) - len(kept)
    if dropped:
        logger.info("Dropped %d excluded record(s) from coverage report", dropped)
    return kept


def normalize(records: list[LcovRecord]) -> list[LcovRecord]:
    return sorted(records, key=lambda r: r.source_file)


def render_lcov(records: list[LcovRecord]) -> str:
    out: list[str] = []
    for record in records:
        out.append(f"TN:{record.test_name}")
        out.append(f"SF:{record.source_file}")
        out.extend(record.lines)
        out.append("end_of_record")
    return "\n".join(out) + "\n" if out else ""


def summarize(records: list[LcovRecord]) -> CoverageSummary:
    return CoverageSummary(
        source_count=len(records),
        lines_found=sum(r.lines_found for r in records),
        lines_hit=sum(r.lines_hit for r in records),
        branches_found=sum(r.branches_found for r in records),
        branches_hit=sum(r.branches_hit for r in records),
    )
