"""
Coverage Report Model
=====================
The single output artifact of a successful run.

Fields:
    format          — "lcov" (line + branch interchange format)
    path            — absolute path of the normalised report file
    branch          — True when branch coverage was requested
    ignore_patterns — path exclusions applied during extraction
    source_count    — number of SF records in the report
    lines_found / lines_hit         — LF / LH totals
    branches_found / branches_hit   — BRF / BRH totals
    sha256          — digest of the report content (identical for identical runs)
"""
from typing import List

from pydantic import BaseModel


class CoverageReport(BaseModel):
    format: str = "lcov"
    path: str
    branch: bool = True
    ignore_patterns: List[str] = []
    source_count: int = 0
    lines_found: int = 0
    lines_hit: int = 0
    branches_found: int = 0
    branches_hit: int = 0
    sha256: str = ""

    @property
    def line_rate(self) -> float:
        if not self.lines_found:
            return 0.0
        return round(self.lines_hit / self.lines_found, 4)
