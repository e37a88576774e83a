from __future__ import annotations

from typing import Iterable, Optional

from ..core.domain.enums import Severity
from ..core.domain.models import Vulnerability


def severity_rank(level: Severity) -> int:
	order = {Severity.CRITICAL: 4, Severity.HIGH: 3, Severity.MEDIUM: 2, Severity.LOW: 1}
	return order.get(level, 0)


def worst_severity(vulns: Iterable[Vulnerability]) -> Optional[Severity]:
	best: Optional[Severity] = None
	for v in vulns:
		if best is None or severity_rank(v.severity) > severity_rank(best):
			best = v.severity
	return best


def count_by_severity(vulns: Iterable[Vulnerability]) -> dict[Severity, int]:
	"""Count findings per level; every level is present in the result, highest first."""
	counts = {level: 0 for level in sorted(Severity, key=severity_rank, reverse=True)}
	for v in vulns:
		counts[v.severity] += 1
	return counts


def sort_by_severity(vulns: Iterable[Vulnerability]) -> list[Vulnerability]:
	"""Most severe first; within a level, higher CVSS score first."""
	return sorted(vulns, key=lambda v: (severity_rank(v.severity), v.cvss_score or 0.0), reverse=True)
