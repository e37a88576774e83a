from __future__ import annotations

from enum import Enum
from typing import Optional


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(cls, score: float) -> "Severity":
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        return cls.LOW

    @classmethod
    def from_label(cls, label: Optional[str]) -> Optional["Severity"]:
        """Map a provider's qualitative label (case-insensitive) to a Severity.

        "moderate" is GitHub's name for medium. Unknown labels return None.
        """
        if not label:
            return None
        label_map = {
            "critical": cls.CRITICAL,
            "high": cls.HIGH,
            "moderate": cls.MEDIUM,
            "medium": cls.MEDIUM,
            "low": cls.LOW,
        }
        return label_map.get(label.strip().lower())

    @classmethod
    def normalize(cls, score: Optional[float] = None, label: Optional[str] = None) -> "Severity":
        """Numeric score wins over the label; without either the result is MEDIUM."""
        if score is not None:
            return cls.from_score(score)
        return cls.from_label(label) or cls.MEDIUM


class CvssVersion(str, Enum):
    V2_0 = "2.0"
    V3_0 = "3.0"
    V3_1 = "3.1"
    V4_0 = "4.0"

    @property
    def priority(self) -> int:
        order = {CvssVersion.V4_0: 4, CvssVersion.V3_1: 3, CvssVersion.V3_0: 2, CvssVersion.V2_0: 1}
        return order[self]


class VulnerabilitySource(str, Enum):
    OSV = "osv"
    GITHUB = "github"
