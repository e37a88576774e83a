from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .enums import CvssVersion, Severity, VulnerabilitySource


@dataclass(frozen=True)
class Dependency:
    name: str
    version: str
    version_constraint: Optional[str] = None
    is_dev: bool = False

    @property
    def constraint(self) -> str:
        return self.version_constraint or self.version

    @staticmethod
    def parse(text: str) -> "Dependency":
        """Parse ``name@version``; scoped names keep their leading ``@``."""
        name, sep, version = text.strip().rpartition("@")
        if not sep or not name or not version:
            raise ValueError(f"Expected NAME@VERSION, got {text!r}")
        return Dependency(name=name, version=version)


@dataclass(frozen=True)
class Vulnerability:
    id: str
    title: str = ""
    description: str = ""

    severity: Severity = Severity.MEDIUM
    cvss_score: Optional[float] = None
    cvss_version: Optional[CvssVersion] = None
    vector_string: Optional[str] = None

    affected_versions: str = "*"
    patched_versions: Optional[str] = None

    references: tuple[str, ...] = ()
    cwe_ids: tuple[str, ...] = ()

    published_date: Optional[datetime] = None
    last_modified_date: Optional[datetime] = None

    sources: tuple[VulnerabilitySource, ...] = ()


@dataclass(frozen=True)
class CvssCandidate:
    vector: str
    type_hint: Optional[str] = None  # e.g. "CVSS_V3" from OSV
    score: Optional[float] = None  # provider-supplied base score, if any


@dataclass(frozen=True)
class CvssSelection:
    version: CvssVersion
    vector_string: str
    score: Optional[float]
