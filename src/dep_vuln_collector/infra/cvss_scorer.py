from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from cvss import CVSS2, CVSS3, CVSS4

from ..core.domain.enums import CvssVersion
from ..core.domain.models import CvssCandidate, CvssSelection

logger = logging.getLogger(__name__)


def detect_version(vector: str, type_hint: Optional[str] = None) -> CvssVersion:
    """Infer the CVSS version of a vector.

    The ``CVSS:x.y/`` prefix decides when present; bare ``AV:`` vectors are
    v2. Otherwise the provider's type hint (``CVSS_V4``, ``CVSS_V2``) is
    used, falling back to 3.0.
    """
    s = vector.strip().upper()
    if s.startswith("CVSS:4.0/"):
        return CvssVersion.V4_0
    if s.startswith("CVSS:3.1/"):
        return CvssVersion.V3_1
    if s.startswith("CVSS:3.0/"):
        return CvssVersion.V3_0
    if s.startswith("CVSS:2.0/") or s.startswith("AV:") or s.startswith("(AV:"):
        return CvssVersion.V2_0
    hint = (type_hint or "").upper()
    if "V4" in hint:
        return CvssVersion.V4_0
    if "V2" in hint:
        return CvssVersion.V2_0
    return CvssVersion.V3_0


class CvssScorer:
    """Compute CVSS base scores and pick the best vector among candidates.

    Results are memoised per ``(version, vector)``, including failures, for
    the lifetime of the instance.
    """

    def __init__(self) -> None:
        self._memo: dict[tuple[CvssVersion, str], Optional[float]] = {}

    @property
    def cache_size(self) -> int:
        return len(self._memo)

    def clear(self) -> None:
        self._memo.clear()

    def score(self, vector: str, version: Union[CvssVersion, str]) -> Optional[float]:
        """Base score of ``vector`` under ``version``; None when it cannot be scored.

        ``version`` may be given as its string form ("3.1"); unknown versions score None.
        """
        try:
            version = CvssVersion(version)
        except ValueError:
            logger.debug(f"Unknown CVSS version {version!r} for vector {vector!r}")
            return None
        key = (version, vector)
        if key in self._memo:
            return self._memo[key]
        result = self._compute(vector, version)
        self._memo[key] = result
        return result

    def _compute(self, vector: str, version: CvssVersion) -> Optional[float]:
        s = vector.strip()
        if not s:
            return None
        try:
            if version is CvssVersion.V2_0:
                if s.upper().startswith("CVSS:2.0/"):
                    s = s[len("CVSS:2.0/"):]
                return float(CVSS2(s.strip("()")).base_score)
            if not s.startswith(f"CVSS:{version.value}/"):
                logger.debug(f"Vector {vector!r} does not match CVSS {version.value}")
                return None
            if version is CvssVersion.V4_0:
                return float(CVSS4(s).base_score)
            return float(CVSS3(s).base_score)
        except Exception as e:
            # cvss raises its own error hierarchy per version, plus ValueError/KeyError on odd input
            logger.debug(f"Cannot score CVSS {version.value} vector {vector!r}: {e}")
            return None

    def select_best(self, candidates: Iterable[CvssCandidate]) -> Optional[CvssSelection]:
        """Pick the highest-version vector (4.0 > 3.1 > 3.0 > 2.0); ties keep the first seen.

        A non-zero provider score is trusted; otherwise the score is computed.
        """
        best: Optional[tuple[CvssCandidate, CvssVersion]] = None
        for candidate in candidates:
            if not candidate.vector or not candidate.vector.strip():
                continue
            version = detect_version(candidate.vector, candidate.type_hint)
            if best is None or version.priority > best[1].priority:
                best = (candidate, version)
        if best is None:
            return None

        candidate, version = best
        vector = candidate.vector.strip()
        score = candidate.score if candidate.score else self.score(vector, version)
        return CvssSelection(version=version, vector_string=vector, score=score)
