from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from pydantic import TypeAdapter, ValidationError

from ..core.domain.models import Vulnerability

logger = logging.getLogger(__name__)

_VULNERABILITY_LIST = TypeAdapter(list[Vulnerability])


def dump_vulnerabilities(vulns: Iterable[Vulnerability]) -> list[dict[str, Any]]:
	"""Serialise to JSON-compatible dicts (enums as values, datetimes as ISO strings)."""
	return _VULNERABILITY_LIST.dump_python(list(vulns), mode="json")


def load_vulnerabilities(data: Any) -> Optional[list[Vulnerability]]:
	"""Inverse of dump_vulnerabilities. Returns None when data does not match the model."""
	try:
		return _VULNERABILITY_LIST.validate_python(data)
	except ValidationError as e:
		logger.debug(f"Cached payload does not match Vulnerability schema: {e.error_count()} errors")
		return None
