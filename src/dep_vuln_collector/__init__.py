"""dep_vuln_collector package: app/core/infra/shared.

Expose library-friendly API client at the package level.
"""

from .app.api import AppConfig, DepVulnClient
from .core.domain.enums import Severity
from .core.domain.errors import ClassifiedError, ErrorKind
from .core.domain.models import Dependency, Vulnerability

import logging

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DepVulnClient",
    "AppConfig",
    "Dependency",
    "Vulnerability",
    "Severity",
    "ClassifiedError",
    "ErrorKind",
]
