from __future__ import annotations

from urllib.parse import quote


OSV_API_BASE_URL = "https://api.osv.dev"
GITHUB_API_BASE_URL = "https://api.github.com"


def get_osv_querybatch_path() -> str:
	return "/v1/querybatch"


def get_osv_vuln_path(vuln_id: str) -> str:
	return f"/v1/vulns/{quote(vuln_id, safe='')}"


def get_github_advisories_path() -> str:
	return "/advisories"
