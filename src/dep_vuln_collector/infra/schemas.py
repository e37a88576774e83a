from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class OsvSeverity(BaseModel):
	"""취약점 심각도 정보 (예: CVSS 벡터)"""
	type: str
	score: str | float


class OsvPackage(BaseModel):
	"""영향을 받는 패키지 정보"""
	ecosystem: Optional[str] = None
	name: Optional[str] = None
	purl: Optional[str] = None


class OsvEvent(BaseModel):
	"""버전 범위의 시작 또는 끝을 정의하는 이벤트"""
	introduced: Optional[str] = None
	fixed: Optional[str] = None
	last_affected: Optional[str] = None
	limit: Optional[str] = None


class OsvRange(BaseModel):
	"""영향을 받는 버전 범위"""
	type: str
	repo: Optional[str] = None
	events: list[OsvEvent] = Field(default_factory=list)


class OsvAffected(BaseModel):
	"""취약점의 영향을 받는 패키지 및 버전 정보"""
	package: Optional[OsvPackage] = None
	ranges: Optional[list[OsvRange]] = None
	versions: Optional[list[str]] = None
	ecosystem_specific: Optional[dict[str, Any]] = None
	database_specific: Optional[dict[str, Any]] = None


class OsvReference(BaseModel):
	"""관련 외부 참조 링크"""
	type: str | None = None
	url: str


class OsvDatabaseSpecific(BaseModel):
	"""데이터베이스별 추가 정보"""
	severity: Optional[str] = None
	nvd_published_at: Optional[str] = None
	cwe_ids: list[str] | None = None
	github_reviewed: Optional[bool] = None


class OsvVulnerability(BaseModel):
	"""OSV 스키마의 최상위 모델 (GET /v1/vulns/{id})"""
	id: str
	modified: Optional[str] = None
	published: Optional[str] = None
	withdrawn: Optional[str] = None
	aliases: Optional[list[str]] = None
	summary: Optional[str] = None
	details: Optional[str] = None
	severity: Optional[list[OsvSeverity]] = None
	affected: list[OsvAffected] | None = None
	references: Optional[list[OsvReference]] = None
	database_specific: Optional[OsvDatabaseSpecific] = None


class OsvQueryPackage(BaseModel):
	name: str
	ecosystem: str = "npm"


class OsvQuery(BaseModel):
	package: OsvQueryPackage
	version: str


class OsvQueryBatchRequest(BaseModel):
	"""POST /v1/querybatch 요청 본문"""
	queries: list[OsvQuery]


class OsvQueryVuln(BaseModel):
	id: str
	modified: Optional[str] = None


class OsvQueryResult(BaseModel):
	"""쿼리 하나에 대한 결과 (취약점이 없으면 빈 객체)"""
	vulns: list[OsvQueryVuln] = Field(default_factory=list)
	next_page_token: Optional[str] = None


class OsvQueryBatchResponse(BaseModel):
	"""요청 순서와 동일한 순서의 결과 목록"""
	results: list[OsvQueryResult] = Field(default_factory=list)


class GhIdentifier(BaseModel):
	type: str
	value: str


class GhReference(BaseModel):
	url: str


class GhCvss(BaseModel):
	score: Optional[float] = None
	vector_string: Optional[str] = None


class GhCvssSeverities(BaseModel):
	cvss_v3: Optional[GhCvss] = None
	cvss_v4: Optional[GhCvss] = None


class GhCwe(BaseModel):
	cwe_id: str
	name: Optional[str] = None


class GhPackage(BaseModel):
	ecosystem: Optional[str] = None
	name: Optional[str] = None


class GhFirstPatchedVersion(BaseModel):
	identifier: str


class GhAdvisoryVulnerability(BaseModel):
	"""어드바이저리가 영향을 주는 패키지 한 건"""
	package: Optional[GhPackage] = None
	vulnerable_version_range: Optional[str] = None
	patched_versions: Optional[str] = None
	first_patched_version: GhFirstPatchedVersion | str | None = None


class GitHubAdvisory(BaseModel):
	"""GET /advisories 응답 항목 (global security advisory)"""
	ghsa_id: str
	cve_id: Optional[str] = None
	summary: Optional[str] = None
	description: Optional[str] = None
	severity: Optional[str] = None
	cvss: Optional[GhCvss] = None
	cvss_severities: Optional[GhCvssSeverities] = None
	cwes: list[GhCwe] | None = None
	cwe_ids: list[str] | None = None
	identifiers: list[GhIdentifier] | None = None
	# GitHub REST can return references as strings or objects depending on endpoint/version
	references: list[GhReference | str] | None = None
	published_at: Optional[str] = None
	updated_at: Optional[str] = None
	withdrawn_at: Optional[str] = None
	vulnerabilities: list[GhAdvisoryVulnerability] | None = None
