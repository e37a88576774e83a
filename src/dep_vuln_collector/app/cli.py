from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Optional, Sequence

import typer
from typing_extensions import Annotated

from .api import DepVulnClient
from ..core.domain.errors import ClassifiedError
from ..core.domain.models import Dependency, Vulnerability
from ..shared.codec import dump_vulnerabilities
from ..shared.severity import count_by_severity, sort_by_severity, worst_severity


app = typer.Typer(help="Dependency vulnerability collector (OSV + GitHub Advisory)")

# partial results printed, but at least one source failed unrecoverably
PARTIAL_FAILURE_EXIT_CODE = 3


class LogLevel(str, Enum):
    OFF = "OFF"
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"


class SourceChoice(str, Enum):
    ALL = "all"
    OSV = "osv"
    GITHUB = "github"


@app.callback()
def main(
    log_level: Annotated[
        Optional[LogLevel],
        typer.Option("--log-level", help="Set log level (OFF, CRITICAL, ERROR, WARNING, INFO, DEBUG). Default: OFF"),
    ] = None,
) -> None:
    """Root command callback to configure logging if requested."""
    if log_level in (None, LogLevel.OFF):
        return
    level = logging.getLevelNamesMapping().get(log_level.value, logging.INFO)

    package_name = __package__.split(".", 1)[0] if __package__ else "dep_vuln_collector"
    logger = logging.getLogger(package_name)
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(handler)
    # keep output on this logger only
    logger.propagate = False
    logger.setLevel(level)


@app.command(help="Look up vulnerabilities for packages given as NAME@VERSION (e.g. lodash@4.17.20 @babel/core@7.0.0).")
def scan(
    packages: list[str] = typer.Argument(..., help="Packages as NAME@VERSION", metavar="NAME@VERSION"),
    source: SourceChoice = typer.Option(SourceChoice.ALL, "--source", "-s", help="Which database to query"),
    bypass_cache: bool = typer.Option(False, "--bypass-cache", help="Ignore and clear cached results"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    try:
        deps = [Dependency.parse(p) for p in packages]
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)

    try:
        results, errors = asyncio.run(_scan(deps, source=source, bypass_cache=bypass_cache))
    except ClassifiedError as e:
        typer.echo(f"Error ({e.kind.value}): {e.message}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        payload = {name: dump_vulnerabilities(vulns) for name, vulns in results.items()}
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        _print_results(deps, results)

    # one source gave up for good (bad token, exhausted quota): results are incomplete
    if any(_is_unrecoverable(err) for err in errors):
        raise typer.Exit(code=PARTIAL_FAILURE_EXIT_CODE)


async def _scan(
    deps: Sequence[Dependency], *, source: SourceChoice, bypass_cache: bool
) -> tuple[dict[str, list[Vulnerability]], list[Exception]]:
    async with DepVulnClient(
        enable_osv=source in (SourceChoice.ALL, SourceChoice.OSV),
        enable_github=source in (SourceChoice.ALL, SourceChoice.GITHUB),
    ) as client:
        results = await client.get_batch_vulnerabilities(deps, bypass_cache=bypass_cache)
        errors = client.last_errors
        for err in errors:
            if _is_unrecoverable(err):
                typer.echo(f"Error ({err.kind.value}): {err.message}; results are incomplete", err=True)
            else:
                typer.echo(f"Warning: {err}", err=True)
        return results, errors


def _is_unrecoverable(err: Exception) -> bool:
    return isinstance(err, ClassifiedError) and not err.recoverable


@app.command(help="Delete cached results (all, or one namespace such as osv or github).")
def clear(
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n", help="Cache namespace to clear (osv, github)"),
) -> None:
    removed = asyncio.run(_clear(namespace))
    typer.echo(f"Cache cleared ({removed} entries)")


async def _clear(namespace: Optional[str]) -> int:
    async with DepVulnClient() as client:
        return await client.clear_cache(namespace)


@app.command("check-token", help="Validate the configured GitHub token and show the remaining rate limit.")
def check_token() -> None:
    status = asyncio.run(_check_token())
    if not status.valid:
        typer.echo(f"Token invalid: {status.message}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Token valid for {status.login}")
    if status.rate_limit_remaining is not None:
        typer.echo(f"Rate limit: {status.rate_limit_remaining}/{status.rate_limit_total}")


async def _check_token():
    async with DepVulnClient() as client:
        return await client.validate_github_token()


def _print_results(deps: Sequence[Dependency], results: dict[str, list[Vulnerability]]) -> None:
    """Print one table row per finding, grouped by package, then a severity summary."""
    print(f"{'Package':32} {'ID':22} {'Severity':9} {'CVSS':>5} {'Sources':11} Affected")
    everything: list[Vulnerability] = []
    for dep in deps:
        vulns = sort_by_severity(results.get(dep.name, []))
        everything.extend(vulns)
        label = f"{dep.name}@{dep.constraint}"
        if not vulns:
            print(f"{label:32} {'-':22}")
            continue
        for v in vulns:
            score = f"{v.cvss_score:.1f}" if v.cvss_score is not None else "-"
            sources = ",".join(s.value for s in v.sources)
            print(f"{label:32} {v.id:22} {v.severity.value:9} {score:>5} {sources:11} {v.affected_versions}")
    counts = count_by_severity(everything)
    summary = ", ".join(f"{level.value}: {n}" for level, n in counts.items())
    print(f"\n{len(everything)} vulnerabilities ({summary})")
    worst = worst_severity(everything)
    if worst is not None:
        print(f"Highest severity: {worst.value}")


if __name__ == "__main__":  # pragma: no cover
    app()
