"""Run summaries and persisted report files."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from env_opr.state import Complexity, ErrorKind, Outcome, RunReport, Status


class SuggestionCategory(Enum):
    PIP_CONFLICT = 'pip/dependency conflict'
    VERSION_CONFLICT = 'version conflict'
    CHANNEL_NETWORK = 'channel/network issue'
    PACKAGE_NOT_FOUND = 'package not found'
    PERMISSION = 'permission issue'
    GENERIC = 'other error'


# Checked in order against the lowercased diagnostic; first match wins
SUGGESTION_RULES: list[tuple[SuggestionCategory, tuple[str, ...]]] = [
    (SuggestionCategory.PIP_CONFLICT, (
        'resolutionimpossible',
        'pip subprocess error',
        "pip's dependency resolver",
        'error: cannot install',
    )),
    (SuggestionCategory.VERSION_CONFLICT, (
        'unsatisfiableerror',
        'could not solve',
        'conflict',
        'incompatible',
    )),
    (SuggestionCategory.CHANNEL_NETWORK, (
        'condahttperror',
        'http 000',
        'unavailableinvalidchannel',
        'channelnotallowed',
        'connection',
        'network',
        'ssl',
        'proxy',
    )),
    (SuggestionCategory.PACKAGE_NOT_FOUND, (
        'packagesnotfounderror',
        'packages are not available',
        'no matching distribution',
        'could not find a version',
        'not found',
    )),
    (SuggestionCategory.PERMISSION, (
        'permission denied',
        'permissionerror',
        'eacces',
        'not writable',
    )),
]

SUGGESTIONS = {
    SuggestionCategory.PIP_CONFLICT:
        "pip could not resolve the pip: section. Loosen the pip pins, or move the "
        "conflicting packages out of the manifest and pip install them afterwards.",
    SuggestionCategory.VERSION_CONFLICT:
        "The solver found conflicting version constraints. Retry with --upgrade to "
        "drop exact pins, or relax the conflicting pins by hand.",
    SuggestionCategory.CHANNEL_NETWORK:
        "A channel could not be reached. Check network/proxy settings and channel "
        "URLs (run 'envkeeper check').",
    SuggestionCategory.PACKAGE_NOT_FOUND:
        "A package is not available on the listed channels for this platform. Add "
        "the channel that provides it or remove it from the manifest.",
    SuggestionCategory.PERMISSION:
        "conda could not write the environment or package cache. Check ownership of "
        "the conda install, or use an install root you own.",
    SuggestionCategory.GENERIC:
        "Rerun this environment with conda directly to see the full output.",
}

TIMEOUT_SUGGESTION = ("Installation exceeded the deadline. Raise --timeout, or import this "
                      "environment on its own.")

RULE = '=' * 64


def suggestion_for(diagnostic: Optional[str]) -> SuggestionCategory:
    """Map a diagnostic message to a remediation category."""
    text = (diagnostic or '').lower()
    for category, patterns in SUGGESTION_RULES:
        if any(pattern in text for pattern in patterns):
            return category
    return SuggestionCategory.GENERIC


def success_rate(report: RunReport) -> float:
    """Fraction of environments that succeeded (successes / total); 0.0 for an empty run."""
    if report.total == 0:
        return 0.0
    return report.success_count / report.total


def category_for(outcome: Outcome) -> SuggestionCategory:
    """Suggestion category for a failed outcome; pip-class failures are always pip conflicts."""
    if outcome.error_kind is ErrorKind.PIP:
        return SuggestionCategory.PIP_CONFLICT
    return suggestion_for(outcome.diagnostic)


def _group_failures(outcomes: list[Outcome]) -> dict[SuggestionCategory, list[Outcome]]:
    groups: dict[SuggestionCategory, list[Outcome]] = {}
    for outcome in outcomes:
        groups.setdefault(category_for(outcome), []).append(outcome)
    return groups


def _indent(text: Optional[str], prefix: str = '      ') -> list[str]:
    return [f"{prefix}{line}" for line in (text or '').splitlines()]


def render(report: RunReport) -> str:
    """Render the console summary for a finished run."""
    outcomes = report.outcomes
    mode = ' (upgrade mode)' if report.upgrade_mode else ''
    lines = [
        RULE,
        f"  envkeeper {report.command}{mode}",
        RULE,
    ]
    if report.source is not None:
        lines.append(f"  Source:      {report.source}")
    lines.extend([
        f"  Processed:   {report.total}",
        f"  Succeeded:   {report.success_count}",
        f"  Failed:      {len(report.failed_environments)}",
        f"  Timed out:   {len(report.timeout_environments)}",
        f"  Success:     {success_rate(report):.1%}",
        f"  Duration:    {report.duration:.1f}s",
    ])

    if report.complex_environments or report.standard_environments:
        lines.extend([
            "",
            f"  Complex ({len(report.complex_environments)}):  "
            f"{', '.join(report.complex_environments) or '-'}",
            f"  Standard ({len(report.standard_environments)}): "
            f"{', '.join(report.standard_environments) or '-'}",
        ])
    if report.created_environments:
        lines.append(f"  Created: {', '.join(report.created_environments)}")
    if report.updated_environments:
        lines.append(f"  Updated: {', '.join(report.updated_environments)}")

    failed = [outcomes[name] for name in report.failed_environments]
    if failed:
        lines.extend(["", "Failed environments:"])
        for category, group in _group_failures(failed).items():
            lines.append(f"  [{category.value}]")
            for outcome in group:
                lines.append(f"    - {outcome.env_name} ({outcome.operation.value})")
                lines.extend(_indent(outcome.diagnostic))
            lines.append(f"    Suggestion: {SUGGESTIONS[category]}")

    timed_out = report.timeout_environments
    if timed_out:
        lines.extend(["", "Timed out environments:"])
        for name in timed_out:
            lines.append(f"    - {name} ({outcomes[name].diagnostic})")
        lines.append(f"    Suggestion: {TIMEOUT_SUGGESTION}")

    complex_failures = [name for name in report.failed_environments + timed_out
                        if outcomes[name].complexity is Complexity.COMPLEX]
    if report.upgrade_mode and complex_failures:
        lines.extend([
            "",
            "Complex environments failed in upgrade mode. To restore them with their "
            "original pins, re-run without --upgrade:",
            f"    {', '.join(complex_failures)}",
        ])

    lines.append(RULE)
    return '\n'.join(lines)


def report_filename(command: str, started_at: Optional[datetime] = None) -> str:
    """Timestamped report file name, e.g. envkeeper-import-20260101-120000.txt."""
    timestamp = (started_at or datetime.now()).strftime('%Y%m%d-%H%M%S')
    return f"envkeeper-{command}-{timestamp}.txt"


def _record_line(outcome: Outcome) -> str:
    kind = outcome.complexity.value if outcome.complexity else '-'
    line = (f"{outcome.env_name}: status={outcome.status.value} "
            f"operation={outcome.operation.value} type={kind}")
    if outcome.status is not Status.SUCCESS:
        error = ' | '.join((outcome.diagnostic or '').splitlines())
        line += f" error={error}"
    return line


def persist(report: RunReport, path: Path) -> Path:
    """Write the flat report record. Environments are sorted by name."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"envkeeper {report.command} report",
        f"Date: {report.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Source: {report.source or '-'}",
        f"Upgrade mode: {'yes' if report.upgrade_mode else 'no'}",
        "",
        f"Total: {report.total}",
        f"Succeeded: {report.success_count}",
        f"Failed: {len(report.failed_environments)}",
        f"Timed out: {len(report.timeout_environments)}",
        f"Success rate: {success_rate(report):.1%}",
        f"Created: {', '.join(sorted(report.created_environments)) or '-'}",
        f"Updated: {', '.join(sorted(report.updated_environments)) or '-'}",
        "",
        "Environments:",
    ]
    outcomes = report.outcomes
    for name in sorted(outcomes):
        lines.append(_record_line(outcomes[name]))
        if outcomes[name].status is Status.FAILED:
            category = category_for(outcomes[name])
            lines.append(f"  suggestion ({category.value}): {SUGGESTIONS[category]}")
        elif outcomes[name].status is Status.TIMED_OUT:
            lines.append(f"  suggestion (timeout): {TIMEOUT_SUGGESTION}")

    lines.extend(["", f"Generated: {datetime.now().isoformat()}"])
    with open(path, 'w', encoding='utf-8') as f:
        f.write('\n'.join(lines) + '\n')
    return path


def to_dict(report: RunReport) -> dict:
    """Return the report as a JSON-serializable dictionary."""
    return {
        'command': report.command,
        'source': str(report.source) if report.source else None,
        'upgrade_mode': report.upgrade_mode,
        'started_at': report.started_at.isoformat(),
        'finished_at': report.finished_at.isoformat() if report.finished_at else None,
        'duration_seconds': round(report.duration, 1),
        'total': report.total,
        'succeeded': report.success_count,
        'failed': report.failed_environments,
        'timed_out': report.timeout_environments,
        'success_rate': round(success_rate(report), 3),
        'environments': [o.to_dict() for o in report.outcomes.values()],
    }
