"""
Verification report renderers and persisted state.

Three renderings share one status vocabulary (pass, warning, fail, error,
skipped) so tooling reading the JSON and people reading the text agree on
severity:

    render_human    multi-section text report
    render_json     JSON document
    render_compact  one line for status bars and cron mail
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from checkpoint.fileutil import write_json_atomic
from checkpoint.verification.models import CheckStatus, VerificationReport, worst

logger = logging.getLogger(__name__)

LAST_VERIFICATION_FILENAME = "last-verification.json"

_LABELS = {
    CheckStatus.PASS: "PASS",
    CheckStatus.WARNING: "WARN",
    CheckStatus.FAIL: "FAIL",
    CheckStatus.ERROR: "ERROR",
    CheckStatus.SKIPPED: "SKIPPED",
}


def render_compact(report: VerificationReport) -> str:
    """Render a one-line summary."""
    overall = report.overall
    summary = report.summary()

    if overall == CheckStatus.PASS:
        return (
            f"PASS: {len(report.files)} files, "
            f"{len(report.databases)} databases verified"
        )
    if overall == CheckStatus.WARNING:
        return (
            f"WARNING: {summary['passed']}/{summary['total_checks']} passed, "
            f"{summary['warnings']} warning(s)"
        )
    if overall == CheckStatus.FAIL:
        return (
            f"FAIL: {summary['failed']}/{summary['total_checks']} check(s) failed"
        )
    return f"ERROR: Verification could not be performed ({report.error})"


def render_json(report: VerificationReport, indent: int | None = 2) -> str:
    """Render the report as a JSON document."""
    return json.dumps(report.to_dict(), indent=indent)


def render_human(report: VerificationReport) -> str:
    """Render a multi-section text report."""
    lines = [
        "",
        "Checkpoint Verification Report",
        "=" * 32,
        f"Project: {report.project or 'unknown'}",
        f"Mode:    {report.mode.value}",
        f"Backup:  {report.backup_dir}",
    ]
    if report.backup_id:
        lines.append(f"ID:      {report.backup_id}")
    lines.append("")

    if report.error is not None:
        lines.append(f"ERROR: {report.error}")
        lines.append("")
        lines.append("Summary: VERIFICATION ERROR")
        lines.append("")
        return "\n".join(lines)

    if report.manifest is not None:
        lines.append("Manifest")
        lines.append(
            f"  Status ............ {_LABELS[report.manifest.status]} "
            f"({report.manifest.message})"
        )
        lines.append("")

    lines.append("Files")
    if report.files:
        missing = [r for r in report.files if r.message.startswith("Missing")]
        present = len(report.files) - len(missing)
        existence = _LABELS[worst([r.status for r in missing])]
        lines.append(
            f"  Existence ......... {existence} ({present}/{len(report.files)} present)"
        )
        # Warnings (degraded manifest, size-only checks) must not read as PASS
        integrity = _LABELS[worst([r.status for r in report.files])]
        valid = sum(1 for r in report.files if r.status != CheckStatus.FAIL)
        lines.append(
            f"  Integrity ......... {integrity} ({valid}/{len(report.files)} valid)"
        )
    else:
        lines.append("  No files to verify")
    lines.append("")

    lines.append("Databases")
    if report.databases:
        for result in report.databases:
            name = Path(result.path).name
            lines.append(f"  {name:<30} {_LABELS[result.status]} ({result.message})")
    else:
        lines.append("  No databases to verify")
    lines.append("")

    lines.append("Cloud")
    lines.append(
        f"  Status ............ {report.cloud.status.value.upper()} "
        f"({report.cloud.details})"
    )
    lines.append("")

    failures = report.failures()
    if failures:
        lines.append("FAILURES:")
        lines.append("---")
        for result in failures:
            lines.append(f"  {result.error_code}: {result.path}")
            lines.append(f"       {result.message}")
        lines.append("")

    warnings = report.warnings()
    if warnings:
        lines.append("WARNINGS:")
        lines.append("---")
        for result in warnings:
            lines.append(f"  {result.path}: {result.message}")
        lines.append("")

    overall = report.overall
    summary = report.summary()
    if overall == CheckStatus.PASS:
        lines.append("Summary: ALL CHECKS PASSED")
    elif overall == CheckStatus.WARNING:
        lines.append(f"Summary: PASSED WITH WARNINGS ({summary['warnings']} warning(s))")
    else:
        lines.append(f"Summary: CHECKS FAILED ({summary['failed']} failure(s))")
    lines.append("")

    return "\n".join(lines)


def save_last_verification(state_dir: Path, report: VerificationReport) -> Path:
    """
    Persist the JSON rendering of a report for status displays.

    Returns:
        Path of the state file.
    """
    path = Path(state_dir) / LAST_VERIFICATION_FILENAME
    write_json_atomic(path, report.to_dict())
    logger.debug(f"Saved verification state to {path}")
    return path


def load_last_verification(state_dir: Path) -> dict[str, Any] | None:
    """Load the last persisted verification, or None if absent or unreadable."""
    path = Path(state_dir) / LAST_VERIFICATION_FILENAME
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data: dict[str, Any] = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None
    return data
