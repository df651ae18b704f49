"""
Run Reports
===========

Text and JSON renderings of a plan, a run summary and an answer key.
"""

import json
import os
from pathlib import Path

from ..errors import AdForgeError
from ..generation.planner import GenerationPlan
from ..model.schemas import LedgerEntry, RunSummary, Severity


def generate_plan_report(plan: GenerationPlan) -> str:
    """Generate a text summary of a dry-run plan.

    Args:
        plan: GenerationPlan to summarize

    Returns:
        Formatted text report
    """
    lines = [
        "=" * 60,
        "adForge - Generation Plan (dry run)",
        "=" * 60,
        "",
        f"Domain: {plan.domain} ({plan.root})",
        f"Seed: {plan.seed}",
        f"OU depth: {plan.max_depth}",
        "",
        "OBJECTS",
        "-" * 40,
    ]
    for object_type, count in plan.counts().items():
        lines.append(f"  {object_type:<16} {count:>6}")

    lines.extend(["", "HIERARCHY", "-" * 40])
    for top in plan.top_level:
        for node in top.walk():
            quota = node.total_quota()
            suffix = f"  ({quota} objects)" if quota else ""
            lines.append(f"{'  ' * node.depth}{node.name}{suffix}")

    if plan.rule_projections:
        lines.extend(["", "MISCONFIGURATIONS (upper bound)", "-" * 40])
        for rule_id, projection in plan.rule_projections.items():
            projected = projection["projected_max"]
            shown = "depends on relationships" if projected is None else str(projected)
            lines.append(f"  {rule_id}: {shown}")

    lines.append("")
    return "\n".join(lines)


def generate_run_report(summary: RunSummary) -> str:
    """Generate a text report of a completed (or cancelled) run."""
    status = "CANCELLED" if summary.cancelled else ("OK" if summary.succeeded else "FAILED")
    lines = [
        "=" * 60,
        "adForge - Run Summary",
        "=" * 60,
        "",
        f"Domain: {summary.domain}",
        f"Seed: {summary.seed}",
        f"Started: {summary.started_at}",
        f"Finished: {summary.finished_at or 'n/a'}",
        f"Status: {status}",
        "",
        "STAGES",
        "-" * 40,
        f"  {'stage':<18}{'attempted':>10}{'ok':>8}{'existing':>10}{'failed':>8}{'skipped':>9}",
    ]
    for counts in summary.stages.values():
        lines.append(
            f"  {counts.stage:<18}{counts.attempted:>10}{counts.succeeded:>8}"
            f"{counts.existing:>10}{counts.failed:>8}{counts.skipped:>9}"
        )
        if counts.rejected:
            lines.append(f"    ({counts.rejected} proposals rejected: would create a nesting cycle)")

    if summary.critical_failures:
        lines.extend(["", "CRITICAL STAGE FAILURES", "-" * 40])
        for stage in summary.critical_failures:
            lines.append(f"  • {stage}: failure rate {summary.stages[stage].failure_rate:.1%}")

    lines.extend([
        "",
        f"Answer key: {summary.answer_key_path or 'not written'} ({summary.ledger_entries} entries)",
        "",
    ])
    return "\n".join(lines)


def generate_answer_key_report(entries: list[LedgerEntry]) -> str:
    """Generate a grading sheet from answer key entries, worst first."""
    order = {severity: i for i, severity in enumerate(Severity)}
    lines = [
        "=" * 60,
        "adForge - Answer Key",
        "=" * 60,
        "",
        f"Total misconfigurations: {len(entries)}",
    ]
    for severity in Severity:
        count = sum(1 for e in entries if e.severity == severity)
        if count:
            lines.append(f"  - {severity.value}: {count}")

    for entry in sorted(entries, key=lambda e: (order[e.severity], e.rule_id, e.target)):
        lines.extend([
            "",
            f"[{entry.severity.value}] {entry.rule_id}",
            f"   Target: {entry.target}",
            f"   Fix: {entry.remediation}",
        ])
    lines.append("")
    return "\n".join(lines)


def write_run_summary(summary: RunSummary, path) -> Path:
    """Atomically write run_summary.json.

    Raises:
        AdForgeError: If the file cannot be written
    """
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
    except OSError as e:
        raise AdForgeError(f"Cannot write run summary {path}: {e}") from e
    return path
