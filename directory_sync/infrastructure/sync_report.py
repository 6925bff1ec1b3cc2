"""Sync Report Generator.

This module summarizes the outcomes of a sync run, per pipeline and per
severity, and optionally saves the report as a JSON file for later review.
"""

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from directory_sync.domain.ports import OperationOutcome, Result, Severity


def build_sync_report(
    outcomes_by_pipeline: dict[str, list[OperationOutcome]],
    output_path: Optional[str] = None,
    started_at: Optional[datetime] = None
) -> Result[dict]:
    """Generate a sync report from pipeline outcomes.

    Parameters:
        outcomes_by_pipeline: Outcomes keyed by pipeline name
        output_path: Optional path to save report as JSON file
        started_at: Start time of the run

    Returns:
        Result[dict]: Sync report dictionary or error
    """
    severity_counts: Counter = Counter()
    pipelines = {}
    for pipeline, outcomes in outcomes_by_pipeline.items():
        counts = Counter(outcome.severity.value for outcome in outcomes)
        severity_counts.update(counts)
        pipelines[pipeline] = {
            "succeeded": not any(outcome.is_error() for outcome in outcomes),
            "outcomes": [outcome.to_dict() for outcome in outcomes],
            "by_severity": dict(counts),
        }

    report = {
        "started_at": started_at.isoformat() if started_at else None,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "summary": {
            "total_outcomes": sum(severity_counts.values()),
            "by_severity": {severity.value: severity_counts.get(severity.value, 0) for severity in Severity},
            "failed_pipelines": sorted(name for name, p in pipelines.items() if not p["succeeded"]),
        },
        "pipelines": pipelines,
    }

    if output_path:
        try:
            output_file = Path(output_path)
            output_file.parent.mkdir(parents=True, exist_ok=True)

            with open(output_file, 'w', encoding='utf-8') as f:
                json.dump(report, f, indent=2, default=str)

            return Result.success_result({
                **report,
                "saved_to": str(output_file)
            })
        except Exception as e:
            return Result.failure_result(
                ValueError(f"Failed to save report to {output_path}: {str(e)}"),
                error_type="ValueError"
            )

    return Result.success_result(report)


def has_errors(outcomes_by_pipeline: dict[str, list[OperationOutcome]]) -> bool:
    return any(outcome.is_error() for outcomes in outcomes_by_pipeline.values() for outcome in outcomes)


def print_sync_report_summary(report: dict) -> None:
    """Print a human-readable summary of the sync report."""
    print("=" * 70)
    print("SYNC REPORT - FHIR Store to BBMRI-ERIC Directory")
    print("=" * 70)

    summary = report.get('summary', {})
    print(f"\nTotal Outcomes: {summary.get('total_outcomes', 0)}")
    if report.get('started_at'):
        print(f"Started: {report['started_at']}")

    print("\nOutcomes by Severity:")
    for severity, count in summary.get('by_severity', {}).items():
        print(f"  {severity}: {count}")

    failed = summary.get('failed_pipelines', [])
    if failed:
        print("\nFailed Pipelines:")
        for pipeline in failed:
            print(f"  {pipeline}")
            for outcome in report['pipelines'][pipeline]['outcomes']:
                if outcome['severity'] in (Severity.ERROR.value, Severity.FATAL.value):
                    print(f"    - {outcome['diagnostics']}")

    if report.get('saved_to'):
        print(f"\nSaved to: {report['saved_to']}")

    print("\n" + "=" * 70)
