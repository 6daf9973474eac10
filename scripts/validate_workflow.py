#!/usr/bin/env python3
"""
Validate workflow definition YAML files.

Runs the full definition check used by ``create_workflow_definition``:
graph structure, connectivity, split/join pairing, node config and the
type check of every guard and script expression.

Usage:
    python scripts/validate_workflow.py path/to/workflow.yaml [...]
    python scripts/validate_workflow.py --shipped
    python scripts/validate_workflow.py --json path/to/workflow.yaml

Exit status is 0 when every file is valid, 1 otherwise.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from signing_config.loader import DEFAULTS_DIR, load_workflow_definition
from signing_engines.graph import predict_duration, validate_definition
from signing_kernel.exceptions import ConfigurationError


def check(path: Path) -> dict:
    """Validate one file; returns a JSON-ready report."""
    try:
        definition = load_workflow_definition(path)
    except ConfigurationError as exc:
        return {"file": str(path), "valid": False, "issues": [{"code": "PARSE_ERROR", "message": str(exc)}]}
    issues = validate_definition(definition)
    report = {
        "file": str(path),
        "workflow_id": definition.workflow_id,
        "nodes": len(definition.nodes),
        "edges": len(definition.edges),
        "valid": not issues,
        "issues": [issue.to_dict() for issue in issues],
    }
    if not issues:
        report["predicted_duration_seconds"] = predict_duration(definition)
    return report


def _print_report(report: dict) -> None:
    status = "OK" if report["valid"] else "INVALID"
    print(f"{status:8} {report['file']}")
    if "workflow_id" in report:
        print(f"  workflow_id: {report['workflow_id']}  nodes: {report['nodes']}  edges: {report['edges']}")
    if "predicted_duration_seconds" in report:
        print(f"  predicted duration: {report['predicted_duration_seconds']}s")
    for issue in report["issues"]:
        where = f" [{issue['node_id']}]" if issue.get("node_id") else ""
        print(f"  ERROR {issue['code']}{where}: {issue['message']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate workflow definition files.")
    parser.add_argument("files", nargs="*", type=Path, help="workflow YAML files")
    parser.add_argument("--shipped", action="store_true", help="validate the bundled example workflows")
    parser.add_argument("--json", action="store_true", help="emit a JSON report")
    args = parser.parse_args()

    files = list(args.files)
    if args.shipped:
        files.extend(sorted((DEFAULTS_DIR / "workflows").glob("*.yaml")))
    if not files:
        parser.error("no workflow files given (pass paths or --shipped)")

    missing = [f for f in files if not f.is_file()]
    if missing:
        for f in missing:
            print(f"Error: file not found: {f}", file=sys.stderr)
        return 1

    reports = [check(f) for f in files]
    if args.json:
        print(json.dumps(reports, indent=2))
    else:
        for report in reports:
            _print_report(report)
    return 0 if all(r["valid"] for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
