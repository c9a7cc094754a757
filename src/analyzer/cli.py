"""CLI entry-point for the security correlation & response pipeline.

Usage examples
--------------
# Live monitor over the audit log (Ctrl+C to stop):
python -m src.analyzer monitor --config-dir config

# Same, but ignore history already in the log:
python -m src.analyzer monitor --from-end

# One synchronous check (ingest + detect + correlate), then exit:
python -m src.analyzer check

# Offline correlation of a recorded event file:
python -m src.analyzer correlate --input data/audit_sample.jsonl --out-dir out

# Inspect / validate rule files:
python -m src.analyzer rules list
python -m src.analyzer rules validate
"""

from __future__ import annotations

import argparse
import sys

from src.analyzer.pipeline import run_check, run_correlation, run_monitor
from src.analyzer.rule_store import load_correlation_rules, load_response_rules
from src.contracts.errors import SecurityPipelineError
from src.shared.logger import setup_logging


def _add_path_overrides(p: argparse.ArgumentParser) -> None:
    p.add_argument("--audit-log", default=None,
                   help="Audit log JSONL (overrides paths.audit_log in monitor.yaml).")
    p.add_argument("--incidents", default=None,
                   help="Incident store JSONL (overrides paths.incidents).")
    p.add_argument("--alerts", default=None,
                   help="Alert log JSONL (overrides paths.alerts).")
    p.add_argument("--stats", default=None,
                   help="Stats snapshot JSON (overrides paths.stats).")


def _overrides(args: argparse.Namespace) -> dict[str, str]:
    return {
        "audit_log": args.audit_log,
        "incidents": args.incidents,
        "alerts": args.alerts,
        "stats": args.stats,
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="analyzer",
        description="Security event correlation & automated response",
    )
    p.add_argument(
        "--config-dir",
        default="config",
        help="Directory with monitor.yaml and rule files. Default: config/",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level. Default: INFO",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Also write log records to this file.",
    )
    sub = p.add_subparsers(dest="command", required=True)

    mon = sub.add_parser("monitor", help="Run the real-time monitor until Ctrl+C.")
    _add_path_overrides(mon)
    mon.add_argument(
        "--from-end",
        action="store_true",
        default=False,
        help="Start after the newest event already in the audit log.",
    )
    mon.add_argument(
        "--poll-interval-ms",
        type=int,
        default=5000,
        help="How often the stats snapshot is refreshed, ms (default: 5000).",
    )

    chk = sub.add_parser("check", help="Run one synchronous monitoring pass.")
    _add_path_overrides(chk)

    cor = sub.add_parser("correlate", help="Correlate a recorded event file offline.")
    cor.add_argument(
        "--input",
        required=True,
        help="Input file (CSV or JSONL). Format auto-detected by extension.",
    )
    cor.add_argument("--out-dir", default="out", help="Output directory. Default: out/")
    cor.add_argument(
        "--respond",
        action="store_true",
        default=False,
        help="Run response rules against the in-memory incidents.",
    )
    cor.add_argument(
        "--plots",
        action="store_true",
        default=False,
        help="Also write PNG charts (requires matplotlib).",
    )

    rules = sub.add_parser("rules", help="Inspect correlation and response rules.")
    rules.add_argument("action", choices=["list", "validate"])
    return p


def _cmd_rules(args: argparse.Namespace) -> int:
    cor_path = f"{args.config_dir}/correlation_rules.yaml"
    resp_path = f"{args.config_dir}/response_rules.yaml"
    correlation = load_correlation_rules(cor_path)
    response = load_response_rules(resp_path)
    if args.action == "validate":
        print(f"OK: {len(correlation)} correlation rule(s), {len(response)} response rule(s)")
        return 0

    print("Correlation rules:")
    for r in correlation:
        flag = " " if r.enabled else "-"
        print(f" {flag} {r.id:<28} prio={r.priority} window={r.time_window.total_seconds():g}s "
              f"events={r.min_events}..{r.max_events} x{r.risk_multiplier:g}")
    print("Response rules:")
    for r in response:
        flag = " " if r.enabled else "-"
        actions = ", ".join(a.type.value for a in r.actions)
        print(f" {flag} {r.id:<28} prio={r.priority} auto={r.auto_execute} → {actions}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, log_file=args.log_file)

    try:
        if args.command == "monitor":
            run_monitor(
                config_dir=args.config_dir,
                overrides=_overrides(args),
                from_end=args.from_end,
                poll_interval_sec=args.poll_interval_ms / 1000.0,
            )
        elif args.command == "check":
            stats = run_check(config_dir=args.config_dir, overrides=_overrides(args))
            print(f"Processed {stats.events_processed} event(s), cursor={stats.cursor}, "
                  f"incidents={stats.incidents_created}, responses={stats.auto_responses_triggered}, "
                  f"alerts={stats.alerts_sent}")
        elif args.command == "correlate":
            result = run_correlation(
                input_path=args.input,
                out_dir=args.out_dir,
                config_dir=args.config_dir,
                respond=args.respond,
                plots=args.plots,
            )
            print(f"{len(result['events'])} event(s) → {len(result['correlations'])} "
                  f"correlation(s), {len(result['incidents'])} incident(s). "
                  f"Reports in {args.out_dir}/")
        else:
            return _cmd_rules(args)
    except (SecurityPipelineError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
