#!/usr/bin/env python
"""
Engine CLI - Run and inspect the rule evolution engine.

Usage:
    ruleforge analyze [--limit N] [--llm]
    ruleforge evaluate
    ruleforge promote
    ruleforge review [--limit N]
    ruleforge verdict RULE_ID {approve,reject} [--reason TEXT]
    ruleforge reanalyze SESSION_ID [--llm]
    ruleforge aggregate [--day YYYY-MM-DD]
    ruleforge clusters [--refresh] [--type TYPE]
    ruleforge cycle [--day YYYY-MM-DD]
    ruleforge rules [--status STATUS] [--category CATEGORY]
    ruleforge prompt
    ruleforge stats
    ruleforge health
    ruleforge schedule
    ruleforge import-sessions FILE

All commands accept --project-dir DIR and --config FILE. LLM-backed scoring
and review are used when RULEFORGE_LLM_API_KEY (or OPENAI_API_KEY) is set.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import date
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from ruleforge import __version__
from ruleforge.aggregator import ClusterType
from ruleforge.capabilities import HeuristicScorer, Verdict
from ruleforge.config import EngineConfig
from ruleforge.db.connection import init_db, dispose_db
from ruleforge.errors import ConfigError, RuleForgeError
from ruleforge.llm_capability import LLMSettings, LLMScoringCapability, LLMReviewCapability
from ruleforge.output import (
    console,
    print_banner,
    print_header,
    print_subheader,
    print_success,
    print_error,
    print_warning,
    print_info,
    print_muted,
    print_key_value_table,
    print_json_data,
    create_table,
    print_table,
    setup_rich_logging,
    spinner,
    styled,
)
from ruleforge.pipeline import RuleEvolutionEngine, EvolutionScheduler
from ruleforge.rule_registry import RuleStatus

# Load environment variables from .env in the working directory
load_dotenv(find_dotenv(usecwd=True))


# =============================================================================
# Engine wiring
# =============================================================================

def load_config(args) -> EngineConfig:
    config = EngineConfig.load(args.config)
    if args.project_dir is not None:
        config.project_dir = str(args.project_dir)
    return config


def build_capabilities(args):
    """Pick the scorer and reviewer. Without LLM settings there is no reviewer."""
    settings = LLMSettings.from_env()
    if settings is None:
        if getattr(args, "llm", False):
            raise ConfigError("--llm requires RULEFORGE_LLM_API_KEY or OPENAI_API_KEY")
        return HeuristicScorer(), None

    scorer = LLMScoringCapability(settings) if getattr(args, "llm", False) else HeuristicScorer()
    return scorer, LLMReviewCapability(settings)


def run_with_engine(args, fn):
    """Open the project database, build the engine, run ``fn(engine)``."""
    config = load_config(args)
    scorer, reviewer = build_capabilities(args)

    async def runner():
        session_maker = await init_db(config.project_dir)
        try:
            engine = RuleEvolutionEngine(session_maker, config, scorer=scorer, reviewer=reviewer)
            return await fn(engine)
        finally:
            await dispose_db()

    return asyncio.run(runner())


def parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def format_score(score) -> str:
    if score is None:
        return "[rf.muted]-[/]"
    if score >= 0.7:
        return f"[rf.ok]{score:.3f}[/]"
    if score >= 0.4:
        return f"[rf.warn]{score:.3f}[/]"
    return f"[rf.err]{score:.3f}[/]"


def print_summary(title: str, data: dict) -> None:
    print_key_value_table({k.replace("_", " ").title(): v for k, v in data.items()}, title=title)


# =============================================================================
# Stage commands
# =============================================================================

def cmd_analyze(args):
    """Analyze a batch of unanalyzed sessions."""
    with spinner("Analyzing sessions..."):
        result = run_with_engine(args, lambda e: e.analyzer.analyze_batch(args.limit))

    print_summary("Batch Analysis", result.to_dict())
    if result.failed:
        print_warning(f"{result.failed} session(s) failed and will be retried")
    return 0


def cmd_reanalyze(args):
    """Write a new analysis revision for one session."""
    with spinner(f"Re-analyzing {args.session_id}..."):
        outcome = run_with_engine(args, lambda e: e.analyzer.reanalyze(args.session_id))

    print_success(f"Session {args.session_id} re-analyzed (analysis #{outcome.analysis_id})")
    if outcome.proposals_registered:
        print_info(f"{outcome.proposals_registered} rule proposal(s) registered")
    return 0


def cmd_evaluate(args):
    """Recompute effectiveness scores of pending and active rules."""
    with spinner("Evaluating rules..."):
        summary = run_with_engine(args, lambda e: e.evaluator.evaluate_all())

    print_summary("Rule Evaluation", summary.to_dict())
    return 0


def cmd_promote(args):
    """Run one promotion pass."""
    with spinner("Running promotion pass..."):
        summary = run_with_engine(args, lambda e: e.controller.run_pass())

    print_summary("Promotion", summary.to_dict())
    return 0


def cmd_review(args):
    """Auto-review rules the promotion pass left undecided."""
    with spinner("Reviewing undecided rules..."):
        summary = run_with_engine(args, lambda e: e.reviewer.review_batch(args.limit))

    print_summary("Auto Review", summary.to_dict())
    if summary.attempted and summary.deferred == summary.attempted:
        print_muted("All rules deferred (no reviewer configured or low confidence)")
    return 0


def cmd_verdict(args):
    """Apply a manual admin verdict to a rule."""
    verdict = Verdict(args.verdict)
    changed = run_with_engine(
        args, lambda e: e.reviewer.apply_manual_verdict(args.rule_id, verdict, args.reason or ""),
    )
    if changed:
        print_success(f"Rule #{args.rule_id}: {verdict.value} applied")
    else:
        print_info(f"Rule #{args.rule_id} unchanged")
    return 0


def cmd_aggregate(args):
    """Compute the daily metric row for a day (default: today, UTC)."""
    with spinner("Aggregating daily metrics..."):
        metric = run_with_engine(args, lambda e: e.aggregator.aggregate_daily(args.day))

    top_tags = metric.pop("top_violation_tags", [])
    print_summary(f"Daily Metrics {metric.get('metric_date')}", metric)
    if top_tags:
        print_subheader("Top Violation Tags")
        for entry in top_tags:
            console.print(f"  [rf.accent]{entry['tag']}[/] [rf.muted]x{entry['count']}[/]")
    return 0


def cmd_clusters(args):
    """List knowledge clusters, optionally refreshing them first."""
    cluster_type = ClusterType(args.type) if args.type else None

    async def run(engine):
        refreshed = None
        if args.refresh:
            refreshed = await engine.aggregator.refresh_clusters()
        clusters = await engine.aggregator.get_clusters(cluster_type, active_only=not args.all)
        return refreshed, clusters

    with spinner("Loading clusters..."):
        refreshed, clusters = run_with_engine(args, run)

    if refreshed is not None:
        print_summary("Cluster Refresh", refreshed.to_dict())

    if not clusters:
        print_info("No clusters found")
        return 0

    print_header(f"Knowledge Clusters ({len(clusters)})")
    table = create_table(columns=["ID", "Type", "Key", "Members", "Active", "Summary"])
    for c in clusters:
        table.add_row(
            f"[rf.accent]{c['id']}[/]",
            c["cluster_type"],
            c["cluster_key"],
            str(c["member_count"]),
            "[rf.ok]yes[/]" if c["is_active"] else "[rf.muted]no[/]",
            c["summary"][:60],
        )
    print_table(table)
    return 0


def cmd_cycle(args):
    """Run every stage once in pipeline order."""
    with spinner("Running engine cycle..."):
        report = run_with_engine(args, lambda e: e.run_cycle(day=args.day))

    print_header("Engine Cycle")
    data = report.to_dict()
    skipped = data.pop("skipped")
    for stage, result in data.items():
        if result is None:
            console.print(f"  [rf.warn]{stage}[/]: [rf.muted]skipped[/]")
        elif isinstance(result, dict):
            parts = ", ".join(f"{k}={v}" for k, v in result.items() if not isinstance(v, (list, dict)))
            console.print(f"  [rf.key]{stage}[/]: {parts}")
        else:
            console.print(f"  [rf.key]{stage}[/]: {result}")

    if skipped:
        print_warning(f"Skipped stages: {', '.join(skipped)}")
        return 1
    print_success("Cycle complete")
    return 0


def cmd_schedule(args):
    """Run the periodic scheduler until interrupted."""
    config = load_config(args)
    scorer, reviewer = build_capabilities(args)

    async def runner():
        session_maker = await init_db(config.project_dir)
        engine = RuleEvolutionEngine(session_maker, config, scorer=scorer, reviewer=reviewer)
        scheduler = EvolutionScheduler(engine)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.stop)
            except NotImplementedError:
                # Windows: fall back to KeyboardInterrupt
                pass
        try:
            await scheduler.run()
        finally:
            await dispose_db()

    print_banner(version=__version__)
    print_muted("Press Ctrl+C to stop")
    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        print_warning("Interrupted")
    return 0


def cmd_import_sessions(args):
    """Import sessions and outcomes from a JSON file."""
    path = Path(args.file)
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print_error(f"Failed to read {path}: {e}")
        return 1

    if isinstance(payload, dict):
        payload = payload.get("sessions", [])
    if not isinstance(payload, list):
        print_error("Expected a list of sessions or {\"sessions\": [...]}")
        return 1

    with spinner(f"Importing {len(payload)} session(s)..."):
        counts = run_with_engine(args, lambda e: e.store.import_sessions(payload))

    print_success(f"Imported {counts['created']} new, {counts['updated']} updated session(s)")
    return 0


# =============================================================================
# Inspection commands
# =============================================================================

def cmd_rules(args):
    """List rules."""
    status = RuleStatus(args.status) if args.status else None

    with spinner("Loading rules..."):
        rules = run_with_engine(args, lambda e: e.registry.list_rules(status, args.category))

    if not rules:
        print_info("No rules found")
        return 0

    print_header(f"Rules ({len(rules)})")
    table = create_table(columns=["ID", "Key", "Ver", "Category", "Status", "Score", "Samples", "Low", "Source"])
    for r in rules:
        table.add_row(
            f"[rf.accent]{r.id}[/]",
            r.rule_key,
            str(r.version),
            r.category,
            styled(r.status.value, "status"),
            format_score(r.effectiveness_score),
            str(r.sample_count),
            str(r.consecutive_low_scores),
            r.source.value,
        )
    print_table(table)
    return 0


def cmd_prompt(args):
    """Print the active-rule prompt block."""
    prompt = run_with_engine(args, lambda e: e.reporting.active_rules_prompt())
    if not prompt:
        print_info("No active rules")
        return 0
    console.print(prompt, markup=False, highlight=False)
    return 0


def cmd_stats(args):
    """Show engine statistics."""
    with spinner("Collecting statistics..."):
        overview = run_with_engine(args, lambda e: e.reporting.overview())

    if args.json:
        print_json_data(overview)
        return 0

    print_header("RuleForge Statistics")

    rules = overview["rules"]
    print_key_value_table({
        "Total": rules["total"],
        **{s.title(): n for s, n in rules["by_status"].items()},
        "Average Score": rules["average_score"] if rules["average_score"] is not None else "-",
    }, title="Rules")

    console.print()
    analyses = overview["analyses"]
    sessions = analyses.pop("sessions")
    print_key_value_table({
        "Sessions": sessions["total"],
        **{f"Outcome {o}": n for o, n in sessions["by_outcome"].items()},
        "Analyzed": sessions["analyzed"],
        "Unanalyzable": sessions["unanalyzable"],
        "Pending Analysis": sessions["pending_analysis"],
    }, title="Sessions")

    console.print()
    print_key_value_table({k.replace("_", " ").title(): v for k, v in analyses.items()
                           if not isinstance(v, (list, dict))}, title="Analyses")

    console.print()
    print_key_value_table({
        t: f"{c['active']} active / {c['inactive']} inactive ({c['members']} members)"
        for t, c in overview["clusters"].items()
    }, title="Clusters")

    console.print()
    console.print(f"Engine health: {styled(overview['health']['overall'], 'health')}")
    return 0


def cmd_health(args):
    """Show per-component circuit breaker state."""
    summary = run_with_engine(args, lambda e: e.reporting.engine_health())

    print_header("Engine Health")
    console.print(f"Overall: {styled(summary['overall'], 'health')}")

    if not summary["components"]:
        print_muted("No component has run yet")
        return 0

    table = create_table(columns=["Component", "Status", "Errors", "Successes", "Last Error"])
    for c in summary["components"]:
        table.add_row(
            c["component"],
            styled(c["status"], "health"),
            str(c["error_count"]),
            str(c["success_count"]),
            (c["last_error"] or "")[:60],
        )
    print_table(table)
    return 0 if summary["overall"] != "critical" else 1


def main():
    parser = argparse.ArgumentParser(
        description="Run and inspect the RuleForge rule evolution engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Project directory containing the .ruleforge database (default: config project_dir)",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to a JSON config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze unanalyzed sessions")
    analyze_parser.add_argument("--limit", "-n", type=int, default=None, help="Max sessions to claim")
    analyze_parser.add_argument("--llm", action="store_true", help="Score with the configured LLM")

    reanalyze_parser = subparsers.add_parser("reanalyze", help="Re-analyze one session")
    reanalyze_parser.add_argument("session_id", help="Session ID")
    reanalyze_parser.add_argument("--llm", action="store_true", help="Score with the configured LLM")

    subparsers.add_parser("evaluate", help="Recompute rule effectiveness scores")
    subparsers.add_parser("promote", help="Run one promotion pass")

    review_parser = subparsers.add_parser("review", help="Auto-review undecided rules")
    review_parser.add_argument("--limit", "-n", type=int, default=None, help="Max rules to review")

    verdict_parser = subparsers.add_parser("verdict", help="Apply a manual verdict to a rule")
    verdict_parser.add_argument("rule_id", type=int, help="Rule ID")
    verdict_parser.add_argument("verdict", choices=[v.value for v in Verdict])
    verdict_parser.add_argument("--reason", "-m", help="Reason recorded in the change log")

    aggregate_parser = subparsers.add_parser("aggregate", help="Compute daily metrics")
    aggregate_parser.add_argument("--day", type=parse_day, default=None, help="Day to aggregate (YYYY-MM-DD)")

    clusters_parser = subparsers.add_parser("clusters", help="List knowledge clusters")
    clusters_parser.add_argument("--refresh", action="store_true", help="Refresh clusters first")
    clusters_parser.add_argument("--type", choices=[t.value for t in ClusterType], help="Cluster type")
    clusters_parser.add_argument("--all", action="store_true", help="Include inactive clusters")

    cycle_parser = subparsers.add_parser("cycle", help="Run every stage once")
    cycle_parser.add_argument("--day", type=parse_day, default=None, help="Day to aggregate (YYYY-MM-DD)")

    rules_parser = subparsers.add_parser("rules", help="List rules")
    rules_parser.add_argument("--status", choices=[s.value for s in RuleStatus], help="Filter by status")
    rules_parser.add_argument("--category", help="Filter by category")

    subparsers.add_parser("prompt", help="Print the active-rule prompt block")
    stats_parser = subparsers.add_parser("stats", help="Show engine statistics")
    stats_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    subparsers.add_parser("health", help="Show engine health")
    subparsers.add_parser("schedule", help="Run the periodic scheduler")

    import_parser = subparsers.add_parser("import-sessions", help="Import sessions from a JSON file")
    import_parser.add_argument("file", help="JSON file with a list of sessions")

    args = parser.parse_args()

    setup_rich_logging(logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        print_banner(version=__version__)
        console.print()
        parser.print_help()
        return 1

    commands = {
        "analyze": cmd_analyze,
        "reanalyze": cmd_reanalyze,
        "evaluate": cmd_evaluate,
        "promote": cmd_promote,
        "review": cmd_review,
        "verdict": cmd_verdict,
        "aggregate": cmd_aggregate,
        "clusters": cmd_clusters,
        "cycle": cmd_cycle,
        "rules": cmd_rules,
        "prompt": cmd_prompt,
        "stats": cmd_stats,
        "health": cmd_health,
        "schedule": cmd_schedule,
        "import-sessions": cmd_import_sessions,
    }

    handler = commands.get(args.command)
    if not handler:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except RuleForgeError as e:
        print_error(f"{e.code}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
