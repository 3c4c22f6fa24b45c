#!/usr/bin/env python3
"""Unified CLI for bugtriage -- Slack bug-report triage assistant."""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from bugtriage import __version__
from bugtriage.models import Action, Confidence, PromptVersion, Team

_ACTIONS = [a.value for a in Action]
_TEAMS = [t.value for t in Team]
_CONFIDENCES = [c.value for c in Confidence]
_VERSIONS = [v.value for v in PromptVersion]


def _config(args):
    """Config from the environment, overridden by whichever flags were given."""
    from bugtriage.config import Config

    config = Config.from_env()
    overrides = {}
    if args.data_dir:
        overrides["data_dir"] = Path(args.data_dir)
    if getattr(args, "model", None):
        overrides["model"] = args.model
    if getattr(args, "min_confidence", None):
        overrides["min_confidence"] = Confidence(args.min_confidence)
    if getattr(args, "channel", None):
        overrides["slack_channel_id"] = args.channel
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    if getattr(args, "verbose", False):
        overrides["verbose"] = True
    return dataclasses.replace(config, **overrides)


def _corpus_path(args) -> Path:
    return Path(args.corpus) if args.corpus else _config(args).corpus_path


def cmd_run(args):
    from bugtriage.bot import run
    return run(
        _config(args), since=args.since, limit=args.limit,
        prompt_version=PromptVersion(args.prompt_version),
    )


def cmd_export(args):
    from bugtriage.corpus import run_export
    config = _config(args)
    return run_export(_corpus_path(args), config.slack_channel_id, limit=args.limit)


def cmd_enrich(args):
    from bugtriage.corpus import run_enrich
    config = _config(args)
    return run_enrich(
        _corpus_path(args), config.slack_channel_id,
        limit=args.limit, force=args.force, delay=config.request_delay,
    )


def cmd_suggest_labels(args):
    from bugtriage.corpus import run_suggest_labels
    return run_suggest_labels(
        _corpus_path(args), apply=args.apply, include_medium=args.medium,
        llm=args.llm, config=_config(args), limit=args.limit, min_replies=args.min_replies,
    )


def cmd_label(args):
    from bugtriage.corpus import run_label
    return run_label(
        _corpus_path(args), args.case,
        action=None if args.action == "none" else Action(args.action),
        team=Team(args.team) if args.team else None,
        confidence=Confidence(args.confidence) if args.confidence else None,
        notes=args.notes,
    )


def cmd_merge(args):
    from bugtriage.corpus import run_merge
    synthetic = args.synthetic or _config(args).data_dir / "synthetic-cases.json"
    return run_merge(_corpus_path(args), synthetic)


def cmd_evaluate(args):
    from bugtriage.evaluate import run
    config = _config(args)
    version = PromptVersion(args.prompt_version)
    output_json = args.output_json or config.results_dir / f"eval-{version}.json"
    output_md = args.output_md or Path(output_json).with_suffix(".md")
    return run(
        _corpus_path(args), output_json, output_md, config,
        prompt_version=version, case_id=args.case,
        skip_unlabeled=args.skip_unlabeled, limit=args.limit,
    )


def cmd_compare(args):
    from bugtriage.significance import run
    return run(args.report_a, args.report_b)


def cmd_diff(args):
    from bugtriage.archive import run_diff
    return run_diff(args.old, args.new, _config(args).archive_dir)


def cmd_archive(args):
    from bugtriage.archive import run_archive
    config = _config(args)
    report = args.report or config.results_dir / f"eval-{PromptVersion.V2}.json"
    return run_archive(report, config.archive_dir, args.note)


def cmd_feedback(args):
    from bugtriage.feedback import run_report
    return run_report(_config(args).data_dir, since=args.since, output=args.output)


def cmd_calibration(args):
    from bugtriage.calibration import run
    return run(_config(args).data_dir, output=args.output)


def cmd_correct(args):
    from bugtriage.feedback import run_correct
    return run_correct(
        _config(args).data_dir, args.ts, args.action,
        team=args.team, reason=args.reason,
    )


def cmd_confirm(args):
    from bugtriage.feedback import run_confirm
    return run_confirm(_config(args).data_dir, args.ts)


def _add_corpus_arg(p):
    p.add_argument(
        "--corpus", default=None,
        help="Path to the case corpus (default: <data-dir>/test-cases.json)",
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="bugtriage",
        description="Bug triage assistant -- triages Slack bug reports against Linear",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug logging (verbose output)",
    )
    parser.add_argument(
        "--data-dir", default=None,
        help="Directory for corpus, reports and state files "
             "(default: $BUGTRIAGE_DATA_DIR or ./data)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- run (live) ---
    p_run = subparsers.add_parser(
        "run", help="Triage new channel messages and reply in their threads",
    )
    p_run.add_argument(
        "--dry-run", action="store_true",
        help="Fetch and decide, but do not create issues or post replies",
    )
    p_run.add_argument(
        "--verbose", action="store_true",
        help="Log full prompts and raw model responses",
    )
    p_run.add_argument(
        "--since", type=float, default=None,
        help="Process messages since this Unix timestamp (overrides saved state)",
    )
    p_run.add_argument("--channel", default=None, help="Override the Slack channel id")
    p_run.add_argument("--model", default=None, help="Claude model (default: sonnet)")
    p_run.add_argument(
        "--limit", type=int, default=10,
        help="Maximum messages to process (default: 10)",
    )
    p_run.add_argument(
        "--min-confidence", choices=_CONFIDENCES, default=None,
        help="Defer decisions below this confidence (default: low)",
    )
    p_run.add_argument(
        "--prompt-version", choices=_VERSIONS, default=PromptVersion.V2.value,
        help="Policy prompt version (default: v2)",
    )
    p_run.set_defaults(func=cmd_run)

    # --- export ---
    p_export = subparsers.add_parser(
        "export", help="Export channel history into the corpus as unlabeled cases",
    )
    _add_corpus_arg(p_export)
    p_export.add_argument("--channel", default=None, help="Override the Slack channel id")
    p_export.add_argument(
        "--limit", type=int, default=100,
        help="Number of recent messages to export (default: 100)",
    )
    p_export.set_defaults(func=cmd_export)

    # --- enrich ---
    p_enrich = subparsers.add_parser(
        "enrich", help="Fetch thread replies for exported cases",
    )
    _add_corpus_arg(p_enrich)
    p_enrich.add_argument("--channel", default=None, help="Override the Slack channel id")
    p_enrich.add_argument(
        "--limit", type=int, default=50,
        help="Maximum cases to enrich, 0 for all (default: 50)",
    )
    p_enrich.add_argument(
        "--force", action="store_true",
        help="Re-fetch cases that already have replies",
    )
    p_enrich.set_defaults(func=cmd_enrich)

    # --- suggest-labels ---
    p_suggest = subparsers.add_parser(
        "suggest-labels", help="Suggest labels from thread replies",
    )
    _add_corpus_arg(p_suggest)
    p_suggest.add_argument(
        "--apply", action="store_true",
        help="Write high-confidence suggestions into unlabeled cases",
    )
    p_suggest.add_argument(
        "--medium", action="store_true",
        help="With --apply, also accept medium-confidence suggestions",
    )
    p_suggest.add_argument(
        "--llm", action="store_true",
        help="Have the model read each thread instead of matching reply patterns",
    )
    p_suggest.add_argument(
        "--limit", type=int, default=10,
        help="With --llm, maximum cases to send, 0 for all (default: 10)",
    )
    p_suggest.add_argument(
        "--min-replies", type=int, default=1,
        help="With --llm, only cases with at least this many replies (default: 1)",
    )
    p_suggest.add_argument("--model", default=None, help="Claude model for --llm (default: sonnet)")
    p_suggest.set_defaults(func=cmd_suggest_labels)

    # --- label ---
    p_label = subparsers.add_parser("label", help="Set one case's expected outcome")
    _add_corpus_arg(p_label)
    p_label.add_argument("case", help="Case id")
    p_label.add_argument(
        "action", choices=_ACTIONS + ["none"],
        help="Expected action, or 'none' to clear the label",
    )
    p_label.add_argument("--team", choices=_TEAMS, default=None, help="Expected team (new_bug only)")
    p_label.add_argument("--confidence", choices=_CONFIDENCES, default=None)
    p_label.add_argument("--notes", default="", help="Free-text labeling note")
    p_label.set_defaults(func=cmd_label)

    # --- merge ---
    p_merge = subparsers.add_parser("merge", help="Merge synthetic cases into the corpus")
    _add_corpus_arg(p_merge)
    p_merge.add_argument(
        "--synthetic", default=None,
        help="Synthetic cases file (default: <data-dir>/synthetic-cases.json)",
    )
    p_merge.set_defaults(func=cmd_merge)

    # --- evaluate ---
    p_eval = subparsers.add_parser("evaluate", help="Score the policy against the corpus")
    _add_corpus_arg(p_eval)
    p_eval.add_argument("--model", default=None, help="Claude model (default: sonnet)")
    p_eval.add_argument(
        "--prompt-version", choices=_VERSIONS, default=PromptVersion.V2.value,
        help="Policy prompt version (default: v2)",
    )
    p_eval.add_argument("--case", default=None, help="Evaluate a single case id")
    p_eval.add_argument(
        "--skip-unlabeled", action="store_true",
        help="Only evaluate labeled cases",
    )
    p_eval.add_argument("--limit", type=int, default=None, help="Evaluate at most N cases")
    p_eval.add_argument(
        "--output-json", default=None,
        help="JSON report path (default: <data-dir>/results/eval-<version>.json)",
    )
    p_eval.add_argument(
        "--output-md", default=None,
        help="Markdown report path (default: JSON path with .md suffix)",
    )
    p_eval.add_argument(
        "--verbose", action="store_true",
        help="Log full prompts and raw model responses",
    )
    p_eval.set_defaults(func=cmd_evaluate)

    # --- compare ---
    p_compare = subparsers.add_parser(
        "compare", help="McNemar significance test between two JSON reports",
    )
    p_compare.add_argument("report_a", help="Baseline report (A)")
    p_compare.add_argument("report_b", help="Candidate report (B)")
    p_compare.set_defaults(func=cmd_compare)

    # --- diff ---
    p_diff = subparsers.add_parser(
        "diff", help="Show cases that changed between two reports "
                     "(default: last two archived)",
    )
    p_diff.add_argument("old", nargs="?", default=None, help="Older JSON report")
    p_diff.add_argument("new", nargs="?", default=None, help="Newer JSON report")
    p_diff.set_defaults(func=cmd_diff)

    # --- archive ---
    p_archive = subparsers.add_parser("archive", help="Archive an evaluation report")
    p_archive.add_argument(
        "--report", default=None,
        help="JSON report to archive (default: <data-dir>/results/eval-v2.json)",
    )
    p_archive.add_argument("--note", default=None, help="Short note added to the file name")
    p_archive.set_defaults(func=cmd_archive)

    # --- feedback ---
    p_feedback = subparsers.add_parser(
        "feedback", help="Accuracy stats and correction patterns",
    )
    p_feedback.add_argument("--since", default=None, help="Only corrections since this ISO date")
    p_feedback.add_argument("--output", default=None, help="Write the report here instead of stdout")
    p_feedback.set_defaults(func=cmd_feedback)

    # --- calibration ---
    p_calibration = subparsers.add_parser(
        "calibration", help="Confidence calibration report",
    )
    p_calibration.add_argument("--output", default=None, help="Write the report here instead of stdout")
    p_calibration.set_defaults(func=cmd_calibration)

    # --- correct ---
    p_correct = subparsers.add_parser("correct", help="Record a correction to a bot decision")
    p_correct.add_argument("ts", help="Slack message timestamp of the triaged report")
    p_correct.add_argument("action", choices=_ACTIONS, help="What the bot should have done")
    p_correct.add_argument("--team", choices=_TEAMS, default=None)
    p_correct.add_argument("--reason", default="", help="Why the bot was wrong")
    p_correct.set_defaults(func=cmd_correct)

    # --- confirm ---
    p_confirm = subparsers.add_parser("confirm", help="Mark a bot decision correct")
    p_confirm.add_argument("ts", help="Slack message timestamp of the triaged report")
    p_confirm.set_defaults(func=cmd_confirm)

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format=(
            "%(message)s" if level == logging.INFO
            else "%(asctime)s %(name)s %(levelname)s %(message)s"
        ),
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
