#!/usr/bin/env python3
"""storyforge CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from storyforge.commands import archive as cmd_archive_module
from storyforge.commands import clean as cmd_clean_module
from storyforge.commands import history as cmd_history_module
from storyforge.commands import pr_review as cmd_pr_review_module
from storyforge.commands import run as cmd_run_module
from storyforge.commands import status as cmd_status_module
from storyforge.lib.config import load_config


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )


def get_workdir(args) -> Path:
    return Path(args.workdir).resolve() if args.workdir else Path.cwd()


def get_config(args, workdir: Path):
    """Load config.yaml and apply command-line overrides."""
    config = load_config(workdir)
    return config.with_overrides(
        unrestricted=True if getattr(args, "unrestricted", False) else None,
        review_max=getattr(args, "review_max", None),
        pull_request=False if getattr(args, "no_pr", False) else None,
        timeout_seconds=getattr(args, "timeout", None),
    )


def _dispatch(handler):
    def run(args):
        workdir = get_workdir(args)
        return handler(args, workdir, get_config(args, workdir))
    return run


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--unrestricted', action='store_true',
                        help='Skip all agent permission checks')
    parser.add_argument('--review-max', type=int, dest='review_max',
                        help='Maximum review iterations per story (1-10)')
    parser.add_argument('--no-pr', action='store_true', dest='no_pr',
                        help='Stop after the last commit without pushing or opening a PR')
    parser.add_argument('--timeout', type=int,
                        help='Per-invocation agent timeout in seconds')


def main(argv=None):
    parser = argparse.ArgumentParser(prog='storyforge', description='Story-by-story agent orchestrator')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--workdir', '-C', help='Working copy to run in (default: current directory)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # storyforge run
    p_run = subparsers.add_parser('run', help='Start a run from a JSON or markdown spec')
    p_run.add_argument('spec', help='Path to the spec file')
    _add_run_options(p_run)
    p_run.set_defaults(func=_dispatch(cmd_run_module.cmd_run))

    # storyforge resume
    p_resume = subparsers.add_parser('resume', help='Resume the stored run')
    _add_run_options(p_resume)
    p_resume.set_defaults(func=_dispatch(cmd_run_module.cmd_resume))

    # storyforge pr-review
    p_pr_review = subparsers.add_parser('pr-review', help='Fix unresolved review comments on an open PR')
    p_pr_review.add_argument('--pr', type=int, help="PR number (default: the current branch's PR)")
    p_pr_review.add_argument('--spec', help='Spec file giving the agent project context')
    p_pr_review.add_argument('--unrestricted', action='store_true',
                             help='Skip all agent permission checks')
    p_pr_review.add_argument('--timeout', type=int,
                             help='Agent timeout in seconds')
    p_pr_review.set_defaults(func=_dispatch(cmd_pr_review_module.cmd_pr_review))

    # storyforge status
    p_status = subparsers.add_parser('status', help='Show the current run')
    p_status.set_defaults(func=_dispatch(cmd_status_module.cmd_status))

    # storyforge history
    p_history = subparsers.add_parser('history', help='List finished runs')
    p_history.add_argument('--limit', '-n', type=int, help='Show only the last N runs')
    p_history.set_defaults(func=_dispatch(cmd_history_module.cmd_history))

    # storyforge archive
    p_archive = subparsers.add_parser('archive', help='List archived runs')
    p_archive.set_defaults(func=_dispatch(cmd_archive_module.cmd_archive))

    # storyforge clean
    p_clean = subparsers.add_parser('clean', help='Discard a stored run that is not running')
    p_clean.add_argument('--yes', '-y', action='store_true', help='Confirm removal')
    p_clean.set_defaults(func=_dispatch(cmd_clean_module.cmd_clean))

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
