"""CLI for festpass: grouped subcommands.

Commands:
  festpass serve
  festpass worker [--once]
  festpass events list
  festpass registration {submit, status, reprocess}
  festpass poll
  festpass jobs {list, prune}
  festpass template verify
"""

from __future__ import annotations

import sys

from festpass.cli._helpers import _out
from festpass.cli._parser import build_parser
from festpass.cli.admin import (
    cmd_events_list,
    cmd_jobs_list,
    cmd_jobs_prune,
    cmd_serve,
    cmd_template_verify,
    cmd_worker,
)
from festpass.cli.registrations import (
    cmd_poll,
    cmd_registration_reprocess,
    cmd_registration_status,
    cmd_registration_submit,
)
from festpass.errors import FestpassError


# ===================================================================
# Dispatch
# ===================================================================

_DISPATCH = {
    ("serve", None): cmd_serve,
    ("worker", None): cmd_worker,
    ("events", "list"): cmd_events_list,
    ("registration", "submit"): cmd_registration_submit,
    ("registration", "status"): cmd_registration_status,
    ("registration", "reprocess"): cmd_registration_reprocess,
    ("poll", None): cmd_poll,
    ("jobs", "list"): cmd_jobs_list,
    ("jobs", "prune"): cmd_jobs_prune,
    ("template", "verify"): cmd_template_verify,
}

# Map subcmd attr names to the dispatch key
_SUBCMD_ATTR = {
    "events": "events_cmd",
    "registration": "registration_cmd",
    "jobs": "jobs_cmd",
    "template": "template_cmd",
}

# Commands that talk to a remote server or need no store
_NO_STORE = {"poll", "events", "template", "serve"}


def main(argv: list[str] | None = None) -> int:
    from festpass import event_log as el

    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if not args.command:
        parser.print_help()
        return 1

    # Resolve dispatch key
    subcmd_attr = _SUBCMD_ATTR.get(args.command)
    subcmd = getattr(args, subcmd_attr, None) if subcmd_attr else None
    handler = _DISPATCH.get((args.command, subcmd))
    if handler is None:
        parser.print_help()
        return 1

    if args.command not in _NO_STORE:
        el.init(args.db)
    try:
        return handler(args)
    except FestpassError as exc:
        return _out(exc.to_dict())
