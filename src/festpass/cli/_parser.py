"""Argparse parser definition for the festpass CLI."""

from __future__ import annotations

import argparse

from festpass.cli._helpers import _default_db
from festpass.defaults import (
    DEFAULT_TEMPLATE_PATH,
    JOB_RETENTION,
    POLL_INTERVAL_SECONDS,
    POLL_MAX_ATTEMPTS,
    QUERY_LIMIT_SMALL,
)
from festpass.models import JobState


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="festpass",
        description="Festival registration and credential generation",
    )
    parser.add_argument("--db", default=_default_db(), help="SQLite database path")
    sub = parser.add_subparsers(dest="command")

    _register_server_commands(sub)
    _register_event_commands(sub)
    _register_registration_commands(sub)
    _register_job_commands(sub)
    _register_template_commands(sub)
    return parser


def _register_server_commands(sub: argparse._SubParsersAction) -> None:
    # -- serve --
    p = sub.add_parser("serve", help="Start HTTP API server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=9876)
    p.add_argument("--secret", default="", help="Signing secret for URLs and session tokens")

    # -- worker --
    p = sub.add_parser("worker", help="Start queue worker process")
    p.add_argument("--once", action="store_true", help="Drain due jobs and exit")


def _register_event_commands(sub: argparse._SubParsersAction) -> None:
    events_p = sub.add_parser("events", help="Event catalog")
    events_sub = events_p.add_subparsers(dest="events_cmd")

    p = events_sub.add_parser("list", help="List catalog events")
    p.add_argument("--category", choices=["solo", "group", "exception"])


def _register_registration_commands(sub: argparse._SubParsersAction) -> None:
    reg_p = sub.add_parser("registration", help="Registration lifecycle")
    reg_sub = reg_p.add_subparsers(dest="registration_cmd")

    p = reg_sub.add_parser("submit", help="Validate, create and enqueue from a JSON file")
    p.add_argument("--file", required=True, help="JSON file with the registration payload")
    p.add_argument("--photo", help="Profile photo to upload for the registrant")
    p.add_argument("--secret", default="", help="Signing secret for the session token")

    p = reg_sub.add_parser("status", help="Show the status view of a registration")
    p.add_argument("registration_id")

    p = reg_sub.add_parser("reprocess", help="Re-run generation for FAILED/PARTIAL")
    p.add_argument("registration_id")

    # -- poll (remote status) --
    p = sub.add_parser("poll", help="Poll a running server until the registration is terminal")
    p.add_argument("registration_id")
    p.add_argument("--token", required=True, help="Session token returned by submit")
    p.add_argument("--url", default="http://127.0.0.1:9876", help="API base URL")
    p.add_argument("--interval", type=float, default=POLL_INTERVAL_SECONDS)
    p.add_argument("--max-attempts", type=int, default=POLL_MAX_ATTEMPTS)


def _register_job_commands(sub: argparse._SubParsersAction) -> None:
    jobs_p = sub.add_parser("jobs", help="Queue inspection")
    jobs_sub = jobs_p.add_subparsers(dest="jobs_cmd")

    p = jobs_sub.add_parser("list", help="List jobs, newest first")
    p.add_argument("--state", choices=[s.value for s in JobState])
    p.add_argument("--registration-id")
    p.add_argument("--limit", type=int, default=QUERY_LIMIT_SMALL)

    p = jobs_sub.add_parser("prune", help="Keep only the newest finished jobs")
    p.add_argument("--keep", type=int, default=JOB_RETENTION)


def _register_template_commands(sub: argparse._SubParsersAction) -> None:
    tpl_p = sub.add_parser("template", help="Credential template")
    tpl_sub = tpl_p.add_subparsers(dest="template_cmd")

    p = tpl_sub.add_parser("verify", help="Check the base template loads")
    p.add_argument("--path", default=None, help=f"Template path (default: {DEFAULT_TEMPLATE_PATH})")
