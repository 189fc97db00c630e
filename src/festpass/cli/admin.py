"""CLI commands: serve, worker, catalog, jobs and template checks."""

from __future__ import annotations

import argparse
import os

from festpass.cli._helpers import _out


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def cmd_events_list(args: argparse.Namespace) -> int:
    from festpass.catalog import list_events
    return _out([d.to_dict() for d in list_events(category=args.category)])


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def cmd_jobs_list(args: argparse.Namespace) -> int:
    from festpass import jobs
    found = jobs.list_jobs(state=args.state, job_key=args.registration_id, limit=args.limit)
    return _out([j.to_dict() for j in found])


def cmd_jobs_prune(args: argparse.Namespace) -> int:
    from festpass import jobs
    return _out({"removed": jobs.prune_finished(args.keep), "keep": args.keep})


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------

def cmd_template_verify(args: argparse.Namespace) -> int:
    from festpass.compositor import load_template
    from festpass.defaults import DEFAULT_TEMPLATE_PATH

    path = args.path or os.environ.get("FESTPASS_TEMPLATE_PATH", DEFAULT_TEMPLATE_PATH)
    template = load_template(path)
    width, height = template.size
    return _out({"path": template.path, "width": width, "height": height, "ok": True})


# ---------------------------------------------------------------------------
# Serve / Worker
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> int:
    from festpass import server
    server.serve(args.db, host=args.host, port=args.port, signing_secret=args.secret)
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    from festpass.worker import QueueWorker, WorkerConfig, run_worker
    if not args.once:
        run_worker(args.db)
        return 0
    config = WorkerConfig()
    config.db_path = args.db
    worker = QueueWorker(config)
    processed = worker.run_once()
    return _out({"processed": processed, "cycles": worker.cycles})
