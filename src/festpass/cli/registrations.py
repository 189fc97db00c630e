"""CLI commands: registration submit, status, reprocess and remote poll."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from festpass.cli._helpers import _out


def cmd_registration_submit(args: argparse.Namespace) -> int:
    from festpass import registrations
    from festpass.adapters.object_storage import LocalObjectStorage, resolve_signing_secret
    from festpass.defaults import PHOTO_BUCKET
    from festpass.models import new_id

    payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
    secret = resolve_signing_secret(args.secret or None)
    storage = LocalObjectStorage.from_env(secret)
    if args.photo:
        key = f"upload_{new_id()}"
        storage.put(PHOTO_BUCKET, key, Path(args.photo).read_bytes())
        payload["photo_key"] = key
    submission = registrations.submit(payload, secret=secret)
    return _out(submission.to_dict())


def cmd_registration_status(args: argparse.Namespace) -> int:
    from festpass.adapters.object_storage import LocalObjectStorage
    from festpass.status import build_view

    view = build_view(args.registration_id, LocalObjectStorage.from_env())
    return _out(view.to_dict())


def cmd_registration_reprocess(args: argparse.Namespace) -> int:
    from festpass import registrations

    handle = registrations.reprocess(args.registration_id)
    return _out({
        "registration_id": args.registration_id,
        "status": registrations.get(args.registration_id).status.value,
        "job": handle.to_dict() if handle else None,
    })


def cmd_poll(args: argparse.Namespace) -> int:
    from festpass.client import StatusPoller

    poller = StatusPoller(args.url, interval=args.interval, max_attempts=args.max_attempts)
    try:
        result = poller.poll(args.registration_id, args.token)
    finally:
        poller.close()
    return _out(result.to_dict())
