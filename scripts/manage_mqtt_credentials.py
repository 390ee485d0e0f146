#!/usr/bin/env python3
"""Provision MQTT broker credentials and sync the mosquitto configuration."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from mqtt_provisioning import database, service  # noqa: E402
from mqtt_provisioning.config import settings  # noqa: E402
from mqtt_provisioning.errors import ProvisioningError  # noqa: E402
from mqtt_provisioning.models import AclPermission  # noqa: E402
from mqtt_provisioning.reload import build_reloader  # noqa: E402
from mqtt_provisioning.sync import build_syncer  # noqa: E402


def _print_issued(issued: service.ProvisionedCredential) -> None:
    print("--- MQTT credentials ---")
    print(f"Device:   {issued.device_id}")
    print(f"Username: {issued.mqtt_username}")
    print(f"Password: {issued.plaintext_password}")
    print("Store the password now; it cannot be shown again.")


def _command_provision(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        issued = service.create_credential(
            session,
            args.device_id,
            username=args.username,
            password=args.password,
            auto_generate=args.auto,
        )
    _print_issued(issued)
    return 0


def _command_regenerate(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        issued = service.regenerate_password(session, args.device_id)
    _print_issued(issued)
    return 0


def _command_set_enabled(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        credential = service.set_enabled(session, args.device_id, args.enabled)
        state = "enabled" if credential.enabled else "disabled"
        print(f"{credential.mqtt_username} is {state}")
    return 0


def _command_delete(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        deleted = service.delete_credential(session, args.device_id)
    if not deleted:
        print(f"No MQTT credentials for device {args.device_id}")
        return 0
    print(f"Deleted MQTT credentials for device {args.device_id}")
    return 0


def _command_add_rule(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        rule = service.add_rule(
            session, args.device_id, args.topic_pattern, args.permission
        )
        print(f"Rule {rule.id}: topic {rule.permission} {rule.topic_pattern}")
    return 0


def _command_list(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        summaries = service.list_credentials(session, owner_id=args.owner)
        if not summaries:
            print("No MQTT credentials provisioned")
            return 0
        for summary in summaries:
            state = "enabled" if summary.enabled else "disabled"
            name = summary.device_name or "unknown device"
            print(f"{summary.device_id}\t{summary.mqtt_username}\t{state}\t{name}")
            if args.rules:
                for rule in service.list_rules(session, summary.device_id):
                    print(f"  [{rule.id}] topic {rule.permission} {rule.topic_pattern}")
    return 0


def _command_sync(args: argparse.Namespace) -> int:
    reloader = build_reloader(args.reload_method) if args.reload_method else None
    syncer = build_syncer(reloader)
    with database.SessionLocal() as session:
        result = service.trigger_sync(session, syncer=syncer)
    stream = sys.stdout if result.success else sys.stderr
    print(result.message, file=stream)
    return 0 if result.success else 1


def _command_status(args: argparse.Namespace) -> int:
    with database.SessionLocal() as session:
        current = service.get_sync_status(session)
        last_sync = current.last_sync_at.isoformat() if current.last_sync_at else "never"
        print(f"Pending changes: {current.pending_changes}")
        print(f"Last sync:       {last_sync}")
        print(f"Status:          {current.last_sync_status}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Override the provisioning database URL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser(
        "provision", help="Create broker credentials for a device",
    )
    provision.add_argument("device_id")
    provision.add_argument("--username", help="Explicit MQTT username")
    provision.add_argument("--password", help="Explicit MQTT password")
    provision.add_argument(
        "--auto",
        action="store_true",
        help="Generate both username and password",
    )
    provision.set_defaults(func=_command_provision)

    regenerate = subparsers.add_parser(
        "regenerate", help="Issue a new random password for a device",
    )
    regenerate.add_argument("device_id")
    regenerate.set_defaults(func=_command_regenerate)

    enable = subparsers.add_parser("enable", help="Re-enable a device's credentials")
    enable.add_argument("device_id")
    enable.set_defaults(func=_command_set_enabled, enabled=True)

    disable = subparsers.add_parser(
        "disable", help="Disable a device's credentials without deleting them",
    )
    disable.add_argument("device_id")
    disable.set_defaults(func=_command_set_enabled, enabled=False)

    delete = subparsers.add_parser(
        "delete", help="Delete a device's credentials and access rules",
    )
    delete.add_argument("device_id")
    delete.set_defaults(func=_command_delete)

    add_rule = subparsers.add_parser("add-rule", help="Grant a device a topic pattern")
    add_rule.add_argument("device_id")
    add_rule.add_argument("topic_pattern")
    add_rule.add_argument(
        "--permission",
        default=AclPermission.READWRITE.value,
        choices=[p.value for p in AclPermission],
        help="Access granted on the pattern (default: %(default)s)",
    )
    add_rule.set_defaults(func=_command_add_rule)

    list_cmd = subparsers.add_parser("list", help="List provisioned credentials")
    list_cmd.add_argument("--owner", help="Only show devices owned by this user id")
    list_cmd.add_argument(
        "--rules", action="store_true", help="Include each device's access rules",
    )
    list_cmd.set_defaults(func=_command_list)

    sync = subparsers.add_parser(
        "sync", help="Write the password and ACL files and reload the broker",
    )
    sync.add_argument(
        "--reload-method",
        choices=["docker", "pidfile", "none"],
        help="Override MOSQUITTO_RELOAD_METHOD for this run",
    )
    sync.set_defaults(func=_command_sync)

    status = subparsers.add_parser("status", help="Show pending changes and last sync")
    status.set_defaults(func=_command_status)

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.database_url:
        database.reset_session_factory(args.database_url)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    service.init_storage()
    try:
        return handler(args)
    except ProvisioningError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
