#!/usr/bin/env python3
"""
Maintenance commands for the renewal billing engine.

    python manage_billing.py init-db
    python manage_billing.py sweep
    python manage_billing.py provision <user_id>
    python manage_billing.py failed-events --limit 20

Uses DB_URL from the environment / .env, like the API service.
"""
import sys
from datetime import datetime, timezone

from renewal_engine.core.database import SessionLocal, handle_database_errors, init_db
from renewal_engine.core.errors import TransientStoreError
from renewal_engine.models import WebhookEvent
from renewal_engine.models.enums import ProcessingStatus
from renewal_engine.services.subscription_state_machine import SubscriptionStateMachine


def _session():
    if SessionLocal is None:
        print("[ERROR] DB_URL is not set.")
        sys.exit(1)
    return SessionLocal()


@handle_database_errors
def run_sweep(now=None):
    """Expire elapsed grace periods and scheduled cancellations, resume due pauses."""
    db = _session()
    try:
        counts = SubscriptionStateMachine(db).sweep(now=now)
        db.commit()
        return counts
    finally:
        db.close()


@handle_database_errors
def provision_user(user_id: str):
    db = _session()
    try:
        sub = SubscriptionStateMachine(db).provision(user_id)
        db.commit()
        return sub.id
    finally:
        db.close()


@handle_database_errors
def list_failed_events(limit: int):
    db = _session()
    try:
        return db.query(WebhookEvent).filter(
            WebhookEvent.processing_status == ProcessingStatus.failed
        ).order_by(WebhookEvent.received_at.desc()).limit(limit).all()
    finally:
        db.close()


def run_command(args, parser):
    if args.command == 'init-db':
        init_db()
        print("[OK] Tables created.")

    elif args.command == 'sweep':
        now = None
        if args.now:
            now = datetime.fromisoformat(args.now)
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
        counts = run_sweep(now)
        print(f"[OK] expired={counts['expired']} resumed={counts['resumed']} skipped={counts['skipped']}")

    elif args.command == 'provision':
        sub_id = provision_user(args.user_id)
        print(f"[OK] Subscription {sub_id} ready for user {args.user_id}.")

    elif args.command == 'failed-events':
        events = list_failed_events(args.limit)
        if not events:
            print("No failed events.")
        for event in events:
            print(f"{event.event_id}  {event.provider.value}  {event.event_type}")
            print(f"  Received: {event.received_at}  Retries: {event.retry_count}")
            print(f"  Error:    {event.error}")
            print()

    else:
        parser.print_help()


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Renewal billing maintenance')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('init-db', help='Create missing tables')

    sweep_parser = subparsers.add_parser('sweep', help='Apply time-driven subscription transitions')
    sweep_parser.add_argument('--now', help='ISO timestamp to sweep at (default: current time)')

    provision_parser = subparsers.add_parser('provision', help='Create the free subscription for a user')
    provision_parser.add_argument('user_id')

    failed_parser = subparsers.add_parser('failed-events', help='List webhook events that failed')
    failed_parser.add_argument('--limit', type=int, default=20)

    try:
        run_command(parser.parse_args(), parser)
    except TransientStoreError as e:
        print(f"[ERROR] {e.message}")
        sys.exit(1)
