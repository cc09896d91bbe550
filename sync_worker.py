#!/usr/bin/env python3
"""
POS Sync Worker

Headless runner and operator tool for the local sale queue.

Commands:
  run               keep syncing on the configured interval (default)
  once              run a single sync pass and exit
  list [--all]      print pending (or all) queue items
  delete ID         drop a queue item
  resync ID         reset a stuck item's attempts and sync immediately
  status            print queue / sync status as JSON

Env vars: see config.py (SUPABASE_URL, SUPABASE_ANON_KEY, POS_DATA_DIR,
POS_SYNC_INTERVAL, POS_MAX_SYNC_ATTEMPTS, ...).
"""
import argparse
import json
import logging
import signal
import sys
import threading

from config import configure_logging, load_settings
from runtime import PosRuntime


def _print_items(runtime: PosRuntime, include_synced: bool) -> None:
    items = runtime.queue.get_queue(only_unsynced=not include_synced)
    if not items:
        print('Queue is empty')
        return
    for item in items:
        payload = item.get('payload') or {}
        flag = 'TERMINAL' if runtime.engine.is_terminal(item) else ('synced' if item.get('synced') else 'pending')
        label = payload.get('sale_number') or payload.get('product_id') or '-'
        print(f"{item['id']}  {item.get('type'):<22} {label:<16} {item.get('created_at')}  "
              f"attempts={item.get('attempts', 0)}  {flag}  {item.get('last_error') or ''}")


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description='POS offline queue sync worker')
    ap.add_argument('--env-file', help='path to a .env file')
    sub = ap.add_subparsers(dest='command')
    sub.add_parser('run')
    sub.add_parser('once')
    p_list = sub.add_parser('list')
    p_list.add_argument('--all', action='store_true', help='include synced items not yet removed')
    p_delete = sub.add_parser('delete')
    p_delete.add_argument('item_id')
    p_resync = sub.add_parser('resync')
    p_resync.add_argument('item_id')
    sub.add_parser('status')
    args = ap.parse_args(argv)

    settings = load_settings(args.env_file)
    configure_logging(settings)
    runtime = PosRuntime(settings)
    command = args.command or 'run'

    if command == 'list':
        _print_items(runtime, args.all)
        return 0
    if command == 'status':
        runtime.network.check_now()
        print(json.dumps(runtime.engine.status(), indent=2))
        return 0
    if command == 'delete':
        if not runtime.engine.delete_item(args.item_id):
            print(f"No queue item {args.item_id}", file=sys.stderr)
            return 1
        print(f"Deleted {args.item_id}")
        return 0
    if command == 'resync':
        if not runtime.engine.resync_item(args.item_id):
            print(f"No queue item {args.item_id}", file=sys.stderr)
            return 1
        runtime.network.check_now()
        print(json.dumps(runtime.engine.sync_now()))
        return 0
    if command == 'once':
        runtime.network.check_now()
        result = runtime.engine.run_once()
        print(json.dumps(result))
        return 0 if result.get('status') in ('ok', 'offline') else 1

    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logging.info('Signal %s received; stopping', signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    logging.info('Sync worker watching %s (store=%s)', settings.data_dir, settings.store_id)
    runtime.network.check_now()
    runtime.network.start()
    runtime.engine.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        runtime.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
