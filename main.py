"""
Target Sync Agent: Entry Point

Usage:
    python main.py                              # run the agent for config's sync_mode
    python main.py --config path/to/config.yaml
    python main.py --mark id:42 --name Foo      # host: add a target and push it
    python main.py --unmark id:42               # host: remove a target and push
    python main.py --send start|start-continuous|stop
    python main.py --status                     # print the server snapshot summary
"""

import argparse
import json
import signal
import sys
import threading

from targetsync.agent import HostAgent, SlaveAgent, build_agent
from targetsync.sync_client import SyncError
from targetsync.utils import load_config, setup_logging

# Seconds between checks of the local target file for edits made by other processes
LOCAL_WATCH_INTERVAL = 1.0


def _run_host_loop(agent: HostAgent, stop_event: threading.Event) -> None:
    """Push whenever the local target list changes (edits may come from another CLI call)."""
    last = json.dumps(agent.local.load_targets(), sort_keys=True)
    while not stop_event.wait(LOCAL_WATCH_INTERVAL):
        current_targets = agent.local.load_targets()
        current = json.dumps(current_targets, sort_keys=True)
        if current != last:
            last = current
            agent.queue_push(current_targets)


def _one_shot(args, agent, logger) -> int:
    """Handle --mark/--unmark/--send/--status. Returns the process exit code."""
    if args.status:
        try:
            snapshot = agent.client.get_state()
        except SyncError as e:
            logger.error(f"Status request failed: {e.reason}")
            return 1
        summary = snapshot.get("activitySummary") or {}
        lock = snapshot.get("lock")
        control = snapshot.get("control") or {}
        logger.info(f"Targets:      {len(snapshot.get('targets') or {})} (updatedAt={snapshot.get('updatedAt')})")
        logger.info(f"Control:      {control.get('action', '-')} {control.get('commandId', '')}")
        logger.info(f"Lock:         {lock.get('ownerLabel') if lock else 'free'}")
        logger.info(f"Activity:     {len(summary.get('players') or {})} subject(s), "
                    f"{summary.get('bucketCount', 0)} bucket(s)")
        return 0

    if not isinstance(agent, HostAgent):
        logger.error("--mark/--unmark/--send require sync_mode: host")
        return 2

    if args.mark or args.unmark:
        if agent.config.get("edit_lock", False):
            result = agent.acquire_edit_lock(force=bool(agent.config.get("force_lock", False)))
            if not result.get("ok"):
                return 1
        try:
            if args.mark:
                agent.mark_target(args.mark, args.name or "")
            else:
                agent.unmark_target(args.unmark)
            agent.flush_push()
            pushed = agent.status.online
        finally:
            agent.stop()
        return 0 if pushed else 1

    if args.send == "stop":
        return 0 if agent.send_stop() else 1
    command = agent.send_start(continuous=(args.send == "start-continuous"))
    return 0 if command else 1


def main():
    # ── Parse arguments ──────────────────────────────────────────────
    parser = argparse.ArgumentParser(
        description="Relay targets, remote commands and activity through a sync server"
    )
    parser.add_argument("--config", "-c", default=None,
                        help="Path to config.yaml (default: ./config.yaml)")
    parser.add_argument("--mark", metavar="KEY", help="Host: add target KEY (id:<n> or name:<name>)")
    parser.add_argument("--name", default="", help="Display name for --mark")
    parser.add_argument("--unmark", metavar="KEY", help="Host: remove target KEY")
    parser.add_argument("--send", choices=["start", "start-continuous", "stop"],
                        help="Host: send a remote control command to slaves")
    parser.add_argument("--status", action="store_true", help="Print the server snapshot summary")
    args = parser.parse_args()

    # ── Setup ────────────────────────────────────────────────────────
    logger = setup_logging()
    config = load_config(args.config)

    logger.info("Configuration loaded:")
    logger.info(f"  Sync mode:        {config['sync_mode']}")
    logger.info(f"  Endpoint:         {config['sync_endpoint'] or '(none)'}")
    logger.info(f"  Owner label:      {config['owner_label']}")
    logger.info(f"  Local state file: {config['local_state_file']}")

    agent = build_agent(config)

    if args.status or args.mark or args.unmark or args.send:
        if not agent.enabled:
            logger.error("Sync is off (sync_mode: off), nothing to do")
            sys.exit(2)
        sys.exit(_one_shot(args, agent, logger))

    if not agent.enabled:
        logger.info("Sync is off, exiting")
        return

    stop_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())

    agent.start()
    try:
        if isinstance(agent, HostAgent):
            _run_host_loop(agent, stop_event)
        elif isinstance(agent, SlaveAgent):
            while not stop_event.wait(30):
                logger.info(f"{agent.describe()} | {agent.scan.describe()} | "
                            f"{len(agent.buffer)} observation(s) queued")
    finally:
        logger.info("Shutting down...")
        agent.stop()


if __name__ == "__main__":
    main()
