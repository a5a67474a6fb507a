"""Deposit watcher example.

Runs `chainwatch watch` and prints credited deposits and finished withdrawals
as they arrive on the JSONL event stream.
"""

import json
import signal
import subprocess
import sys


def handle_sigint(signum, frame):
    """Handle SIGINT for graceful shutdown."""
    print("\nShutting down...")
    sys.exit(0)


def main():
    """Stream deposit and withdrawal events for every watched address."""
    signal.signal(signal.SIGINT, handle_sigint)

    print("Watching deposit addresses (heartbeat every 60s)...")
    print("Press Ctrl+C to stop.\n")

    process = subprocess.Popen(
        ["chainwatch", "watch", "--heartbeat", "60"],
        stdout=subprocess.PIPE,
        text=True,
        bufsize=1,
    )

    for line in process.stdout:
        if not line.strip():
            continue

        event = json.loads(line)

        if event["type"] == "watch_start":
            print(f"✓ Watching {event['watches']} address(es) on {', '.join(event['chains'])}")

        elif event["type"] == "deposit":
            print(f"  💰 DEPOSIT {event['amount']} {event['chain']} -> wallet {event['wallet_id']}")
            print(f"     from {event['from']}")
            print(f"     tx   {event['hash']}")

        elif event["type"] == "withdrawal":
            status = event["status"]
            marker = "✓" if status == "CONFIRMED" else "✗"
            print(f"  {marker} WITHDRAWAL {event['request_id']}: {status}")
            if event.get("needs_review"):
                print(f"     needs review: {event['failure_reason']}")

        elif event["type"] == "heartbeat":
            watches = ", ".join(f"{c}={n}" for c, n in event["watches"].items())
            print(f"[{event['timestamp']}] heartbeat #{event['cycle']} ({watches})")

        elif event["type"] == "watch_end":
            print(f"Stopped after {event['cycles_completed']} heartbeat(s)")


if __name__ == "__main__":
    main()
