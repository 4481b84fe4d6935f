# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: main launcher for PortWarden: builds the core (journal, monitor, scanner, listeners), restores the
listeners saved by the last run, starts the local API and drives the 1 s foreground tick. uses an event
bus to fan-out new-endpoint events to every subscriber (the API's live feed and the terminal alert
printer). on Ctrl+C the live listener set is saved, the listeners are torn down and the app exits.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import argparse  # for parsing command line arguments
import logging  # for suppressing library log messages
import queue  # for event bus message queues
import sys  # for flushing output on shutdown
import threading  # for running the dashboard and alert printer in background threads
import time  # for the tick loop
import webbrowser  # for opening the API in the browser
from typing import Any  # type hint for flexible dictionary values

# load environment variables from .env file before reading config
try:
    from dotenv import load_dotenv

    load_dotenv()  # load .env file if it exists
except ImportError:
    pass  # python-dotenv is optional, but recommended

from agent.network_scan import local_subnet_prefix  # default prefix for --scan
from app.core import Core, build_core  # wires the components together
from dashboard.config import load_config  # env > data/config.json > defaults

# set root logging level high enough so library warnings do not spam the console
logging.basicConfig(level=logging.ERROR)

# silence waitress web server log messages so the console stays clean
logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)
logging.getLogger("waitress").setLevel(logging.CRITICAL)
logging.getLogger("waitress.access").setLevel(logging.CRITICAL)


def _colors() -> dict[str, str]:
    # use ANSI color codes if available (Windows via colorama), otherwise plain text
    try:
        from colorama import init as _colorama_init

        _colorama_init()
        return {
            "cyan": "\x1b[36m",
            "mag": "\x1b[35m",
            "red": "\x1b[31m",
            "yellow": "\x1b[33m",
            "dim": "\x1b[2m",
            "bold": "\x1b[1m",
            "reset": "\x1b[0m",
        }
    except Exception:
        return dict.fromkeys(("cyan", "mag", "red", "yellow", "dim", "bold", "reset"), "")


# --- ASCII banner ---
def print_banner() -> None:
    c = _colors()
    cyan, mag, red, dim, bold, reset = (c[k] for k in ("cyan", "mag", "red", "dim", "bold", "reset"))
    banner = rf"""
{dim}┌────────────────────────────────────────────────────────────┐{reset}
{dim}│{reset}{cyan}{bold}                P  o  r  t  W  a  r  d  e  n{reset}{dim}                │{reset}
{dim}├────────────────────────────────────────────────────────────┤{reset}
{mag}             ┌──────┐  ┌──────┐  ┌──────┐  ┌──────┐{reset}
{mag}             │  22  │  │  80  │  │ 443  │  │ {red}4444{mag} │{reset}
{mag}             └──────┘  └──────┘  └──────┘  └──────┘{reset}
{cyan}          every socket accounted for, every new one flagged       {reset}
{dim}├────────────────────────────────────────────────────────────┤{reset}
{dim}│{reset}  Tip: if running in a terminal, press {cyan}Ctrl+C{reset} to quit.      {dim}│{reset}
{dim}└────────────────────────────────────────────────────────────┘{reset}
"""
    print(banner)


# --- end banner ---

# optional dashboard import
try:
    from dashboard.app import run_dashboard

    HAVE_DASHBOARD = True
except Exception:  # flask missing or broken install; monitoring still works
    HAVE_DASHBOARD = False


# fan-out EventBus
class EventBus:
    """pub/sub fan-out: each subscriber gets every event."""

    def __init__(self) -> None:
        self._subs: list[queue.Queue] = []  # list of subscriber queues
        self._lock = threading.Lock()  # protects the subscribers list

    def publish(self, event: dict[str, Any]) -> None:
        with self._lock:
            subs = list(self._subs)  # copy so we can iterate without holding the lock
        for q in subs:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass  # drop the event rather than block the monitor

    def subscribe(self):
        q: queue.Queue = queue.Queue(maxsize=1000)
        with self._lock:
            self._subs.append(q)

        def _iter():
            while True:
                try:
                    yield q.get(timeout=0.5)
                except queue.Empty:
                    yield None  # keep the iterator alive

        return _iter()


def format_alert(event: dict[str, Any], colors: dict[str, str] | None = None) -> str | None:
    """one terminal line for a new-endpoint event, None for anything else"""
    if event.get("type") != "new_port":
        return None
    c = colors or dict.fromkeys(("red", "yellow", "reset"), "")
    tone = c["red"] if event.get("suspicious") else c["yellow"]
    line = (
        f"{tone}[NEW]{c['reset']} {event.get('protocol', '?')} :{event.get('local_port', '?')} "
        f"{event.get('process_name') or 'Unknown'}"
    )
    if event.get("remote_address"):
        line += f" -> {event['remote_address']}:{event.get('remote_port', 0)}"
    if event.get("suspicious"):
        line += f"  ({event.get('suspicious_reason', '')})"
    return line


def _alert_printer(events, colors: dict[str, str]) -> None:
    for ev in events:
        if ev is None:
            continue
        line = format_alert(ev, colors)
        if line:
            print(line)


def run_scan(core: Core, prefix: str) -> int:
    """one-shot subnet scan printed as a table"""
    c = _colors()
    print(f"Scanning {prefix}0/24 ...")
    try:
        devices = core.scanner.scan_subnet(prefix)
    except ValueError as exc:
        print(f"{c['red']}{exc}{c['reset']}")
        return 2
    for d in devices:
        print(f"{d.address:<16} {d.status.value:<18} {d.hostname:<32} {d.open_ports_display}")
    print(f"{len(devices)} device(s) found")
    return 0


def run_loop(core: Core, tick_sec: float, stop: threading.Event | None = None) -> None:
    """foreground tick: hand the next inventory cycle to the worker and never wait on it"""
    while stop is None or not stop.is_set():
        core.monitor.tick()
        time.sleep(tick_sec)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="PortWarden")
    parser.add_argument(
        "--no-open",
        action="store_true",
        help="do not open the local API in the browser",
    )
    parser.add_argument(
        "--no-dashboard",
        action="store_true",
        help="monitor only, do not start the local API",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="log debug output from the agents",
    )
    parser.add_argument(
        "--scan",
        metavar="PREFIX",
        nargs="?",
        const="",
        default=None,
        help="scan a /24 (e.g. 192.168.1.) and exit; no value means the local subnet",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = load_config()
    c = _colors()
    purple, cyan, reset = c["mag"], c["cyan"], c["reset"]

    bus = EventBus()
    core = build_core(cfg, publish=bus.publish)

    if args.scan is not None:
        code = run_scan(core, args.scan or local_subnet_prefix())
        core.monitor.shutdown()
        return code

    restored = core.restore_listeners()
    core.journal.log_system("PortWarden started")

    threading.Thread(
        target=_alert_printer, args=(bus.subscribe(), c), name="alert-printer", daemon=True
    ).start()

    url = f"http://{cfg.host}:{cfg.port}/api/ping"
    if HAVE_DASHBOARD and not args.no_dashboard:
        threading.Thread(
            target=run_dashboard, kwargs={"core": core, "event_bus": bus}, daemon=True
        ).start()

        if not args.no_open:

            def _open_browser() -> None:
                time.sleep(0.8)  # let the server start listening first
                try:
                    webbrowser.open(url)
                except webbrowser.Error:
                    pass  # user can open it manually

            threading.Thread(target=_open_browser, name="open-browser", daemon=True).start()

    print_banner()
    print(f"{purple}⬩{reset}{cyan}➢ {reset} Welcome to {purple}PortWarden{reset}!")
    if restored:
        print(f"{purple}⬩{reset}{cyan}➢ {reset} Restored {restored} saved listener(s)")
    if HAVE_DASHBOARD and not args.no_dashboard:
        print(f"{purple}⬩{reset}{cyan}➢ {reset} Local API on {url}\n")

    try:
        run_loop(core, cfg.tick_sec)
    except KeyboardInterrupt:
        print(f"\n{purple}⬩{reset}{cyan}➢ {reset} Shutting down {purple}PortWarden{reset}...\n")
        sys.stdout.flush()
    finally:
        core.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
