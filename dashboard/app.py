# ruff: noqa: E501
"""
goal: local flask API for PortWarden. exposes the live connection inventory, the event journal, the
      LAN scanner, listener management and the on-demand enrichment probes as JSON endpoints. runs
      entirely on the local machine (127.0.0.1 by default) with no authentication layer.

what this app is responsible for:
- live feed: subscribes to the event bus (new endpoints published by the monitor) and drains it into a
  bounded ring buffer the frontend can poll
- inventory: returns the latest snapshot the monitor produced, already enriched and sorted
- journal: lists, filters (critical only), acknowledges, clears and exports the event journal
- scanning and probes: runs subnet/device scans, service fingerprinting and external reachability
  checks on request threads
- listeners: starts and stops tool-owned listeners and reports the per-step outcome

how data flows through the app:
1. the monitor publishes {"source": "network", "type": "new_port", ...} events to the bus
2. /api/ping and /api/live drain the bus into LIVE (bounded deque)
3. everything else reads straight from the Core object the launcher built
"""

from __future__ import annotations

# --- standard library ---
import csv
import io
import json
import threading
import time
from collections import deque
from collections.abc import Iterator
from typing import Any

# load environment variables from .env file before reading config
try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass  # python-dotenv is optional, but required for .env support

# --- third-party ---
from flask import Flask, jsonify, make_response, request, send_file

# --- local/project imports ---
from agent.event_journal import HEADER
from agent.firewall import FirewallManager
from agent.models import ConnectionRecord, Protocol
from agent.monitor import ProcessKillError, kill_process
from agent.network_scan import local_subnet_prefix
from app.core import Core
from dashboard.config import Config, load_config

# single waitress optional block (we keep only this one, after all imports)
try:
    from waitress import serve as _serve  # type: ignore[import-untyped]

    HAVE_WAITRESS = True
except Exception:
    HAVE_WAITRESS = False
    _serve = None  # type: ignore

CFG: Config = load_config()

LIVE_MAX = 1000
DRAIN_LIMIT_PER_CALL = 300
DRAIN_DEADLINE_SEC = 0.25

# live ring buffer for bus events; newest on the right
LIVE: deque[dict[str, Any]] = deque(maxlen=LIVE_MAX)
_DRAIN_LOCK = threading.Lock()


def _bus_iterator(bus: Any) -> Iterator[dict[str, Any] | None]:
    """wrap bus.subscribe() so a missing bus just yields nothing"""
    if bus is None or not hasattr(bus, "subscribe"):
        return iter(())
    return bus.subscribe()


def _truthy(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _port_arg(data: dict[str, Any]) -> int | None:
    try:
        port = int(data.get("port"))
    except (TypeError, ValueError):
        return None
    return port if 0 < port <= 65535 else None


def _matches(record: ConnectionRecord, query: str) -> bool:
    """search box: port, process name, remote address or remote hostname"""
    return (
        query in str(record.local_port)
        or query in record.process_name.lower()
        or query in record.remote_address.lower()
        or query in record.remote_hostname.lower()
    )


def build_app(core: Core, event_bus=None) -> Flask:
    app = Flask(__name__)

    _iter = _bus_iterator(event_bus)

    # pull pending bus events into LIVE, bounded by count and time
    def drain_into_buffer() -> int:
        with _DRAIN_LOCK:
            drained = 0
            deadline = time.time() + DRAIN_DEADLINE_SEC
            while time.time() < deadline and drained < DRAIN_LIMIT_PER_CALL:
                try:
                    ev = next(_iter)
                except StopIteration:
                    break
                if ev is None:
                    break  # bus is idle
                ev.setdefault("ts", time.time())
                LIVE.append(ev)
                drained += 1
            return drained

    @app.get("/api/ping")
    def ping():
        """lightweight drain trigger so the live feed keeps moving"""
        n = drain_into_buffer()
        return jsonify(
            {
                "ok": True,
                "drained": n,
                "live": len(LIVE),
                "connections": len(core.monitor.latest),
                "critical_unseen": core.journal.has_critical_unseen,
                "admin": FirewallManager.is_admin(),
            }
        )

    @app.get("/api/live")
    def live():
        drain_into_buffer()
        return jsonify(list(LIVE))

    # --- inventory ---

    @app.get("/api/connections")
    def connections():
        records = core.monitor.latest
        proto = (request.args.get("protocol") or "").upper()
        if proto in ("TCP", "UDP"):
            records = [r for r in records if r.protocol.value == proto]
        if _truthy(request.args.get("suspicious")):
            records = [r for r in records if r.suspicious]
        query = (request.args.get("q") or "").strip().lower()
        if query:
            records = [r for r in records if _matches(r, query)]
        return jsonify(
            {
                "updated": core.monitor.latest_at,
                "count": len(records),
                "connections": [r.to_dict() for r in records],
            }
        )

    @app.post("/api/connections/kill")
    def connections_kill():
        """close a port by killing its owning process; pid/protocol narrow the match"""
        data = _body()
        port = _port_arg(data)
        if port is None:
            return jsonify({"error": "Invalid port number."}), 400
        proto = str(data.get("protocol") or "").upper()
        pid = data.get("pid")
        matches = [
            r
            for r in core.monitor.latest
            if r.local_port == port
            and (not proto or r.protocol.value == proto)
            and (pid is None or str(r.pid) == str(pid))
        ]
        if not matches:
            return jsonify({"error": f"No connection on port {port}"}), 404
        rec = matches[0]
        try:
            kill_process(rec.pid)
        except ProcessKillError as exc:
            return jsonify({"error": str(exc)}), 409
        entry = core.journal.log_process_killed(port, rec.protocol.value, rec.process_name)
        return jsonify({"ok": True, "pid": rec.pid, "message": entry.details})

    # --- journal ---

    @app.get("/api/events")
    def events():
        critical_only = _truthy(request.args.get("critical"))
        entries = core.journal.entries(critical_only=critical_only)
        return jsonify(
            {
                "critical_unseen": core.journal.has_critical_unseen,
                "events": [e.to_dict() for e in entries],
            }
        )

    @app.post("/api/events/seen")
    def events_seen():
        core.journal.mark_seen()
        return jsonify({"ok": True})

    @app.post("/api/events/clear")
    def events_clear():
        core.journal.clear()
        return jsonify({"ok": True})

    @app.get("/api/export")
    def export_events():
        """
        export the journal.
        format=csv (default) | json | xlsx, critical=1 limits to critical events
        """
        fmt = (request.args.get("format") or "csv").lower()
        rows = [e.to_dict() for e in core.journal.entries(critical_only=_truthy(request.args.get("critical")))]
        cols = [
            "timestamp",
            "event_type",
            "category",
            "port",
            "protocol",
            "application",
            "details",
            "is_critical",
        ]

        if fmt == "json":
            resp = make_response(json.dumps(rows, ensure_ascii=False, indent=2))
            resp.headers["Content-Type"] = "application/json"
            resp.headers["Content-Disposition"] = 'attachment; filename="portwarden_events.json"'
            return resp

        if fmt == "xlsx":
            try:
                from openpyxl import Workbook
                from openpyxl.utils import get_column_letter
            except ImportError:
                return (
                    jsonify(
                        {
                            "error": "xlsx export requires `openpyxl`",
                            "hint": "pip install openpyxl or use format=csv",
                        }
                    ),
                    400,
                )

            wb = Workbook()
            ws = wb.active
            ws.title = "PortWarden"
            ws.append(HEADER)
            for r in rows:
                ws.append([r.get(c, "") for c in cols])

            for i, c in enumerate(HEADER, 1):
                max_len = len(c)
                for row in ws.iter_rows(min_row=2, min_col=i, max_col=i):
                    v = row[0].value
                    if v is None:
                        continue
                    max_len = max(max_len, len(str(v)))
                ws.column_dimensions[get_column_letter(i)].width = max(
                    10, min(60, int(max_len * 1.1 + 2))
                )

            bio = io.BytesIO()
            wb.save(bio)
            bio.seek(0)
            return send_file(
                bio,
                as_attachment=True,
                download_name="portwarden_events.xlsx",
                mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            )

        # default: CSV with the journal's own header (Excel-friendly BOM + CRLF)
        buf = io.StringIO(newline="")
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
        writer.writerow(HEADER)
        for r in rows:
            writer.writerow([r.get(c, "") for c in cols])
        out_bytes = ("\ufeff" + buf.getvalue()).encode("utf-8")
        resp = make_response(out_bytes)
        resp.headers["Content-Type"] = "text/csv; charset=utf-8"
        resp.headers["Content-Disposition"] = 'attachment; filename="portwarden_events.csv"'
        return resp

    # --- listeners ---

    @app.get("/api/listeners")
    def listeners_get():
        return jsonify([l.to_dict() for l in core.listeners.active()])

    @app.post("/api/listeners")
    def listeners_post():
        data = _body()
        port = _port_arg(data)
        if port is None:
            return jsonify({"error": "Invalid port number."}), 400
        proto = str(data.get("protocol") or "TCP").upper()
        forward_only = _truthy(data.get("forward_only"))
        opts = {
            "add_firewall_rule": _truthy(data.get("add_firewall_rule")) or forward_only,
            "use_upnp": _truthy(data.get("use_upnp")) or forward_only,
            "forward_only": forward_only,
        }
        if proto in ("BOTH", "TCP&UDP", "TCP & UDP"):
            results = core.listeners.start_both(port, **opts)
        else:
            try:
                Protocol.parse(proto)
            except ValueError:
                return jsonify({"error": f"unknown protocol: {proto}"}), 400
            results = [core.listeners.start(port, proto, **opts)]
        status = 200 if any(r.ok for r in results) else 409
        return jsonify({"results": [r.to_dict() for r in results]}), status

    @app.delete("/api/listeners")
    def listeners_delete():
        data = _body() or dict(request.args)
        port = _port_arg(data)
        if port is None:
            return jsonify({"error": "Invalid port number."}), 400
        try:
            proto = Protocol.parse(data.get("protocol") or "TCP")
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        listener = core.listeners.get(port, proto)
        if listener is None:
            return jsonify({"error": f"Port {port}/{proto.value} is not active"}), 404
        core.listeners.stop(listener)
        return jsonify({"ok": True})

    # --- scanning ---

    @app.post("/api/scan/subnet")
    def scan_subnet():
        data = _body()
        prefix = str(data.get("prefix") or local_subnet_prefix())
        try:
            devices = core.scanner.scan_subnet(prefix)
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"prefix": prefix, "devices": [d.to_dict() for d in devices]})

    @app.post("/api/scan/device")
    def scan_device():
        data = _body()
        address = str(data.get("address") or "").strip()
        if not address:
            return jsonify({"error": "address is required"}), 400
        device = core.scanner.scan_single_device(address, full_scan=_truthy(data.get("full_scan", True)))
        return jsonify({"address": address, "device": device.to_dict() if device else None})

    # --- on-demand enrichment ---

    def _records_on(port: int) -> list:
        return [r for r in core.monitor.latest if r.local_port == port]

    @app.post("/api/fingerprint")
    def fingerprint():
        data = _body()
        port = _port_arg(data)
        if port is None:
            return jsonify({"error": "Invalid port number."}), 400
        host = str(data.get("host") or "127.0.0.1")
        matches = _records_on(port)
        if matches:
            service = core.fingerprinter.identify_record(matches[0], host=host)
        else:
            service = core.fingerprinter.identify(host, port)
        return jsonify({"port": port, "host": host, "service": service})

    @app.post("/api/external")
    def external():
        data = _body()
        port = _port_arg(data)
        if port is None:
            return jsonify({"error": "Invalid port number."}), 400
        matches = _records_on(port)
        if matches:
            status, message = core.reachability.check_record(matches[0])
            is_open = status == "OPEN"
        else:
            is_open, message = core.reachability.check_port(port)
        return jsonify({"port": port, "open": is_open, "message": message})

    @app.get("/api/public-ip")
    def public_ip():
        return jsonify(
            {
                "public_ip": core.reachability.public_ip(),
                "nat": core.reachability.nat_status(),
            }
        )

    return app


def run_dashboard(core: Core, event_bus=None) -> None:
    app = build_app(core, event_bus)
    if HAVE_WAITRESS:
        try:
            _serve(app, host=CFG.host, port=CFG.port)
        except (SystemExit, KeyboardInterrupt):
            pass  # expected when shutting down
    else:
        try:
            app.run(host=CFG.host, port=CFG.port, debug=False)
        except (SystemExit, KeyboardInterrupt):
            pass  # expected when shutting down
