"""
goal: creates and tears down tool-owned listeners. a start binds a real socket (unless forward-only),
then optionally opens a firewall rule and asks the router for a port mapping. each step reports
SUCCEEDED, FAILED or SKIPPED; a failed optional step never undoes the earlier ones. only a bind
failure aborts a start. stop runs in reverse and swallows every failure.
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import json  # for the saved-listener file
import logging  # for recording swallowed teardown failures
import os  # for creating the data directory
import socket  # for binding the listeners
import threading  # for guarding the registry
from collections.abc import Iterable  # type hint for descriptor lists
from typing import Any  # type hint for flexible dict values

from agent.event_journal import EventJournal
from agent.firewall import FirewallError, FirewallManager, rule_name_for
from agent.models import (
    ActiveListener,
    ListenerDescriptor,
    ListenerStartResult,
    Protocol,
    StepResult,
)
from agent.upnp import UpnpError, UpnpManager

log = logging.getLogger(__name__)

BIND_ADDRESS = "0.0.0.0"
LISTEN_BACKLOG = 5


def _bind(port: int, protocol: Protocol) -> socket.socket:
    kind = socket.SOCK_STREAM if protocol is Protocol.TCP else socket.SOCK_DGRAM
    sock = socket.socket(socket.AF_INET, kind)
    try:
        sock.bind((BIND_ADDRESS, port))
        if protocol is Protocol.TCP:
            sock.listen(LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


class ListenerLifecycleManager:
    def __init__(
        self,
        journal: EventJournal,
        firewall: FirewallManager | None = None,
        upnp: UpnpManager | None = None,
        binder=_bind,
    ) -> None:
        self.journal = journal
        self.firewall = firewall or FirewallManager()
        self.upnp = upnp or UpnpManager()
        self._bind = binder
        self._active: dict[tuple[int, Protocol], ActiveListener] = {}
        self._lock = threading.Lock()

    def active(self) -> list[ActiveListener]:
        with self._lock:
            return sorted(self._active.values(), key=lambda l: (l.port, l.protocol.value))

    def get(self, port: int, protocol: str | Protocol) -> ActiveListener | None:
        with self._lock:
            return self._active.get((port, Protocol.parse(protocol)))

    def start(
        self,
        port: int,
        protocol: str | Protocol,
        add_firewall_rule: bool = False,
        use_upnp: bool = False,
        forward_only: bool = False,
        rule_name: str | None = None,
    ) -> ListenerStartResult:
        proto = Protocol.parse(protocol)
        if not 0 < port <= 65535:
            return ListenerStartResult(None, message="Invalid port number.")
        if self.get(port, proto) is not None:
            return ListenerStartResult(None, message=f"Port {port}/{proto.value} already configured!")

        name = rule_name or rule_name_for(port)
        result = ListenerStartResult(None)

        # 1. the socket; the only step allowed to abort
        resource = None
        if not forward_only:
            try:
                resource = self._bind(port, proto)
            except OSError:
                log.debug("bind %s/%s failed", port, proto.value, exc_info=True)
                result.bind = StepResult.FAILED
                result.message = f"Port {port} is probably in use. Try 'Forward Only' mode."
                return result
            result.bind = StepResult.SUCCEEDED

        # 2. firewall rule
        if add_firewall_rule:
            try:
                self.firewall.add_rule(name, port, proto.value)
                result.firewall = StepResult.SUCCEEDED
                self.journal.log_firewall(name, "created")
            except FirewallError as exc:
                log.debug("firewall rule %s failed: %s", name, exc)
                result.firewall = StepResult.FAILED

        # 3. router port mapping
        if use_upnp:
            try:
                self.upnp.create_mapping(proto.value, port, port, name)
                result.port_mapping = StepResult.SUCCEEDED
                self.journal.log_upnp(port, proto.value, "mapped")
            except UpnpError as exc:
                log.debug("port mapping %s/%s failed: %s", port, proto.value, exc)
                result.port_mapping = StepResult.FAILED

        listener = ActiveListener(
            port=port,
            protocol=proto,
            resource=resource,
            firewall_rule_added=result.firewall is StepResult.SUCCEEDED,
            firewall_rule_name=name,
            port_mapping_added=result.port_mapping is StepResult.SUCCEEDED,
            forward_only=forward_only,
        )
        with self._lock:
            if listener.key in self._active:
                # lost a race with another start for the same key; undo only what we just did
                self._teardown(listener, log_close=False)
                return ListenerStartResult(None, message=f"Port {port}/{proto.value} already configured!")
            self._active[listener.key] = listener
        self.journal.log_port_opened(port, proto.value, "Forward Only" if forward_only else "Listener")

        result.listener = listener
        failed = [
            label
            for label, step in (("firewall rule", result.firewall), ("UPnP mapping", result.port_mapping))
            if step is StepResult.FAILED
        ]
        verb = "configured (Forward Only)" if forward_only else "started"
        result.message = f"Port {port}/{proto.value} {verb}!"
        if failed:
            result.message += " (" + " and ".join(failed) + " failed)"
        return result

    def start_both(
        self,
        port: int,
        add_firewall_rule: bool = False,
        use_upnp: bool = False,
        forward_only: bool = False,
    ) -> list[ListenerStartResult]:
        return [
            self.start(
                port,
                proto,
                add_firewall_rule=add_firewall_rule,
                use_upnp=use_upnp,
                forward_only=forward_only,
                rule_name=rule_name_for(port, proto.value),
            )
            for proto in (Protocol.TCP, Protocol.UDP)
        ]

    def _teardown(self, listener: ActiveListener, log_close: bool = True) -> None:
        if listener.resource is not None:
            try:
                listener.resource.close()
            except OSError:
                log.debug("closing %s failed", listener.display, exc_info=True)
            listener.resource = None

        if listener.firewall_rule_added and listener.firewall_rule_name:
            try:
                self.firewall.remove_rule(listener.firewall_rule_name)
                self.journal.log_firewall(listener.firewall_rule_name, "removed")
            except FirewallError as exc:
                log.debug("removing rule %s failed: %s", listener.firewall_rule_name, exc)
            listener.firewall_rule_added = False

        if listener.port_mapping_added:
            try:
                self.upnp.delete_mapping(listener.protocol.value, listener.port)
                self.journal.log_upnp(listener.port, listener.protocol.value, "unmapped")
            except UpnpError as exc:
                log.debug("removing mapping %s failed: %s", listener.display, exc)
            listener.port_mapping_added = False

        if log_close:
            self.journal.log_port_closed(listener.port, listener.protocol.value)

    def stop(self, listener: ActiveListener) -> None:
        with self._lock:
            if self._active.get(listener.key) is listener:
                del self._active[listener.key]
        try:
            self._teardown(listener)
        except Exception:
            # a stop never reports failure to its caller
            log.exception("stopping %s failed", listener.display)

    def stop_all(self) -> None:
        for listener in self.active():
            self.stop(listener)

    def descriptors(self) -> list[ListenerDescriptor]:
        return [
            ListenerDescriptor(
                port=l.port,
                protocol=l.protocol,
                firewall_rule_name=l.firewall_rule_name,
                upnp_enabled=l.port_mapping_added,
                forward_only=l.forward_only,
            )
            for l in self.active()
        ]

    def restore(self, descriptors: Iterable[ListenerDescriptor]) -> list[ListenerStartResult]:
        """start saved listeners at launch; firewall rules are assumed to still exist"""
        results = []
        for d in descriptors:
            results.append(
                self.start(
                    d.port,
                    d.protocol,
                    add_firewall_rule=False,
                    use_upnp=d.upnp_enabled,
                    forward_only=d.forward_only,
                    rule_name=d.firewall_rule_name or None,
                )
            )
        return results


# --- saved-listener file ---


def load_descriptors(path: str) -> list[ListenerDescriptor]:
    """read data/listeners.json; a missing or unreadable file means nothing to restore"""
    try:
        with open(path, encoding="utf-8") as f:
            raw: Any = json.load(f)
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError):
        log.debug("could not read %s", path, exc_info=True)
        return []
    items = raw.get("listeners", []) if isinstance(raw, dict) else raw
    out: list[ListenerDescriptor] = []
    for obj in items if isinstance(items, list) else []:
        try:
            out.append(ListenerDescriptor.from_dict(obj))
        except (KeyError, TypeError, ValueError):
            continue  # skip broken entries
    return out


def save_descriptors(path: str, descriptors: Iterable[ListenerDescriptor]) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"listeners": [d.to_dict() for d in descriptors]}, f, indent=2)
