#!/usr/bin/env python3
"""
In-memory MusicBot Instance Registry

This module provides:
- InstanceRegistry: a lock-guarded mapping from client IP to registered instances
- RegistryHTTPHandler: HTTP request handler for ``GET /`` and ``POST /``
- create_registry_server / start_registry_server: ThreadingHTTPServer helpers
- RegistryClient: thin HTTP client matching the API shape
"""

import ipaddress
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import asdict, dataclass, field, replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MAX_PORT = 65535


class RegistryError(Exception):
    """Base class for registry failures."""


class ValidationError(RegistryError, ValueError):
    """Caller-supplied data failed structural checks."""


class RegistryFullError(RegistryError):
    """No room for another client IP, even after pruning."""


@dataclass(frozen=True)
class Instance:
    """A registered musicbot: domain, port and last update in milliseconds."""
    domain: str
    port: int
    # equality and hashing follow identity only
    updated: int = field(compare=False)

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.domain, self.port)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Instance':
        """Create from dictionary."""
        return cls(
            domain=str(data['domain']),
            port=int(data['port']),
            updated=int(data['updated']),
        )


def validate_instance(domain: Any, port: Any) -> None:
    """Raise ValidationError unless *domain* and *port* can be stored."""
    if not isinstance(domain, str) or not domain:
        raise ValidationError("domain must be a non-empty string")
    # bool is an int subclass; reject it explicitly
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValidationError("port must be an integer")
    if not 0 <= port <= MAX_PORT:
        raise ValidationError(f"port must be between 0 and {MAX_PORT}")


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------

class InstanceRegistry:
    """Thread-safe, dict-backed registry of musicbot instances per client IP.

    Expiry and capacity are both opt-in. With *ttl_seconds* unset nothing is
    ever pruned, and with *capacity* unset the number of IP keys is unbounded.
    """

    def __init__(self, ttl_seconds: Optional[float] = None,
                 capacity: Optional[int] = None,
                 clock: Optional[Callable[[], int]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[Tuple[str, int], Instance]] = {}
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_ms = max(1, int(ttl_seconds * 1000)) if ttl_seconds is not None else None
        self._capacity = capacity
        self._clock = clock or _now_ms
        logger.debug("Creating registry with capacity=%s ttl=%ss", capacity, ttl_seconds)

    @property
    def ttl_seconds(self) -> Optional[float]:
        return self._ttl_ms / 1000 if self._ttl_ms is not None else None

    def is_expired(self, instance: Instance, now: int) -> bool:
        if self._ttl_ms is None:
            return False
        return now - instance.updated >= self._ttl_ms

    def register(self, ip: str, domain: str, port: int) -> None:
        """Insert or refresh ``(domain, port)`` under *ip*."""
        if not isinstance(ip, str) or not ip:
            raise ValidationError("ip must be a non-empty string")
        validate_instance(domain, port)

        with self._lock:
            now = self._clock()
            entry = self._entries.get(ip)
            if entry is None:
                if self._capacity is not None and len(self._entries) >= self._capacity:
                    self._prune_locked(now)
                    if len(self._entries) >= self._capacity:
                        logger.warning("Registry is full, rejecting new key %s", ip)
                        raise RegistryFullError(
                            f"registry holds the maximum of {self._capacity} addresses"
                        )
                entry = self._entries[ip] = {}
                logger.debug("Adding new key %s", ip)

            key = (domain, port)
            current = entry.get(key)
            if current is None:
                logger.debug("Adding new entry %s:%d to key %s", domain, port, ip)
                entry[key] = Instance(domain, port, now)
            else:
                logger.debug("Updating entry %s:%d for key %s", domain, port, ip)
                entry[key] = replace(current, updated=max(current.updated, now))

    def list_for(self, ip: str) -> List[Instance]:
        """Return a snapshot of the live instances registered under *ip*."""
        with self._lock:
            entry = self._entries.get(ip)
            if not entry:
                logger.debug("Request from %s had no match", ip)
                return []
            now = self._clock()
            results = [i for i in entry.values() if not self.is_expired(i, now)]
        logger.debug("Request from %s matched %d instance(s)", ip, len(results))
        return results

    def _clean_key_locked(self, ip: str, now: int) -> int:
        entry = self._entries.get(ip)
        if entry is None:
            return 0
        stale = [k for k, i in entry.items() if self.is_expired(i, now)]
        for k in stale:
            logger.debug("Removing entry %s:%d from key %s", k[0], k[1], ip)
            del entry[k]
        if not entry:
            logger.debug("Key is empty. Removing key %s", ip)
            del self._entries[ip]
        return len(stale)

    def _prune_locked(self, now: int) -> int:
        if self._ttl_ms is None:
            return 0
        return sum(self._clean_key_locked(ip, now) for ip in list(self._entries))

    def clean_key(self, ip: str) -> int:
        """Drop expired instances under *ip*; returns how many were removed."""
        if self._ttl_ms is None:
            return 0
        with self._lock:
            return self._clean_key_locked(ip, self._clock())

    def prune_expired(self) -> int:
        """Drop expired instances under every key; returns how many were removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def ip_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def instance_count(self, ip: Optional[str] = None) -> int:
        with self._lock:
            if ip is not None:
                return len(self._entries.get(ip, {}))
            return sum(len(e) for e in self._entries.values())


# ---------------------------------------------------------------------------
# HTTP handler
# ---------------------------------------------------------------------------

def _parse_ip(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def resolve_client_ip(headers, peer: str, trust_forwarded_for: bool = True) -> str:
    """Pick the address a request is registered under.

    The first hop of ``X-Forwarded-For`` wins when trusted and well formed;
    otherwise the socket peer address is used.
    """
    if trust_forwarded_for:
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            ip = _parse_ip(forwarded.split(",")[0])
            if ip is not None:
                return ip
            logger.warning("'X-Forwarded-For' header is malformed: %s", forwarded)
    return _parse_ip(peer) or peer


def parse_instance_body(raw: bytes) -> Tuple[str, int]:
    """Decode a ``POST /`` body into ``(domain, port)``."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"malformed JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    if "updated" in data:
        raise ValidationError("'updated' is set by the registry")
    if "domain" not in data or "port" not in data:
        raise ValidationError("'domain' and 'port' are required")
    validate_instance(data["domain"], data["port"])
    return data["domain"], data["port"]


def _make_handler(registry: InstanceRegistry, trust_forwarded_for: bool = True):
    """Create a handler class bound to the given registry instance."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _empty_response(self, status: int):
            self.send_response(status)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def _is_root(self) -> bool:
            return urllib.parse.urlparse(self.path).path == "/"

        def _client_ip(self) -> str:
            return resolve_client_ip(
                self.headers, self.client_address[0], trust_forwarded_for,
            )

        def do_GET(self):
            if not self._is_root():
                self._json_response({"error": "not found"}, status=404)
                return
            instances = registry.list_for(self._client_ip())
            self._json_response([i.to_dict() for i in instances])

        def do_POST(self):
            if not self._is_root():
                self._json_response({"error": "not found"}, status=404)
                return
            try:
                length = int(self.headers.get("Content-Length", 0))
            except ValueError:
                length = 0
            raw = self.rfile.read(length) if length > 0 else b""
            try:
                domain, port = parse_instance_body(raw)
                registry.register(self._client_ip(), domain, port)
            except ValidationError as exc:
                logger.debug("Rejected registration: %s", exc)
                self._json_response({"error": str(exc)}, status=400)
                return
            except RegistryFullError as exc:
                self._json_response({"error": str(exc)}, status=503)
                return
            self._empty_response(201)

    return RegistryHTTPHandler


def create_registry_server(
    registry: InstanceRegistry,
    host: str = "0.0.0.0",
    port: int = 8000,
    trust_forwarded_for: bool = True,
) -> ThreadingHTTPServer:
    """Build a ThreadingHTTPServer serving *registry* without starting it."""
    handler = _make_handler(registry, trust_forwarded_for)
    return ThreadingHTTPServer((host, port), handler)


def start_registry_server(
    registry: InstanceRegistry,
    host: str = "0.0.0.0",
    port: int = 8000,
    trust_forwarded_for: bool = True,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    server = create_registry_server(registry, host, port, trust_forwarded_for)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class RegistryClient:
    """Thin HTTP client for a registry server.

    The server keys everything on the caller's address, so a client only
    ever sees the instances registered from its own public IP.
    """

    def __init__(self, host: str = "localhost", port: int = 8000, timeout: float = 10):
        self._base = f"http://{host}:{port}"
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @staticmethod
    def _error_message(exc: urllib.error.HTTPError) -> str:
        try:
            return json.loads(exc.read().decode()).get("error", exc.reason)
        except (ValueError, AttributeError):
            return str(exc.reason)

    def list_instances(self) -> List[Instance]:
        try:
            with self._opener.open(f"{self._base}/", timeout=self._timeout) as resp:
                data = json.loads(resp.read().decode())
            return [Instance.from_dict(d) for d in data]
        except (urllib.error.URLError, OSError):
            return []

    def register(self, domain: str, port: int) -> bool:
        body = json.dumps({"domain": domain, "port": port}).encode()
        req = urllib.request.Request(
            f"{self._base}/", data=body, method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with self._opener.open(req, timeout=self._timeout) as resp:
                return resp.status == 201
        except urllib.error.HTTPError as exc:
            if exc.code == 400:
                raise ValidationError(self._error_message(exc)) from exc
            if exc.code == 503:
                raise RegistryFullError(self._error_message(exc)) from exc
            return False
        except (urllib.error.URLError, OSError):
            return False
