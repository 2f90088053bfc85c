#!/usr/bin/env python3
"""MCP + HTTP server handing out short-lived k3d clusters as kubectl sandboxes."""

import argparse
import asyncio
import collections
import contextlib
import enum
import json
import logging
import math
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

# ── Logging (stderr only, stdout may carry MCP stdio) ───────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("k3d-sandbox")

# ── Config ───────────────────────────────────────────────────────────────


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"Ignoring {name}={raw!r}: not an integer, using {default}")
        return default


def _parse_port_range(spec: str) -> tuple[int, int]:
    """Parse '6550-6650' into an inclusive (start, end) pair."""
    lo, sep, hi = (spec or "").strip().partition("-")
    if not sep:
        raise ValueError(f"Invalid port range: {spec!r}")
    start, end = int(lo), int(hi)
    if not (0 < start <= end < 65536):
        raise ValueError(f"Invalid port range: {spec!r}")
    return start, end


SANDBOX_TTL = _env_int("K3D_SANDBOX_TTL", 3600)
MAX_CONCURRENT_SANDBOXES = _env_int("K3D_SANDBOX_MAX_CONCURRENT", 3)
SWEEP_INTERVAL = _env_int("K3D_SANDBOX_SWEEP_INTERVAL", 300)
PROVISION_TIMEOUT = float(_env_int("K3D_SANDBOX_PROVISION_TIMEOUT", 300))
COMMAND_TIMEOUT = float(_env_int("K3D_SANDBOX_COMMAND_TIMEOUT", 30))

K3S_IMAGE = os.environ.get("K3D_SANDBOX_IMAGE", "rancher/k3s:v1.27.4-k3s1")

_STATE_DIR = os.path.expanduser("~/.local/state/k3d-sandbox")
KUBECONFIG_DIR = os.environ.get(
    "K3D_SANDBOX_KUBECONFIG_DIR", os.path.join(_STATE_DIR, "kubeconfigs")
)

PORT_RANGE = _parse_port_range(os.environ.get("K3D_SANDBOX_PORT_RANGE", "6550-6650"))
PORT_PROBE_TIMEOUT = 0.5

# Seconds between /readyz probes while a cluster boots
READY_POLL_INTERVAL = 2.0

MAX_OUTPUT = 50_000

# Cluster names we own; anything else in `k3d cluster list` is left alone
SANDBOX_PREFIX = "sb-"

COOKIE_NAME = "sandboxId"
PRODUCTION = os.environ.get("K3D_SANDBOX_ENV", "").lower() == "production"


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


async def _run(cmd: list[str], timeout: float = 30.0) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _truncate(text: str, limit: int = MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[:limit]
        + f"\n[truncated: {total} total, showing first {_humanize_bytes(limit)}]"
    )


def _new_sandbox_id() -> str:
    return f"{SANDBOX_PREFIX}{uuid.uuid4().hex[:10]}"


def _context_name(sandbox_id: str) -> str:
    return f"k3d-{sandbox_id}"


# ── Errors ───────────────────────────────────────────────────────────────


class SandboxError(RuntimeError):
    pass


class LockContentionError(SandboxError):
    """A creation request for the same identity is already in flight."""


class ProvisionError(SandboxError):
    pass


class TeardownError(SandboxError):
    pass


class NotFoundError(SandboxError):
    pass


class ExecutionError(SandboxError):
    """kubectl failed. stderr and exit code are kept verbatim for the caller."""

    def __init__(
        self, message: str, stderr: str = "", exit_code: int = -1, stdout: str = ""
    ):
        super().__init__(message)
        self.message = message
        self.stderr = stderr
        self.exit_code = exit_code
        self.stdout = stdout

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
        }


# ── Port allocation ──────────────────────────────────────────────────────


class PortAllocator:
    """Hands out loopback ports for cluster API endpoints.

    A port is free when nothing accepts a connection on it and no other
    in-flight provisioning holds it. Reservations are taken before the
    probe so two concurrent allocations never settle on the same port.
    """

    def __init__(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        host: str = "127.0.0.1",
    ):
        self.start = PORT_RANGE[0] if start is None else start
        self.end = PORT_RANGE[1] if end is None else end
        self.host = host
        self._reserved: set[int] = set()

    @property
    def reserved(self) -> frozenset:
        return frozenset(self._reserved)

    async def _in_use(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port), timeout=PORT_PROBE_TIMEOUT
            )
        except asyncio.TimeoutError:
            # Something is there but not answering; don't hand it out.
            return True
        except OSError:
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def allocate(self) -> int:
        for port in range(self.start, self.end + 1):
            if port in self._reserved:
                continue
            self._reserved.add(port)
            if not await self._in_use(port):
                return port
            self._reserved.discard(port)
        raise ProvisionError(f"No free port in range {self.start}-{self.end}")

    def release(self, port: int):
        self._reserved.discard(port)


# ── Environment provisioning (k3d) ───────────────────────────────────────


@dataclass
class ProvisionResult:
    sandbox_id: str
    port: int
    kubeconfig: str


class K3dProvisioner:
    """Creates, probes and deletes one k3d cluster per sandbox."""

    def __init__(
        self,
        ports: Optional[PortAllocator] = None,
        image: Optional[str] = None,
        kubeconfig_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        k3d: str = "k3d",
        kubectl: str = "kubectl",
    ):
        self.ports = ports if ports is not None else PortAllocator()
        self.image = image or K3S_IMAGE
        self.kubeconfig_dir = kubeconfig_dir or KUBECONFIG_DIR
        self.timeout = PROVISION_TIMEOUT if timeout is None else timeout
        self.k3d = k3d
        self.kubectl = kubectl
        self._ports_by_id: dict[str, int] = {}

    def kubeconfig_path(self, sandbox_id: str) -> str:
        return os.path.join(self.kubeconfig_dir, f"{sandbox_id}.yaml")

    def _create_cmd(self, sandbox_id: str, port: int) -> list[str]:
        return [
            self.k3d,
            "cluster",
            "create",
            sandbox_id,
            "--api-port",
            f"{self.ports.host}:{port}",
            "--no-lb",
            "--k3s-arg",
            "--disable=traefik@server:0",
            "--k3s-arg",
            "--disable=servicelb@server:0",
            "--servers",
            "1",
            "--agents",
            "0",
            "--wait",
            "--timeout",
            f"{int(self.timeout)}s",
            "--image",
            self.image,
            "--kubeconfig-update-default=false",
            "--kubeconfig-switch-context=false",
        ]

    async def create(self, sandbox_id: str) -> ProvisionResult:
        port = await self.ports.allocate()
        deadline = time.monotonic() + self.timeout
        try:
            code, _, stderr = await _run(
                self._create_cmd(sandbox_id, port), timeout=self.timeout
            )
            if code != 0:
                raise ProvisionError(
                    f"k3d cluster create {sandbox_id} failed: {stderr.strip()}"
                )
            kubeconfig = await self._export_kubeconfig(sandbox_id)
            await self._wait_ready(sandbox_id, kubeconfig, deadline)
        except ProvisionError:
            await self._abandon(sandbox_id, port)
            raise
        except (OSError, asyncio.TimeoutError) as e:
            await self._abandon(sandbox_id, port)
            reason = str(e) or f"timed out after {self.timeout:.0f}s"
            raise ProvisionError(f"Provisioning {sandbox_id} failed: {reason}") from e

        self._ports_by_id[sandbox_id] = port
        log.info(f"Cluster {sandbox_id} ready on {self.ports.host}:{port}")
        return ProvisionResult(sandbox_id=sandbox_id, port=port, kubeconfig=kubeconfig)

    async def _export_kubeconfig(self, sandbox_id: str) -> str:
        """Write a kubeconfig scoped to this cluster only."""
        code, stdout, stderr = await _run(
            [self.k3d, "kubeconfig", "get", sandbox_id], timeout=30
        )
        if code != 0 or not stdout.strip():
            raise ProvisionError(
                f"k3d kubeconfig get {sandbox_id} failed: {stderr.strip()}"
            )
        os.makedirs(self.kubeconfig_dir, exist_ok=True)
        path = self.kubeconfig_path(sandbox_id)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(stdout)
        return path

    async def _wait_ready(self, sandbox_id: str, kubeconfig: str, deadline: float):
        cmd = [
            self.kubectl,
            "--kubeconfig",
            kubeconfig,
            "--context",
            _context_name(sandbox_id),
            "get",
            "--raw",
            "/readyz",
        ]
        last = ""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisionError(
                    f"Cluster {sandbox_id} not ready after {self.timeout:.0f}s: {last}"
                )
            try:
                code, stdout, stderr = await _run(cmd, timeout=min(remaining, 10.0))
            except asyncio.TimeoutError:
                code, stdout, stderr = -1, "", "readiness probe timed out"
            if code == 0 and stdout.strip() == "ok":
                return
            last = stderr.strip() or stdout.strip()
            await asyncio.sleep(min(READY_POLL_INTERVAL, max(remaining, 0.0)))

    async def _abandon(self, sandbox_id: str, port: int):
        """Best-effort cleanup after a failed create."""
        try:
            await _run([self.k3d, "cluster", "delete", sandbox_id], timeout=60)
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not clean up failed cluster {sandbox_id}: {e}")
        self._remove_kubeconfig(sandbox_id)
        self.ports.release(port)

    def _remove_kubeconfig(self, sandbox_id: str):
        try:
            os.unlink(self.kubeconfig_path(sandbox_id))
        except FileNotFoundError:
            pass

    async def delete(self, sandbox_id: str):
        try:
            code, _, stderr = await _run(
                [self.k3d, "cluster", "delete", sandbox_id], timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TeardownError(f"k3d cluster delete {sandbox_id} failed: {e}") from e
        if code != 0:
            raise TeardownError(
                f"k3d cluster delete {sandbox_id} failed: {stderr.strip()}"
            )
        self.forget(sandbox_id)

    def forget(self, sandbox_id: str):
        """Release local resources of a cluster that is gone. Idempotent."""
        self._remove_kubeconfig(sandbox_id)
        port = self._ports_by_id.pop(sandbox_id, None)
        if port is not None:
            self.ports.release(port)

    async def exists(self, sandbox_id: str) -> bool:
        try:
            code, _, _ = await _run(
                [self.k3d, "cluster", "list", sandbox_id, "--no-headers"], timeout=30
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxError(f"Could not query k3d for {sandbox_id}: {e}") from e
        return code == 0

    async def list_environments(self) -> set[str]:
        try:
            code, stdout, stderr = await _run(
                [self.k3d, "cluster", "list", "-o", "json"], timeout=30
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxError(f"Could not list k3d clusters: {e}") from e
        if code != 0:
            raise SandboxError(f"k3d cluster list failed: {stderr.strip()}")
        try:
            clusters = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise SandboxError(f"Unreadable k3d cluster list: {e}") from e
        names = set()
        for cluster in clusters if isinstance(clusters, list) else []:
            name = cluster.get("name") if isinstance(cluster, dict) else None
            if isinstance(name, str) and name.startswith(SANDBOX_PREFIX):
                names.add(name)
        return names


# ── Command tokenizing & execution ───────────────────────────────────────


def _tokenize(command: str) -> list[str]:
    """Split on whitespace; a quoted span stays one token, quotes removed.

    Both "..." and '...' quote, so JSON patches can be written as
    -p '{"spec":{"replicas":2}}'. An unterminated quote runs to the end.
    """
    tokens: list[str] = []
    buf: list[str] = []
    in_token = False
    quote = ""
    for ch in command:
        if quote:
            if ch == quote:
                quote = ""
            else:
                buf.append(ch)
        elif ch in ('"', "'"):
            quote = ch
            in_token = True
        elif ch.isspace():
            if in_token:
                tokens.append("".join(buf))
                buf = []
                in_token = False
        else:
            buf.append(ch)
            in_token = True
    if in_token:
        tokens.append("".join(buf))
    return tokens


def _normalize_args(args: list[str]) -> list[str]:
    """Drop an optional kubectl/k prefix and move `run --name X` into place."""
    args = list(args)
    if args and args[0] in ("kubectl", "k"):
        args = args[1:]
    if args and args[0] == "run":
        for i, tok in enumerate(args):
            if tok == "--name" and i + 1 < len(args):
                name = args[i + 1]
                del args[i : i + 2]
                args.insert(1, name)
                break
            if tok.startswith("--name="):
                del args[i]
                args.insert(1, tok[len("--name=") :])
                break
    return args


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float


class CommandExecutor:
    """Runs kubectl against one sandbox, never the ambient kubeconfig."""

    def __init__(
        self,
        kubeconfig_path: Callable[[str], str],
        timeout: Optional[float] = None,
        kubectl: str = "kubectl",
    ):
        self.kubeconfig_path = kubeconfig_path
        self.timeout = COMMAND_TIMEOUT if timeout is None else timeout
        self.kubectl = kubectl

    def build_argv(self, sandbox_id: str, command: str) -> list[str]:
        args = _normalize_args(_tokenize(command or ""))
        if not args:
            raise ValueError("Command not provided")
        return [
            self.kubectl,
            "--kubeconfig",
            self.kubeconfig_path(sandbox_id),
            "--context",
            _context_name(sandbox_id),
            *args,
        ]

    async def execute(self, sandbox_id: str, command: str) -> CommandResult:
        argv = self.build_argv(sandbox_id, command)
        t0 = time.perf_counter()
        try:
            code, stdout, stderr = await _run(argv, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ExecutionError(
                f"Command timed out after {self.timeout:.0f}s",
                stderr=f"Timed out after {self.timeout:.0f}s",
            ) from None
        except OSError as e:
            raise ExecutionError(
                f"Could not run {self.kubectl}: {e}", stderr=str(e)
            ) from e
        elapsed = (time.perf_counter() - t0) * 1000
        stdout, stderr = _truncate(stdout), _truncate(stderr)
        if code != 0:
            raise ExecutionError(
                stderr.strip() or f"kubectl exited with code {code}",
                stderr=stderr,
                exit_code=code,
                stdout=stdout,
            )
        return CommandResult(
            stdout=stdout, stderr=stderr, exit_code=code, duration_ms=round(elapsed, 1)
        )


# ── Sandbox registry ─────────────────────────────────────────────────────


class SandboxState(str, enum.Enum):
    # Requested and queued phases are tracked by IdentityLocks and
    # AdmissionQueue; a record exists from provisioning onwards.
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    EXPIRING = "expiring"
    DELETED = "deleted"


@dataclass
class SandboxRecord:
    sandbox_id: str
    identity: str
    port: int
    kubeconfig: str = ""
    created_at: float = field(default_factory=time.time)
    state: SandboxState = SandboxState.ACTIVE

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.created_at

    def expired(self, ttl: float, now: Optional[float] = None) -> bool:
        return self.age(now) > ttl

    def remaining(self, ttl: float, now: Optional[float] = None) -> float:
        return max(0.0, ttl - self.age(now))


class SandboxRegistry:
    """In-memory sandbox id -> record map with an identity index.

    Listing methods return snapshots, so callers may await between items
    while other tasks insert or remove records.
    """

    def __init__(self):
        self._records: dict[str, SandboxRecord] = {}
        self._by_identity: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, sandbox_id: str) -> bool:
        return sandbox_id in self._records

    def get(self, sandbox_id: str) -> Optional[SandboxRecord]:
        return self._records.get(sandbox_id)

    def put(self, record: SandboxRecord):
        old = self._records.get(record.sandbox_id)
        if old is not None and old.identity != record.identity:
            self._unindex(old)
        self._records[record.sandbox_id] = record
        self._by_identity.setdefault(record.identity, set()).add(record.sandbox_id)

    def remove(self, sandbox_id: str) -> Optional[SandboxRecord]:
        record = self._records.pop(sandbox_id, None)
        if record is not None:
            self._unindex(record)
        return record

    def _unindex(self, record: SandboxRecord):
        ids = self._by_identity.get(record.identity)
        if ids is None:
            return
        ids.discard(record.sandbox_id)
        if not ids:
            del self._by_identity[record.identity]

    def all(self) -> list[SandboxRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def identities(self) -> list[str]:
        return sorted(self._by_identity)

    def list_by_identity(self, identity: str) -> list[SandboxRecord]:
        """Records owned by identity, oldest first."""
        ids = self._by_identity.get(identity, ())
        return sorted((self._records[i] for i in ids), key=lambda r: r.created_at)

    def list_expired_before(self, cutoff: float) -> list[SandboxRecord]:
        """Records created before cutoff (pass now - ttl)."""
        return [r for r in self.all() if r.created_at < cutoff]


# ── Identity locks ───────────────────────────────────────────────────────


class IdentityLocks:
    """One in-flight creation per identity.

    try_acquire is a plain check-and-set with no await inside, so on a
    single event loop two tasks can never both pass it.
    """

    def __init__(self):
        self._held: set[str] = set()

    def is_held(self, identity: str) -> bool:
        return identity in self._held

    def try_acquire(self, identity: str) -> bool:
        if identity in self._held:
            return False
        self._held.add(identity)
        return True

    def release(self, identity: str):
        self._held.remove(identity)

    @contextlib.contextmanager
    def hold(self, identity: str):
        if not self.try_acquire(identity):
            raise LockContentionError(
                f"A sandbox is already being created for {identity}. Please wait."
            )
        try:
            yield
        finally:
            self.release(identity)


# ── Admission queue ──────────────────────────────────────────────────────


@dataclass
class QueueEntry:
    identity: str
    position: int
    future: asyncio.Future = field(repr=False)
    enqueued_at: float = field(default_factory=time.time)


def _mark_retrieved(fut: asyncio.Future):
    # Queued callers usually return early and never await the result.
    if not fut.cancelled():
        fut.exception()


class AdmissionQueue:
    """FIFO line for identities that arrived while capacity was exhausted.

    A single worker task pops the head whenever occupied() < capacity,
    provisions it, settles the entry's future and checks again. drain()
    only wakes the worker. Positions are fixed at enqueue time and are
    not renumbered as earlier entries leave.
    """

    def __init__(
        self,
        capacity: int,
        occupied: Callable[[], int],
        provision: Callable[[str], Awaitable["SandboxRecord"]],
    ):
        self.capacity = capacity
        self._occupied = occupied
        self._provision = provision
        self._entries: collections.deque = collections.deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, identity: str) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.identity == identity:
                return entry
        return None

    def entries(self) -> list[QueueEntry]:
        return list(self._entries)

    def enqueue(self, identity: str) -> QueueEntry:
        if self.get(identity) is not None:
            raise ValueError(f"{identity} is already queued")
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_mark_retrieved)
        entry = QueueEntry(identity=identity, position=len(self._entries) + 1, future=fut)
        self._entries.append(entry)
        return entry

    def drain(self):
        if not self._entries or self._occupied() >= self.capacity:
            return
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work())
        self._wakeup.set()

    async def _work(self):
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._entries and self._occupied() < self.capacity:
                entry = self._entries.popleft()
                if entry.future.done():
                    continue
                try:
                    record = await self._provision(entry.identity)
                except asyncio.CancelledError:
                    entry.future.cancel()
                    raise
                except Exception as e:
                    if not entry.future.done():
                        entry.future.set_exception(e)
                else:
                    if not entry.future.done():
                        entry.future.set_result(record)

    async def close(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while self._entries:
            entry = self._entries.popleft()
            if not entry.future.done():
                entry.future.set_exception(SandboxError("Sandbox service shutting down"))


# ── Orchestrator ─────────────────────────────────────────────────────────


@dataclass
class SandboxGrant:
    sandbox_id: str
    message: str
    expires_in_minutes: int
    expires_in_seconds: int
    reused: bool = False


@dataclass
class QueuedTicket:
    position: int
    message: str


@dataclass
class SweepReport:
    deduped: list = field(default_factory=list)
    expired: list = field(default_factory=list)
    orphaned: list = field(default_factory=list)
    dropped: list = field(default_factory=list)
    failed: dict = field(default_factory=dict)

    def changed(self) -> bool:
        return bool(
            self.deduped or self.expired or self.orphaned or self.dropped or self.failed
        )


class SandboxOrchestrator:
    """Owns every sandbox: admission, provisioning, commands, teardown, sweeps.

    All shared state (registry, locks, queue, in-flight provisioning) lives
    on this object. Decisions are taken between awaits, so they are atomic
    with respect to other requests on the same event loop.
    """

    def __init__(
        self,
        provisioner=None,
        executor=None,
        registry: Optional[SandboxRegistry] = None,
        locks: Optional[IdentityLocks] = None,
        ttl: Optional[float] = None,
        capacity: Optional[int] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.provisioner = provisioner if provisioner is not None else K3dProvisioner()
        self.executor = (
            executor
            if executor is not None
            else CommandExecutor(self.provisioner.kubeconfig_path)
        )
        self.registry = registry if registry is not None else SandboxRegistry()
        self.locks = locks if locks is not None else IdentityLocks()
        self.ttl = SANDBOX_TTL if ttl is None else ttl
        self.capacity = MAX_CONCURRENT_SANDBOXES if capacity is None else capacity
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.sweep_interval = SWEEP_INTERVAL if sweep_interval is None else sweep_interval
        self.queue = AdmissionQueue(self.capacity, self.occupied, self._provision)
        self._provisioning: dict[str, SandboxRecord] = {}
        self._tearing_down: set[str] = set()
        self._started = False
        self._sweep_task: Optional[asyncio.Task] = None

    def live_count(self) -> int:
        return len(self.registry)

    def occupied(self) -> int:
        """Live sandboxes plus clusters still booting."""
        return len(self.registry) + len(self._provisioning)

    async def ensure_started(self):
        if self._started:
            return
        self._started = True
        await self._sweep_safely()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        log.info(
            f"Sandbox orchestrator ready (capacity={self.capacity}, "
            f"ttl={self.ttl / 60:.0f}min, sweep every {self.sweep_interval:.0f}s)"
        )

    start = ensure_started

    # ── Client operations ────────────────────────────────────────────

    async def request_sandbox(
        self, identity: str, wait: bool = False
    ) -> "SandboxGrant | QueuedTicket":
        await self.ensure_started()

        with self.locks.hold(identity):
            record = await self._reusable(identity)
            if record is not None:
                log.info(f"Reusing sandbox {record.sandbox_id} for {identity}")
                return self._grant(record, reused=True)

            if any(r.identity == identity for r in self._provisioning.values()):
                raise LockContentionError(
                    f"A sandbox is already being created for {identity}. Please wait."
                )

            entry = self.queue.get(identity)
            if entry is None and (len(self.queue) or self.occupied() >= self.capacity):
                entry = self.queue.enqueue(identity)
                log.info(
                    f"Capacity reached ({self.occupied()}/{self.capacity}), "
                    f"queued {identity} at position {entry.position}"
                )
                self.queue.drain()

            if entry is not None:
                if not wait:
                    return QueuedTicket(
                        position=entry.position,
                        message=(
                            "All sandboxes are in use. "
                            f"You are number {entry.position} in the queue."
                        ),
                    )
                record = await asyncio.shield(entry.future)
                return self._grant(record)

            record = await self._provision(identity)
            return self._grant(record)

    async def execute(self, sandbox_id: str, command: str) -> CommandResult:
        await self.ensure_started()
        record = await self._validate(sandbox_id)
        try:
            return await self.executor.execute(record.sandbox_id, command)
        except ExecutionError as e:
            log.info(f"Command failed in {record.sandbox_id} (exit {e.exit_code})")
            raise

    async def delete_sandbox(self, sandbox_id: str):
        await self.ensure_started()
        record = await self._validate(sandbox_id)
        await self._destroy(record, "deleted by client")
        self.queue.drain()

    # ── Internals ────────────────────────────────────────────────────

    def _grant(self, record: SandboxRecord, reused: bool = False) -> SandboxGrant:
        remaining = record.remaining(self.ttl)
        return SandboxGrant(
            sandbox_id=record.sandbox_id,
            message="Using existing sandbox" if reused else "Sandbox created successfully",
            expires_in_minutes=math.ceil(remaining / 60),
            expires_in_seconds=math.ceil(remaining),
            reused=reused,
        )

    async def _reusable(self, identity: str) -> Optional[SandboxRecord]:
        """Newest live, unexpired sandbox for identity, re-checked against k3d."""
        now = time.time()
        found = None
        for record in reversed(self.registry.list_by_identity(identity)):
            if record.state is not SandboxState.ACTIVE:
                continue
            if record.expired(self.ttl, now):
                try:
                    await self._destroy(record, "expired")
                except TeardownError as e:
                    log.warning(f"Could not retire expired {record.sandbox_id}: {e}")
                continue
            if found is None:
                found = record
        if found is None:
            return None
        if await self.provisioner.exists(found.sandbox_id):
            return found
        log.warning(
            f"Sandbox {found.sandbox_id} for {identity} no longer exists, dropping it"
        )
        self._drop(found)
        return None

    async def _validate(self, sandbox_id: str) -> SandboxRecord:
        if not sandbox_id:
            raise NotFoundError("Sandbox not found. Create a new sandbox first.")
        record = self.registry.get(sandbox_id)
        if (
            record is None
            or record.state is not SandboxState.ACTIVE
            or record.expired(self.ttl)
        ):
            raise NotFoundError("Sandbox not found or expired.")
        if not await self.provisioner.exists(sandbox_id):
            log.warning(f"Sandbox {sandbox_id} no longer exists, dropping it")
            self._drop(record)
            raise NotFoundError("Sandbox not found or expired.")
        return record

    async def _provision(self, identity: str) -> SandboxRecord:
        sandbox_id = _new_sandbox_id()
        record = SandboxRecord(
            sandbox_id=sandbox_id,
            identity=identity,
            port=0,
            state=SandboxState.PROVISIONING,
        )
        self._provisioning[sandbox_id] = record
        log.info(f"Provisioning sandbox {sandbox_id} for {identity}")
        try:
            result = await self.provisioner.create(sandbox_id)
        except ProvisionError as e:
            log.error(f"Provisioning {sandbox_id} for {identity} failed: {e}")
            record.state = SandboxState.DELETED
            raise
        finally:
            del self._provisioning[sandbox_id]
            self.queue.drain()

        # Lifetime starts once the cluster is usable.
        record.port = result.port
        record.kubeconfig = result.kubeconfig
        record.created_at = time.time()
        record.state = SandboxState.ACTIVE
        self.registry.put(record)
        log.info(f"Sandbox {sandbox_id} active for {identity} (port {result.port})")
        return record

    def _drop(self, record: SandboxRecord):
        """Forget a sandbox whose cluster is already gone."""
        record.state = SandboxState.DELETED
        self.registry.remove(record.sandbox_id)
        self.provisioner.forget(record.sandbox_id)

    async def _destroy(self, record: SandboxRecord, reason: str) -> bool:
        """Tear down the cluster, then forget the record. False if already underway."""
        if record.sandbox_id in self._tearing_down:
            return False
        self._tearing_down.add(record.sandbox_id)
        record.state = SandboxState.EXPIRING
        try:
            await self.provisioner.delete(record.sandbox_id)
        except TeardownError as e:
            log.error(f"Teardown of {record.sandbox_id} ({reason}) failed: {e}")
            raise
        finally:
            self._tearing_down.discard(record.sandbox_id)
        self._drop(record)
        log.info(f"Deleted sandbox {record.sandbox_id} for {record.identity} ({reason})")
        return True

    # ── Sweeper ──────────────────────────────────────────────────────

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                return
            except Exception as e:
                log.warning(f"Sweep loop error: {e}")

    async def _sweep_safely(self):
        try:
            await self.sweep()
        except Exception as e:
            log.warning(f"Initial sweep failed: {e}")

    async def _sweep_one(
        self, record: SandboxRecord, reason: str, bucket: list, report: SweepReport
    ):
        try:
            if await self._destroy(record, reason):
                bucket.append(record.sandbox_id)
        except Exception as e:
            log.warning(f"Sweep: could not delete {record.sandbox_id} ({reason}): {e}")
            report.failed[record.sandbox_id] = str(e)

    async def sweep(self) -> SweepReport:
        """Dedup, expire and orphan-collect, then let the queue use the room."""
        report = SweepReport()

        for identity in self.registry.identities():
            records = self.registry.list_by_identity(identity)
            for record in records[:-1]:
                await self._sweep_one(record, "duplicate", report.deduped, report)

        stale = self.registry.list_expired_before(time.time() - self.ttl)
        seen = {r.sandbox_id for r in stale}
        # Records left EXPIRING by a failed teardown are retried here.
        stale += [
            r
            for r in self.registry.all()
            if r.state is SandboxState.EXPIRING and r.sandbox_id not in seen
        ]
        for record in stale:
            await self._sweep_one(record, "expired", report.expired, report)

        listed_at = time.time()
        try:
            environments = await self.provisioner.list_environments()
        except Exception as e:
            log.warning(f"Sweep: orphan pass skipped, cannot list clusters: {e}")
        else:
            for sandbox_id in sorted(environments):
                if (
                    sandbox_id in self.registry
                    or sandbox_id in self._provisioning
                    or sandbox_id in self._tearing_down
                ):
                    continue
                try:
                    await self.provisioner.delete(sandbox_id)
                except Exception as e:
                    log.warning(f"Sweep: could not delete orphan {sandbox_id}: {e}")
                    report.failed[sandbox_id] = str(e)
                else:
                    log.info(f"Sweep: deleted orphan cluster {sandbox_id}")
                    report.orphaned.append(sandbox_id)

            for record in self.registry.all():
                if (
                    record.sandbox_id not in environments
                    and record.created_at < listed_at
                    and record.state is SandboxState.ACTIVE
                    and record.sandbox_id not in self._tearing_down
                ):
                    log.warning(
                        f"Sweep: sandbox {record.sandbox_id} vanished externally, dropping it"
                    )
                    self._drop(record)
                    report.dropped.append(record.sandbox_id)

        self.queue.drain()
        if report.changed():
            log.info(
                f"Sweep: {len(report.deduped)} duplicate, {len(report.expired)} expired, "
                f"{len(report.orphaned)} orphaned, {len(report.dropped)} dropped, "
                f"{len(report.failed)} failed"
            )
        return report

    # ── Lifecycle ────────────────────────────────────────────────────

    async def shutdown(self, destroy: bool = True):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.queue.close()

        if destroy:
            for record in self.registry.all():
                try:
                    await self._destroy(record, "shutdown")
                except Exception as e:
                    log.warning(f"Shutdown: could not delete {record.sandbox_id}: {e}")
        self._started = False
        log.info("Sandbox orchestrator stopped")

    def status(self) -> dict:
        now = time.time()
        sandboxes = {}
        for record in self.registry.all():
            sandboxes[record.sandbox_id] = {
                "identity": record.identity,
                "state": record.state.value,
                "port": record.port,
                "age": f"{record.age(now):.0f}s",
                "expires_in": f"{record.remaining(self.ttl, now):.0f}s",
            }
        return {
            "capacity": self.capacity,
            "live": self.live_count(),
            "ttl_minutes": self.ttl / 60,
            "provisioning": {sid: r.identity for sid, r in self._provisioning.items()},
            "queue": [
                {"identity": e.identity, "position": e.position}
                for e in self.queue.entries()
            ],
            "sandboxes": sandboxes,
        }

    def summary(self) -> dict:
        """Counts only. Sandbox ids are session tokens and never listed here."""
        return {
            "capacity": self.capacity,
            "live": self.live_count(),
            "provisioning": len(self._provisioning),
            "queueLength": len(self.queue),
            "ttlMinutes": self.ttl / 60,
        }


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "k3d-sandbox",
    instructions=(
        "You have access to disposable single-node Kubernetes clusters for "
        "practising kubectl. Use create_sandbox to get one (one per client, "
        "expires after an hour), execute to run kubectl commands in it "
        "(the 'kubectl' prefix is optional), delete_sandbox to tear it down "
        "and status to see capacity and the waiting queue."
    ),
)

orchestrator = SandboxOrchestrator()


# ── Core tools ───────────────────────────────────────────────────────────


@mcp_server.tool()
async def create_sandbox(client: str = "local", wait: bool = False) -> str:
    """
    Get a Kubernetes sandbox for a client, reusing its live one if any.

    Args:
        client: Identity the sandbox belongs to (one sandbox per identity)
        wait: When all sandboxes are busy, wait in the queue instead of returning

    Returns:
        The sandbox id and lifetime, the queue position, or an error.
    """
    try:
        outcome = await orchestrator.request_sandbox(client, wait=wait)
    except SandboxError as e:
        return f"Error: {e}"
    if isinstance(outcome, QueuedTicket):
        return outcome.message
    return (
        f"{outcome.message}: {outcome.sandbox_id} "
        f"(expires in {outcome.expires_in_minutes} minutes)"
    )


@mcp_server.tool()
async def execute(command: str, sandbox_id: str) -> str:
    """
    Run a kubectl command inside a sandbox.

    Args:
        command: kubectl arguments, e.g. 'get pods -A' or 'label pod web tier="front end"'
        sandbox_id: Id returned by create_sandbox

    Returns:
        Command output, or stderr and exit code when kubectl fails.
    """
    try:
        result = await orchestrator.execute(sandbox_id, command)
    except ExecutionError as e:
        return _format_error(e)
    except (SandboxError, ValueError) as e:
        return f"Error: {e}"
    return _format_result(result)


@mcp_server.tool()
async def delete_sandbox(sandbox_id: str) -> str:
    """
    Tear down a sandbox and its cluster.

    Args:
        sandbox_id: Id returned by create_sandbox

    Returns:
        Confirmation or error.
    """
    try:
        await orchestrator.delete_sandbox(sandbox_id)
    except SandboxError as e:
        return f"Error: {e}"
    return f"Deleted sandbox {sandbox_id}"


@mcp_server.tool()
async def status() -> str:
    """
    Show capacity, live sandboxes and the waiting queue.
    """
    await orchestrator.ensure_started()
    info = orchestrator.status()
    lines = [f"Sandboxes: {info['live']}/{info['capacity']} (ttl {info['ttl_minutes']:.0f}min)"]
    for sandbox_id, sb in info["sandboxes"].items():
        lines.append(
            f"  {sandbox_id}  {sb['identity']:15s} {sb['state']:9s} "
            f"port:{sb['port']}  age:{sb['age']}  expires in:{sb['expires_in']}"
        )
    for sandbox_id, identity in info["provisioning"].items():
        lines.append(f"  {sandbox_id}  {identity:15s} provisioning")
    if info["queue"]:
        lines.append("Queue:")
        for entry in info["queue"]:
            lines.append(f"  #{entry['position']} {entry['identity']}")
    return "\n".join(lines)


# ── HTTP routes ──────────────────────────────────────────────────────────


def _client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@mcp_server.custom_route("/api/sandbox", methods=["POST"])
async def http_create_sandbox(request: Request) -> JSONResponse:
    identity = _client_identity(request)
    try:
        outcome = await orchestrator.request_sandbox(identity)
    except LockContentionError as e:
        return _error(429, str(e))
    except SandboxError as e:
        log.error(f"Error creating sandbox for {identity}: {e}")
        return _error(500, str(e))

    if isinstance(outcome, QueuedTicket):
        return JSONResponse(
            {"message": outcome.message, "queuePosition": outcome.position},
            status_code=202,
        )

    response = JSONResponse(
        {
            "message": outcome.message,
            "sandboxId": outcome.sandbox_id,
            "expiresIn": f"{outcome.expires_in_minutes} minutes",
            "expiresInMinutes": outcome.expires_in_minutes,
        }
    )
    response.set_cookie(
        COOKIE_NAME,
        outcome.sandbox_id,
        max_age=outcome.expires_in_seconds,
        httponly=True,
        secure=PRODUCTION,
        samesite="strict",
    )
    return response


@mcp_server.custom_route("/api/sandbox/exec", methods=["POST"])
async def http_execute(request: Request) -> JSONResponse:
    sandbox_id = request.cookies.get(COOKIE_NAME)
    if not sandbox_id:
        return _error(401, "Sandbox not found. Create a new sandbox first.")

    try:
        body = await request.json()
    except ValueError:
        body = {}
    command = body.get("command") if isinstance(body, dict) else None
    if not isinstance(command, str):
        command = ""

    try:
        result = await orchestrator.execute(sandbox_id, command)
    except NotFoundError as e:
        response = _error(404, str(e))
        response.delete_cookie(COOKIE_NAME)
        return response
    except ValueError as e:
        return _error(400, str(e))
    except ExecutionError as e:
        return JSONResponse(e.to_dict(), status_code=500)
    except SandboxError as e:
        log.error(f"Error executing command in {sandbox_id}: {e}")
        return _error(500, str(e))

    return JSONResponse(
        {
            "message": "Command executed successfully",
            "command": command,
            "output": result.stdout,
        }
    )


@mcp_server.custom_route("/api/sandbox", methods=["DELETE"])
async def http_delete_sandbox(request: Request) -> JSONResponse:
    sandbox_id = request.cookies.get(COOKIE_NAME)
    if not sandbox_id:
        return _error(401, "Sandbox not found. Create a new sandbox first.")
    try:
        await orchestrator.delete_sandbox(sandbox_id)
    except NotFoundError as e:
        response = _error(404, str(e))
        response.delete_cookie(COOKIE_NAME)
        return response
    except SandboxError as e:
        log.error(f"Error deleting sandbox {sandbox_id}: {e}")
        return _error(500, str(e))

    response = JSONResponse({"ok": True, "message": "Sandbox deleted successfully"})
    response.delete_cookie(COOKIE_NAME)
    return response


@mcp_server.custom_route("/api/sandbox/status", methods=["GET"])
async def http_status(request: Request) -> JSONResponse:
    await orchestrator.ensure_started()
    return JSONResponse(orchestrator.summary())


# ── Result formatter ─────────────────────────────────────────────────────


def _format_result(result: CommandResult) -> str:
    parts = []
    if result.stdout:
        parts.append(result.stdout)
    if result.stderr:
        parts.append(f"[stderr] {result.stderr}")
    parts.append(f"({result.duration_ms}ms)")
    return "\n".join(parts)


def _format_error(err: ExecutionError) -> str:
    parts = []
    if err.stdout:
        parts.append(err.stdout)
    parts.append(f"[stderr] {err.stderr}" if err.stderr else f"Error: {err.message}")
    parts.append(f"[exit code {err.exit_code}]")
    return "\n".join(parts)


# ── Entry point ──────────────────────────────────────────────────────────


async def _serve(transport: str):
    await orchestrator.ensure_started()
    try:
        if transport == "stdio":
            await mcp_server.run_stdio_async()
        else:
            await mcp_server.run_streamable_http_async()
    finally:
        await orchestrator.shutdown()


def main():
    parser = argparse.ArgumentParser(
        prog="k3d-sandbox",
        description="Hand out short-lived k3d clusters for kubectl practice.",
    )
    parser.add_argument(
        "--transport", choices=["stdio", "streamable-http"], default="streamable-http"
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=_env_int("PORT", 3001))
    args = parser.parse_args()

    mcp_server.settings.host = args.host
    mcp_server.settings.port = args.port
    asyncio.run(_serve(args.transport))


if __name__ == "__main__":
    main()
