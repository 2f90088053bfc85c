from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

import pytest

import k3d_sandbox_server as ks


class FakeProvisioner:
    """In-memory stand-in for K3dProvisioner.

    `environments` is what `k3d cluster list` would report. Setting `gate`
    holds every create() until the event is set.
    """

    def __init__(self):
        self.environments: set[str] = set()
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.forgotten: list[str] = []
        self.fail_creates = 0
        self.fail_delete: set[str] = set()
        self.fail_list = False
        self.gate: asyncio.Event | None = None
        self._next_port = 6550

    def kubeconfig_path(self, sandbox_id: str) -> str:
        return f"/tmp/kubeconfigs/{sandbox_id}.yaml"

    async def create(self, sandbox_id: str) -> ks.ProvisionResult:
        self.created.append(sandbox_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_creates:
            self.fail_creates -= 1
            raise ks.ProvisionError(f"k3d cluster create {sandbox_id} failed: boom")
        self.environments.add(sandbox_id)
        port = self._next_port
        self._next_port += 1
        return ks.ProvisionResult(
            sandbox_id=sandbox_id, port=port, kubeconfig=self.kubeconfig_path(sandbox_id)
        )

    async def delete(self, sandbox_id: str):
        if sandbox_id in self.fail_delete:
            raise ks.TeardownError(f"k3d cluster delete {sandbox_id} failed: busy")
        self.environments.discard(sandbox_id)
        self.deleted.append(sandbox_id)

    def forget(self, sandbox_id: str):
        self.forgotten.append(sandbox_id)

    async def exists(self, sandbox_id: str) -> bool:
        return sandbox_id in self.environments

    async def list_environments(self) -> set[str]:
        if self.fail_list:
            raise ks.SandboxError("k3d cluster list failed: daemon down")
        return set(self.environments)


class FakeExecutor:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.error: ks.ExecutionError | None = None

    async def execute(self, sandbox_id: str, command: str) -> ks.CommandResult:
        if not command.strip():
            raise ValueError("Command not provided")
        self.calls.append((sandbox_id, command))
        if self.error is not None:
            raise self.error
        return ks.CommandResult(
            stdout=f"ran {command}", stderr="", exit_code=0, duration_ms=1.0
        )


@contextlib.asynccontextmanager
async def _orchestrator(**kw):
    kw.setdefault("provisioner", FakeProvisioner())
    kw.setdefault("executor", FakeExecutor())
    kw.setdefault("ttl", 3600)
    kw.setdefault("capacity", 3)
    kw.setdefault("sweep_interval", 3600)
    orch = ks.SandboxOrchestrator(**kw)
    try:
        yield orch
    finally:
        await orch.shutdown(destroy=False)


async def _wait_for(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


_FAKE_K3D_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys


STATE_PATH = os.environ.get("FAKE_K3D_STATE")
if not STATE_PATH:
    print("FAKE_K3D_STATE is required", file=sys.stderr)
    sys.exit(2)


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"clusters": {}}


def save_state(state):
    os.makedirs(os.path.dirname(STATE_PATH), exist_ok=True)
    with open(STATE_PATH, "w") as f:
        json.dump(state, f)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def handle_cluster(args, state):
    if not args:
        die("missing cluster subcommand")
    sub, rest = args[0], args[1:]

    if sub == "create":
        if os.environ.get("FAKE_K3D_FAIL_CREATE"):
            die("failed to create cluster: image pull backoff")
        name = rest[0]
        if name in state["clusters"]:
            die(f"cluster {name} already exists")
        api = rest[rest.index("--api-port") + 1]
        state["clusters"][name] = {"api": api, "args": rest[1:]}
        save_state(state)
        print(f"INFO Cluster '{name}' created successfully!")
        return 0

    if sub == "delete":
        if os.environ.get("FAKE_K3D_FAIL_DELETE"):
            die("failed to delete cluster")
        name = rest[0]
        state["clusters"].pop(name, None)
        save_state(state)
        print(f"INFO Successfully deleted cluster {name}!")
        return 0

    if sub == "list":
        if "-o" in rest:
            print(json.dumps([{"name": n} for n in sorted(state["clusters"])]))
            return 0
        names = [a for a in rest if not a.startswith("-")]
        if names:
            if names[0] not in state["clusters"]:
                die(f"failed to get cluster {names[0]}")
            print(f"{names[0]}   1/1   0/0   false")
            return 0
        if "--no-headers" not in rest:
            print("NAME   SERVERS   AGENTS   LOADBALANCER")
        for name in sorted(state["clusters"]):
            print(f"{name}   1/1   0/0   false")
        return 0

    die(f"unsupported cluster subcommand: {sub}")


def handle_kubeconfig(args, state):
    if len(args) < 2 or args[0] != "get":
        die("usage: k3d kubeconfig get NAME")
    name = args[1]
    if name not in state["clusters"]:
        die(f"cluster {name} not found")
    api = state["clusters"][name]["api"]
    print("apiVersion: v1")
    print("kind: Config")
    print(f"current-context: k3d-{name}")
    print("clusters:")
    print(f"- name: k3d-{name}")
    print(f"  cluster: {{server: https://{api}}}")
    return 0


def main():
    argv = sys.argv[1:]
    if not argv:
        die("missing command")
    state = load_state()
    if argv[0] == "cluster":
        return handle_cluster(argv[1:], state)
    if argv[0] == "kubeconfig":
        return handle_kubeconfig(argv[1:], state)
    die(f"unsupported command: {argv[0]}")


if __name__ == "__main__":
    sys.exit(main())
"""


_FAKE_KUBECTL_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def main():
    argv = sys.argv[1:]
    kubeconfig = None
    context = None
    while argv and argv[0] in ("--kubeconfig", "--context"):
        if len(argv) < 2:
            die(f"missing value for {argv[0]}")
        if argv[0] == "--kubeconfig":
            kubeconfig = argv[1]
        else:
            context = argv[1]
        argv = argv[2:]

    if not kubeconfig or not os.path.exists(kubeconfig):
        die("error: stat kubeconfig: no such file or directory")
    if not context:
        die("error: no context")

    if argv == ["get", "--raw", "/readyz"]:
        if os.environ.get("FAKE_KUBECTL_NOT_READY"):
            die("The connection to the server was refused")
        print("ok")
        return 0

    if argv and argv[0] == "fail":
        die('Error from server (NotFound): pods "nope" not found')

    print(json.dumps({"context": context, "args": argv}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def mock_k3d_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name, script in (("k3d", _FAKE_K3D_SCRIPT), ("kubectl", _FAKE_KUBECTL_SCRIPT)):
        exe = bin_dir / name
        exe.write_text(script)
        exe.chmod(0o755)

    state_file = tmp_path / "fake-k3d-state.json"
    kubeconfig_dir = tmp_path / "kubeconfigs"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_K3D_STATE", str(state_file))
    monkeypatch.setattr(ks, "READY_POLL_INTERVAL", 0.05)

    return {
        "tmp_path": tmp_path,
        "state_file": state_file,
        "kubeconfig_dir": kubeconfig_dir,
    }
