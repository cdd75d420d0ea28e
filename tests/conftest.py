from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from sandbox_bridge.config import BridgeConfig
from sandbox_bridge.ports import find_available_port

_PROXY_VARS = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
)


@pytest.fixture(autouse=True)
def _no_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in _PROXY_VARS:
        monkeypatch.delenv(var, raising=False)


def make_config(tmp_path: Path, **overrides) -> BridgeConfig:
    values = dict(
        settle_delay=0.0,
        health_check_interval=3600.0,
        heartbeat_interval=0.01,
        agent_health_attempts=3,
        agent_health_interval=0.01,
        cdp_poll_interval=0.05,
        cdp_connect_timeout=5.0,
        credential_dir=str(tmp_path / "codex"),
        browser_profile_root=str(tmp_path / "profiles"),
    )
    values.update(overrides)
    return BridgeConfig(**values)


@pytest.fixture
def bridge_config(tmp_path: Path) -> BridgeConfig:
    return make_config(tmp_path)


def read_calls(log_file: Path) -> list[list[str]]:
    if not log_file.exists():
        return []
    return [json.loads(line) for line in log_file.read_text().splitlines() if line]


_FAKE_DOCKER_SCRIPT = """
import fcntl
import json
import os
import sys


STATE_PATH = os.environ.get("FAKE_DOCKER_STATE")
LOG_PATH = os.environ.get("FAKE_DOCKER_LOG")
if not STATE_PATH:
    print("FAKE_DOCKER_STATE is required", file=sys.stderr)
    sys.exit(2)

VALUE_FLAGS = {
    "--name", "--memory", "--cpus", "--stop-timeout", "-p", "-e", "-v",
    "--add-host", "--security-opt",
}


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"containers": {}, "images": ["gnunae/sandbox:latest"], "next_id": 1}


def save_state(state):
    with open(STATE_PATH, "w") as f:
        json.dump(state, f)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def lookup(state, ref):
    for name, info in state["containers"].items():
        if name == ref or info["id"].startswith(ref):
            return name
    return None


def handle_run(args, state):
    name = None
    image = None
    auto_remove = False
    i = 0
    while i < len(args):
        tok = args[i]
        if tok == "-d":
            i += 1
            continue
        if tok == "--rm":
            auto_remove = True
            i += 1
            continue
        if tok in VALUE_FLAGS:
            if i + 1 >= len(args):
                die(f"missing value for {tok}")
            if tok == "--name":
                name = args[i + 1]
            i += 2
            continue
        image = tok
        break
    if not name or not image:
        die("invalid run command")
    if name in state["containers"]:
        die(f'Conflict. The container name "/{name}" is already in use', 125)
    if image not in state["images"]:
        die(f"Unable to find image '{image}' locally", 125)
    cid = f"{state['next_id']:012x}" + "f" * 52
    state["next_id"] += 1
    vanish = os.environ.get("FAKE_DOCKER_VANISH") == "1"
    crash = os.environ.get("FAKE_DOCKER_CRASH") == "1"
    if not (vanish and auto_remove):
        state["containers"][name] = {
            "id": cid,
            "image": image,
            "running": not crash,
            "auto_remove": auto_remove,
            "logs": "agent: fatal startup error" if crash or vanish else "agent listening on 3000",
        }
    save_state(state)
    print(cid)
    return 0


def handle_ps(args, state):
    show_all = "-a" in args
    prefix = ""
    if "--filter" in args:
        flt = args[args.index("--filter") + 1]
        if flt.startswith("name="):
            prefix = flt[len("name="):]
    for name, info in sorted(state["containers"].items()):
        if prefix and prefix not in name:
            continue
        if show_all or info["running"]:
            print(info["id"][:12])
    return 0


def main():
    argv = sys.argv[1:]
    if LOG_PATH:
        with open(LOG_PATH, "a") as f:
            f.write(json.dumps(argv) + "\\n")
    if not argv:
        die("missing command")
    # Serialise concurrent invocations on the state file.
    lock = open(STATE_PATH + ".lock", "w")
    fcntl.flock(lock, fcntl.LOCK_EX)
    state = load_state()
    cmd = argv[0]

    if cmd == "--version":
        print("Docker version 24.0.7, build afdd53b")
        return 0

    if cmd == "info":
        err = os.environ.get("FAKE_DOCKER_INFO_ERROR")
        if err:
            die(err)
        print(json.dumps({"ServerVersion": "24.0.7", "OSType": "linux", "Architecture": "x86_64"}))
        return 0

    if cmd == "run":
        return handle_run(argv[1:], state)

    if cmd == "ps":
        return handle_ps(argv[1:], state)

    if cmd == "inspect":
        ref = argv[-1]
        name = lookup(state, ref)
        if name is None:
            die(f"Error: No such object: {ref}")
        print("true" if state["containers"][name]["running"] else "false")
        return 0

    if cmd == "logs":
        name = lookup(state, argv[-1])
        if name is None:
            die(f"Error: No such container: {argv[-1]}")
        print(state["containers"][name]["logs"])
        return 0

    if cmd == "stop":
        refs = argv[1:]
        if refs[:1] == ["-t"]:
            refs = refs[2:]
        for ref in refs:
            name = lookup(state, ref)
            if name is None:
                die(f"Error response from daemon: No such container: {ref}")
            if state["containers"][name]["auto_remove"]:
                del state["containers"][name]
            else:
                state["containers"][name]["running"] = False
            print(ref)
        save_state(state)
        return 0

    if cmd == "rm":
        refs = [a for a in argv[1:] if not a.startswith("-")]
        missing = []
        for ref in refs:
            name = lookup(state, ref)
            if name is None:
                missing.append(ref)
                continue
            del state["containers"][name]
            print(ref)
        save_state(state)
        if missing:
            die(f"Error response from daemon: No such container: {missing[0]}")
        return 0

    if cmd == "image" and argv[1:2] == ["inspect"]:
        if argv[2] in state["images"]:
            print("[{}]")
            return 0
        die(f"Error: No such image: {argv[2]}")

    if cmd == "pull":
        state["images"].append(argv[1])
        save_state(state)
        return 0

    die(f"unsupported command: {cmd}")


if __name__ == "__main__":
    sys.exit(main())
"""


_FAKE_BROWSER_SCRIPT = """
import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

port = None
for arg in sys.argv[1:]:
    if arg.startswith("--remote-debugging-port="):
        port = int(arg.split("=", 1)[1])
if port is None:
    sys.exit(2)

if os.environ.get("FAKE_BROWSER_NO_CDP") == "1":
    time.sleep(3600)
    sys.exit(0)


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        if self.path == "/json/version":
            body = {
                "Browser": "FakeChrome/120.0.0.0",
                "webSocketDebuggerUrl": f"ws://127.0.0.1:{port}/devtools/browser/fake-id",
            }
        elif self.path == "/json":
            body = [{"id": "page-1", "type": "page", "url": "about:blank"}]
        else:
            self.send_response(404)
            self.end_headers()
            return
        data = json.dumps(body).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, *args):
        pass


HTTPServer(("127.0.0.1", port), Handler).serve_forever()
"""


def _write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    """A `docker` CLI backed by a JSON state file; the only binary on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    _write_script(bin_dir / "docker", _FAKE_DOCKER_SCRIPT)

    state_file = tmp_path / "fake-docker-state.json"
    log_file = tmp_path / "fake-docker-calls.jsonl"

    monkeypatch.setenv("PATH", str(bin_dir))
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_file))
    monkeypatch.setenv("FAKE_DOCKER_LOG", str(log_file))
    for knob in ("FAKE_DOCKER_CRASH", "FAKE_DOCKER_VANISH", "FAKE_DOCKER_INFO_ERROR"):
        monkeypatch.delenv(knob, raising=False)

    return {
        "tmp_path": tmp_path,
        "bin_dir": bin_dir,
        "state_file": state_file,
        "log_file": log_file,
    }


@pytest.fixture
def fake_browser(tmp_path: Path) -> Path:
    bin_dir = tmp_path / "browser-bin"
    bin_dir.mkdir(exist_ok=True)
    return _write_script(bin_dir / "fake-chrome", _FAKE_BROWSER_SCRIPT)


@pytest.fixture
def free_port() -> int:
    return find_available_port(45000, 45999)


def load_state(state_file: Path) -> dict:
    if not state_file.exists():
        return {"containers": {}}
    return json.loads(state_file.read_text())


def seed_containers(state_file: Path, names: list[str], running: bool = True) -> None:
    state = load_state(state_file)
    state.setdefault("images", ["gnunae/sandbox:latest"])
    state.setdefault("next_id", 100)
    for name in names:
        cid = f"{state['next_id']:012x}" + "e" * 52
        state["next_id"] += 1
        state["containers"][name] = {
            "id": cid,
            "image": "gnunae/sandbox:latest",
            "running": running,
            "auto_remove": False,
            "logs": "",
        }
    state_file.write_text(json.dumps(state))

