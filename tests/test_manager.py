"""Sandbox lifecycle against a mocked `docker` CLI."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import load_state, make_config, read_calls, seed_containers
from sandbox_bridge.errors import (
    InstanceNotFound,
    InvalidSandboxConfig,
    LaunchCrashed,
    RuntimeUnavailable,
    SandboxCreateError,
    SandboxError,
)
from sandbox_bridge.events import (
    EventBus,
    InstanceCreated,
    InstanceErrored,
    InstanceStarted,
    InstanceStopped,
    RuntimeDetected,
)
from sandbox_bridge.manager import SandboxInstance, SandboxManager, SandboxOptions
from sandbox_bridge.platforms import LinuxHost
from sandbox_bridge.ports import PortSet


def _config(tmp_path: Path, free_port: int, **overrides):
    return make_config(
        tmp_path, port_range_start=free_port, port_range_end=free_port + 200, **overrides
    )


def _manager(config, events: EventBus | None = None) -> SandboxManager:
    return SandboxManager(config=config, events=events or EventBus(), platform=LinuxHost())


def _run_calls(log_file: Path) -> list[list[str]]:
    return [c for c in read_calls(log_file) if c and c[0] == "run"]


def _flag_values(args: list[str], flag: str) -> list[str]:
    return [args[i + 1] for i, a in enumerate(args[:-1]) if a == flag]


# ── Create ───────────────────────────────────────────────────────────────


def test_create_headless_publishes_loopback_ports(fake_docker, tmp_path, free_port):
    events = EventBus()
    seen: list = []
    events.add_observer(seen.append)
    mgr = _manager(_config(tmp_path, free_port), events)

    async def scenario():
        assert await mgr.initialize() is True
        try:
            return (await mgr.create()).snapshot()
        finally:
            await mgr.shutdown()

    instance = asyncio.run(scenario())

    assert instance.id == "sandbox-1"
    assert instance.status == "running"
    assert instance.container_name.startswith("gnunae-sandbox-1-")
    assert instance.ports.cdp is not None and instance.ports.cdp != instance.ports.api
    assert instance.health is not None and instance.health.healthy

    args = _run_calls(fake_docker["log_file"])[0]
    assert "--rm" in args
    assert _flag_values(args, "--stop-timeout") == ["3"]
    published = _flag_values(args, "-p")
    assert f"127.0.0.1:{instance.ports.api}:3000" in published
    assert f"127.0.0.1:{instance.ports.cdp}:9222" in published
    assert all(p.startswith("127.0.0.1:") for p in published)
    env = _flag_values(args, "-e")
    assert "BROWSER_MODE=headless" in env
    assert "START_BROWSER=true" in env
    assert args[-1] == "gnunae/sandbox:latest"

    kinds = [type(e) for e in seen]
    assert kinds[:3] == [RuntimeDetected, InstanceCreated, InstanceStarted]


def test_same_name_create_is_idempotent(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            first = await mgr.create(SandboxOptions(name="gnunae-fixed"))
            first_ports = first.ports
            second = await mgr.create(SandboxOptions(name="gnunae-fixed"))
            return first, first_ports, second, mgr.instance_count, set(mgr.allocator.allocated)
        finally:
            await mgr.shutdown()

    first, first_ports, second, count, allocated = asyncio.run(scenario())

    assert count == 1
    assert first.id != second.id
    assert second.container_name == "gnunae-fixed"
    assert allocated == set(second.ports.all())
    for port in set(first_ports.all()) - set(second.ports.all()):
        assert port not in allocated
    state = load_state(fake_docker["state_file"])
    assert list(state["containers"]) == []  # shutdown removed it


def test_concurrent_creates_get_disjoint_ports(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            instances = await asyncio.gather(*(mgr.create() for _ in range(3)))
            return instances
        finally:
            await mgr.shutdown()

    instances = asyncio.run(scenario())
    ports: list[int] = []
    for inst in instances:
        ports.extend(inst.ports.all())
    assert len(ports) == len(set(ports)) == 6
    assert len({i.id for i in instances}) == 3


def test_destroy_releases_ports_for_reuse(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            inst = await mgr.create()
            ports = set(inst.ports.all())
            steps = await mgr.destroy(inst.id)
            return ports, steps, set(mgr.allocator.allocated), mgr.find(inst.id)
        finally:
            await mgr.shutdown()

    ports, steps, allocated, found = asyncio.run(scenario())

    assert found is None
    assert allocated.isdisjoint(ports)
    assert steps[0].step == "stop" and steps[0].ok


def test_destroy_twice_is_a_noop(fake_docker, tmp_path, free_port):
    events = EventBus()
    seen: list = []
    events.add_observer(seen.append)
    mgr = _manager(_config(tmp_path, free_port), events)

    async def scenario():
        await mgr.initialize()
        try:
            inst = await mgr.create()
            await mgr.destroy(inst.id)
            calls_after_first = len(read_calls(fake_docker["log_file"]))
            second = await mgr.destroy(inst.id)
            return calls_after_first, second
        finally:
            await mgr.shutdown()

    calls_after_first, second = asyncio.run(scenario())

    assert second == []
    assert len(read_calls(fake_docker["log_file"])) == calls_after_first
    assert sum(isinstance(e, InstanceStopped) for e in seen) == 1


def test_destroy_unknown_id_makes_no_runtime_call(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        before = len(read_calls(fake_docker["log_file"]))
        try:
            return before, await mgr.destroy("sandbox-404")
        finally:
            await mgr.shutdown()

    before, steps = asyncio.run(scenario())
    assert steps == []
    assert len(read_calls(fake_docker["log_file"])) == before


def test_crash_after_start_rolls_back(fake_docker, tmp_path, free_port, monkeypatch):
    monkeypatch.setenv("FAKE_DOCKER_CRASH", "1")
    events = EventBus()
    seen: list = []
    events.add_observer(seen.append)
    mgr = _manager(_config(tmp_path, free_port), events)

    async def scenario():
        await mgr.initialize()
        try:
            with pytest.raises(LaunchCrashed) as exc:
                await mgr.create()
            return exc.value, mgr.instance_count, set(mgr.allocator.allocated)
        finally:
            await mgr.shutdown()

    err, count, allocated = asyncio.run(scenario())

    assert "crashed immediately" in err.reason
    assert "agent: fatal startup error" in err.logs
    assert err.instance is not None and err.instance.status == "error"
    assert count == 0
    assert allocated == set()
    errored = [e for e in seen if isinstance(e, InstanceErrored)]
    assert len(errored) == 1 and errored[0].instance.id == err.instance.id


def test_container_vanishing_before_inspect(fake_docker, tmp_path, free_port, monkeypatch):
    monkeypatch.setenv("FAKE_DOCKER_VANISH", "1")
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            with pytest.raises(LaunchCrashed) as exc:
                await mgr.create()
            return exc.value, set(mgr.allocator.allocated)
        finally:
            await mgr.shutdown()

    err, allocated = asyncio.run(scenario())
    assert "exited immediately" in err.reason
    assert err.logs == ""
    assert allocated == set()


def test_run_failure_reports_stderr(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port, image="gnunae/missing:latest"))

    async def scenario():
        await mgr.initialize()
        try:
            with pytest.raises(LaunchCrashed) as exc:
                await mgr.create()
            return exc.value, mgr.instance_count
        finally:
            await mgr.shutdown()

    err, count = asyncio.run(scenario())
    assert "Unable to find image" in err.reason
    assert count == 0


def test_unexpected_error_is_wrapped(tmp_path, free_port, monkeypatch):
    import sandbox_bridge.manager as mm

    async def fake_run(cmd, timeout=30.0, input_data=None):
        if cmd[1] == "run":
            raise ValueError("boom")
        return 1, "", "No such container"

    monkeypatch.setattr(mm, "_run", fake_run)
    mgr = _manager(_config(tmp_path, free_port))
    mgr._command = "docker"

    with pytest.raises(SandboxCreateError) as exc:
        asyncio.run(mgr.create())

    assert isinstance(exc.value.__cause__, ValueError)
    assert mgr.instance_count == 0
    assert mgr.allocator.allocated == set()


def test_create_requires_runtime(tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))
    with pytest.raises(RuntimeUnavailable):
        asyncio.run(mgr.create())


def test_non_headless_requires_endpoint(tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))
    mgr._command = "docker"
    with pytest.raises(InvalidSandboxConfig):
        asyncio.run(mgr.create(SandboxOptions(browser_mode="external-cdp")))
    with pytest.raises(InvalidSandboxConfig):
        asyncio.run(mgr.create(SandboxOptions(browser_mode="turbo")))  # type: ignore[arg-type]
    assert mgr.allocator.allocated == set()


def test_max_instances(tmp_path, free_port, monkeypatch):
    import sandbox_bridge.manager as mm

    async def fake_run(cmd, timeout=30.0, input_data=None):
        if cmd[1] == "run":
            return 0, "abc123\n", ""
        if cmd[1] == "inspect":
            return 0, "true\n", ""
        return 0, "", ""

    monkeypatch.setattr(mm, "_run", fake_run)
    mgr = _manager(_config(tmp_path, free_port, max_instances=2))
    mgr._command = "docker"

    async def scenario():
        await mgr.create()
        await mgr.create()
        with pytest.raises(SandboxError, match="Maximum number of instances"):
            await mgr.create()

    asyncio.run(scenario())
    assert mgr.instance_count == 2


def test_same_name_create_at_capacity(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port, max_instances=1))

    async def scenario():
        await mgr.initialize()
        try:
            first = await mgr.create(SandboxOptions(name="gnunae-x"))
            second = await mgr.create(SandboxOptions(name="gnunae-x"))
            with pytest.raises(SandboxError, match="Maximum number of instances"):
                await mgr.create(SandboxOptions(name="gnunae-y"))
            return first, second, [i.id for i in mgr.list_instances()]
        finally:
            await mgr.shutdown()

    first, second, ids = asyncio.run(scenario())
    assert ids == [second.id]
    assert first.id != second.id


def test_get_unknown_raises(tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))
    with pytest.raises(InstanceNotFound):
        mgr.get("sandbox-9")
    assert mgr.find("sandbox-9") is None


# ── Supervision / cleanup ────────────────────────────────────────────────


def test_health_check_detects_stopped_container(fake_docker, tmp_path, free_port):
    events = EventBus()
    seen: list = []
    events.add_observer(seen.append)
    mgr = _manager(_config(tmp_path, free_port), events)
    state_file = fake_docker["state_file"]

    async def scenario():
        await mgr.initialize()
        try:
            inst = await mgr.create()
            assert await mgr.check_instance_health(inst) is True
            state = load_state(state_file)
            state["containers"][inst.container_name]["running"] = False
            state_file.write_text(json.dumps(state))
            healthy = await mgr.check_instance_health(inst)
            return inst, healthy
        finally:
            await mgr.shutdown()

    inst, healthy = asyncio.run(scenario())
    assert healthy is False
    assert inst.health is not None and not inst.health.healthy
    assert any(isinstance(e, InstanceStopped) and e.instance.status == "stopped" for e in seen)


def test_health_check_survives_daemon_hiccup(tmp_path, free_port, monkeypatch):
    import sandbox_bridge.manager as mm

    inspect_results = [(0, "true\n", "")]

    async def fake_run(cmd, timeout=30.0, input_data=None):
        if cmd[1] == "run":
            return 0, "abc123\n", ""
        if cmd[1] == "inspect":
            return inspect_results[-1]
        return 0, "", ""

    monkeypatch.setattr(mm, "_run", fake_run)
    events = EventBus()
    seen: list = []
    events.add_observer(seen.append)
    mgr = _manager(_config(tmp_path, free_port), events)
    mgr._command = "docker"

    async def scenario():
        inst = await mgr.create()
        inspect_results.append(
            (1, "", "Cannot connect to the Docker daemon at unix:///var/run/docker.sock.")
        )
        during = await mgr.check_instance_health(inst)
        status_during = inst.status
        inspect_results.append((0, "true\n", ""))
        after = await mgr.check_instance_health(inst)
        return inst, during, status_during, after

    inst, during, status_during, after = asyncio.run(scenario())
    assert during is False
    assert status_during == "running"
    assert after is True
    assert inst.status == "running" and inst.health.healthy
    assert not any(isinstance(e, InstanceStopped) for e in seen)


def test_health_check_flips_when_container_is_gone(tmp_path, free_port, monkeypatch):
    import sandbox_bridge.manager as mm

    inspect_results = [(0, "true\n", "")]

    async def fake_run(cmd, timeout=30.0, input_data=None):
        if cmd[1] == "run":
            return 0, "abc123\n", ""
        if cmd[1] == "inspect":
            return inspect_results[-1]
        return 0, "", ""

    monkeypatch.setattr(mm, "_run", fake_run)
    mgr = _manager(_config(tmp_path, free_port))
    mgr._command = "docker"

    async def scenario():
        inst = await mgr.create()
        inspect_results.append((1, "", f"Error: No such container: {inst.container_name}"))
        return inst, await mgr.check_instance_health(inst)

    inst, healthy = asyncio.run(scenario())
    assert healthy is False
    assert inst.status == "stopped"


def test_cleanup_orphans_removes_only_prefixed(fake_docker, tmp_path, free_port):
    state_file = fake_docker["state_file"]
    seed_containers(state_file, ["gnunae-sandbox-1-111", "gnunae-sandbox-2-222"], running=False)
    seed_containers(state_file, ["unrelated-db"])
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            return await mgr.cleanup_orphaned_instances()
        finally:
            await mgr.shutdown()

    steps = asyncio.run(scenario())

    assert steps[0].step == "list" and steps[0].detail == "2 found"
    assert [s.step for s in steps[1:]] == ["rm", "rm"]
    assert all(s.ok for s in steps)
    assert list(load_state(state_file)["containers"]) == ["unrelated-db"]


def test_cleanup_orphans_without_runtime_is_empty(tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))
    assert asyncio.run(mgr.cleanup_orphaned_instances()) == []


def test_shutdown_destroys_everything(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        await mgr.create()
        await mgr.create()
        return await mgr.shutdown()

    steps = asyncio.run(scenario())
    assert mgr.instance_count == 0
    assert mgr.allocator.allocated == set()
    assert sum(1 for s in steps if s.step == "stop" and s.ok) == 2
    assert load_state(fake_docker["state_file"])["containers"] == {}


def test_logs_and_image_helpers(fake_docker, tmp_path, free_port):
    mgr = _manager(_config(tmp_path, free_port))

    async def scenario():
        await mgr.initialize()
        try:
            inst = await mgr.create()
            return await mgr.logs(inst.id, tail=10), await mgr.is_image_available()
        finally:
            await mgr.shutdown()

    output, has_image = asyncio.run(scenario())
    assert "agent listening" in output
    assert has_image is True


# ── Run arguments ────────────────────────────────────────────────────────


def _instance(mode="headless", endpoint=None, ports=None) -> SandboxInstance:
    return SandboxInstance(
        id="sandbox-1",
        container_name="gnunae-sandbox-1-1",
        ports=ports or PortSet(api=10001, cdp=10000),
        browser_mode=mode,
        external_cdp_endpoint=endpoint,
    )


def test_credential_mount_only_when_file_exists(tmp_path):
    config = make_config(tmp_path)
    mgr = _manager(config)

    args = mgr.build_run_args(_instance(), SandboxOptions())
    assert not any(v.endswith(":ro") for v in _flag_values(args, "-v"))

    cred_dir = Path(config.credential_dir)
    cred_dir.mkdir(parents=True)
    (cred_dir / "auth.json").write_text("{}")
    (cred_dir / "history.jsonl").write_text("")

    args = mgr.build_run_args(_instance(), SandboxOptions())
    mounts = _flag_values(args, "-v")
    assert mounts == [f"{cred_dir / 'auth.json'}:/home/sandbox/.codex/auth.json:ro"]

    args = mgr.build_run_args(_instance(), SandboxOptions(mount_credentials=False))
    assert _flag_values(args, "-v") == []


def test_bridged_mode_args_on_linux(tmp_path):
    mgr = _manager(make_config(tmp_path))
    endpoint = "ws://host.docker.internal:9223/devtools/browser/x"

    args = mgr.build_run_args(
        _instance("host-bridged-cdp", endpoint, PortSet(api=10005)),
        SandboxOptions(browser_mode="host-bridged-cdp", external_cdp_endpoint=endpoint),
    )

    assert _flag_values(args, "--add-host") == ["host.docker.internal:host-gateway"]
    assert _flag_values(args, "-p") == ["127.0.0.1:10005:3000"]
    env = _flag_values(args, "-e")
    assert f"EXTERNAL_CDP_ENDPOINT={endpoint}" in env
    assert "START_BROWSER=false" in env
    assert "BROWSER_MODE=host-bridged-cdp" in env


def test_headless_mode_has_no_host_alias(tmp_path):
    mgr = _manager(make_config(tmp_path))
    args = mgr.build_run_args(_instance(), SandboxOptions())
    assert "--add-host" not in args
    assert _flag_values(args, "--security-opt") == ["seccomp=unconfined"]


def test_vnc_ports_and_overrides(tmp_path):
    mgr = _manager(make_config(tmp_path, extra_env={"LOG_LEVEL": "debug"}))
    ports = PortSet(api=10001, cdp=10000, vnc=10002, no_vnc=10003)

    args = mgr.build_run_args(
        _instance(ports=ports),
        SandboxOptions(memory="4g", cpus="1", env={"FOO": "bar"}, volumes=["/data:/data"]),
    )

    published = _flag_values(args, "-p")
    assert "127.0.0.1:10002:5900" in published
    assert "127.0.0.1:10003:6080" in published
    assert _flag_values(args, "--memory") == ["4g"]
    assert _flag_values(args, "--cpus") == ["1"]
    env = _flag_values(args, "-e")
    assert "VNC_ENABLED=true" in env
    assert "FOO=bar" in env and "LOG_LEVEL=debug" in env
    assert "/data:/data" in _flag_values(args, "-v")

