"""Integration tests against a real Docker or Podman engine.

Requires a running engine and the sandbox image pulled locally.
Skipped automatically when unavailable.

Run: pytest tests/test_integration.py -v
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess

import pytest

from conftest import make_config
from sandbox_bridge.config import DEFAULT_IMAGE
from sandbox_bridge.manager import SandboxManager
from sandbox_bridge.platforms import current_platform
from sandbox_bridge.runtime import RuntimeDetector


def _engine() -> str | None:
    for engine in ("docker", "podman"):
        if not shutil.which(engine):
            continue
        r = subprocess.run(
            [engine, "image", "inspect", DEFAULT_IMAGE], capture_output=True, timeout=10
        )
        if r.returncode == 0:
            return engine
    return None


_ENGINE = _engine()
pytestmark = pytest.mark.skipif(
    _ENGINE is None, reason=f"no container engine with {DEFAULT_IMAGE} available"
)


def test_detects_engine():
    info = asyncio.run(RuntimeDetector(current_platform()).detect(preferred=_ENGINE))
    assert info.available
    assert info.engine_kind == _ENGINE


def test_create_and_destroy(tmp_path):
    config = make_config(tmp_path, preferred_runtime=_ENGINE, settle_delay=2.0)
    mgr = SandboxManager(config=config)

    async def scenario():
        assert await mgr.initialize()
        try:
            inst = await mgr.create()
            healthy = await mgr.check_instance_health(inst)
            steps = await mgr.destroy(inst.id)
            return inst, healthy, steps
        finally:
            await mgr.shutdown()

    inst, healthy, steps = asyncio.run(scenario())
    assert healthy is True
    assert steps[0].ok
    r = subprocess.run(
        [_ENGINE, "ps", "-a", "-q", "--filter", f"name={inst.container_name}"],
        capture_output=True,
        text=True,
        timeout=10,
    )
    assert r.stdout.strip() == ""
