"""pytest integration.

Fixtures:
    core_config: the harness configuration (session scope)
    core_node: a running core process for one test, killed at teardown

Marker:
    @pytest.mark.lc_core(args=[...], env={...}, ready_pattern=..., timeout_ms=...)
        options for the core_node fixture of the marked test

When a test using core_node fails, the buffered output of the core process is
written to stderr (unless it was already displayed live with MOONBEAM_LOG).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Generator
from typing import Any

import pytest
import pytest_asyncio

from .config import Config, get_config
from .harness import launch_core
from .runtime.readiness import DEFAULT_READINESS_PATTERN
from .runtime.types import ProcessHandle

__all__ = ["core_config", "core_node"]

logger = logging.getLogger(__name__)

_MARKER_OPTIONS = frozenset({"args", "env", "ready_pattern", "timeout_ms"})


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "lc_core(args=(), env=None, ready_pattern=None, timeout_ms=None): "
        "options for the core_node fixture",
    )


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo) -> Generator[None, Any, None]:
    """Keep each phase report on the item (rep_setup, rep_call, rep_teardown)."""
    outcome = yield
    report = outcome.get_result()
    setattr(item, f"rep_{report.when}", report)


def _marker_options(request: pytest.FixtureRequest) -> dict[str, Any]:
    marker = request.node.get_closest_marker("lc_core")
    if marker is None:
        return {}
    unknown = set(marker.kwargs) - _MARKER_OPTIONS
    if unknown:
        raise pytest.UsageError(f"unknown lc_core marker options: {sorted(unknown)}")
    return dict(marker.kwargs)


@pytest.fixture(scope="session")
def core_config() -> Config:
    """Harness configuration, resolved once for the whole session."""
    config = get_config()
    if config.debug_mode:
        logging.getLogger("lc_core_harness").setLevel(logging.DEBUG)
    logger.debug(f"Harness configuration: {config!r}")
    return config


@pytest_asyncio.fixture
async def core_node(
    request: pytest.FixtureRequest,
    core_config: Config,
) -> AsyncIterator[ProcessHandle]:
    """A running core process, torn down after the test."""
    options = _marker_options(request)

    async with launch_core(
        core_config,
        args=options.get("args", ()),
        env=options.get("env"),
        ready_pattern=options.get("ready_pattern") or DEFAULT_READINESS_PATTERN,
        timeout_ms=options.get("timeout_ms"),
    ) as handle:
        yield handle

        report = getattr(request.node, "rep_call", None)
        if report is not None and report.failed and handle.router is not None:
            handle.router.dump(f"{request.node.nodeid} failed")
