"""ClockDriver: background ticking against a real project database."""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

import pytest

from caplife.engine import LifecycleEngine
from caplife.scheduler import ClockDriver


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestClockDriver:
    @pytest.mark.parametrize("interval", [0, -1.0])
    def test_interval_must_be_positive(self, interval: float) -> None:
        with pytest.raises(ValueError, match="positive"):
            ClockDriver(lambda: None, interval_seconds=interval)  # type: ignore[arg-type,return-value]

    def test_ticks_until_stopped(self, caplife_project: Path) -> None:
        driver = ClockDriver(lambda: LifecycleEngine.from_project(caplife_project), interval_seconds=0.01)
        driver.start()
        try:
            assert _wait_for(lambda: driver.ticks >= 3)
            assert driver.running
        finally:
            driver.stop()
        assert not driver.running
        settled = driver.ticks
        time.sleep(0.05)
        assert driver.ticks == settled

    def test_start_twice_is_harmless(self, caplife_project: Path) -> None:
        driver = ClockDriver(lambda: LifecycleEngine.from_project(caplife_project), interval_seconds=0.01)
        driver.start()
        try:
            driver.start()
            assert driver.running
        finally:
            driver.stop()

    def test_retires_in_background(self, caplife_project: Path) -> None:
        with LifecycleEngine.from_project(caplife_project) as setup:
            setup.db.create_capability("Web", capability_id="cap-web")
            setup.register("cap-web", "web", {"env": "string"}, ["build"], template_id="tpl-web")
            setup.deprecations.create_plan("tpl-web", "replaced", 0)

        driver = ClockDriver(lambda: LifecycleEngine.from_project(caplife_project), interval_seconds=0.01)
        driver.start()
        try:
            assert _wait_for(lambda: driver.ticks >= 1)
        finally:
            driver.stop()
        with LifecycleEngine.from_project(caplife_project) as check:
            assert check.db.get_template("tpl-web").status == "retired"
