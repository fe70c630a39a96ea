"""Test doubles shared across the suite: notifier, phase hook, probes."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from caplife.db_plans import MigrationPlan, Phase
from caplife.health import ProbeContext, ProbeOutcome
from caplife.notify import Notice


class RecordingNotifier:
    """Collects every notice; raises ``ConnectionError`` for recipients in *fail_for*."""

    def __init__(self, fail_for: Iterable[str] = ()) -> None:
        self.fail_for = set(fail_for)
        self.sent: list[Notice] = []
        self.attempts: list[Notice] = []

    def send(self, notice: Notice) -> None:
        self.attempts.append(notice)
        if notice.recipient in self.fail_for:
            msg = f"mailbox unavailable for {notice.recipient}"
            raise ConnectionError(msg)
        self.sent.append(notice)

    def recipients(self) -> list[str]:
        return [n.recipient for n in self.sent]


class FailingHook:
    """Phase hook that raises for the listed phases, *times* times each."""

    def __init__(self, *phases: str, times: int = 1) -> None:
        self.remaining = dict.fromkeys(phases, times)
        self.calls: list[str] = []

    def run(self, plan: MigrationPlan, phase: Phase) -> None:
        self.calls.append(phase.id)
        if self.remaining.get(phase.id, 0) > 0:
            self.remaining[phase.id] -= 1
            msg = f"injected failure in {phase.id}"
            raise RuntimeError(msg)


class VersionGateProbe:
    """Fails for the listed template versions, passes otherwise."""

    name = "version_gate"

    def __init__(self, bad_versions: Iterable[int]) -> None:
        self.bad_versions = set(bad_versions)

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        if ctx.template.version in self.bad_versions:
            return ProbeOutcome("fail", f"v{ctx.template.version} is broken")
        return ProbeOutcome("pass", "ok")


class StaticProbe:
    def __init__(self, name: str, status: str) -> None:
        self.name = name
        self.status = status

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        return ProbeOutcome(self.status, f"{self.name} {self.status}")


class BlockingProbe:
    """Never finishes until ``release`` is set."""

    name = "blocking"

    def __init__(self) -> None:
        self.release = threading.Event()

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        self.release.wait(30)
        return ProbeOutcome("pass", "released")


class ExplodingProbe:
    name = "exploding"

    def check(self, ctx: ProbeContext) -> ProbeOutcome:
        msg = "probe crashed"
        raise RuntimeError(msg)
