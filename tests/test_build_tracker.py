import asyncio

import pytest

from appforge_engine.build_tracker import BuildStatusTracker, PollPolicy
from appforge_engine.clock import CancelToken
from appforge_engine.errors import PollError, RateLimitError
from appforge_engine.models import BuildArtifact, BuildStatus, BuildStatusSnapshot

from conftest import FakeClock, T0, make_handle


class ScriptedBuildService:
    """Returns (or raises) the scripted items in order, repeating the last one."""

    def __init__(self, script, artifacts=None):
        self.script = list(script)
        self.artifacts = artifacts
        self.polls = 0

    async def get_build_status(self, build_id, attempt=0):
        item = self.script[min(self.polls, len(self.script) - 1)]
        self.polls += 1
        if isinstance(item, Exception):
            raise item
        return BuildStatusSnapshot(build_id=build_id, status=item, started_at=T0, attempt=attempt)

    async def list_artifacts(self, build_id):
        if isinstance(self.artifacts, Exception):
            raise self.artifacts
        return self.artifacts or []


def track(service, policy, clock=None, cancel_token=None, on_snapshot=None):
    tracker = BuildStatusTracker(service, policy=policy, clock=clock or FakeClock())
    return asyncio.run(tracker.track(make_handle(), cancel_token=cancel_token, on_snapshot=on_snapshot))


def test_never_terminal_ends_in_timeout_not_failed():
    service = ScriptedBuildService([BuildStatus.QUEUED, BuildStatus.BUILDING])
    seen = []

    final = track(service, PollPolicy(initial_delay=5, interval=10, max_attempts=3, deadline=None),
                  on_snapshot=seen.append)

    assert final.status == BuildStatus.TIMEOUT
    assert final.status != BuildStatus.FAILED
    assert service.polls == 3
    assert [s.status for s in seen] == [BuildStatus.QUEUED, BuildStatus.BUILDING, BuildStatus.BUILDING,
                                        BuildStatus.TIMEOUT]
    assert final.started_at == T0


def test_success_snapshot_carries_artifacts():
    apk = BuildArtifact(name="app-release.apk", url="https://x/apk", size=5, checksum="c")
    service = ScriptedBuildService([BuildStatus.QUEUED, BuildStatus.BUILDING, BuildStatus.SUCCESS], artifacts=[apk])
    clock = FakeClock()
    seen = []

    final = track(service, PollPolicy(initial_delay=5, interval=45, max_attempts=10), clock=clock,
                  on_snapshot=seen.append)

    assert final.status == BuildStatus.SUCCESS
    assert final.artifacts == (apk,)
    assert seen[-1] is final
    assert [s.attempt for s in seen] == [1, 2, 3]
    assert clock.sleeps == [5, 45, 45]


def test_artifact_listing_failure_downgrades_to_warning():
    service = ScriptedBuildService([BuildStatus.SUCCESS], artifacts=PollError("listing broke", transient=True))

    final = track(service, PollPolicy(initial_delay=0, interval=1, max_attempts=3))

    assert final.status == BuildStatus.SUCCESS
    assert final.artifacts == ()
    assert "listing broke" in final.warning


def test_failed_build_is_reported_as_failed():
    service = ScriptedBuildService([BuildStatus.BUILDING, BuildStatus.FAILED])
    final = track(service, PollPolicy(initial_delay=0, interval=1, max_attempts=10))
    assert final.status == BuildStatus.FAILED


def test_isolated_poll_errors_are_tolerated():
    service = ScriptedBuildService([PollError("blip", transient=True), BuildStatus.BUILDING,
                                    PollError("blip", transient=True), PollError("blip", transient=True),
                                    BuildStatus.SUCCESS])
    final = track(service, PollPolicy(initial_delay=0, interval=1, max_attempts=10, max_consecutive_errors=3))
    assert final.status == BuildStatus.SUCCESS
    assert service.polls == 5


def test_consecutive_poll_errors_raise_poll_error():
    service = ScriptedBuildService([PollError("down", transient=True)])
    with pytest.raises(PollError, match="3 times in a row") as exc_info:
        track(service, PollPolicy(initial_delay=0, interval=1, max_attempts=10, max_consecutive_errors=3))
    assert exc_info.value.transient is True
    assert service.polls == 3


def test_rate_limit_error_propagates_unchanged():
    error = RateLimitError("codemagic rate limit exceeded", service="codemagic")
    with pytest.raises(RateLimitError) as exc_info:
        track(ScriptedBuildService([error]), PollPolicy(initial_delay=0, interval=1, max_attempts=10))
    assert exc_info.value is error


def test_deadline_ends_in_timeout_before_attempts_run_out():
    service = ScriptedBuildService([BuildStatus.BUILDING])
    final = track(service, PollPolicy(initial_delay=0, interval=45, max_attempts=100, deadline=100))

    assert final.status == BuildStatus.TIMEOUT
    # polls at t=0, 45 and 90; the check at t=135 is past the deadline
    assert service.polls == 3
    assert "100" in final.warning


def test_cancel_token_stops_polling_between_polls():
    service = ScriptedBuildService([BuildStatus.BUILDING])
    token = CancelToken()

    def cancel_after_first(snapshot):
        token.cancel("user stop")

    final = track(service, PollPolicy(initial_delay=0, interval=10, max_attempts=10), cancel_token=token,
                  on_snapshot=cancel_after_first)

    assert service.polls == 1
    assert final.status == BuildStatus.BUILDING
