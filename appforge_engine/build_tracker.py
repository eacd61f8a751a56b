from dataclasses import dataclass, replace
from typing import Callable, Optional

from .clock import CancelToken, Clock
from .errors import PipelineError, PollError, RateLimitError
from .logger_setup import logger
from .models import BuildHandle, BuildStatus, BuildStatusSnapshot

SnapshotCallback = Callable[[BuildStatusSnapshot], None]


@dataclass
class PollPolicy:
    initial_delay: float = 10.0
    interval: float = 45.0
    max_attempts: int = 40
    deadline: Optional[float] = 3600.0  # seconds since tracking started, None to rely on max_attempts only
    max_consecutive_errors: int = 3


@dataclass
class PollState:
    handle: BuildHandle
    cancel_token: Optional[CancelToken] = None
    attempt: int = 0
    consecutive_errors: int = 0
    last_snapshot: Optional[BuildStatusSnapshot] = None
    started_monotonic: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


class BuildStatusTracker:
    """Polls one build until it reaches success, failed or timeout.

    queued -> building -> {success, failed}, with timeout once the attempt cap
    or the deadline is reached without a terminal status. A success snapshot
    always carries its artifacts; if listing them fails the snapshot carries
    an empty list and a warning instead. Returns early with the last snapshot
    seen (non-terminal) when the cancel token is set between polls.
    """

    def __init__(self, build_service, policy: Optional[PollPolicy] = None, clock: Optional[Clock] = None):
        self.build_service = build_service
        self.policy = policy or PollPolicy()
        self.clock = clock or Clock()

    def _deadline_passed(self, state: PollState) -> bool:
        if self.policy.deadline is None:
            return False
        return self.clock.monotonic() - state.started_monotonic >= self.policy.deadline

    def _record(self, state: PollState, snapshot: BuildStatusSnapshot, on_snapshot: Optional[SnapshotCallback]):
        # Observers see every snapshot before it becomes the stored state
        if on_snapshot:
            on_snapshot(snapshot)
        state.last_snapshot = snapshot

    async def _with_artifacts(self, snapshot: BuildStatusSnapshot) -> BuildStatusSnapshot:
        try:
            artifacts = await self.build_service.list_artifacts(snapshot.build_id)
        except PipelineError as e:
            logger.warning(f"Build {snapshot.build_id} succeeded but listing its artifacts failed: {e.message}")
            return replace(snapshot, artifacts=(), warning=f"Artifact listing failed: {e.message}")
        return replace(snapshot, artifacts=tuple(artifacts))

    def _timeout_snapshot(self, state: PollState, reason: str) -> BuildStatusSnapshot:
        last = state.last_snapshot
        return BuildStatusSnapshot(
            build_id=state.handle.build_id,
            status=BuildStatus.TIMEOUT,
            started_at=last.started_at if last else None,
            finished_at=None,
            attempt=state.attempt,
            warning=reason,
        )

    async def track(self, handle: BuildHandle, cancel_token: Optional[CancelToken] = None,
                    on_snapshot: Optional[SnapshotCallback] = None) -> BuildStatusSnapshot:
        state = PollState(handle=handle, cancel_token=cancel_token, started_monotonic=self.clock.monotonic())
        logger.info(f"Tracking build {handle.build_id} (first poll in {self.policy.initial_delay}s, "
                    f"every {self.policy.interval}s, max {self.policy.max_attempts} polls)")
        await self.clock.sleep(self.policy.initial_delay)

        while True:
            if state.cancelled:
                logger.info(f"Stopped tracking build {handle.build_id}: {cancel_token.reason}")
                return state.last_snapshot or BuildStatusSnapshot(build_id=handle.build_id,
                                                                  status=BuildStatus.UNKNOWN,
                                                                  attempt=state.attempt)

            if state.attempt >= self.policy.max_attempts:
                snapshot = self._timeout_snapshot(state, f"No terminal status after {state.attempt} polls")
                self._record(state, snapshot, on_snapshot)
                logger.warning(f"Build {handle.build_id} timed out after {state.attempt} polls")
                return snapshot
            if self._deadline_passed(state):
                snapshot = self._timeout_snapshot(state, f"No terminal status within {self.policy.deadline}s")
                self._record(state, snapshot, on_snapshot)
                logger.warning(f"Build {handle.build_id} passed its {self.policy.deadline}s deadline")
                return snapshot

            state.attempt += 1
            try:
                snapshot = await self.build_service.get_build_status(handle.build_id, attempt=state.attempt)
            except RateLimitError:
                raise
            except PipelineError as e:
                state.consecutive_errors += 1
                if state.consecutive_errors >= self.policy.max_consecutive_errors:
                    raise PollError(
                        f"Polling build {handle.build_id} failed {state.consecutive_errors} times in a row: {e.message}",
                        transient=e.transient)
                logger.warning(f"Poll {state.attempt} for build {handle.build_id} failed "
                               f"({state.consecutive_errors}/{self.policy.max_consecutive_errors}): {e.message}")
                await self.clock.sleep(self.policy.interval)
                continue

            state.consecutive_errors = 0
            if snapshot.status == BuildStatus.SUCCESS:
                snapshot = await self._with_artifacts(snapshot)

            previous = state.last_snapshot.status if state.last_snapshot else None
            self._record(state, snapshot, on_snapshot)
            if snapshot.status != previous:
                logger.info(f"Build {handle.build_id}: {snapshot.status.value} (poll {state.attempt})")

            if snapshot.status.is_terminal:
                return snapshot
            await self.clock.sleep(self.policy.interval)
