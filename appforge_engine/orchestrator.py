import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Type

from .build_preparer import prepare
from .build_tracker import BuildStatusTracker
from .clock import CancelToken, Clock
from .errors import (ConcurrentBatchError, GenerationError, PipelineError, PollError, PreparationError,
                     RateLimitError, RepositoryError, TriggerError)
from .events import (BatchCompleted, BatchStarted, EventBus, JobCompleted, JobStageProgress, JobStarted)
from .generator import generate
from .logger_setup import close_batch_logger, get_batch_logger, logger
from .models import (BatchReport, BuildStatus, BuildStatusSnapshot, CommitIdentity, GlobalConfig, JobResult,
                     JobStage, TemplateDescriptor)

# Unexpected exceptions inside a stage are reported as that stage's error type
STAGE_ERRORS: Dict[JobStage, Type[PipelineError]] = {
    JobStage.GENERATING: GenerationError,
    JobStage.PREPARING: PreparationError,
    JobStage.PUSHING: RepositoryError,
    JobStage.TRIGGERING: TriggerError,
    JobStage.POLLING: PollError,
}

DEFAULT_MAX_RATE_LIMIT_PAUSE = 900.0


class _JobCancelled(Exception):
    pass


class _JobRun:
    """Mutable bookkeeping for the job currently in flight."""

    def __init__(self, batch_id: str, index: int, template: TemplateDescriptor, result: JobResult):
        self.batch_id = batch_id
        self.index = index
        self.template = template
        self.result = result
        self.rate_limit: Optional[RateLimitError] = None


class PipelineOrchestrator:
    """Runs a batch of templates through generate, prepare, push, trigger and poll, one job at a time.

    A failing job is recorded and the batch moves on. The cancel token is
    checked before every stage; once set, the current job and every job after
    it end up cancelled, and the skipped jobs make no network calls. One
    orchestrator runs one batch at a time.
    """

    def __init__(self, repository_client, build_service, tracker: Optional[BuildStatusTracker] = None,
                 clock: Optional[Clock] = None, event_bus: Optional[EventBus] = None,
                 log_dir: Optional[Path] = None, pause_on_rate_limit: bool = False,
                 max_rate_limit_pause: float = DEFAULT_MAX_RATE_LIMIT_PAUSE):
        self.repository_client = repository_client
        self.build_service = build_service
        self.clock = clock or Clock()
        self.tracker = tracker or BuildStatusTracker(build_service, clock=self.clock)
        self.events = event_bus or EventBus()
        self.log_dir = log_dir
        self.pause_on_rate_limit = pause_on_rate_limit
        self.max_rate_limit_pause = max_rate_limit_pause
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_batch(self, templates: Sequence[TemplateDescriptor], config: GlobalConfig,
                        cancel_token: Optional[CancelToken] = None, batch_id: Optional[str] = None) -> BatchReport:
        if self._running:
            raise ConcurrentBatchError()
        self._running = True
        try:
            return await self._run(list(templates), config, cancel_token or CancelToken(), batch_id)
        finally:
            self._running = False

    async def _run(self, templates: List[TemplateDescriptor], config: GlobalConfig,
                   cancel_token: CancelToken, batch_id: Optional[str]) -> BatchReport:
        batch_id = batch_id or str(uuid.uuid4())
        batch_logger, log_path = get_batch_logger(batch_id, self.log_dir)
        started_at = self.clock.now()
        results: List[JobResult] = []

        batch_logger.info(f"Batch {batch_id} started with {len(templates)} template(s), log at {log_path}")
        self.events.emit(BatchStarted(batch_id=batch_id, template_ids=tuple(t.id for t in templates),
                                      timestamp=started_at))
        try:
            for index, template in enumerate(templates):
                if cancel_token.cancelled:
                    result = self._skipped(template)
                    batch_logger.info(f"[{index + 1}/{len(templates)}] {template.id}: cancelled before start")
                    results.append(result)
                    self.events.emit(JobCompleted(batch_id=batch_id, index=index, result=result,
                                                  timestamp=self.clock.now()))
                    continue

                run = await self._run_job(batch_id, index, template, config, cancel_token)
                results.append(run.result)
                batch_logger.info(f"[{index + 1}/{len(templates)}] {template.id}: {run.result.status.value}"
                                  + (f" - {run.result.error}" if run.result.error else ""))

                if run.rate_limit and self.pause_on_rate_limit and index + 1 < len(templates):
                    await self._pause_for_rate_limit(run.rate_limit, batch_logger)

            report = BatchReport.from_results(batch_id, results, started_at, self.clock.now())
            batch_logger.info(f"Batch {batch_id} finished: {report.succeeded} succeeded, {report.failed} failed, "
                              f"{report.cancelled} cancelled in {report.duration_seconds:.1f}s")
            self.events.emit(BatchCompleted(report=report, timestamp=report.finished_at))
            return report
        finally:
            close_batch_logger(batch_logger)

    def _skipped(self, template: TemplateDescriptor) -> JobResult:
        now = self.clock.now()
        return JobResult(template_id=template.id, status=JobStage.CANCELLED, stage=JobStage.PENDING,
                         error="Batch cancelled before this job started", started_at=now, finished_at=now)

    async def _pause_for_rate_limit(self, error: RateLimitError, batch_logger):
        wait = 0.0
        if error.reset_at is not None:
            wait = (error.reset_at - self.clock.now()).total_seconds()
        wait = min(max(wait, 0.0), self.max_rate_limit_pause)
        if wait > 0:
            batch_logger.warning(f"{error.service} rate limit exhausted, pausing {wait:.0f}s before the next job")
            await self.clock.sleep(wait)

    def _progress(self, run: _JobRun, stage: JobStage, message: str, detail: Optional[dict] = None,
                  snapshot: Optional[BuildStatusSnapshot] = None):
        self.events.emit(JobStageProgress(
            batch_id=run.batch_id,
            index=run.index,
            template_id=run.template.id,
            stage=stage,
            message=message,
            timestamp=self.clock.now(),
            detail=detail or {},
            snapshot=snapshot,
        ))

    def _enter(self, run: _JobRun, stage: JobStage, cancel_token: CancelToken, message: str,
               detail: Optional[dict] = None):
        if cancel_token.cancelled:
            raise _JobCancelled(cancel_token.reason)
        run.result.stage = stage
        run.result.status = stage
        logger.info(f"[{run.template.id}] {message}")
        self._progress(run, stage, message, detail)

    def _finish(self, run: _JobRun, status: JobStage, error: Optional[PipelineError] = None,
                message: Optional[str] = None, error_type: Optional[str] = None, transient: Optional[bool] = None):
        result = run.result
        result.status = status
        if error is not None:
            result.error = error.describe()
            result.error_type = type(error).__name__
            result.transient = error.transient
        elif message is not None:
            result.error = message
            result.error_type = error_type
            result.transient = transient
        result.finished_at = self.clock.now()

    async def _run_job(self, batch_id: str, index: int, template: TemplateDescriptor, config: GlobalConfig,
                       cancel_token: CancelToken) -> _JobRun:
        run = _JobRun(batch_id, index, template, JobResult(template_id=template.id, started_at=self.clock.now()))
        self.events.emit(JobStarted(batch_id=batch_id, index=index, template_id=template.id,
                                    timestamp=run.result.started_at))
        try:
            await self._run_stages(run, config, cancel_token)
        except _JobCancelled as e:
            logger.info(f"[{template.id}] cancelled during {run.result.stage.value}: {e}")
            self._finish(run, JobStage.CANCELLED, message=f"Cancelled: {e}")
        except PipelineError as e:
            if isinstance(e, RateLimitError):
                run.rate_limit = e
                if e.push_result is not None and run.result.push_result is None:
                    run.result.push_result = e.push_result
            logger.error(f"[{template.id}] {run.result.stage.value} failed: {e.describe()}")
            self._finish(run, JobStage.FAILED, error=e)
        except Exception as e:
            logger.error(f"[{template.id}] unexpected error during {run.result.stage.value}: {e}", exc_info=True)
            error_class = STAGE_ERRORS.get(run.result.stage, PipelineError)
            self._finish(run, JobStage.FAILED, error=error_class(f"Unexpected error: {e}"))

        self.events.emit(JobCompleted(batch_id=batch_id, index=index, result=run.result,
                                      timestamp=run.result.finished_at))
        return run

    async def _run_stages(self, run: _JobRun, config: GlobalConfig, cancel_token: CancelToken):
        template, result = run.template, run.result

        self._enter(run, JobStage.GENERATING, cancel_token, "Generating project")
        result.artifact = generate(template, config, clock=self.clock)

        self._enter(run, JobStage.PREPARING, cancel_token, "Preparing build layout")
        prepared = prepare(result.artifact, config)
        result.artifact = prepared
        if not config.create_repositories:
            self._finish(run, JobStage.COMPLETED)
            return

        self._enter(run, JobStage.PUSHING, cancel_token, "Pushing to repository")
        repository_ref = await self.repository_client.ensure_repository(template.name, template.description)
        result.repository_ref = repository_ref

        def on_file(position: int, total: int, path: str, error: Optional[str]):
            detail = {"path": path, "position": position, "total": total, "error": error}
            self._progress(run, JobStage.PUSHING, f"{'Failed' if error else 'Uploaded'} {path} ({position}/{total})",
                           detail)

        identity = CommitIdentity(name=config.author_name, email=config.author_email)
        push_result = await self.repository_client.push_files(repository_ref, prepared.file_tree, identity,
                                                              on_progress=on_file)
        result.push_result = push_result
        if push_result.total_count and not push_result.uploaded_count:
            first_error = next(iter(push_result.per_file_errors.values()), "unknown error")
            raise RepositoryError(f"No files could be pushed to {repository_ref.full_name}: {first_error}",
                                  kind="push")
        if not config.trigger_builds:
            self._finish(run, JobStage.COMPLETED)
            return

        self._enter(run, JobStage.TRIGGERING, cancel_token, "Triggering remote build")
        app_ref = await self.build_service.ensure_app(repository_ref, template.display_name)
        handle = await self.build_service.trigger(app_ref, config.workflow_id, config.branch,
                                                  config.build_variables)
        result.build_handle = handle
        if not config.track_builds:
            self._finish(run, JobStage.COMPLETED)
            return

        self._enter(run, JobStage.POLLING, cancel_token, f"Tracking build {handle.build_id}",
                    {"build": handle.to_dict()})

        def on_snapshot(snapshot: BuildStatusSnapshot):
            self._progress(run, JobStage.POLLING, f"Build {snapshot.build_id}: {snapshot.status.value}",
                           {"attempt": snapshot.attempt}, snapshot=snapshot)

        snapshot = await self.tracker.track(handle, cancel_token=cancel_token, on_snapshot=on_snapshot)
        result.final_status = snapshot
        if not snapshot.status.is_terminal:
            raise _JobCancelled(cancel_token.reason or "tracking stopped")
        if snapshot.status == BuildStatus.FAILED:
            self._finish(run, JobStage.FAILED, message=f"Remote build {handle.build_id} failed",
                         error_type="RemoteBuildFailed", transient=False)
            return
        if snapshot.status == BuildStatus.TIMEOUT:
            self._finish(run, JobStage.FAILED,
                         message=f"Remote build {handle.build_id} timed out: {snapshot.warning}",
                         error_type="RemoteBuildTimeout", transient=True)
            return
        self._finish(run, JobStage.COMPLETED)
