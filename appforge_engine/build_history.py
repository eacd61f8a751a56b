import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .clock import Clock
from .events import EventBus, JobCompleted, JobStageProgress, PipelineEvent
from .logger_setup import logger
from .models import BuildStatus, BuildStatusSnapshot, JobStage, parse_iso

BUILD_HISTORY_FILENAME = "build_history.json"
HISTORY_LIMIT = 100
EXPIRATION_DAYS = 30


class BuildHistoryLog:
    """Keeps a JSON log of triggered builds by listening to pipeline events.

    Newest first, capped at HISTORY_LIMIT records; records older than
    EXPIRATION_DAYS are dropped by `clean_expired`.
    """

    def __init__(self, data_dir: Path, clock: Optional[Clock] = None,
                 limit: int = HISTORY_LIMIT, expiration_days: int = EXPIRATION_DAYS):
        self.data_dir = data_dir
        self.history_file = data_dir / BUILD_HISTORY_FILENAME
        self.clock = clock or Clock()
        self.limit = limit
        self.expiration_days = expiration_days

    def attach(self, event_bus: EventBus):
        return event_bus.subscribe(self.handle_event)

    def handle_event(self, event: PipelineEvent):
        if isinstance(event, JobStageProgress) and event.stage == JobStage.POLLING:
            build = event.detail.get("build")
            if build:
                self.save_build({
                    "build_id": build["build_id"],
                    "app_name": event.template_id,
                    "application_id": build.get("app_id"),
                    "status": BuildStatus.QUEUED.value,
                    "workflow_id": build.get("workflow_id"),
                    "branch": build.get("branch"),
                    "build_url": build.get("build_url"),
                    "timestamp": build.get("started_at"),
                })
            elif event.snapshot is not None:
                self._apply_snapshot(event.snapshot)
        elif isinstance(event, JobCompleted):
            result = event.result
            if result.build_handle is None:
                return
            handle = result.build_handle
            record = {
                "build_id": handle.build_id,
                "app_name": result.template_id,
                "application_id": handle.app_ref.id,
                "workflow_id": handle.workflow_id,
                "branch": handle.branch,
                "build_url": handle.build_url,
                "project_url": result.repository_ref.html_url if result.repository_ref else None,
                "timestamp": handle.started_at.isoformat(),
                "job_status": result.status.value,
            }
            if result.final_status is not None:
                record.update(self._snapshot_fields(result.final_status))
            self.save_build(record)

    def _snapshot_fields(self, snapshot: BuildStatusSnapshot) -> Dict[str, Any]:
        fields = {"status": snapshot.status.value}
        if snapshot.started_at:
            fields["started_at"] = snapshot.started_at.isoformat()
        if snapshot.finished_at:
            fields["finished_at"] = snapshot.finished_at.isoformat()
            if snapshot.started_at:
                fields["duration_seconds"] = (snapshot.finished_at - snapshot.started_at).total_seconds()
        if snapshot.artifacts:
            fields["artifacts"] = [a.to_dict() for a in snapshot.artifacts]
        return fields

    def _apply_snapshot(self, snapshot: BuildStatusSnapshot):
        existing = self.get_build(snapshot.build_id)
        if existing is None:
            return
        self.save_build({"build_id": snapshot.build_id, **self._snapshot_fields(snapshot)})

    def load_history(self) -> List[Dict[str, Any]]:
        if not self.history_file.exists():
            return []
        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                builds = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Could not read build history {self.history_file}: {e}")
            return []
        return builds if isinstance(builds, list) else []

    def _write(self, builds: List[Dict[str, Any]]):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.history_file, "w", encoding="utf-8") as f:
            json.dump(builds, f, indent=4)

    def save_build(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Merges `record` into the stored entry with the same build_id, or adds it as the newest entry."""
        builds = self.load_history()
        record = dict(record)
        record["last_updated"] = self.clock.now().isoformat()

        for i, existing in enumerate(builds):
            if existing.get("build_id") == record["build_id"]:
                merged = {**existing, **record}
                builds[i] = merged
                break
        else:
            merged = {"status": BuildStatus.QUEUED.value, "artifacts": [], **record}
            merged.setdefault("timestamp", record["last_updated"])
            builds.insert(0, merged)

        self._write(builds[:self.limit])
        return merged

    def get_build(self, build_id: str) -> Optional[Dict[str, Any]]:
        return next((b for b in self.load_history() if b.get("build_id") == build_id), None)

    def builds_for_app(self, app_name: str) -> List[Dict[str, Any]]:
        return [b for b in self.load_history() if b.get("app_name") == app_name]

    def recent_builds(self, hours: int = 24) -> List[Dict[str, Any]]:
        cutoff = self.clock.now() - timedelta(hours=hours)
        return [b for b in self.load_history() if (parse_iso(b.get("timestamp")) or cutoff) > cutoff]

    def clean_expired(self) -> int:
        builds = self.load_history()
        cutoff = self.clock.now() - timedelta(days=self.expiration_days)
        valid = [b for b in builds if (parse_iso(b.get("timestamp")) or cutoff) > cutoff]
        removed = len(builds) - len(valid)
        if removed:
            self._write(valid)
            logger.info(f"Removed {removed} expired build record(s), {len(valid)} remaining")
        return removed

    def clear(self):
        if self.history_file.exists():
            self.history_file.unlink()
        logger.info("Build history cleared")

    def stats(self) -> Dict[str, int]:
        builds = self.load_history()
        counts = {s.value: 0 for s in BuildStatus}
        for b in builds:
            status = b.get("status") or BuildStatus.UNKNOWN.value
            counts[status] = counts.get(status, 0) + 1
        total = len(builds)
        return {
            "total": total,
            "success": counts[BuildStatus.SUCCESS.value],
            "failed": counts[BuildStatus.FAILED.value],
            "timeout": counts[BuildStatus.TIMEOUT.value],
            "building": counts[BuildStatus.BUILDING.value],
            "queued": counts[BuildStatus.QUEUED.value],
            "recent": len(self.recent_builds()),
            "success_rate": round(counts[BuildStatus.SUCCESS.value] * 100 / total) if total else 0,
        }
