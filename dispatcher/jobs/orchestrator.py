"""JobOrchestrator: submits worker Jobs to Kubernetes and tracks one per session.

The kubernetes client is synchronous; every API call runs in a thread via
asyncio.to_thread so the event loop only suspends at I/O.

Two independent timeouts apply:
- activeDeadlineSeconds on the Job, enforced by the cluster (authoritative)
- the local monitor ceiling (interval x attempts), which only stops tracking
The dispatcher never deletes a Job because local monitoring gave up.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from contextlib import asynccontextmanager

import structlog
from kubernetes import client, config

from dispatcher.core.exceptions import OrchestratorError
from dispatcher.jobs.events import JobStatusEvent, StatusFeed
from dispatcher.jobs.manifest import (
    WorkerTemplate,
    build_job_manifest,
    generate_job_name,
    session_hash,
)
from dispatcher.jobs.schemas import (
    SESSION_KEY_ANNOTATION,
    WORKER_APP_LABEL,
    JobRequest,
    SessionStatus,
)
from dispatcher.sessions.identity import validate_session_key

logger = structlog.get_logger(__name__)

SESSION_DATA_START = "SESSION_DATA_START"
SESSION_DATA_END = "SESSION_DATA_END"


def job_phase(job: client.V1Job) -> SessionStatus:
    """Map a Job's observed status onto the session lifecycle."""
    status = job.status
    if status is None:
        return SessionStatus.STARTING

    for condition in status.conditions or []:
        if condition.status != "True":
            continue
        if condition.type in ("Complete", "SuccessCriteriaMet"):
            return SessionStatus.COMPLETED
        if condition.type in ("Failed", "FailureTarget"):
            return SessionStatus.ERROR

    if status.succeeded:
        return SessionStatus.COMPLETED
    if status.active:
        return SessionStatus.RUNNING
    if status.failed:
        return SessionStatus.ERROR
    return SessionStatus.STARTING


def load_kubernetes_apis(kubeconfig: str = "") -> tuple[client.BatchV1Api, client.CoreV1Api]:
    """Load cluster credentials: explicit file, in-cluster, then default kubeconfig."""
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            logger.info("kubeconfig_loaded", source=kubeconfig)
        elif os.environ.get("KUBERNETES_SERVICE_HOST") and os.environ.get("KUBERNETES_SERVICE_PORT"):
            config.load_incluster_config()
            logger.info("kubeconfig_loaded", source="in-cluster")
        else:
            config.load_kube_config()
            logger.info("kubeconfig_loaded", source="default")
    except Exception as e:
        raise OrchestratorError("load_config", f"Failed to load Kubernetes configuration: {e}") from e

    return client.BatchV1Api(), client.CoreV1Api()


class JobOrchestrator:
    """Owns the session -> Job mapping and the monitor tasks behind it."""

    def __init__(
        self,
        batch_api: client.BatchV1Api,
        core_api: client.CoreV1Api,
        template: WorkerTemplate,
        feed: StatusFeed | None = None,
        monitor_interval_seconds: float = 10.0,
        monitor_max_attempts: int = 60,
        monitor_initial_delay_seconds: float = 5.0,
    ):
        self.batch_api = batch_api
        self.core_api = core_api
        self.template = template
        self.feed = feed or StatusFeed()
        self.monitor_interval_seconds = monitor_interval_seconds
        self.monitor_max_attempts = monitor_max_attempts
        self.monitor_initial_delay_seconds = monitor_initial_delay_seconds

        self._active_jobs: dict[str, str] = {}  # session_key -> job_name
        self._monitors: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def namespace(self) -> str:
        return self.template.namespace

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: JobRequest) -> str:
        """Create a worker Job for the session, or return the one already running.

        Submission is serialized per session key, so concurrent calls for the
        same key produce a single Job and all callers receive its name.

        Raises:
            InvalidSessionKeyError: If the key is unsafe.
            OrchestratorError: If the Job could not be created.
        """
        session_key = validate_session_key(request.session_key)
        log = logger.bind(session_key=session_key)

        async with self._session_lock(session_key):
            existing = self._active_jobs.get(session_key)
            if existing:
                log.info("job_already_active", job_name=existing)
                return existing

            # Dispatcher may have restarted while the Job kept running
            existing = await self._find_existing_job(session_key)
            if existing:
                log.info("job_found_in_cluster", job_name=existing)
                self._track(session_key, existing)
                return existing

            job_name = generate_job_name(
                self.template.job_prefix,
                session_key,
                int(time.time() * 1000),
            )
            manifest = build_job_manifest(job_name, request, self.template)

            try:
                await asyncio.to_thread(
                    self.batch_api.create_namespaced_job,
                    namespace=self.namespace,
                    body=manifest,
                )
            except Exception as e:
                log.error(
                    "job_create_failed",
                    job_name=job_name,
                    namespace=self.namespace,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise OrchestratorError(
                    "create_job",
                    f"Failed to create job for session {session_key}: {e}",
                    job_name=job_name,
                    namespace=self.namespace,
                ) from e

            log.info("job_created", job_name=job_name, namespace=self.namespace, recovery_mode=request.recovery_mode)
            self._track(session_key, job_name)
            return job_name

    @asynccontextmanager
    async def _session_lock(self, session_key: str):
        """Per-key lock that exists only while someone holds or waits on it."""
        lock = self._locks.setdefault(session_key, asyncio.Lock())
        self._lock_users[session_key] = self._lock_users.get(session_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_key] -= 1
            if self._lock_users[session_key] == 0:
                del self._lock_users[session_key]
                del self._locks[session_key]

    def _track(self, session_key: str, job_name: str) -> None:
        self._active_jobs[session_key] = job_name
        self._publish(session_key, job_name, SessionStatus.STARTING, "Job submitted")
        self._monitors[session_key] = asyncio.create_task(self._monitor(session_key, job_name))

    async def _find_existing_job(self, session_key: str) -> str | None:
        try:
            jobs = await asyncio.to_thread(
                self.batch_api.list_namespaced_job,
                namespace=self.namespace,
                label_selector=f"app={WORKER_APP_LABEL},session-hash={session_hash(session_key)}",
            )
        except Exception as e:
            logger.warning("job_lookup_failed", session_key=session_key, error=str(e))
            return None

        for job in jobs.items or []:
            annotations = job.metadata.annotations or {}
            if annotations.get(SESSION_KEY_ANNOTATION) != session_key:
                continue
            if not job_phase(job).is_terminal:
                return job.metadata.name
        return None

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _monitor(self, session_key: str, job_name: str) -> None:
        log = logger.bind(session_key=session_key, job_name=job_name)
        last_status = SessionStatus.STARTING

        try:
            await asyncio.sleep(self.monitor_initial_delay_seconds)

            for attempt in range(1, self.monitor_max_attempts + 1):
                try:
                    status = await self._read_status(job_name)
                except Exception as e:
                    # Transient API errors don't end monitoring
                    log.warning("job_monitor_poll_failed", attempt=attempt, error=str(e))
                    status = None

                if status is not None and status.is_terminal:
                    log.info("job_finished", status=status.value, attempts=attempt)
                    self._finish(session_key, job_name, status, f"Job {status.value}")
                    return

                if status is SessionStatus.RUNNING and last_status is not SessionStatus.RUNNING:
                    self._publish(session_key, job_name, SessionStatus.RUNNING, "Job running")
                    last_status = SessionStatus.RUNNING

                if attempt < self.monitor_max_attempts:
                    await asyncio.sleep(self.monitor_interval_seconds)

            # Local bookkeeping only; activeDeadlineSeconds still bounds the Job
            log.info("job_monitor_ceiling_reached", attempts=self.monitor_max_attempts)
            self._finish(
                session_key,
                job_name,
                SessionStatus.TIMEOUT,
                "Stopped tracking job; the cluster deadline still applies",
            )
        finally:
            if self._monitors.get(session_key) is asyncio.current_task():
                del self._monitors[session_key]

    def _finish(self, session_key: str, job_name: str, status: SessionStatus, message: str) -> None:
        if self._active_jobs.get(session_key) == job_name:
            del self._active_jobs[session_key]
        self._publish(session_key, job_name, status, message)

    def _publish(self, session_key: str, job_name: str, status: SessionStatus, message: str) -> None:
        self.feed.publish(JobStatusEvent(session_key=session_key, job_name=job_name, status=status, message=message))

    async def _read_status(self, job_name: str) -> SessionStatus:
        job = await asyncio.to_thread(
            self.batch_api.read_namespaced_job,
            name=job_name,
            namespace=self.namespace,
        )
        return job_phase(job)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    async def get_job_status(self, job_name: str) -> SessionStatus | None:
        """Current status of a Job, or None if it could not be read."""
        try:
            return await self._read_status(job_name)
        except Exception as e:
            logger.warning("job_status_read_failed", job_name=job_name, error=str(e))
            return None

    async def ping(self) -> bool:
        """True if the Jobs API in the namespace answers."""
        try:
            await asyncio.to_thread(self.batch_api.list_namespaced_job, namespace=self.namespace, limit=1)
            return True
        except Exception as e:
            logger.error("kubernetes_health_check_failed", namespace=self.namespace, error=str(e))
            return False

    def job_for_session(self, session_key: str) -> str | None:
        return self._active_jobs.get(session_key)

    def active_count(self) -> int:
        return len(self._active_jobs)

    async def list_active_jobs(self) -> list[dict]:
        jobs = []
        for session_key, job_name in list(self._active_jobs.items()):
            status = await self.get_job_status(job_name)
            jobs.append(
                {
                    "name": job_name,
                    "session_key": session_key,
                    "status": status.value if status else "unknown",
                }
            )
        return jobs

    async def cancel(self, job_name: str) -> bool:
        """Best-effort delete. Failures are logged, never retried.

        A Job that could not be deleted still ends at its own deadline and is
        garbage-collected by its TTL.
        """
        try:
            await asyncio.to_thread(
                self.batch_api.delete_namespaced_job,
                name=job_name,
                namespace=self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except Exception as e:
            logger.error("job_delete_failed", job_name=job_name, namespace=self.namespace, error=str(e))
            return False

        logger.info("job_deleted", job_name=job_name)
        for session_key, tracked in list(self._active_jobs.items()):
            if tracked != job_name:
                continue
            task = self._monitors.pop(session_key, None)
            if task is not None:
                task.cancel()
            self._finish(session_key, job_name, SessionStatus.ERROR, "Job cancelled")
        return True

    async def restore_active_jobs(self) -> int:
        """Re-adopt unfinished worker Jobs after a dispatcher restart."""
        try:
            jobs = await asyncio.to_thread(
                self.batch_api.list_namespaced_job,
                namespace=self.namespace,
                label_selector=f"app={WORKER_APP_LABEL}",
            )
        except Exception as e:
            logger.error("job_restore_failed", namespace=self.namespace, error=str(e))
            return 0

        restored = 0
        for job in jobs.items or []:
            job_name = job.metadata.name
            session_key = (job.metadata.annotations or {}).get(SESSION_KEY_ANNOTATION)
            if not job_name or not session_key or job_phase(job).is_terminal:
                continue
            if session_key in self._active_jobs:
                continue
            self._track(session_key, job_name)
            restored += 1
            logger.info("job_restored", job_name=job_name, session_key=session_key)

        logger.info("jobs_restored", count=restored)
        return restored

    async def get_job_logs(self, job_name: str, tail_lines: int = 10000) -> str | None:
        try:
            pods = await asyncio.to_thread(
                self.core_api.list_namespaced_pod,
                namespace=self.namespace,
                label_selector=f"job-name={job_name}",
            )
            if not pods.items:
                logger.info("job_pods_not_found", job_name=job_name)
                return None

            pod_name = pods.items[0].metadata.name
            return await asyncio.to_thread(
                self.core_api.read_namespaced_pod_log,
                name=pod_name,
                namespace=self.namespace,
                container=WORKER_APP_LABEL,
                tail_lines=tail_lines,
            )
        except Exception as e:
            logger.error("job_logs_failed", job_name=job_name, error=str(e))
            return None

    @staticmethod
    def extract_session_from_logs(logs: str) -> dict | None:
        """Parse the JSON a worker prints between SESSION_DATA markers."""
        start = logs.find(SESSION_DATA_START)
        end = logs.find(SESSION_DATA_END)
        if start == -1 or end == -1 or end < start:
            return None
        try:
            return json.loads(logs[start + len(SESSION_DATA_START):end].strip())
        except json.JSONDecodeError as e:
            logger.warning("session_log_parse_failed", error=str(e))
            return None

    async def wait_for_drain(self, ceiling_seconds: float, poll_seconds: float = 2.0) -> bool:
        """Wait for active jobs to reach zero. Returns False if the ceiling hit first."""
        deadline = time.monotonic() + ceiling_seconds
        while self.active_count() > 0:
            if time.monotonic() >= deadline:
                logger.warning("drain_ceiling_reached", active_jobs=self.active_count())
                return False
            await asyncio.sleep(poll_seconds)
        return True

    async def shutdown(self) -> None:
        """Stop local monitor tasks. Jobs keep running under their own deadline."""
        tasks = list(self._monitors.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()
