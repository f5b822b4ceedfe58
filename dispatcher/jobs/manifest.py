"""Worker Job naming and manifest construction."""

import base64
import hashlib
import json
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from kubernetes import client

from dispatcher.jobs.schemas import (
    CREATED_AT_ANNOTATION,
    SESSION_KEY_ANNOTATION,
    USER_ID_ANNOTATION,
    USERNAME_ANNOTATION,
    WORKER_APP_LABEL,
    HistoryMessage,
    JobRequest,
)
from dispatcher.sessions.identity import validate_session_key

logger = structlog.get_logger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# Kubernetes object names are DNS labels
MAX_JOB_NAME_LENGTH = 63
SESSION_HASH_LENGTH = 16

# execve caps a single environment string at 128 KiB
MAX_HISTORY_BYTES = 96 * 1024


@dataclass(frozen=True)
class WorkerTemplate:
    """Cluster-side settings shared by every worker Job."""

    namespace: str
    image: str
    cpu: str
    memory: str
    timeout_seconds: int
    image_pull_policy: str = "IfNotPresent"
    ttl_after_finished_seconds: int = 300
    workspace_size: str = "10Gi"
    service_account: str = "claude-worker"
    secret_name: str = "peerbot-secrets"
    job_prefix: str = "claude-worker"
    session_bucket: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "WorkerTemplate":
        return cls(
            namespace=settings.kubernetes_namespace,
            image=settings.worker_image,
            cpu=settings.worker_cpu,
            memory=settings.worker_memory,
            timeout_seconds=settings.session_timeout_seconds,
            image_pull_policy=settings.worker_image_pull_policy,
            ttl_after_finished_seconds=settings.job_ttl_after_finished_seconds,
            workspace_size=settings.worker_workspace_size,
            service_account=settings.worker_service_account,
            secret_name=settings.worker_secret_name,
            job_prefix=settings.worker_job_prefix,
            session_bucket=settings.session_bucket,
            node_selector=dict(settings.worker_node_selector),
        )


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 of a negative number")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def session_hash(session_key: str) -> str:
    """Short, label-safe digest of a session key."""
    validate_session_key(session_key)
    return hashlib.sha256(session_key.encode("utf-8")).hexdigest()[:SESSION_HASH_LENGTH]


def generate_job_name(prefix: str, session_key: str, submitted_at_ms: int | None = None) -> str:
    """Build ``<prefix>-<sha256(key)[:16]>-<base36(ms)>``.

    The hash keeps the name lowercase alphanumeric whatever the key
    contains; the timestamp separates repeated runs in one thread.
    """
    if submitted_at_ms is None:
        submitted_at_ms = int(time.time() * 1000)
    name = f"{prefix}-{session_hash(session_key)}-{to_base36(submitted_at_ms)}"
    return name[:MAX_JOB_NAME_LENGTH].rstrip("-")


def encode_prompt(prompt: str) -> str:
    return base64.b64encode(prompt.encode("utf-8")).decode("ascii")


def serialize_history(messages: Sequence[HistoryMessage], max_bytes: int = MAX_HISTORY_BYTES) -> str:
    """JSON list of the newest messages that fit in max_bytes, oldest first."""
    kept: list[dict] = []
    size = 2  # brackets
    for m in reversed(messages):
        item = {"role": m.role, "content": m.content, "timestamp": m.timestamp.isoformat()}
        item_size = len(json.dumps(item).encode("utf-8")) + (2 if kept else 0)
        if size + item_size > max_bytes:
            break
        kept.append(item)
        size += item_size

    if len(kept) < len(messages):
        logger.info(
            "conversation_history_trimmed",
            kept=len(kept),
            dropped=len(messages) - len(kept),
            max_bytes=max_bytes,
        )
    kept.reverse()
    return json.dumps(kept)


def _env(name: str, value: str) -> client.V1EnvVar:
    return client.V1EnvVar(name=name, value=value)


def _secret_env(name: str, secret_name: str, key: str) -> client.V1EnvVar:
    return client.V1EnvVar(
        name=name,
        value_from=client.V1EnvVarSource(
            secret_key_ref=client.V1SecretKeySelector(name=secret_name, key=key),
        ),
    )


def worker_environment(request: JobRequest, template: WorkerTemplate) -> list[client.V1EnvVar]:
    """Environment handed to the worker process. Secrets are references only."""
    return [
        _env("SESSION_KEY", request.session_key),
        _env("USER_ID", request.user_id),
        _env("USERNAME", request.username),
        _env("CHANNEL_ID", request.channel_id),
        _env("THREAD_TS", request.thread_ts or ""),
        _env("REPOSITORY_URL", request.repository_url),
        _env("USER_PROMPT", encode_prompt(request.user_prompt)),
        _env("SLACK_RESPONSE_CHANNEL", request.slack_response_channel),
        _env("SLACK_RESPONSE_TS", request.slack_response_ts),
        _env("ORIGINAL_MESSAGE_TS", request.original_message_ts or ""),
        _env("CLAUDE_OPTIONS", request.execution_options.model_dump_json(exclude_none=True)),
        _env("CONVERSATION_HISTORY", serialize_history(request.conversation_history)),
        _env("RECOVERY_MODE", "true" if request.recovery_mode else "false"),
        _env("SESSION_BUCKET", template.session_bucket),
        _secret_env("SLACK_BOT_TOKEN", template.secret_name, "slack-bot-token"),
        _secret_env("GITHUB_TOKEN", template.secret_name, "github-token"),
        _secret_env("CLAUDE_CODE_OAUTH_TOKEN", template.secret_name, "claude-code-oauth-token"),
    ]


def build_job_manifest(
    job_name: str,
    request: JobRequest,
    template: WorkerTemplate,
    now: datetime | None = None,
) -> client.V1Job:
    """Build the batch/v1 Job for one worker run.

    Requests equal limits (Guaranteed QoS). activeDeadlineSeconds is the
    authoritative session timeout; ttlSecondsAfterFinished garbage-collects
    finished Jobs.
    """
    now = now or datetime.now(UTC)
    labels = {
        "app": WORKER_APP_LABEL,
        "component": "worker",
        "session-hash": session_hash(request.session_key),
    }
    resources = {"cpu": template.cpu, "memory": template.memory}

    container = client.V1Container(
        name=WORKER_APP_LABEL,
        image=template.image,
        image_pull_policy=template.image_pull_policy,
        resources=client.V1ResourceRequirements(requests=dict(resources), limits=dict(resources)),
        env=worker_environment(request, template),
        volume_mounts=[client.V1VolumeMount(name="workspace", mount_path="/workspace")],
        working_dir="/app/packages/worker",
        command=["bun", "run", "dist/index.js"],
    )

    pod_spec = client.V1PodSpec(
        restart_policy="Never",
        service_account_name=template.service_account,
        containers=[container],
        volumes=[
            client.V1Volume(
                name="workspace",
                empty_dir=client.V1EmptyDirVolumeSource(size_limit=template.workspace_size),
            )
        ],
        # Prefer spot capacity, but allow any node
        tolerations=[
            client.V1Toleration(
                key="cloud.google.com/gke-spot",
                operator="Equal",
                value="true",
                effect="NoSchedule",
            )
        ],
        node_selector=template.node_selector or None,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=template.namespace,
            labels={**labels, "user-id": _label_value(request.user_id)},
            annotations={
                SESSION_KEY_ANNOTATION: request.session_key,
                USER_ID_ANNOTATION: request.user_id,
                USERNAME_ANNOTATION: request.username,
                CREATED_AT_ANNOTATION: now.isoformat(),
            },
        ),
        spec=client.V1JobSpec(
            active_deadline_seconds=template.timeout_seconds,
            ttl_seconds_after_finished=template.ttl_after_finished_seconds,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=pod_spec,
            ),
        ),
    )


def _label_value(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_." else "-" for ch in value)
    return cleaned[:63].strip("-_.") or "unknown"
