"""EventRouter: turns inbound Slack events into worker Jobs.

Per request: filter -> de-duplicate -> permission check -> resolve session
key -> active-job check -> admission -> repository -> recovery -> initial
message -> submit -> persist. Job progress arrives through the orchestrator's
StatusFeed and is reflected as reactions on the originating message.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from slack_sdk.errors import SlackApiError

from dispatcher.core.exceptions import (
    AdmissionDenied,
    InvalidSessionKeyError,
    OrchestratorError,
    RecoveryNotFound,
)
from dispatcher.integrations.github import RepositoryProvisioner
from dispatcher.jobs.events import JobStatusEvent
from dispatcher.jobs.orchestrator import JobOrchestrator
from dispatcher.jobs.rate_limiter import RateLimiter
from dispatcher.jobs.schemas import ExecutionOptions, JobRequest, SessionStatus, ThreadSession
from dispatcher.jobs.state_machine import STATUS_LABELS, SessionStateMachine
from dispatcher.sessions.identity import resolve_session_key
from dispatcher.sessions.manager import SessionManager
from dispatcher.sessions.models import ConversationMessage, SessionContext
from dispatcher.slack.client import ChatClient

logger = structlog.get_logger(__name__)

DEFAULT_GREETING = "Hello! How can I help you today?"

# Repeated deliveries of one message within this window are dropped
DUPLICATE_WINDOW_SECONDS = 5.0
DUPLICATE_RETENTION_SECONDS = 10.0

IGNORED_SUBTYPES = frozenset(
    {
        "message_changed",
        "message_deleted",
        "thread_broadcast",
        "channel_join",
        "channel_leave",
        "assistant_app_thread",
    }
)

STATUS_REACTIONS: dict[SessionStatus, str] = {
    SessionStatus.PENDING: "eyes",
    SessionStatus.STARTING: "eyes",
    SessionStatus.RUNNING: "gear",
    SessionStatus.COMPLETED: "white_check_mark",
    SessionStatus.ERROR: "x",
    SessionStatus.TIMEOUT: "hourglass",
}

_MENTION = re.compile(r"<@[^>]+>")


@dataclass(frozen=True)
class InboundMessage:
    channel_id: str
    user_id: str | None
    message_ts: str
    text: str
    thread_ts: str | None = None
    team_id: str = ""
    channel_type: str | None = None

    @classmethod
    def from_event(cls, event: dict) -> "InboundMessage":
        return cls(
            channel_id=event.get("channel", ""),
            user_id=event.get("user"),
            message_ts=event.get("ts", ""),
            text=event.get("text") or "",
            thread_ts=event.get("thread_ts"),
            team_id=event.get("team", ""),
            channel_type=event.get("channel_type"),
        )

    @property
    def thread_anchor(self) -> str:
        return self.thread_ts or self.message_ts


def extract_user_request(text: str) -> str:
    """Strip user mentions; an empty remainder becomes the default greeting."""
    cleaned = _MENTION.sub("", text).strip()
    return cleaned or DEFAULT_GREETING


def github_username(display_name: str) -> str:
    cleaned = re.sub(r"[^a-z0-9-]", "-", display_name.lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return f"user-{cleaned}"


def kubectl_commands(job_name: str, namespace: str) -> str:
    return (
        "*🛠️ Debugging Commands:*\n"
        "```\n"
        "# Watch job logs in real-time\n"
        f"kubectl logs -n {namespace} job/{job_name} -f\n\n"
        "# Get job status\n"
        f"kubectl get job/{job_name} -n {namespace} -o wide\n\n"
        "# Get pod details\n"
        f"kubectl get pods -n {namespace} -l job-name={job_name} -o wide\n\n"
        "# Describe job for events\n"
        f"kubectl describe job/{job_name} -n {namespace}\n"
        "```"
    )


def troubleshooting_tips(namespace: str) -> str:
    return (
        "*💡 Troubleshooting Tips:*\n"
        f"• Check dispatcher logs: `kubectl logs -n {namespace} -l app.kubernetes.io/component=dispatcher --tail=100`\n"
        f"• Check events: `kubectl get events -n {namespace} --sort-by='.lastTimestamp'`\n"
        f"• Check job quota: `kubectl describe resourcequota -n {namespace}`"
    )


def status_blocks(session_key: str, username: str, repository_url: str, status_text: str) -> list[dict]:
    return [
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"🔖 {session_key}"},
                {
                    "type": "mrkdwn",
                    "text": f"📁 <{repository_url.replace('github.com', 'github.dev')}|{username}>",
                },
                {"type": "mrkdwn", "text": f"🔀 <{repository_url}/compare|Create PR>"},
            ],
        },
        {"type": "divider"},
        {"type": "section", "text": {"type": "mrkdwn", "text": status_text}},
    ]


class EventRouter:
    """Owns the active ThreadSession table and drives each request end to end."""

    def __init__(
        self,
        chat: ChatClient,
        orchestrator: JobOrchestrator,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        repositories: RepositoryProvisioner,
        execution_options: ExecutionOptions | None = None,
        bot_user_id: str = "",
        bot_id: str = "",
        allowed_users: list[str] | None = None,
        blocked_users: list[str] | None = None,
        custom_instructions: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chat = chat
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.repositories = repositories
        self.execution_options = execution_options or ExecutionOptions()
        self.bot_user_id = bot_user_id
        self.bot_id = bot_id
        self.allowed_users = set(allowed_users or [])
        self.blocked_users = set(blocked_users or [])
        self.custom_instructions = custom_instructions
        self._clock = clock

        self.active_sessions: dict[str, ThreadSession] = {}
        self._origins: dict[str, tuple[str, str]] = {}  # session_key -> (channel, message ts)
        self._reactions: dict[str, str] = {}  # session_key -> current status emoji
        self._user_mappings: dict[str, str] = {}
        self._recent_events: dict[str, float] = {}
        self._starting: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True
        self._consumer: asyncio.Task | None = None
        self._queue: asyncio.Queue[JobStatusEvent] | None = None

    @classmethod
    def from_settings(cls, settings, **components) -> "EventRouter":
        return cls(
            execution_options=ExecutionOptions.from_settings(settings),
            bot_user_id=settings.slack_bot_user_id,
            bot_id=settings.slack_bot_id,
            allowed_users=settings.slack_allowed_users,
            blocked_users=settings.slack_blocked_users,
            custom_instructions=settings.claude_custom_instructions,
            **components,
        )

    @property
    def namespace(self) -> str:
        return self.orchestrator.namespace

    @property
    def accepting(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._consumer is None:
            self._queue = self.orchestrator.feed.subscribe()
            self._consumer = asyncio.create_task(self._consume_status())

    def stop_accepting(self) -> None:
        self._accepting = False

    async def drain(self, timeout: float) -> None:
        """Stop taking events and wait for in-flight handlers."""
        self._accepting = False
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                logger.warning("event_handlers_still_running", count=len(still_pending))

    async def stop(self) -> None:
        self._accepting = False
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._queue is not None:
            self.orchestrator.feed.unsubscribe(self._queue)
            self._queue = None

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def dispatch(self, event: dict) -> bool:
        """Schedule handling of one event. Returns False while shutting down."""
        if not self._accepting:
            logger.info("event_rejected_shutting_down", event_type=event.get("type"))
            return False
        task = asyncio.create_task(self.handle_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def handle_event(self, event: dict) -> None:
        event_type = event.get("type")
        try:
            if event_type == "app_mention":
                await self.handle_mention(event)
            elif event_type == "message":
                await self.handle_message(event)
            else:
                logger.debug("event_ignored", event_type=event_type)
        except Exception as e:
            logger.error(
                "event_handler_failed",
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def handle_mention(self, event: dict) -> None:
        message = InboundMessage.from_event(event)
        if not await self._admit_sender(message):
            return
        await self._react(message.channel_id, message.message_ts, "eyes", add=True)
        await self.handle_request(message, extract_user_request(message.text))

    async def handle_message(self, event: dict) -> None:
        if not self.should_process_message(event):
            return
        message = InboundMessage.from_event(event)
        if not await self._admit_sender(message):
            return
        await self._react(message.channel_id, message.message_ts, "eyes", add=True)
        await self.handle_request(message, extract_user_request(message.text))

    def should_process_message(self, event: dict) -> bool:
        """Filter message events that are not direct user requests."""
        if self.bot_user_id and event.get("user") == self.bot_user_id:
            return False
        if self.bot_id and event.get("bot_id") == self.bot_id:
            return False
        # Channel mentions arrive again as app_mention
        if (
            event.get("channel_type") == "channel"
            and self.bot_user_id
            and f"<@{self.bot_user_id}>" in (event.get("text") or "")
        ):
            return False
        if event.get("subtype") in IGNORED_SUBTYPES:
            logger.debug("message_subtype_ignored", subtype=event.get("subtype"))
            return False
        return True

    def is_duplicate(self, user_id: str, message_ts: str, text: str) -> bool:
        now = self._clock()
        event_key = f"{user_id}-{message_ts}-{text[:50]}"
        last_seen = self._recent_events.get(event_key)

        self._recent_events[event_key] = now
        for key, seen in list(self._recent_events.items()):
            if now - seen > DUPLICATE_RETENTION_SECONDS:
                del self._recent_events[key]

        if last_seen is not None and now - last_seen < DUPLICATE_WINDOW_SECONDS:
            logger.info("duplicate_event_skipped", event_key=event_key)
            return True
        return False

    def is_user_allowed(self, user_id: str) -> bool:
        if user_id in self.blocked_users:
            return False
        if self.allowed_users:
            return user_id in self.allowed_users
        return True

    async def _admit_sender(self, message: InboundMessage) -> bool:
        if not message.user_id:
            logger.warning("event_missing_user", channel_id=message.channel_id, ts=message.message_ts)
            await self._say(message, "❌ Error: Unable to identify user. Please try again.")
            return False
        if self.is_duplicate(message.user_id, message.message_ts, message.text):
            return False
        if not self.is_user_allowed(message.user_id):
            logger.info("user_not_allowed", user_id=message.user_id)
            await self._say(message, "Sorry, you don't have permission to use this bot.")
            return False
        return True

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def handle_request(self, message: InboundMessage, prompt: str) -> str | None:
        """Route one user request to a worker Job. Returns the job name, if any."""
        try:
            session_key = resolve_session_key(message.channel_id, message.thread_ts, message.message_ts)
        except InvalidSessionKeyError as e:
            logger.warning("session_key_rejected", reason=e.reason)
            await self._say(message, f"❌ *Error:* {e}")
            return None

        with structlog.contextvars.bound_contextvars(session_key=session_key):
            existing = self._active_job(session_key)
            if existing is not None:
                job_note = f" (job `{existing}`)" if existing else ""
                await self._say(
                    message,
                    f"⏳ I'm already working on this thread{job_note}. "
                    "Please wait for the current task to complete.",
                )
                return None

            # reserve before the first await so a second event for the thread sees it busy
            self._starting.add(session_key)
            try:
                try:
                    await self.rate_limiter.enforce(message.user_id)
                except AdmissionDenied as e:
                    logger.info(
                        "request_rate_limited",
                        user_id=e.requester_id,
                        retry_after_seconds=e.retry_after_seconds,
                    )
                    await self._react(message.channel_id, message.message_ts, "eyes", add=False)
                    await self._say(
                        message,
                        f"⏳ You've reached the limit of {e.limit} jobs per {e.window_seconds // 60} minutes. "
                        f"Please try again in about {max(1, e.retry_after_seconds // 60)} minutes.",
                    )
                    return None

                return await self._start_job(session_key, message, prompt)
            except Exception as e:
                logger.error(
                    "request_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=not isinstance(e, OrchestratorError),
                )
                await self._report_failure(session_key, message, e)
                return None
            finally:
                self._starting.discard(session_key)

    def _active_job(self, session_key: str) -> str | None:
        """Job name if the key is busy (empty string while still starting), else None."""
        job_name = self.orchestrator.job_for_session(session_key)
        if job_name:
            return job_name
        session = self.active_sessions.get(session_key)
        if session is not None and not session.status.is_terminal:
            return session.job_name or ""
        if session_key in self._starting:
            return ""
        return None

    async def _start_job(self, session_key: str, message: InboundMessage, prompt: str) -> str:
        username = await self.username_for(message.user_id)
        recovery_mode = await self._load_conversation(session_key, message, username)
        self.sessions.add_message(session_key, "user", prompt)

        repository = await self.repositories.ensure_repository(username)
        self.sessions.get_session(session_key).context.repository_url = repository.url

        initial_ts = await self.chat.post_message(
            message.channel_id,
            STATUS_LABELS["pending"],
            thread_ts=message.thread_anchor,
            blocks=status_blocks(session_key, username, repository.url, STATUS_LABELS["pending"]),
        )

        session = ThreadSession(
            session_key=session_key,
            channel_id=message.channel_id,
            user_id=message.user_id,
            username=username,
            thread_ts=message.thread_anchor,
            message_ts=message.message_ts,
            repository_url=repository.url,
        )
        self.active_sessions[session_key] = session
        self._origins[session_key] = (message.channel_id, message.message_ts)
        self._reactions[session_key] = "eyes"

        request = JobRequest(
            session_key=session_key,
            user_id=message.user_id,
            username=username,
            channel_id=message.channel_id,
            thread_ts=message.thread_anchor,
            user_prompt=prompt,
            repository_url=repository.url,
            slack_response_channel=message.channel_id,
            slack_response_ts=initial_ts,
            original_message_ts=message.message_ts,
            execution_options=self.execution_options,
            conversation_history=self.sessions.history(session_key),
            recovery_mode=recovery_mode,
        )
        job_name = await self.orchestrator.submit(request)
        session.job_name = job_name
        SessionStateMachine.transition(session, SessionStatus.STARTING)
        self.sessions.set_status(session_key, session.status)

        # The Job exists from here on; Slack hiccups must not report it as failed
        try:
            await self.chat.update_message(
                message.channel_id,
                initial_ts,
                STATUS_LABELS["starting"],
                blocks=status_blocks(session_key, username, repository.url, STATUS_LABELS["starting"]),
            )
        except Exception as e:
            logger.warning(
                "status_message_update_failed",
                job_name=job_name,
                error=str(e),
                error_type=type(e).__name__,
            )
        await self.sessions.persist(session_key)
        logger.info("request_dispatched", job_name=job_name, recovery_mode=recovery_mode)
        return job_name

    async def _load_conversation(self, session_key: str, message: InboundMessage, username: str) -> bool:
        """Put a SessionState for the key in memory. Returns True if it was recovered."""
        if self.sessions.get_session(session_key) is not None:
            return False

        if message.thread_ts:
            try:
                await self.sessions.recover(session_key)
                return True
            except RecoveryNotFound:
                logger.info("session_recovery_not_found")

        state = self.sessions.create_session(
            session_key,
            SessionContext(
                channel_id=message.channel_id,
                user_id=message.user_id,
                user_display_name=username,
                team_id=message.team_id or None,
                thread_ts=message.thread_ts,
                message_ts=message.message_ts,
                custom_instructions=self.custom_instructions or None,
            ),
        )
        if message.thread_ts:
            state.conversation.extend(await self._thread_history(message))
        return False

    async def _thread_history(self, message: InboundMessage) -> list[ConversationMessage]:
        """Earlier messages of a thread that has no stored state."""
        try:
            replies = await self.chat.thread_replies(message.channel_id, message.thread_ts)
        except SlackApiError as e:
            logger.warning("thread_history_failed", error=str(e))
            return []

        history = []
        for reply in replies:
            if not reply.get("text") or not reply.get("user") or reply.get("ts") == message.message_ts:
                continue
            history.append(
                ConversationMessage(
                    role="assistant" if reply["user"] == self.bot_user_id else "user",
                    content=reply["text"],
                )
            )
        return history

    async def username_for(self, user_id: str) -> str:
        """Repository username for a chat user, cached after the first lookup."""
        mapped = self._user_mappings.get(user_id)
        if mapped:
            return mapped

        try:
            user = await self.chat.user_info(user_id)
            profile = user.get("profile") or {}
            name = profile.get("display_name") or profile.get("real_name") or user.get("name") or user_id
            username = github_username(name)
        except SlackApiError as e:
            logger.warning("user_info_failed", user_id=user_id, error=str(e))
            username = f"user-{user_id[:8]}"

        self._user_mappings[user_id] = username
        return username

    async def _report_failure(self, session_key: str, message: InboundMessage, error: Exception) -> None:
        await self._react(message.channel_id, message.message_ts, "eyes", add=False)
        await self._react(message.channel_id, message.message_ts, "x", add=True)

        text = f"❌ *Error:* {error}"
        session = self.active_sessions.get(session_key)
        job_name = session.job_name if session is not None else None
        if job_name is None and isinstance(error, OrchestratorError):
            job_name = error.job_name
        if job_name:
            text += f"\n\n{kubectl_commands(job_name, self.namespace)}"
        text += f"\n\n{troubleshooting_tips(self.namespace)}"

        await self._say(message, text)
        self._forget(session_key)

    # ------------------------------------------------------------------
    # Job status
    # ------------------------------------------------------------------

    async def _consume_status(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.apply_status(event)
            except Exception as e:
                logger.error(
                    "status_update_failed",
                    session_key=event.session_key,
                    status=event.status.value,
                    error=str(e),
                    exc_info=True,
                )

    async def apply_status(self, event: JobStatusEvent) -> None:
        session = self.active_sessions.get(event.session_key)
        if session is None:
            return
        if session.job_name is not None and session.job_name != event.job_name:
            return
        if not SessionStateMachine.transition(session, event.status):
            return

        log = logger.bind(session_key=event.session_key, job_name=event.job_name)
        log.info("session_status_changed", status=event.status.value)
        self.sessions.set_status(event.session_key, event.status)

        channel, ts = self._origins[event.session_key]
        emoji = STATUS_REACTIONS[event.status]
        previous = self._reactions.get(event.session_key)
        if previous != emoji:
            if previous:
                await self._react(channel, ts, previous, add=False)
            await self._react(channel, ts, emoji, add=True)
            self._reactions[event.session_key] = emoji

        if not event.status.is_terminal:
            return

        if event.status is SessionStatus.ERROR:
            await self._post(
                channel,
                session.thread_ts,
                f"❌ Job `{event.job_name}` failed.\n\n{kubectl_commands(event.job_name, self.namespace)}",
            )
        elif event.status is SessionStatus.TIMEOUT:
            await self._post(channel, session.thread_ts, f"⌛ {event.message}")

        await self.sessions.persist(event.session_key)
        self._forget(event.session_key)

    def _forget(self, session_key: str) -> None:
        self.active_sessions.pop(session_key, None)
        self._origins.pop(session_key, None)
        self._reactions.pop(session_key, None)
        self.sessions.discard(session_key)

    # ------------------------------------------------------------------
    # Chat helpers
    # ------------------------------------------------------------------

    async def _say(self, message: InboundMessage, text: str) -> None:
        await self._post(message.channel_id, message.thread_anchor, text)

    async def _post(self, channel: str, thread_ts: str | None, text: str) -> None:
        try:
            await self.chat.post_message(channel, text, thread_ts=thread_ts)
        except SlackApiError as e:
            logger.error("chat_post_failed", channel_id=channel, error=str(e))

    async def _react(self, channel: str, ts: str, name: str, add: bool) -> None:
        try:
            if add:
                await self.chat.add_reaction(channel, ts, name)
            else:
                await self.chat.remove_reaction(channel, ts, name)
        except SlackApiError as e:
            logger.debug("reaction_update_failed", reaction=name, add=add, error=str(e))
