"""
Chat session lifecycle.

:class:`SessionManager` exclusively owns the session set, the active-session
pointer and the working message buffer.  Every mutation of the set schedules
a fire-and-forget whole-collection save through the storage facade, but only
for an authenticated user, only once the initial history load has succeeded,
and only when the non-draft history actually changed.  An empty startup
draft, or a load that failed, can never overwrite stored history.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace

from .models import DEFAULT_SESSION_TITLE, ChatSession, Message, UserProfile, derive_title
from .storage import StorageFacade
from .streaming import StreamHandle

logger = logging.getLogger("tigra")

__all__ = ["SessionManager"]


class SessionManager:
    """In-memory session state with write-behind persistence."""

    def __init__(self, storage: StorageFacade) -> None:
        self._storage = storage
        self._sessions: list[ChatSession] = []
        self._active_id: str | None = None
        self._messages: tuple[Message, ...] = ()
        self._user: UserProfile | None = None
        self._loaded = False
        # History as last loaded from or handed to storage.
        self._saved: tuple[ChatSession, ...] | None = None
        self._stream: StreamHandle | None = None
        self._pending: set[asyncio.Task[bool]] = set()
        self._save_lock = asyncio.Lock()
        self._deferred = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[ChatSession, ...]:
        """All sessions, most recent first, drafts included."""
        return tuple(self._sessions)

    def history(self) -> tuple[ChatSession, ...]:
        """Sessions that have at least one message."""
        return tuple(session for session in self._sessions if not session.is_draft)

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    @property
    def active_session(self) -> ChatSession | None:
        return self._find(self._active_id) if self._active_id is not None else None

    @property
    def messages(self) -> tuple[Message, ...]:
        """The working message buffer of the active session."""
        return self._messages

    @property
    def user(self) -> UserProfile | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None and self._user.is_logged_in

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def stream(self) -> StreamHandle | None:
        return self._stream

    # ------------------------------------------------------------------
    # Startup / identity
    # ------------------------------------------------------------------

    def set_user(self, user: UserProfile | None) -> None:
        self._user = user

    def begin_load(self) -> None:
        """Suspend persistence until :meth:`finish_load`."""
        self._loaded = False

    def finish_load(
        self, sessions: Sequence[ChatSession] | None = None, *, keep_current: bool = False
    ) -> None:
        """Install loaded history (drafts dropped) and enable persistence.

        With *keep_current*, sessions already in memory that the loaded
        history does not know about stay at the front and get saved.
        """
        stored: tuple[ChatSession, ...] | None = None
        if sessions is not None:
            stored = tuple(session for session in sessions if not session.is_draft)
            created: list[ChatSession] = []
            if keep_current:
                known = {session.id for session in stored}
                created = [session for session in self._sessions if session.id not in known]
            self._sessions = [*created, *stored]
        self._loaded = True
        self._saved = stored if stored is not None else self.history()
        self._schedule_save()

    def reset(self) -> None:
        """Forget the user and all sessions, leaving one fresh draft."""
        self.detach_stream()
        self._user = None
        self._sessions = []
        self._messages = ()
        self._saved = None
        self.start_new_session()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def start_new_session(self) -> ChatSession:
        """Prepend an empty draft and make it active. Older drafts are dropped."""
        self.detach_stream()
        draft = ChatSession.draft()
        self._sessions = [draft, *self.history()]
        self._active_id = draft.id
        self._messages = ()
        self._schedule_save()
        return draft

    def load_session(self, session_id: str) -> ChatSession:
        """Activate an existing session and load its messages into the buffer."""
        session = self._find(session_id)
        if session is None:
            raise KeyError(f"No session with id {session_id!r}")
        self.detach_stream()
        self._active_id = session.id
        self._messages = session.messages
        return session

    def delete_session(self, session_id: str) -> None:
        before = len(self._sessions)
        self._sessions = [session for session in self._sessions if session.id != session_id]
        if len(self._sessions) == before:
            logger.debug("[Tigra Sessions] delete_session: unknown id %s", session_id)
            return
        if session_id == self._active_id:
            self.start_new_session()
        else:
            self._schedule_save()

    def clear_all(self) -> None:
        """Drop every session, persist the empty set, then open a new draft."""
        self.detach_stream()
        self._sessions = []
        self._messages = ()
        self._schedule_save(force=True)
        self.start_new_session()

    def record_turn(
        self, updated_messages: Sequence[Message], *, session_id: str | None = None
    ) -> bool:
        """Replace a session's messages; title is derived once, on the first write.

        Defaults to the active session.  Returns ``False`` when the target
        session no longer exists.
        """
        target_id = session_id if session_id is not None else self._active_id
        messages = tuple(updated_messages)
        for index, session in enumerate(self._sessions):
            if session.id != target_id:
                continue
            title = session.title
            if session.is_draft and messages:
                first_user = next((m for m in messages if m.role == "user"), None)
                if first_user is not None:
                    title = derive_title(first_user.content)
            self._sessions[index] = replace(session, messages=messages, title=title)
            if target_id == self._active_id:
                self._messages = messages
            self._schedule_save()
            return True
        logger.debug("[Tigra Sessions] record_turn: session %s is gone", target_id)
        return False

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def attach_stream(self, handle: StreamHandle) -> None:
        self.detach_stream()
        self._stream = handle

    def detach_stream(self) -> None:
        if self._stream is not None:
            self._stream.detach()
            self._stream = None

    def release_stream(self, handle: StreamHandle) -> None:
        """Clear *handle* if it is still the attached stream."""
        if self._stream is handle:
            self._stream = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _find(self, session_id: str | None) -> ChatSession | None:
        return next((s for s in self._sessions if s.id == session_id), None)

    def _schedule_save(self, *, force: bool = False) -> None:
        user = self._user
        if user is None or not user.is_logged_in:
            return
        if not self._loaded and not force:
            return
        snapshot = self.history()
        if snapshot == self._saved and not force:
            return
        self._saved = snapshot
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deferred = True
            logger.debug("[Tigra Sessions] No running loop, deferring save until flush()")
            return
        task = loop.create_task(self._save(user.email, list(snapshot)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save(self, email: str, snapshot: list[ChatSession]) -> bool:
        async with self._save_lock:
            return await self._storage.save_chat_history(email, snapshot)

    async def flush(self) -> None:
        """Wait for every scheduled save, running any deferred one first."""
        if self._deferred:
            self._deferred = False
            self._schedule_save(force=True)
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def __repr__(self) -> str:
        title = self.active_session.title if self.active_session else DEFAULT_SESSION_TITLE
        return f"SessionManager(sessions={len(self._sessions)}, active={title!r})"
