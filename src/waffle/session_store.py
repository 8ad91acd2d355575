"""
File-based store for review sessions.

Each session is persisted as ``<session_dir>/<session_id>.json`` holding
the complete ``ReviewSession`` (workload model, questions, evaluations,
results and checkpoint). Files are written atomically (temporary file +
``os.replace``) with owner-only permissions, so an interrupted write never
leaves a truncated session behind and a resumed review always sees the
last completed checkpoint.

Layout:
    ~/.waffle/sessions/            (mode 0700)
    ├── 6f1c...-....json           (mode 0600)
    └── 9a2e...-....json

Usage:
    from waffle.session_store import SessionStore
    from waffle.models import ReviewScope

    store = SessionStore("~/.waffle/sessions")
    session = store.create_session("my-app", ReviewScope.workload(), "aws-wl-id")
    session.checkpoint = Checkpoint.IAC_ANALYSIS_COMPLETE
    store.save_session(session)

    reloaded = store.load_session(session.session_id)
"""

import os
import re
import tempfile
import uuid
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from waffle.errors import (
    InvalidWorkloadIDError,
    SessionNotFoundError,
    StateStoreError,
    ValidationError,
)
from waffle.logging_config import get_logger, log_with_context
from waffle.models import ReviewScope, ReviewSession, SessionStatus, utc_now

logger = get_logger(__name__)

DEFAULT_SESSION_DIR = "~/.waffle/sessions"

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class SessionStore:
    """
    Persists review sessions as JSON files.

    The store assumes a single writer per session id. Saving the same
    session twice is harmless.

    Attributes:
        session_dir: Directory holding the session files
    """

    def __init__(self, session_dir: str | Path = DEFAULT_SESSION_DIR) -> None:
        """
        Initialize the store and create the session directory.

        Args:
            session_dir: Directory for session files (``~`` is expanded)

        Raises:
            StateStoreError: If the directory cannot be created
        """
        self.session_dir: Path = Path(session_dir).expanduser()
        try:
            self.session_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(
                f"failed to create session directory {self.session_dir}: {e}",
                operation="init",
            ) from e

        log_with_context(
            logger,
            "debug",
            "Initialized session store",
            session_dir=str(self.session_dir),
        )

    def _session_path(self, session_id: str) -> Path:
        if not session_id:
            raise ValidationError("session_id", "session ID is empty")
        if not _SESSION_ID_PATTERN.match(session_id):
            raise ValidationError("session_id", "session ID contains invalid characters", value=session_id)
        return self.session_dir / f"{session_id}.json"

    def create_session(
        self,
        workload_id: str,
        scope: ReviewScope,
        aws_workload_id: str = "",
    ) -> ReviewSession:
        """
        Create and persist a new session with status ``created``.

        Args:
            workload_id: Caller-supplied workload identifier
            scope: Review scope (validated)
            aws_workload_id: Well-Architected Tool workload id

        Returns:
            The persisted session

        Raises:
            InvalidWorkloadIDError: If ``workload_id`` is empty
            PillarRequiredError: Pillar scope without a pillar
            QuestionIDRequiredError: Question scope without a question id
            StateStoreError: If the session cannot be written
        """
        if not workload_id.strip():
            raise InvalidWorkloadIDError()
        scope.validate_scope()

        now = utc_now()
        session = ReviewSession(
            session_id=str(uuid.uuid4()),
            workload_id=workload_id,
            aws_workload_id=aws_workload_id,
            scope=scope,
            status=SessionStatus.CREATED,
            created_at=now,
            updated_at=now,
        )
        self.save_session(session)

        log_with_context(
            logger,
            "info",
            "Session created",
            session_id=session.session_id,
            workload_id=workload_id,
            aws_workload_id=aws_workload_id,
        )
        return session

    def save_session(self, session: ReviewSession) -> None:
        """
        Persist a session atomically, refreshing ``updated_at``.

        Args:
            session: Session to write

        Raises:
            ValidationError: If the session id is empty or unsafe
            StateStoreError: If the file cannot be written
        """
        path = self._session_path(session.session_id)
        session.updated_at = utc_now()
        payload = session.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(
            dir=self.session_dir,
            prefix=f".{session.session_id}.",
            suffix=".tmp",
        )
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                _ = handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            log_with_context(
                logger,
                "error",
                "Failed to save session",
                session_id=session.session_id,
                error=str(e),
            )
            raise StateStoreError(
                f"failed to save session {session.session_id}: {e}",
                operation="save",
                session_id=session.session_id,
            ) from e

        log_with_context(
            logger,
            "debug",
            "Session saved",
            session_id=session.session_id,
            status=session.status.value,
            checkpoint=session.checkpoint.value,
        )

    def load_session(self, session_id: str) -> ReviewSession:
        """
        Load a session by id.

        Args:
            session_id: Session to load

        Returns:
            The stored session

        Raises:
            SessionNotFoundError: If no file exists for the id
            StateStoreError: If the file is unreadable or corrupt
        """
        path = self._session_path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFoundError(f"session not found: {session_id}", session_id) from e
        except OSError as e:
            raise StateStoreError(
                f"failed to read session {session_id}: {e}",
                operation="load",
                session_id=session_id,
            ) from e

        try:
            session = ReviewSession.model_validate_json(raw)
        except PydanticValidationError as e:
            raise StateStoreError(
                f"failed to decode session {session_id}: {e}",
                operation="load",
                session_id=session_id,
            ) from e

        log_with_context(
            logger,
            "debug",
            "Session loaded",
            session_id=session_id,
            status=session.status.value,
        )
        return session

    def update_session_status(self, session_id: str, status: SessionStatus) -> ReviewSession:
        """
        Load, update the status of, and save a session.

        Returns:
            The updated session
        """
        session = self.load_session(session_id)
        session.status = status
        self.save_session(session)

        log_with_context(
            logger,
            "info",
            "Session status updated",
            session_id=session_id,
            status=status.value,
        )
        return session

    def update_milestone_id(self, session_id: str, milestone_id: str) -> ReviewSession:
        """Record the milestone created for a session."""
        session = self.load_session(session_id)
        session.milestone_id = milestone_id
        self.save_session(session)
        return session

    def get_aws_workload_id(self, session_id: str) -> str:
        """Return the Well-Architected Tool workload id of a session."""
        return self.load_session(session_id).aws_workload_id

    def list_all_sessions(self) -> list[ReviewSession]:
        """
        Load every stored session, newest first.

        Unreadable session files are logged and skipped.
        """
        sessions: list[ReviewSession] = []
        for path in sorted(self.session_dir.glob("*.json")):
            try:
                sessions.append(self.load_session(path.stem))
            except (StateStoreError, ValidationError, SessionNotFoundError) as e:
                log_with_context(
                    logger,
                    "warning",
                    "Skipping unreadable session file",
                    path=str(path),
                    error=str(e),
                )
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def list_sessions(self, workload_id: str) -> list[ReviewSession]:
        """Return sessions for one workload id, newest first."""
        return [s for s in self.list_all_sessions() if s.workload_id == workload_id]

    def delete_session(self, session_id: str) -> None:
        """
        Delete a stored session.

        Raises:
            SessionNotFoundError: If no file exists for the id
            StateStoreError: If the file cannot be removed
        """
        path = self._session_path(session_id)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise SessionNotFoundError(f"session not found: {session_id}", session_id) from e
        except OSError as e:
            raise StateStoreError(
                f"failed to delete session {session_id}: {e}",
                operation="delete",
                session_id=session_id,
            ) from e

        log_with_context(logger, "info", "Session deleted", session_id=session_id)

    def cleanup_old_sessions(self, retention_days: int) -> int:
        """
        Delete sessions not updated within the retention period.

        Args:
            retention_days: Days to keep sessions; 0 keeps everything

        Returns:
            Number of sessions deleted
        """
        if retention_days <= 0:
            return 0

        cutoff = utc_now() - timedelta(days=retention_days)
        deleted = 0
        for session in self.list_all_sessions():
            if session.updated_at < cutoff:
                self.delete_session(session.session_id)
                deleted += 1

        log_with_context(
            logger,
            "info",
            "Cleaned up old sessions",
            retention_days=retention_days,
            deleted_count=deleted,
        )
        return deleted
