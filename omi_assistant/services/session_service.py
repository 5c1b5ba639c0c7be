from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from omi_assistant.config import Settings
from omi_assistant.logging_config import get_logger
from omi_assistant.models import OmiSession, OmiUserLink, SessionPreference, UserPreference
from omi_assistant.services.activation_service import (
    SessionActivationPrefs,
    UserActivationPrefs,
    merge_activation_config,
)
from omi_assistant.services.errors import UpstreamServiceError
from omi_assistant.services.session_cache import SessionSnapshot, SnapshotLoader

logger = get_logger("session_service")


def user_prefs_from_row(row: Optional[UserPreference]) -> Optional[UserActivationPrefs]:
    if row is None:
        return None
    return UserActivationPrefs(
        listen_mode=row.listen_mode,
        followup_window_ms=row.followup_window_ms,
        inject_memories=bool(row.inject_memories),
        activation_regex=row.activation_regex,
        mute=bool(row.mute),
        quiet_hours_start=row.quiet_hours_start,
        quiet_hours_end=row.quiet_hours_end,
        meeting_transcribe=bool(row.meeting_transcribe),
    )


def session_prefs_from_row(row: Optional[SessionPreference]) -> Optional[SessionActivationPrefs]:
    if row is None:
        return None
    # row.inject_memories is deliberately not copied
    return SessionActivationPrefs(
        listen_mode=row.listen_mode,
        followup_window_ms=row.followup_window_ms,
        activation_regex=row.activation_regex,
        mute=row.mute,
        quiet_hours_start=row.quiet_hours_start,
        quiet_hours_end=row.quiet_hours_end,
        meeting_transcribe=row.meeting_transcribe,
    )


def resolve_verified_user_id(db: Session, device_user_id: Optional[str]) -> Optional[str]:
    """Map a device platform uid to an account id through a verified link."""
    if not device_user_id:
        return None
    link = db.query(OmiUserLink).filter(OmiUserLink.omi_user_id == str(device_user_id)).first()
    if link and link.is_verified:
        return str(link.user_id)
    return None


def load_session_snapshot(
    db: Session,
    session_id: str,
    candidate_user_id: Optional[str],
    settings: Settings,
) -> SessionSnapshot:
    """Read session, device link and preference rows into one snapshot."""
    session_row = db.query(OmiSession).filter(OmiSession.omi_session_id == str(session_id)).first()

    linked_user_id = str(session_row.user_id) if session_row and session_row.user_id else None
    resolved_user_id = linked_user_id or resolve_verified_user_id(db, candidate_user_id)

    user_pref_row = None
    if resolved_user_id:
        user_pref_row = db.query(UserPreference).filter(UserPreference.user_id == resolved_user_id).first()

    session_pref_row = None
    if session_row is not None:
        session_pref_row = (
            db.query(SessionPreference).filter(SessionPreference.omi_session_id == session_row.id).first()
        )

    activation = merge_activation_config(
        user_prefs_from_row(user_pref_row),
        session_prefs_from_row(session_pref_row),
        default_listen_mode=settings.default_listen_mode,
        default_followup_window_ms=settings.default_followup_window_ms,
    )

    return SessionSnapshot(
        session_id=str(session_id),
        exists=session_row is not None,
        linked_user_id=linked_user_id,
        resolved_user_id=resolved_user_id,
        conversation_handle=session_row.conversation_handle if session_row else None,
        last_seen_at=session_row.last_seen_at if session_row else None,
        activation=activation,
    )


def default_snapshot(session_id: str, settings: Settings) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=str(session_id),
        activation=merge_activation_config(
            None,
            None,
            default_listen_mode=settings.default_listen_mode,
            default_followup_window_ms=settings.default_followup_window_ms,
        ),
    )


def make_snapshot_loader(session_factory: Callable[[], Session], settings: Settings) -> SnapshotLoader:
    """Build the cache loader. Store failures surface as UpstreamServiceError."""

    def _load(session_id: str, candidate_user_id: Optional[str]) -> SessionSnapshot:
        if not settings.enable_user_system:
            return default_snapshot(session_id, settings)
        db = session_factory()
        try:
            return load_session_snapshot(db, session_id, candidate_user_id, settings)
        except SQLAlchemyError as exc:
            logger.warning(
                "Session metadata read failed",
                extra={"context": {"session_id": session_id, "error": str(exc)}},
            )
            raise UpstreamServiceError("durable_store", str(exc)) from exc
        finally:
            db.close()

    return _load
