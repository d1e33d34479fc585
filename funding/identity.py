"""
Local identity collaborator.

Stands in for the external identity provider: keeps browser sessions in the
``sessions`` table and resolves the session cookie to a stable user id. The
funding engine only ever sees that id.
"""

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from werkzeug.security import check_password_hash, generate_password_hash

from .db import SessionRecord
from .timeutils import coerce_timestamp, utcnow

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


class SessionManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def create(self, user_id: str, claims: Optional[dict] = None) -> str:
        sid = secrets.token_urlsafe(32)
        payload = {"user_id": user_id, "claims": claims or {}}
        with self.session_factory() as session, session.begin():
            session.add(SessionRecord(
                sid=sid,
                sess=json.dumps(payload),
                expire=coerce_timestamp(self.clock()) + self.ttl,
            ))
        return sid

    def resolve(self, sid: Optional[str]) -> Optional[str]:
        """Return the user id bound to ``sid``, or None if missing or expired."""
        if not sid:
            return None
        with self.session_factory() as session, session.begin():
            record = session.get(SessionRecord, sid)
            if record is None:
                return None
            if record.expire <= coerce_timestamp(self.clock()):
                session.delete(record)
                return None
            return json.loads(record.sess).get("user_id")

    def destroy(self, sid: Optional[str]) -> None:
        if not sid:
            return
        with self.session_factory() as session, session.begin():
            session.execute(delete(SessionRecord).where(SessionRecord.sid == sid))

    def purge_expired(self) -> int:
        with self.session_factory() as session, session.begin():
            result = session.execute(
                delete(SessionRecord).where(SessionRecord.expire <= coerce_timestamp(self.clock()))
            )
            return result.rowcount or 0


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_current_user_id(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
) -> str:
    cookie_name = request.app.state.settings.SESSION_COOKIE_NAME
    user_id = sessions.resolve(request.cookies.get(cookie_name))
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id
