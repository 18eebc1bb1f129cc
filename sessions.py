from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


@dataclass(frozen=True)
class SessionUser:
    id: str


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="ledger-session")


def issue_session_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id})


def read_session_token(
    token: Optional[str], max_age_secs: Optional[int] = None
) -> Optional[SessionUser]:
    if not token:
        return None
    if max_age_secs is None:
        max_age_secs = get_settings().session_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not user_id:
        return None
    return SessionUser(id=str(user_id))
