from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request
from itsdangerous import BadSignature, URLSafeTimedSerializer  # type: ignore

from coach_pipeline.config import get_settings
from coach_pipeline.jobs.admission import AdmissionController
from coach_pipeline.jobs.recordings import RecordingStore
from coach_pipeline.jobs.store import JobStore
from coach_pipeline.jobs.worker import AnalysisWorker
from coach_pipeline.utils.log import set_user_id

_TOKEN_SALT = "coach-pipeline-access"


@dataclass(frozen=True, slots=True)
class Identity:
    user_id: str


def _serializer() -> URLSafeTimedSerializer:
    s = get_settings()
    return URLSafeTimedSerializer(s.session_secret.get_secret_value(), salt=_TOKEN_SALT)


def issue_token(user_id: str) -> str:
    return str(_serializer().dumps({"sub": str(user_id)}))


def decode_token(token: str) -> dict:
    s = get_settings()
    try:
        data = _serializer().loads(token, max_age=int(s.token_max_age_s))
    except BadSignature:
        raise HTTPException(status_code=401, detail="Invalid token") from None
    if not isinstance(data, dict) or not str(data.get("sub") or ""):
        raise HTTPException(status_code=401, detail="Invalid token")
    return data


def extract_bearer(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def current_identity(request: Request) -> Identity:
    token = extract_bearer(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    data = decode_token(token)
    uid = str(data["sub"])
    set_user_id(uid)
    return Identity(user_id=uid)


def get_job_store(request: Request) -> JobStore:
    store = getattr(request.app.state, "job_store", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Job store not initialized")
    return store


def get_recordings(request: Request) -> RecordingStore:
    store = getattr(request.app.state, "recordings", None)
    if store is None:
        raise HTTPException(status_code=500, detail="Recording store not initialized")
    return store


def get_admission(request: Request) -> AdmissionController:
    adm = getattr(request.app.state, "admission", None)
    if adm is None:
        raise HTTPException(status_code=500, detail="Admission controller not initialized")
    return adm


def get_worker(request: Request) -> AnalysisWorker | None:
    return getattr(request.app.state, "worker", None)
