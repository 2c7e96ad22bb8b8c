import logging
import math
import os
import sys
from pathlib import Path
from typing import Optional

from fastapi import Cookie, FastAPI, HTTPException, status
import psycopg2
import psycopg2.extras
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from backend import app_context
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "billing_db"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("billing")


def get_conn():
    return psycopg2.connect(**DB_CFG)


class SessionUser(BaseModel):
    id: str
    email: str
    role: str


def get_user_by_id(user_id: str) -> Optional[SessionUser]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute("SELECT id, email, role FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
    if not row:
        return None
    return SessionUser(id=str(row["id"]), email=row["email"], role=row["role"] or "user")


def resolve_user_from_session_token(session_token: str) -> Optional[SessionUser]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    return get_user_by_id(str(subject))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SessionUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

from backend.app.routes.billing import admin_router as billing_admin_router
from backend.app.routes.billing import router as billing_router

app = FastAPI(title="Billing Sync API")

app.include_router(billing_router)
app.include_router(billing_admin_router)


@app.get("/api/health")
def health():
    return {"ok": True}
