from fastapi import FastAPI
from sqlalchemy import text

from .config import settings
from .deps import get_engine, get_redis

app = FastAPI(title="Assist Backend", version="0.1.0")

from .api import router as v1_router
app.include_router(v1_router)

@app.get("/healthz")
def healthz():
    # Redis check
    r = get_redis()
    if r.ping() is not True:
        raise RuntimeError("redis ping failed")

    # DB is optional: session records are only kept when DATABASE_URL is set
    db = "disabled"
    if settings.database_url:
        with get_engine().connect() as conn:
            conn.execute(text("select 1"))
        db = "ok"

    return {"status": "ok", "db": db, "redis": "ok"}
