import sys
from pathlib import Path

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

load_dotenv()

try:
    from backend import app_context
    from backend.app.billing import load_database_config
    from backend.app.routes.billing import router as billing_router
    from backend.app.services.billing import reset_billing_runtime
    from backend.billing_scheduler import shutdown_billing_scheduler, start_billing_scheduler
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]
    from app.billing import load_database_config  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.services.billing import reset_billing_runtime  # type: ignore[no-redef]
    from billing_scheduler import shutdown_billing_scheduler, start_billing_scheduler  # type: ignore[no-redef]


DB_CFG = load_database_config().connect_kwargs()


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Billing Reconciliation API")

app.include_router(billing_router)


@app.on_event("startup")
def _start_billing_scheduler() -> None:
    start_billing_scheduler()


@app.on_event("shutdown")
def _shutdown_billing_scheduler() -> None:
    shutdown_billing_scheduler()
    reset_billing_runtime()


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
