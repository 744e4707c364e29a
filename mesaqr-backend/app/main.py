import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.observability import RequestLoggingMiddleware
from app.routers import billing, billing_webhook

app = FastAPI(title="MesaQR Billing API")

ALLOWED_ORIGINS = [
    # Dev - Next/Vite
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _parse_env_list(name: str) -> list[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


cors_origins = _parse_env_list("CORS_ALLOWED_ORIGINS") or ALLOWED_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_methods=["*"], allow_headers=["*"], allow_credentials=True,
)
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health")
def health(): return {"ok": True}


app.include_router(billing.router)
app.include_router(billing_webhook.router)
