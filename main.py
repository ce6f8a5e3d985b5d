# FILE: main.py
"""
codechat - FastAPI Application
Version: 0.1.0

Features:
- Repository registration
- Background indexing jobs (fetch, chunk, embed, store) with polling status
- Cancellation of running jobs
- Smart code search with token-budgeted context and citations
"""
import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load .env FIRST before any other imports that might need env vars
load_dotenv()

from codechat.config import LOG_FORMAT, LOG_LEVEL
from codechat.db import init_db
from codechat.indexing.worker import get_worker
from codechat.router import router as repos_router

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger("codechat")

app = FastAPI(
    title="codechat",
    version="0.1.0",
    description="Code indexing and retrieval for connected repositories",
)

# ====== CORS ======

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ====== STARTUP / SHUTDOWN ======

@app.on_event("startup")
def on_startup():
    os.makedirs("data", exist_ok=True)
    init_db()

    # Jobs left in progress by a previous process can never finish
    failed = get_worker().startup()
    if failed:
        logger.warning(f"[startup] Marked {failed} orphaned indexing job(s) as failed")

    logger.info("[startup] Checking environment variables...")
    if os.getenv("OPENAI_API_KEY"):
        logger.info("[startup] OPENAI_API_KEY: [OK] set (enables embeddings + search)")
    else:
        logger.warning("[startup] OPENAI_API_KEY: [X] NOT SET - indexing and search will fail")

    if os.getenv("GITHUB_TOKEN"):
        logger.info("[startup] GITHUB_TOKEN: [OK] set")
    else:
        logger.info("[startup] GITHUB_TOKEN: [X] NOT SET - each index request must pass access_token")


@app.on_event("shutdown")
async def on_shutdown():
    await get_worker().shutdown()


# ====== ROUTERS ======

app.include_router(repos_router)


# ====== PUBLIC ENDPOINTS ======

@app.get("/ping")
def ping():
    """Health check."""
    return {"status": "ok", "active_jobs": len(get_worker().active_jobs())}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=False)
