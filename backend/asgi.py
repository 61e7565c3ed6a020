import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# ------------------------------------------------------------------------------
# Bootstrapping: env + logging. The DB is created on startup.
# ------------------------------------------------------------------------------

load_dotenv()

from config import log_level  # noqa: E402  (reads the env loaded above)
from data.store import init_db  # noqa: E402
from transport.api_routes import api_router  # noqa: E402
from transport.voice_routes import voice_router  # noqa: E402

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("bookstore_ivr")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()  # create tables if they don't exist (call_logs, pending_messages, ...)
    log.info("bookstore IVR ready")
    yield


# ------------------------------------------------------------------------------
# FastAPI app + CORS (the back-office UI calls /ivr/api/* from the browser)
#
# Webhook routes (/ivr/voice/*) are called by the telephony switch and answer
# call-control XML; application routes (/ivr/api/*) answer JSON.
# ------------------------------------------------------------------------------

app = FastAPI(title="Bookstore call routing & IVR", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(voice_router)
app.include_router(api_router)


@app.get("/health")
async def health():
    return {"ok": True}
