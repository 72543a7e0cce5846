import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from db.init_db import init_db
from api.auth import router as auth_router
from api.chats import router as chats_router, send_router
from api.security import check_key

# -------- Settings --------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
REPLY_MODE = os.getenv("REPLY_MODE", "stream")   # "stream" | "sync"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# CORS origins (dev Vite/Svelte)
ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
extra = os.getenv("FRONTEND_ORIGINS")
if extra:
    ALLOWED_ORIGINS += [o.strip() for o in extra.split(",") if o.strip()]

# -------- App --------
app = FastAPI(title="Personal Assistant API", dependencies=[Depends(check_key)])
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def _startup():
    init_db()
    logger.info("database ready, reply mode=%s", REPLY_MODE)

@app.exception_handler(RequestValidationError)
async def _invalid_payload(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": {"error": "invalid payload", "details": jsonable_encoder(exc.errors())}},
    )

# mount routes
app.include_router(auth_router)
app.include_router(chats_router)
app.include_router(send_router(REPLY_MODE))

# -------- Routes --------
@app.get("/health")
def health():
    return {"ok": True}

@app.get("/hello")
def hello(name: Optional[str] = Query(None)):
    return {"message": f"Hello, {name or 'World'}!"}

@app.get("/greet")
def greet(first: Optional[str] = Query(None), last: Optional[str] = Query(None)):
    if not first or not last:
        raise HTTPException(400, "Missing first or last name")
    return {"message": f"Hello, {first} {last}"}
