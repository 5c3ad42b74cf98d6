# /qfchat/app.py
import time

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from qfchat.errors import INTERNAL_ERROR_MESSAGE, InternalError, QfChatError
from qfchat.models import LoginReq, SearchUserReq, SignupReq
from qfchat.relay import Relay, get_relay
from qfchat.routes.chat_routes import router as chat_router
from qfchat.store import ChatState, get_state, init_state
from qfchat.utils import (
    DEBUG_LOG,
    HOST,
    PORT,
    QF_NUMBER_MAX,
    QF_NUMBER_MIN,
    cors_origins,
    logger,
    now_iso,
)

# -------------------- FastAPI --------------------
app = FastAPI(title="QfChat Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(chat_router)


# -------------------- Error mapping --------------------
def failure(message: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(QfChatError)
async def handled_error(request: Request, exc: QfChatError):
    """
    Handled errors are reported in the body, never as a failing status.
    Clients branch on the success flag.
    """
    return failure(exc.message)


@app.exception_handler(InternalError)
async def internal_error(request: Request, exc: InternalError):
    logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return failure(INTERNAL_ERROR_MESSAGE, status_code=500)


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    return failure(message)


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} crashed")
    return failure(INTERNAL_ERROR_MESSAGE, status_code=500)


# -------------------- Middleware (debug logging) --------------------
@app.middleware("http")
async def debug_logger(request: Request, call_next):
    """
    Lightweight access log when DEBUG_LOG=1.
    Example:
      [DEBUG] 127.0.0.1 POST /api/login -> 200 (0.8 ms)
    """
    start = time.perf_counter()
    response = await call_next(request)
    if DEBUG_LOG:
        dur_ms = (time.perf_counter() - start) * 1000
        client = getattr(request.client, "host", "-")
        logger.debug(
            f"{client} {request.method} {request.url.path} -> "
            f"{response.status_code} ({dur_ms:.1f} ms)"
        )
    return response


# -------------------- User Signup & Login --------------------
@app.post("/api/signup")
def signup(req: SignupReq, state: ChatState = Depends(get_state)):
    """
    Register a new user and hand out a fresh QfChat number.
    Usernames are case-sensitive and must be unique.
    """
    user = state.signup(req.username, req.password)
    logger.info(f"User '{user.username}' signed up with QfChat number {user.qfNumber}")
    return {"success": True, "user": user.public()}


@app.post("/api/login")
def login(req: LoginReq, state: ChatState = Depends(get_state)):
    user = state.identity.login(req.username, req.password)
    return {"success": True, "user": user.public()}


@app.post("/api/search-user")
def search_user(req: SearchUserReq, state: ChatState = Depends(get_state)):
    user = state.identity.find_by_qf_number(req.qfNumber)
    return {"success": True, "user": user.public()}


# -------------------- Health --------------------
@app.get("/health")
def health(state: ChatState = Depends(get_state), relay: Relay = Depends(get_relay)):
    return {
        "ok": True,
        "time": now_iso(),
        "users": len(state.identity),
        "chats": len(state.chats),
        "connections": len(relay.connections),
    }


# -------------------- Realtime --------------------
@app.websocket("/ws")
async def realtime(
        websocket: WebSocket,
        state: ChatState = Depends(get_state),
        relay: Relay = Depends(get_relay),
):
    conn = await relay.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Binary frames carry "bytes" instead of "text".
            await relay.handle_frame(conn, message.get("text"), state)
    except WebSocketDisconnect:
        pass
    finally:
        relay.disconnect(conn)


# -------------------- Startup --------------------
@app.on_event("startup")
def on_startup():
    init_state()

    logger.info("QfChat backend ready.")
    logger.info(f"QfChat numbers: {QF_NUMBER_MIN}-{QF_NUMBER_MAX}")
    logger.info(f"CORS origins: {', '.join(cors_origins())}")
    logger.info(f"Debug log: {'ON' if DEBUG_LOG else 'OFF'}")
    logger.info("Storage: in-memory (state is lost on restart)")


def main() -> None:
    import uvicorn

    uvicorn.run("qfchat.app:app", host=HOST, port=PORT, reload=DEBUG_LOG)


if __name__ == "__main__":
    main()
