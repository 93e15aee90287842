import logging
import uuid
from concurrent.futures import ProcessPoolExecutor
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_gateway.challenge import ChallengeSolver
from chat_gateway.errors import GatewayError, MalformedRequest, Unauthorized
from chat_gateway.identity import REQUEST_ID_HEADER, set_request_id
from chat_gateway.logging_config import configure_logging
from chat_gateway.security import requires_authorization, verify_authorization
from chat_gateway.session_client import SessionClient
from chat_gateway.settings import get_settings
from chat_gateway.stream import StreamMultiplexer
from chat_gateway.translator import CompletionTranslator, build_turns
from shared.constants import (
    CHAT_COMPLETIONS_PATH,
    MODEL_CREATED,
    MODEL_GPT_35_TURBO,
    MODELS_PATH,
)
from shared.schemas import (
    ChatCompletion,
    ChatRequest,
    ErrorBody,
    ErrorResponse,
    ModelCard,
    ModelList,
)

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

_HTTP_ERROR_TYPES = {
    404: ("NotFound", "The requested endpoint was not found."),
    405: ("MethodNotAllowed", "The requested method is not allowed."),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    executor = ProcessPoolExecutor(max_workers=settings.solver_workers)
    solver = ChallengeSolver(settings.pow_max_attempts, executor)
    app.state.session_client = SessionClient(settings, solver)
    try:
        yield
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


app = FastAPI(title="ChatGPT Free API", lifespan=lifespan)


def get_session_client(request: Request) -> SessionClient:
    return request.app.state.session_client


def _error_response(status_code: int, message: str, err_type: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(message=message, type=err_type))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _gateway_error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope().model_dump())


@app.middleware("http")
async def authorization_middleware(request: Request, call_next):
    if requires_authorization(request, settings.authorization):
        try:
            verify_authorization(request, settings.authorization)
        except Unauthorized as exc:
            logger.warning("%s %s rejected detail=%s", request.method, request.url.path, exc.detail)
            return _gateway_error_response(exc)
    return await call_next(request)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    set_request_id(request_id)
    if settings.app_env.lower() == "prod":
        if request.url.path in ("/docs", "/openapi.json"):
            err_type, message = _HTTP_ERROR_TYPES[404]
            return _error_response(404, message, err_type)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.warning(
        "%s %s failed status=%s type=%s detail=%s",
        request.method,
        request.url.path,
        exc.status_code,
        exc.err_type,
        exc.detail,
    )
    return _gateway_error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    ]
    message = "Invalid request body, " + "; ".join(problems)
    logger.info("%s %s malformed request %s", request.method, request.url.path, message)
    return _error_response(MalformedRequest.status_code, message, MalformedRequest.err_type)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    err_type, message = _HTTP_ERROR_TYPES.get(exc.status_code, ("HTTPError", str(exc.detail)))
    return _error_response(exc.status_code, message, err_type)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get(MODELS_PATH)
async def models() -> ModelList:
    return ModelList(
        data=[ModelCard(id=MODEL_GPT_35_TURBO, created=MODEL_CREATED, root=MODEL_GPT_35_TURBO)]
    )


@app.options(CHAT_COMPLETIONS_PATH)
@app.options(MODELS_PATH)
async def options() -> Response:
    return Response(status_code=204)


@app.post(CHAT_COMPLETIONS_PATH, response_model=None)
async def chat_completions(
    payload: ChatRequest,
    session_client: SessionClient = Depends(get_session_client),
) -> ChatCompletion | StreamingResponse:
    turns = build_turns(payload.messages, settings.prompt_mode)
    logger.info(
        "chat request model=%s messages=%s turns=%s stream=%s",
        payload.model,
        len(payload.messages),
        len(turns),
        payload.stream,
    )
    translator = CompletionTranslator(payload.model)
    stream = await session_client.open_conversation(turns)
    multiplexer = StreamMultiplexer(stream, translator)

    if payload.stream:
        await multiplexer.prime()
        return StreamingResponse(
            multiplexer.sse(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
            background=BackgroundTask(multiplexer.aclose),
        )

    content = await multiplexer.collect()
    return translator.completion(content)
