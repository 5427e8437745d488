import logging
import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import Request
from pydantic import BaseModel

from cloud_app.database import (
    init_db,
    get_messages,
    get_conversations_by_guest,
    conversation_belongs_to_guest,
    delete_conversation as delete_conversation_record,
)
from cloud_app.clients import (
    CHAT_MODEL,
    IMAGE_MODEL,
    SEARCH_MODEL,
    MAX_GALLERY_IMAGES,
    LOG_LEVEL,
    ConfigurationError,
    Gateway,
    get_gateway,
)
from cloud_app.chat_service import (
    ChatRequest,
    ConversationAccessError,
    ConversationNotFoundError,
    handle_chat,
)
from cloud_app.relay import UpstreamError
from cloud_protocol.markers import extract

load_dotenv()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize database on startup
init_db()

app = FastAPI(title="Cloud Chat Relay")

origins = [
    "http://localhost:5173",  # Vite dev
    "http://localhost:8080",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request payload",
                "details": exc.errors(),
            }
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code_map = {
        400: "BAD_REQUEST",
        403: "ACCESS_DENIED",
        404: "NOT_FOUND",
    }
    error_code = code_map.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": error_code,
                "message": exc.detail,
            }
        },
    )


# Relay failures use the flat {error: string} body browser clients expect
@app.exception_handler(UpstreamError)
async def upstream_exception_handler(request: Request, exc: UpstreamError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    logger.error(f"[CONFIG] {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"[API] unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            }
        },
    )


class HealthResponse(BaseModel):
    ok: bool


class ModelsConfig(BaseModel):
    chat: str
    image: str
    search: str


class FeaturesConfig(BaseModel):
    web_search: bool
    image_search: bool
    image_generation: bool
    persistence: bool


class ConfigResponse(BaseModel):
    models: ModelsConfig
    features: FeaturesConfig
    max_gallery_images: int


class ConversationItem(BaseModel):
    id: str
    title: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    guest_id: Optional[str] = None


class ConversationsResponse(BaseModel):
    conversations: List[ConversationItem]


@app.get("/health", response_model=HealthResponse)
@app.get("/api/v1/health", response_model=HealthResponse)
def health():
    return {"ok": True}


@app.get("/config", response_model=ConfigResponse)
@app.get("/api/v1/config", response_model=ConfigResponse)
def get_config():
    return ConfigResponse(
        models=ModelsConfig(chat=CHAT_MODEL, image=IMAGE_MODEL, search=SEARCH_MODEL),
        features=FeaturesConfig(
            web_search=True,
            image_search=True,
            image_generation=True,
            persistence=True,
        ),
        max_gallery_images=MAX_GALLERY_IMAGES,
    )


@app.post("/chat")
@app.post("/api/v1/chat")
async def chat(request: ChatRequest, gateway: Gateway = Depends(get_gateway)):
    """
    Streaming chat endpoint.

    Flow:
    - Saves the user turn when conversationId or guestId is given, once the
      reply stream is open
    - Classifies intent; with cloudPlusEnabled may generate or search images
    - Streams the gateway's SSE response back unmodified (or a synthesized
      single-frame stream for generated images)
    - Upstream refusals map to 429 / 402 / 500 with {"error": "..."}
    """
    try:
        result = await handle_chat(request, gateway)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConversationAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))

    headers = {"Cache-Control": "no-cache"}
    if result.conversation_id:
        headers["X-Conversation-Id"] = result.conversation_id
    # Closes the upstream response when the client leaves before the first chunk
    return StreamingResponse(
        result.body,
        media_type="text/event-stream",
        headers=headers,
        background=BackgroundTask(result.aclose),
    )


@app.get("/conversations", response_model=ConversationsResponse)
@app.get("/api/v1/conversations", response_model=ConversationsResponse)
def get_conversations(guest_id: Optional[str] = None):
    """
    Get all conversations for a guest.
    Returns empty list if no guest_id provided.
    """
    if not guest_id:
        return {"conversations": []}
    return {"conversations": get_conversations_by_guest(guest_id)}


def _render_message(message: Dict[str, Any]) -> Dict[str, Any]:
    content = message["content"]
    if isinstance(content, str):
        result = extract(content)
        return {
            **message,
            "display": result.clean_text,
            "blocks": [block.model_dump(mode="json") for block in result.blocks],
        }
    text = next((p.get("text", "") for p in content if p.get("type") == "text"), "")
    return {**message, "display": text, "blocks": []}


@app.get("/conversations/{conversation_id}/messages")
@app.get("/api/v1/conversations/{conversation_id}/messages")
def get_conversation_messages(conversation_id: str, guest_id: Optional[str] = None):
    """
    Get all messages for a conversation, each with its display text and
    extracted marker blocks.
    """
    if guest_id and not conversation_belongs_to_guest(conversation_id, guest_id):
        raise HTTPException(status_code=403, detail="Access denied")

    messages = get_messages(conversation_id)
    return {"messages": [_render_message(m) for m in messages]}


@app.delete("/conversations/{conversation_id}")
@app.delete("/api/v1/conversations/{conversation_id}")
def delete_conversation(conversation_id: str, guest_id: Optional[str] = None):
    """
    Delete a conversation.
    Validates guest ownership before deletion.
    """
    if guest_id and not conversation_belongs_to_guest(conversation_id, guest_id):
        raise HTTPException(status_code=403, detail="Access denied")

    delete_conversation_record(conversation_id)
    return {"status": "deleted"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cloud_app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
