"""FastAPI backend for the Expert Roundtable."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import List, Dict, Any, Optional
import uuid
import json
import asyncio
import logging

from . import storage
from .config import LOG_LEVEL
from .errors import GenerationError, RoundtableError
from .orchestrator import RoundtableOrchestrator, SessionState, TurnResult
from .synthesis import generate_conversation_title

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("roundtable.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    for orchestrator in _orchestrators.values():
        await orchestrator.close()
    _orchestrators.clear()


app = FastAPI(title="Expert Roundtable API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One live orchestrator per session; serializes turns and owns the sandbox worker
_orchestrators: Dict[str, RoundtableOrchestrator] = {}


class CreateSessionRequest(BaseModel):
    pass


class SendMessageRequest(BaseModel):
    content: str
    follow_up: bool = False


class RelatedQuestionRequest(BaseModel):
    node_text: str


class SessionMetadata(BaseModel):
    id: str
    created_at: str
    title: str
    message_count: int


class Session(BaseModel):
    id: str
    created_at: str
    title: str
    messages: List[Dict[str, Any]]
    panel: List[Dict[str, Any]] = []
    panel_question: Optional[str] = None
    documents: Dict[str, Any] = {}


def get_orchestrator(session_id: str) -> RoundtableOrchestrator:
    orchestrator = _orchestrators.get(session_id)
    if orchestrator is not None:
        return orchestrator
    session = storage.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    orchestrator = RoundtableOrchestrator(state=SessionState.from_dict(session))
    _orchestrators[session_id] = orchestrator
    return orchestrator


def persist(orchestrator: RoundtableOrchestrator):
    storage.save_session(orchestrator.state.to_dict())


def sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


@app.get("/")
async def root():
    return {"status": "ok", "service": "Expert Roundtable API"}


@app.get("/api/sessions", response_model=List[SessionMetadata])
async def list_sessions():
    return storage.list_sessions()


@app.post("/api/sessions", response_model=Session)
async def create_session(request: CreateSessionRequest):
    session_id = str(uuid.uuid4())
    return storage.create_session(session_id)


@app.get("/api/sessions/{session_id}", response_model=Session)
async def get_session(session_id: str):
    orchestrator = _orchestrators.get(session_id)
    if orchestrator is not None:
        return orchestrator.state.to_dict()
    session = storage.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    orchestrator = _orchestrators.pop(session_id, None)
    if orchestrator is not None:
        await orchestrator.close()
    try:
        storage.delete_session(session_id)
        return {"status": "deleted"}
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/api/sessions/{session_id}/documents")
async def upload_documents(session_id: str, files: List[UploadFile] = File(...)):
    orchestrator = get_orchestrator(session_id)
    payload = [(upload.filename or "", await upload.read()) for upload in files]
    try:
        added = orchestrator.state.documents.extract_files(payload)
    except RoundtableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    persist(orchestrator)
    return {
        "added": added,
        "skipped": [name for name, _ in payload if name not in added],
        "has_tabular": orchestrator.state.documents.has_tabular(),
    }


@app.post("/api/sessions/{session_id}/message/stream")
async def send_message_stream(session_id: str, request: SendMessageRequest):
    """Run one roundtable turn and stream its progress as server-sent events."""
    orchestrator = get_orchestrator(session_id)
    content = request.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is empty")
    is_first_message = len(orchestrator.state.ledger) == 0

    async def run_turn(queue: asyncio.Queue) -> TurnResult:
        result = await orchestrator.process_question(
            content, is_follow_up=request.follow_up, on_event=queue.put_nowait
        )
        if not result.cancelled:
            persist(orchestrator)
        return result

    async def event_generator():
        queue: asyncio.Queue = asyncio.Queue()
        title_task = None
        if is_first_message:
            title_task = asyncio.create_task(generate_conversation_title(content))

        turn = asyncio.create_task(run_turn(queue))
        turn.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield sse(event)

            result = turn.result()
            if result.cancelled:
                yield sse({'type': 'cancelled'})
                if title_task:
                    title_task.cancel()
                return

            if title_task:
                title = await title_task
                orchestrator.state.title = title
                storage.update_session_title(session_id, title)
                yield sse({'type': 'title_complete', 'data': {'title': title}})

            yield sse({'type': 'complete', 'data': result.to_dict()})

        except Exception as e:
            logger.error(f"Streaming turn failed: {e}", exc_info=True)
            yield sse({'type': 'error', 'message': str(e)})

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


@app.post("/api/sessions/{session_id}/related-question")
async def related_question(session_id: str, request: RelatedQuestionRequest):
    orchestrator = get_orchestrator(session_id)
    try:
        question = await orchestrator.related_question(request.node_text)
    except GenerationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"question": question}


@app.get("/api/sessions/{session_id}/finalmap")
async def finalmap(session_id: str):
    orchestrator = get_orchestrator(session_id)
    try:
        return await orchestrator.generate_finalmap()
    except GenerationError as e:
        raise HTTPException(status_code=400, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("roundtable.main:app", host="0.0.0.0", port=8001, reload=True)
