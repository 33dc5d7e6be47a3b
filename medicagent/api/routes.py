from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from redis.exceptions import RedisError

from ..core.logging import bind_request, get_logger
from ..dependencies import get_agent_graph, get_job_queue
from ..orchestration.graph import AgentGraph
from ..queue.manager import JobQueue
from ..schemas.agents import AgentInput
from ..schemas.graph import GraphResponse

logger = get_logger(name=__name__)

router = APIRouter()


@router.post("/agents/chat", response_model=GraphResponse, tags=["agents"])
async def chat(
    payload: AgentInput,
    graph: AgentGraph = Depends(get_agent_graph),
) -> GraphResponse:
    with bind_request(user_id=payload.user_id, session_id=payload.session_id):
        logger.info("chat_request_received")
        return await graph.respond(payload)


@router.get("/health/queue", tags=["health"])
async def queue_health(queue: JobQueue = Depends(get_job_queue)) -> dict[str, Any]:
    try:
        counts = await queue.counts()
    except RedisError as exc:
        logger.warning("queue_health_unavailable", error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Queue unavailable") from exc
    return {"status": "ok", "counts": counts.as_dict()}
