"""
tally.api.routes.events — Forum event ingestion (service-token protected)
=========================================================================

The forum backend forwards its domain events here; each is normalized
into an envelope and emitted on the process-wide :class:`EventBus`.
Listener failures are logged by the bus and never fail the request.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tally.api.deps import get_current_admin, get_event_bus
from tally.engine.events import (
    POST_CREATED,
    POST_LIKED,
    TOPIC_CREATED,
    EventBus,
    PostCreated,
    PostLiked,
    TopicCreated,
)

router = APIRouter(prefix="/events", tags=["events"])


class TopicCreatedBody(BaseModel):
    topic_id: int
    user_id: int
    title: str = ""


class PostCreatedBody(BaseModel):
    post_id: int
    topic_id: int
    user_id: int
    post_number: int


class PostLikedBody(BaseModel):
    post_id: int
    post_author_id: int
    user_id: int


@router.post("/topic-created")
async def topic_created(
    body: TopicCreatedBody,
    admin: dict = Depends(get_current_admin),
    bus: EventBus = Depends(get_event_bus),
):
    handled = await bus.emit(TOPIC_CREATED, TopicCreated(**body.model_dump()))
    return {"event": TOPIC_CREATED, "handled": handled}


@router.post("/post-created")
async def post_created(
    body: PostCreatedBody,
    admin: dict = Depends(get_current_admin),
    bus: EventBus = Depends(get_event_bus),
):
    handled = await bus.emit(POST_CREATED, PostCreated(**body.model_dump()))
    return {"event": POST_CREATED, "handled": handled}


@router.post("/post-liked")
async def post_liked(
    body: PostLikedBody,
    admin: dict = Depends(get_current_admin),
    bus: EventBus = Depends(get_event_bus),
):
    handled = await bus.emit(POST_LIKED, PostLiked(**body.model_dump()))
    return {"event": POST_LIKED, "handled": handled}
