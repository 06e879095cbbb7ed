"""Messages router: the sample resource behind capability and quota gates."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.message import Message
from routers.auth_scope import AuthContext, get_auth_context
from routers.capability_scope import consume_for_request, get_token_ledger
from routers.rate_limit import enforce_rate_limit, rate_limits_disabled
from services.catalog import FEATURE_CHAT_SEND, FEATURE_MESSAGING_UNLIMITED, USAGE_FEATURE_MESSAGES
from services.errors import GateError
from services.token_ledger import TokenLedger
from services.usage import check_and_increment_usage, release_usage
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)

MESSAGE_FEATURES = frozenset({FEATURE_CHAT_SEND, FEATURE_MESSAGING_UNLIMITED})


class MessageCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


def _serialize_message(message: Message) -> dict:
    return {
        "id": message.id,
        "content": message.content,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


@router.post("")
async def create_message(
    payload: MessageCreateRequest,
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
    ledger: TokenLedger = Depends(get_token_ledger),
    db: AsyncSession = Depends(get_db),
):
    if not rate_limits_disabled(request):
        await enforce_rate_limit(
            "messages",
            auth.user_id,
            settings.RATE_LIMIT_MESSAGES_LIMIT,
            settings.RATE_LIMIT_MESSAGES_WINDOW_SECONDS,
            response,
        )

    content = payload.content.strip()
    if not content:
        raise GateError("missing_content", status_code=400)

    await ensure_user(db, auth.user_id)

    # Reserve the quota slot first so an over-quota request never spends its token.
    usage = await check_and_increment_usage(
        auth.user_id,
        USAGE_FEATURE_MESSAGES,
        db,
        unlimited_feature_key=FEATURE_MESSAGING_UNLIMITED,
    )
    try:
        grant = await consume_for_request(request, MESSAGE_FEATURES, ledger, expected_subject=auth.user_id)
    except GateError:
        await release_usage(auth.user_id, USAGE_FEATURE_MESSAGES, db, usage)
        raise

    message = Message(id=str(uuid.uuid4()), user_id=auth.user_id, content=content)
    db.add(message)
    await db.commit()
    await db.refresh(message)
    logger.info("message_created id=%s user=%s feature=%s", message.id, auth.user_id, grant.feature)

    return {"ok": True, "message": _serialize_message(message), "usage": usage.to_dict()}


@router.get("")
async def list_messages(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Message)
        .where(Message.user_id == auth.user_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    return {"ok": True, "messages": [_serialize_message(message) for message in result.scalars().all()]}
