"""Tests for authentication, entitlement and ownership checks."""

import asyncio
from uuid import uuid4

import pytest

from conftest import ScriptedChatModel, make_provider
from resumable_chat.api.access import AccessGate
from resumable_chat.domain.errors import ChatError
from resumable_chat.domain.models import Message, Role, Session, TextPart, Visibility
from resumable_chat.services.llm import TextDelta


def user_message(chat_id, text: str = "Hello") -> Message:
    return Message(chat_id=chat_id, role=Role.USER, parts=[TextPart(text=text)])


async def fill_quota(repository, user_id: str, count: int) -> None:
    chat = await repository.create_chat(uuid4(), user_id, "Quota", "private")
    await repository.append_messages([user_message(chat.id) for _ in range(count)])


@pytest.mark.asyncio
async def test_unauthenticated_before_anything_else(repository):
    gate = AccessGate(repository, make_provider(), max_messages_per_day=0)
    chat_id = uuid4()
    with pytest.raises(ChatError) as exc:
        await gate.authorize_turn(None, chat_id, Visibility.PRIVATE, user_message(chat_id))
    assert exc.value.code == "unauthorized:chat"
    assert await repository.get_chat(chat_id) is None


@pytest.mark.asyncio
async def test_count_equal_to_ceiling_is_allowed(repository, session):
    await fill_quota(repository, session.user_id, 3)
    gate = AccessGate(repository, make_provider(), max_messages_per_day=3)
    chat_id = uuid4()

    _, chat, is_new, count = await gate.authorize_turn(
        session, chat_id, Visibility.PRIVATE, user_message(chat_id)
    )

    assert count == 3
    assert is_new
    assert chat.user_id == session.user_id


@pytest.mark.asyncio
async def test_count_above_ceiling_is_rate_limited(repository, session):
    await fill_quota(repository, session.user_id, 4)
    gate = AccessGate(repository, make_provider(), max_messages_per_day=3)
    chat_id = uuid4()

    with pytest.raises(ChatError) as exc:
        await gate.authorize_turn(session, chat_id, Visibility.PRIVATE, user_message(chat_id))

    assert exc.value.code == "rate_limit:chat"
    assert exc.value.status_code == 429
    assert await repository.get_chat(chat_id) is None


@pytest.mark.asyncio
async def test_other_users_messages_do_not_count(repository, session):
    await fill_quota(repository, "someone-else", 10)
    gate = AccessGate(repository, make_provider(), max_messages_per_day=1)
    assert await gate.check_entitlement(session) == 0


@pytest.mark.asyncio
async def test_rate_limit_precedes_ownership(repository, session):
    await fill_quota(repository, session.user_id, 2)
    foreign = await repository.create_chat(uuid4(), "someone-else", "Theirs", "private")
    gate = AccessGate(repository, make_provider(), max_messages_per_day=1)

    with pytest.raises(ChatError) as exc:
        await gate.authorize_turn(session, foreign.id, Visibility.PRIVATE, user_message(foreign.id))
    assert exc.value.code == "rate_limit:chat"


@pytest.mark.asyncio
async def test_existing_chat_keeps_its_title_and_owner(repository, session):
    existing = await repository.create_chat(uuid4(), session.user_id, "Original", "private")
    title_model = ScriptedChatModel([[TextDelta("Unused")]], model_id="title-model")
    gate = AccessGate(repository, make_provider(title=title_model))

    _, chat, is_new, _ = await gate.authorize_turn(
        session, existing.id, Visibility.PUBLIC, user_message(existing.id)
    )

    assert not is_new
    assert chat.title == "Original"
    assert chat.visibility == Visibility.PRIVATE
    assert title_model.calls == []


@pytest.mark.asyncio
async def test_title_falls_back_to_message_text(repository, session):
    broken_title = ScriptedChatModel([[RuntimeError("title model down")]], model_id="title-model")
    gate = AccessGate(repository, make_provider(title=broken_title))
    chat_id = uuid4()
    long_text = "word " * 40

    _, chat, _, _ = await gate.authorize_turn(
        session, chat_id, Visibility.PRIVATE, user_message(chat_id, long_text)
    )

    assert chat.title == long_text.strip()[:80]


@pytest.mark.asyncio
async def test_concurrent_first_turns_create_one_chat(repository):
    slow = asyncio.Event()
    title_model = ScriptedChatModel([[slow, TextDelta("Title")]], model_id="title-model")
    gate = AccessGate(repository, make_provider(title=title_model))
    chat_id = uuid4()

    async def first_turn(user_id: str):
        return await gate.authorize_turn(
            Session(user_id=user_id), chat_id, Visibility.PRIVATE, user_message(chat_id)
        )

    same_owner = [asyncio.create_task(first_turn("user-1")) for _ in range(2)]
    intruder = asyncio.create_task(first_turn("user-2"))
    await asyncio.sleep(0)
    slow.set()
    results = await asyncio.gather(*same_owner, intruder, return_exceptions=True)

    chat = await repository.get_chat(chat_id)
    winners = [r for r in results if not isinstance(r, Exception) and r[2]]
    assert len(winners) == 1
    assert chat.user_id == winners[0][0].user_id

    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, ChatError)
            assert result.code == "forbidden:chat"
        else:
            assert result[1].id == chat_id


@pytest.mark.asyncio
async def test_read_rules(repository, session):
    gate = AccessGate(repository, make_provider())
    private = await repository.create_chat(uuid4(), "owner", "Private", "private")
    public = await repository.create_chat(uuid4(), "owner", "Public", "public")

    assert (await gate.authorize_read(Session(user_id="owner"), private.id)).id == private.id
    assert (await gate.authorize_read(session, public.id)).id == public.id
    with pytest.raises(ChatError) as exc:
        await gate.authorize_read(session, private.id)
    assert exc.value.code == "forbidden:chat"


@pytest.mark.asyncio
async def test_delete_requires_owner_even_for_public_chats(repository, session):
    gate = AccessGate(repository, make_provider())
    public = await repository.create_chat(uuid4(), "owner", "Public", "public")

    with pytest.raises(ChatError) as exc:
        await gate.authorize_delete(session, public.id)
    assert exc.value.code == "forbidden:chat"

    with pytest.raises(ChatError) as exc:
        await gate.authorize_delete(session, uuid4())
    assert exc.value.code == "not_found:chat"
