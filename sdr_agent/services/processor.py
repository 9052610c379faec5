"""One coalesced turn in, one reply out.

``ConversationProcessor.process`` is what the worker calls for every unit
taken off the queue:

1. Operator units (typed on the bot's own phone) only toggle the human
   hand-off.  They are not the contact writing back, so nudges and the
   conversation status are left alone.
2. The contact wrote to us, so pending reactivation nudges are cancelled
   and the conversation is reopened.
3. A lone disable/enable token toggles the human hand-off and produces no
   reply.
4. While disabled, the inbound text is stored for the humans to read and
   the agent is not called.
5. Otherwise the agent runs over the stored history plus the new turn and
   both turns are persisted.

Agent failures become an apology.  Persistence failures are raised so the
queue dead-letters the unit.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sdr_agent.config import DISABLE_TOKEN, ENABLE_TOKEN
from sdr_agent.prompts import get_system_prompt
from sdr_agent.services.history import ConversationStore

logger = logging.getLogger(__name__)

APOLOGY = (
    "Desculpe, ocorreu um erro ao processar sua mensagem. "
    "Por favor, tente novamente em alguns instantes."
)


class Turn(Protocol):
    instance: str
    phone: str
    text: str
    name: str | None
    from_self: bool


class ConversationProcessor:
    def __init__(self, store: ConversationStore, agent, *, prompt_builder=get_system_prompt):
        self._store = store
        self._agent = agent
        self._prompt_builder = prompt_builder

    def process(self, turn: Turn) -> str | None:
        """Return the reply to send, or ``None`` when nothing should be sent."""
        phone, text = turn.phone, turn.text.strip()
        if turn.from_self:
            return self._operator_command(phone, text)

        self._store.mark_responded(phone)

        if text == DISABLE_TOKEN:
            self._store.set_disabled(phone, True)
            return None
        if text == ENABLE_TOKEN:
            self._store.set_disabled(phone, False)
            return None

        inbound = {"role": "user", "content": turn.text}

        if self._store.is_disabled(phone):
            logger.info("Bot disabled for %s; storing message only", phone)
            self._store.append_messages(phone, [inbound], name=turn.name, instance=turn.instance)
            return None

        history = self._store.load_history(phone)
        conversation = self._store.get(phone)
        name = turn.name or (conversation.name if conversation else None)

        try:
            reply = self._agent.invoke(
                self._prompt_builder(phone, name),
                history + [inbound],
                requester_id=phone,
                requester_name=name,
            )
        except Exception:
            logger.exception("Agent failed for %s", phone)
            self._store.append_messages(phone, [inbound], name=turn.name, instance=turn.instance)
            return APOLOGY

        if reply.tool_invocations:
            logger.info("%s: tools used %s", phone, [t["name"] for t in reply.tool_invocations])

        self._store.append_messages(
            phone,
            [inbound, {"role": "assistant", "content": reply.reply_text}],
            name=turn.name,
            instance=turn.instance,
        )
        return reply.reply_text

    def _operator_command(self, phone: str, text: str) -> None:
        if text == DISABLE_TOKEN:
            self._store.set_disabled(phone, True)
            logger.info("Bot disabled for %s by operator", phone)
        elif text == ENABLE_TOKEN:
            self._store.set_disabled(phone, False)
            logger.info("Bot re-enabled for %s by operator", phone)
        else:
            logger.warning("Ignoring operator text for %s: %r", phone, text[:30])
        return None
