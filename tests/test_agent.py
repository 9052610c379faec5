"""Tests for the LangGraph reasoning agent.

Covers:
  - Tool-routing edge function
  - Chatbot node behaviour with a mocked LLM
  - End-to-end graph runs with identity injected through the run config
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import tool

from sdr_agent.agent import (
    AgentState,
    ReasoningAgent,
    _make_chatbot_node,
    _text_of,
    _to_messages,
    create_sdr_graph,
    should_use_tools,
)

PHONE = "5511999990000"


# ── Helpers ──────────────────────────────────────────────────────────


def _make_mock_llm(*responses: AIMessage):
    """Create a mock LLM that returns the given AIMessages in order."""
    mock_llm = MagicMock()
    mock_llm.invoke.side_effect = list(responses)
    return mock_llm


@tool
def whoami(config: RunnableConfig) -> str:
    """Return the phone of the contact being served."""
    return config["configurable"]["requester_id"]


def _agent(*responses: AIMessage):
    llm = _make_mock_llm(*responses)
    graph = create_sdr_graph([whoami], llm_with_tools=llm)
    return ReasoningAgent([whoami], graph=graph), llm


# ── TestShouldUseTools ───────────────────────────────────────────────


class TestShouldUseTools:
    """Verify the tool-routing edge function."""

    def test_message_with_tool_calls_routes_to_tools(self):
        ai_msg = AIMessage(content="")
        ai_msg.tool_calls = [{"name": "list_available_days", "args": {}, "id": "1"}]
        state: AgentState = {"system": "", "messages": [ai_msg]}
        assert should_use_tools(state) == "tools"

    def test_message_without_tool_calls_routes_to_end(self):
        state: AgentState = {"system": "", "messages": [AIMessage(content="Temos horários amanhã.")]}
        assert should_use_tools(state) == "__end__"  # LangGraph's END sentinel

    def test_message_with_empty_tool_calls_routes_to_end(self):
        ai_msg = AIMessage(content="Pronto!")
        ai_msg.tool_calls = []
        state: AgentState = {"system": "", "messages": [ai_msg]}
        assert should_use_tools(state) == "__end__"


# ── TestChatbotNode ──────────────────────────────────────────────────


class TestChatbotNode:
    def test_system_prompt_goes_first(self):
        llm = _make_mock_llm(AIMessage(content="Olá!"))
        node = _make_chatbot_node(llm)

        result = node({"system": "Você é a Lia.", "messages": [HumanMessage(content="Oi")]})

        sent = llm.invoke.call_args.args[0]
        assert isinstance(sent[0], SystemMessage)
        assert sent[0].content == "Você é a Lia."
        assert sent[1].content == "Oi"
        assert result["messages"][0].content == "Olá!"

    def test_llm_errors_propagate(self):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("LLM down")
        node = _make_chatbot_node(llm)
        with pytest.raises(RuntimeError, match="LLM down"):
            node({"system": "", "messages": [HumanMessage(content="Oi")]})


# ── TestMessageConversion ────────────────────────────────────────────


class TestMessageConversion:
    def test_roles_map_to_message_types(self):
        messages = _to_messages([
            {"role": "user", "content": "Oi"},
            {"role": "assistant", "content": "Olá!"},
        ])
        assert isinstance(messages[0], HumanMessage)
        assert isinstance(messages[1], AIMessage)

    def test_text_of_content_blocks(self):
        message = AIMessage(content=[
            {"type": "text", "text": "Perfeito, "},
            {"type": "tool_use", "id": "x", "name": "whoami", "input": {}},
            {"type": "text", "text": "agendado!"},
        ])
        assert _text_of(message) == "Perfeito, agendado!"


# ── TestReasoningAgent ───────────────────────────────────────────────


class TestReasoningAgent:
    def test_plain_reply(self):
        agent, _ = _agent(AIMessage(content="  Olá! De qual cidade você fala?  "))

        reply = agent.invoke("system", [{"role": "user", "content": "Oi"}], requester_id=PHONE)

        assert reply.reply_text == "Olá! De qual cidade você fala?"
        assert reply.tool_invocations == []

    def test_tool_loop_receives_identity_from_config(self):
        agent, llm = _agent(
            AIMessage(content="", tool_calls=[{"name": "whoami", "args": {}, "id": "call_1"}]),
            AIMessage(content="Seu número é esse mesmo."),
        )

        reply = agent.invoke(
            "system", [{"role": "user", "content": "Qual meu número?"}],
            requester_id=PHONE, requester_name="Maria",
        )

        assert reply.reply_text == "Seu número é esse mesmo."
        assert reply.tool_invocations == [{"name": "whoami", "args": {}}]
        second_call = llm.invoke.call_args_list[1].args[0]
        tool_message = second_call[-1]
        assert isinstance(tool_message, ToolMessage)
        assert tool_message.content == PHONE

    def test_history_is_not_counted_as_output(self):
        agent, _ = _agent(AIMessage(content="Até logo!"))
        history = [
            {"role": "user", "content": "Oi"},
            {"role": "assistant", "content": "Olá!"},
            {"role": "user", "content": "Tchau"},
        ]
        reply = agent.invoke("system", history, requester_id=PHONE)
        assert reply.reply_text == "Até logo!"

    def test_empty_final_message_falls_back_to_earlier_text(self):
        agent, _ = _agent(
            AIMessage(
                content="Vou verificar.",
                tool_calls=[{"name": "whoami", "args": {}, "id": "call_1"}],
            ),
            AIMessage(content=""),
        )
        reply = agent.invoke("system", [{"role": "user", "content": "Oi"}], requester_id=PHONE)
        assert reply.reply_text == "Vou verificar."
