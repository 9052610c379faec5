"""LangGraph-based reasoning agent for the WhatsApp SDR.

Architecture:
  A LangGraph StateGraph with two nodes:

    1. **chatbot**  ChatAnthropic with the scheduling tools bound
    2. **tools**    executes any tool calls the model requests

  Routing:
    chatbot → (has tool calls?) → tools → chatbot (loop)
            → (no tool calls?)  → END

  Memory:
    There is no LangGraph checkpointer.  The conversation history lives in
    the database (``ConversationStore``) and is passed in on every call, so
    any worker process can handle any contact.

  Identity:
    The contact's phone and name travel in the run config
    (``configurable.requester_id`` / ``requester_name``) and reach the
    tools from there, never from model output.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langchain_core.tools import BaseTool
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.prebuilt import ToolNode
from typing_extensions import TypedDict

from sdr_agent.config import ANTHROPIC_API_KEY, MODEL_NAME
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

RECURSION_LIMIT = 25


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """``system`` is the per-turn system prompt; ``messages`` grows with
    the ``add_messages`` reducer as the model and tools take turns."""

    system: str
    messages: Annotated[list[AnyMessage], add_messages]


@dataclass
class AgentReply:
    reply_text: str
    tool_invocations: list[dict[str, Any]] = field(default_factory=list)


# ── LLM builder ─────────────────────────────────────────────────────


def _build_llm(tools: Sequence[BaseTool]):
    """Build the chat model with the scheduling tools bound."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=1024,
    )
    return llm.bind_tools(list(tools))


# ── Nodes & edges ────────────────────────────────────────────────────


def _make_chatbot_node(llm_with_tools):
    def chatbot_node(state: AgentState) -> dict:
        t0 = time.perf_counter()
        try:
            response = llm_with_tools.invoke(
                [SystemMessage(content=state["system"])] + state["messages"]
            )
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
            logger.debug("chatbot responded in %.0fms", elapsed)
            return {"messages": [response]}
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "llm_invoke",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise

    return chatbot_node


def should_use_tools(state: AgentState) -> str:
    """Check if the last message has tool calls; if so, route to tools node."""
    last_message = state["messages"][-1]
    if getattr(last_message, "tool_calls", None):
        return "tools"
    return END


def create_sdr_graph(tools: Sequence[BaseTool], llm_with_tools=None):
    """Build and compile the chatbot ⇄ tools graph."""
    graph = StateGraph(AgentState)
    graph.add_node("chatbot", _make_chatbot_node(llm_with_tools or _build_llm(tools)))
    graph.add_node("tools", ToolNode(list(tools)))
    graph.set_entry_point("chatbot")
    graph.add_conditional_edges("chatbot", should_use_tools, {"tools": "tools", END: END})
    graph.add_edge("tools", "chatbot")
    compiled = graph.compile()
    logger.debug("SDR agent compiled: model %s, %d tools", MODEL_NAME, len(tools))
    return compiled


# ── Public wrapper ───────────────────────────────────────────────────


def _to_messages(history: Sequence[dict[str, Any]]) -> list[AnyMessage]:
    messages: list[AnyMessage] = []
    for entry in history:
        content = entry.get("content") or ""
        if entry.get("role") == "user":
            messages.append(HumanMessage(content=content))
        else:
            messages.append(AIMessage(content=content))
    return messages


def _text_of(message: AnyMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Anthropic may answer with a list of content blocks
    return "".join(
        block.get("text", "") for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )


class ReasoningAgent:
    """``invoke(system_prompt, history, ...)`` → ``AgentReply``."""

    def __init__(self, tools: Sequence[BaseTool], graph=None):
        self._graph = graph or create_sdr_graph(tools)

    def invoke(
        self,
        system_prompt: str,
        history: Sequence[dict[str, Any]],
        requester_id: str,
        requester_name: str | None = None,
    ) -> AgentReply:
        input_messages = _to_messages(history)
        result = self._graph.invoke(
            {"system": system_prompt, "messages": input_messages},
            config={
                "configurable": {
                    "requester_id": requester_id,
                    "requester_name": requester_name,
                },
                "recursion_limit": RECURSION_LIMIT,
            },
        )
        produced = result["messages"][len(input_messages):]

        invocations = [
            {"name": call["name"], "args": call.get("args", {})}
            for message in produced
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        reply = next(
            (
                _text_of(m) for m in reversed(produced)
                if isinstance(m, AIMessage) and _text_of(m).strip()
            ),
            "",
        )
        return AgentReply(reply_text=reply.strip(), tool_invocations=invocations)
