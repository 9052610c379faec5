"""WhatsApp SDR Agent: qualifies leads on WhatsApp and books demo meetings.

Architecture Overview
=====================

Message path::

    Evolution webhook → InboundNormalizer → DebounceCoalescer → WorkQueue (Redis)
        → worker → ConversationProcessor → ReasoningAgent ⇄ scheduling tools
        → WhatsApp reply

1. **Normalizer** turns a raw webhook into ``(instance, phone, text, name)``;
   audio is transcribed, groups and our own messages are dropped (except
   the hand-off control tokens).
2. **Coalescer** merges a burst of messages from one contact into one turn
   after a few quiet seconds.
3. **WorkQueue** is a reliable Redis list queue: one unit in flight per
   worker, dead-letter list for units whose handler raised.
4. **Processor** loads the stored history, runs the LangGraph agent and
   saves both turns.
5. **SchedulingEngine** computes free slots over several seller calendars,
   picks the least-loaded seller, and never writes two live bookings for
   the same contact and start.

Independently, the **ReactivationScheduler** classifies stalled
conversations and queues a personalised nudge, sent later in small,
spaced-out batches. The **dashboard** reads KPIs, funnel and lead
lists from the same tables and caches model-written conversation summaries.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain-anthropic``; the reactivation classifier
  uses the faster model.
- **Memory**: conversation history lives in the database, not in a
  LangGraph checkpointer, so any worker can serve any contact.
- **Calendars**: Google Calendar REST with a service account; a Meet link
  is generated with each event.
- **Resilience**: HTTP clients retry timeouts and 5xx with exponential
  backoff; the queue reconnects on its own; bookings are idempotent.

Package Structure
-----------------
- ``sdr_agent/agent.py`` — LangGraph StateGraph definition
- ``sdr_agent/config.py`` — Centralized configuration
- ``sdr_agent/models.py`` / ``database.py`` — SQLAlchemy models and engine
- ``sdr_agent/prompts.py`` — agent, classifier and summary prompts
- ``sdr_agent/bootstrap.py`` — component wiring
- ``sdr_agent/server.py`` — FastAPI application (webhook, triggers, dashboard)
- ``sdr_agent/worker.py`` — queue consumer
- ``sdr_agent/main.py`` — CLI (local chat, reactivation phases, summaries)
- ``sdr_agent/services/`` — external clients and core services
- ``sdr_agent/tools/`` — LangChain tools
- ``sdr_agent/api/`` — FastAPI routes and Pydantic schemas
"""
