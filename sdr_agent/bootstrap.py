"""Wiring shared by the server, the worker and the CLI.

Only synchronous collaborators are built here.  The work queue, the
debounce buffer and offline recovery belong to an event loop and are
created by whichever entry point owns that loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sdr_agent.agent import ReasoningAgent
from sdr_agent.config import DATABASE_URL, DEFAULT_INSTANCE
from sdr_agent.database import create_db_engine, create_session_factory, init_db
from sdr_agent.services.calendar_client import GoogleCalendarClient
from sdr_agent.services.dashboard import DashboardStats
from sdr_agent.services.history import ConversationStore
from sdr_agent.services.meetings import SchedulingEngine
from sdr_agent.services.normalizer import InboundNormalizer
from sdr_agent.services.processor import ConversationProcessor
from sdr_agent.services.reactivation import ConversationClassifier, ReactivationScheduler
from sdr_agent.services.summaries import SummaryGenerator
from sdr_agent.services.transcription import TranscriptionClient
from sdr_agent.services.whatsapp_client import WhatsAppClient
from sdr_agent.tools.scheduling import SchedulingCapabilities, build_scheduling_tools

logger = logging.getLogger(__name__)


@dataclass
class Components:
    engine: Engine
    session_factory: sessionmaker
    whatsapp: WhatsAppClient
    transcriber: TranscriptionClient
    calendar: GoogleCalendarClient
    store: ConversationStore
    scheduling: SchedulingEngine
    normalizer: InboundNormalizer
    processor: ConversationProcessor
    reactivation: ReactivationScheduler
    dashboard: DashboardStats
    summaries: SummaryGenerator

    def close(self) -> None:
        for client in (self.whatsapp, self.transcriber, self.calendar):
            client.close()
        self.engine.dispose()


def build_components(database_url: str = DATABASE_URL) -> Components:
    engine = create_db_engine(database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    whatsapp = WhatsAppClient()
    transcriber = TranscriptionClient()
    calendar = GoogleCalendarClient()
    store = ConversationStore(session_factory)

    def notify(phone: str, text: str) -> None:
        whatsapp.send_text(DEFAULT_INSTANCE, phone, text)

    scheduling = SchedulingEngine(session_factory, calendar, notifier=notify)
    tools = build_scheduling_tools(SchedulingCapabilities(scheduling, store, notify))
    processor = ConversationProcessor(store, ReasoningAgent(tools))
    reactivation = ReactivationScheduler(
        session_factory, store, ConversationClassifier(), whatsapp.send_text,
    )

    logger.info("Components ready (%d tools, transcription %s)",
                len(tools), "on" if transcriber.enabled else "off")
    return Components(
        engine=engine,
        session_factory=session_factory,
        whatsapp=whatsapp,
        transcriber=transcriber,
        calendar=calendar,
        store=store,
        scheduling=scheduling,
        normalizer=InboundNormalizer(whatsapp, transcriber),
        processor=processor,
        reactivation=reactivation,
        dashboard=DashboardStats(session_factory),
        summaries=SummaryGenerator(session_factory),
    )
