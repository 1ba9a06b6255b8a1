import logging
import os
from typing import Optional

from fastapi import FastAPI

from livenotes.context import AppContext
from livenotes.routers.archive import create_archive_router
from livenotes.routers.live_meeting import create_live_meeting_router
from livenotes.services.assistant import AssistantService
from livenotes.services.kv_store import FileKeyValueStore
from livenotes.services.lifecycle import LifecycleController
from livenotes.services.live_config import load_live_settings
from livenotes.services.logging_setup import configure_logging
from livenotes.services.meeting_context import MeetingContext
from livenotes.services.session_repository import SessionRepository
from livenotes.services.transcription_source import SSETranscriptionSource

VERSION = "0.1.0"


def create_app(
    data_dir: Optional[str] = None,
    meeting: Optional[MeetingContext] = None,
    configure_logs: bool = True,
) -> FastAPI:
    cwd = os.getcwd()
    data_dir = data_dir or os.environ.get("LIVENOTES_DATA_DIR") or os.path.join(cwd, "data")
    ctx = AppContext(cwd=cwd, data_dir=data_dir)
    ctx.ensure_dirs()

    if configure_logs:
        configure_logging(ctx.logs_dir)
    logger = logging.getLogger("livenotes.boot")
    logger.info("Boot: starting create_app data_dir=%s", ctx.data_dir)

    def _settings():
        return load_live_settings(ctx.config_path)

    if meeting is None:
        repository = SessionRepository(FileKeyValueStore(ctx.meetings_dir))
        meeting = MeetingContext(
            repository,
            LifecycleController(repository),
            AssistantService(ctx.config_path),
            settings_loader=_settings,
        )
        logger.info("Boot: meeting context ready meetings_dir=%s", ctx.meetings_dir)

    def _source():
        return SSETranscriptionSource(meeting.settings().transcription_url)

    app = FastAPI(title="Livenotes", version=VERSION)
    app.state.ctx = ctx
    app.state.meeting = meeting
    app.state.version = VERSION

    app.include_router(create_live_meeting_router(meeting, source_factory=_source))
    logger.info("Boot: live meeting router mounted")
    app.include_router(create_archive_router(meeting))
    logger.info("Boot: archive router mounted")

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "version": app.state.version}

    logger.info("Boot: create_app complete")
    return app
