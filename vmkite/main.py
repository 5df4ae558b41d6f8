import logging
import threading

from fastapi import FastAPI

from vmkite.api import router
from vmkite.config import get_settings
from vmkite.logging_config import configure_logging
from vmkite.loops import build_buildkite_client, build_vsphere_session, start_loops
from vmkite.services.runner import Runner


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="vmkite")
app.include_router(router)
app.state.runner = None
app.state.session = None


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if settings.disable_background_loops:
        logger.info("vmkite startup complete (background loops disabled)")
        return
    if not settings.buildkite_org:
        raise RuntimeError("VMKITE_BUILDKITE_ORG is required")
    if not settings.vsphere_host:
        raise RuntimeError("VMKITE_VSPHERE_HOST is required")

    session = build_vsphere_session(settings)
    session.connect()
    app.state.session = session
    app.state.runner = Runner(build_buildkite_client(settings), session, settings)

    global loop_threads
    loop_threads = start_loops(stop_event, app.state.runner)
    logger.info("vmkite startup complete org=%s", settings.buildkite_org)


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    for thread in loop_threads:
        thread.join(timeout=1)
    if app.state.runner is not None:
        app.state.runner.buildkite.close()
    if app.state.session is not None:
        app.state.session.close()
