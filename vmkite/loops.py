import logging
import threading
import time

from vmkite.clients.buildkite import BuildkiteClient
from vmkite.clients.http import RetryPolicy
from vmkite.config import Settings, get_settings
from vmkite.services.runner import Runner
from vmkite.vsphere.session import ConnectionParams, VSphereSession


logger = logging.getLogger(__name__)


def build_buildkite_client(settings: Settings) -> BuildkiteClient:
    retry = RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec)
    return BuildkiteClient(
        org=settings.buildkite_org,
        api_token=settings.buildkite_api_token,
        retry=retry,
        base_url=settings.buildkite_api_url,
    )


def build_vsphere_session(settings: Settings) -> VSphereSession:
    return VSphereSession(
        ConnectionParams(
            host=settings.vsphere_host,
            user=settings.vsphere_user,
            password=settings.vsphere_password,
            insecure=settings.vsphere_insecure,
            port=settings.vsphere_port,
        ),
        keepalive_interval_sec=settings.keepalive_interval_sec,
    )


def start_loops(stop_event: threading.Event, runner: Runner) -> list[threading.Thread]:
    settings = get_settings()

    def runner_worker() -> None:
        while not stop_event.is_set():
            try:
                runner.tick()
            except Exception as exc:  # noqa: BLE001
                logger.exception("runner tick failed: %s", exc)
            stop_event.wait(settings.loop_interval_sec)

    thread = threading.Thread(target=runner_worker, name="runner-worker", daemon=True)
    thread.start()
    time.sleep(0.01)
    return [thread]
