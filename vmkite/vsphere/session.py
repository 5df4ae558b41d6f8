import logging
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from vmkite.vsphere.finder import Finder, InventoryObject, default_datacenter
from vmkite.vsphere.vm import VirtualMachine


logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL_SEC = 30


@dataclass(frozen=True)
class ConnectionParams:
    host: str
    user: str
    password: str
    insecure: bool = False
    port: int = 443


class SessionError(RuntimeError):
    def __init__(self, host: str, detail: str):
        self.host = host
        self.detail = detail
        super().__init__(f"vsphere session to {host} failed: {detail}")


def is_not_authenticated(exc: BaseException) -> bool:
    return isinstance(exc, vim.fault.NotAuthenticated)


class VSphereSession:
    """One authenticated vSphere connection shared by every control-plane call.

    A daemon thread probes the session every ``keepalive_interval_sec`` and
    logs back in with the original credentials when the server reports the
    session as expired. Callers never see that re-authentication.
    """

    def __init__(
        self,
        params: ConnectionParams,
        *,
        keepalive_interval_sec: float = KEEPALIVE_INTERVAL_SEC,
        connector: Callable[..., Any] = SmartConnect,
    ):
        self.params = params
        self.keepalive_interval_sec = keepalive_interval_sec
        self._connector = connector
        self._si: Any = None
        self._stop_event = threading.Event()
        self._keepalive_thread: threading.Thread | None = None
        self._lookup_lock = threading.Lock()
        self._datacenter: InventoryObject | None = None
        self._finder: Finder | None = None

    def __enter__(self) -> "VSphereSession":
        self.connect()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @property
    def service_instance(self) -> Any:
        if self._si is None:
            raise SessionError(self.params.host, "not connected")
        return self._si

    @property
    def content(self) -> Any:
        return self.service_instance.content

    def connect(self) -> None:
        if self._si is not None:
            logger.info("closing existing vsphere session before reconnecting")
            self.close()

        ssl_context = None
        if self.params.insecure:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        logger.info(
            "connecting to vsphere host=%s port=%s user=%s insecure=%s",
            self.params.host,
            self.params.port,
            self.params.user,
            self.params.insecure,
        )
        try:
            self._si = self._connector(
                host=self.params.host,
                user=self.params.user,
                pwd=self.params.password,
                port=self.params.port,
                sslContext=ssl_context,
            )
        except Exception as exc:  # noqa: BLE001
            raise SessionError(self.params.host, str(exc)) from exc
        self._start_keepalive()

    def login(self) -> None:
        self.content.sessionManager.Login(
            userName=self.params.user, password=self.params.password
        )

    def keepalive_once(self) -> None:
        try:
            self.service_instance.CurrentTime()
            return
        except Exception as exc:  # noqa: BLE001
            logger.debug("session keepalive error: %s", exc)
            if not is_not_authenticated(exc):
                return

        try:
            self.login()
        except Exception as exc:  # noqa: BLE001
            logger.warning("session keepalive failed to re-authenticate: %s", exc)
        else:
            logger.info("session keepalive re-authenticated")

    def close(self) -> None:
        self._stop_event.set()
        if self._keepalive_thread:
            self._keepalive_thread.join(timeout=1)
            self._keepalive_thread = None
        if self._si is not None:
            try:
                Disconnect(self._si)
            except Exception as exc:  # noqa: BLE001
                logger.warning("vsphere logout failed: %s", exc)
            self._si = None
        with self._lookup_lock:
            self._datacenter = None
            self._finder = None

    def get_finder(self) -> Finder:
        with self._lookup_lock:
            if self._finder is None:
                logger.debug("resolving default datacenter")
                datacenter = default_datacenter(self.content)
                logger.debug("finder scoped to datacenter %s", datacenter.path)
                self._datacenter = datacenter
                self._finder = Finder(self.content, datacenter)
            return self._finder

    @property
    def datacenter(self) -> InventoryObject:
        return self.get_finder().datacenter

    def virtual_machine(self, path: str) -> VirtualMachine:
        found = self.get_finder().virtual_machine(path)
        return VirtualMachine(ref=found.ref, name=found.name, path=found.path)

    def _start_keepalive(self) -> None:
        if self._keepalive_thread is not None:
            return
        # one stop event per worker thread
        stop_event = threading.Event()
        self._stop_event = stop_event

        def keepalive_worker() -> None:
            while not stop_event.wait(self.keepalive_interval_sec):
                self.keepalive_once()

        self._keepalive_thread = threading.Thread(
            target=keepalive_worker, name="vsphere-keepalive", daemon=True
        )
        self._keepalive_thread.start()
        time.sleep(0.01)
