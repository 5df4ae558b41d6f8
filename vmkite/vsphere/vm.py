import logging
from dataclasses import dataclass
from typing import Any

from pyVim.task import WaitForTask

from vmkite.metadata import GUESTINFO_PREFIX


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VirtualMachine:
    ref: Any
    name: str
    path: str

    def power_state(self) -> str:
        return str(self.ref.runtime.powerState)

    def guest_info(self) -> dict[str, str]:
        config = self.ref.config
        if config is None:
            return {}
        values: dict[str, str] = {}
        for option in config.extraConfig or []:
            if option.key.startswith(GUESTINFO_PREFIX):
                values[option.key[len(GUESTINFO_PREFIX) :]] = str(option.value)
        return values

    def power_on(self) -> None:
        logger.info("powering on vm %s", self.path)
        WaitForTask(self.ref.PowerOnVM_Task())
