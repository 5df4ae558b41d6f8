from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class ProvisioningIntent:
    disk_image: str = ""
    guest_identity: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.disk_image) and bool(self.guest_identity)


@dataclass(frozen=True)
class Job:
    id: str
    build_number: str
    pipeline: str
    intent: ProvisioningIntent


@dataclass(frozen=True)
class VirtualMachineCreationParams:
    buildkite_agent_token: str
    cluster_path: str
    datastore_name: str
    guest_id: str
    memory_mb: int
    name: str
    network_label: str
    num_cpus: int
    num_cores_per_socket: int
    src_disk_datastore: str
    src_disk_path: str
    vm_folder_path: str = ""
    guest_info: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "guest_info", MappingProxyType(dict(self.guest_info or {}))
        )


def vm_name_for_job(job: Job) -> str:
    return f"vmkite-{job.id}"
