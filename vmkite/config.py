from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VMKITE_", env_file=".env", extra="ignore"
    )

    buildkite_org: str = Field(default="")
    buildkite_api_token: str = Field(default="")
    buildkite_agent_token: str = Field(default="")
    buildkite_api_url: str = Field(default="https://api.buildkite.com/v2")

    vsphere_host: str = Field(default="")
    vsphere_port: int = Field(default=443, ge=1)
    vsphere_user: str = Field(default="")
    vsphere_password: str = Field(default="")
    vsphere_insecure: bool = Field(default=False)
    keepalive_interval_sec: int = Field(default=30, ge=1)

    cluster_path: str = Field(default="")
    vm_folder_path: str = Field(default="")
    datastore_name: str = Field(default="")
    network_label: str = Field(default="")
    src_disk_datastore: str = Field(default="")
    vm_memory_mb: int = Field(default=4096, ge=256)
    vm_num_cpus: int = Field(default=2, ge=1)
    vm_num_cores_per_socket: int = Field(default=1, ge=1)
    power_on_created_vms: bool = Field(default=True)

    loop_interval_sec: int = Field(default=10, ge=1)
    max_tracked_vms: int = Field(default=20, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=5, ge=0)

    log_level: str = Field(default="INFO")
    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
