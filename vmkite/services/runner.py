import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from vmkite.clients.buildkite import BuildkiteClient
from vmkite.config import Settings
from vmkite.metrics import metrics
from vmkite.models import Job, VirtualMachineCreationParams, vm_name_for_job
from vmkite.services.provisioning import create_vm
from vmkite.vsphere.session import VSphereSession
from vmkite.vsphere.vm import VirtualMachine


logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    def __init__(self, *, job_id: str, vm_name: str, stage: str, detail: str):
        self.job_id = job_id
        self.vm_name = vm_name
        self.stage = stage
        self.detail = detail
        super().__init__(
            f"provisioning failed job_id={job_id} vm={vm_name} stage={stage}: {detail}"
        )


@dataclass
class TrackedJob:
    job: Job
    vm_name: str
    vm_path: str
    created_at: datetime


def creation_params(job: Job, settings: Settings) -> VirtualMachineCreationParams:
    return VirtualMachineCreationParams(
        buildkite_agent_token=settings.buildkite_agent_token,
        cluster_path=settings.cluster_path,
        vm_folder_path=settings.vm_folder_path,
        datastore_name=settings.datastore_name,
        guest_id=job.intent.guest_identity,
        memory_mb=settings.vm_memory_mb,
        name=vm_name_for_job(job),
        network_label=settings.network_label,
        num_cpus=settings.vm_num_cpus,
        num_cores_per_socket=settings.vm_num_cores_per_socket,
        src_disk_datastore=settings.src_disk_datastore,
        src_disk_path=job.intent.disk_image,
        guest_info={
            "vmkite-job-id": job.id,
            "vmkite-pipeline": job.pipeline,
            "vmkite-build-number": job.build_number,
        },
    )


class Runner:
    """Turns pending Buildkite jobs into VMs and notices when they finish.

    State lives in memory only; a restarted runner starts with nothing
    tracked.
    """

    def __init__(
        self,
        buildkite: BuildkiteClient,
        session: VSphereSession,
        settings: Settings,
        provision: Callable[
            [VSphereSession, VirtualMachineCreationParams], VirtualMachine
        ] = create_vm,
    ):
        self.buildkite = buildkite
        self.session = session
        self.settings = settings
        self.provision = provision
        self._lock = threading.Lock()
        self._tracked: dict[str, TrackedJob] = {}
        # builds stay "running" while sibling jobs run, so finished jobs can
        # still be listed as pending
        self._finished: set[str] = set()

    def tracked_jobs(self) -> list[TrackedJob]:
        with self._lock:
            return list(self._tracked.values())

    def tick(self) -> None:
        self.check_finished()
        self.provision_pending()

    def check_finished(self) -> None:
        for tracked in self.tracked_jobs():
            try:
                finished = self.buildkite.is_finished(tracked.job)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "completion check failed job_id=%s: %s", tracked.job.id, exc
                )
                continue
            if not finished:
                continue
            logger.info(
                "job finished job_id=%s vm=%s", tracked.job.id, tracked.vm_path
            )
            metrics.inc("jobs_finished_total")
            with self._lock:
                self._tracked.pop(tracked.job.id, None)
                self._finished.add(tracked.job.id)

    def provision_pending(self) -> None:
        jobs = self.buildkite.list_pending_jobs()
        metrics.inc("jobs_seen_total", len(jobs))
        with self._lock:
            # only ids still listed can come back as pending
            self._finished &= {job.id for job in jobs}
        for job in jobs:
            with self._lock:
                if job.id in self._tracked or job.id in self._finished:
                    continue
                if len(self._tracked) >= self.settings.max_tracked_vms:
                    logger.warning(
                        "tracked vm limit reached (%s); deferring remaining jobs",
                        self.settings.max_tracked_vms,
                    )
                    return
            try:
                tracked = self.provision_job(job)
            except ProvisioningError as exc:
                logger.error("%s", exc)
                continue
            with self._lock:
                self._tracked[job.id] = tracked

    def provision_job(self, job: Job) -> TrackedJob:
        params = creation_params(job, self.settings)
        logger.info(
            "provisioning job_id=%s pipeline=%s build=%s vmdk=%s guest_id=%s",
            job.id,
            job.pipeline,
            job.build_number,
            job.intent.disk_image,
            job.intent.guest_identity,
        )
        try:
            vm = self.provision(self.session, params)
        except Exception as exc:  # noqa: BLE001
            metrics.inc("provision_failures_total")
            raise ProvisioningError(
                job_id=job.id, vm_name=params.name, stage="create_vm", detail=str(exc)
            ) from exc
        if self.settings.power_on_created_vms:
            # the VM exists either way, so it stays tracked
            try:
                vm.power_on()
            except Exception as exc:  # noqa: BLE001
                metrics.inc("power_on_failures_total")
                logger.error("power on failed job_id=%s vm=%s: %s", job.id, vm.path, exc)
        return TrackedJob(
            job=job,
            vm_name=params.name,
            vm_path=vm.path,
            created_at=datetime.now(UTC),
        )
