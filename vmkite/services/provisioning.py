import logging

from pyVim.task import WaitForTask

from vmkite.metrics import metrics
from vmkite.models import VirtualMachineCreationParams
from vmkite.vsphere.devices import build, build_config_spec
from vmkite.vsphere.session import VSphereSession
from vmkite.vsphere.vm import VirtualMachine


logger = logging.getLogger(__name__)


def create_vm(
    session: VSphereSession, params: VirtualMachineCreationParams
) -> VirtualMachine:
    """Create a vmkite VM and return a freshly looked-up handle to it.

    Nothing is rolled back when a step fails; lookup and task errors reach
    the caller as raised.
    """
    metrics.inc("vm_create_attempts_total")
    try:
        finder = session.get_finder()
        if params.vm_folder_path:
            folder = finder.folder(params.vm_folder_path)
        else:
            folder = finder.vm_folder()
        logger.debug("cluster lookup path=%s", params.cluster_path)
        cluster = finder.cluster_compute_resource(params.cluster_path)
        resource_pool = cluster.ref.resourcePool

        built = build(finder, params)
        config_spec = build_config_spec(built, params)

        logger.info(
            "creating vm name=%s folder=%s cluster=%s guest_id=%s",
            params.name,
            folder.path,
            cluster.path,
            params.guest_id,
        )
        task = folder.ref.CreateVM_Task(config=config_spec, pool=resource_pool)
        logger.debug("waiting for CreateVM task %s", task)
        WaitForTask(task, si=session.service_instance)

        vm = session.virtual_machine(f"{folder.path}/{params.name}")
    except Exception:
        metrics.inc("vm_create_failures_total")
        raise
    metrics.inc("vms_created_total")
    logger.info("created vm %s", vm.path)
    return vm
