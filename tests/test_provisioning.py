from types import SimpleNamespace

import pytest
from pyVmomi import vim

from vmkite.metrics import metrics
from vmkite.services.provisioning import create_vm
from vmkite.vsphere.finder import NotFoundError
from vmkite.vsphere.session import ConnectionParams, VSphereSession


class TaskFailed(Exception):
    pass


@pytest.fixture
def session(topology):
    si = SimpleNamespace(content=topology.inventory.content)
    session = VSphereSession(ConnectionParams("vcenter.test", "ci", "secret"))
    session._si = si
    return session


@pytest.fixture
def created(topology, monkeypatch):
    """Captures CreateVM_Task calls and registers the new VM in the inventory."""
    inventory = topology.inventory
    record: dict = {"waited": []}

    def create(config, pool, host, folder, folder_path):
        record["config"] = config
        record["pool"] = pool
        record["folder"] = folder
        inventory.add(vim.VirtualMachine, config.name, folder, folder_path)
        return vim.Task("task-1", inventory.stub)

    vm_folder = inventory.folder_of(topology.datacenter, "vmFolder")
    inventory.on(
        vm_folder,
        "CreateVM_Task",
        lambda config, pool, host: create(config, pool, host, vm_folder, "/dc1/vm"),
    )
    record["create"] = create

    def fake_wait(task, **kwargs):
        record["waited"].append((task, kwargs))

    monkeypatch.setattr("vmkite.services.provisioning.WaitForTask", fake_wait)
    return record


def test_create_vm_submits_spec_and_returns_fresh_handle(session, topology, created, make_params):
    vm = create_vm(session, make_params(name="vmkite-job-7"))

    assert vm.path == "/dc1/vm/vmkite-job-7"
    assert vm.name == "vmkite-job-7"
    assert isinstance(vm.ref, vim.VirtualMachine)
    assert created["pool"] == topology.pool
    assert created["waited"][0][0]._moId == "task-1"
    assert created["waited"][0][1]["si"] is session.service_instance
    assert metrics.get("vms_created_total") == 1


def test_create_vm_device_order_and_disk_mode(session, created, make_params):
    create_vm(
        session,
        make_params(src_disk_path="/vol/base.vmdk", guest_id="darwin19_64Guest"),
    )
    config = created["config"]
    devices = [change.device for change in config.deviceChange]
    nic, scsi, disk, usb = devices

    assert isinstance(nic, vim.vm.device.VirtualEthernetCard)
    assert isinstance(scsi, vim.vm.device.VirtualSCSIController)
    assert isinstance(disk, vim.vm.device.VirtualDisk)
    assert isinstance(usb, vim.vm.device.VirtualUSBController)
    assert disk.controllerKey == scsi.key
    assert disk.backing.thinProvisioned is True
    assert disk.backing.diskMode == "independent_nonpersistent"
    assert config.guestId == "darwin19_64Guest"
    assert config.nestedHVEnabled is True
    assert config.virtualSMCPresent is True
    assert config.virtualICH7MPresent is True


def test_create_vm_uses_configured_folder(session, topology, created, make_params):
    inventory = topology.inventory
    vm_folder = inventory.folder_of(topology.datacenter, "vmFolder")
    ci_folder = inventory.add(vim.Folder, "ci", vm_folder, "/dc1/vm")
    inventory.on(
        ci_folder,
        "CreateVM_Task",
        lambda config, pool, host: created["create"](
            config, pool, host, ci_folder, "/dc1/vm/ci"
        ),
    )

    vm = create_vm(session, make_params(vm_folder_path="ci", name="vmkite-2"))
    assert created["folder"] == ci_folder
    assert vm.path == "/dc1/vm/ci/vmkite-2"


def test_create_vm_propagates_task_failure(session, created, make_params, monkeypatch):
    def failing_wait(task, **_kwargs):
        raise TaskFailed("DuplicateName")

    monkeypatch.setattr("vmkite.services.provisioning.WaitForTask", failing_wait)
    with pytest.raises(TaskFailed, match="DuplicateName"):
        create_vm(session, make_params())
    assert metrics.get("vm_create_failures_total") == 1
    assert metrics.get("vms_created_total") == 0


def test_create_vm_propagates_lookup_failure_before_submitting(session, created, make_params):
    with pytest.raises(NotFoundError):
        create_vm(session, make_params(cluster_path="other-cluster"))
    assert "config" not in created
