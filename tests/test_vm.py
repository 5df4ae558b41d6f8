from pyVmomi import vim

from vmkite.vsphere.vm import VirtualMachine


def _vm(inventory):
    ref = vim.VirtualMachine("vm-42", inventory.stub)
    return ref, VirtualMachine(ref=ref, name="vmkite-1", path="/dc1/vm/vmkite-1")


def test_power_state(inventory):
    ref, vm = _vm(inventory)
    inventory.set(
        ref,
        "runtime",
        vim.vm.RuntimeInfo(powerState=vim.VirtualMachinePowerState.poweredOff),
    )
    assert vm.power_state() == "poweredOff"


def test_guest_info_strips_prefix_and_skips_other_keys(inventory):
    ref, vm = _vm(inventory)
    inventory.set(
        ref,
        "config",
        vim.vm.ConfigInfo(
            extraConfig=[
                vim.option.OptionValue(key="guestinfo.vmkite-name", value="vmkite-1"),
                vim.option.OptionValue(key="ethernet0.pciSlotNumber", value="32"),
            ]
        ),
    )
    assert vm.guest_info() == {"vmkite-name": "vmkite-1"}


def test_guest_info_without_config(inventory):
    ref, vm = _vm(inventory)
    inventory.set(ref, "config", None)
    assert vm.guest_info() == {}


def test_power_on_waits_for_task(inventory, monkeypatch):
    ref, vm = _vm(inventory)
    task = vim.Task("task-9", inventory.stub)
    inventory.on(ref, "PowerOnVM_Task", lambda host: task)
    waited = []
    monkeypatch.setattr("vmkite.vsphere.vm.WaitForTask", waited.append)

    vm.power_on()
    assert waited == [task]
