"""Config spec assembly for vmkite macOS VMs.

The device list is built as a sequence of pure steps, each taking the
devices accumulated so far and returning a new tuple. Order matters: the
disk step looks up the SCSI controller added before it, so the controller
has to be in the list already.
"""

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from pyVmomi import vim

from vmkite.metadata import guestinfo_key
from vmkite.models import VirtualMachineCreationParams
from vmkite.vsphere.finder import Finder, InventoryObject, LookupFailure


logger = logging.getLogger(__name__)

Devices = tuple[Any, ...]

SCSI_CONTROLLER_UNIT = 7
SCSI_UNITS_PER_CONTROLLER = 16
NIC_PCI_SLOT = "32"

AGENT_TOKEN_KEY = guestinfo_key("vmkite-buildkite-agent-token")
NAME_KEY = guestinfo_key("vmkite-name")
VMDK_KEY = guestinfo_key("vmkite-vmdk")
NIC_PCI_SLOT_KEY = "ethernet0.pciSlotNumber"
RESERVED_KEYS = frozenset({AGENT_TOKEN_KEY, NAME_KEY, VMDK_KEY})


class ControllerNotFoundError(LookupFailure):
    def __init__(self, kind: str):
        super().__init__("controller", kind, "no available controller in device list")


@dataclass(frozen=True)
class BuiltSpec:
    devices: Devices
    extra_config: tuple[Any, ...]
    files: Any

    @property
    def device_change(self) -> list[Any]:
        return [
            vim.vm.device.VirtualDeviceSpec(
                operation=vim.vm.device.VirtualDeviceSpec.Operation.add,
                device=device,
            )
            for device in self.devices
        ]


def new_key(devices: Sequence[Any]) -> int:
    key = -200
    for device in devices:
        if device.key < key:
            key = device.key
    return key - 1


def ethernet_backing(network: InventoryObject) -> Any:
    ref = network.ref
    if isinstance(ref, vim.dvs.DistributedVirtualPortgroup):
        return vim.vm.device.VirtualEthernetCard.DistributedVirtualPortBackingInfo(
            port=vim.dvs.PortConnection(
                portgroupKey=ref.key,
                switchUuid=ref.config.distributedVirtualSwitch.uuid,
            )
        )
    if isinstance(ref, vim.OpaqueNetwork):
        return vim.vm.device.VirtualEthernetCard.OpaqueNetworkBackingInfo(
            opaqueNetworkId=ref.summary.opaqueNetworkId,
            opaqueNetworkType=ref.summary.opaqueNetworkType,
        )
    return vim.vm.device.VirtualEthernetCard.NetworkBackingInfo(
        deviceName=network.name, network=ref
    )


def add_ethernet(devices: Devices, network: InventoryObject) -> Devices:
    card = vim.vm.device.VirtualVmxnet3(
        key=new_key(devices),
        backing=ethernet_backing(network),
        addressType="generated",
        connectable=vim.vm.device.VirtualDevice.ConnectInfo(
            startConnected=True, allowGuestControl=True
        ),
    )
    return devices + (card,)


def add_scsi(devices: Devices) -> Devices:
    used_buses = {
        device.busNumber
        for device in devices
        if isinstance(device, vim.vm.device.VirtualSCSIController)
    }
    bus = 0
    while bus in used_buses:
        bus += 1
    controller = vim.vm.device.VirtualLsiLogicController(
        key=new_key(devices),
        busNumber=bus,
        sharedBus=vim.vm.device.VirtualSCSIController.Sharing.noSharing,
        hotAddRemove=True,
        scsiCtlrUnitNumber=SCSI_CONTROLLER_UNIT,
    )
    return devices + (controller,)


def _used_units(devices: Devices, controller: Any) -> set[int]:
    used = {SCSI_CONTROLLER_UNIT}
    for device in devices:
        if device.controllerKey == controller.key and device.unitNumber is not None:
            used.add(device.unitNumber)
    return used


def find_disk_controller(devices: Devices) -> Any:
    for device in devices:
        if not isinstance(device, vim.vm.device.VirtualSCSIController):
            continue
        if len(_used_units(devices, device)) < SCSI_UNITS_PER_CONTROLLER:
            return device
    raise ControllerNotFoundError("scsi")


def datastore_path(datastore: InventoryObject, path: str) -> str:
    return f"[{datastore.name}] {path}"


def add_disk(devices: Devices, datastore: InventoryObject, disk_path: str) -> Devices:
    controller = find_disk_controller(devices)
    used = _used_units(devices, controller)
    unit = next(u for u in range(SCSI_UNITS_PER_CONTROLLER) if u not in used)
    # guest writes are discarded at power off
    backing = vim.vm.device.VirtualDisk.FlatVer2BackingInfo(
        fileName=datastore_path(datastore, disk_path),
        datastore=datastore.ref,
        diskMode=vim.vm.device.VirtualDiskOption.DiskMode.independent_nonpersistent,
        thinProvisioned=True,
    )
    disk = vim.vm.device.VirtualDisk(
        key=new_key(devices),
        controllerKey=controller.key,
        unitNumber=unit,
        backing=backing,
    )
    return devices + (disk,)


def add_usb(devices: Devices) -> Devices:
    usb = vim.vm.device.VirtualUSBController(
        key=new_key(devices), autoConnectDevices=True, ehciEnabled=True
    )
    return devices + (usb,)


def build_extra_config(params: VirtualMachineCreationParams) -> tuple[Any, ...]:
    options = [
        vim.option.OptionValue(key=AGENT_TOKEN_KEY, value=params.buildkite_agent_token),
        vim.option.OptionValue(key=NAME_KEY, value=params.name),
        vim.option.OptionValue(key=VMDK_KEY, value=params.src_disk_path),
    ]
    for key in sorted(params.guest_info):
        option_key = guestinfo_key(key)
        if option_key in RESERVED_KEYS:
            logger.warning("ignoring guest_info entry %s for vm %s", option_key, params.name)
            continue
        value = params.guest_info[key]
        logger.debug("setting %s=%r", option_key, value)
        options.append(vim.option.OptionValue(key=option_key, value=value))
    # stable PCI slot keeps the guest's interface name the same across boots
    options.append(vim.option.OptionValue(key=NIC_PCI_SLOT_KEY, value=NIC_PCI_SLOT))
    return tuple(options)


def build_devices(finder: Finder, params: VirtualMachineCreationParams) -> Devices:
    network = finder.network("*" + params.network_label)
    devices = add_ethernet((), network)
    devices = add_scsi(devices)
    source_datastore = finder.datastore(params.src_disk_datastore)
    devices = add_disk(devices, source_datastore, params.src_disk_path)
    return add_usb(devices)


def build(finder: Finder, params: VirtualMachineCreationParams) -> BuiltSpec:
    devices = build_devices(finder, params)
    datastore = finder.datastore(params.datastore_name)
    files = vim.vm.FileInfo(vmPathName=f"[{datastore.name}]")
    return BuiltSpec(
        devices=devices,
        extra_config=build_extra_config(params),
        files=files,
    )


def build_config_spec(built: BuiltSpec, params: VirtualMachineCreationParams) -> Any:
    return vim.vm.ConfigSpec(
        deviceChange=built.device_change,
        extraConfig=list(built.extra_config),
        files=built.files,
        guestId=params.guest_id,
        memoryMB=params.memory_mb,
        name=params.name,
        nestedHVEnabled=True,
        numCPUs=params.num_cpus,
        numCoresPerSocket=params.num_cores_per_socket,
        virtualICH7MPresent=True,
        virtualSMCPresent=True,
    )
