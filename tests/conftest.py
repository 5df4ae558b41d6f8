from types import SimpleNamespace
from typing import Any, Callable

import pytest
from pyVmomi import vim

from vmkite.metrics import metrics
from vmkite.models import VirtualMachineCreationParams
from vmkite.vsphere.finder import Finder, InventoryObject


class FakeVimStub:
    """Answers pyVmomi property reads and method calls from dictionaries."""

    def __init__(self) -> None:
        self.properties: dict[tuple[str, str], Any] = {}
        self.methods: dict[tuple[str, str], Callable[..., Any]] = {}
        self.calls: list[tuple[str, str, list]] = []

    def InvokeAccessor(self, mo, info):
        try:
            return self.properties[(mo._moId, info.name)]
        except KeyError:
            raise AttributeError(f"{mo._moId}.{info.name} not set") from None

    def InvokeMethod(self, mo, info, args):
        self.calls.append((mo._moId, info.wsdlName, list(args)))
        return self.methods[(mo._moId, info.wsdlName)](*args)


class FakeInventory:
    def __init__(self) -> None:
        self.stub = FakeVimStub()
        self.paths: dict[str, Any] = {}
        self._ids = 0
        self.root = self._new(vim.Folder, "Datacenters")
        self.stub.properties[(self.root._moId, "childEntity")] = []
        self.search_index = vim.SearchIndex("SearchIndex", self.stub)
        self.stub.methods[("SearchIndex", "FindByInventoryPath")] = self.paths.get
        self.content = SimpleNamespace(
            rootFolder=self.root, searchIndex=self.search_index
        )

    def _new(self, vim_type, name):
        self._ids += 1
        ref = vim_type(f"{vim_type.__name__.rsplit('.', 1)[-1]}-{self._ids}", self.stub)
        self.stub.properties[(ref._moId, "name")] = name
        if issubclass(vim_type, (vim.Folder, vim.StoragePod)):
            self.stub.properties[(ref._moId, "childEntity")] = []
        return ref

    def add(self, vim_type, name, parent, parent_path):
        ref = self._new(vim_type, name)
        self.stub.properties[(parent._moId, "childEntity")].append(ref)
        self.stub.properties[(ref._moId, "parent")] = parent
        path = f"{parent_path}/{name}"
        self.paths[path] = ref
        return ref

    def datacenter(self, name="dc1", parent=None, parent_path=""):
        dc = self.add(vim.Datacenter, name, parent or self.root, parent_path)
        dc_path = f"{parent_path}/{name}"
        for attr, folder_name in (
            ("vmFolder", "vm"),
            ("hostFolder", "host"),
            ("datastoreFolder", "datastore"),
            ("networkFolder", "network"),
        ):
            folder = self._new(vim.Folder, folder_name)
            self.stub.properties[(dc._moId, attr)] = folder
            self.paths[f"{dc_path}/{folder_name}"] = folder
        return InventoryObject(ref=dc, name=name, path=dc_path)

    def folder_of(self, dc: InventoryObject, attr: str):
        return self.stub.properties[(dc.ref._moId, attr)]

    def set(self, ref, prop, value):
        self.stub.properties[(ref._moId, prop)] = value

    def on(self, ref, method, fn):
        self.stub.methods[(ref._moId, method)] = fn


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def topology(inventory):
    """A single datacenter with one network, two datastores and a cluster."""
    dc = inventory.datacenter("dc1")
    network_folder = inventory.folder_of(dc, "networkFolder")
    datastore_folder = inventory.folder_of(dc, "datastoreFolder")
    host_folder = inventory.folder_of(dc, "hostFolder")

    network = inventory.add(vim.Network, "dc1-VM Network", network_folder, "/dc1/network")
    images = inventory.add(vim.Datastore, "images", datastore_folder, "/dc1/datastore")
    scratch = inventory.add(vim.Datastore, "scratch", datastore_folder, "/dc1/datastore")
    cluster = inventory.add(
        vim.ClusterComputeResource, "mac-cluster", host_folder, "/dc1/host"
    )
    pool = vim.ResourcePool("resgroup-8", inventory.stub)
    inventory.set(cluster, "resourcePool", pool)

    return SimpleNamespace(
        inventory=inventory,
        datacenter=dc,
        finder=Finder(inventory.content, dc),
        network=network,
        images=images,
        scratch=scratch,
        cluster=cluster,
        pool=pool,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_params():
    def factory(**overrides) -> VirtualMachineCreationParams:
        values: dict[str, Any] = dict(
            buildkite_agent_token="agent-token",
            cluster_path="mac-cluster",
            datastore_name="scratch",
            guest_id="darwin19_64Guest",
            memory_mb=4096,
            name="vmkite-job-1",
            network_label="VM Network",
            num_cpus=4,
            num_cores_per_socket=2,
            src_disk_datastore="images",
            src_disk_path="/vol/base.vmdk",
        )
        values.update(overrides)
        return VirtualMachineCreationParams(**values)

    return factory
