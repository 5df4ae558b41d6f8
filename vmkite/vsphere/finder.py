"""Inventory path lookups scoped to a single datacenter.

Paths follow the vSphere inventory layout (``/<datacenter>/<kind>/<name>``).
Relative paths are resolved below the datacenter folder for the requested
kind; paths containing glob characters are matched against every object of
that kind under the folder.
"""

import fnmatch
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from pyVmomi import vim


logger = logging.getLogger(__name__)

GLOB_CHARS = set("*?[")


class LookupFailure(RuntimeError):
    def __init__(self, kind: str, path: str, detail: str):
        self.kind = kind
        self.path = path
        self.detail = detail
        super().__init__(f"{kind} lookup failed for {path!r}: {detail}")


class NotFoundError(LookupFailure):
    def __init__(self, kind: str, path: str):
        super().__init__(kind, path, "not found")


class MultipleFoundError(LookupFailure):
    def __init__(self, kind: str, path: str, matches: list[str]):
        self.matches = matches
        super().__init__(kind, path, f"matched {len(matches)}: {', '.join(matches)}")


class DatacenterNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("datacenter", "*")


@dataclass(frozen=True)
class InventoryObject:
    ref: Any
    name: str
    path: str


def walk(entity: Any, path: str, *, into_datacenters: bool = True) -> Iterator[InventoryObject]:
    """Yield every entity below ``entity`` together with its inventory path."""
    for child in getattr(entity, "childEntity", None) or []:
        child_path = f"{path}/{child.name}"
        yield InventoryObject(ref=child, name=child.name, path=child_path)
        if isinstance(child, vim.Datacenter) and not into_datacenters:
            continue
        if isinstance(child, (vim.Folder, vim.StoragePod)):
            yield from walk(child, child_path, into_datacenters=into_datacenters)


def default_datacenter(content: Any) -> InventoryObject:
    datacenters = [
        item
        for item in walk(content.rootFolder, "", into_datacenters=False)
        if isinstance(item.ref, vim.Datacenter)
    ]
    if not datacenters:
        raise DatacenterNotFoundError()
    if len(datacenters) > 1:
        raise MultipleFoundError("datacenter", "*", [dc.path for dc in datacenters])
    return datacenters[0]


class Finder:
    def __init__(self, content: Any, datacenter: InventoryObject):
        self.content = content
        self.datacenter = datacenter

    def network(self, path: str) -> InventoryObject:
        return self._find("network", vim.Network, "networkFolder", path)

    def datastore(self, path: str) -> InventoryObject:
        return self._find("datastore", vim.Datastore, "datastoreFolder", path)

    def cluster_compute_resource(self, path: str) -> InventoryObject:
        return self._find("cluster", vim.ClusterComputeResource, "hostFolder", path)

    def folder(self, path: str) -> InventoryObject:
        return self._find("folder", vim.Folder, "vmFolder", path)

    def virtual_machine(self, path: str) -> InventoryObject:
        return self._find("vm", vim.VirtualMachine, "vmFolder", path)

    def vm_folder(self) -> InventoryObject:
        ref = self.datacenter.ref.vmFolder
        return InventoryObject(ref=ref, name=ref.name, path=self._root_path("vmFolder"))

    def _root_path(self, folder_attr: str) -> str:
        ref = getattr(self.datacenter.ref, folder_attr)
        return f"{self.datacenter.path}/{ref.name}"

    def _absolute(self, folder_attr: str, path: str) -> str:
        if path.startswith("/"):
            return path.rstrip("/")
        return f"{self._root_path(folder_attr)}/{path}".rstrip("/")

    def _find(self, kind: str, vim_type: type, folder_attr: str, path: str) -> InventoryObject:
        absolute = self._absolute(folder_attr, path)
        logger.debug("finder lookup kind=%s path=%s", kind, absolute)
        if GLOB_CHARS & set(path):
            root = getattr(self.datacenter.ref, folder_attr)
            matches = [
                item
                for item in walk(root, self._root_path(folder_attr))
                if isinstance(item.ref, vim_type)
                and fnmatch.fnmatchcase(item.path, absolute)
            ]
            if not matches:
                raise NotFoundError(kind, path)
            if len(matches) > 1:
                raise MultipleFoundError(kind, path, [m.path for m in matches])
            return matches[0]

        ref = self.content.searchIndex.FindByInventoryPath(absolute)
        if ref is None or not isinstance(ref, vim_type):
            raise NotFoundError(kind, path)
        return InventoryObject(ref=ref, name=absolute.rsplit("/", 1)[-1], path=absolute)

