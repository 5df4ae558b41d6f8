"""Agent query rule side channel.

Buildkite jobs carry free-form ``key=value`` agent query rules. vmkite reads
two of them to learn which disk image and guest OS a job needs, and writes
its own values back into the VM as ``guestinfo.*`` extra config so the guest
can discover them.
"""

from typing import Iterable

from vmkite.models import ProvisioningIntent


VMDK_KEY = "vmkite-vmdk"
GUEST_ID_KEY = "vmkite-guestid"

GUESTINFO_PREFIX = "guestinfo."

_FIELDS = {
    VMDK_KEY: "disk_image",
    GUEST_ID_KEY: "guest_identity",
}


def decode(rules: Iterable[object] | None) -> ProvisioningIntent:
    """Decode agent query rules into a provisioning intent.

    Only the first ``=`` separates key from value. Rules without ``=`` and
    unknown keys are skipped. When a key repeats, the first value is kept.
    """
    values: dict[str, str] = {}
    for rule in rules or ():
        if not isinstance(rule, str):
            continue
        key, sep, value = rule.partition("=")
        if not sep:
            continue
        field_name = _FIELDS.get(key)
        if field_name is None or field_name in values:
            continue
        values[field_name] = value
    return ProvisioningIntent(**values)


def guestinfo_key(name: str) -> str:
    return f"{GUESTINFO_PREFIX}{name}"
