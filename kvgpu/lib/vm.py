#!/usr/bin/env python3

# vm.py - kvgpu function library, libvirt VM ownership of mediated devices
# Part of the kvgpu KVM vGPU host management tool
#
#    Copyright (C) 2024 The kvgpu authors
#
#    This program is free software: you can redistribute it and/or modify
#    it under the terms of the GNU General Public License as published by
#    the Free Software Foundation, version 3.
#
#    This program is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#    GNU General Public License for more details.
#
#    You should have received a copy of the GNU General Public License
#    along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
###############################################################################

import lxml.etree

from concurrent.futures import ThreadPoolExecutor, wait

import kvgpu.lib.common as common


#
# virsh helpers
#
def virsh_command(config, *args):
    return [config["virsh_command"], "--connect", config["libvirt_uri"], *args]


def list_vms(config):
    """
    Return the names of all defined VMs, running or not
    """
    if not common.is_tool_available(config["virsh_command"]):
        raise common.ToolUnavailable(
            "virsh", f'command "{config["virsh_command"]}" not found'
        )

    retcode, stdout, stderr = common.run_os_command(
        virsh_command(config, "list", "--all", "--name"),
        timeout=config["libvirt_timeout"],
    )
    if retcode == 128:
        raise common.PartialScanTimeout("vms", config["libvirt_timeout"])
    if retcode != 0:
        raise common.ToolUnavailable(
            "virsh", stderr.strip() or f"exited with code {retcode}"
        )

    return sorted(line.strip() for line in stdout.splitlines() if line.strip())


def list_vm_states(config):
    """
    Return a dict of VM name to {"id", "state"} from the virsh domain table

    Columns are sliced at the header offsets since both names and states
    ("shut off", "in shutdown") may contain spaces. An inactive VM has id None.
    """
    if not common.is_tool_available(config["virsh_command"]):
        raise common.ToolUnavailable(
            "virsh", f'command "{config["virsh_command"]}" not found'
        )

    retcode, stdout, stderr = common.run_os_command(
        virsh_command(config, "list", "--all"),
        timeout=config["libvirt_timeout"],
    )
    if retcode == 128:
        raise common.PartialScanTimeout("vm states", config["libvirt_timeout"])
    if retcode != 0:
        raise common.ToolUnavailable(
            "virsh", stderr.strip() or f"exited with code {retcode}"
        )

    vm_states = dict()
    name_col = state_col = None
    for line in stdout.splitlines():
        if name_col is None:
            if "Name" in line and "State" in line:
                name_col = line.index("Name")
                state_col = line.index("State")
            continue
        if not line.strip() or line.strip().startswith("---"):
            continue

        vm_id = line[:name_col].strip()
        vm_name = line[name_col:state_col].strip()
        state = line[state_col:].strip()
        if not vm_name:
            continue
        vm_states[vm_name] = {
            "id": int(vm_id) if vm_id.isdigit() else None,
            "state": state or "unknown",
        }

    return vm_states


def get_vm_xml(config, vm_name):
    """
    Return the persisted (inactive) configuration XML of a VM
    """
    retcode, stdout, stderr = common.run_os_command(
        virsh_command(config, "dumpxml", "--inactive", vm_name),
        timeout=config["libvirt_timeout"],
    )
    if retcode == 128:
        raise common.PartialScanTimeout(f"vm {vm_name}", config["libvirt_timeout"])
    if retcode != 0:
        raise common.VmUnreadable(
            vm_name, stderr.strip() or f"exited with code {retcode}"
        )

    return stdout


#
# Parse the mediated device UUIDs out of a domain XML document
#
def parse_mdev_uuids(domain_xml):
    try:
        parsed_xml = lxml.etree.fromstring(domain_xml.encode())
    except lxml.etree.XMLSyntaxError as e:
        raise common.KvgpuError(f"Failed to parse domain XML: {e}")

    mdev_uuids = set()
    for address in parsed_xml.xpath(
        "/domain/devices/hostdev[@type='mdev']/source/address[@uuid]"
    ):
        mdev_uuid = address.attrib.get("uuid").strip()
        if common.validateUUID(mdev_uuid):
            mdev_uuid = common.normalizeUUID(mdev_uuid)
        mdev_uuids.add(mdev_uuid.lower())

    return mdev_uuids


def get_vm_mdev_uuids(config, vm_name):
    return parse_mdev_uuids(get_vm_xml(config, vm_name))


#
# Ownership index
#
def build_ownership_index(config, vm_names, logger=None):
    """
    Fetch every VM configuration once and index the mediated devices they use

    Returns (index, vm_devices, warnings), where index maps each mdev UUID to
    the list of VMs referencing it and vm_devices maps each VM to its UUIDs.
    A VM whose configuration cannot be read is left out of both and reported
    as a VmUnreadable warning. The fetches run in parallel; if they do not
    all finish within the scan timeout, PartialScanTimeout is raised.
    """
    index = dict()
    vm_devices = dict()
    warnings = list()

    if not vm_names:
        return index, vm_devices, warnings

    executor = ThreadPoolExecutor(
        max_workers=config["libvirt_workers"], thread_name_prefix="vm_xml"
    )
    try:
        futures = dict()
        for vm_name in vm_names:
            futures[vm_name] = executor.submit(get_vm_mdev_uuids, config, vm_name)

        done, not_done = wait(futures.values(), timeout=config["scan_timeout"])
        if not_done:
            raise common.PartialScanTimeout("vms", config["scan_timeout"])

        for vm_name, future in futures.items():
            try:
                mdev_uuids = future.result()
            except common.PartialScanTimeout:
                # A VM we could not read may be the owner; do not guess
                raise common.PartialScanTimeout("vms", config["libvirt_timeout"])
            except common.KvgpuError as e:
                if not isinstance(e, common.VmUnreadable):
                    e = common.VmUnreadable(vm_name, e)
                warnings.append(e)
                if logger is not None:
                    logger.out(str(e), state="w")
                continue

            vm_devices[vm_name] = sorted(mdev_uuids)
            for mdev_uuid in mdev_uuids:
                index.setdefault(mdev_uuid, list()).append(vm_name)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return index, vm_devices, warnings


def unread_vms(warnings):
    """
    Return the names of the VMs an ownership index had to skip
    """
    return sorted(w.vm for w in warnings if isinstance(w, common.VmUnreadable))


def owner_from_index(index, mdev_uuid):
    """
    Return the single VM referencing mdev_uuid, None if none does, or raise
    AmbiguousOwnership if several do
    """
    if common.validateUUID(mdev_uuid):
        mdev_uuid = common.normalizeUUID(mdev_uuid)
    owners = index.get(mdev_uuid.lower(), list())
    if len(owners) > 1:
        raise common.AmbiguousOwnership(mdev_uuid, owners)
    if owners:
        return owners[0]
    return None


def resolve_owner(config, mdev_uuid, vm_names, logger=None):
    """
    Return the VM among vm_names whose configuration references mdev_uuid

    None means no VM references it. If no reference was found but some VM
    could not be read, the owner is OWNER_UNKNOWN rather than None.
    """
    if not vm_names:
        return None

    index, _, warnings = build_ownership_index(config, vm_names, logger)
    owner = owner_from_index(index, mdev_uuid)
    if owner is None and unread_vms(warnings):
        return common.OWNER_UNKNOWN
    return owner
