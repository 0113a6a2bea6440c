#!/usr/bin/env python3

# host.py - kvgpu function library, host inventory reconciliation
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

from datetime import datetime
from uuid import uuid4

import kvgpu.lib.common as common
import kvgpu.lib.mdev as mdev
import kvgpu.lib.nvidia as nvidia
import kvgpu.lib.pci as pci
import kvgpu.lib.vm as vm

from kvgpu.lib.log import NullLogger


###############################################################################
# Report objects
###############################################################################


class ReportInstance(object):
    """
    A mediated device together with its resolved owner
    """

    def __init__(self, instance, owner, candidates=None, owner_state=None):
        self.instance = instance
        self.owner = owner
        self.candidates = candidates if candidates is not None else list()
        self.owner_state = owner_state

    @property
    def uuid(self):
        return self.instance.uuid

    @property
    def profile(self):
        return self.instance.profile

    @property
    def parent(self):
        return self.instance.parent

    def to_dict(self):
        data = self.instance.to_dict()
        data["owner"] = self.owner
        data["owner_candidates"] = self.candidates
        data["owner_state"] = self.owner_state
        return data


class SystemReport(object):
    """
    A point-in-time snapshot of the host's GPU, vGPU and VM state

    Sections that could not be read are flagged in sections and explained in
    warnings; the rest of the report is still filled in.
    """

    def __init__(self, hostname):
        self.hostname = hostname
        self.timestamp = datetime.now().strftime("%Y/%m/%d %H:%M:%S")
        self.gpus = list()
        self.profiles = dict()
        self.instances = list()
        self.capacity = list()
        self.vms = dict()
        self.vm_states = dict()
        self.unread_vms = list()
        self.driver = {"driver_version": None, "gpus": list()}
        self.iommu = {"enabled": False, "group_count": 0, "gpu_groups": dict()}
        self.sections = {
            "pci": False,
            "mdev": False,
            "vms": False,
            "iommu": False,
            "driver": False,
        }
        self.warnings = list()

    def add_warning(self, error):
        self.warnings.append(common.format_warning(error))

    def functions(self):
        """
        Every GPU function in the report, physical functions first
        """
        bdfs = list()
        for gpu in self.gpus:
            bdfs.append(gpu.bdf)
            bdfs.extend(vf.bdf for vf in gpu.virtual_functions)
        return bdfs

    def get_instance(self, mdev_uuid):
        if not common.validateUUID(mdev_uuid):
            return None
        mdev_uuid = common.normalizeUUID(mdev_uuid)
        for report_instance in self.instances:
            if report_instance.uuid == mdev_uuid:
                return report_instance
        return None

    def _vm_to_dict(self, name):
        vm_state = self.vm_states.get(name, dict())
        return {
            "name": name,
            "id": vm_state.get("id"),
            "state": vm_state.get("state", "unknown"),
            "mdev_uuids": self.vms[name],
        }

    def to_dict(self):
        return {
            "hostname": self.hostname,
            "timestamp": self.timestamp,
            "sections": dict(self.sections),
            "gpus": [gpu.to_dict() for gpu in self.gpus],
            "profiles": {
                bdf: [profile.to_dict() for profile in profiles]
                for bdf, profiles in self.profiles.items()
            },
            "instances": [instance.to_dict() for instance in self.instances],
            "capacity": list(self.capacity),
            "vms": [self._vm_to_dict(name) for name in sorted(self.vms.keys())],
            "unread_vms": list(self.unread_vms),
            "iommu": dict(self.iommu),
            "driver": {
                "driver_version": self.driver["driver_version"],
                "gpus": list(self.driver["gpus"]),
            },
            "warnings": list(self.warnings),
        }


###############################################################################
# Scan sections
###############################################################################


def _scan_gpus(config, report, logger):
    try:
        pci_functions = pci.get_pci_functions(config)
    except common.ToolUnavailable as e:
        logger.out(str(e), state="w", prefix="pci")
        report.add_warning(e)
        return

    report.gpus = pci.get_gpu_inventory(config, pci_functions)
    report.sections["pci"] = True
    logger.out(f"Found {len(report.gpus)} NVIDIA GPU(s)", state="d", prefix="pci")


def _scan_profiles(config, report, logger):
    malformed = list()
    for bdf in report.functions():
        report.profiles[bdf] = mdev.list_profiles(config, bdf, warnings=malformed)
    for error in malformed:
        logger.out(str(error), state="w", prefix="mdev")
        report.add_warning(error)


def _scan_instances(config, report, logger):
    try:
        instances = mdev.list_instances(config)
    except common.ToolUnavailable as e:
        logger.out(str(e), state="w", prefix="mdev")
        report.add_warning(e)
        return None

    report.sections["mdev"] = True
    return instances


def _scan_vms(config, report, logger):
    try:
        vm_names = vm.list_vms(config)
        index, vm_devices, warnings = vm.build_ownership_index(
            config, vm_names, logger
        )
    except (common.ToolUnavailable, common.PartialScanTimeout) as e:
        logger.out(str(e), state="w", prefix="vms")
        report.add_warning(e)
        return None

    for error in warnings:
        report.add_warning(error)
    report.vms = vm_devices
    report.unread_vms = vm.unread_vms(warnings)
    report.sections["vms"] = True

    # Run states are informational; ownership does not depend on them
    try:
        report.vm_states = vm.list_vm_states(config)
    except (common.ToolUnavailable, common.PartialScanTimeout) as e:
        logger.out(str(e), state="w", prefix="vms")
        report.add_warning(e)

    return index


def _scan_iommu(config, report, logger):
    try:
        groups = pci.list_iommu_groups(config)
    except OSError as e:
        logger.out(f"Cannot read IOMMU groups: {e}", state="w", prefix="iommu")
        report.add_warning(common.ToolUnavailable("IOMMU groups", str(e)))
        return

    report.sections["iommu"] = True
    if groups is None:
        return

    gpu_bdfs = set(report.functions())
    gpu_groups = dict()
    for group, members in groups.items():
        gpu_members = [bdf for bdf in members if bdf in gpu_bdfs]
        if gpu_members:
            gpu_groups[group] = gpu_members

    report.iommu = {
        "enabled": True,
        "group_count": len(groups),
        "gpu_groups": gpu_groups,
    }


def _scan_driver(config, report, logger):
    # A host without nvidia-smi simply has no driver details
    if not common.is_tool_available(config["nvidia_smi_command"]):
        logger.out("nvidia-smi not found", state="d", prefix="driver")
        return

    try:
        report.driver = nvidia.get_driver_status(config)
    except (common.ToolUnavailable, common.PartialScanTimeout) as e:
        logger.out(str(e), state="w", prefix="driver")
        report.add_warning(e)
        return

    report.sections["driver"] = True


def _reconcile(report, instances, index):
    if instances is None:
        instances = list()

    for instance in instances:
        if index is None:
            report.instances.append(ReportInstance(instance, common.OWNER_UNKNOWN))
            continue
        try:
            owner = vm.owner_from_index(index, instance.uuid)
        except common.AmbiguousOwnership as e:
            report.add_warning(e)
            report.instances.append(
                ReportInstance(instance, common.OWNER_AMBIGUOUS, e.vms)
            )
            continue
        if owner is None and report.unread_vms:
            # One of the unread VMs may be the owner
            report.instances.append(ReportInstance(instance, common.OWNER_UNKNOWN))
        elif owner is None:
            report.instances.append(ReportInstance(instance, common.OWNER_UNASSIGNED))
        else:
            owner_state = report.vm_states.get(owner, dict()).get("state")
            report.instances.append(
                ReportInstance(instance, owner, [owner], owner_state)
            )

    # References to devices that do not exist can only be judged if we could
    # read the registry at all
    if index is not None and report.sections["mdev"]:
        known_uuids = set(i.uuid.lower() for i in instances)
        for mdev_uuid, vms in sorted(index.items()):
            if mdev_uuid not in known_uuids:
                report.add_warning(common.OrphanReference(mdev_uuid, vms))

    for bdf, profiles in report.profiles.items():
        for profile in profiles:
            observed = len(
                [
                    i
                    for i in report.instances
                    if i.parent == bdf and i.profile == profile.type_id
                ]
            )
            report.capacity.append(
                {
                    "bdf": bdf,
                    "type": profile.type_id,
                    "name": profile.name,
                    "available_instances": profile.available_instances,
                    "observed_instances": observed,
                }
            )


###############################################################################
# Direct functions
###############################################################################


def scan(config, logger=None):
    """
    Build a SystemReport from the live host

    This never writes anything and never raises for a missing tool or path;
    unavailable sections are flagged in the report instead.
    """
    if logger is None:
        logger = NullLogger()

    report = SystemReport(config["node"])

    _scan_gpus(config, report, logger)
    _scan_profiles(config, report, logger)
    instances = _scan_instances(config, report, logger)
    index = _scan_vms(config, report, logger)
    _scan_iommu(config, report, logger)
    _scan_driver(config, report, logger)
    _reconcile(report, instances, index)

    return report


def create_instance(config, bdf, profile, mdev_uuid=None, logger=None):
    """
    Create a vGPU instance after validating bdf and profile against a fresh scan

    Returns (instance, warnings). The instance is re-read from the registry
    after the write, since a successful write does not prove the driver
    accepted it. Raises a CreateError subclass on failure.

    The capacity check and the write are not atomic; a concurrent creation
    can use up the last slot in between, in which case the driver rejects
    the write and DriverRejected is raised.
    """
    if logger is None:
        logger = NullLogger()

    if not common.validateBDF(bdf):
        raise common.FunctionNotFound(bdf)
    bdf = bdf.lower()

    try:
        function = pci.find_function(config, bdf)
        if function is None:
            raise common.FunctionNotFound(bdf)
    except common.ToolUnavailable as e:
        # The profile catalog check below still guards the write
        logger.out(f"Cannot verify {bdf} is an NVIDIA function: {e}", state="w")

    if mdev.get_profile(config, bdf, profile) is None:
        raise common.ProfileNotFound(bdf, profile)

    if mdev_uuid is None:
        mdev_uuid = str(uuid4())
    elif not common.validateUUID(mdev_uuid):
        raise common.InvalidUUID(mdev_uuid)
    mdev_uuid = common.normalizeUUID(mdev_uuid)

    logger.out(f"Creating {profile} instance {mdev_uuid} on {bdf}", state="i")
    warnings = mdev.create_instance(config, bdf, profile, mdev_uuid, logger)

    instance = mdev.get_instance(config, mdev_uuid)
    if instance is None:
        raise common.DriverRejected(
            f"mediated device {mdev_uuid} did not appear after writing to the "
            "create control file"
        )
    if instance.profile != profile:
        raise common.DriverRejected(
            f"mediated device {instance.uuid} appeared with profile "
            f"{instance.profile} instead of {profile}"
        )

    logger.out(f"Created {profile} instance {instance.uuid} on {bdf}", state="o")
    return instance, warnings


def remove_instance(config, mdev_uuid, force=False, logger=None):
    """
    Remove a vGPU instance, refusing if a VM configuration references it unless forced

    Without force, removal is also refused if any VM configuration could not
    be read, since that VM may be the one using the device.
    """
    if logger is None:
        logger = NullLogger()

    if not common.validateUUID(mdev_uuid):
        raise common.InvalidUUID(mdev_uuid)
    mdev_uuid = common.normalizeUUID(mdev_uuid)

    if not mdev.instance_exists(config, mdev_uuid):
        raise common.InstanceNotFound(mdev_uuid)

    if not force:
        vm_names = vm.list_vms(config)
        index, _, warnings = vm.build_ownership_index(config, vm_names, logger)
        owners = index.get(mdev_uuid, list())
        if owners:
            raise common.InstanceInUse(mdev_uuid, owners)
        unread = vm.unread_vms(warnings)
        if unread:
            raise common.OwnershipUnverified(mdev_uuid, unread)

    logger.out(f"Removing instance {mdev_uuid}", state="i")
    mdev.remove_instance(config, mdev_uuid, logger)

    if mdev.instance_exists(config, mdev_uuid):
        raise common.DriverRejected(
            f"mediated device {mdev_uuid} is still present after writing to the "
            "remove control file"
        )

    logger.out(f"Removed instance {mdev_uuid}", state="o")
    return mdev_uuid


###############################################################################
# CLI helper functions; these return (success, data) tuples
###############################################################################


def get_status(config, logger=None):
    return True, scan(config, logger).to_dict()


def get_gpu_list(config):
    try:
        gpu_list = pci.get_gpu_inventory(config)
    except common.ToolUnavailable as e:
        return False, f"ERROR: {e}"

    return True, [gpu.to_dict() for gpu in gpu_list]


def get_profile_list(config, bdf):
    if not common.validateBDF(bdf):
        return False, f'ERROR: "{bdf}" is not a valid PCI address.'

    warnings = list()
    profile_list = mdev.list_profiles(config, bdf.lower(), warnings=warnings)
    return True, {
        "bdf": bdf.lower(),
        "profiles": [profile.to_dict() for profile in profile_list],
        "warnings": [common.format_warning(w) for w in warnings],
    }


def get_vgpu_list(config, logger=None):
    report = scan(config, logger)
    if not report.sections["mdev"]:
        return (
            False,
            "ERROR: The mdev bus is not available; is the vGPU host driver loaded?",
        )

    return True, {
        "instances": [instance.to_dict() for instance in report.instances],
        "warnings": report.warnings,
    }


def vgpu_create(config, bdf, profile, mdev_uuid=None, logger=None):
    try:
        instance, warnings = create_instance(config, bdf, profile, mdev_uuid, logger)
    except (common.CreateError, common.ToolUnavailable) as e:
        return False, f"ERROR: {e}"

    return True, {
        "uuid": instance.uuid,
        "profile": instance.profile,
        "parent": instance.parent,
        "warnings": warnings,
    }


def vgpu_remove(config, mdev_uuid, force=False, logger=None):
    try:
        mdev_uuid = remove_instance(config, mdev_uuid, force, logger)
    except common.KvgpuError as e:
        return False, f"ERROR: {e}"

    return True, f'Removed vGPU instance "{mdev_uuid}".'


def vgpu_owner(config, mdev_uuid, logger=None):
    if not common.validateUUID(mdev_uuid):
        return False, f"ERROR: {common.InvalidUUID(mdev_uuid)}"
    mdev_uuid = common.normalizeUUID(mdev_uuid)

    try:
        vm_names = vm.list_vms(config)
        owner = vm.resolve_owner(config, mdev_uuid, vm_names, logger)
    except common.KvgpuError as e:
        return False, f"ERROR: {e}"

    if owner is None:
        return True, f"{mdev_uuid}: {common.OWNER_UNASSIGNED}"
    return True, f"{mdev_uuid}: {owner}"
