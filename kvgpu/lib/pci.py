#!/usr/bin/env python3

# pci.py - kvgpu function library, GPU, SR-IOV VF and IOMMU inventory
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

import os

from re import match as re_match

import kvgpu.lib.common as common


#
# Inventory objects
#
class PCIFunction(object):
    """
    One PCI function as reported by lspci in machine-readable form
    """

    def __init__(self, bdf, class_name, vendor, device):
        self.bdf = bdf.lower()
        self.class_name = class_name
        self.vendor = vendor
        self.device = device
        self.domain, self.bus, self.slot, self.function = common.splitBDF(self.bdf)

    @property
    def name(self):
        return " ".join(x for x in [self.vendor, self.device] if x)

    @property
    def prefix(self):
        # The domain:bus:slot part shared by a PF and its VFs
        return f"{self.domain}:{self.bus}:{self.slot}"

    def matches(self, *terms):
        text = f"{self.class_name} {self.vendor} {self.device}".lower()
        return all(term.lower() in text for term in terms)


class PhysicalFunction(object):
    def __init__(self, bdf, name):
        self.bdf = bdf
        self.name = name
        self.virtual_functions = list()

    def to_dict(self):
        return {
            "bdf": self.bdf,
            "name": self.name,
            "virtual_functions": [vf.to_dict() for vf in self.virtual_functions],
        }


class VirtualFunction(object):
    def __init__(self, bdf, name, parent):
        self.bdf = bdf
        self.name = name
        # The BDF of the owning PhysicalFunction
        self.parent = parent

    def to_dict(self):
        return {
            "bdf": self.bdf,
            "name": self.name,
            "parent": self.parent,
        }


#
# lspci parsing
#
def parse_lspci_vmm(output):
    """
    Parse "lspci -D -vmm" output (blank-line separated "Key:<tab>Value" records)
    """
    functions = list()

    for record in output.strip().split("\n\n"):
        fields = dict()
        for line in record.splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            fields[key.strip()] = value.strip()

        slot = fields.get("Slot", None)
        if slot is None:
            continue
        # Older lspci omits the domain unless asked; assume the first one
        if re_match(r"^[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-9a-fA-F]$", slot):
            slot = f"0000:{slot}"
        if not common.validateBDF(slot):
            continue

        functions.append(
            PCIFunction(
                slot,
                fields.get("Class", ""),
                fields.get("Vendor", ""),
                fields.get("Device", ""),
            )
        )

    return functions


def get_pci_functions(config):
    """
    Enumerate every PCI function on the host

    Raises ToolUnavailable if lspci is missing or fails, so that callers can
    tell "no GPUs" apart from "cannot check".
    """
    lspci = config["lspci_command"]
    if not common.is_tool_available(lspci):
        raise common.ToolUnavailable("lspci", f'command "{lspci}" not found')

    retcode, stdout, stderr = common.run_os_command([lspci, "-D", "-vmm"])
    if retcode != 0:
        raise common.ToolUnavailable(
            "lspci", stderr.strip() or f"exited with code {retcode}"
        )

    return parse_lspci_vmm(stdout)


#
# Direct functions
#
def list_physical_functions(config, pci_functions=None):
    """
    List NVIDIA VGA functions, i.e. full GPUs rather than their VFs
    """
    if pci_functions is None:
        pci_functions = get_pci_functions(config)

    pf_list = list()
    for function in pci_functions:
        if function.matches("nvidia", "vga"):
            pf_list.append(PhysicalFunction(function.bdf, function.name))

    return sorted(pf_list, key=lambda p: p.bdf)


def list_virtual_functions(config, pf, pci_functions=None):
    """
    List NVIDIA functions on the same domain:bus:slot as pf with a non-zero function
    """
    if pci_functions is None:
        pci_functions = get_pci_functions(config)

    pf_domain, pf_bus, pf_slot, _ = common.splitBDF(pf.bdf)
    pf_prefix = f"{pf_domain}:{pf_bus}:{pf_slot}"

    vf_list = list()
    for function in pci_functions:
        if function.prefix != pf_prefix:
            continue
        if function.function == "0":
            continue
        if not function.matches("nvidia"):
            continue
        vf_list.append(VirtualFunction(function.bdf, function.name, pf.bdf))

    return sorted(vf_list, key=lambda v: v.bdf)


def get_gpu_inventory(config, pci_functions=None):
    """
    Return the list of PhysicalFunctions with their VirtualFunctions attached
    """
    if pci_functions is None:
        pci_functions = get_pci_functions(config)

    pf_list = list_physical_functions(config, pci_functions)
    for pf in pf_list:
        pf.virtual_functions = list_virtual_functions(config, pf, pci_functions)

    return pf_list


def find_function(config, bdf, pci_functions=None):
    """
    Find an NVIDIA physical or virtual function by BDF; returns None if not present
    """
    bdf = bdf.lower()
    for pf in get_gpu_inventory(config, pci_functions):
        if pf.bdf == bdf:
            return pf
        for vf in pf.virtual_functions:
            if vf.bdf == bdf:
                return vf

    return None


#
# IOMMU groups
#
def list_iommu_groups(config):
    """
    Return a dict of IOMMU group number to member BDFs, or None if IOMMU is disabled
    """
    groups_path = common.sysfs_path(config, "kernel", "iommu_groups")
    if not os.path.isdir(groups_path):
        return None

    groups = dict()
    for group in os.listdir(groups_path):
        devices_path = os.path.join(groups_path, group, "devices")
        try:
            members = sorted(os.listdir(devices_path))
        except OSError:
            members = list()
        groups[group] = members

    # An empty directory means the kernel booted without an IOMMU
    if not groups:
        return None

    return groups


#
# SR-IOV enablement
#
def enable_virtual_functions(config, bdf, logger=None):
    """
    Enable SR-IOV VFs on a GPU with the NVIDIA sriov-manage helper
    """
    if not common.validateBDF(bdf):
        return False, f'ERROR: "{bdf}" is not a valid PCI address.'

    sriov_manage = config["sriov_manage_command"]
    if not common.is_tool_available(sriov_manage):
        return (
            False,
            f'ERROR: {common.ToolUnavailable("sriov-manage", sriov_manage)}; is the NVIDIA vGPU host driver installed?',
        )

    if logger is not None:
        logger.out(f"Enabling SR-IOV VFs on {bdf}", state="i")

    retcode, stdout, stderr = common.run_os_command(
        [sriov_manage, "-e", bdf], timeout=config["scan_timeout"]
    )
    if retcode != 0:
        return (
            False,
            f"ERROR: Failed to enable SR-IOV VFs on {bdf}: {stderr.strip() or stdout.strip()}",
        )

    return True, f"Enabled SR-IOV VFs on {bdf}."
