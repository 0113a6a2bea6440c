#!/usr/bin/env python3

# checks.py - kvgpu function library, host prerequisite checks
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

import grp
import os
import psutil

from re import search as re_search

import kvgpu.lib.common as common
import kvgpu.lib.pci as pci


STATUS_PASS = "pass"
STATUS_WARN = "warn"
STATUS_FAIL = "fail"
STATUS_INFO = "info"

# GPUs known to support vGPU on this host type
VGPU_CAPABLE_MODELS = ["RTX 6000", "RTX 8000", "RTX A6000", "Quadro RTX", "A40", "L40"]

# Memory thresholds in GiB
MEMORY_PASS_GB = 32
MEMORY_WARN_GB = 16


class CheckResult(object):
    """
    The outcome of one prerequisite check
    """

    def __init__(self, section, status, message, hint=None):
        self.section = section
        self.status = status
        self.message = message
        self.hint = hint

    def to_dict(self):
        return {
            "section": self.section,
            "status": self.status,
            "message": self.message,
            "hint": self.hint,
        }


def summarize(results):
    """
    Count results by status; info results are not counted
    """
    summary = {STATUS_PASS: 0, STATUS_WARN: 0, STATUS_FAIL: 0}
    for result in results:
        if result.status in summary:
            summary[result.status] += 1
    return summary


#
# Individual checks; each returns a list of CheckResults
#
def check_cpu_virtualization(config):
    section = "CPU virtualization"
    cpuinfo = common.read_attribute(common.procfs_path(config, "cpuinfo"), default="")

    flag_lines = [line for line in cpuinfo.splitlines() if line.startswith("flags")]
    vmx_count = len([line for line in flag_lines if re_search(r"\bvmx\b", line)])
    svm_count = len([line for line in flag_lines if re_search(r"\bsvm\b", line)])

    if vmx_count:
        return [
            CheckResult(
                section, STATUS_PASS, f"Intel VT-x supported on {vmx_count} CPU(s)"
            )
        ]
    if svm_count:
        return [
            CheckResult(
                section, STATUS_PASS, f"AMD SVM supported on {svm_count} CPU(s)"
            )
        ]
    return [
        CheckResult(
            section,
            STATUS_FAIL,
            "CPU virtualization not supported or not enabled in firmware",
            "Enable Intel VT-x or AMD SVM in the BIOS settings",
        )
    ]


def check_iommu(config):
    section = "IOMMU"
    results = list()

    try:
        groups = pci.list_iommu_groups(config)
        read_error = None
    except OSError as e:
        groups = None
        read_error = e

    if read_error is not None:
        results.append(
            CheckResult(section, STATUS_FAIL, f"Cannot read IOMMU groups: {read_error}")
        )
    elif groups is None:
        results.append(
            CheckResult(
                section,
                STATUS_FAIL,
                "IOMMU is not enabled",
                "Add intel_iommu=on or amd_iommu=on to the kernel command line and enable IOMMU in the BIOS",
            )
        )
    else:
        results.append(
            CheckResult(
                section, STATUS_PASS, f"IOMMU is enabled ({len(groups)} groups)"
            )
        )

    cmdline = common.read_attribute(common.procfs_path(config, "cmdline"), default="")
    if "iommu=on" in cmdline:
        results.append(
            CheckResult(
                section, STATUS_PASS, "IOMMU enabled on the running kernel command line"
            )
        )
    else:
        results.append(
            CheckResult(
                section,
                STATUS_WARN,
                "IOMMU not enabled on the running kernel command line",
            )
        )

    grub_defaults = config["grub_defaults"]
    if os.path.isfile(grub_defaults):
        grub_cmdline = ""
        try:
            with open(grub_defaults, "r") as fh:
                for line in fh:
                    if line.startswith("GRUB_CMDLINE_LINUX_DEFAULT"):
                        grub_cmdline = line.strip()
        except OSError as e:
            results.append(
                CheckResult(section, STATUS_WARN, f"Cannot read {grub_defaults}: {e}")
            )
            return results

        if "iommu=on" in grub_cmdline:
            results.append(
                CheckResult(section, STATUS_PASS, "IOMMU enabled in GRUB configuration")
            )
        else:
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    "IOMMU not found in GRUB configuration",
                    f"Current setting: {grub_cmdline or 'none'}",
                )
            )

    return results


def _loaded_modules(config):
    modules = common.read_attribute(common.procfs_path(config, "modules"), default="")
    return set(line.split()[0] for line in modules.splitlines() if line.strip())


def check_kernel_modules(config):
    section = "Kernel modules"
    results = list()
    modules = _loaded_modules(config)

    if "nouveau" in modules:
        results.append(
            CheckResult(
                section,
                STATUS_WARN,
                "Nouveau driver is loaded; it must be blacklisted for vGPU",
                "echo 'blacklist nouveau' > /etc/modprobe.d/blacklist-nouveau.conf",
            )
        )
    else:
        results.append(
            CheckResult(section, STATUS_PASS, "Nouveau driver is not loaded")
        )

    for module in ["vfio", "vfio_pci", "vfio_iommu_type1"]:
        if module in modules:
            results.append(CheckResult(section, STATUS_PASS, f"{module} is loaded"))
        else:
            # Often built into the kernel rather than loaded as a module
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    f"{module} is not loaded as a module",
                    f"modprobe {module}, unless it is built into the kernel",
                )
            )

    if "nvidia_vgpu_vfio" in modules or "nvidia" in modules:
        results.append(CheckResult(section, STATUS_PASS, "NVIDIA driver is loaded"))
    else:
        results.append(
            CheckResult(
                section,
                STATUS_FAIL,
                "NVIDIA driver is not loaded",
                "Install the NVIDIA vGPU host driver",
            )
        )

    return results


def check_gpus(config):
    section = "NVIDIA GPUs"
    results = list()

    try:
        gpus = pci.get_gpu_inventory(config)
    except common.ToolUnavailable as e:
        return [CheckResult(section, STATUS_FAIL, str(e), "Install pciutils")]

    if not gpus:
        return [
            CheckResult(
                section,
                STATUS_FAIL,
                "No NVIDIA VGA GPUs detected",
                "Ensure the GPU is properly seated and powered",
            )
        ]

    for gpu in gpus:
        results.append(CheckResult(section, STATUS_INFO, f"{gpu.bdf} {gpu.name}"))
        if any(model in gpu.name for model in VGPU_CAPABLE_MODELS):
            results.append(
                CheckResult(
                    section, STATUS_PASS, f"{gpu.bdf} is a known vGPU-capable model"
                )
            )
        else:
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    f"{gpu.bdf} may not support vGPU; verify compatibility",
                )
            )

        if gpu.virtual_functions:
            results.append(
                CheckResult(
                    section,
                    STATUS_PASS,
                    f"{gpu.bdf} has {len(gpu.virtual_functions)} SR-IOV virtual functions enabled",
                )
            )
        else:
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    f"{gpu.bdf} has no SR-IOV virtual functions enabled",
                    f"kvgpu gpu enable-vfs {gpu.bdf}",
                )
            )

    return results


def check_nvidia_smi(config):
    section = "NVIDIA driver"
    nvidia_smi = config["nvidia_smi_command"]

    if not common.is_tool_available(nvidia_smi):
        return [
            CheckResult(
                section,
                STATUS_WARN,
                f"{nvidia_smi} is not installed",
                "Install the NVIDIA vGPU host driver",
            )
        ]

    retcode, stdout, stderr = common.run_os_command(
        [nvidia_smi], timeout=config["libvirt_timeout"]
    )
    if retcode != 0:
        return [
            CheckResult(
                section,
                STATUS_FAIL,
                f"{nvidia_smi} failed: {stderr.strip() or f'exited with code {retcode}'}",
            )
        ]
    return [CheckResult(section, STATUS_PASS, f"{nvidia_smi} runs successfully")]


def check_memory(config):
    section = "Memory"
    total_gb = psutil.virtual_memory().total // (1024 * 1024 * 1024)

    if total_gb >= MEMORY_PASS_GB:
        return [
            CheckResult(
                section,
                STATUS_PASS,
                f"Sufficient memory for vGPU workloads ({total_gb}GB)",
            )
        ]
    if total_gb >= MEMORY_WARN_GB:
        return [
            CheckResult(
                section,
                STATUS_WARN,
                f"Memory may be limited for multiple VMs ({total_gb}GB)",
            )
        ]
    return [
        CheckResult(
            section,
            STATUS_FAIL,
            f"Insufficient memory for vGPU workloads ({total_gb}GB < {MEMORY_WARN_GB}GB)",
        )
    ]


def check_libvirt(config):
    section = "libvirt"
    results = list()

    systemctl = config["systemctl_command"]
    if not common.is_tool_available(systemctl):
        results.append(
            CheckResult(
                section, STATUS_WARN, f"{systemctl} not found; cannot check libvirtd"
            )
        )
    else:
        retcode, stdout, stderr = common.run_os_command(
            [systemctl, "is-active", "--quiet", "libvirtd"],
            timeout=config["libvirt_timeout"],
        )
        if retcode == 0:
            results.append(
                CheckResult(section, STATUS_PASS, "libvirtd service is running")
            )
        else:
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    "libvirtd service is not running",
                    "systemctl enable --now libvirtd",
                )
            )

    user_groups = set()
    for gid in os.getgroups():
        try:
            user_groups.add(grp.getgrgid(gid).gr_name)
        except KeyError:
            continue

    for group in ["libvirt", "kvm"]:
        if group in user_groups:
            results.append(
                CheckResult(
                    section, STATUS_PASS, f"Current user is in the {group} group"
                )
            )
        else:
            results.append(
                CheckResult(
                    section,
                    STATUS_WARN,
                    f"Current user is not in the {group} group",
                    f"adduser $USER {group}",
                )
            )

    return results


CHECKS = [
    check_cpu_virtualization,
    check_iommu,
    check_kernel_modules,
    check_gpus,
    check_nvidia_smi,
    check_memory,
    check_libvirt,
]


def run_checks(config, logger=None):
    """
    Run every prerequisite check and return the flat list of results
    """
    results = list()
    if os.geteuid() == 0:
        results.append(
            CheckResult(
                "User",
                STATUS_WARN,
                "Running as root; some checks may not reflect normal user permissions",
            )
        )

    for check in CHECKS:
        if logger is not None:
            logger.out(f"Running {check.__name__}", state="d", prefix="check")
        results.extend(check(config))

    return results


def get_check_report(config, logger=None):
    results = run_checks(config, logger)
    return True, {
        "results": [result.to_dict() for result in results],
        "summary": summarize(results),
    }
