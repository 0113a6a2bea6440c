#!/usr/bin/env python3

# nvidia.py - kvgpu function library, NVIDIA host driver status
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

import csv

import kvgpu.lib.common as common


# Fields requested from nvidia-smi, in output order
QUERY_FIELDS = [
    "pci.bus_id",
    "name",
    "driver_version",
    "utilization.gpu",
    "utilization.memory",
    "memory.used",
    "memory.total",
]


def _to_int(value):
    # nvidia-smi prints "[N/A]" or "[Not Supported]" for unreadable counters
    try:
        return int(float(value))
    except ValueError:
        return None


def _bus_id_to_bdf(bus_id):
    """
    Convert an nvidia-smi bus ID (00000000:0A:00.0) to a sysfs BDF (0000:0a:00.0)
    """
    domain, _, rest = bus_id.partition(":")
    try:
        bdf = f"{int(domain, 16):04x}:{rest.lower()}"
    except ValueError:
        return bus_id.lower()
    if not common.validateBDF(bdf):
        return bus_id.lower()
    return bdf


def parse_query_output(output):
    gpu_list = list()
    for row in csv.reader(output.splitlines(), skipinitialspace=True):
        if len(row) != len(QUERY_FIELDS):
            continue
        bus_id, name, driver_version, gpu_util, mem_util, mem_used, mem_total = [
            field.strip() for field in row
        ]
        gpu_list.append(
            {
                "bdf": _bus_id_to_bdf(bus_id),
                "name": name,
                "driver_version": driver_version,
                "gpu_utilization": _to_int(gpu_util),
                "memory_utilization": _to_int(mem_util),
                "memory_used_mib": _to_int(mem_used),
                "memory_total_mib": _to_int(mem_total),
            }
        )
    return gpu_list


def get_driver_status(config):
    """
    Query the NVIDIA host driver for its version and per-GPU utilization

    Returns {"driver_version", "gpus"}. Raises ToolUnavailable if nvidia-smi
    is missing or fails, or PartialScanTimeout if it hangs.
    """
    nvidia_smi = config["nvidia_smi_command"]
    if not common.is_tool_available(nvidia_smi):
        raise common.ToolUnavailable("nvidia-smi", f'command "{nvidia_smi}" not found')

    retcode, stdout, stderr = common.run_os_command(
        [
            nvidia_smi,
            f"--query-gpu={','.join(QUERY_FIELDS)}",
            "--format=csv,noheader,nounits",
        ],
        timeout=config["libvirt_timeout"],
    )
    if retcode == 128:
        raise common.PartialScanTimeout("driver", config["libvirt_timeout"])
    if retcode != 0:
        raise common.ToolUnavailable(
            "nvidia-smi", stderr.strip() or f"exited with code {retcode}"
        )

    gpu_list = parse_query_output(stdout)
    driver_version = gpu_list[0]["driver_version"] if gpu_list else None
    return {"driver_version": driver_version, "gpus": gpu_list}
