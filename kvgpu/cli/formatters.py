#!/usr/bin/env python3

# formatters.py - kvgpu Click CLI output formatters library
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

from kvgpu.cli.helpers import MAX_CONTENT_WIDTH
from kvgpu.lib.common import OWNER_AMBIGUOUS, OWNER_UNASSIGNED, OWNER_UNKNOWN


# Define colour values for use in formatters
ansii = {
    "red": "\033[91m",
    "blue": "\033[94m",
    "cyan": "\033[96m",
    "green": "\033[92m",
    "yellow": "\033[93m",
    "purple": "\033[95m",
    "bold": "\033[1m",
    "end": "\033[0m",
}


def format_table(headers, rows, colours=None):
    """
    Format rows into left-aligned columns with a bold header line

    {headers} is a list of column titles
    {rows} is a list of lists of cell values, one per header
    {colours} is an optional list, one per row, of a colour to apply to the whole row
    """

    # Determine optimal column widths
    column_lengths = [len(header) + 1 for header in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            _cell_length = len(str(cell)) + 1
            if _cell_length > column_lengths[idx]:
                column_lengths[idx] = _cell_length

    output = list()
    output.append(
        "{bold}{header}{end_bold}".format(
            bold=ansii["bold"],
            end_bold=ansii["end"],
            header=" ".join(
                f"{header: <{column_lengths[idx]}}"
                for idx, header in enumerate(headers)
            ).rstrip(),
        )
    )

    for ridx, row in enumerate(rows):
        line = " ".join(
            f"{str(cell): <{column_lengths[idx]}}" for idx, cell in enumerate(row)
        ).rstrip()
        if colours is not None and colours[ridx]:
            line = f"{colours[ridx]}{line}{ansii['end']}"
        output.append(line)

    return "\n".join(output)


def _owner_colour(owner):
    if owner == OWNER_UNASSIGNED:
        return ansii["blue"]
    elif owner == OWNER_UNKNOWN:
        return ansii["yellow"]
    elif owner == OWNER_AMBIGUOUS:
        return ansii["red"]
    else:
        return ansii["green"]


def _vm_state_colour(state):
    if state == "running":
        return ansii["green"]
    elif state == "shut off":
        return ansii["red"]
    elif state == "paused":
        return ansii["yellow"]
    else:
        return ansii["cyan"]


def _format_utilization(value, suffix="%"):
    if value is None:
        return "N/A"
    return f"{value}{suffix}"


def _format_warnings(warnings):
    output = list()
    for warning in warnings:
        output.append(
            f"{ansii['yellow']}{warning['type']}:{ansii['end']} {warning['message']}"
        )
    return output


def cli_status_format_pretty(CLI_CONFIG, data, detailed=False):
    """
    Pretty format the full output of cli_status

    {detailed} adds virtual functions, exhausted profiles and IOMMU groups
    """

    sections = data.get("sections", {})
    output = list()

    output.append(
        f"{ansii['bold']}kvgpu status of {data.get('hostname', 'N/A')} at {data.get('timestamp', 'N/A')}{ansii['end']}"
    )
    output.append("")

    section_strings = list()
    for section in ["pci", "mdev", "vms", "iommu", "driver"]:
        if sections.get(section, False):
            section_strings.append(f"{ansii['green']}{section}{ansii['end']}")
        else:
            section_strings.append(f"{ansii['red']}{section}{ansii['end']}")
    output.append(
        f"{ansii['purple']}Sections:{ansii['end']}   {' '.join(section_strings)}"
    )

    iommu = data.get("iommu", {})
    if iommu.get("enabled", False):
        iommu_string = f"enabled ({iommu.get('group_count', 0)} groups)"
    else:
        iommu_string = "disabled"
    output.append(f"{ansii['purple']}IOMMU:{ansii['end']}      {iommu_string}")
    if detailed:
        for group, members in sorted(
            iommu.get("gpu_groups", {}).items(), key=lambda g: (len(g[0]), g[0])
        ):
            output.append(f"            group {group}: {', '.join(members)}")

    driver = data.get("driver", {})
    if sections.get("driver", False):
        driver_string = f"NVIDIA {driver.get('driver_version') or 'unknown'}"
    else:
        driver_string = "nvidia-smi unavailable"
    output.append(f"{ansii['purple']}Driver:{ansii['end']}     {driver_string}")
    output.append("")

    # GPUs
    output.append(f"{ansii['purple']}GPUs:{ansii['end']}")
    if not sections.get("pci", False):
        output.append("  PCI enumeration unavailable")
    elif not data.get("gpus"):
        output.append("  No NVIDIA GPUs found")
    else:
        gpu_rows = list()
        for gpu in data["gpus"]:
            gpu_rows.append(
                [gpu["bdf"], gpu["name"], len(gpu.get("virtual_functions", []))]
            )
        output.append(format_table(["BDF", "Name", "VFs"], gpu_rows))
        if detailed:
            output.append("")
            output.append(cli_gpu_list_format_pretty(CLI_CONFIG, data["gpus"]))
    if driver.get("gpus"):
        output.append("")
        utilization_rows = list()
        for gpu in driver["gpus"]:
            if gpu["memory_total_mib"] is None:
                memory = "N/A"
            else:
                memory = "{}/{} MiB".format(
                    _format_utilization(gpu["memory_used_mib"], ""),
                    gpu["memory_total_mib"],
                )
            utilization_rows.append(
                [
                    gpu["bdf"],
                    gpu["name"],
                    _format_utilization(gpu["gpu_utilization"]),
                    _format_utilization(gpu["memory_utilization"]),
                    memory,
                ]
            )
        output.append(
            format_table(
                ["BDF", "Name", "GPU util", "Mem util", "Memory"], utilization_rows
            )
        )
    output.append("")

    # Capacity
    output.append(f"{ansii['purple']}Profiles in use or available:{ansii['end']}")
    capacity_rows = list()
    for entry in data.get("capacity", []):
        if (
            not detailed
            and entry["available_instances"] == 0
            and entry["observed_instances"] == 0
        ):
            continue
        capacity_rows.append(
            [
                entry["bdf"],
                entry["type"],
                entry["name"],
                entry["available_instances"],
                entry["observed_instances"],
            ]
        )
    if capacity_rows:
        output.append(
            format_table(
                ["BDF", "Type", "Name", "Available", "Created"], capacity_rows
            )
        )
    else:
        output.append("  None")
    output.append("")

    # Instances
    output.append(f"{ansii['purple']}vGPU instances:{ansii['end']}")
    if not sections.get("mdev", False):
        output.append("  No mdev bus; is the vGPU host driver loaded?")
    elif not data.get("instances"):
        output.append("  None")
    else:
        output.append(cli_vgpu_list_format_pretty(CLI_CONFIG, data))
    output.append("")

    # VMs
    output.append(f"{ansii['purple']}VMs:{ansii['end']}")
    if not sections.get("vms", False):
        output.append("  VM configuration unavailable")
    elif not data.get("vms"):
        output.append("  None")
    else:
        vm_rows = list()
        vm_colours = list()
        for vm in data["vms"]:
            vm_id = vm.get("id")
            vm_rows.append(
                [
                    vm["name"],
                    vm_id if vm_id is not None else "offline",
                    vm.get("state", "unknown"),
                    ", ".join(vm["mdev_uuids"]) or "-",
                ]
            )
            vm_colours.append(_vm_state_colour(vm.get("state")))
        output.append(
            format_table(["Name", "ID", "State", "vGPUs"], vm_rows, vm_colours)
        )
    if data.get("unread_vms"):
        output.append(f"  Unreadable: {', '.join(data['unread_vms'])}")

    if data.get("warnings"):
        output.append("")
        output.append(f"{ansii['purple']}Warnings:{ansii['end']}")
        output.extend(_format_warnings(data["warnings"]))

    return "\n".join(output)


def cli_gpu_list_format_pretty(CLI_CONFIG, data):
    """
    Pretty format the output of cli_gpu_list
    """

    if not data:
        return "No NVIDIA GPUs found."

    rows = list()
    for gpu in data:
        rows.append([gpu["bdf"], "PF", gpu["name"], ""])
        for vf in gpu.get("virtual_functions", []):
            rows.append([vf["bdf"], "VF", vf["name"], vf["parent"]])

    return format_table(["BDF", "Kind", "Name", "Parent"], rows)


def cli_profile_list_format_pretty(CLI_CONFIG, data):
    """
    Pretty format the output of cli_profile_list
    """

    if not data.get("profiles"):
        return f"No vGPU profiles found on {data.get('bdf')}."

    rows = list()
    colours = list()
    for profile in data["profiles"]:
        rows.append(
            [
                profile["type"],
                profile["name"],
                profile["available_instances"],
                profile["device_api"],
                profile["description"],
            ]
        )
        colours.append(ansii["green"] if profile["available_instances"] > 0 else "")

    output = [
        format_table(
            ["Type", "Name", "Available", "API", "Description"], rows, colours
        )
    ]
    if data.get("warnings"):
        output.append("")
        output.extend(_format_warnings(data["warnings"]))

    return "\n".join(output)


def cli_vgpu_list_format_pretty(CLI_CONFIG, data):
    """
    Pretty format the output of cli_vgpu_list
    """

    if not data.get("instances"):
        return "No vGPU instances found."

    rows = list()
    colours = list()
    for instance in data["instances"]:
        owner = instance["owner"]
        if owner == OWNER_AMBIGUOUS:
            owner = f"{owner} ({', '.join(instance['owner_candidates'])})"
        elif instance.get("owner_state"):
            owner = f"{owner} ({instance['owner_state']})"
        rows.append([instance["uuid"], instance["parent"], instance["profile"], owner])
        colours.append(_owner_colour(instance["owner"]))

    return format_table(["UUID", "Parent", "Profile", "Owner"], rows, colours)


def cli_check_format_pretty(CLI_CONFIG, data):
    """
    Pretty format the output of cli_check
    """

    status_strings = {
        "pass": f"{ansii['green']}PASS:{ansii['end']}",
        "warn": f"{ansii['yellow']}WARN:{ansii['end']}",
        "fail": f"{ansii['red']}FAIL:{ansii['end']}",
        "info": f"{ansii['blue']}INFO:{ansii['end']}",
    }

    output = list()
    last_section = None
    for result in data.get("results", []):
        if result["section"] != last_section:
            if last_section is not None:
                output.append("")
            output.append(f"{ansii['purple']}--- {result['section']} ---{ansii['end']}")
            last_section = result["section"]
        output.append(f"{status_strings[result['status']]} {result['message']}")
        if result.get("hint"):
            # Keep hints within the terminal
            hint = result["hint"][: MAX_CONTENT_WIDTH - 8]
            output.append(f"      {hint}")

    summary = data.get("summary", {})
    output.append("")
    output.append(
        "{bold}Summary:{end} {green}{passed} passed{end}, {yellow}{warned} warnings{end}, {red}{failed} failed{end}".format(
            bold=ansii["bold"],
            green=ansii["green"],
            yellow=ansii["yellow"],
            red=ansii["red"],
            end=ansii["end"],
            passed=summary.get("pass", 0),
            warned=summary.get("warn", 0),
            failed=summary.get("fail", 0),
        )
    )

    return "\n".join(output)


def cli_status_format_detailed(CLI_CONFIG, data):
    """
    Pretty format the full output of cli_status with all details
    """

    return cli_status_format_pretty(CLI_CONFIG, data, detailed=True)
