#!/usr/bin/env python3

# common.py - kvgpu function library, common functions and exceptions
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
import subprocess
import uuid

from re import match as re_match
from shlex import split as shlex_split
from shutil import which


###############################################################################
# Global Variables
###############################################################################


# Placeholder values used when a sysfs attribute cannot be read
UNKNOWN = "Unknown"

# Owner placeholders used in reports
OWNER_UNASSIGNED = "unassigned"
OWNER_UNKNOWN = "unknown"
OWNER_AMBIGUOUS = "ambiguous"

# A full PCI address, e.g. 0000:0a:00.4
BDF_REGEX = r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{2}):([0-9a-fA-F]{2})\.([0-9a-fA-F])$"


###############################################################################
# Exceptions
###############################################################################


class KvgpuError(Exception):
    """
    Base class for all kvgpu errors; carries a printable message
    """

    def __init__(self, message=None):
        self.msg = message

    def __str__(self):
        return str(self.msg)


class ToolUnavailable(KvgpuError):
    """
    A required external tool or pseudo-filesystem path is missing entirely
    """

    def __init__(self, tool, detail=None):
        self.tool = tool
        self.detail = detail
        if detail:
            message = f"{tool} is not available: {detail}"
        else:
            message = f"{tool} is not available"
        super().__init__(message)


class MalformedAttribute(KvgpuError):
    """
    A sysfs attribute exists but could not be parsed; a default was substituted
    """

    def __init__(self, path, value, default):
        self.path = path
        self.value = value
        self.default = default
        super().__init__(
            f'Attribute "{path}" has unparseable value "{value}"; using "{default}"'
        )


class AmbiguousOwnership(KvgpuError):
    """
    More than one VM configuration references the same mediated device UUID
    """

    def __init__(self, uuid, vms):
        self.uuid = uuid
        self.vms = sorted(vms)
        super().__init__(
            "Mediated device {} is referenced by multiple VMs: {}".format(
                uuid, ", ".join(self.vms)
            )
        )


class PartialScanTimeout(KvgpuError):
    """
    A scan section exceeded its soft timeout and was marked unavailable
    """

    def __init__(self, section, timeout):
        self.section = section
        self.timeout = timeout
        super().__init__(
            f'Section "{section}" did not complete within {timeout}s and is unavailable'
        )


class OrphanReference(KvgpuError):
    """
    A VM configuration references a mediated device that does not exist on the host
    """

    def __init__(self, uuid, vms):
        self.uuid = uuid
        self.vms = sorted(vms)
        super().__init__(
            "VM(s) {} reference mediated device {} which does not exist; they will fail to start".format(
                ", ".join(self.vms), uuid
            )
        )


class VmUnreadable(KvgpuError):
    """
    A VM configuration could not be read; it may reference any mediated device
    """

    def __init__(self, vm_name, reason):
        self.vm = vm_name
        self.reason = reason
        super().__init__(f'Could not read configuration of VM "{vm_name}": {reason}')


class CreateError(KvgpuError):
    """
    Base class for errors returned by mediated device creation and removal
    """

    pass


class InvalidUUID(CreateError):
    def __init__(self, uuid):
        self.uuid = uuid
        super().__init__(f'"{uuid}" is not a valid UUID')


class DuplicateUUID(CreateError):
    def __init__(self, uuid):
        self.uuid = uuid
        super().__init__(f"A mediated device with UUID {uuid} already exists")


class FunctionNotFound(CreateError):
    def __init__(self, bdf):
        self.bdf = bdf
        super().__init__(f"PCI function {bdf} is not an NVIDIA GPU or VF on this host")


class ProfileNotFound(CreateError):
    def __init__(self, bdf, profile):
        self.bdf = bdf
        self.profile = profile
        super().__init__(f'Profile "{profile}" is not supported by PCI function {bdf}')


class InstanceNotFound(CreateError):
    def __init__(self, uuid):
        self.uuid = uuid
        super().__init__(f"No mediated device with UUID {uuid} exists")


class InstanceInUse(CreateError):
    def __init__(self, uuid, vms):
        self.uuid = uuid
        self.vms = sorted(vms)
        super().__init__(
            "Mediated device {} is referenced by VM(s) {}; use force to remove it anyway".format(
                uuid, ", ".join(self.vms)
            )
        )


class OwnershipUnverified(CreateError):
    def __init__(self, uuid, vms):
        self.uuid = uuid
        self.vms = sorted(vms)
        super().__init__(
            "Cannot verify mediated device {} is unused; VM(s) {} could not be read; "
            "use force to remove it anyway".format(uuid, ", ".join(self.vms))
        )


class DriverRejected(CreateError):
    """
    The kernel driver refused a control file write; the OS error is kept verbatim
    """

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Driver rejected the request: {reason}")


###############################################################################
# Supplemental functions
###############################################################################


#
# Run a local OS command
#
def run_os_command(command_string, environment=None, timeout=None):
    if not isinstance(command_string, list):
        command = shlex_split(command_string)
    else:
        command = command_string

    try:
        command_output = subprocess.run(
            command,
            env=environment,
            timeout=timeout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        retcode = command_output.returncode
    except subprocess.TimeoutExpired:
        retcode = 128
    except FileNotFoundError:
        retcode = 127
    except Exception:
        retcode = 255

    try:
        stdout = command_output.stdout.decode("utf-8", errors="replace")
    except Exception:
        stdout = ""
    try:
        stderr = command_output.stderr.decode("utf-8", errors="replace")
    except Exception:
        stderr = ""
    return retcode, stdout, stderr


#
# Check whether a command is runnable
#
def is_tool_available(command):
    return which(command) is not None


#
# Validate a UUID
#
def validateUUID(dom_uuid):
    try:
        uuid.UUID(dom_uuid)
        return True
    except Exception:
        return False


def normalizeUUID(dom_uuid):
    """
    Return the canonical lowercase hyphenated form of any UUID spelling
    """
    return str(uuid.UUID(dom_uuid))


#
# Validate and split a PCI BDF address
#
def validateBDF(bdf):
    return re_match(BDF_REGEX, str(bdf)) is not None


def splitBDF(bdf):
    """
    Split a BDF into (domain, bus, slot, function), all lowercased strings
    """
    m = re_match(BDF_REGEX, str(bdf))
    if m is None:
        raise ValueError(f'"{bdf}" is not a valid PCI address')
    return tuple(g.lower() for g in m.groups())


#
# sysfs path helpers
#
def sysfs_path(config, *parts):
    return os.path.join(config["sysfs_root"], *parts)


def procfs_path(config, *parts):
    return os.path.join(config["procfs_root"], *parts)


#
# Read a small sysfs text attribute
#
def read_attribute(path, default=None):
    """
    Return the stripped contents of a sysfs attribute, or default if it cannot be read
    """
    try:
        with open(path, "r") as fh:
            return fh.read().strip()
    except (OSError, UnicodeDecodeError):
        return default


def read_int_attribute(path, default=0, warnings=None):
    """
    Return a sysfs attribute as an integer, substituting default if it is missing
    or unparseable; unparseable values are recorded as MalformedAttribute warnings
    """
    value = read_attribute(path)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        if warnings is not None:
            warnings.append(MalformedAttribute(path, value, default))
        return default


#
# Write a sysfs control file
#
def write_control_file(path, value):
    """
    Write value to a sysfs control file; OSError is propagated to the caller
    """
    with open(path, "w") as fh:
        fh.write(f"{value}\n")


#
# Format a warning for a report
#
def format_warning(error):
    return {
        "type": type(error).__name__,
        "message": str(error),
    }
