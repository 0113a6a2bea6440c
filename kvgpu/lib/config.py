#!/usr/bin/env python3

# config.py - Utility functions for kvgpu configuration parsing
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
import yaml

from socket import gethostname


DEFAULT_CONFIG_FILE = "/etc/kvgpu/kvgpu.yaml"

# Built-in defaults; a configuration file only needs to override what differs
DEFAULT_CONFIG = {
    "paths": {
        "sysfs_root": "/sys",
        "procfs_root": "/proc",
        "grub_defaults": "/etc/default/grub",
    },
    "commands": {
        "lspci": "lspci",
        "virsh": "virsh",
        "sriov_manage": "/usr/lib/nvidia/sriov-manage",
        "nvidia_smi": "nvidia-smi",
        "systemctl": "systemctl",
    },
    "libvirt": {
        "uri": "qemu:///system",
        "timeout": 10,
        "scan_timeout": 30,
        "workers": 8,
    },
    "logging": {
        "console_logging": True,
        "file_logging": False,
        "log_directory": "/var/log/kvgpu",
        "log_colours": True,
        "log_dates": False,
        "debug": False,
    },
}


class MalformedConfigurationError(Exception):
    """
    An exception when parsing the kvgpu configuration file
    """

    def __init__(self, error=None):
        self.msg = f"ERROR: Configuration file is malformed: {error}"

    def __str__(self):
        return str(self.msg)


def get_configuration_path():
    """
    Return the configuration file to use, or None to use the built-in defaults
    """
    config_file = os.environ.get("KVGPU_CONFIG_FILE", None)
    if config_file:
        if not os.path.exists(config_file):
            raise MalformedConfigurationError(
                f'KVGPU_CONFIG_FILE "{config_file}" does not exist'
            )
        return config_file

    if os.path.exists(DEFAULT_CONFIG_FILE):
        return DEFAULT_CONFIG_FILE

    return None


def get_hostname():
    node_fqdn = gethostname()
    node_hostname = node_fqdn.split(".", 1)[0]
    return node_fqdn, node_hostname


def _merge_section(name, overrides):
    defaults = DEFAULT_CONFIG[name]
    if overrides is None:
        return dict(defaults)
    if not isinstance(overrides, dict):
        raise MalformedConfigurationError(f'section "{name}" must be a mapping')

    merged = dict(defaults)
    for key, value in overrides.items():
        if key not in defaults:
            raise MalformedConfigurationError(f'unknown key "{name}.{key}"')
        # Keep the type of the default so later code can rely on it
        expected_type = type(defaults[key])
        if expected_type is bool:
            if not isinstance(value, bool):
                raise MalformedConfigurationError(
                    f'"{name}.{key}" must be true or false, not "{value}"'
                )
        elif expected_type is int:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise MalformedConfigurationError(
                    f'"{name}.{key}" must be a positive integer, not "{value}"'
                )
        else:
            if not isinstance(value, str) or not value:
                raise MalformedConfigurationError(
                    f'"{name}.{key}" must be a non-empty string'
                )
        merged[key] = value
    return merged


def parse_configuration(o_config):
    """
    Flatten a parsed YAML document into the configuration dictionary
    """
    if o_config is None:
        o_config = dict()
    if not isinstance(o_config, dict):
        raise MalformedConfigurationError("top level must be a mapping")

    # Allow the whole document to live under a "kvgpu" key
    if "kvgpu" in o_config:
        o_config = o_config["kvgpu"]
        if not isinstance(o_config, dict):
            raise MalformedConfigurationError('"kvgpu" must be a mapping')

    for section in o_config.keys():
        if section not in DEFAULT_CONFIG:
            raise MalformedConfigurationError(f'unknown section "{section}"')

    o_paths = _merge_section("paths", o_config.get("paths"))
    o_commands = _merge_section("commands", o_config.get("commands"))
    o_libvirt = _merge_section("libvirt", o_config.get("libvirt"))
    o_logging = _merge_section("logging", o_config.get("logging"))

    node_fqdn, node_hostname = get_hostname()

    config = {
        "node": node_hostname,
        "node_fqdn": node_fqdn,
        "sysfs_root": o_paths["sysfs_root"],
        "procfs_root": o_paths["procfs_root"],
        "grub_defaults": o_paths["grub_defaults"],
        "lspci_command": o_commands["lspci"],
        "virsh_command": o_commands["virsh"],
        "sriov_manage_command": o_commands["sriov_manage"],
        "nvidia_smi_command": o_commands["nvidia_smi"],
        "systemctl_command": o_commands["systemctl"],
        "libvirt_uri": o_libvirt["uri"],
        "libvirt_timeout": o_libvirt["timeout"],
        "scan_timeout": o_libvirt["scan_timeout"],
        "libvirt_workers": o_libvirt["workers"],
        "console_logging": o_logging["console_logging"],
        "file_logging": o_logging["file_logging"],
        "log_directory": o_logging["log_directory"],
        "log_colours": o_logging["log_colours"],
        "log_dates": o_logging["log_dates"],
        "debug": o_logging["debug"],
    }

    return config


def get_configuration(config_file=None):
    """
    Load the configuration from config_file (or the default locations) and return it
    """
    if config_file is None:
        config_file = get_configuration_path()

    if config_file is None:
        return parse_configuration(dict())

    with open(config_file, "r") as cfgfh:
        try:
            o_config = yaml.load(cfgfh, Loader=yaml.SafeLoader)
        except yaml.YAMLError as e:
            raise MalformedConfigurationError(e)

    return parse_configuration(o_config)
