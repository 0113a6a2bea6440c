"""Shared test fixtures."""

import os
import sys
import time
from pathlib import Path

import pytest

# Add project root to path for package imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import kvgpu.lib.common as common  # noqa: E402
import kvgpu.lib.config as config  # noqa: E402


A6000_PF = "0000:0a:00.0"
A6000_VF = "0000:0a:00.4"
A6000_NAME = "GA102GL [RTX A6000]"
A6000_UUID = "11111111-2222-3333-4444-555555555555"

DOMAIN_XML = """<domain type='kvm'>
  <name>{name}</name>
  <devices>
    <disk type='file' device='disk'>
      <source file='/var/lib/libvirt/images/{name}.qcow2'/>
    </disk>
{hostdevs}
  </devices>
</domain>
"""

MDEV_HOSTDEV_XML = """    <hostdev mode='subsystem' type='mdev' managed='no' model='vfio-pci' display='off'>
      <source>
        <address uuid='{uuid}'/>
      </source>
    </hostdev>"""


class FakeHost:
    """
    A fake KVM vGPU host: a sysfs tree under tmp_path, plus canned lspci and virsh

    The command runner and sysfs control file writer are replaced so that
    writing to a create or remove file behaves like the NVIDIA driver.
    """

    def __init__(self, root):
        self.root = Path(root)
        self.sysfs = self.root / "sys"
        self.procfs = self.root / "proc"
        self.grub_defaults = self.root / "etc" / "default" / "grub"
        self.devices = self.sysfs / "devices" / "pci0000:00"

        self.pci_functions = list()
        self.vms = dict()
        self.vm_states = dict()
        self.tools_available = {"lspci", "virsh"}
        self.command_results = dict()
        self.commands_run = list()
        self.dumpxml_delay = 0
        self.reject_reason = None
        self.nvidia_smi_output = ""

        self.devices.mkdir(parents=True)
        (self.sysfs / "bus" / "pci" / "devices").mkdir(parents=True)
        self.procfs.mkdir(parents=True)

    #
    # sysfs builders
    #
    def add_pci_function(self, bdf, class_name, vendor, device):
        self.pci_functions.append((bdf, class_name, vendor, device))
        (self.devices / bdf).mkdir(exist_ok=True)
        link = self.sysfs / "bus" / "pci" / "devices" / bdf
        if not os.path.lexists(link):
            os.symlink(f"../../../devices/pci0000:00/{bdf}", link)

    def add_gpu(self, bdf=A6000_PF, device=A6000_NAME, vfs=None):
        self.add_pci_function(
            bdf, "VGA compatible controller", "NVIDIA Corporation", device
        )
        prefix = bdf.rsplit(".", 1)[0]
        for function in vfs or list():
            self.add_pci_function(
                f"{prefix}.{function}", "3D controller", "NVIDIA Corporation", device
            )

    def add_profile(
        self,
        bdf,
        type_id,
        name="NVIDIA RTXA6000-12Q",
        description="num_heads=4, frl_config=60, framebuffer=12288M",
        available_instances="1",
        device_api="vfio-pci",
    ):
        profile_path = self.devices / bdf / "mdev_supported_types" / type_id
        profile_path.mkdir(parents=True)
        attributes = {
            "name": name,
            "description": description,
            "available_instances": available_instances,
            "device_api": device_api,
        }
        for attribute, value in attributes.items():
            if value is not None:
                (profile_path / attribute).write_text(f"{value}\n")
        (profile_path / "create").write_text("")
        return profile_path

    def enable_mdev_bus(self):
        (self.sysfs / "bus" / "mdev" / "devices").mkdir(parents=True, exist_ok=True)

    def add_instance(self, bdf, type_id, mdev_uuid):
        self.enable_mdev_bus()
        instance_path = self.devices / bdf / mdev_uuid
        instance_path.mkdir()
        os.symlink(f"../mdev_supported_types/{type_id}", instance_path / "mdev_type")
        (instance_path / "remove").write_text("")
        os.symlink(
            f"../../../devices/pci0000:00/{bdf}/{mdev_uuid}",
            self.sysfs / "bus" / "mdev" / "devices" / mdev_uuid,
        )

    def remove_instance(self, mdev_uuid):
        link = self.sysfs / "bus" / "mdev" / "devices" / mdev_uuid
        instance_path = Path(os.path.realpath(link))
        os.unlink(link)
        os.unlink(instance_path / "mdev_type")
        os.unlink(instance_path / "remove")
        instance_path.rmdir()

    def add_iommu_group(self, group, bdfs):
        group_path = self.sysfs / "kernel" / "iommu_groups" / str(group) / "devices"
        group_path.mkdir(parents=True)
        for bdf in bdfs:
            os.symlink(f"../../../../devices/pci0000:00/{bdf}", group_path / bdf)

    def add_vm(self, name, mdev_uuids=None, state="shut off"):
        self.vms[name] = list(mdev_uuids or list())
        self.vm_states[name] = state

    #
    # Fake tools
    #
    def lspci_output(self):
        records = list()
        for bdf, class_name, vendor, device in self.pci_functions:
            records.append(
                f"Slot:\t{bdf}\nClass:\t{class_name}\nVendor:\t{vendor}\nDevice:\t{device}\n"
            )
        return "\n".join(records)

    def virsh_list_output(self):
        width = max([len("Name")] + [len(name) for name in self.vms])
        lines = [f" {'Id':<4} {'Name':<{width}}   State", "-" * (width + 16)]
        next_id = 1
        for name in self.vms:
            state = self.vm_states[name]
            if state == "shut off":
                vm_id = "-"
            else:
                vm_id = str(next_id)
                next_id += 1
            lines.append(f" {vm_id:<4} {name:<{width}}   {state}")
        return "\n".join(lines) + "\n\n"

    def domain_xml(self, name):
        hostdevs = "\n".join(MDEV_HOSTDEV_XML.format(uuid=u) for u in self.vms[name])
        return DOMAIN_XML.format(name=name, hostdevs=hostdevs)

    def is_tool_available(self, command):
        return os.path.basename(command) in self.tools_available

    def run_os_command(self, command_string, environment=None, timeout=None):
        command = list(command_string)
        self.commands_run.append(command)

        tool = os.path.basename(command[0])
        key = tuple([tool] + command[1:])
        if key in self.command_results:
            return self.command_results[key]
        if tool not in self.tools_available:
            return 127, "", f"{tool}: command not found"

        if tool == "lspci":
            return 0, self.lspci_output(), ""

        if tool == "virsh":
            args = command[3:]
            if args == ["list", "--all", "--name"]:
                return 0, "\n".join(self.vms.keys()) + "\n\n", ""
            if args == ["list", "--all"]:
                return 0, self.virsh_list_output(), ""
            if args[:2] == ["dumpxml", "--inactive"]:
                if self.dumpxml_delay:
                    time.sleep(self.dumpxml_delay)
                name = args[2]
                if name not in self.vms:
                    return 1, "", f"error: failed to get domain '{name}'"
                return 0, self.domain_xml(name), ""

        if tool == "nvidia-smi" and any(a.startswith("--query-gpu") for a in command):
            return 0, self.nvidia_smi_output, ""

        return 0, "", ""

    def write_control_file(self, path, value):
        parts = Path(path).parts
        if parts[-1] == "create":
            # <bdf>/mdev_supported_types/<type>/create
            bdf, type_id = parts[-4], parts[-2]
            available_path = Path(path).parent / "available_instances"
            available = int(available_path.read_text().strip())
            if self.reject_reason is not None or available < 1:
                raise OSError(28, self.reject_reason or "No space left on device")
            self.add_instance(bdf, type_id, str(value))
            available_path.write_text(f"{available - 1}\n")
        elif parts[-1] == "remove":
            if self.reject_reason is not None:
                raise OSError(16, self.reject_reason)
            self.remove_instance(parts[-2])
        else:
            with open(path, "w") as fh:
                fh.write(f"{value}\n")


@pytest.fixture
def fake_host(tmp_path, monkeypatch):
    """A fake host with no devices, wired into the command runner."""
    host = FakeHost(tmp_path)
    monkeypatch.setattr(common, "run_os_command", host.run_os_command)
    monkeypatch.setattr(common, "is_tool_available", host.is_tool_available)
    monkeypatch.setattr(common, "write_control_file", host.write_control_file)
    return host


@pytest.fixture
def a6000_host(fake_host):
    """One RTX A6000 with VFs .4 and .5, an nvidia-530 profile on .4 and the mdev bus loaded."""
    fake_host.add_gpu(A6000_PF, vfs=["4", "5"])
    fake_host.add_profile(A6000_VF, "nvidia-530")
    fake_host.add_profile(
        A6000_VF,
        "nvidia-531",
        name="NVIDIA RTXA6000-24Q",
        description="num_heads=4, frl_config=60, framebuffer=24576M",
        available_instances="0",
    )
    fake_host.add_profile("0000:0a:00.5", "nvidia-530")
    fake_host.enable_mdev_bus()
    fake_host.add_iommu_group(30, [A6000_PF])
    fake_host.add_iommu_group(31, [A6000_VF])
    fake_host.add_iommu_group(2, ["0000:00:1f.0"])
    return fake_host


@pytest.fixture
def kvgpu_config(fake_host):
    """A configuration pointing at the fake host."""
    o_config = {
        "paths": {
            "sysfs_root": str(fake_host.sysfs),
            "procfs_root": str(fake_host.procfs),
            "grub_defaults": str(fake_host.grub_defaults),
        },
        "logging": {
            "console_logging": False,
        },
    }
    return config.parse_configuration(o_config)
