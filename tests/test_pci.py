"""Tests for GPU, SR-IOV VF and IOMMU inventory."""

import pytest

import kvgpu.lib.common as common
import kvgpu.lib.pci as pci
from tests.conftest import A6000_PF, A6000_VF


LSPCI_VMM = """Slot:\t0000:00:1f.0
Class:\tISA bridge
Vendor:\tIntel Corporation
Device:\tC620 Series Chipset Family LPC Controller

Slot:\t0000:0a:00.0
Class:\tVGA compatible controller
Vendor:\tNVIDIA Corporation
Device:\tGA102GL [RTX A6000]
SVendor:\tNVIDIA Corporation
Rev:\ta1

Slot:\t0000:0a:00.1
Class:\tAudio device
Vendor:\tNVIDIA Corporation
Device:\tGA102 High Definition Audio Controller

Slot:\t0000:0a:00.4
Class:\t3D controller
Vendor:\tNVIDIA Corporation
Device:\tGA102GL [RTX A6000]

Slot:\t0000:0b:00.4
Class:\t3D controller
Vendor:\tNVIDIA Corporation
Device:\tGA102GL [RTX A6000]
"""


class TestParseLspci:
    """Tests for parsing lspci machine-readable output."""

    def test_parses_all_records(self):
        """Every record with a slot becomes a function."""
        functions = pci.parse_lspci_vmm(LSPCI_VMM)

        assert [f.bdf for f in functions] == [
            "0000:00:1f.0",
            A6000_PF,
            "0000:0a:00.1",
            A6000_VF,
            "0000:0b:00.4",
        ]
        assert functions[1].class_name == "VGA compatible controller"
        assert functions[1].name == "NVIDIA Corporation GA102GL [RTX A6000]"

    def test_adds_missing_domain(self):
        """Slots without a PCI domain are placed in domain 0000."""
        functions = pci.parse_lspci_vmm(
            "Slot:\t0a:00.0\nClass:\tVGA compatible controller\n"
        )

        assert functions[0].bdf == A6000_PF

    def test_skips_malformed_slots(self):
        """Records without a valid slot are ignored."""
        functions = pci.parse_lspci_vmm(
            "Slot:\tbogus\n\nClass:\tVGA compatible controller\n"
        )

        assert functions == []


class TestInventory:
    """Tests for physical and virtual function discovery."""

    def test_physical_functions_are_nvidia_vga_only(self):
        """Only NVIDIA VGA functions are physical GPUs."""
        functions = pci.parse_lspci_vmm(LSPCI_VMM)

        pf_list = pci.list_physical_functions(None, functions)

        assert [pf.bdf for pf in pf_list] == [A6000_PF]

    def test_virtual_functions_share_prefix_with_nonzero_function(self):
        """VFs share the PF's bus/device prefix and never use function 0."""
        functions = pci.parse_lspci_vmm(LSPCI_VMM)
        pf = pci.list_physical_functions(None, functions)[0]

        vf_list = pci.list_virtual_functions(None, pf, functions)

        assert [vf.bdf for vf in vf_list] == ["0000:0a:00.1", A6000_VF]
        for vf in vf_list:
            assert vf.bdf.startswith("0000:0a:00.")
            assert not vf.bdf.endswith(".0")
            assert vf.parent == A6000_PF

    def test_inventory_from_lspci(self, fake_host, kvgpu_config):
        """The inventory runs lspci in machine-readable mode."""
        fake_host.add_gpu(A6000_PF, vfs=["4", "5", "a"])

        gpus = pci.get_gpu_inventory(kvgpu_config)

        assert ["lspci", "-D", "-vmm"] in fake_host.commands_run
        assert len(gpus) == 1
        assert [vf.bdf for vf in gpus[0].virtual_functions] == [
            A6000_VF,
            "0000:0a:00.5",
            "0000:0a:00.a",
        ]
        assert gpus[0].to_dict()["virtual_functions"][0]["parent"] == A6000_PF

    def test_no_gpus_is_empty_not_error(self, fake_host, kvgpu_config):
        """A host without NVIDIA GPUs has an empty inventory."""
        fake_host.add_pci_function(
            "0000:00:1f.0", "ISA bridge", "Intel Corporation", "LPC"
        )

        assert pci.list_physical_functions(kvgpu_config) == []

    def test_missing_lspci_raises(self, fake_host, kvgpu_config):
        """A missing lspci is reported, not treated as "no GPUs"."""
        fake_host.tools_available.discard("lspci")

        with pytest.raises(common.ToolUnavailable) as excinfo:
            pci.list_physical_functions(kvgpu_config)

        assert excinfo.value.tool == "lspci"

    def test_failing_lspci_raises(self, fake_host, kvgpu_config):
        """A failing lspci carries its error output."""
        fake_host.command_results[("lspci", "-D", "-vmm")] = (
            1,
            "",
            "pcilib: Cannot open /proc/bus/pci",
        )

        with pytest.raises(common.ToolUnavailable) as excinfo:
            pci.get_pci_functions(kvgpu_config)

        assert "Cannot open" in str(excinfo.value)

    def test_find_function(self, fake_host, kvgpu_config):
        """Functions are found by BDF regardless of case."""
        fake_host.add_gpu(A6000_PF, vfs=["4"])

        assert pci.find_function(kvgpu_config, A6000_PF).bdf == A6000_PF
        assert pci.find_function(kvgpu_config, "0000:0A:00.4").bdf == A6000_VF
        assert pci.find_function(kvgpu_config, "0000:0b:00.0") is None


class TestIommu:
    """Tests for IOMMU group inventory."""

    def test_groups(self, a6000_host, kvgpu_config):
        """Groups map to their member functions."""
        groups = pci.list_iommu_groups(kvgpu_config)

        assert groups == {"2": ["0000:00:1f.0"], "30": [A6000_PF], "31": [A6000_VF]}

    def test_disabled(self, fake_host, kvgpu_config):
        """No iommu_groups directory means the IOMMU is disabled."""
        assert pci.list_iommu_groups(kvgpu_config) is None

    def test_empty_directory_is_disabled(self, fake_host, kvgpu_config):
        """An empty iommu_groups directory also means disabled."""
        (fake_host.sysfs / "kernel" / "iommu_groups").mkdir(parents=True)

        assert pci.list_iommu_groups(kvgpu_config) is None


class TestEnableVirtualFunctions:
    """Tests for SR-IOV VF enablement."""

    def test_enable(self, fake_host, kvgpu_config):
        """sriov-manage is called with the GPU address."""
        fake_host.tools_available.add("sriov-manage")

        success, message = pci.enable_virtual_functions(kvgpu_config, A6000_PF)

        assert success
        assert [
            "/usr/lib/nvidia/sriov-manage",
            "-e",
            A6000_PF,
        ] in fake_host.commands_run

    def test_invalid_bdf(self, fake_host, kvgpu_config):
        """An invalid address is refused without running anything."""
        success, message = pci.enable_virtual_functions(kvgpu_config, "0a:00")

        assert not success
        assert message.startswith("ERROR:")
        assert fake_host.commands_run == []

    def test_missing_helper(self, fake_host, kvgpu_config):
        """A missing sriov-manage is reported."""
        success, message = pci.enable_virtual_functions(kvgpu_config, A6000_PF)

        assert not success
        assert "sriov-manage" in message

    def test_helper_failure(self, fake_host, kvgpu_config):
        """The helper's error output is passed on."""
        fake_host.tools_available.add("sriov-manage")
        fake_host.command_results[("sriov-manage", "-e", A6000_PF)] = (
            1,
            "",
            "Cannot enable VFs: GPU is in use",
        )

        success, message = pci.enable_virtual_functions(kvgpu_config, A6000_PF)

        assert not success
        assert "GPU is in use" in message
