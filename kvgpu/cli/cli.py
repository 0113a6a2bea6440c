#!/usr/bin/env python3

# cli.py - kvgpu Click CLI main library
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

from colorama import Fore
from functools import wraps
from json import dumps as jdumps

from kvgpu.cli.helpers import *
from kvgpu.cli.waiters import *
from kvgpu.cli.formatters import *

import kvgpu.lib.checks
import kvgpu.lib.config
import kvgpu.lib.host
import kvgpu.lib.log
import kvgpu.lib.pci

import click


###############################################################################
# Context handler, globals
###############################################################################


CONTEXT_SETTINGS = dict(
    help_option_names=["-h", "--help"], max_content_width=MAX_CONTENT_WIDTH
)

CLI_CONFIG = dict()
LOGGER = kvgpu.lib.log.NullLogger()


###############################################################################
# Local helper functions
###############################################################################


def format_data(data, formatter):
    if formatter.__name__ == "<lambda>":
        # We don't pass CLI_CONFIG into lambdas
        return formatter(data)
    else:
        return formatter(CLI_CONFIG, data)


def finish(success=True, data=None, formatter=None):
    """
    Output data to the terminal and exit based on code (T/F or integer code)
    """

    if data is not None:
        if formatter is not None and success:
            echo(CLI_CONFIG, format_data(data, formatter))
        else:
            echo(CLI_CONFIG, data)

    # Allow passing raw values if not a bool
    if isinstance(success, bool):
        if success:
            exit(0)
        else:
            exit(1)
    else:
        exit(success)


def version(ctx, param, value):
    """
    Show the version of the CLI client
    """

    if not value or ctx.resilient_parsing:
        return

    echo(CLI_CONFIG, f"kvgpu KVM vGPU host management tool version {VERSION}")
    ctx.exit()


###############################################################################
# Click command decorators
###############################################################################


def confirm_opt(message):
    """
    Click Option Decorator with argument:
    Wraps a Click command which requires confirm_flag or unsafe option or asks for confirmation with message;
    {message} may reference the command's arguments by name, e.g. "Remove {mdev_uuid}"
    """

    def confirm_decorator(function):
        @click.option(
            "-y",
            "--yes",
            "confirm_flag",
            is_flag=True,
            default=False,
            help="Pre-confirm any unsafe operations.",
        )
        @wraps(function)
        def confirm_action(*args, **kwargs):
            if kwargs.get("confirm_flag", False) or CLI_CONFIG.get("unsafe", False):
                confirm_action = False
            else:
                confirm_action = True

            if confirm_action:
                try:
                    click.confirm(
                        message.format(**kwargs), prompt_suffix="? ", abort=True
                    )
                except click.exceptions.Abort:
                    echo(CLI_CONFIG, "Aborted.")
                    exit(0)

                echo(CLI_CONFIG, "")

            del kwargs["confirm_flag"]

            return function(*args, **kwargs)

        return confirm_action

    return confirm_decorator


def format_opt(formats, default_format="pretty"):
    """
    Click Option Decorator with argument:
    Wraps a Click command that can output in multiple formats; {formats} defines a dictionary of
    formatting functions for the command with keys as valid format types.
    e.g. { "json": lambda d: json.dumps(d), "pretty": format_function_pretty, ... }
    Injects a "format_function" argument into the function for this purpose.
    """

    if default_format not in formats.keys():
        echo(CLI_CONFIG, f"Fatal code error: {default_format} not in {formats.keys()}")
        exit(255)

    def format_decorator(function):
        @click.option(
            "-f",
            "--format",
            "output_format",
            default=default_format,
            show_default=True,
            type=click.Choice(list(formats.keys())),
            help="Output information in this format.",
        )
        @wraps(function)
        def format_action(*args, **kwargs):
            kwargs["format_function"] = formats[kwargs["output_format"]]

            del kwargs["output_format"]

            return function(*args, **kwargs)

        return format_action

    return format_decorator


###############################################################################
# Click command definitions
###############################################################################


###############################################################################
# > kvgpu status
###############################################################################
@click.command(
    name="status",
    short_help="Show host GPU, vGPU and VM status.",
)
@click.option(
    "-d",
    "--detailed",
    "detailed_flag",
    is_flag=True,
    default=False,
    help="Show virtual functions, exhausted profiles and IOMMU groups.",
)
@click.option(
    "-w",
    "--watch",
    "watch_flag",
    is_flag=True,
    default=False,
    help="Continuously refresh the status until interrupted.",
)
@click.option(
    "-r",
    "--refresh",
    "refresh",
    type=click.IntRange(min=1),
    default=5,
    show_default=True,
    help="Seconds between refreshes in watch mode.",
)
@format_opt(
    {
        "pretty": cli_status_format_pretty,
        "json": lambda d: jdumps(d),
        "json-pretty": lambda d: jdumps(d, indent=2),
    }
)
def cli_status(
    detailed_flag,
    watch_flag,
    refresh,
    format_function,
):
    """
    Show the GPUs, vGPU profiles and instances, and VM ownership of this host.

    Sections that cannot be read (for example when virsh is missing) are marked unavailable
    and explained in the warnings; the rest of the report is still shown.

    \b
    Format options:
        "pretty": Output all details in a nice colourful format.
        "json": Output in unformatted JSON.
        "json-pretty": Output in formatted JSON.
    """

    if detailed_flag and format_function is cli_status_format_pretty:
        format_function = cli_status_format_detailed

    if watch_flag:
        retcode = status_watcher(
            CLI_CONFIG,
            lambda: kvgpu.lib.host.get_status(CLI_CONFIG, LOGGER),
            format_function,
            refresh=refresh,
        )
        finish(retcode)

    retcode, retdata = kvgpu.lib.host.get_status(CLI_CONFIG, LOGGER)
    finish(retcode, retdata, format_function)


###############################################################################
# > kvgpu gpu
###############################################################################
@click.group(
    name="gpu",
    short_help="Manage NVIDIA GPUs and their SR-IOV functions.",
    context_settings=CONTEXT_SETTINGS,
)
def cli_gpu():
    """
    Manage NVIDIA physical GPUs and their SR-IOV virtual functions.
    """
    pass


###############################################################################
# > kvgpu gpu list
###############################################################################
@click.command(
    name="list",
    short_help="List NVIDIA GPUs.",
)
@format_opt(
    {
        "pretty": cli_gpu_list_format_pretty,
        "json": lambda d: jdumps(d),
        "json-pretty": lambda d: jdumps(d, indent=2),
    }
)
def cli_gpu_list(
    format_function,
):
    """
    List the NVIDIA physical GPUs of this host and their SR-IOV virtual functions.
    """

    retcode, retdata = kvgpu.lib.host.get_gpu_list(CLI_CONFIG)
    finish(retcode, retdata, format_function)


###############################################################################
# > kvgpu gpu enable-vfs
###############################################################################
@click.command(
    name="enable-vfs",
    short_help="Enable SR-IOV virtual functions on a GPU.",
)
@click.argument("bdf")
@confirm_opt("Enable SR-IOV virtual functions on GPU {bdf}")
def cli_gpu_enable_vfs(
    bdf,
):
    """
    Enable the SR-IOV virtual functions of the NVIDIA GPU at PCI address BDF with the NVIDIA
    sriov-manage helper. This must be done after every boot before vGPU instances can be created
    on the virtual functions.
    """

    retcode, retmsg = kvgpu.lib.pci.enable_virtual_functions(CLI_CONFIG, bdf, LOGGER)
    finish(retcode, retmsg)


###############################################################################
# > kvgpu profile
###############################################################################
@click.group(
    name="profile",
    short_help="Show vGPU profiles.",
    context_settings=CONTEXT_SETTINGS,
)
def cli_profile():
    """
    Show the vGPU (mediated device) profiles offered by PCI functions.
    """
    pass


###############################################################################
# > kvgpu profile list
###############################################################################
@click.command(
    name="list",
    short_help="List vGPU profiles of a PCI function.",
)
@click.argument("bdf")
@format_opt(
    {
        "pretty": cli_profile_list_format_pretty,
        "json": lambda d: jdumps(d),
        "json-pretty": lambda d: jdumps(d, indent=2),
    }
)
def cli_profile_list(
    bdf,
    format_function,
):
    """
    List the vGPU profiles supported by the physical or virtual function at PCI address BDF,
    with the number of instances of each that can still be created.
    """

    retcode, retdata = kvgpu.lib.host.get_profile_list(CLI_CONFIG, bdf)
    finish(retcode, retdata, format_function)


###############################################################################
# > kvgpu vgpu
###############################################################################
@click.group(
    name="vgpu",
    short_help="Manage vGPU instances.",
    context_settings=CONTEXT_SETTINGS,
)
def cli_vgpu():
    """
    Manage vGPU (mediated device) instances.
    """
    pass


###############################################################################
# > kvgpu vgpu list
###############################################################################
@click.command(
    name="list",
    short_help="List vGPU instances.",
)
@format_opt(
    {
        "pretty": cli_vgpu_list_format_pretty,
        "json": lambda d: jdumps(d),
        "json-pretty": lambda d: jdumps(d, indent=2),
    }
)
def cli_vgpu_list(
    format_function,
):
    """
    List the vGPU instances of this host with their profile, parent function and owning VM.
    """

    retcode, retdata = kvgpu.lib.host.get_vgpu_list(CLI_CONFIG, LOGGER)
    finish(retcode, retdata, format_function)


###############################################################################
# > kvgpu vgpu create
###############################################################################
@click.command(
    name="create",
    short_help="Create a vGPU instance.",
)
@click.argument("bdf")
@click.argument("profile")
@click.option(
    "-i",
    "--uuid",
    "mdev_uuid",
    default=None,
    help="UUID of the new instance; generated if not specified.",
)
def cli_vgpu_create(
    bdf,
    profile,
    mdev_uuid,
):
    """
    Create a vGPU instance of type PROFILE (e.g. "nvidia-530") on the PCI function at BDF.

    Use "kvgpu profile list BDF" to show the profiles of a function and how many instances of each
    are still available.
    """

    retcode, retdata = kvgpu.lib.host.vgpu_create(
        CLI_CONFIG, bdf, profile, mdev_uuid, LOGGER
    )
    if not retcode:
        finish(retcode, retdata)

    for warning in retdata["warnings"]:
        echo(CLI_CONFIG, f"{Fore.YELLOW}Warning:{Fore.RESET} {warning}", stderr=True)

    finish(
        retcode,
        f'Created vGPU instance "{retdata["uuid"]}" of profile {retdata["profile"]} on {retdata["parent"]}.',
    )


###############################################################################
# > kvgpu vgpu remove
###############################################################################
@click.command(
    name="remove",
    short_help="Remove a vGPU instance.",
)
@click.argument("mdev_uuid", metavar="UUID")
@click.option(
    "--force",
    "force_flag",
    is_flag=True,
    default=False,
    help="Remove even if a VM configuration references the instance.",
)
@confirm_opt("Remove vGPU instance {mdev_uuid}")
def cli_vgpu_remove(
    mdev_uuid,
    force_flag,
):
    """
    Remove the vGPU instance UUID.

    An instance referenced by a VM configuration is not removed unless "--force" is given; that
    VM will fail to start until its configuration is updated.
    """

    retcode, retmsg = kvgpu.lib.host.vgpu_remove(
        CLI_CONFIG, mdev_uuid, force_flag, LOGGER
    )
    finish(retcode, retmsg)


###############################################################################
# > kvgpu vgpu owner
###############################################################################
@click.command(
    name="owner",
    short_help="Show the VM owning a vGPU instance.",
)
@click.argument("mdev_uuid", metavar="UUID")
def cli_vgpu_owner(
    mdev_uuid,
):
    """
    Show the VM whose configuration references the vGPU instance UUID.
    """

    retcode, retmsg = kvgpu.lib.host.vgpu_owner(CLI_CONFIG, mdev_uuid, LOGGER)
    finish(retcode, retmsg)


###############################################################################
# > kvgpu check
###############################################################################
@click.command(
    name="check",
    short_help="Check host prerequisites for vGPU.",
)
@format_opt(
    {
        "pretty": cli_check_format_pretty,
        "json": lambda d: jdumps(d),
        "json-pretty": lambda d: jdumps(d, indent=2),
    }
)
def cli_check(
    format_function,
):
    """
    Check the host prerequisites for running VMs with NVIDIA vGPU: CPU virtualization, IOMMU,
    kernel modules, GPUs and their virtual functions, the NVIDIA driver, memory and libvirt.

    Exits with code 1 if any check failed.
    """

    retcode, retdata = kvgpu.lib.checks.get_check_report(CLI_CONFIG, LOGGER)
    echo(CLI_CONFIG, format_data(retdata, format_function))
    finish(retdata["summary"]["fail"] == 0)


###############################################################################
# > kvgpu
###############################################################################
@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-v",
    "--debug",
    "_debug",
    envvar="KVGPU_DEBUG",
    is_flag=True,
    default=False,
    help="Additional debug details.",
)
@click.option(
    "-q",
    "--quiet",
    "_quiet",
    envvar="KVGPU_QUIET",
    is_flag=True,
    default=False,
    help="Suppress information sent to stderr.",
)
@click.option(
    "-s",
    "--silent",
    "_silent",
    envvar="KVGPU_SILENT",
    is_flag=True,
    default=False,
    help="Suppress information sent to stdout and stderr.",
)
@click.option(
    "-u",
    "--unsafe",
    "_unsafe",
    envvar="KVGPU_UNSAFE",
    is_flag=True,
    default=False,
    help='Perform unsafe operations without confirmation/"--yes" argument.',
)
@click.option(
    "--colour",
    "--color",
    "_colour",
    envvar="KVGPU_COLOUR",
    is_flag=True,
    default=False,
    help="Force colourized output.",
)
@click.option(
    "--version",
    is_flag=True,
    callback=version,
    expose_value=False,
    is_eager=True,
    help="Show CLI version and exit.",
)
@click.pass_context
def cli(
    ctx,
    _debug,
    _quiet,
    _silent,
    _unsafe,
    _colour,
):
    """
    kvgpu KVM vGPU host management tool

    Environment variables:

      "KVGPU_CONFIG_FILE": Read the configuration from this file instead of "/etc/kvgpu/kvgpu.yaml"

      "KVGPU_DEBUG": Enable additional debugging details instead of using --debug/-v

      "KVGPU_QUIET": Suppress stderr output from client instead of using --quiet/-q

      "KVGPU_SILENT": Suppress stdout and stderr output from client instead of using --silent/-s

      "KVGPU_UNSAFE": Always suppress confirmations instead of needing --unsafe/-u or --yes/-y; USE WITH EXTREME CARE

      "KVGPU_COLOUR": Force colour on the output even if Click determines it is not a console (e.g. with 'watch')

    If no configuration file is found, built-in defaults are used.
    """

    global CLI_CONFIG
    global LOGGER
    CLI_CONFIG = {"quiet": _quiet, "silent": _silent}

    try:
        config = kvgpu.lib.config.get_configuration()
    except kvgpu.lib.config.MalformedConfigurationError as e:
        echo(CLI_CONFIG, str(e), stderr=True)
        exit(1)

    CLI_CONFIG = get_logger_config(config, debug=_debug, quiet=_quiet or _silent)
    CLI_CONFIG["unsafe"] = _unsafe
    CLI_CONFIG["colour"] = _colour
    CLI_CONFIG["quiet"] = _quiet
    CLI_CONFIG["silent"] = _silent

    LOGGER = kvgpu.lib.log.Logger(CLI_CONFIG)
    ctx.call_on_close(LOGGER.terminate)


###############################################################################
# Click command tree
###############################################################################

cli_gpu.add_command(cli_gpu_list)
cli_gpu.add_command(cli_gpu_enable_vfs)
cli.add_command(cli_gpu)
cli_profile.add_command(cli_profile_list)
cli.add_command(cli_profile)
cli_vgpu.add_command(cli_vgpu_list)
cli_vgpu.add_command(cli_vgpu_create)
cli_vgpu.add_command(cli_vgpu_remove)
cli_vgpu.add_command(cli_vgpu_owner)
cli.add_command(cli_vgpu)
cli.add_command(cli_status)
cli.add_command(cli_check)
