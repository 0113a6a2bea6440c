#!/usr/bin/env python3

# waiters.py - kvgpu Click CLI output waiters library
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

from click import clear
from time import sleep

from kvgpu.cli.helpers import echo


def status_watcher(CLI_CONFIG, get_data, format_function, refresh=5, count=None):
    """
    Repeatedly clear the terminal and show freshly gathered status

    {get_data} is a callable returning the (success, data) tuple to display
    {refresh} is the number of seconds between refreshes
    {count} limits the number of refreshes; None runs until interrupted
    """

    iterations = 0
    try:
        while True:
            retcode, retdata = get_data()
            clear()
            if retcode and format_function.__name__ == "<lambda>":
                echo(CLI_CONFIG, format_function(retdata))
            elif retcode:
                echo(CLI_CONFIG, format_function(CLI_CONFIG, retdata))
            else:
                echo(CLI_CONFIG, retdata)
            echo(
                CLI_CONFIG,
                f"Refreshing every {refresh}s; press Ctrl+C to stop.",
                stderr=True,
            )

            iterations += 1
            if count is not None and iterations >= count:
                break
            sleep(refresh)
    except KeyboardInterrupt:
        echo(CLI_CONFIG, "")

    return True
