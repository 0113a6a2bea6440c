#!/usr/bin/env python3

# log.py - kvgpu logger functions
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

import sys

from datetime import datetime
from os import makedirs, path


class Logger(object):
    # Define a logger class for a kvgpu invocation
    # Keeps record of where to log, and is passed messages which are
    # formatted in various ways based off secondary characteristics.

    # ANSII colours for output
    fmt_red = "\033[91m"
    fmt_green = "\033[92m"
    fmt_yellow = "\033[93m"
    fmt_blue = "\033[94m"
    fmt_purple = "\033[95m"
    fmt_cyan = "\033[96m"
    fmt_white = "\033[97m"
    fmt_bold = "\033[1m"
    fmt_end = "\033[0m"

    last_colour = ""
    last_prompt = ""

    # Format maps
    format_map_colourized = {
        # Colourized formatting with chevron prompts (log_colours = True)
        "o": {"colour": fmt_green, "prompt": ">>> "},
        "e": {"colour": fmt_red, "prompt": ">>> "},
        "w": {"colour": fmt_yellow, "prompt": ">>> "},
        "i": {"colour": fmt_blue, "prompt": ">>> "},
        "s": {"colour": fmt_cyan, "prompt": ">>> "},
        "d": {"colour": fmt_white, "prompt": ">>> "},
        "x": {"colour": last_colour, "prompt": last_prompt},
    }
    format_map_textual = {
        # Uncolourized formatting with text prompts (log_colours = False)
        "o": {"colour": "", "prompt": "ok: "},
        "e": {"colour": "", "prompt": "failed: "},
        "w": {"colour": "", "prompt": "warning: "},
        "i": {"colour": "", "prompt": "info: "},
        "s": {"colour": "", "prompt": "system: "},
        "d": {"colour": "", "prompt": "debug: "},
        "x": {"colour": "", "prompt": last_prompt},
    }

    # Initialization of instance
    def __init__(self, config):
        self.config = config
        self.writer = None

        if self.config["file_logging"]:
            if not path.isdir(self.config["log_directory"]):
                makedirs(self.config["log_directory"])
            self.logfile = self.config["log_directory"] + "/kvgpu.log"
            # We open the logfile for the duration of our session
            self.writer = open(self.logfile, "a")

        self.last_colour = ""
        self.last_prompt = ""

    # Provide a termination function so all messages are flushed before exiting
    def terminate(self):
        if self.writer is not None:
            self.writer.close()
            self.writer = None

    # Output function
    def out(self, message, state=None, prefix=""):
        # Debug messages are dropped unless debugging is enabled
        if state == "d" and not self.config["debug"]:
            return

        # Get the date
        if self.config["log_dates"]:
            date = "{} ".format(datetime.now().strftime("%Y/%m/%d %H:%M:%S.%f"))
        else:
            date = ""

        # Get the format map
        if self.config["log_colours"]:
            format_map = self.format_map_colourized
            endc = Logger.fmt_end
        else:
            format_map = self.format_map_textual
            endc = ""

        # Define an undefined state as 'x'; no date in these prompts
        if not state:
            state = "x"
            date = ""

        # Get colour and prompt from the map
        colour = format_map[state]["colour"]
        prompt = format_map[state]["prompt"]

        # Append space and separator to prefix
        if prefix != "":
            prefix = prefix + " - "

        # Assemble message string
        message = colour + prompt + endc + date + prefix + message

        # Log to the console; stdout is reserved for command output
        if self.config["console_logging"]:
            print(message, file=sys.stderr)

        # Log to file
        if self.writer is not None:
            self.writer.write(message + "\n")
            self.writer.flush()

        # Set last message variables
        self.last_colour = colour
        self.last_prompt = prompt


class NullLogger(object):
    """
    A logger that discards everything; used when a caller passes no logger
    """

    def out(self, message, state=None, prefix=""):
        pass

    def terminate(self):
        pass
