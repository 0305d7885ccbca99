# MIT License
#
# Copyright (c) 2025 Reticulum BLE Interface Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.


"""
Configuration loading for BLEMessenger

Configuration is a ConfigObj file (the same vendored ConfigObj Reticulum
uses) in the config directory, created with commented defaults on first
use. Hosts may also pass a plain dict; both are read with c.get().
"""

import os

import RNS
from RNS.vendor.configobj import ConfigObj


DEFAULT_CONFIG_DIR = "~/.blemessenger"
CONFIG_FILENAME = "config"

DEFAULT_CONFIG = '''# BLEMessenger configuration
#
# Booleans accept yes/no, true/false or 1/0.

# Name used in log lines
name = BLEMessenger

# Name placed in the scan response
device_name = BLEMessenger

# GATT layout: "dual" (bidirectional + write + notify + read)
# or "legacy" (NUS-style write + notify + read)
profile = dual

# MSISDN served to centrals that read the bidirectional characteristic,
# and advertised as manufacturer data
local_msisdn = 01000000000
include_msisdn_in_advertisement = yes

# MSISDN written by this device when it connects as a central
handshake_msisdn = 01012345678
handshake_on_connect = yes

# Central role: connect to every newly discovered peer
auto_connect = yes

# Seconds before a scan stops itself, 0 for no limit
scan_timeout = 0

# Peripheral role: start advertising on role entry, and keep advertising
# while centrals are connected
auto_advertise = no
advertise_while_connected = yes

# Image transfer
image_chunk_size = 180
image_start_delay = 0.05
image_chunk_delay = 0.02
image_end_delay = 0.05
image_directory = ~/.blemessenger/images
reassembly_timeout = 30

# Linux driver
adapter = hci0
connection_timeout = 10

# 0 critical ... 4 info ... 7 extreme
loglevel = 4
'''


def get_config_obj(config_in):
    """Accept a ConfigObj, a dict or None and return something with .get()."""
    if config_in is None:
        return {}
    if isinstance(config_in, (ConfigObj, dict)):
        return config_in
    return ConfigObj(config_in)


def as_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ["yes", "true", "1", "on"]
    return bool(value)


def config_path(configdir: str = None) -> str:
    configdir = os.path.expanduser(configdir or DEFAULT_CONFIG_DIR)
    return os.path.join(configdir, CONFIG_FILENAME)


def load_configuration(configdir: str = None) -> ConfigObj:
    """
    Load the configuration file, writing the defaults first if it is missing.

    Args:
        configdir: Directory holding the config file (default ~/.blemessenger)
    """
    path = config_path(configdir)
    if not os.path.isfile(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        default_config = ConfigObj(DEFAULT_CONFIG.splitlines())
        default_config.filename = path
        default_config.write()
        RNS.log(f"Created default configuration at {path}", RNS.LOG_NOTICE)

    return ConfigObj(path)


def configure_logging(config):
    """Apply the loglevel setting to the RNS logger."""
    c = get_config_obj(config)
    try:
        RNS.loglevel = int(c.get("loglevel", RNS.LOG_INFO))
    except (TypeError, ValueError):
        RNS.log(f"Invalid loglevel '{c.get('loglevel')}', using {RNS.LOG_INFO}", RNS.LOG_WARNING)
        RNS.loglevel = RNS.LOG_INFO
