"""
Find the FTDI USB serial adapter the LoRa module is wired to.

macOS exposes the adapter as /dev/cu.usbserial-<serial>, Linux as whatever
tty the kernel attached it to (usually /dev/ttyUSB0).
"""

import logging
import os
import re
import subprocess
import sys

log = logging.getLogger(__name__)

DARWIN_MARKER = 'FT232R USB UART'
LINUX_MARKER = 'FT232 Serial (UART)'
ATTACH_MARKER = 'FTDI USB Serial Device converter now attached'

DARWIN_DEVICE_PREFIX = '/dev/cu.usbserial-'

SERIAL_PATTERN = re.compile(r'Serial: (?P<serial>[a-zA-Z0-9]+)')


class LocatorError(Exception):
    """Base class for everything that stops us finding the adapter."""


class UnsupportedPlatformError(LocatorError):
    pass


class CommandFailedError(LocatorError):
    pass


class DeviceNotFoundError(LocatorError):
    pass


class NotRootError(LocatorError):
    pass


def run_command(args):
    """Run an external command and return its stdout as text."""
    try:
        result = subprocess.run(args, capture_output=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise CommandFailedError(f"Can't run {args[0]} command: {e}") from e
    # kernel logs and USB vendor strings aren't guaranteed to be UTF-8
    return result.stdout.decode(errors='replace')


def is_root():
    return os.geteuid() == 0


def parse_darwin_serial(lsusb_output):
    """Serial identifier from the last FT232R line, or None."""
    serial_id = None
    for line in lsusb_output.splitlines():
        if DARWIN_MARKER in line:
            match = SERIAL_PATTERN.search(line)
            if match:
                serial_id = match.group('serial')
    return serial_id


def has_linux_adapter(lsusb_output):
    return any(LINUX_MARKER in line for line in lsusb_output.splitlines())


def parse_attached_tty(dmesg_output):
    """
    Kernel tty name from the last "now attached" line of dmesg, or None.

    A replugged adapter can be attached several times in one boot; the last
    entry is the one that is live.
    """
    tty = None
    for line in dmesg_output.splitlines():
        if ATTACH_MARKER in line:
            words = line.split()
            if words:
                tty = words[-1]
                log.info(f"Found FTDI device at {tty}")
    return tty


def locate_darwin():
    out = run_command(['lsusb'])
    log.debug(f"lsusb output:\n{out}")

    serial_id = parse_darwin_serial(out)
    if not serial_id:
        raise DeviceNotFoundError(f"Couldn't find {DARWIN_MARKER} in lsusb output")

    path = DARWIN_DEVICE_PREFIX + serial_id
    if not os.path.exists(path):
        raise DeviceNotFoundError(f"Couldn't open serial path {path}")
    return path


def locate_linux():
    out = run_command(['lsusb'])
    if not has_linux_adapter(out):
        raise DeviceNotFoundError(f"Couldn't find {LINUX_MARKER}")

    # dmesg is restricted to root on most distros
    if not is_root():
        raise NotRootError("You must run this program as root.")

    tty = parse_attached_tty(run_command(['dmesg']))
    if not tty:
        raise DeviceNotFoundError("Couldn't find FTDI device.")
    return '/dev/' + tty


LOCATORS = {
    'darwin': locate_darwin,
    'linux': locate_linux,
}


def find_device(platform=None):
    """
    Return the device path of the FTDI adapter on this host.

    Raises a LocatorError subclass if the platform is unsupported or the
    adapter can't be found; never returns an empty path.
    """
    platform = platform or sys.platform
    locate = LOCATORS.get(platform)
    if locate is None:
        raise UnsupportedPlatformError(
            f"Cannot connect to usb ftdi on platform '{platform}'")
    return locate()
