#!/usr/bin/env python3
"""
LoRa Configuration for a radio module behind an FTDI USB serial adapter.
Finds the adapter, then sends the AT settings below and logs each reply.

Usage:
    sudo python3 lora_config.py        # root needed on Linux for dmesg
    python3 lora_config.py -v          # include debug output
"""

import argparse
import logging
import sys
import time

import serial

import ftdi_locator

log = logging.getLogger(__name__)

BAUD = 115200
READ_TIMEOUT = 0.1    # Seconds; a drained port returns an empty read
POLL_INTERVAL = 0.02  # Seconds between in_waiting polls
RESPONSE_TIMEOUT = 5  # Seconds to wait for a reply to start and settle

COMMANDS = [
    'AT+PARAMETER=10,2,1,7',  # SF10, 250 kHz, CR 4/5, preamble 7
    'AT+BAND=432500000',      # 902300000 for 915 MHz modules
    'AT+ADDRESS=1',
    'AT+NETWORKID=6',
    'AT+CRFOP=15',            # dBm
]


class CommandError(Exception):
    """A command could not be written to the module."""


class ResponseTimeout(Exception):
    """The module did not answer a command in time."""


def open_port(path):
    """Open the module's serial port (115200 8N1)."""
    return serial.Serial(
        path,
        BAUD,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        timeout=READ_TIMEOUT,
    )


def wait_for_response(ser, timeout=RESPONSE_TIMEOUT):
    """
    Poll until the module has stopped sending and return the byte count.

    The reply is taken as complete once two polls in a row see the same
    nonzero number of bytes waiting. Raises ResponseTimeout if that does not
    happen within `timeout` seconds.
    """
    deadline = time.monotonic() + timeout
    last = 0
    while True:
        try:
            waiting = ser.in_waiting
        except OSError as e:
            log.error(f"Could not read response to command: {e}")
            waiting = 0
        else:
            if waiting and waiting == last:
                return waiting
        last = waiting

        if time.monotonic() >= deadline:
            raise ResponseTimeout(f"No response after {timeout}s")
        time.sleep(POLL_INTERVAL)


def drain(ser, count):
    """Read until the port runs dry."""
    response = b''
    while True:
        try:
            chunk = ser.read(count)
        except OSError as e:
            # pyserial reports EINTR as a SerialException
            if isinstance(e, InterruptedError) or 'interrupted' in str(e).lower():
                continue
            log.error(f"Could not read port: {e}")
            break
        if not chunk:
            break
        response += chunk
    return response


def send_command(ser, cmd, timeout=RESPONSE_TIMEOUT):
    try:
        ser.write((cmd + '\r\n').encode())
    except OSError as e:
        raise CommandError(f"Failed to send {cmd!r}: {e}") from e
    log.debug(f"Sent: {cmd}")

    count = wait_for_response(ser, timeout)
    return drain(ser, count).decode(errors='ignore')


def run_commands(ser, commands=COMMANDS):
    """Send each command in order and return (command, response) pairs."""
    results = []
    for cmd in commands:
        try:
            resp = send_command(ser, cmd)
        except ResponseTimeout as e:
            log.error(f"'{cmd}' got no response: {e}")
            resp = ''
        else:
            log.info(f"'{cmd}' ran, result: '{resp.strip()}'")
        results.append((cmd, resp))
    return results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Configure a LoRa module attached through an FTDI adapter")
    group = parser.add_mutually_exclusive_group()
    group.add_argument('-v', '--verbose', action='store_true',
                       help="show debug output")
    group.add_argument('-q', '--quiet', action='store_true',
                       help="only show warnings and errors")
    return parser.parse_args(argv)


def setup_logging(args):
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S',
    )


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args)

    try:
        port = ftdi_locator.find_device()
    except ftdi_locator.LocatorError as e:
        log.critical(str(e))
        return 1

    log.info(f"Connecting to {port}...")
    try:
        ser = open_port(port)
    except serial.SerialException as e:
        log.error(f"Failed to open serial path '{port}': {e}")
        return 1

    try:
        run_commands(ser)
    except CommandError as e:
        log.critical(str(e))
        return 1
    finally:
        try:
            ser.close()
        except OSError as e:
            log.error(f"Could not close serial port: {e}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
